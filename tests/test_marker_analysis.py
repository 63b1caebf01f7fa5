# file: tests/test_marker_analysis.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
import pytest

from profile_query.core.definition import Marker
from profile_query.core.handles import MarkerMap
from profile_query.core.marker_analysis import (
    MarkerFilterOptions, MarkerSearch, analyze_field_variance, apply_marker_filters, collect_marker_info,
    collect_marker_stack, collect_thread_markers, compute_duration_stats, compute_rate_stats, parse_grouping_keys,
)
from profile_query.errors import ArgumentError, QueryError

MAIN_THREAD = (0,)


def _interval(name, start, duration, data=None):
    return Marker(name, start, start + duration, 0, data)


def _filter(profile, **options):
    markers = profile.threads[0].markers
    indexes = apply_marker_filters(markers, list(range(len(markers))), profile, MarkerFilterOptions(**options))
    return [markers[i].name for i in indexes]


def test_duration_stats():
    stats = compute_duration_stats([_interval('M', i * 10, d) for i, d in enumerate([3, 1, 5, 2, 4])])
    assert stats['min'] == 1
    assert stats['max'] == 5
    assert stats['avg'] == pytest.approx(3)
    assert stats['median'] == 3
    assert stats['p95'] == 5
    assert stats['p99'] == 5


def test_duration_stats_ignore_instant_markers():
    assert compute_duration_stats([Marker('Instant', 1.0, None, 0, None)]) is None


def test_rate_stats():
    stats = compute_rate_stats([_interval('M', start, 1) for start in (30, 0, 10)])
    assert stats['markersPerSecond'] == pytest.approx(100)
    assert stats['minGap'] == 10
    assert stats['maxGap'] == 20
    assert stats['avgGap'] == 15
    assert compute_rate_stats([_interval('M', 0, 1)])['markersPerSecond'] == 0


def test_search_terms(sample_profile):
    assert _filter(sample_profile, search_string='dom') == ['DOMEvent', 'DOMEvent']
    assert _filter(sample_profile, search_string='Paint,Reflow') == ['Paint', 'Reflow']
    assert _filter(sample_profile, search_string='cat:layout') == ['Reflow']
    assert _filter(sample_profile, search_string='-name:DOMEvent') == ['Paint', 'Reflow']
    # Payload fields declared by the marker schema are searchable too.
    assert _filter(sample_profile, search_string='eventType:key') == ['DOMEvent']


def test_search_parsing():
    search = MarkerSearch.parse(' DOMEvent , -cat:Other, name:Paint,')
    assert search.generic == ['domevent']
    assert search.positive == {'name': ['paint']}
    assert search.negative == {'cat': ['other']}


def test_category_duration_and_stack_filters(sample_profile):
    assert _filter(sample_profile, category='GRAPH') == ['Paint']
    assert _filter(sample_profile, min_duration=2) == ['DOMEvent', 'Reflow']
    assert _filter(sample_profile, max_duration=1.5) == ['DOMEvent']
    assert _filter(sample_profile, has_stack=True) == ['Reflow']
    assert _filter(sample_profile, limit=2) == ['DOMEvent', 'Paint']


def test_grouping_keys():
    assert parse_grouping_keys('type, name,field:eventType') == ['type', 'name', ('field', 'eventType')]
    with pytest.raises(ArgumentError, match='Invalid grouping key "bogus"'):
        parse_grouping_keys('type,bogus')
    with pytest.raises(ArgumentError, match='a field name is required'):
        parse_grouping_keys('field:')


def test_thread_markers_aggregate_by_name(sample_profile):
    result = collect_thread_markers(sample_profile, sample_profile.threads[0].markers, MAIN_THREAD, 't-0',
                                    'firefox', MarkerMap(), MarkerFilterOptions())
    assert result['type'] == 'thread-markers'
    assert result['totalMarkerCount'] == 4
    assert result['filteredMarkerCount'] == 4
    assert result['filters'] is None
    assert result['customGroups'] is None

    by_name = {entry['markerName']: entry for entry in result['byType']}
    assert result['byType'][0]['markerName'] == 'DOMEvent'
    assert by_name['DOMEvent']['count'] == 2
    assert by_name['DOMEvent']['durationStats']['max'] == 2
    # The longest marker comes first; labels come from the schema's table label.
    assert [m['label'] for m in by_name['DOMEvent']['topMarkers']] == ['click', 'keydown']
    assert by_name['Paint']['isInterval'] is False
    assert by_name['Paint']['durationStats'] is None
    assert by_name['Reflow']['topMarkers'][0]['hasStack'] is True

    categories = {c['categoryName']: c for c in result['byCategory']}
    assert categories['Other']['count'] == 2
    assert categories['Other']['percentage'] == pytest.approx(50)
    assert categories['Layout']['categoryIndex'] == 1


def test_thread_markers_custom_grouping(sample_profile):
    options = MarkerFilterOptions(search_string='DOMEvent', group_by='type,field:eventType')
    result = collect_thread_markers(sample_profile, sample_profile.threads[0].markers, MAIN_THREAD, 't-0',
                                    'firefox', MarkerMap(), options)
    assert result['filters']['searchString'] == 'DOMEvent'
    (type_group,) = result['customGroups']
    assert type_group['groupName'] == 'DOMEvent'
    assert type_group['count'] == 2
    assert sorted(g['groupName'] for g in type_group['subGroups']) == ['click', 'keydown']


def test_marker_handles_are_stable_across_queries(sample_profile):
    marker_map = MarkerMap()
    markers = sample_profile.threads[0].markers
    first = collect_thread_markers(sample_profile, markers, MAIN_THREAD, 't-0', 'firefox', marker_map,
                                   MarkerFilterOptions())
    second = collect_thread_markers(sample_profile, markers, MAIN_THREAD, 't-0', 'firefox', marker_map,
                                    MarkerFilterOptions(search_string='Reflow'))
    reflow_first = next(e for e in first['byType'] if e['markerName'] == 'Reflow')['topMarkers'][0]['handle']
    assert second['byType'][0]['topMarkers'][0]['handle'] == reflow_first


def test_field_variance_prefers_semantic_fields():
    markers = [
        Marker('Event', i, i + 1, 0, {'type': 'DOMEvent', 'eventType': f'kind{i % 4}', 'target': f't{i}',
                                      'windowID': i})
        for i in range(10)
    ]
    assert analyze_field_variance(markers) == {'field': 'eventType', 'variance': pytest.approx(1.3)}
    assert analyze_field_variance([Marker('Plain', 0, 1, 0, None)]) is None


def test_auto_group_sub_groups_frequent_names(profile_builder):
    event_types = ['click', 'keydown', 'scroll'] * 3
    profile_builder.add_thread(['main'] * 20, markers=[
        {'name': 'DOMEvent', 'start': float(i), 'end': i + 0.5, 'data': {'type': 'DOMEvent', 'eventType': kind}}
        for i, kind in enumerate(event_types)
    ])
    profile = profile_builder.build()
    result = collect_thread_markers(profile, profile.threads[0].markers, MAIN_THREAD, 't-0', 'firefox',
                                    MarkerMap(), MarkerFilterOptions(auto_group=True))
    (entry,) = result['byType']
    assert entry['subGroupKey'] == 'eventType'
    assert {g['groupName']: g['count'] for g in entry['subGroups']} == {'click': 3, 'keydown': 3, 'scroll': 3}


def test_marker_info_and_stack(sample_profile):
    markers = sample_profile.threads[0].markers
    reflow_index = next(i for i, m in enumerate(markers) if m.name == 'Reflow')

    info = collect_marker_info(sample_profile, markers, reflow_index, 'm-1', 't-0', 'firefox')
    assert info['category'] == {'index': 1, 'name': 'Layout'}
    assert info['duration'] == 3
    assert [f['name'] for f in info['stack']['frames']] == ['B', 'A', 'main']
    assert info['stack']['truncated'] is False

    stack = collect_marker_stack(sample_profile, markers, reflow_index, 'm-1', 't-0', 'firefox')
    assert stack['markerName'] == 'Reflow'
    assert stack['stack']['capturedAt'] == 6.0

    dom_index = markers.index(next(m for m in markers if m.name == 'DOMEvent'))
    dom_info = collect_marker_info(sample_profile, markers, dom_index, 'm-2', 't-0', 'firefox')
    assert dom_info['tooltipLabel'] == 'click - DOMEvent'
    assert dom_info['fields'] == [
        {'key': 'eventType', 'label': 'Event Type', 'value': 'click', 'formattedValue': 'click'},
    ]
    assert dom_info['stack'] is None

    with pytest.raises(QueryError, match='Marker m-9 not found'):
        collect_marker_info(sample_profile, markers, 99, 'm-9', 't-0', 'firefox')
