# file: core/marker_analysis.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
"""
Marker aggregation for a thread (or a merged thread set).

Markers are filtered (search, category, duration bounds, has-stack, limit),
then either aggregated by name with duration and rate statistics, or grouped
hierarchically by a list of grouping keys. With auto-grouping, each marker name
is additionally sub-grouped by the payload field that looks most useful to
group by.
"""
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Tuple, Union

import numpy as np

from profile_query.core.definition import NO_INDEX, Marker, Profile
from profile_query.core.function_list import format_function_name_with_library, library_name_for_function
from profile_query.core.handles import MarkerMap
from profile_query.errors import ArgumentError, QueryError
from profile_query.utils.format_numbers import format_timestamp, format_value_with_format

# ==============================================================================
# Configuration Constants
# ==============================================================================

# Example markers attached to each by-name entry and to each group.
TOP_MARKERS_PER_TYPE = 3
TOP_MARKERS_PER_GROUP = 5

# Custom grouping recurses at most this many levels deep.
MAX_GROUPING_DEPTH = 3

# Auto-grouping is only attempted for marker names with more than this many markers.
AUTO_GROUP_MIN_MARKERS = 5

# Field scoring for auto-grouping.
FIELD_MIN_COVERAGE = 0.8
FIELD_MIN_UNIQUE_VALUES = 3
FIELD_IDEAL_MAX_UNIQUE_VALUES = 20
FIELD_ACCEPTABLE_MAX_UNIQUE_VALUES = 50
SEMANTIC_FIELD_NAMES = ('eventType', 'phase', 'status', 'operation', 'category')

# Marker info shows at most this many backtrace frames.
MARKER_INFO_MAX_FRAMES = 20

NO_VALUE_GROUP = '(no value)'
LABEL_PLACEHOLDER = re.compile(r'{([^}]+)}')
MARKER_NAME_LABEL_PREFIX = re.compile(r'^{marker\.name}\s[-—]\s')

GroupingKey = Union[str, Tuple[str, str]]
MarkerItem = Tuple[Marker, int]


@dataclass
class MarkerFilterOptions:
    """Filters and grouping options of a thread-markers query."""
    search_string: Optional[str] = None
    min_duration: Optional[float] = None
    max_duration: Optional[float] = None
    category: Optional[str] = None
    has_stack: bool = False
    limit: Optional[int] = None
    group_by: Optional[str] = None
    auto_group: bool = False

    @property
    def has_filters(self) -> bool:
        return bool(self.search_string or self.min_duration is not None or self.max_duration is not None
                    or self.category is not None or self.has_stack or self.limit is not None)

    def filters_dict(self) -> Optional[Dict[str, Any]]:
        if not self.has_filters:
            return None
        return {
            'searchString': self.search_string or None,
            'minDuration': self.min_duration,
            'maxDuration': self.max_duration,
            'category': self.category,
            'hasStack': self.has_stack,
            'limit': self.limit,
        }


# ==============================================================================
# Search and filtering
# ==============================================================================

@dataclass
class MarkerSearch:
    """
    A parsed marker search string: comma-separated terms, each either a generic
    substring (`DOMEvent`), a field-specific substring (`name:Paint`,
    `cat:Graphics`, `type:GCMajor`, `<payload key>:value`) or a field-specific
    exclusion (`-name:Paint`). Matching is case-insensitive.
    """
    generic: List[str] = field(default_factory=list)
    positive: Dict[str, List[str]] = field(default_factory=dict)
    negative: Dict[str, List[str]] = field(default_factory=dict)

    @classmethod
    def parse(cls, search_string: str) -> 'MarkerSearch':
        search = cls()
        for term in (t.strip() for t in search_string.split(',')):
            if not term:
                continue
            key, colon, value = term.partition(':')
            if colon and key and value:
                if key.startswith('-'):
                    search.negative.setdefault(key[1:].lower(), []).append(value.lower())
                else:
                    search.positive.setdefault(key.lower(), []).append(value.lower())
            else:
                search.generic.append(term.lower())
        return search

    def matches(self, marker: Marker, profile: Profile) -> bool:
        searchable = _searchable_values(marker, profile)
        if self.generic or self.positive:
            if not any(self._test(value, key, positive=True) for key, value in searchable):
                return False
        if self.negative:
            if any(self._test(value, key, positive=False) for key, value in searchable):
                return False
        return True

    def _test(self, value: str, key: str, positive: bool) -> bool:
        value = value.lower()
        key = key.lower()
        if positive:
            if any(term in value for term in self.generic):
                return True
            return any(term in value for term in self.positive.get(key, ()))
        return any(term in value for term in self.negative.get(key, ()))


def _searchable_values(marker: Marker, profile: Profile) -> List[Tuple[str, str]]:
    """(field key, string value) pairs a search term can match."""
    values = [('cat', profile.category_name(marker.category)), ('name', marker.name)]
    if marker.data:
        if marker.marker_type:
            values.append(('type', marker.marker_type))
        schema = profile.meta.marker_schema.get(marker.marker_type or '')
        for field_def in (schema or {}).get('fields') or []:
            key = field_def.get('key')
            value = marker.data.get(key) if key else None
            if isinstance(value, str):
                values.append((key, value))
    return values


def apply_marker_filters(markers: List[Marker], marker_indexes: List[int], profile: Profile,
                         options: MarkerFilterOptions) -> List[int]:
    """
    Applies search, category, duration bounds and has-stack filters, then the limit.

    Args:
        markers (List[Marker]): The full marker list of the thread set.
        marker_indexes (List[int]): Candidate indexes into `markers`.
        profile (Profile): The profile (for category names and marker schemas).
        options (MarkerFilterOptions): The filters.

    Returns:
        List[int]: The surviving marker indexes, in their original order.
    """
    filtered = marker_indexes

    if options.search_string:
        search = MarkerSearch.parse(options.search_string)
        filtered = [i for i in filtered if search.matches(markers[i], profile)]

    if options.category is not None:
        category_lower = options.category.lower()
        filtered = [i for i in filtered if category_lower in profile.category_name(markers[i].category).lower()]

    if options.min_duration is not None or options.max_duration is not None:
        def within_bounds(marker: Marker) -> bool:
            if marker.end is None:
                return False
            duration = marker.end - marker.start
            if options.min_duration is not None and duration < options.min_duration:
                return False
            if options.max_duration is not None and duration > options.max_duration:
                return False
            return True
        filtered = [i for i in filtered if within_bounds(markers[i])]

    if options.has_stack:
        filtered = [i for i in filtered if markers[i].has_stack]

    if options.limit is not None and len(filtered) > options.limit:
        filtered = filtered[:options.limit]
    return filtered


# ==============================================================================
# Statistics
# ==============================================================================

def compute_duration_stats(markers: List[Marker]) -> Optional[Dict[str, float]]:
    """
    Duration statistics over the interval markers of `markers`; None when there
    are none. Percentiles index the ascending durations at floor(n * p).
    """
    durations = np.sort(np.array([m.end - m.start for m in markers if m.end is not None], dtype=np.float64))
    if len(durations) == 0:
        return None
    count = len(durations)
    return {
        'min': float(durations[0]),
        'max': float(durations[-1]),
        'avg': float(durations.mean()),
        'median': float(durations[count // 2]),
        'p95': float(durations[int(count * 0.95)]),
        'p99': float(durations[int(count * 0.99)]),
    }


def compute_rate_stats(markers: List[Marker]) -> Dict[str, float]:
    """Marker density (per second) and start-to-start gaps; all zero below two markers."""
    if len(markers) < 2:
        return {'markersPerSecond': 0.0, 'minGap': 0.0, 'avgGap': 0.0, 'maxGap': 0.0}
    starts = np.sort(np.array([m.start for m in markers], dtype=np.float64))
    gaps = np.diff(starts)
    time_range = float(starts[-1] - starts[0])
    return {
        'markersPerSecond': len(markers) / time_range * 1000 if time_range > 0 else 0.0,
        'minGap': float(gaps.min()),
        'avgGap': float(gaps.mean()),
        'maxGap': float(gaps.max()),
    }


# ==============================================================================
# Labels
# ==============================================================================

class MarkerLabeler:
    """
    Renders the `tableLabel` / `tooltipLabel` templates of the marker schema,
    e.g. "{marker.data.url} ({marker.duration})".
    """

    def __init__(self, profile: Profile, label_key: str):
        self._profile = profile
        self._label_key = label_key

    def label(self, marker: Marker) -> str:
        schema = self._profile.meta.marker_schema.get(marker.marker_type or '')
        template = schema.get(self._label_key) if schema else None
        if not template:
            return marker.name if self._label_key == 'tooltipLabel' else ''
        if self._label_key == 'tableLabel':
            template = MARKER_NAME_LABEL_PREFIX.sub('', template)
        return LABEL_PLACEHOLDER.sub(lambda m: self._render_placeholder(m.group(1), marker, schema), template)

    def _render_placeholder(self, placeholder: str, marker: Marker, schema: Dict[str, Any]) -> str:
        parts = placeholder.strip().split('.')
        if parts[0] != 'marker' or len(parts) not in (2, 3):
            return ''
        if len(parts) == 2:
            match parts[1]:
                case 'start':
                    return format_timestamp(marker.start)
                case 'end':
                    return 'unknown' if marker.end is None else format_timestamp(marker.end)
                case 'duration':
                    return 'unknown' if marker.end is None else format_timestamp(marker.end - marker.start)
                case 'name':
                    return marker.name
                case 'category':
                    return self._profile.category_name(marker.category)
                case _:
                    return ''
        if parts[1] != 'data' or not marker.data:
            return ''
        value = marker.data.get(parts[2])
        if value is None:
            return ''
        return format_value_with_format(value, _field_format(schema, parts[2]))


def _field_format(schema: Optional[Dict[str, Any]], key: str) -> Optional[str]:
    for field_def in (schema or {}).get('fields') or []:
        if field_def.get('key') == key:
            value_format = field_def.get('format')
            return value_format if isinstance(value_format, str) else None
    return None


# ==============================================================================
# Aggregation and grouping
# ==============================================================================

def create_top_markers(items: List[MarkerItem], thread_indexes: Tuple[int, ...], marker_map: MarkerMap,
                       labeler: MarkerLabeler, max_count: int = TOP_MARKERS_PER_GROUP) -> List[Dict[str, Any]]:
    """The longest markers of a group (the first ones for instant-only groups), with handles."""
    if any(marker.end is not None for marker, _ in items):
        ordered = sorted(items, key=lambda item: -(item[0].duration or 0.0))
    else:
        ordered = items
    top = []
    for marker, index in ordered[:max_count]:
        top.append({
            'handle': marker_map.handle_for_marker(thread_indexes, index),
            'label': labeler.label(marker) or marker.name,
            'start': marker.start,
            'duration': marker.duration,
            'hasStack': marker.has_stack,
        })
    return top


def parse_grouping_keys(group_by: str) -> List[GroupingKey]:
    """
    Parses "type,name,field:eventType" into ['type', 'name', ('field', 'eventType')].

    Raises:
        ArgumentError: On an unknown key or an empty field name.
    """
    keys: List[GroupingKey] = []
    for raw_key in group_by.split(','):
        key = raw_key.strip()
        if key.startswith('field:'):
            if not (field_name := key[len('field:'):]):
                raise ArgumentError(f'Invalid grouping key "{key}": a field name is required after "field:"')
            keys.append(('field', field_name))
        elif key in ('type', 'name', 'category'):
            keys.append(key)
        else:
            raise ArgumentError(
                f'Invalid grouping key "{key}". Valid keys: type, name, category, field:<fieldName>')
    return keys


def grouping_value(marker: Marker, key: GroupingKey, profile: Profile) -> str:
    match key:
        case 'type':
            return marker.marker_type or marker.name
        case 'name':
            return marker.name
        case 'category':
            return profile.category_name(marker.category)
        case ('field', field_name):
            value = marker.data.get(field_name) if marker.data else None
            if value is None:
                return NO_VALUE_GROUP
            return _js_string(value)
    raise ArgumentError(f"Invalid grouping key: {key}")


def _js_string(value: Any) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def analyze_field_variance(markers: List[Marker]) -> Optional[Dict[str, Any]]:
    """
    Picks the payload field that best splits `markers` into groups.

    Candidate fields come from the first marker's payload, excluding `type`,
    `cause` and ID-like keys. A field must be present on at least 80% of the
    markers and have at least 3 distinct values; 3-20 distinct values score
    best, more values score progressively worse, full coverage and common
    semantic names earn a bonus.

    Returns:
        Optional[Dict[str, Any]]: {'field': name, 'variance': score / 100}, or None.
    """
    if not markers or not markers[0].marker_type or not markers[0].data:
        return None

    field_keys = [
        key for key in markers[0].data
        if key not in ('type', 'cause') and not key.endswith('ID') and not key.endswith('Id')
    ]

    best_field, best_score = None, None
    for field_key in field_keys:
        unique_values = set()
        valid_count = 0
        for marker in markers:
            value = marker.data.get(field_key) if marker.data else None
            if value is not None:
                unique_values.add(_js_string(value))
                valid_count += 1

        unique_count = len(unique_values)
        if valid_count < len(markers) * FIELD_MIN_COVERAGE or unique_count < FIELD_MIN_UNIQUE_VALUES:
            continue

        if unique_count <= FIELD_IDEAL_MAX_UNIQUE_VALUES:
            score = 100
        elif unique_count <= FIELD_ACCEPTABLE_MAX_UNIQUE_VALUES:
            score = 100 - (unique_count - FIELD_IDEAL_MAX_UNIQUE_VALUES) * 2
        else:
            score = 10
        if valid_count == len(markers):
            score += 10
        if field_key in SEMANTIC_FIELD_NAMES:
            score += 20

        if best_score is None or score > best_score:
            best_field, best_score = field_key, score

    if best_field is None:
        return None
    return {'field': best_field, 'variance': best_score / 100}


def group_markers(items: List[MarkerItem], grouping_keys: List[GroupingKey], profile: Profile,
                  thread_indexes: Tuple[int, ...], marker_map: MarkerMap, labeler: MarkerLabeler,
                  depth: int = 0) -> List[Dict[str, Any]]:
    """Groups markers by the first key, recursing with the remaining keys; largest groups first."""
    if not grouping_keys or not items:
        return []

    current_key, remaining_keys = grouping_keys[0], grouping_keys[1:]
    groups: Dict[str, List[MarkerItem]] = {}
    for item in items:
        groups.setdefault(grouping_value(item[0], current_key, profile), []).append(item)

    result = []
    for group_name, group_items in groups.items():
        markers = [marker for marker, _ in group_items]
        is_interval = any(m.end is not None for m in markers)
        sub_groups = None
        if remaining_keys and depth < MAX_GROUPING_DEPTH - 1:
            sub_groups = group_markers(group_items, remaining_keys, profile, thread_indexes, marker_map,
                                       labeler, depth + 1)
        result.append({
            'groupName': group_name,
            'count': len(markers),
            'isInterval': is_interval,
            'durationStats': compute_duration_stats(markers) if is_interval else None,
            'rateStats': compute_rate_stats(markers),
            'topMarkers': create_top_markers(group_items, thread_indexes, marker_map, labeler),
            'subGroups': sub_groups,
        })
    result.sort(key=lambda g: -g['count'])
    return result


def aggregate_markers_by_type(markers: List[Marker], marker_indexes: List[int], profile: Profile,
                              thread_indexes: Tuple[int, ...], marker_map: MarkerMap, labeler: MarkerLabeler,
                              auto_group: bool = False) -> List[Dict[str, Any]]:
    """Aggregates markers by name with statistics and example handles; most frequent first."""
    by_name: Dict[str, List[MarkerItem]] = {}
    for index in marker_indexes:
        by_name.setdefault(markers[index].name, []).append((markers[index], index))

    stats = []
    for marker_name, items in by_name.items():
        marker_list = [marker for marker, _ in items]
        is_interval = any(m.end is not None for m in marker_list)

        sub_groups, sub_group_key = None, None
        if auto_group and len(marker_list) > AUTO_GROUP_MIN_MARKERS:
            if field_info := analyze_field_variance(marker_list):
                sub_group_key = field_info['field']
                sub_groups = group_markers(items, [('field', sub_group_key)], profile, thread_indexes,
                                           marker_map, labeler, depth=1)

        stats.append({
            'markerName': marker_name,
            'count': len(marker_list),
            'isInterval': is_interval,
            'durationStats': compute_duration_stats(marker_list) if is_interval else None,
            'rateStats': compute_rate_stats(marker_list),
            'topMarkers': create_top_markers(items, thread_indexes, marker_map, labeler, TOP_MARKERS_PER_TYPE),
            'subGroups': sub_groups,
            'subGroupKey': sub_group_key,
        })
    stats.sort(key=lambda s: -s['count'])
    return stats


def aggregate_markers_by_category(markers: List[Marker], marker_indexes: List[int],
                                  profile: Profile) -> List[Dict[str, Any]]:
    counts = Counter(profile.category_name(markers[i].category) for i in marker_indexes)
    total = len(marker_indexes)
    category_names = [c.name for c in profile.meta.categories]
    return [
        {
            'categoryName': name,
            'categoryIndex': category_names.index(name) if name in category_names else NO_INDEX,
            'count': count,
            'percentage': count / total * 100,
        }
        for name, count in sorted(counts.items(), key=lambda kv: -kv[1])
    ]


def collect_thread_markers(profile: Profile, markers: List[Marker], thread_indexes: Tuple[int, ...],
                           thread_handle: str, friendly_thread_name: str, marker_map: MarkerMap,
                           options: MarkerFilterOptions) -> Dict[str, Any]:
    """
    Builds the thread-markers result: by-name and by-category aggregations of
    the filtered markers, plus custom groups when `group_by` is set.
    """
    all_indexes = list(range(len(markers)))
    filtered = apply_marker_filters(markers, all_indexes, profile, options)
    labeler = MarkerLabeler(profile, 'tableLabel')

    custom_groups = None
    if options.group_by:
        grouping_keys = parse_grouping_keys(options.group_by)
        custom_groups = group_markers([(markers[i], i) for i in filtered], grouping_keys, profile,
                                      thread_indexes, marker_map, labeler)

    return {
        'type': 'thread-markers',
        'threadHandle': thread_handle,
        'friendlyThreadName': friendly_thread_name,
        'totalMarkerCount': len(all_indexes),
        'filteredMarkerCount': len(filtered),
        'filters': options.filters_dict(),
        'byType': aggregate_markers_by_type(markers, filtered, profile, thread_indexes, marker_map, labeler,
                                            options.auto_group),
        'byCategory': aggregate_markers_by_category(markers, filtered, profile),
        'customGroups': custom_groups,
    }


# ==============================================================================
# Single marker details
# ==============================================================================

def collect_stack_trace(call_node_index: Optional[int], profile: Profile,
                        captured_at: Optional[float] = None) -> Optional[Dict[str, Any]]:
    """Frames of a backtrace, innermost first."""
    if call_node_index is None or call_node_index == NO_INDEX:
        return None
    frames = []
    for func_index in reversed(profile.call_nodes.path(call_node_index)):
        frames.append({
            'name': profile.funcs.name[func_index],
            'nameWithLibrary': format_function_name_with_library(func_index, profile),
            'library': library_name_for_function(func_index, profile),
        })
    return {'frames': frames, 'truncated': False, 'capturedAt': captured_at}


def _lookup_marker(markers: List[Marker], marker_index: int, marker_handle: str) -> Marker:
    if not 0 <= marker_index < len(markers):
        raise QueryError(f"Marker {marker_handle} not found")
    return markers[marker_index]


def collect_marker_info(profile: Profile, markers: List[Marker], marker_index: int, marker_handle: str,
                        thread_handle: str, friendly_thread_name: str) -> Dict[str, Any]:
    """Details of one marker: schema fields with formatted values, tooltip label and a short backtrace."""
    marker = _lookup_marker(markers, marker_index, marker_handle)
    tooltip_label = MarkerLabeler(profile, 'tooltipLabel').label(marker)

    fields, schema_info = None, None
    if marker.data:
        schema = profile.meta.marker_schema.get(marker.marker_type or '')
        if schema and (schema_fields := schema.get('fields')):
            fields = []
            for field_def in schema_fields:
                if field_def.get('hidden'):
                    continue
                key = field_def.get('key')
                if (value := marker.data.get(key)) is None:
                    continue
                fields.append({
                    'key': key,
                    'label': field_def.get('label') or key,
                    'value': value,
                    'formattedValue': format_value_with_format(value, _field_format(schema, key)),
                })
        if schema and schema.get('description'):
            schema_info = {'description': schema['description']}

    stack = None
    if cause := marker.cause:
        full_stack = collect_stack_trace(cause.get('stack'), profile, cause.get('time'))
        if full_stack and full_stack['frames']:
            stack = {
                'frames': full_stack['frames'][:MARKER_INFO_MAX_FRAMES],
                'truncated': len(full_stack['frames']) > MARKER_INFO_MAX_FRAMES,
                'capturedAt': full_stack['capturedAt'],
            }

    return {
        'type': 'marker-info',
        'markerHandle': marker_handle,
        'markerIndex': marker_index,
        'threadHandle': thread_handle,
        'friendlyThreadName': friendly_thread_name,
        'name': marker.name,
        'tooltipLabel': tooltip_label or None,
        'markerType': marker.marker_type,
        'category': {'index': marker.category, 'name': profile.category_name(marker.category)},
        'start': marker.start,
        'end': marker.end,
        'duration': marker.duration,
        'fields': fields,
        'schema': schema_info,
        'stack': stack,
    }


def collect_marker_stack(profile: Profile, markers: List[Marker], marker_index: int, marker_handle: str,
                         thread_handle: str, friendly_thread_name: str) -> Dict[str, Any]:
    """The full backtrace captured with a marker (None when it has none)."""
    marker = _lookup_marker(markers, marker_index, marker_handle)
    stack = None
    if cause := marker.cause:
        stack = collect_stack_trace(cause.get('stack'), profile, cause.get('time'))
    return {
        'type': 'marker-stack',
        'markerHandle': marker_handle,
        'markerIndex': marker_index,
        'threadHandle': thread_handle,
        'friendlyThreadName': friendly_thread_name,
        'markerName': marker.name,
        'stack': stack,
    }
