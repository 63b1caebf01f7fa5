# file: tests/test_slice_tree.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
import numpy as np
import pytest

from profile_query.core.definition import CPU_ACTIVITY_THRESHOLDS
from profile_query.core.profile_state import CpuSeries
from profile_query.core.slice_tree import collect_slice_tree, get_slices
from profile_query.core.timestamps import TimestampManager


def _series(ratios):
    count = len(ratios)
    return CpuSeries(np.arange(1, count + 1, dtype=np.float64), np.ones(count), np.asarray(ratios, dtype=np.float64))


def test_busy_runs_become_slices():
    tree = get_slices(CPU_ACTIVITY_THRESHOLDS, _series([0, 0, 1, 1, 1, 0, 0, 0.5, 0.5, 0]), smoothing_window_size=1)
    assert [(s.start, s.end, s.parent) for s in tree.slices] == [(2, 5, None), (7, 9, None)]
    assert tree.slices[0].avg == pytest.approx(1.0)
    assert tree.slices[1].sum == pytest.approx(1.0)


def test_busier_periods_nest_inside_their_parent():
    tree = get_slices(CPU_ACTIVITY_THRESHOLDS, _series([0.3, 0.3, 1, 1, 0.3, 0.3]), smoothing_window_size=1)
    assert [(s.start, s.end, s.parent) for s in tree.slices] == [(0, 6, None), (2, 4, 0)]


def test_idle_series_has_no_slices():
    assert get_slices(CPU_ACTIVITY_THRESHOLDS, _series([0, 0, 0, 0])).slices == []
    assert get_slices(CPU_ACTIVITY_THRESHOLDS, _series([])).slices == []


def test_collected_slices_have_named_bounds():
    series = _series([0.3, 0.3, 1, 1, 0.3, 0.3])
    tree = get_slices(CPU_ACTIVITY_THRESHOLDS, series, smoothing_window_size=1)
    manager = TimestampManager((0.0, 6.0))
    collected = collect_slice_tree(tree, manager)

    assert [item['depthLevel'] for item in collected] == [0, 1]
    outer, inner = collected
    assert outer['startTime'] == 0.0
    assert outer['startTimeName'] == 'ts-0'
    assert outer['endTime'] == 6.0
    assert outer['endTimeName'] == 'ts-Z'
    assert outer['cpuMs'] == pytest.approx(3.2)
    assert (inner['startTime'], inner['endTime']) == (2.0, 4.0)
    assert manager.timestamp_for_name(inner['startTimeName']) == 2.0


def test_only_the_heaviest_slices_are_displayed():
    ratios = []
    for width in range(1, 6):
        ratios += [1.0] * width + [0.0]
    tree = get_slices(CPU_ACTIVITY_THRESHOLDS, _series(ratios), smoothing_window_size=1)
    collected = collect_slice_tree(tree, TimestampManager((0.0, float(len(ratios)))), max_slices=2)
    assert [item['cpuMs'] for item in collected] == [4.0, 5.0]
