# file: tests/test_timestamps.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
from profile_query.core.timestamps import TimestampManager


def test_root_bounds_have_fixed_names():
    manager = TimestampManager((0.0, 1000.0))
    assert manager.name_for_timestamp(0.0) == 'ts-0'
    assert manager.name_for_timestamp(1000.0) == 'ts-Z'


def test_root_bounds_resolve_without_being_named():
    manager = TimestampManager((250.0, 1000.0))
    assert manager.timestamp_for_name('ts-0') == 250.0
    assert manager.timestamp_for_name('ts-Z') == 1000.0


def test_first_midpoint_gets_a_single_character():
    manager = TimestampManager((0.0, 1000.0))
    assert manager.name_for_timestamp(500.0) == 'ts-K'


def test_names_are_stable_and_resolvable():
    manager = TimestampManager((0.0, 1000.0))
    timestamps = [i * 7.3 for i in range(1, 130)]
    names = [manager.name_for_timestamp(ts) for ts in timestamps]

    assert len(set(names)) == len(timestamps)
    assert [manager.name_for_timestamp(ts) for ts in timestamps] == names
    for ts, name in zip(timestamps, names):
        assert manager.timestamp_for_name(name) == ts


def test_adjacent_marks_extend_the_name():
    manager = TimestampManager((0.0, 1000.0))
    assert manager.name_for_timestamp(0.002) == 'ts-1'
    # No free mark is left between ts-0 and ts-1.
    assert manager.name_for_timestamp(0.001) == 'ts-0K'


def test_timestamps_before_the_range_use_before_buckets():
    manager = TimestampManager((0.0, 1000.0))
    assert manager.name_for_timestamp(-10.0).startswith('ts<0')
    assert manager.name_for_timestamp(-2500.0).startswith('ts<2')


def test_timestamps_after_the_range_use_after_buckets():
    manager = TimestampManager((0.0, 1000.0))
    assert manager.name_for_timestamp(1500.0).startswith('ts>0')
    assert manager.name_for_timestamp(3500.0).startswith('ts>2')


def test_bucket_end_belongs_to_the_next_bucket():
    manager = TimestampManager((0.0, 1000.0))
    assert manager.name_for_timestamp(2000.0) == 'ts>1'
    assert manager.timestamp_for_name('ts>1') == 2000.0


def test_unknown_name_resolves_to_none():
    manager = TimestampManager((0.0, 1000.0))
    assert manager.timestamp_for_name('ts-q') is None
    assert manager.timestamp_for_name('bogus') is None


def test_timestamp_string_is_relative_to_root_start():
    manager = TimestampManager((1000.0, 5000.0))
    assert manager.timestamp_string(2500.0) == '1.500s'
    assert manager.timestamp_string(1000.0) == '0ms'
