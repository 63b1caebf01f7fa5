# file: tests/test_time_range.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
import pytest

from profile_query.core.time_range import is_timestamp_name, parse_time_value
from profile_query.errors import ArgumentError

ROOT_RANGE = (1000.0, 11000.0)


@pytest.mark.parametrize('value, expected', [
    ('2.7', 3700.0),
    ('2.7s', 3700.0),
    ('2700ms', 3700.0),
    ('10%', 2000.0),
    ('100%', 11000.0),
    ('0', 1000.0),
    ('.5', 1500.0),
])
def test_time_values_are_relative_to_root_start(value, expected):
    assert parse_time_value(value, ROOT_RANGE) == pytest.approx(expected)


@pytest.mark.parametrize('value', ['ts-0', 'ts-K3', 'ts<1a', 'ts>0'])
def test_timestamp_names_are_left_to_the_caller(value):
    assert is_timestamp_name(value)
    assert parse_time_value(value, ROOT_RANGE) is None


@pytest.mark.parametrize('value', ['abc', '1.2.3', '5min', '', '%'])
def test_invalid_time_values(value):
    with pytest.raises(ArgumentError, match='Invalid time value'):
        parse_time_value(value, ROOT_RANGE)
