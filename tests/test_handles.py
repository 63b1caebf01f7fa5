# file: tests/test_handles.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
import pytest

from profile_query.core.handles import FunctionMap, MarkerMap, ThreadMap
from profile_query.errors import QueryError


def test_thread_handles_are_sorted_and_deduplicated():
    thread_map = ThreadMap(3)
    assert thread_map.handle_for_thread_index(1) == 't-1'
    assert thread_map.handle_for_thread_indexes([2, 0, 2]) == 't-0,t-2'
    assert thread_map.thread_indexes_for_handle('t-2,t-0') == (0, 2)
    assert thread_map.thread_indexes_for_handle(' t-1 ') == (1,)


@pytest.mark.parametrize('handle', ['x-1', 't-', 't-1;t-2', ''])
def test_malformed_thread_handle(handle):
    with pytest.raises(QueryError, match='Invalid thread handle'):
        ThreadMap(3).thread_indexes_for_handle(handle)


def test_thread_handle_out_of_range():
    with pytest.raises(QueryError, match='Unknown thread t-5'):
        ThreadMap(3).thread_indexes_for_handle('t-0,t-5')


def test_function_handles_are_minted_once_per_thread_set():
    function_map = FunctionMap()
    first = function_map.handle_for_function((0,), 7)
    assert first == 'f-1'
    assert function_map.handle_for_function([0], 7) == 'f-1'
    assert function_map.handle_for_function((0, 2), 7) == 'f-2'
    assert function_map.handle_for_function((2, 0), 7) == 'f-2'
    assert function_map.function_for_handle('f-1') == ((0,), 7)
    assert len(function_map) == 2


def test_marker_handles_round_trip():
    marker_map = MarkerMap()
    handles = [marker_map.handle_for_marker((1,), i) for i in (4, 0, 4)]
    assert handles == ['m-1', 'm-2', 'm-1']
    assert marker_map.marker_for_handle('m-2') == ((1,), 0)


def test_unknown_handles():
    with pytest.raises(QueryError, match='Unknown function handle: f-99'):
        FunctionMap().function_for_handle('f-99')
    with pytest.raises(QueryError, match='Unknown marker handle: m-1'):
        MarkerMap().marker_for_handle('m-1')
