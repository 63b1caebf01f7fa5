# file: tests/test_profile_state.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
from profile_query.core.profile_state import ProfileState

MAIN_THREAD = (0,)


def test_call_trees_are_memoized_per_range(sample_profile):
    state = ProfileState(sample_profile)
    tree = state.call_tree(MAIN_THREAD)
    assert state.call_tree(MAIN_THREAD) is tree

    start, _ = state.root_range
    state.commit_range(start + 1, start + 5)
    zoomed = state.call_tree(MAIN_THREAD)
    assert zoomed is not tree
    assert zoomed.root_total == 4

    state.pop_committed_range()
    assert state.call_tree(MAIN_THREAD) is tree


def test_derived_cache_keeps_only_recent_ranges(sample_profile):
    state = ProfileState(sample_profile, derived_cache_size=3)
    start, _ = state.root_range
    full_tree = state.call_tree(MAIN_THREAD)

    for offset in range(1, 9):
        state.commit_range(start + offset * 0.5, start + 9.5)
        state.call_tree(MAIN_THREAD)
        state.function_timings(MAIN_THREAD)
        state.pop_committed_range()
        assert len(state._derived_cache) <= 3

    # The unzoomed tree was evicted and is rebuilt with the same totals.
    rebuilt = state.call_tree(MAIN_THREAD)
    assert rebuilt is not full_tree
    assert rebuilt.root_total == full_tree.root_total


def test_recently_used_entries_survive_eviction(sample_profile):
    state = ProfileState(sample_profile, derived_cache_size=2)
    start, _ = state.root_range
    full_tree = state.call_tree(MAIN_THREAD)

    state.commit_range(start + 1, start + 5)
    state.call_tree(MAIN_THREAD)
    state.pop_committed_range()
    assert state.call_tree(MAIN_THREAD) is full_tree

    state.commit_range(start + 2, start + 6)
    state.call_tree(MAIN_THREAD)
    state.pop_committed_range()
    assert state.call_tree(MAIN_THREAD) is full_tree
