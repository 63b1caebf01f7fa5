# file: querier.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
"""
The query facade over one loaded profile.

`ProfileQuerier` owns everything that must stay stable between two calls of
the same session: the profile state (thread selection and zoom stack), the
timestamp names and the thread/function/marker handles. Every query returns a
plain dict (or, for thread selection, a message string) ready to be sent over
the wire and rendered by `formatters.py`.
"""
import math
from typing import List, Dict, Any, Optional, Tuple

from profile_query.core.call_tree_collector import (
    DEFAULT_MAX_NODES, DEFAULT_SCORING_STRATEGY, DEFAULT_MAX_DEPTH, DEFAULT_MAX_CHILDREN_PER_NODE,
    collect_call_tree,
)
from profile_query.core.data_loader import load_profile
from profile_query.core.definition import CPU_ACTIVITY_THRESHOLDS, NO_INDEX, Profile, Thread
from profile_query.core.function_list import (
    FunctionData, extract_function_data, format_function_name_with_library, library_name_for_function,
    sort_by_self, sort_by_total,
)
from profile_query.core.call_tree import compute_function_timings
from profile_query.core.handles import FunctionMap, MarkerMap, ThreadMap, ThreadIndexes
from profile_query.core.marker_analysis import (
    MarkerFilterOptions, collect_marker_info, collect_marker_stack, collect_thread_markers,
)
from profile_query.core.process_thread_list import ThreadCpuInfo, build_process_thread_list
from profile_query.core.profile_state import ProfileState
from profile_query.core.slice_tree import collect_slice_tree, get_slices
from profile_query.core.time_range import parse_time_value
from profile_query.core.timestamps import TimestampManager
from profile_query.errors import ArgumentError, QueryError
from profile_query.utils.logger_setup import logger

# Number of functions listed by `thread samples` in each of its two rankings.
TOP_FUNCTIONS_COUNT = 50

UNKNOWN_PROFILE_NAME = 'Unknown Profile'
UNKNOWN_PLATFORM = 'Unknown'


def build_process_index_map(threads: List[Thread]) -> Dict[str, int]:
    """Numbers the distinct pids of a profile in thread order (`p-0`, `p-1`, ...)."""
    process_index_map: Dict[str, int] = {}
    for thread in threads:
        if thread.pid not in process_index_map:
            process_index_map[thread.pid] = len(process_index_map)
    return process_index_map


def _function_summary(function_handle: str, data: FunctionData, profile: Profile) -> Dict[str, Any]:
    return {
        'functionHandle': function_handle,
        'functionIndex': data.func_index,
        'name': profile.funcs.name[data.func_index],
        'nameWithLibrary': data.func_name,
        'totalSamples': data.total,
        'totalPercentage': data.total_relative * 100,
        'selfSamples': data.self_time,
        'selfPercentage': data.self_relative * 100,
    }


class ProfileQuerier:
    """Handle-based queries and zoom navigation over a loaded profile."""

    def __init__(self, profile: Profile):
        self.profile = profile
        self.state = ProfileState(profile)
        self.timestamps = TimestampManager(self.state.root_range)
        self.thread_map = ThreadMap(len(profile.threads))
        self.function_map = FunctionMap()
        self.marker_map = MarkerMap()
        self.process_index_map = build_process_index_map(profile.threads)

    @classmethod
    def load(cls, path_or_url: str) -> 'ProfileQuerier':
        logger.info(f"Loading profile from {path_or_url}")
        return cls(load_profile(path_or_url))

    # ==========================================================================
    # Helpers
    # ==========================================================================

    def _resolve_threads(self, thread_handle: Optional[str]) -> Tuple[ThreadIndexes, str]:
        """Returns the thread indexes and canonical handle; the current selection when no handle is given."""
        if thread_handle:
            indexes = self.thread_map.thread_indexes_for_handle(thread_handle)
        else:
            indexes = self.state.selected_thread_indexes
            if not indexes:
                raise QueryError("The profile has no threads")
        return indexes, self.thread_map.handle_for_thread_indexes(indexes)

    def _named_range(self, start: float, end: float) -> Dict[str, Any]:
        return {
            'start': start,
            'startName': self.timestamps.name_for_timestamp(start),
            'end': end,
            'endName': self.timestamps.name_for_timestamp(end),
        }

    def _selected_threads(self) -> List[Dict[str, Any]]:
        return [{'threadIndex': i, 'name': self.profile.threads[i].name}
                for i in self.state.selected_thread_indexes]

    def _get_context(self) -> Dict[str, Any]:
        root_start, root_end = self.state.root_range
        current_view = None
        if self.state.is_zoomed:
            current_view = self._named_range(*self.state.current_range)
        return {
            'selectedThreadHandle': self.thread_map.handle_for_thread_indexes(self.state.selected_thread_indexes),
            'selectedThreads': self._selected_threads(),
            'currentViewRange': current_view,
            'rootRange': {'start': root_start, 'end': root_end},
        }

    def _with_context(self, result: Dict[str, Any]) -> Dict[str, Any]:
        result['context'] = self._get_context()
        return result

    def _cpu_activity(self, thread_indexes: Optional[ThreadIndexes] = None,
                      scale_thresholds: bool = False) -> List[Dict[str, Any]]:
        series = self.state.range_filtered_cpu_series(thread_indexes)
        thresholds = CPU_ACTIVITY_THRESHOLDS
        if scale_thresholds:
            # Several threads can be busy at once, so the combined ratio may exceed 1.
            scale = max(1, math.ceil(series.max_ratio))
            thresholds = tuple(t * scale for t in CPU_ACTIVITY_THRESHOLDS)
        return collect_slice_tree(get_slices(thresholds, series), self.timestamps)

    # ==========================================================================
    # Profile
    # ==========================================================================

    def profile_info(self) -> Dict[str, Any]:
        """Profile overview: busiest processes and threads plus combined CPU activity."""
        threads = self.profile.threads
        thread_cpu = self.state.thread_cpu_ms()
        summary = build_process_thread_list(
            [ThreadCpuInfo(t.index, t.pid, t.name, cpu_ms) for t, cpu_ms in zip(threads, thread_cpu)],
            self.process_index_map)

        processes = []
        for process in summary['processes']:
            process_threads = [t for t in threads if t.pid == process['pid']]
            main_thread = next((t for t in process_threads if t.is_main_thread), process_threads[0])
            start_time = main_thread.process_startup_time
            if start_time is None:
                start_time = min(t.register_time for t in process_threads)
            end_time = main_thread.process_shutdown_time
            processes.append({
                'processIndex': process['processIndex'],
                'pid': process['pid'],
                'name': main_thread.process_name or main_thread.process_type or 'unknown',
                'cpuMs': process['cpuMs'],
                'startTime': start_time,
                'startTimeName': self.timestamps.name_for_timestamp(start_time),
                'endTime': end_time,
                'endTimeName': None if end_time is None else self.timestamps.name_for_timestamp(end_time),
                'threads': [
                    {**thread, 'threadHandle': self.thread_map.handle_for_thread_index(thread['threadIndex'])}
                    for thread in process['threads']
                ],
                'remainingThreads': process['remainingThreads'],
            })

        return self._with_context({
            'type': 'profile-info',
            'name': self.profile.name or UNKNOWN_PROFILE_NAME,
            'platform': self.profile.meta.platform or UNKNOWN_PLATFORM,
            'threadCount': len(threads),
            'processCount': len(self.process_index_map),
            'processes': processes,
            'remainingProcesses': summary['remainingProcesses'],
            'cpuActivity': self._cpu_activity(scale_thresholds=True),
        })

    def profile_threads(self) -> Dict[str, Any]:
        thread_cpu = self.state.thread_cpu_ms()
        return self._with_context({
            'type': 'profile-threads',
            'threadCount': len(self.profile.threads),
            'threads': [
                {
                    'threadIndex': t.index,
                    'threadHandle': self.thread_map.handle_for_thread_index(t.index),
                    'name': t.name,
                    'friendlyName': t.friendly_name,
                    'processIndex': self.process_index_map.get(t.pid),
                    'pid': t.pid,
                    'tid': t.tid,
                    'isMainThread': t.is_main_thread,
                    'sampleCount': len(t.samples),
                    'markerCount': len(t.markers),
                    'cpuMs': cpu_ms,
                }
                for t, cpu_ms in zip(self.profile.threads, thread_cpu)
            ],
        })

    # ==========================================================================
    # Threads
    # ==========================================================================

    def thread_info(self, thread_handle: Optional[str] = None) -> Dict[str, Any]:
        indexes, handle = self._resolve_threads(thread_handle)
        view = self.state.thread_view(indexes)
        ended_at = view.unregister_time
        return self._with_context({
            'type': 'thread-info',
            'threadHandle': handle,
            'name': view.name,
            'friendlyName': view.friendly_name,
            'createdAt': view.register_time,
            'createdAtName': self.timestamps.name_for_timestamp(view.register_time),
            'endedAt': ended_at,
            'endedAtName': None if ended_at is None else self.timestamps.name_for_timestamp(ended_at),
            'sampleCount': len(view.samples),
            'markerCount': len(view.markers),
            'cpuActivity': self._cpu_activity(indexes),
        })

    def thread_select(self, thread_handle: str) -> str:
        indexes, handle = self._resolve_threads(thread_handle)
        self.state.select_threads(indexes)
        names = [self.profile.threads[i].name for i in indexes]
        logger.debug(f"Selected threads {handle}")
        if len(indexes) == 1:
            return f"Selected thread: {handle} ({names[0]})"
        return f"Selected {len(indexes)} threads: {handle} ({', '.join(names)})"

    def thread_samples(self, thread_handle: Optional[str] = None) -> Dict[str, Any]:
        """Top functions by total and by self time, and the heaviest call stack."""
        indexes, handle = self._resolve_threads(thread_handle)
        view = self.state.thread_view(indexes)
        functions = extract_function_data(self.state.function_timings(indexes), self.profile)
        by_func = {f.func_index: f for f in functions}

        def summarize(items: List[FunctionData]) -> List[Dict[str, Any]]:
            return [
                _function_summary(self.function_map.handle_for_function(indexes, f.func_index), f, self.profile)
                for f in items[:TOP_FUNCTIONS_COUNT]
            ]

        heaviest_stack = None
        tree = self.state.call_tree(indexes)
        if roots := tree.roots():
            path = tree.heaviest_path(roots[0])
            frames = []
            for node in path:
                data = by_func[tree.node_data(node).func_index]
                frames.append({
                    'funcIndex': data.func_index,
                    'name': self.profile.funcs.name[data.func_index],
                    'nameWithLibrary': data.func_name,
                    'totalSamples': data.total,
                    'totalPercentage': data.total_relative * 100,
                    'selfSamples': data.self_time,
                    'selfPercentage': data.self_relative * 100,
                })
            heaviest_stack = {
                'selfSamples': tree.node_data(path[-1]).self_time,
                'frameCount': len(frames),
                'frames': frames,
            }

        return self._with_context({
            'type': 'thread-samples',
            'threadHandle': handle,
            'friendlyThreadName': view.friendly_name,
            'topFunctionsByTotal': summarize(sort_by_total(functions)),
            'topFunctionsBySelf': summarize(sort_by_self(functions)),
            'heaviestStack': heaviest_stack,
        })

    def thread_samples_top_down(self, thread_handle: Optional[str] = None, max_nodes: int = DEFAULT_MAX_NODES,
                                scoring_strategy: str = DEFAULT_SCORING_STRATEGY,
                                max_depth: int = DEFAULT_MAX_DEPTH,
                                max_children_per_node: int = DEFAULT_MAX_CHILDREN_PER_NODE) -> Dict[str, Any]:
        indexes, handle = self._resolve_threads(thread_handle)
        tree = collect_call_tree(self.state.call_tree(indexes), self.function_map, indexes, self.profile,
                                 max_nodes, scoring_strategy, max_depth, max_children_per_node)
        return self._with_context({
            'type': 'thread-samples-top-down',
            'threadHandle': handle,
            'friendlyThreadName': self.state.thread_view(indexes).friendly_name,
            'regularCallTree': tree,
        })

    def thread_samples_bottom_up(self, thread_handle: Optional[str] = None, max_nodes: int = DEFAULT_MAX_NODES,
                                 scoring_strategy: str = DEFAULT_SCORING_STRATEGY,
                                 max_depth: int = DEFAULT_MAX_DEPTH,
                                 max_children_per_node: int = DEFAULT_MAX_CHILDREN_PER_NODE) -> Dict[str, Any]:
        indexes, handle = self._resolve_threads(thread_handle)
        tree = collect_call_tree(self.state.inverted_call_tree(indexes), self.function_map, indexes, self.profile,
                                 max_nodes, scoring_strategy, max_depth, max_children_per_node)
        return self._with_context({
            'type': 'thread-samples-bottom-up',
            'threadHandle': handle,
            'friendlyThreadName': self.state.thread_view(indexes).friendly_name,
            'invertedCallTree': tree,
        })

    def thread_markers(self, thread_handle: Optional[str] = None,
                       options: Optional[MarkerFilterOptions] = None) -> Dict[str, Any]:
        indexes, handle = self._resolve_threads(thread_handle)
        view = self.state.thread_view(indexes)
        return self._with_context(collect_thread_markers(
            self.profile, view.markers, indexes, handle, view.friendly_name, self.marker_map,
            options or MarkerFilterOptions()))

    def thread_functions(self, thread_handle: Optional[str] = None, search: Optional[str] = None,
                         min_self: Optional[float] = None, limit: Optional[int] = None) -> Dict[str, Any]:
        """
        The function list of a thread in the current range, sorted by self time.

        Args:
            thread_handle (Optional[str]): Thread(s) to list; the selection when None.
            search (Optional[str]): Case-insensitive substring of the `lib!name` display name.
            min_self (Optional[float]): Minimum self percentage (0-100).
            limit (Optional[int]): Maximum number of functions returned.

        Returns:
            Dict[str, Any]: The thread-functions result. When zoomed, `fullSelfPercentage`
            and `fullTotalPercentage` relate each function to the whole, unzoomed thread;
            otherwise they are None.
        """
        indexes, handle = self._resolve_threads(thread_handle)
        view = self.state.thread_view(indexes)
        functions = extract_function_data(self.state.function_timings(indexes), self.profile)
        full_timings = None
        if self.state.is_zoomed:
            full_timings = {t.func_index: t for t in compute_function_timings(self.profile.call_nodes, view.samples)}

        filtered = functions
        if search:
            needle = search.lower()
            filtered = [f for f in filtered if needle in f.func_name.lower()]
        if min_self is not None:
            filtered = [f for f in filtered if f.self_relative * 100 >= min_self]
        filtered = sort_by_self(filtered)
        listed = filtered[:limit] if limit is not None else filtered

        entries = []
        for f in listed:
            entry = {
                **_function_summary(self.function_map.handle_for_function(indexes, f.func_index), f, self.profile),
                'library': library_name_for_function(f.func_index, self.profile),
                'fullSelfPercentage': None,
                'fullTotalPercentage': None,
            }
            if full_timings is not None and (full := full_timings.get(f.func_index)):
                entry['fullSelfPercentage'] = full.self_relative * 100
                entry['fullTotalPercentage'] = full.total_relative * 100
            entries.append(entry)

        filters = None
        if search or min_self is not None or limit is not None:
            filters = {'searchString': search, 'minSelf': min_self, 'limit': limit}

        return self._with_context({
            'type': 'thread-functions',
            'threadHandle': handle,
            'friendlyThreadName': view.friendly_name,
            'totalFunctionCount': len(functions),
            'filteredFunctionCount': len(filtered),
            'filters': filters,
            'functions': entries,
        })

    # ==========================================================================
    # Markers
    # ==========================================================================

    def _resolve_marker(self, marker_handle: str):
        indexes, marker_index = self.marker_map.marker_for_handle(marker_handle)
        return indexes, marker_index, self.state.thread_view(indexes)

    def marker_info(self, marker_handle: str) -> Dict[str, Any]:
        indexes, marker_index, view = self._resolve_marker(marker_handle)
        return self._with_context(collect_marker_info(
            self.profile, view.markers, marker_index, marker_handle,
            self.thread_map.handle_for_thread_indexes(indexes), view.friendly_name))

    def marker_stack(self, marker_handle: str) -> Dict[str, Any]:
        indexes, marker_index, view = self._resolve_marker(marker_handle)
        return self._with_context(collect_marker_stack(
            self.profile, view.markers, marker_index, marker_handle,
            self.thread_map.handle_for_thread_indexes(indexes), view.friendly_name))

    # ==========================================================================
    # Functions
    # ==========================================================================

    def function_expand(self, function_handle: str) -> Dict[str, Any]:
        indexes, func_index = self.function_map.function_for_handle(function_handle)
        library = library_name_for_function(func_index, self.profile)
        return self._with_context({
            'type': 'function-expand',
            'functionHandle': function_handle,
            'funcIndex': func_index,
            'threadHandle': self.thread_map.handle_for_thread_indexes(indexes),
            'name': self.profile.funcs.name[func_index],
            'fullName': format_function_name_with_library(func_index, self.profile),
            'library': library,
        })

    def function_info(self, function_handle: str) -> Dict[str, Any]:
        indexes, func_index = self.function_map.function_for_handle(function_handle)
        funcs, resources = self.profile.funcs, self.profile.resources

        resource, library = None, None
        if (resource_index := funcs.resource[func_index]) != NO_INDEX:
            resource = {'name': resources.name[resource_index], 'index': resource_index}
            lib_index = resources.lib[resource_index]
            if lib_index != NO_INDEX and 0 <= lib_index < len(self.profile.libs):
                lib = self.profile.libs[lib_index]
                library = {
                    'name': lib.name,
                    'path': lib.path,
                    'debugName': lib.debug_name,
                    'debugPath': lib.debug_path,
                    'breakpadId': lib.breakpad_id,
                }

        return self._with_context({
            'type': 'function-info',
            'functionHandle': function_handle,
            'funcIndex': func_index,
            'threadHandle': self.thread_map.handle_for_thread_indexes(indexes),
            'threadName': ', '.join(self.profile.threads[i].name for i in indexes),
            'name': funcs.name[func_index],
            'fullName': format_function_name_with_library(func_index, self.profile),
            'isJS': funcs.is_js[func_index],
            'relevantForJS': funcs.relevant_for_js[func_index],
            'resource': resource,
            'library': library,
        })

    # ==========================================================================
    # Zoom
    # ==========================================================================

    def _resolve_time(self, value: str) -> float:
        if (ts := parse_time_value(value, self.state.root_range)) is not None:
            return ts
        if (ts := self.timestamps.timestamp_for_name(value)) is None:
            raise QueryError(f'Unknown timestamp name: "{value}"')
        return ts

    def _view_range_message(self, verb: str, start: float, end: float) -> str:
        return (f"{verb}: {self.timestamps.name_for_timestamp(start)} ({self.timestamps.timestamp_string(start)}) "
                f"to {self.timestamps.name_for_timestamp(end)} ({self.timestamps.timestamp_string(end)})")

    def push_view_range(self, range_name: str) -> Dict[str, Any]:
        """
        Zooms into a marker's interval (`m-12`) or an explicit `start,end` range.

        Raises:
            QueryError: If the marker is unknown or instant, or a timestamp name is unknown.
            ArgumentError: If the range literal is malformed or empty.
        """
        range_name = range_name.strip()
        marker_info = None
        if range_name.startswith('m-') and ',' not in range_name:
            indexes, marker_index, view = self._resolve_marker(range_name)
            marker = view.markers[marker_index]
            if not marker.is_interval:
                raise QueryError(f"Marker {range_name} is an instant marker (no duration). "
                                 f"Only interval markers can be used for zoom ranges.")
            start, end = marker.start, marker.end
            marker_info = {
                'markerHandle': range_name,
                'markerName': marker.name,
                'threadHandle': self.thread_map.handle_for_thread_indexes(indexes),
                'threadName': view.friendly_name,
            }
        else:
            parts = [part.strip() for part in range_name.split(',')]
            if len(parts) != 2:
                raise ArgumentError(
                    f'Invalid range format: "{range_name}". Expected a marker handle (e.g., "m-1") or two '
                    f'comma-separated values (e.g., "2.7,3.1" or "ts-6,ts-7")')
            start, end = self._resolve_time(parts[0]), self._resolve_time(parts[1])
            if end <= start:
                raise ArgumentError(f'Invalid range: "{range_name}" ends before it starts')

        self.state.commit_range(start, end)
        return self._with_context({
            'type': 'view-range',
            'action': 'push',
            'range': self._named_range(start, end),
            'message': self._view_range_message('Pushed view range', start, end),
            'duration': end - start,
            'zoomDepth': len(self.state.committed_ranges),
            'markerInfo': marker_info,
        })

    def pop_view_range(self) -> Dict[str, Any]:
        if not self.state.committed_ranges:
            raise QueryError("No view ranges to pop")
        start, end = self.state.pop_committed_range()
        return self._with_context({
            'type': 'view-range',
            'action': 'pop',
            'range': self._named_range(start, end),
            'message': self._view_range_message('Popped view range', start, end),
            'duration': end - start,
            'zoomDepth': len(self.state.committed_ranges),
            'markerInfo': None,
        })

    def clear_view_range(self) -> Dict[str, Any]:
        if not self.state.committed_ranges:
            raise QueryError("No view ranges to clear")
        self.state.clear_committed_ranges()
        start, end = self.state.root_range
        return self._with_context({
            'type': 'view-range',
            'action': 'clear',
            'range': self._named_range(start, end),
            'message': self._view_range_message('Cleared all view ranges, returned to full profile', start, end),
            'duration': end - start,
            'zoomDepth': 0,
            'markerInfo': None,
        })

    # ==========================================================================
    # Status
    # ==========================================================================

    def get_status(self) -> Dict[str, Any]:
        root_start, root_end = self.state.root_range
        return {
            'type': 'status',
            'selectedThreadHandle': self.thread_map.handle_for_thread_indexes(self.state.selected_thread_indexes),
            'selectedThreads': self._selected_threads(),
            'viewRanges': [self._named_range(r.start, r.end) for r in self.state.committed_ranges],
            'rootRange': {'start': root_start, 'end': root_end},
        }
