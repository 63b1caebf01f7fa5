# file: core/profile_state.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
from collections import OrderedDict
from dataclasses import dataclass
from typing import List, Dict, Optional, Tuple, Sequence

import numpy as np

from profile_query.core.call_tree import CallTree, InvertedCallTree, FunctionTiming, compute_function_timings
from profile_query.core.definition import Marker, SampleTable, Profile, Thread
from profile_query.utils.logger_setup import logger

ThreadIndexes = Tuple[int, ...]


@dataclass(frozen=True)
class CommittedRange:
    """One entry of the zoom stack, in absolute profile time (milliseconds)."""
    start: float
    end: float

    def relative_to(self, zero_at: float) -> Tuple[float, float]:
        return self.start - zero_at, self.end - zero_at


@dataclass
class ThreadView:
    """One thread, or several threads merged into a single view."""
    thread_indexes: ThreadIndexes
    name: str
    friendly_name: str
    register_time: float
    unregister_time: Optional[float]
    samples: SampleTable
    markers: List[Marker]


@dataclass
class CpuSeries:
    """
    A CPU-usage time series. Entry k describes the interval `(time[k] - elapsed[k], time[k]]`:
    `ratio[k]` is the CPU ratio over that interval and `cpu_ms[k]` the CPU time spent in it.
    """
    time: np.ndarray
    elapsed: np.ndarray
    ratio: np.ndarray

    @property
    def cpu_ms(self) -> np.ndarray:
        return self.ratio * self.elapsed

    def __len__(self) -> int:
        return len(self.time)

    @property
    def max_ratio(self) -> float:
        return float(self.ratio.max()) if len(self.ratio) else 0.0

    def slice_range(self, start: float, end: float) -> 'CpuSeries':
        lo, hi = np.searchsorted(self.time, [start, end], side='left')
        return CpuSeries(self.time[lo:hi], self.elapsed[lo:hi], self.ratio[lo:hi])


def compute_root_range(profile: Profile) -> Tuple[float, float]:
    """
    Computes the time range covering every sample and marker of every thread.

    Returns:
        Tuple[float, float]: (start, end) in milliseconds.
    """
    start, end = np.inf, -np.inf
    interval = profile.meta.interval
    for thread in profile.threads:
        if len(thread.samples):
            start = min(start, float(thread.samples.time[0]))
            end = max(end, float(thread.samples.time[-1]) + interval)
        for marker in thread.markers:
            start = min(start, marker.start)
            end = max(end, marker.end if marker.end is not None else marker.start)
    if start == np.inf:
        return profile.meta.start_time, profile.meta.start_time + interval
    if end <= start:
        end = start + interval
    return start, end


def compute_thread_cpu_series(thread: Thread, interval: float) -> CpuSeries:
    """
    Derives the per-sample CPU ratio of one thread.

    With CPU deltas, the ratio is the CPU time since the previous sample divided
    by the elapsed wall time. Without them, every non-idle sample counts as fully
    busy for at most one sampling interval.
    """
    samples = thread.samples
    if len(samples) == 0:
        empty = np.empty(0, dtype=np.float64)
        return CpuSeries(empty, empty, empty)
    elapsed = np.diff(samples.time, prepend=samples.time[0] - interval)
    elapsed[elapsed <= 0] = interval
    if samples.cpu_delta is not None:
        ratio = samples.cpu_delta / elapsed
    else:
        busy = (samples.stack >= 0).astype(np.float64)
        ratio = busy * np.minimum(elapsed, interval) / elapsed
    return CpuSeries(samples.time.copy(), elapsed, ratio)


def combine_cpu_series(series_list: Sequence[CpuSeries], interval: float) -> CpuSeries:
    """
    Sums several CPU series onto the union of their sample times.

    Each series is treated as a step function: the ratio of entry k applies to
    the interval ending at its sample time.
    """
    non_empty = [s for s in series_list if len(s)]
    if not non_empty:
        empty = np.empty(0, dtype=np.float64)
        return CpuSeries(empty, empty, empty)
    if len(non_empty) == 1:
        return non_empty[0]

    time = np.unique(np.concatenate([s.time for s in non_empty]))
    ratio = np.zeros(len(time), dtype=np.float64)
    for series in non_empty:
        positions = np.searchsorted(series.time, time, side='left')
        inside = (positions < len(series.time))
        clipped = np.minimum(positions, len(series.time) - 1)
        covered_from = series.time[clipped] - series.elapsed[clipped]
        inside &= time > covered_from
        ratio += np.where(inside, series.ratio[clipped], 0.0)
    elapsed = np.diff(time, prepend=time[0] - interval)
    elapsed[elapsed <= 0] = interval
    return CpuSeries(time, elapsed, ratio)


# Derived results kept per (kind, thread set, range); the least recently used are dropped first.
DERIVED_CACHE_SIZE = 64


class ProfileState:
    """
    Read-only view of a loaded profile plus the mutable selection state used by
    the query facade: the selected thread set and the committed-range stack.
    Derived data (merged threads, call trees, function lists, CPU series) is
    computed on demand and memoized per thread set and range.
    """

    def __init__(self, profile: Profile, derived_cache_size: int = DERIVED_CACHE_SIZE):
        self.profile = profile
        self.root_range = compute_root_range(profile)
        self.committed_ranges: List[CommittedRange] = []
        self.selected_thread_indexes: ThreadIndexes = (self._default_thread_index(),) if profile.threads else ()
        self._thread_views: Dict[ThreadIndexes, ThreadView] = {}
        self._cpu_series: Dict[int, CpuSeries] = {}
        self._derived_cache: OrderedDict[Tuple[str, ThreadIndexes, Tuple[float, float]], object] = OrderedDict()
        self._derived_cache_size = derived_cache_size

    def _default_thread_index(self) -> int:
        threads = self.profile.threads
        for thread in threads:
            if thread.is_main_thread and thread.process_type == 'default' and len(thread.samples):
                return thread.index
        return max(threads, key=lambda t: (len(t.samples), -t.index)).index

    # ==========================================================================
    # Selection and committed ranges
    # ==========================================================================

    def select_threads(self, thread_indexes: Sequence[int]):
        indexes = tuple(sorted(set(thread_indexes)))
        for index in indexes:
            if not 0 <= index < len(self.profile.threads):
                raise IndexError(f"Thread index {index} is out of range")
        self.selected_thread_indexes = indexes

    @property
    def zero_at(self) -> float:
        return self.root_range[0]

    def commit_range(self, start: float, end: float):
        """Pushes an (absolute) range onto the zoom stack."""
        self.committed_ranges.append(CommittedRange(start, end))
        logger.debug(f"Committed range pushed: {start - self.zero_at:.3f}..{end - self.zero_at:.3f} "
                     f"(depth {len(self.committed_ranges)})")

    def pop_committed_range(self) -> Tuple[float, float]:
        """Pops the most recent range and returns it in absolute time."""
        popped = self.committed_ranges.pop()
        return popped.start, popped.end

    def clear_committed_ranges(self):
        self.committed_ranges.clear()

    def relative_committed_ranges(self) -> List[Tuple[float, float]]:
        """The zoom stack relative to the start of the root range."""
        return [committed.relative_to(self.zero_at) for committed in self.committed_ranges]

    @property
    def current_range(self) -> Tuple[float, float]:
        """The effective (absolute) range: the top of the zoom stack, or the root range."""
        if not self.committed_ranges:
            return self.root_range
        top = self.committed_ranges[-1]
        return top.start, top.end

    @property
    def is_zoomed(self) -> bool:
        return bool(self.committed_ranges)

    # ==========================================================================
    # Thread views
    # ==========================================================================

    def thread_view(self, thread_indexes: ThreadIndexes) -> ThreadView:
        if (cached := self._thread_views.get(thread_indexes)) is not None:
            return cached
        threads = [self.profile.threads[i] for i in thread_indexes]
        if len(threads) == 1:
            thread = threads[0]
            view = ThreadView(thread_indexes, thread.name, thread.friendly_name, thread.register_time,
                              thread.unregister_time, thread.samples, thread.markers)
        else:
            view = ThreadView(
                thread_indexes,
                ', '.join(t.name for t in threads),
                ', '.join(t.friendly_name for t in threads),
                min(t.register_time for t in threads),
                None if any(t.unregister_time is None for t in threads) else max(t.unregister_time for t in threads),
                _merge_samples([t.samples for t in threads]),
                sorted((m for t in threads for m in t.markers), key=lambda m: m.start),
            )
        self._thread_views[thread_indexes] = view
        return view

    def filtered_samples(self, thread_indexes: ThreadIndexes) -> SampleTable:
        start, end = self.current_range
        return self.thread_view(thread_indexes).samples.slice_range(start, end)

    def _memoized(self, kind: str, thread_indexes: ThreadIndexes, compute):
        key = (kind, thread_indexes, self.current_range)
        if key in self._derived_cache:
            self._derived_cache.move_to_end(key)
            return self._derived_cache[key]
        value = self._derived_cache[key] = compute()
        if len(self._derived_cache) > self._derived_cache_size:
            self._derived_cache.popitem(last=False)
        return value

    def call_tree(self, thread_indexes: ThreadIndexes) -> CallTree:
        return self._memoized('call-tree', thread_indexes, lambda: CallTree(
            self.profile.call_nodes, self.profile.funcs.name, self.filtered_samples(thread_indexes)))

    def inverted_call_tree(self, thread_indexes: ThreadIndexes) -> InvertedCallTree:
        return self._memoized('inverted-call-tree', thread_indexes, lambda: InvertedCallTree(
            self.profile.call_nodes, self.profile.funcs.name, self.filtered_samples(thread_indexes)))

    def function_timings(self, thread_indexes: ThreadIndexes) -> List[FunctionTiming]:
        return self._memoized('function-list', thread_indexes, lambda: compute_function_timings(
            self.profile.call_nodes, self.filtered_samples(thread_indexes)))

    # ==========================================================================
    # CPU usage
    # ==========================================================================

    @property
    def has_cpu_delta(self) -> bool:
        return any(t.samples.cpu_delta is not None for t in self.profile.threads)

    def thread_cpu_series(self, thread_index: int) -> CpuSeries:
        if (cached := self._cpu_series.get(thread_index)) is None:
            cached = compute_thread_cpu_series(self.profile.threads[thread_index], self.profile.meta.interval)
            self._cpu_series[thread_index] = cached
        return cached

    def thread_cpu_ms(self) -> List[float]:
        """Total CPU time of every thread over the whole profile, in milliseconds."""
        return [float(self.thread_cpu_series(t.index).cpu_ms.sum()) for t in self.profile.threads]

    def range_filtered_cpu_series(self, thread_indexes: Optional[ThreadIndexes] = None) -> CpuSeries:
        """
        The CPU series of the given threads (all threads when None), combined
        and restricted to the current committed range.
        """
        if thread_indexes is None:
            thread_indexes = tuple(t.index for t in self.profile.threads)
        combined = combine_cpu_series([self.thread_cpu_series(i) for i in thread_indexes], self.profile.meta.interval)
        start, end = self.current_range
        return combined.slice_range(start, end)


def _merge_samples(tables: Sequence[SampleTable]) -> SampleTable:
    time = np.concatenate([t.time for t in tables])
    order = np.argsort(time, kind='stable')
    cpu_delta = None
    if all(t.cpu_delta is not None for t in tables):
        cpu_delta = np.concatenate([t.cpu_delta for t in tables])[order]
    return SampleTable(
        time=time[order],
        stack=np.concatenate([t.stack for t in tables])[order],
        weight=np.concatenate([t.weight for t in tables])[order],
        cpu_delta=cpu_delta,
    )
