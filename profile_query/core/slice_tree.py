# file: core/slice_tree.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
"""
CPU activity slices: nested "busy periods" of a CPU-ratio series.

The series is smoothed with a short moving average, split into maximal runs
whose smoothed ratio reaches the first threshold, and every run is split again
with the next threshold above the run's own average ratio. Only the slices
that contribute the most CPU time are displayed.
"""
from dataclasses import dataclass
from typing import List, Dict, Any, Optional, Sequence

import numpy as np
from scipy import ndimage

from profile_query.core.profile_state import CpuSeries
from profile_query.core.timestamps import TimestampManager

# Number of samples in the moving-average window applied before thresholding.
SMOOTHING_WINDOW_SIZE = 5

# Number of slices kept for display (by CPU time contribution).
MAX_DISPLAYED_SLICES = 20


@dataclass(slots=True)
class Slice:
    """A busy period covering series entries [start, end)."""
    start: int
    end: int
    avg: float
    sum: float
    parent: Optional[int]


@dataclass
class SliceTree:
    slices: List[Slice]
    time: np.ndarray
    elapsed: np.ndarray


def _moving_average(values: np.ndarray, window_size: int) -> np.ndarray:
    if len(values) == 0 or window_size <= 1:
        return values.astype(np.float64)
    kernel = np.ones(window_size)
    sums = np.convolve(values, kernel, mode='same')
    counts = np.convolve(np.ones(len(values)), kernel, mode='same')
    return sums / counts


def get_slices(thresholds: Sequence[float], series: CpuSeries,
               smoothing_window_size: int = SMOOTHING_WINDOW_SIZE) -> SliceTree:
    """
    Partitions a CPU-ratio series into a tree of busy periods.

    Args:
        thresholds (Sequence[float]): Ascending CPU-ratio thresholds.
        series (CpuSeries): The series to partition.
        smoothing_window_size (int): Width of the moving average, in samples.

    Returns:
        SliceTree: Slices in pre-order (every parent precedes its children).
    """
    cpu_ms = series.cpu_ms
    smoothed = _moving_average(series.ratio, smoothing_window_size)
    slices: List[Slice] = []

    def partition(lo: int, hi: int, threshold_index: int, parent: Optional[int]):
        labels, run_count = ndimage.label(smoothed[lo:hi] >= thresholds[threshold_index])
        if run_count == 0:
            return
        for run in ndimage.find_objects(labels):
            start, end = lo + run[0].start, lo + run[0].stop
            elapsed_sum = float(series.elapsed[start:end].sum())
            cpu_sum = float(cpu_ms[start:end].sum())
            avg = cpu_sum / elapsed_sum if elapsed_sum > 0 else 0.0

            next_index = next((j for j in range(threshold_index + 1, len(thresholds)) if thresholds[j] > avg), None)
            if parent is not None and (start, end) == (slices[parent].start, slices[parent].end):
                # Same extent as the parent at a higher threshold: nothing new to show.
                own_index = parent
            else:
                own_index = len(slices)
                slices.append(Slice(start, end, avg, cpu_sum, parent))
            if next_index is not None:
                partition(start, end, next_index, own_index)

    if len(series) and len(thresholds):
        partition(0, len(series), 0, None)
    return SliceTree(slices, series.time, series.elapsed)


def _displayed_slices(tree: SliceTree, max_slices: int):
    """Yields (slice, depth) for the heaviest slices, depth counting displayed ancestors only."""
    slices = tree.slices
    kept = set(sorted(range(len(slices)), key=lambda i: (-slices[i].sum, i))[:max_slices])
    depth_of: Dict[int, int] = {}
    for index in sorted(kept):
        depth = 0
        ancestor = slices[index].parent
        while ancestor is not None:
            if ancestor in kept:
                depth = depth_of[ancestor] + 1
                break
            ancestor = slices[ancestor].parent
        depth_of[index] = depth
        yield slices[index], depth


def collect_slice_tree(tree: SliceTree, timestamp_manager: TimestampManager,
                       max_slices: int = MAX_DISPLAYED_SLICES) -> List[Dict[str, Any]]:
    """Returns the displayed slices with named start/end timestamps, in pre-order."""
    result = []
    for slice_, depth in _displayed_slices(tree, max_slices):
        start_time = float(tree.time[slice_.start] - tree.elapsed[slice_.start])
        end_time = float(tree.time[slice_.end - 1])
        result.append({
            'startTime': start_time,
            'startTimeName': timestamp_manager.name_for_timestamp(start_time),
            'startTimeStr': timestamp_manager.timestamp_string(start_time),
            'endTime': end_time,
            'endTimeName': timestamp_manager.name_for_timestamp(end_time),
            'endTimeStr': timestamp_manager.timestamp_string(end_time),
            'cpuMs': slice_.sum,
            'depthLevel': depth,
        })
    return result
