# file: core/timestamps.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
"""
Short, stable names for arbitrary timestamps of a profile.

The root range [start, end] is divided into 62 marks (`0-9`, then `a-z`
interleaved with `A-Z`). A timestamp gets the name of a fresh mark placed
between its two bracketing marks, proportionally to its position; when two
bracketing marks are adjacent there is no room left, so the name is extended
by one character and the gap between them is subdivided the same way. Names
handed out early are therefore short, and names never change once assigned.

Timestamps outside the root range fall into buckets that double in size with
the distance from the range: `ts<N...` before the start, `ts>N...` after the end.
"""
import bisect
import math
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Tuple

from profile_query.utils.format_numbers import format_timestamp


def _make_chars() -> List[str]:
    chars = [str(i) for i in range(10)]
    for i in range(26):
        chars.append(chr(ord('a') + i))
        chars.append(chr(ord('A') + i))
    return chars


CHARS = _make_chars()
MARKS_PER_LEVEL = len(CHARS)


@dataclass(slots=True)
class _Mark:
    """A named point in time; its children subdivide the gap up to the next sibling."""
    index: int
    timestamp: float
    children: Optional[List['_Mark']] = field(default=None)

    def name_for_timestamp(self, ts: float, end: float, prefix: str) -> str:
        """
        Names `ts`, which must lie in [self.timestamp, end).

        Args:
            ts (float): The timestamp to name.
            end (float): The timestamp of the next mark on this level.
            prefix (str): The name accumulated by the enclosing levels.

        Returns:
            str: The name of `ts`.
        """
        start = self.timestamp
        if ts < start or ts > end:
            raise ValueError(f"Timestamp {ts} is outside of [{start}, {end}]")
        if ts == start:
            return prefix

        if self.children is None:
            self.children = [_Mark(0, start), _Mark(MARKS_PER_LEVEL - 1, end)]

        i = bisect.bisect_right(self.children, ts, key=lambda mark: mark.timestamp) - 1
        if not 0 <= i < len(self.children) - 1:
            raise ValueError(f"Timestamp {ts} is outside of [{start}, {end})")
        left, right = self.children[i], self.children[i + 1]

        index_delta = right.index - left.index
        if index_delta == 1:
            return left.name_for_timestamp(ts, right.timestamp, prefix + CHARS[left.index])

        fraction = (ts - left.timestamp) / (right.timestamp - left.timestamp)
        item_index = left.index + 1 + math.floor(fraction * (index_delta - 1))
        self.children.insert(i + 1, _Mark(item_index, ts))
        return prefix + CHARS[item_index]


class TimestampManager:
    """Hands out and resolves timestamp names for one profile's root range."""

    def __init__(self, root_range: Tuple[float, float]):
        self._root_start, self._root_end = root_range
        self._root_length = self._root_end - self._root_start
        self._main_tree = _Mark(0, self._root_start)
        self._before_buckets: Dict[int, _Mark] = {}
        self._after_buckets: Dict[int, _Mark] = {}
        self._name_to_timestamp: Dict[str, float] = {}
        self._timestamp_to_name: Dict[float, str] = {}

    @property
    def root_start(self) -> float:
        return self._root_start

    def name_for_timestamp(self, ts: float) -> str:
        """Returns the (possibly newly assigned) name of `ts`."""
        ts = float(ts)
        if (cached := self._timestamp_to_name.get(ts)) is not None:
            return cached

        if ts == self._root_start:
            name = 'ts-0'
        elif ts == self._root_end:
            name = 'ts-Z'
        elif ts < self._root_start:
            bucket_num = self._bucket_number(self._root_start - ts)
            bucket = self._before_bucket(bucket_num)
            name = bucket.name_for_timestamp(ts, self._before_bucket_end(bucket_num), f'ts<{bucket_num}')
        elif ts > self._root_end:
            bucket_num = self._bucket_number(ts - self._root_end)
            if ts == self._after_bucket_end(bucket_num):
                # The end of a bucket is the start of the next one.
                bucket_num += 1
            bucket = self._after_bucket(bucket_num)
            name = bucket.name_for_timestamp(ts, self._after_bucket_end(bucket_num), f'ts>{bucket_num}')
        else:
            name = self._main_tree.name_for_timestamp(ts, self._root_end, 'ts-')

        self._name_to_timestamp[name] = ts
        self._timestamp_to_name[ts] = name
        return name

    def timestamp_for_name(self, name: str) -> Optional[float]:
        """
        Resolves a name previously returned by `name_for_timestamp`; None if unknown.
        `ts-0` and `ts-Z` (the root range bounds) always resolve.
        """
        if (ts := self._name_to_timestamp.get(name)) is not None:
            return ts
        if name == 'ts-0':
            return self._root_start
        if name == 'ts-Z':
            return self._root_end
        return None

    def timestamp_string(self, ts: float) -> str:
        """Formats `ts` relative to the start of the root range (e.g. '1.25s')."""
        return format_timestamp(ts - self._root_start)

    # --- Out-of-range buckets ---

    def _bucket_number(self, distance: float) -> int:
        if self._root_length <= 0:
            return 0
        ratio = distance / self._root_length
        if ratio <= 1:
            return 0
        return math.ceil(math.log2(ratio))

    def _before_bucket_start(self, bucket_num: int) -> float:
        return self._root_start - (2 ** bucket_num) * self._root_length

    def _before_bucket_end(self, bucket_num: int) -> float:
        if bucket_num == 0:
            return self._root_start
        return self._root_start - (2 ** (bucket_num - 1)) * self._root_length

    def _after_bucket_start(self, bucket_num: int) -> float:
        if bucket_num == 0:
            return self._root_end
        return self._root_end + (2 ** (bucket_num - 1)) * self._root_length

    def _after_bucket_end(self, bucket_num: int) -> float:
        return self._root_end + (2 ** bucket_num) * self._root_length

    def _before_bucket(self, bucket_num: int) -> _Mark:
        if (bucket := self._before_buckets.get(bucket_num)) is None:
            bucket = _Mark(0, self._before_bucket_start(bucket_num))
            self._before_buckets[bucket_num] = bucket
        return bucket

    def _after_bucket(self, bucket_num: int) -> _Mark:
        if (bucket := self._after_buckets.get(bucket_num)) is None:
            bucket = _Mark(0, self._after_bucket_start(bucket_num))
            self._after_buckets[bucket_num] = bucket
        return bucket
