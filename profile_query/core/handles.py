# file: core/handles.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
"""
Short string handles for objects the user refers to across query calls.

`t-N` names a thread by its index; several threads viewed together are named
by their sorted, comma-joined single-thread handles (`t-2,t-4`). Functions
(`f-N`) and markers (`m-N`) are minted on first use, starting at 1, for a
(thread set, index) pair; asking again for the same pair returns the same handle.
"""
import itertools
import re
from typing import Dict, Iterable, Tuple

from profile_query.errors import QueryError

ThreadIndexes = Tuple[int, ...]

THREAD_HANDLE_PATTERN = re.compile(r'^t-(\d+)$')


class ThreadMap:
    """Maps thread indexes to `t-N` handles and back."""

    def __init__(self, thread_count: int):
        self._thread_count = thread_count

    def handle_for_thread_index(self, thread_index: int) -> str:
        return f't-{thread_index}'

    def handle_for_thread_indexes(self, thread_indexes: Iterable[int]) -> str:
        return ','.join(self.handle_for_thread_index(i) for i in sorted(set(thread_indexes)))

    def thread_indexes_for_handle(self, thread_handle: str) -> ThreadIndexes:
        """
        Resolves a thread handle (`t-3` or `t-0,t-1,t-2`) into sorted thread indexes.

        Raises:
            QueryError: If the handle is malformed or names a thread that does not exist.
        """
        indexes = set()
        for part in thread_handle.split(','):
            match = THREAD_HANDLE_PATTERN.match(part.strip())
            if not match:
                raise QueryError(f"Invalid thread handle: {thread_handle}")
            thread_index = int(match.group(1))
            if thread_index >= self._thread_count:
                raise QueryError(f"Unknown thread {part.strip()} (the profile has {self._thread_count} threads)")
            indexes.add(thread_index)
        return tuple(sorted(indexes))


class _IndexHandleMap:
    """Mints `<prefix>-N` handles for (thread set, index) pairs, N counting from 1."""

    prefix = ''
    kind = ''

    def __init__(self):
        self._counter = itertools.count(1)
        self._handle_by_key: Dict[Tuple[ThreadIndexes, int], str] = {}
        self._key_by_handle: Dict[str, Tuple[ThreadIndexes, int]] = {}

    def handle_for(self, thread_indexes: Iterable[int], index: int) -> str:
        key = (tuple(sorted(set(thread_indexes))), int(index))
        if (handle := self._handle_by_key.get(key)) is None:
            handle = f'{self.prefix}-{next(self._counter)}'
            self._handle_by_key[key] = handle
            self._key_by_handle[handle] = key
        return handle

    def lookup(self, handle: str) -> Tuple[ThreadIndexes, int]:
        if (key := self._key_by_handle.get(handle)) is None:
            raise QueryError(f"Unknown {self.kind} handle: {handle}")
        return key

    def __len__(self) -> int:
        return len(self._key_by_handle)


class FunctionMap(_IndexHandleMap):
    """Handles for functions (`f-N`) as seen from a thread set."""
    prefix = 'f'
    kind = 'function'

    def handle_for_function(self, thread_indexes: Iterable[int], func_index: int) -> str:
        return self.handle_for(thread_indexes, func_index)

    def function_for_handle(self, function_handle: str) -> Tuple[ThreadIndexes, int]:
        return self.lookup(function_handle)


class MarkerMap(_IndexHandleMap):
    """Handles for markers (`m-N`); the index is into the thread set's marker list."""
    prefix = 'm'
    kind = 'marker'

    def handle_for_marker(self, thread_indexes: Iterable[int], marker_index: int) -> str:
        return self.handle_for(thread_indexes, marker_index)

    def marker_for_handle(self, marker_handle: str) -> Tuple[ThreadIndexes, int]:
        return self.lookup(marker_handle)
