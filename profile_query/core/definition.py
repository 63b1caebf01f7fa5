# file: core.definition.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Tuple

import numpy as np

# ==============================================================================
# Constants
# ==============================================================================

# Sentinel used in integer index columns for "no value" (a null stack, a root prefix, ...).
NO_INDEX = -1

# Fallback sampling interval in milliseconds when a profile does not declare one.
DEFAULT_INTERVAL_MS = 1.0

# Name used when a marker references a category index outside the category list.
UNKNOWN_CATEGORY_NAME = 'Unknown'

# Thresholds of the per-thread CPU activity tree. Per-thread CPU ratios are in [0, 1];
# the combined (all threads) series is scaled by ceil(max ratio) before use.
CPU_ACTIVITY_THRESHOLDS = (0.05, 0.2, 0.4, 0.6, 0.8)

# Conversion factors from the declared `threadCPUDelta` unit to milliseconds.
# Unknown units (e.g. 'variable CPU cycles') are normalised against the busiest sample.
CPU_DELTA_UNIT_TO_MS = {'ns': 1e-6, 'µs': 1e-3, 'us': 1e-3, 'ms': 1.0}

# Friendly names for main threads, keyed by process type.
PROCESS_TYPE_FRIENDLY_NAMES = {
    'default': 'Parent Process',
    'gpu': 'GPU Process',
    'tab': 'Content Process',
    'web': 'Content Process',
    'rdd': 'Remote Data Decoder',
    'socket': 'Socket Process',
    'plugin': 'Plugin Process',
    'utility': 'Utility Process',
}

# ==============================================================================
# Core Data Structures
# ==============================================================================

@dataclass
class Lib:
    """A shared library (or executable) that functions can be attributed to."""
    name: str
    path: str = ''
    debug_name: str = ''
    debug_path: str = ''
    breakpad_id: str = ''


@dataclass
class Category:
    """A sample/marker category (e.g. 'JavaScript', 'GC / CC', 'Other')."""
    name: str
    color: str = 'grey'


@dataclass
class ProfileMeta:
    """
    Profile-wide metadata: timing base, product and platform names, the marker
    schema table (keyed by marker type) and the category list.
    """
    interval: float = DEFAULT_INTERVAL_MS
    start_time: float = 0.0
    product: str = ''
    platform: str = ''
    categories: List[Category] = field(default_factory=list)
    marker_schema: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    cpu_delta_unit: Optional[str] = None


@dataclass(slots=True, eq=False)
class Marker:
    """
    A single marker of a thread. Instant markers have no end time; interval
    markers carry both `start` and `end` in milliseconds.

    `data` is the marker's free-form payload. When the marker captured a
    backtrace, `data['cause']['stack']` holds an index into the profile's
    call-node table.
    """
    name: str
    start: float
    end: Optional[float]
    category: int
    data: Optional[Dict[str, Any]]
    thread_index: int = NO_INDEX

    @property
    def is_interval(self) -> bool:
        return self.end is not None

    @property
    def duration(self) -> Optional[float]:
        return None if self.end is None else self.end - self.start

    @property
    def marker_type(self) -> Optional[str]:
        if self.data and isinstance(self.data.get('type'), str):
            return self.data['type']
        return None

    @property
    def cause(self) -> Optional[Dict[str, Any]]:
        if self.data and isinstance(self.data.get('cause'), dict):
            return self.data['cause']
        return None

    @property
    def has_stack(self) -> bool:
        return bool(self.data and self.data.get('cause'))


@dataclass
class FuncTable:
    """Profile-global function table, interned by (name, resource, is_js)."""
    name: List[str] = field(default_factory=list)
    resource: List[int] = field(default_factory=list)
    is_js: List[bool] = field(default_factory=list)
    relevant_for_js: List[bool] = field(default_factory=list)
    file_name: List[Optional[str]] = field(default_factory=list)
    _index: Dict[Tuple[str, int, bool], int] = field(default_factory=dict, repr=False)

    def __len__(self) -> int:
        return len(self.name)

    def intern(self, name: str, resource: int, is_js: bool, relevant_for_js: bool, file_name: Optional[str]) -> int:
        key = (name, resource, is_js)
        if (existing := self._index.get(key)) is not None:
            return existing
        func_index = len(self.name)
        self.name.append(name)
        self.resource.append(resource)
        self.is_js.append(is_js)
        self.relevant_for_js.append(relevant_for_js)
        self.file_name.append(file_name)
        self._index[key] = func_index
        return func_index


@dataclass
class ResourceTable:
    """Profile-global resource table; `lib` indexes into `Profile.libs` or is NO_INDEX."""
    name: List[str] = field(default_factory=list)
    lib: List[int] = field(default_factory=list)
    _index: Dict[Tuple[str, int], int] = field(default_factory=dict, repr=False)

    def __len__(self) -> int:
        return len(self.name)

    def intern(self, name: str, lib: int) -> int:
        key = (name, lib)
        if (existing := self._index.get(key)) is not None:
            return existing
        resource_index = len(self.name)
        self.name.append(name)
        self.lib.append(lib)
        self._index[key] = resource_index
        return resource_index


class CallNodeTable:
    """
    Profile-global table of call nodes: every distinct (prefix, func) path.

    A node's prefix always has a lower index than the node itself, so totals can
    be accumulated by walking depth levels from the deepest to the shallowest.
    Nodes are appended while loading and the columns are frozen into numpy
    arrays by `freeze()`.
    """

    def __init__(self):
        self._prefix: List[int] = []
        self._func: List[int] = []
        self._depth: List[int] = []
        self._index: Dict[Tuple[int, int], int] = {}
        self.prefix = np.empty(0, dtype=np.int64)
        self.func = np.empty(0, dtype=np.int64)
        self.depth = np.empty(0, dtype=np.int64)

    def __len__(self) -> int:
        return len(self._prefix)

    def intern(self, prefix: int, func: int) -> int:
        key = (prefix, func)
        if (existing := self._index.get(key)) is not None:
            return existing
        node_index = len(self._prefix)
        self._prefix.append(prefix)
        self._func.append(func)
        self._depth.append(0 if prefix == NO_INDEX else self._depth[prefix] + 1)
        self._index[key] = node_index
        return node_index

    def freeze(self):
        self.prefix = np.asarray(self._prefix, dtype=np.int64)
        self.func = np.asarray(self._func, dtype=np.int64)
        self.depth = np.asarray(self._depth, dtype=np.int64)

    def path(self, node_index: int) -> List[int]:
        """Returns the function path from the root down to `node_index`."""
        funcs = []
        while node_index != NO_INDEX:
            funcs.append(self._func[node_index])
            node_index = self._prefix[node_index]
        funcs.reverse()
        return funcs


@dataclass
class SampleTable:
    """
    Column-oriented samples of one (possibly merged) thread, sorted by time.

    `stack` holds call-node indexes (NO_INDEX for idle/empty samples).
    `cpu_delta` holds CPU time in milliseconds spent since the previous sample,
    or is None when the profile carries no CPU usage information.
    """
    time: np.ndarray
    stack: np.ndarray
    weight: np.ndarray
    cpu_delta: Optional[np.ndarray] = None

    def __len__(self) -> int:
        return len(self.time)

    @classmethod
    def empty(cls) -> 'SampleTable':
        return cls(np.empty(0, dtype=np.float64), np.empty(0, dtype=np.int64), np.empty(0, dtype=np.float64), None)

    def slice_range(self, start: float, end: float) -> 'SampleTable':
        """Returns the samples with `start <= time < end`."""
        lo, hi = np.searchsorted(self.time, [start, end], side='left')
        return SampleTable(
            self.time[lo:hi], self.stack[lo:hi], self.weight[lo:hi],
            None if self.cpu_delta is None else self.cpu_delta[lo:hi])


@dataclass
class Thread:
    """A thread of the profile with its samples and markers."""
    index: int
    name: str
    process_name: str = ''
    process_type: str = ''
    pid: str = ''
    tid: str = ''
    is_main_thread: bool = False
    register_time: float = 0.0
    unregister_time: Optional[float] = None
    process_startup_time: Optional[float] = None
    process_shutdown_time: Optional[float] = None
    samples: SampleTable = field(default_factory=SampleTable.empty)
    markers: List[Marker] = field(default_factory=list)

    @property
    def friendly_name(self) -> str:
        """A human-oriented name; main threads are named after their process."""
        if self.is_main_thread or self.name == 'GeckoMain':
            if self.process_name:
                return self.process_name
            if friendly := PROCESS_TYPE_FRIENDLY_NAMES.get(self.process_type):
                return friendly
        return self.name


@dataclass
class Profile:
    """A fully decoded profile, ready to be queried."""
    meta: ProfileMeta
    libs: List[Lib]
    funcs: FuncTable
    resources: ResourceTable
    call_nodes: CallNodeTable
    threads: List[Thread]
    name: str = ''

    def category_name(self, category_index: int) -> str:
        categories = self.meta.categories
        if 0 <= category_index < len(categories):
            return categories[category_index].name
        return UNKNOWN_CATEGORY_NAME
