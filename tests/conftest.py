# file: tests/conftest.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
"""
Builders for small processed profiles.

Stacks are written root-first as space-separated function names, e.g.
"main A B"; a name of the form "lib!func" attributes the function to `lib`.
A stack of None is an idle sample.
"""
import json
import shutil
import tempfile
from pathlib import Path
from typing import List, Dict, Any, Optional

import pytest

from profile_query.core.data_loader import parse_profile
from profile_query.core.definition import Profile
from profile_query.utils.session import SessionStore

CATEGORIES = [
    {'name': 'Other', 'color': 'grey'},
    {'name': 'Layout', 'color': 'purple'},
    {'name': 'Graphics', 'color': 'green'},
]

DOM_EVENT_SCHEMA = {
    'name': 'DOMEvent',
    'tableLabel': '{marker.data.eventType}',
    'tooltipLabel': '{marker.data.eventType} - DOMEvent',
    'description': 'A DOM event dispatched to content.',
    'fields': [
        {'key': 'eventType', 'label': 'Event Type', 'format': 'string'},
        {'key': 'latency', 'label': 'Latency', 'format': 'duration'},
    ],
}


class _ThreadBuilder:
    def __init__(self, profile_builder: 'ProfileBuilder'):
        self._libs = profile_builder.libs
        self.strings: List[str] = []
        self._string_index: Dict[str, int] = {}
        self.func_names: List[int] = []
        self.func_resources: List[int] = []
        self._func_index: Dict[str, int] = {}
        self.resource_names: List[int] = []
        self.resource_libs: List[int] = []
        self._resource_index: Dict[str, int] = {}
        self.stack_frames: List[int] = []
        self.stack_prefixes: List[Optional[int]] = []
        self._stack_index: Dict[tuple, int] = {}

    def string(self, value: str) -> int:
        if value not in self._string_index:
            self._string_index[value] = len(self.strings)
            self.strings.append(value)
        return self._string_index[value]

    def _resource(self, lib_name: str) -> int:
        if lib_name not in self._resource_index:
            if lib_name not in self._libs:
                self._libs.append(lib_name)
            self._resource_index[lib_name] = len(self.resource_names)
            self.resource_names.append(self.string(lib_name))
            self.resource_libs.append(self._libs.index(lib_name))
        return self._resource_index[lib_name]

    def func(self, name: str) -> int:
        if name not in self._func_index:
            lib_name, bang, func_name = name.partition('!')
            resource = self._resource(lib_name) if bang else -1
            self._func_index[name] = len(self.func_names)
            self.func_names.append(self.string(func_name if bang else name))
            self.func_resources.append(resource)
        return self._func_index[name]

    def stack(self, stack_text: Optional[str]) -> Optional[int]:
        if not stack_text:
            return None
        prefix = None
        for name in stack_text.split():
            # Frame i is function i.
            frame = self.func(name)
            key = (prefix, frame)
            if key not in self._stack_index:
                self._stack_index[key] = len(self.stack_frames)
                self.stack_frames.append(frame)
                self.stack_prefixes.append(prefix)
            prefix = self._stack_index[key]
        return prefix


class ProfileBuilder:
    """Assembles a raw processed profile and decodes it with `parse_profile`."""

    def __init__(self, interval: float = 1.0, name: str = 'Test Profile', platform: str = 'Linux x86_64'):
        self.interval = interval
        self.name = name
        self.platform = platform
        self.libs: List[str] = []
        self.threads: List[Dict[str, Any]] = []

    def add_thread(self, stacks: List[Optional[str]], name: str = 'GeckoMain', process_name: str = 'firefox',
                   process_type: str = 'default', pid: int = 100, tid: int = 1, is_main: bool = True,
                   start: float = 0.0, times: Optional[List[float]] = None,
                   cpu_delta: Optional[List[float]] = None,
                   markers: Optional[List[Dict[str, Any]]] = None) -> int:
        """
        Adds a thread; returns its index.

        Markers are dicts with `name`, `start`, optional `end` (instant when
        missing), `category`, `data` and `stack` (a stack string captured as
        the marker's cause).
        """
        builder = _ThreadBuilder(self)
        sample_stacks = [builder.stack(s) for s in stacks]
        if times is None:
            times = [start + i * self.interval for i in range(len(stacks))]

        raw_markers = {'name': [], 'startTime': [], 'endTime': [], 'phase': [], 'category': [], 'data': []}
        for marker in markers or []:
            data = dict(marker['data']) if marker.get('data') else None
            if marker.get('stack'):
                data = data or {'type': 'Backtrace'}
                data['cause'] = {'stack': builder.stack(marker['stack']), 'time': marker['start']}
            end = marker.get('end')
            raw_markers['name'].append(builder.string(marker['name']))
            raw_markers['startTime'].append(marker['start'])
            raw_markers['endTime'].append(end)
            raw_markers['phase'].append(0 if end is None else 1)
            raw_markers['category'].append(marker.get('category', 0))
            raw_markers['data'].append(data)
        raw_markers['length'] = len(raw_markers['name'])

        samples = {'length': len(stacks), 'stack': sample_stacks, 'time': list(times)}
        if cpu_delta is not None:
            samples['threadCPUDelta'] = cpu_delta

        func_count = len(builder.func_names)
        self.threads.append({
            'name': name,
            'processName': process_name,
            'processType': process_type,
            'pid': pid,
            'tid': tid,
            'isMainThread': is_main,
            'stringArray': builder.strings,
            'resourceTable': {
                'length': len(builder.resource_names),
                'name': builder.resource_names,
                'lib': builder.resource_libs,
            },
            'funcTable': {
                'length': func_count,
                'name': builder.func_names,
                'resource': builder.func_resources,
                'isJS': [False] * func_count,
                'relevantForJS': [False] * func_count,
                'fileName': [None] * func_count,
            },
            'frameTable': {'length': func_count, 'func': list(range(func_count))},
            'stackTable': {
                'length': len(builder.stack_frames),
                'frame': builder.stack_frames,
                'prefix': builder.stack_prefixes,
            },
            'samples': samples,
            'markers': raw_markers,
        })
        return len(self.threads) - 1

    def build_raw(self) -> Dict[str, Any]:
        return {
            'meta': {
                'interval': self.interval,
                'startTime': 0,
                'profileName': self.name,
                'oscpu': self.platform,
                'categories': CATEGORIES,
                'markerSchema': [DOM_EVENT_SCHEMA],
                'sampleUnits': {'threadCPUDelta': 'ms'},
            },
            'libs': [{'name': lib, 'path': f'/usr/lib/{lib}', 'debugName': lib, 'debugPath': f'/usr/lib/{lib}',
                      'breakpadId': 'ABCDEF0123456789'} for lib in self.libs],
            'threads': self.threads,
        }

    def build(self) -> Profile:
        return parse_profile(self.build_raw())


def sample_profile_builder() -> ProfileBuilder:
    """
    Three threads in two processes:

    t-0  firefox main thread (pid 100): 10 samples at 0..9 ms
         main A B x6, main A C x3, main D x1; four markers
    t-1  Renderer (pid 100): main X x2 then two idle samples
    t-2  content main thread (pid 200): main Y Z x4
    """
    builder = ProfileBuilder()
    builder.add_thread(
        ['main A B'] * 6 + ['main A C'] * 3 + ['main D'],
        markers=[
            {'name': 'DOMEvent', 'start': 1.0, 'end': 3.0, 'data': {'type': 'DOMEvent', 'eventType': 'click'}},
            {'name': 'Paint', 'start': 2.0, 'category': 2},
            {'name': 'DOMEvent', 'start': 4.0, 'end': 5.0, 'data': {'type': 'DOMEvent', 'eventType': 'keydown'}},
            {'name': 'Reflow', 'start': 6.0, 'end': 9.0, 'category': 1, 'stack': 'main A B'},
        ])
    builder.add_thread(['main X', 'main X', None, None], name='Renderer', tid=2, is_main=False)
    builder.add_thread(['main Y Z'] * 4, process_name='content', process_type='tab', pid=200, tid=3)
    return builder


@pytest.fixture
def profile_builder() -> ProfileBuilder:
    return ProfileBuilder()


@pytest.fixture
def sample_profile() -> Profile:
    return sample_profile_builder().build()


@pytest.fixture
def sample_profile_path(tmp_path) -> str:
    path = tmp_path / 'sample.json'
    path.write_text(json.dumps(sample_profile_builder().build_raw()))
    return str(path)


@pytest.fixture
def session_store():
    # Unix socket paths are limited to ~100 bytes, so stay out of the deep pytest tmp tree.
    session_dir = tempfile.mkdtemp(prefix='pq-')
    yield SessionStore(Path(session_dir))
    shutil.rmtree(session_dir, ignore_errors=True)
