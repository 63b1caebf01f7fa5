# file: core/data_loader.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
import gzip
import json
from pathlib import Path
from typing import List, Dict, Any, Optional, Tuple

import numpy as np
import requests

from profile_query.core.definition import (
    NO_INDEX, DEFAULT_INTERVAL_MS, CPU_DELTA_UNIT_TO_MS,
    Lib, Category, ProfileMeta, Marker, FuncTable, ResourceTable, CallNodeTable,
    SampleTable, Thread, Profile,
)
from profile_query.errors import ProfileLoadError
from profile_query.utils.logger_setup import logger

# Timeout (seconds) when fetching a profile over HTTP(S).
URL_FETCH_TIMEOUT_S = 60

# Marker phases of the processed profile format.
PHASE_INSTANT = 0
PHASE_INTERVAL = 1
PHASE_INTERVAL_START = 2
PHASE_INTERVAL_END = 3

GZIP_MAGIC = b'\x1f\x8b'


def is_url(path_or_url: str) -> bool:
    return path_or_url.startswith('http://') or path_or_url.startswith('https://')


def load_profile(path_or_url: str) -> Profile:
    """
    Loads a processed profile from a local file or an HTTP(S) URL.

    Gzip-compressed content is detected by its magic bytes, so both `.json`
    and `.json.gz` files (and compressed HTTP payloads) are accepted.

    Args:
        path_or_url (str): A filesystem path or an http(s) URL.

    Returns:
        Profile: The decoded profile.

    Raises:
        ProfileLoadError: If the content cannot be fetched, decompressed or decoded.
    """
    raw_bytes = _fetch_url(path_or_url) if is_url(path_or_url) else _read_file(Path(path_or_url))
    if raw_bytes[:2] == GZIP_MAGIC:
        logger.debug("  Detected gzip-compressed profile, decompressing...")
        try:
            raw_bytes = gzip.decompress(raw_bytes)
        except (OSError, EOFError) as e:
            raise ProfileLoadError(f"Could not decompress '{path_or_url}': {e}") from e

    try:
        raw_data = json.loads(raw_bytes)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error(f"  [Error] '{path_or_url}' is not a valid JSON file. Error: {e}")
        raise ProfileLoadError(f"'{path_or_url}' is not a valid JSON profile: {e}") from e

    profile = parse_profile(raw_data, default_name=_default_profile_name(path_or_url))
    sample_count = sum(len(t.samples) for t in profile.threads)
    marker_count = sum(len(t.markers) for t in profile.threads)
    logger.info(f"  Loaded profile '{profile.name}': {len(profile.threads)} threads, "
                f"{sample_count} samples, {marker_count} markers, {len(profile.funcs)} functions.")
    return profile


def _read_file(file_path: Path) -> bytes:
    logger.info(f"  Loading profile file: {file_path}...")
    try:
        return file_path.read_bytes()
    except FileNotFoundError as e:
        raise ProfileLoadError(f"File not found: {file_path}") from e
    except MemoryError as e:
        logger.error(f"  [Error] File is too large, ran out of memory: {e}")
        raise ProfileLoadError(f"File is too large: {file_path}") from e
    except OSError as e:
        raise ProfileLoadError(f"Could not read '{file_path}': {e}") from e


def _fetch_url(url: str) -> bytes:
    logger.info(f"  Fetching profile from [{url}]...")
    try:
        response = requests.get(url, timeout=URL_FETCH_TIMEOUT_S)
        response.raise_for_status()
    except requests.exceptions.RequestException as err:
        raise ProfileLoadError(f"Could not fetch '{url}': {err}") from err
    return response.content


def _default_profile_name(path_or_url: str) -> str:
    name = path_or_url.rstrip('/').rsplit('/', 1)[-1]
    return name.removesuffix('.gz').removesuffix('.json') or path_or_url


# ==============================================================================
# Processed profile decoding
# ==============================================================================

def parse_profile(raw_data: Any, default_name: str = '') -> Profile:
    """
    Decodes a processed profile object into the in-memory `Profile` model.

    Per-thread function, frame and stack tables are interned into profile-global
    tables, so threads can later be merged by simply concatenating their samples.

    Args:
        raw_data (Any): The parsed JSON document.
        default_name (str): Name to use when the profile metadata carries none.

    Returns:
        Profile: The decoded profile.
    """
    if not isinstance(raw_data, dict) or not isinstance(raw_data.get('meta'), dict) \
            or not isinstance(raw_data.get('threads'), list):
        raise ProfileLoadError("The content is not a processed profile (missing 'meta' or 'threads').")

    meta = _parse_meta(raw_data['meta'])
    libs = [_parse_lib(lib) for lib in raw_data.get('libs', []) if isinstance(lib, dict)]
    shared_strings = (raw_data.get('shared') or {}).get('stringArray')

    funcs, resources, call_nodes = FuncTable(), ResourceTable(), CallNodeTable()
    threads: List[Thread] = []
    for thread_index, raw_thread in enumerate(raw_data['threads']):
        try:
            threads.append(_parse_thread(thread_index, raw_thread, shared_strings, meta, funcs, resources, call_nodes))
        except (KeyError, IndexError, TypeError, ValueError) as e:
            logger.error(f"  [Error] Thread #{thread_index} is malformed: {e}")
            raise ProfileLoadError(f"Thread #{thread_index} is malformed: {e}") from e
    call_nodes.freeze()

    raw_meta = raw_data['meta']
    name = raw_meta.get('profileName') or default_name or meta.product or 'Unknown Profile'
    return Profile(meta=meta, libs=libs, funcs=funcs, resources=resources,
                   call_nodes=call_nodes, threads=threads, name=name)


def _parse_meta(raw_meta: Dict[str, Any]) -> ProfileMeta:
    categories = [
        Category(name=c.get('name', 'Other'), color=c.get('color', 'grey'))
        for c in raw_meta.get('categories') or [] if isinstance(c, dict)
    ]
    marker_schema = {}
    for schema in raw_meta.get('markerSchema') or []:
        if isinstance(schema, dict) and 'name' in schema:
            marker_schema[schema['name']] = schema
    sample_units = raw_meta.get('sampleUnits') or {}
    return ProfileMeta(
        interval=float(raw_meta.get('interval') or DEFAULT_INTERVAL_MS),
        start_time=float(raw_meta.get('startTime') or 0.0),
        product=raw_meta.get('product') or '',
        platform=raw_meta.get('oscpu') or raw_meta.get('platform') or '',
        categories=categories,
        marker_schema=marker_schema,
        cpu_delta_unit=sample_units.get('threadCPUDelta'),
    )


def _parse_lib(raw_lib: Dict[str, Any]) -> Lib:
    return Lib(
        name=raw_lib.get('name', ''),
        path=raw_lib.get('path', ''),
        debug_name=raw_lib.get('debugName', ''),
        debug_path=raw_lib.get('debugPath', ''),
        breakpad_id=raw_lib.get('breakpadId', ''),
    )


def _column(table: Optional[Dict[str, Any]], key: str, length: int, default: Any = None) -> List[Any]:
    """Reads a column of a column-oriented table, padding missing columns with `default`."""
    if not table or table.get(key) is None:
        return [default] * length
    return table[key]


def _table_length(table: Optional[Dict[str, Any]], *probe_keys: str) -> int:
    if not table:
        return 0
    if isinstance(table.get('length'), int):
        return table['length']
    for key in probe_keys:
        if isinstance(table.get(key), list):
            return len(table[key])
    return 0


def _parse_thread(thread_index: int, raw_thread: Dict[str, Any], shared_strings: Optional[List[str]],
                  meta: ProfileMeta, funcs: FuncTable, resources: ResourceTable,
                  call_nodes: CallNodeTable) -> Thread:
    strings = raw_thread.get('stringArray') or raw_thread.get('stringTable') or shared_strings or []
    if isinstance(strings, dict):
        strings = strings.get('_array', [])

    def string_at(index: Any) -> str:
        return strings[index] if isinstance(index, int) and 0 <= index < len(strings) else ''

    # --- Resources -> global resources ---
    raw_resources = raw_thread.get('resourceTable')
    resource_count = _table_length(raw_resources, 'name', 'lib')
    resource_names = _column(raw_resources, 'name', resource_count)
    resource_libs = _column(raw_resources, 'lib', resource_count)
    resource_map = [
        resources.intern(string_at(resource_names[i]), resource_libs[i] if resource_libs[i] is not None else NO_INDEX)
        for i in range(resource_count)
    ]

    # --- Functions -> global functions ---
    raw_funcs = raw_thread['funcTable']
    func_count = _table_length(raw_funcs, 'name')
    func_names = _column(raw_funcs, 'name', func_count)
    func_resources = _column(raw_funcs, 'resource', func_count, -1)
    func_is_js = _column(raw_funcs, 'isJS', func_count, False)
    func_relevant = _column(raw_funcs, 'relevantForJS', func_count, False)
    func_files = _column(raw_funcs, 'fileName', func_count)
    func_map = []
    for i in range(func_count):
        local_resource = func_resources[i]
        resource = resource_map[local_resource] if local_resource is not None and 0 <= local_resource < resource_count else NO_INDEX
        file_name = string_at(func_files[i]) if func_files[i] is not None else None
        func_map.append(funcs.intern(string_at(func_names[i]), resource, bool(func_is_js[i]),
                                     bool(func_relevant[i]), file_name))

    # --- Frames and stacks -> global call nodes ---
    raw_frames = raw_thread['frameTable']
    frame_funcs = _column(raw_frames, 'func', _table_length(raw_frames, 'func'))
    raw_stacks = raw_thread['stackTable']
    stack_count = _table_length(raw_stacks, 'frame', 'prefix')
    stack_frames = _column(raw_stacks, 'frame', stack_count)
    stack_prefixes = _column(raw_stacks, 'prefix', stack_count)
    stack_map = np.full(stack_count, NO_INDEX, dtype=np.int64)
    for i in range(stack_count):
        prefix = stack_prefixes[i]
        prefix_node = NO_INDEX if prefix is None else int(stack_map[prefix])
        stack_map[i] = call_nodes.intern(prefix_node, func_map[frame_funcs[stack_frames[i]]])

    samples = _parse_samples(raw_thread.get('samples') or {}, stack_map, meta)
    markers = _parse_markers(thread_index, raw_thread.get('markers') or {}, string_at, stack_map, meta, samples)

    register_time = raw_thread.get('registerTime')
    if register_time is None:
        register_time = float(samples.time[0]) if len(samples) else 0.0

    return Thread(
        index=thread_index,
        name=raw_thread.get('name') or 'Unnamed thread',
        process_name=raw_thread.get('processName') or '',
        process_type=raw_thread.get('processType') or '',
        pid=str(raw_thread.get('pid', '')),
        tid=str(raw_thread.get('tid', '')),
        is_main_thread=bool(raw_thread.get('isMainThread', False)),
        register_time=float(register_time),
        unregister_time=raw_thread.get('unregisterTime'),
        process_startup_time=raw_thread.get('processStartupTime'),
        process_shutdown_time=raw_thread.get('processShutdownTime'),
        samples=samples,
        markers=markers,
    )


def _parse_samples(raw_samples: Dict[str, Any], stack_map: np.ndarray, meta: ProfileMeta) -> SampleTable:
    sample_count = _table_length(raw_samples, 'stack', 'time', 'timeDeltas')
    if sample_count == 0:
        return SampleTable.empty()

    if raw_samples.get('time') is not None:
        time = np.asarray(raw_samples['time'], dtype=np.float64)
    else:
        time = np.cumsum(np.asarray(raw_samples['timeDeltas'], dtype=np.float64))

    raw_stack = np.asarray([NO_INDEX if s is None else s for s in raw_samples['stack']], dtype=np.int64)
    stack = np.where(raw_stack >= 0, stack_map[np.clip(raw_stack, 0, None)] if len(stack_map) else NO_INDEX, NO_INDEX)

    weight = np.ones(sample_count, dtype=np.float64)
    if raw_samples.get('weight') is not None:
        weight = np.asarray(raw_samples['weight'], dtype=np.float64)

    cpu_delta = None
    if raw_samples.get('threadCPUDelta') is not None:
        raw_delta = np.asarray([0 if d is None else d for d in raw_samples['threadCPUDelta']], dtype=np.float64)
        cpu_delta = _cpu_delta_to_ms(raw_delta, time, meta)

    # Samples are expected in time order, but merged or hand-written profiles may not be.
    if sample_count > 1 and np.any(np.diff(time) < 0):
        order = np.argsort(time, kind='stable')
        time, stack, weight = time[order], stack[order], weight[order]
        cpu_delta = None if cpu_delta is None else cpu_delta[order]

    return SampleTable(time=time, stack=stack, weight=weight, cpu_delta=cpu_delta)


def _cpu_delta_to_ms(raw_delta: np.ndarray, time: np.ndarray, meta: ProfileMeta) -> np.ndarray:
    if (factor := CPU_DELTA_UNIT_TO_MS.get(meta.cpu_delta_unit or '')) is not None:
        return raw_delta * factor

    # Unitless counters (e.g. CPU cycles): scale so that the busiest sample reads 100%.
    elapsed = np.diff(time, prepend=time[0] - meta.interval)
    elapsed[elapsed <= 0] = meta.interval
    peak_ratio = float(np.max(raw_delta / elapsed)) if len(raw_delta) else 0.0
    if peak_ratio <= 0:
        return np.zeros_like(raw_delta)
    logger.debug(f"  CPU delta unit '{meta.cpu_delta_unit}' is not time based; normalising by peak ratio {peak_ratio:.3f}.")
    return raw_delta / peak_ratio


def _parse_markers(thread_index: int, raw_markers: Dict[str, Any], string_at, stack_map: np.ndarray,
                   meta: ProfileMeta, samples: SampleTable) -> List[Marker]:
    marker_count = _table_length(raw_markers, 'name', 'startTime')
    if marker_count == 0:
        return []

    names = _column(raw_markers, 'name', marker_count)
    starts = _column(raw_markers, 'startTime', marker_count)
    ends = _column(raw_markers, 'endTime', marker_count)
    phases = _column(raw_markers, 'phase', marker_count)
    categories = _column(raw_markers, 'category', marker_count, 0)
    datas = _column(raw_markers, 'data', marker_count)

    thread_start = float(samples.time[0]) if len(samples) else 0.0
    thread_end = float(samples.time[-1]) + meta.interval if len(samples) else 0.0

    markers: List[Marker] = []
    open_intervals: Dict[str, List[Tuple[float, int, Optional[Dict[str, Any]]]]] = {}
    for i in range(marker_count):
        name = string_at(names[i]) if isinstance(names[i], int) else str(names[i] or '')
        data = _resolve_marker_data(datas[i], string_at, stack_map, meta)
        category = categories[i] if isinstance(categories[i], int) else 0
        phase = phases[i]
        start, end = starts[i], ends[i]

        if phase == PHASE_INTERVAL_START:
            open_intervals.setdefault(name, []).append((start, category, data))
            continue
        if phase == PHASE_INTERVAL_END:
            if pending := open_intervals.get(name):
                start, category, start_data = pending.pop()
                data = start_data or data
            else:
                start = thread_start
            markers.append(Marker(name, float(start), float(end), category, data, thread_index))
            continue
        if phase == PHASE_INSTANT or end is None:
            markers.append(Marker(name, float(start), None, category, data, thread_index))
        else:
            markers.append(Marker(name, float(start), float(end), category, data, thread_index))

    # Unmatched interval starts last until the end of the thread.
    for name, pending in open_intervals.items():
        for start, category, data in pending:
            markers.append(Marker(name, float(start), max(float(start), thread_end), category, data, thread_index))

    markers.sort(key=lambda m: m.start)
    return markers


def _resolve_marker_data(raw_data: Any, string_at, stack_map: np.ndarray, meta: ProfileMeta) -> Optional[Dict[str, Any]]:
    """Resolves unique-string fields and maps backtrace stacks onto global call nodes."""
    if not isinstance(raw_data, dict):
        return None
    data = dict(raw_data)

    schema = meta.marker_schema.get(data.get('type', ''))
    if schema:
        for field_def in schema.get('fields') or schema.get('data') or []:
            key = field_def.get('key')
            if field_def.get('format') == 'unique-string' and isinstance(data.get(key), int):
                data[key] = string_at(data[key])

    cause = data.get('cause')
    if isinstance(cause, dict):
        cause = dict(cause)
        stack = cause.get('stack')
        if isinstance(stack, int) and 0 <= stack < len(stack_map):
            cause['stack'] = int(stack_map[stack])
        else:
            cause['stack'] = None
        data['cause'] = cause
    return data
