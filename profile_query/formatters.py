# file: formatters.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
"""Plain-text rendering of query results, one formatter per result type."""
import json
from typing import Callable, List, Dict, Any, Optional

from profile_query.core.function_list import FUNCTION_NAME_DISPLAY_WIDTH, truncate_function_name
from profile_query.protocol import json_default
from profile_query.utils.format_numbers import format_duration, format_short_duration

# Marker names listed by `thread markers` before the rest is summarized.
MAX_MARKER_NAMES_SHOWN = 15
# Marker names shown in the frequency analysis.
MAX_FREQUENCY_ENTRIES = 5
# Example handles shown per marker name or group.
MAX_EXAMPLE_HANDLES = 3
# Heaviest stacks longer than this are shown as head and tail only.
MAX_STACK_FRAMES_SHOWN = 200
STACK_HEAD_TAIL_FRAMES = 100

MARKERS_HINT = ('Use --search <term>, --category <name>, --min-duration <ms>, --max-duration <ms>, --has-stack, '
                '--limit <N>, --group-by <keys>, or --auto-group to filter/group markers, '
                'or m-<N> handles to inspect individual markers.')
FUNCTIONS_HINT = ('Use --search <term>, --min-self <percent>, or --limit <N> to filter functions, '
                  'or f-<N> handles to inspect individual functions.')


def _display_name(name_with_library: str) -> str:
    return truncate_function_name(name_with_library, FUNCTION_NAME_DISPLAY_WIDTH)


def _thread_selection(handle: Optional[str], threads: List[Dict[str, Any]]) -> str:
    if not handle or not threads:
        return 'No thread selected'
    return f"{handle} ({', '.join(t['name'] for t in threads)})"


# ==============================================================================
# Context and status
# ==============================================================================

def format_context_header(context: Dict[str, Any]) -> str:
    """One-line summary of the session state printed above every result."""
    thread_info = _thread_selection(context.get('selectedThreadHandle'), context.get('selectedThreads', []))
    root = context['rootRange']
    view_info = 'Full profile'
    if view := context.get('currentViewRange'):
        view_info = f"{view['startName']}→{view['endName']} ({format_short_duration(view['end'] - view['start'])})"
    full_info = format_short_duration(root['end'] - root['start'])
    return f"[Thread: {thread_info} | View: {view_info} | Full: {full_info}]"


def format_status(result: Dict[str, Any]) -> str:
    thread_info = _thread_selection(result.get('selectedThreadHandle'), result.get('selectedThreads', []))
    ranges_info = 'Full profile'
    if view_ranges := result.get('viewRanges'):
        ranges_info = ' > '.join(f"{r['startName']} to {r['endName']}" for r in view_ranges)
    return (f"Session Status:\n"
            f"  Selected thread: {thread_info}\n"
            f"  View range: {ranges_info}")


def format_view_range(result: Dict[str, Any]) -> str:
    output = result['message']
    if result['action'] == 'push':
        output += f" (duration: {format_duration(result['duration'])})"
        if marker_info := result.get('markerInfo'):
            output += f"\n  Zoomed to: Marker {marker_info['markerHandle']} - {marker_info['markerName']}"
            output += f"\n  Thread: {marker_info['threadHandle']} ({marker_info['threadName']})"
        zoom_depth = result['zoomDepth']
        output += f"\n  Zoom depth: {zoom_depth}"
        if zoom_depth > 1:
            output += ' (use "pq zoom pop" to go back)'
    return output


# ==============================================================================
# Profile and threads
# ==============================================================================

def _format_cpu_activity(cpu_activity: List[Dict[str, Any]]) -> List[str]:
    if not cpu_activity:
        return ['No significant activity.']
    lines = []
    for activity in cpu_activity:
        indent = '  ' * activity['depthLevel']
        duration = activity['endTime'] - activity['startTime']
        percentage = round(activity['cpuMs'] / duration * 100) if duration > 0 else 0
        lines.append(f"{indent}- {percentage}% for {activity['cpuMs']:.1f}ms: "
                     f"[{activity['startTimeName']} → {activity['endTimeName']}] "
                     f"({activity['startTimeStr']} - {activity['endTimeStr']})")
    return lines


def _cpu_summary(summary: Dict[str, Any], noun: str) -> str:
    return (f"+ {summary['count']} more {noun} with combined CPU time {summary['combinedCpuMs']:.3f}ms "
            f"and max CPU time {summary['maxCpuMs']:.3f}ms")


def format_profile_info(result: Dict[str, Any]) -> str:
    lines = [
        format_context_header(result['context']),
        '',
        f"Name: {result['name']}",
        f"Platform: {result['platform']}",
        '',
        f"This profile contains {result['threadCount']} threads across {result['processCount']} processes.",
    ]
    if not result['processes']:
        lines += ['', '(CPU time information not available)']
        return '\n'.join(lines)

    lines += ['', 'Top processes and threads by CPU usage:']
    for process in result['processes']:
        end_name = process['endTimeName'] or 'end'
        lines.append(f"  p-{process['processIndex']}: {process['name']} [pid {process['pid']}] "
                     f"[{process['startTimeName']} → {end_name}] - {process['cpuMs']:.3f}ms")
        for thread in process['threads']:
            lines.append(f"    {thread['threadHandle']}: {thread['name']} - {thread['cpuMs']:.3f}ms")
        if remaining := process.get('remainingThreads'):
            lines.append(f"    {_cpu_summary(remaining, 'threads')}")
    if remaining := result.get('remainingProcesses'):
        lines.append(f"  {_cpu_summary(remaining, 'processes')}")

    lines += ['', 'CPU activity over time:']
    lines += _format_cpu_activity(result['cpuActivity'])
    return '\n'.join(lines)


def format_profile_threads(result: Dict[str, Any]) -> str:
    lines = [
        format_context_header(result['context']),
        '',
        f"This profile contains {result['threadCount']} threads.",
        '',
        f"  {'Handle':<8} {'Process':<8} {'PID':>8} {'TID':>8} {'Samples':>9} {'Markers':>8} {'CPU (ms)':>12}  Name",
    ]
    for thread in result['threads']:
        process = f"p-{thread['processIndex']}" if thread['processIndex'] is not None else '-'
        name = thread['friendlyName']
        if thread['friendlyName'] != thread['name']:
            name += f" ({thread['name']})"
        lines.append(f"  {thread['threadHandle']:<8} {process:<8} {thread['pid']:>8} {thread['tid']:>8} "
                     f"{thread['sampleCount']:>9} {thread['markerCount']:>8} {thread['cpuMs']:>12.3f}  {name}")
    return '\n'.join(lines)


def format_thread_info(result: Dict[str, Any]) -> str:
    lines = [
        format_context_header(result['context']),
        '',
        f"Name: {result['friendlyName']}",
        f"Created at: {result['createdAtName']}",
        f"Ended at: {result['endedAtName'] or 'still alive at end of recording'}",
        '',
        f"This thread contains {result['sampleCount']} samples and {result['markerCount']} markers.",
        '',
        'CPU activity over time:',
    ]
    lines += _format_cpu_activity(result['cpuActivity'])
    return '\n'.join(lines)


# ==============================================================================
# Samples and call trees
# ==============================================================================

def _format_call_tree_node(node: Dict[str, Any], base_indent: str, use_tree_symbol: bool,
                           is_last_sibling: bool, depth: int, lines: List[str]):
    """
    Renders one node and its subtree. Single-child chains are printed as stack
    fragments without tree symbols; branching points (and the children of
    top-level nodes) get `├─`/`└─` symbols.
    """
    line_prefix = base_indent
    if use_tree_symbol:
        line_prefix += '└─ ' if is_last_sibling else '├─ '
    handle_prefix = f"{node['functionHandle']}. " if node.get('functionHandle') else ''
    lines.append(f"{line_prefix}{handle_prefix}{_display_name(node['nameWithLibrary'])} "
                 f"[total: {node['totalPercentage']:.1f}%, self: {node['selfPercentage']:.1f}%]")

    children = node.get('children') or []
    truncated = node.get('childrenTruncated')
    if not children and not truncated:
        return

    child_base_indent = base_indent
    if use_tree_symbol:
        child_base_indent += '   ' if is_last_sibling else '│  '

    has_multiple_children = len(children) > 1 or bool(truncated)
    for i, child in enumerate(children):
        is_last = i == len(children) - 1 and not truncated
        _format_call_tree_node(child, child_base_indent, has_multiple_children or depth == 0,
                               is_last, depth + 1, lines)

    if truncated:
        lines.append(f"{child_base_indent}└─ ... ({truncated['count']} more children: "
                     f"combined {truncated['combinedPercentage']:.1f}%, max {truncated['maxPercentage']:.1f}%)")


def format_call_tree(tree: Dict[str, Any], title: str) -> str:
    lines = [f"{title} Call Tree:"]
    children = tree.get('children') or []
    for i, child in enumerate(children):
        _format_call_tree_node(child, '', False, i == len(children) - 1, 0, lines)
    if truncated := tree.get('childrenTruncated'):
        lines.append(f"... ({truncated['count']} more roots: combined {truncated['combinedPercentage']:.1f}%, "
                     f"max {truncated['maxPercentage']:.1f}%)")
    return '\n'.join(lines)


def _format_stack_frame(position: int, frame: Dict[str, Any]) -> str:
    return (f"  {position}. {_display_name(frame['nameWithLibrary'])} - "
            f"total: {round(frame['totalSamples'])} ({frame['totalPercentage']:.1f}%), "
            f"self: {round(frame['selfSamples'])} ({frame['selfPercentage']:.1f}%)")


def format_thread_samples(result: Dict[str, Any]) -> str:
    lines = [
        format_context_header(result['context']),
        '',
        f"Thread: {result['friendlyThreadName']}",
        '',
        'Top Functions (by total time):',
        '  (For a call tree starting from these functions, use: pq thread samples-top-down)',
        '',
    ]
    for func in result['topFunctionsByTotal']:
        lines.append(f"  {func['functionHandle']}. {_display_name(func['nameWithLibrary'])} - "
                     f"total: {round(func['totalSamples'])} ({func['totalPercentage']:.1f}%)")
    lines += [
        '',
        'Top Functions (by self time):',
        '  (For a call tree showing what calls these functions, use: pq thread samples-bottom-up)',
        '',
    ]
    for func in result['topFunctionsBySelf']:
        lines.append(f"  {func['functionHandle']}. {_display_name(func['nameWithLibrary'])} - "
                     f"self: {round(func['selfSamples'])} ({func['selfPercentage']:.1f}%)")
    lines.append('')

    stack = result.get('heaviestStack')
    if not stack or not stack['frames']:
        lines += ['Heaviest stack (0.0 samples, 0 frames):', '  (empty)']
        return '\n'.join(lines)

    frames = stack['frames']
    lines.append(f"Heaviest stack ({stack['selfSamples']:.1f} samples, {stack['frameCount']} frames):")
    if len(frames) <= MAX_STACK_FRAMES_SHOWN:
        lines += [_format_stack_frame(i + 1, frame) for i, frame in enumerate(frames)]
    else:
        lines += [_format_stack_frame(i + 1, frames[i]) for i in range(STACK_HEAD_TAIL_FRAMES)]
        lines.append(f"  ... ({len(frames) - 2 * STACK_HEAD_TAIL_FRAMES} frames skipped)")
        lines += [_format_stack_frame(i + 1, frames[i])
                  for i in range(len(frames) - STACK_HEAD_TAIL_FRAMES, len(frames))]
    return '\n'.join(lines)


def format_thread_samples_top_down(result: Dict[str, Any]) -> str:
    return '\n'.join([
        format_context_header(result['context']),
        '',
        f"Thread: {result['friendlyThreadName']}",
        '',
        format_call_tree(result['regularCallTree'], 'Top-Down'),
    ])


def format_thread_samples_bottom_up(result: Dict[str, Any]) -> str:
    return '\n'.join([
        format_context_header(result['context']),
        '',
        f"Thread: {result['friendlyThreadName']}",
        '',
        format_call_tree(result['invertedCallTree'], 'Bottom-Up'),
    ])


# ==============================================================================
# Markers
# ==============================================================================

def _example_handles(top_markers: List[Dict[str, Any]]) -> str:
    examples = []
    for marker in top_markers[:MAX_EXAMPLE_HANDLES]:
        example = f"{marker['handle']} {'✓' if marker['hasStack'] else '✗'}"
        if marker.get('duration') is not None:
            example += f" ({format_duration(marker['duration'])})"
        examples.append(example)
    return ', '.join(examples)


def _format_marker_groups(lines: List[str], groups: List[Dict[str, Any]], base_indent: int):
    for group in groups:
        indent = '  ' * base_indent
        line = f"{indent}{group['groupName']}: {group['count']} markers"
        if stats := group.get('durationStats'):
            line += f" (avg={format_duration(stats['avg'])}, max={format_duration(stats['max'])})"
        lines.append(line)
        sub_groups = group.get('subGroups')
        if not sub_groups and group.get('topMarkers'):
            lines.append(f"{indent}  Examples: {_example_handles(group['topMarkers'])}")
        if sub_groups:
            _format_marker_groups(lines, sub_groups, base_indent + 1)


def format_thread_markers(result: Dict[str, Any]) -> str:
    lines = [format_context_header(result['context']), '']
    has_filters = result.get('filters') is not None
    filter_suffix = ''
    if has_filters and result['filteredMarkerCount'] != result['totalMarkerCount']:
        filter_suffix = f" (filtered from {result['totalMarkerCount']})"
    lines.append(f"Markers in thread {result['threadHandle']} ({result['friendlyThreadName']}) - "
                 f"{result['filteredMarkerCount']} markers{filter_suffix}")
    lines.append('Legend: ✓ = has stack trace, ✗ = no stack trace\n')

    if result['filteredMarkerCount'] == 0:
        lines.append('No markers match the specified filters.' if has_filters else 'No markers in this thread.')
        return '\n'.join(lines)

    if result.get('customGroups'):
        _format_marker_groups(lines, result['customGroups'], 0)
    else:
        by_type = result['byType']
        lines.append(f'By Name (top {MAX_MARKER_NAMES_SHOWN}):')
        for stats in by_type[:MAX_MARKER_NAMES_SHOWN]:
            line = f"  {stats['markerName']:<25} {stats['count']:>5} markers"
            if duration_stats := stats.get('durationStats'):
                line += (f"  (interval: min={format_duration(duration_stats['min'])}, "
                         f"avg={format_duration(duration_stats['avg'])}, max={format_duration(duration_stats['max'])})")
            else:
                line += '  (instant)'
            lines.append(line)

            sub_groups = stats.get('subGroups')
            if not sub_groups and stats.get('topMarkers'):
                lines.append(f"    Examples: {_example_handles(stats['topMarkers'])}")
            if sub_groups:
                if stats.get('subGroupKey'):
                    lines.append(f"    Grouped by {stats['subGroupKey']}:")
                _format_marker_groups(lines, sub_groups, 2)
        if len(by_type) > MAX_MARKER_NAMES_SHOWN:
            lines.append(f"  ... ({len(by_type) - MAX_MARKER_NAMES_SHOWN} more marker names)")
        lines.append('')

        lines.append('By Category:')
        for stats in result['byCategory']:
            lines.append(f"  {stats['categoryName']:<25} {stats['count']:>5} markers ({stats['percentage']:.1f}%)")
        lines.append('')

        lines.append('Frequency Analysis:')
        frequent = [s for s in by_type if s.get('rateStats') and s['rateStats']['markersPerSecond'] > 0]
        for stats in frequent[:MAX_FREQUENCY_ENTRIES]:
            rate = stats['rateStats']
            lines.append(f"  {stats['markerName']}: {rate['markersPerSecond']:.1f} markers/sec "
                         f"(interval: min={format_duration(rate['minGap'])}, avg={format_duration(rate['avgGap'])}, "
                         f"max={format_duration(rate['maxGap'])})")
        lines.append('')

    lines.append(MARKERS_HINT)
    return '\n'.join(lines)


def _marker_duration(duration_ms: float) -> str:
    if duration_ms < 1:
        return f"{duration_ms * 1000:.1f}µs"
    if duration_ms < 1000:
        return f"{duration_ms:.2f}ms"
    return f"{duration_ms / 1000:.3f}s"


def format_marker_info(result: Dict[str, Any]) -> str:
    title = f"Marker {result['markerHandle']}: {result['name']}"
    if result.get('tooltipLabel'):
        title += f" - {result['tooltipLabel']}"
    lines = [
        format_context_header(result['context']),
        '',
        title,
        '',
        f"Type: {result['markerType'] or 'None'}",
        f"Category: {result['category']['name']}",
    ]
    if result['end'] is not None:
        lines.append(f"Time: {result['start']:.3f}ms - {result['end']:.3f}ms ({_marker_duration(result['duration'])})")
    else:
        lines.append(f"Time: {result['start']:.3f}ms (instant)")
    lines.append(f"Thread: {result['threadHandle']} ({result['friendlyThreadName']})")

    if fields := result.get('fields'):
        lines += ['', 'Fields:']
        lines += [f"  {f['label']}: {f['formattedValue']}" for f in fields]

    if (schema := result.get('schema')) and schema.get('description'):
        lines += ['', 'Description:', f"  {schema['description']}"]

    if (stack := result.get('stack')) and stack['frames']:
        lines += ['', 'Stack trace:']
        if stack.get('capturedAt') is not None:
            lines.append(f"  Captured at: {stack['capturedAt']:.3f}ms")
        lines += [f"  [{i + 1}] {frame['nameWithLibrary']}" for i, frame in enumerate(stack['frames'])]
        if stack['truncated']:
            lines += ['', f"Use 'pq marker stack {result['markerHandle']}' for the full stack trace."]
    return '\n'.join(lines)


def format_marker_stack(result: Dict[str, Any]) -> str:
    lines = [
        format_context_header(result['context']),
        '',
        f"Stack trace for marker {result['markerHandle']}: {result['markerName']}",
        f"Thread: {result['threadHandle']} ({result['friendlyThreadName']})",
    ]
    stack = result.get('stack')
    if not stack or not stack['frames']:
        lines += ['', '(This marker has no stack trace)']
        return '\n'.join(lines)
    if stack.get('capturedAt') is not None:
        lines += [f"Captured at: {stack['capturedAt']:.3f}ms", '']
    lines += [f"  [{i + 1}] {frame['nameWithLibrary']}" for i, frame in enumerate(stack['frames'])]
    if stack['truncated']:
        lines.append('  ... (truncated)')
    return '\n'.join(lines)


# ==============================================================================
# Functions
# ==============================================================================

def format_thread_functions(result: Dict[str, Any]) -> str:
    lines = [format_context_header(result['context']), '']
    filters = result.get('filters')
    filter_suffix = ''
    if filters is not None and result['filteredFunctionCount'] != result['totalFunctionCount']:
        filter_suffix = f" (filtered from {result['totalFunctionCount']})"
    lines.append(f"Functions in thread {result['threadHandle']} ({result['friendlyThreadName']}) - "
                 f"{result['filteredFunctionCount']} functions{filter_suffix}\n")

    if result['filteredFunctionCount'] == 0:
        lines.append('No functions match the specified filters.' if filters is not None else 'No functions in this thread.')
        return '\n'.join(lines)

    if filters is not None:
        parts = []
        if filters.get('searchString'):
            parts.append(f"search: \"{filters['searchString']}\"")
        if filters.get('minSelf') is not None:
            parts.append(f"min-self: {filters['minSelf']}%")
        if filters.get('limit') is not None:
            parts.append(f"limit: {filters['limit']}")
        if parts:
            lines.append(f"Filters: {', '.join(parts)}\n")

    lines.append('Functions (by self time):')
    for func in result['functions']:
        self_pct = f"{func['selfPercentage']:.1f}%"
        total_pct = f"{func['totalPercentage']:.1f}%"
        if func.get('fullSelfPercentage') is not None and func.get('fullTotalPercentage') is not None:
            self_pct += f" of view, {func['fullSelfPercentage']:.1f}% of full"
            total_pct += f" of view, {func['fullTotalPercentage']:.1f}% of full"
        lines.append(f"  {func['functionHandle']}. {_display_name(func['nameWithLibrary'])} - "
                     f"self: {round(func['selfSamples'])} ({self_pct}), "
                     f"total: {round(func['totalSamples'])} ({total_pct})")

    if (omitted := result['filteredFunctionCount'] - len(result['functions'])) > 0:
        lines.append(f"\n  ... ({omitted} more functions omitted)")
    lines += ['', FUNCTIONS_HINT]
    return '\n'.join(lines)


def format_function_expand(result: Dict[str, Any]) -> str:
    return (f"{format_context_header(result['context'])}\n\n"
            f"Function {result['functionHandle']} (thread {result['threadHandle']}):\n"
            f"{result['fullName']}")


def format_function_info(result: Dict[str, Any]) -> str:
    lines = [
        format_context_header(result['context']),
        '',
        f"Function {result['functionHandle']}:",
        f"  Thread: {result['threadHandle']} ({result['threadName']})",
        f"  Full name: {result['fullName']}",
        f"  Short name: {result['name']}",
        f"  Is JS: {str(result['isJS']).lower()}",
        f"  Relevant for JS: {str(result['relevantForJS']).lower()}",
    ]
    if resource := result.get('resource'):
        lines.append(f"  Resource: {resource['name']}")
    if library := result.get('library'):
        lines.append(f"  Library: {library['name']}")
        lines.append(f"  Library path: {library['path']}")
        if library.get('debugName'):
            lines.append(f"  Debug name: {library['debugName']}")
        if library.get('debugPath'):
            lines.append(f"  Debug path: {library['debugPath']}")
        if library.get('breakpadId'):
            lines.append(f"  Breakpad ID: {library['breakpadId']}")
    return '\n'.join(lines)


# ==============================================================================
# Dispatch
# ==============================================================================

FORMATTERS: Dict[str, Callable[[Dict[str, Any]], str]] = {
    'status': format_status,
    'view-range': format_view_range,
    'profile-info': format_profile_info,
    'profile-threads': format_profile_threads,
    'thread-info': format_thread_info,
    'thread-samples': format_thread_samples,
    'thread-samples-top-down': format_thread_samples_top_down,
    'thread-samples-bottom-up': format_thread_samples_bottom_up,
    'thread-markers': format_thread_markers,
    'thread-functions': format_thread_functions,
    'marker-info': format_marker_info,
    'marker-stack': format_marker_stack,
    'function-info': format_function_info,
    'function-expand': format_function_expand,
}


def to_json(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False, default=json_default)


def format_output(result: Any, json_mode: bool = False) -> str:
    """Renders a command result (a message string or a typed result object)."""
    if json_mode:
        return to_json(result)
    if isinstance(result, str):
        return result
    if isinstance(result, dict) and (formatter := FORMATTERS.get(result.get('type'))):
        return formatter(result)
    return to_json(result)
