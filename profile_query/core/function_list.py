# file: core/function_list.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from profile_query.core.call_tree import FunctionTiming
from profile_query.core.definition import NO_INDEX, Profile

# Display width for function names in text output.
FUNCTION_NAME_DISPLAY_WIDTH = 120

# Share of the width reserved for the final `::` component when both halves are too long.
SUFFIX_SHARE = 0.7
PREFIX_SHARE = 0.3

BRACKET_PAIRS = {'<': '>', '(': ')'}


@dataclass
class FunctionData:
    """A function-list entry with its display name (`lib!name` when known)."""
    func_name: str
    func_index: int
    total: float
    self_time: float
    total_relative: float
    self_relative: float


# ==============================================================================
# Function name formatting
# ==============================================================================

def format_function_name_with_library(func_index: int, profile: Profile) -> str:
    """
    Returns `libraryName!functionName`, falling back to the resource name, and
    to the bare function name when neither is known.
    """
    funcs, resources = profile.funcs, profile.resources
    func_name = funcs.name[func_index]
    resource_index = funcs.resource[func_index]
    if resource_index == NO_INDEX:
        return func_name

    lib_index = resources.lib[resource_index]
    if lib_index != NO_INDEX and 0 <= lib_index < len(profile.libs):
        return f"{profile.libs[lib_index].name}!{func_name}"

    resource_name = resources.name[resource_index]
    if resource_name and resource_name != func_name:
        return f"{resource_name}!{func_name}"
    return func_name


def library_name_for_function(func_index: int, profile: Profile) -> Optional[str]:
    resource_index = profile.funcs.resource[func_index]
    if resource_index == NO_INDEX:
        return None
    lib_index = profile.resources.lib[resource_index]
    if lib_index != NO_INDEX and 0 <= lib_index < len(profile.libs):
        return profile.libs[lib_index].name
    return None


def split_library_prefix(name_with_library: str) -> Tuple[Optional[str], str]:
    """Splits 'lib!func' into ('lib', 'func'); names without '!' have no library."""
    library, bang, name = name_with_library.partition('!')
    if not bang:
        return None, name_with_library
    return library, name


# ==============================================================================
# Template/parameter-aware truncation
# ==============================================================================

@dataclass
class _NameNode:
    """Either a run of text or a bracketed group (`<...>` / `(...)`) with children."""
    text: str = ''
    open_bracket: str = ''
    children: List['_NameNode'] = field(default_factory=list)

    @property
    def is_nested(self) -> bool:
        return bool(self.open_bracket)

    @property
    def close_bracket(self) -> str:
        return BRACKET_PAIRS.get(self.open_bracket, '')


def _parse_name_tree(name: str) -> List[_NameNode]:
    levels: List[List[_NameNode]] = [[]]
    current_text = []

    def flush_text():
        if current_text:
            levels[-1].append(_NameNode(text=''.join(current_text)))
            current_text.clear()

    for char in name:
        if char in BRACKET_PAIRS:
            flush_text()
            nested = _NameNode(open_bracket=char)
            levels[-1].append(nested)
            levels.append(nested.children)
        elif char in ('>', ')'):
            flush_text()
            if len(levels) > 1:
                levels.pop()
        else:
            current_text.append(char)
    flush_text()
    return levels[0]


def _render(nodes: List[_NameNode]) -> str:
    return ''.join(
        f"{node.open_bracket}{_render(node.children)}{node.close_bracket}" if node.is_nested else node.text
        for node in nodes
    )


def _tree_length(nodes: List[_NameNode]) -> int:
    return sum(2 + _tree_length(node.children) if node.is_nested else len(node.text) for node in nodes)


def _truncate_tree(nodes: List[_NameNode], max_length: int) -> str:
    """Renders `nodes` in at most `max_length` characters, collapsing groups to `<...>` / `(...)`."""
    if _tree_length(nodes) <= max_length:
        return _render(nodes)

    result = ''
    for node in nodes:
        space_left = max_length - len(result)
        if space_left <= 0:
            break

        if not node.is_nested:
            if len(node.text) <= space_left:
                result += node.text
                continue
            # Cut at namespace boundaries.
            parts = node.text.split('::')
            for i, part in enumerate(parts):
                piece = part + ('::' if i < len(parts) - 1 else '')
                if len(result) + len(piece) > max_length:
                    break
                result += piece
            break

        full = f"{node.open_bracket}{_render(node.children)}{node.close_bracket}"
        collapsed = f"{node.open_bracket}...{node.close_bracket}"
        if len(full) <= space_left:
            result += full
        elif len(collapsed) <= space_left:
            available = space_left - 2
            inner = _truncate_tree(node.children, available)
            if len(inner) <= available:
                result += f"{node.open_bracket}{inner}{node.close_bracket}"
            else:
                result += collapsed
        else:
            break
    return result


def _find_last_top_level_separator(nodes: List[_NameNode]) -> Optional[Tuple[int, int]]:
    for i in range(len(nodes) - 1, -1, -1):
        node = nodes[i]
        if not node.is_nested and (position := node.text.rfind('::')) != -1:
            return i, position
    return None


def truncate_function_name(function_name: str, max_length: int = FUNCTION_NAME_DISPLAY_WIDTH) -> str:
    """
    Shortens a (C++/Rust/JS) function name to `max_length` characters while
    keeping it readable.

    A `lib!` prefix is preserved. The name is split at its last top-level `::`
    into context and function name; the function name gets up to 70% of the
    room, and template arguments or parameter lists are collapsed to `<...>`
    and `(...)` before anything else is cut.

    Args:
        function_name (str): The full function name, optionally with a `lib!` prefix.
        max_length (int): The maximum length of the result.

    Returns:
        str: The (possibly) shortened name.
    """
    if len(function_name) <= max_length:
        return function_name

    library_prefix, func_part = '', function_name
    bang_index = function_name.find('!')
    if bang_index != -1:
        library_prefix = function_name[:bang_index + 1]
        func_part = function_name[bang_index + 1:]
        available = max_length - len(library_prefix)
        if available <= 10:
            return function_name[:max_length - 3] + '...'
        if len(func_part) <= available:
            return function_name
        max_length = available

    tree = _parse_name_tree(func_part)
    separator = _find_last_top_level_separator(tree)
    if separator is None:
        return library_prefix + _truncate_tree(tree, max_length)

    node_index, position = separator
    separator_node = tree[node_index]
    prefix_nodes = tree[:node_index] + [_NameNode(text=separator_node.text[:position + 2])]
    suffix_nodes = []
    if remaining := separator_node.text[position + 2:]:
        suffix_nodes.append(_NameNode(text=remaining))
    suffix_nodes.extend(tree[node_index + 1:])

    prefix_length, suffix_length = _tree_length(prefix_nodes), _tree_length(suffix_nodes)
    if prefix_length + suffix_length <= max_length:
        return library_prefix + func_part

    if suffix_length <= int(max_length * SUFFIX_SHARE):
        suffix_alloc = suffix_length
        prefix_alloc = max_length - suffix_length
    else:
        prefix_alloc = int(max_length * PREFIX_SHARE)
        suffix_alloc = max_length - prefix_alloc

    return library_prefix + _truncate_tree(prefix_nodes, prefix_alloc) + _truncate_tree(suffix_nodes, suffix_alloc)


# ==============================================================================
# Function lists
# ==============================================================================

def extract_function_data(timings: List[FunctionTiming], profile: Profile) -> List[FunctionData]:
    """Attaches display names to the per-function timings of a function list."""
    return [
        FunctionData(format_function_name_with_library(t.func_index, profile), t.func_index,
                     t.total, t.self_time, t.total_relative, t.self_relative)
        for t in timings
    ]


def sort_by_total(functions: List[FunctionData]) -> List[FunctionData]:
    return sorted(functions, key=lambda f: f.total, reverse=True)


def sort_by_self(functions: List[FunctionData]) -> List[FunctionData]:
    return sorted(functions, key=lambda f: f.self_time, reverse=True)
