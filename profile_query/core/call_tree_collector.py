# file: core/call_tree_collector.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
"""
Summarizes an arbitrarily large call tree into a bounded number of nodes.

Nodes are included best-first: a max-heap frontier holds candidate nodes scored
by their total percentage and depth, and the highest-scored candidate is
included next. All scoring strategies are monotonic (a child whose percentage
does not exceed its parent's never scores higher), so inclusion order is also
score order. Children that did not make the budget are summarized into a single
`childrenTruncated` entry on their parent.
"""
import math
from typing import List, Dict, Any, Hashable, Iterable, Optional, Protocol, Tuple

from profile_query.core.call_tree import NodeData
from profile_query.core.definition import Profile
from profile_query.core.function_list import format_function_name_with_library
from profile_query.core.handles import FunctionMap
from profile_query.errors import ArgumentError

# ==============================================================================
# Configuration Constants
# ==============================================================================

DEFAULT_MAX_NODES = 100
DEFAULT_SCORING_STRATEGY = 'exponential-0.9'
DEFAULT_MAX_DEPTH = 200
DEFAULT_MAX_CHILDREN_PER_NODE = 100

# Share of the node budget that roots may take up front; inverted trees can have
# hundreds of roots and would otherwise never get expanded.
INITIAL_ROOT_BUDGET_SHARE = 0.7

# Scoring strategies: f(total percentage, depth) -> inclusion score.
SCORING_STRATEGIES = {
    'exponential-0.95': lambda pct, depth: pct * 0.95 ** depth,
    'exponential-0.9': lambda pct, depth: pct * 0.9 ** depth,
    'exponential-0.8': lambda pct, depth: pct * 0.8 ** depth,
    'harmonic-0.1': lambda pct, depth: pct / (1 + 0.1 * depth),
    'harmonic-0.5': lambda pct, depth: pct / (1 + 0.5 * depth),
    'harmonic-1.0': lambda pct, depth: pct / (1 + depth),
    'percentage-only': lambda pct, depth: pct,
}


class CallTreeLike(Protocol):
    """The interface shared by `CallTree` and `InvertedCallTree`."""
    root_total: float

    def roots(self) -> List[Hashable]: ...

    def children(self, node: Hashable) -> List[Hashable]: ...

    def has_children(self, node: Hashable) -> bool: ...

    def node_data(self, node: Hashable) -> NodeData: ...

    def call_node_index(self, node: Hashable) -> Optional[int]: ...


def compute_inclusion_score(total_percentage: float, depth: int, scoring_strategy: str) -> float:
    if (scorer := SCORING_STRATEGIES.get(scoring_strategy)) is None:
        raise ArgumentError(
            f"Unknown scoring strategy: {scoring_strategy}. "
            f"Valid strategies: {', '.join(SCORING_STRATEGIES)}")
    return scorer(total_percentage, depth)


class MaxHeap:
    """Array-backed binary max-heap of (priority, item) pairs."""

    def __init__(self):
        self._heap: List[Tuple[float, Any]] = []

    def __len__(self) -> int:
        return len(self._heap)

    def push(self, item: Any, priority: float):
        self._heap.append((priority, item))
        self._bubble_up(len(self._heap) - 1)

    def pop_max(self) -> Optional[Any]:
        if not self._heap:
            return None
        top = self._heap[0]
        last = self._heap.pop()
        if self._heap:
            self._heap[0] = last
            self._bubble_down(0)
        return top[1]

    def _bubble_up(self, index: int):
        heap = self._heap
        while index > 0:
            parent = (index - 1) // 2
            if heap[parent][0] >= heap[index][0]:
                break
            heap[parent], heap[index] = heap[index], heap[parent]
            index = parent

    def _bubble_down(self, index: int):
        heap = self._heap
        size = len(heap)
        while True:
            largest = index
            for child in (2 * index + 1, 2 * index + 2):
                if child < size and heap[child][0] > heap[largest][0]:
                    largest = child
            if largest == index:
                return
            heap[largest], heap[index] = heap[index], heap[largest]
            index = largest


# ==============================================================================
# Collection
# ==============================================================================

def select_included_nodes(tree: CallTreeLike, max_nodes: int = DEFAULT_MAX_NODES,
                          scoring_strategy: str = DEFAULT_SCORING_STRATEGY,
                          max_depth: int = DEFAULT_MAX_DEPTH,
                          max_children_per_node: int = DEFAULT_MAX_CHILDREN_PER_NODE) -> List[Hashable]:
    """
    Runs the best-first expansion and returns the included nodes in inclusion order.

    Args:
        tree (CallTreeLike): A regular or inverted call tree.
        max_nodes (int): Maximum number of nodes to include.
        scoring_strategy (str): A key of SCORING_STRATEGIES.
        max_depth (int): Nodes at this depth are included but never expanded.
        max_children_per_node (int): Only the heaviest children of a node are candidates.

    Returns:
        List[Hashable]: The included nodes.
    """
    frontier = MaxHeap()
    roots = tree.roots()
    max_initial_roots = min(len(roots), math.ceil(max_nodes * INITIAL_ROOT_BUDGET_SHARE))
    for root in roots[:max_initial_roots]:
        score = compute_inclusion_score(tree.node_data(root).total_relative * 100, 0, scoring_strategy)
        frontier.push((root, 0), score)

    included: List[Hashable] = []
    while len(included) < max_nodes:
        if (entry := frontier.pop_max()) is None:
            break
        node, depth = entry
        included.append(node)

        if depth >= max_depth or not tree.has_children(node):
            continue
        child_depth = depth + 1
        for child in tree.children(node)[:max_children_per_node]:
            score = compute_inclusion_score(tree.node_data(child).total_relative * 100, child_depth, scoring_strategy)
            frontier.push((child, child_depth), score)
    return included


def collect_call_tree(tree: CallTreeLike, function_map: FunctionMap, thread_indexes: Iterable[int],
                      profile: Profile, max_nodes: int = DEFAULT_MAX_NODES,
                      scoring_strategy: str = DEFAULT_SCORING_STRATEGY,
                      max_depth: int = DEFAULT_MAX_DEPTH,
                      max_children_per_node: int = DEFAULT_MAX_CHILDREN_PER_NODE) -> Dict[str, Any]:
    """
    Collects a budget-bounded summary of `tree` as nested dicts under a virtual
    `<root>` node. Works for both top-down and bottom-up trees.
    """
    thread_indexes = tuple(thread_indexes)
    included = set(select_included_nodes(tree, max_nodes, scoring_strategy, max_depth, max_children_per_node))
    return build_tree_structure(tree, included, function_map, thread_indexes, profile)


def build_tree_structure(tree: CallTreeLike, included: set, function_map: FunctionMap,
                         thread_indexes: Tuple[int, ...], profile: Profile) -> Dict[str, Any]:
    """
    Materializes the included nodes. Every child of an emitted node that is not
    itself included, whether pruned or never expanded, is counted in the
    parent's `childrenTruncated` summary.
    """
    total_samples = tree.root_total
    denominator = total_samples or 1.0
    root_node: Dict[str, Any] = {
        'name': '<root>',
        'nameWithLibrary': '<root>',
        'totalSamples': total_samples,
        'totalPercentage': 100,
        'selfSamples': 0,
        'selfPercentage': 0,
        'originalDepth': -1,
        'children': [],
    }

    pending: List[Tuple[Dict[str, Any], Optional[Hashable]]] = [(root_node, None)]
    while pending:
        node, key = pending.pop()
        child_keys = tree.roots() if key is None else tree.children(key)
        children_depth = node['originalDepth'] + 1
        elided = []
        for child_key in child_keys:
            if child_key not in included:
                elided.append(child_key)
                continue
            data = tree.node_data(child_key)
            child_node = {
                'callNodeIndex': tree.call_node_index(child_key),
                'functionHandle': function_map.handle_for_function(thread_indexes, data.func_index),
                'functionIndex': data.func_index,
                'name': data.name,
                'nameWithLibrary': format_function_name_with_library(data.func_index, profile),
                'totalSamples': data.total,
                'totalPercentage': data.total_relative * 100,
                'selfSamples': data.self_time,
                'selfPercentage': data.self_relative * 100,
                'originalDepth': children_depth,
                'children': [],
            }
            node['children'].append(child_node)
            pending.append((child_node, child_key))

        if elided:
            totals = [tree.node_data(k).total for k in elided]
            combined_samples, max_samples = sum(totals), max(totals)
            node['childrenTruncated'] = {
                'count': len(elided),
                'combinedSamples': combined_samples,
                'combinedPercentage': combined_samples / denominator * 100,
                'maxSamples': max_samples,
                'maxPercentage': max_samples / denominator * 100,
                'depth': children_depth,
            }
    return root_node
