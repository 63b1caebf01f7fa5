# file: core/call_tree.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
from collections import defaultdict
from dataclasses import dataclass
from typing import List, Dict, Any, Optional, Tuple, Hashable

import numpy as np

from profile_query.core.definition import NO_INDEX, CallNodeTable, SampleTable


@dataclass(slots=True)
class NodeData:
    """Timing data of one call-tree node. `*_relative` values are fractions of the tree total."""
    name: str
    func_index: int
    total: float
    self_time: float
    total_relative: float
    self_relative: float


def compute_call_node_self(call_nodes: CallNodeTable, samples: SampleTable) -> np.ndarray:
    """Sums sample weights per call node (the node's own, non-inclusive time)."""
    valid = samples.stack >= 0
    return np.bincount(samples.stack[valid], weights=samples.weight[valid], minlength=len(call_nodes)).astype(np.float64)


def compute_call_node_total(call_nodes: CallNodeTable, self_weights: np.ndarray) -> np.ndarray:
    """
    Accumulates self weights into their ancestors, one depth level at a time.

    Args:
        call_nodes (CallNodeTable): The profile-global call-node table.
        self_weights (np.ndarray): Per-node self weights.

    Returns:
        np.ndarray: Per-node total (inclusive) weights.
    """
    total = self_weights.copy()
    if len(total) == 0:
        return total
    depth = call_nodes.depth
    for level in range(int(depth.max()), 0, -1):
        nodes = np.nonzero((depth == level) & (total > 0))[0]
        if len(nodes):
            np.add.at(total, call_nodes.prefix[nodes], total[nodes])
    return total


class CallTree:
    """
    Regular ("top-down") call tree over a set of samples.

    Nodes are call-node indexes; only nodes with a non-zero total are visible,
    and children are ordered by descending total.
    """

    def __init__(self, call_nodes: CallNodeTable, func_names: List[str], samples: SampleTable):
        self._call_nodes = call_nodes
        self._func_names = func_names
        self._self = compute_call_node_self(call_nodes, samples)
        self._total = compute_call_node_total(call_nodes, self._self)
        self.root_total = float(self._self.sum())

        children: Dict[int, List[int]] = defaultdict(list)
        for node in np.nonzero(self._total > 0)[0].tolist():
            children[int(call_nodes.prefix[node])].append(node)
        for siblings in children.values():
            siblings.sort(key=lambda n: (-self._total[n], n))
        self._children = children

    def roots(self) -> List[int]:
        return self._children.get(NO_INDEX, [])

    def children(self, node: int) -> List[int]:
        return self._children.get(node, [])

    def has_children(self, node: int) -> bool:
        return bool(self._children.get(node))

    def node_data(self, node: int) -> NodeData:
        total, self_time = float(self._total[node]), float(self._self[node])
        func_index = int(self._call_nodes.func[node])
        denominator = self.root_total or 1.0
        return NodeData(self._func_names[func_index], func_index, total, self_time,
                        total / denominator, self_time / denominator)

    def call_node_index(self, node: int) -> Optional[int]:
        return node

    def heaviest_path(self, node: int) -> List[int]:
        """Follows the heaviest child from `node` down to a leaf; returns call-node indexes."""
        path = [node]
        while children := self._children.get(path[-1]):
            path.append(children[0])
        return path


class InvertedCallTree:
    """
    Inverted ("bottom-up") call tree: roots are the functions samples were taken
    in, children are their callers.

    A node is identified by its function path from the sampled leaf upwards.
    Root nodes report their whole weight as self time; deeper nodes report as
    self time the weight of stacks that have no further callers.
    """

    def __init__(self, call_nodes: CallNodeTable, func_names: List[str], samples: SampleTable):
        self._call_nodes = call_nodes
        self._func_names = func_names
        self_weights = compute_call_node_self(call_nodes, samples)
        self.root_total = float(self_weights.sum())

        # Each inverted node owns the non-inverted nodes at its current position
        # together with the self weight of the stacks that ended at their leaf.
        self._entries: Dict[Tuple[int, ...], Tuple[np.ndarray, np.ndarray]] = {}
        self._children: Dict[Tuple[int, ...], List[Tuple[int, ...]]] = {}

        leaf_nodes = np.nonzero(self_weights > 0)[0]
        self._roots = self._group_by_func((), leaf_nodes, self_weights[leaf_nodes])

    def _group_by_func(self, parent: Tuple[int, ...], nodes: np.ndarray, weights: np.ndarray) -> List[Tuple[int, ...]]:
        funcs = self._call_nodes.func[nodes]
        keys = []
        for func in np.unique(funcs).tolist():
            mask = funcs == func
            key = parent + (func,)
            self._entries[key] = (nodes[mask], weights[mask])
            keys.append(key)
        keys.sort(key=lambda k: (-float(self._entries[k][1].sum()), k[-1]))
        return keys

    def roots(self) -> List[Tuple[int, ...]]:
        return self._roots

    def children(self, node: Tuple[int, ...]) -> List[Tuple[int, ...]]:
        if (cached := self._children.get(node)) is not None:
            return cached
        nodes, weights = self._entries[node]
        prefixes = self._call_nodes.prefix[nodes]
        has_caller = prefixes >= 0
        children = self._group_by_func(node, prefixes[has_caller], weights[has_caller])
        self._children[node] = children
        return children

    def has_children(self, node: Tuple[int, ...]) -> bool:
        nodes, _ = self._entries[node]
        return bool(np.any(self._call_nodes.prefix[nodes] >= 0))

    def node_data(self, node: Tuple[int, ...]) -> NodeData:
        nodes, weights = self._entries[node]
        total = float(weights.sum())
        if len(node) == 1:
            self_time = total
        else:
            self_time = float(weights[self._call_nodes.prefix[nodes] < 0].sum())
        func_index = node[-1]
        denominator = self.root_total or 1.0
        return NodeData(self._func_names[func_index], func_index, total, self_time,
                        total / denominator, self_time / denominator)

    def call_node_index(self, node: Hashable) -> Optional[int]:
        return None


@dataclass
class FunctionTiming:
    """Per-function aggregate over a sample set (recursion counted once per sample)."""
    func_index: int
    total: float
    self_time: float
    total_relative: float
    self_relative: float


def compute_function_timings(call_nodes: CallNodeTable, samples: SampleTable) -> List[FunctionTiming]:
    """
    Computes the function list: self and total weight of every function that
    appears in at least one sample.

    Args:
        call_nodes (CallNodeTable): The profile-global call-node table.
        samples (SampleTable): The (range-filtered) samples.

    Returns:
        List[FunctionTiming]: One entry per function, in function-index order.
    """
    self_weights = compute_call_node_self(call_nodes, samples)
    root_total = float(self_weights.sum())
    denominator = root_total or 1.0

    func_self: Dict[int, float] = defaultdict(float)
    func_total: Dict[int, float] = defaultdict(float)
    for node in np.nonzero(self_weights > 0)[0].tolist():
        weight = float(self_weights[node])
        path_funcs = call_nodes.path(node)
        func_self[path_funcs[-1]] += weight
        for func in set(path_funcs):
            func_total[func] += weight

    return [
        FunctionTiming(func, func_total[func], func_self.get(func, 0.0),
                       func_total[func] / denominator, func_self.get(func, 0.0) / denominator)
        for func in sorted(func_total)
    ]
