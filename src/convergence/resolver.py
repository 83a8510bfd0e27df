"""Dependency ordering and conditional inclusion.

This module orders the resource graph for apply:
1. Cycle detection via depth-first traversal with three-color marking
2. Topological sort (Kahn's algorithm) with declaration order as tie-break
3. Per-node depth levels (nodes on the same level may run concurrently)
4. Condition evaluation marking nodes included or excluded

DETERMINISM:
Among nodes whose dependencies are satisfied, the one declared first always
comes first, so repeated runs over unchanged input produce an identical
apply order.

EXCLUSION:
Excluded nodes stay in the graph. Their dependents are not failed because of
the exclusion; only an expression that actually needs an excluded node's
value fails, later, during evaluation.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum

from .errors import CycleError, EvaluationError
from .evaluator import Evaluator
from .graph import Graph, NodeStatus, ResourceNode
from .identifiers import NodeId

logger = logging.getLogger(__name__)


class _Mark(Enum):
    UNVISITED = 0
    IN_PROGRESS = 1
    DONE = 2


@dataclass
class OrderedGraph:
    """A graph with its deterministic apply order."""

    graph: Graph
    order: list[NodeId] = field(default_factory=list)
    levels: dict[NodeId, int] = field(default_factory=dict)
    dependents: dict[NodeId, list[NodeId]] = field(default_factory=dict)

    def __iter__(self) -> Iterator[ResourceNode]:
        return (self.graph.nodes[node_id] for node_id in self.order)

    def position(self, node_id: NodeId) -> int:
        return self.order.index(node_id)

    def transitive_dependents(self, node_id: NodeId) -> list[NodeId]:
        """Every node that depends on node_id, directly or not, in apply order."""
        found: set[NodeId] = set()
        stack = list(self.dependents.get(node_id, []))
        while stack:
            current = stack.pop()
            if current in found:
                continue
            found.add(current)
            stack.extend(self.dependents.get(current, []))
        return [n for n in self.order if n in found]

    @property
    def included(self) -> list[NodeId]:
        return [n for n in self.order if self.graph.nodes[n].included]

    @property
    def excluded(self) -> list[NodeId]:
        return [n for n in self.order if not self.graph.nodes[n].included]


def find_cycle(graph: Graph) -> list[NodeId] | None:
    """Return the first cycle found as a closed path, or None.

    Traversal starts from nodes in declaration order and follows
    dependencies in their declared order, so the reported cycle is stable.
    """
    marks: dict[NodeId, _Mark] = {node_id: _Mark.UNVISITED for node_id in graph.nodes}
    path: list[NodeId] = []

    def visit(node_id: NodeId) -> list[NodeId] | None:
        marks[node_id] = _Mark.IN_PROGRESS
        path.append(node_id)
        for dep in graph.nodes[node_id].dependencies:
            mark = marks.get(dep, _Mark.DONE)
            if mark == _Mark.IN_PROGRESS:
                # Back-edge: the cycle is the path suffix starting at dep
                return [*path[path.index(dep) :], dep]
            if mark == _Mark.UNVISITED:
                cycle = visit(dep)
                if cycle is not None:
                    return cycle
        path.pop()
        marks[node_id] = _Mark.DONE
        return None

    for node_id in graph.nodes:
        if marks[node_id] == _Mark.UNVISITED:
            cycle = visit(node_id)
            if cycle is not None:
                return cycle
    return None


def topological_order(graph: Graph) -> list[NodeId]:
    """Return node ids with dependencies first, ties broken by declaration index.

    Raises:
        CycleError: If the graph contains a cycle.
    """
    cycle = find_cycle(graph)
    if cycle is not None:
        raise CycleError([str(n) for n in cycle])

    in_degree: dict[NodeId, int] = {node_id: 0 for node_id in graph.nodes}
    dependents: dict[NodeId, list[NodeId]] = {node_id: [] for node_id in graph.nodes}
    for node in graph:
        for dep in node.dependencies:
            dependents[dep].append(node.id)
            in_degree[node.id] += 1

    ready = [(graph.nodes[n].index, n.key, n) for n, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)

    result: list[NodeId] = []
    while ready:
        _, _, current = heapq.heappop(ready)
        result.append(current)
        for dependent in dependents[current]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(ready, (graph.nodes[dependent].index, dependent.key, dependent))

    return result


def _evaluate_condition(node: ResourceNode, evaluator: Evaluator) -> bool:
    try:
        value = evaluator.evaluate_static(node.condition)
    except EvaluationError as e:
        raise e.located(str(node.id), "condition") from e
    if not isinstance(value, bool):
        raise EvaluationError(
            f"condition must evaluate to a boolean, got {type(value).__name__}",
            node_id=str(node.id),
            path="condition",
        )
    return value


def resolve(graph: Graph, evaluator: Evaluator) -> OrderedGraph:
    """Order the graph and mark each node included or excluded.

    Raises:
        CycleError: If the dependencies contain a cycle.
        EvaluationError: If a condition cannot be evaluated to a boolean.
    """
    order = topological_order(graph)

    levels: dict[NodeId, int] = {}
    dependents: dict[NodeId, list[NodeId]] = {node_id: [] for node_id in graph.nodes}
    for node_id in order:
        node = graph.nodes[node_id]
        levels[node_id] = 1 + max((levels[d] for d in node.dependencies), default=-1)
        for dep in node.dependencies:
            dependents[dep].append(node_id)

    for node_id in order:
        node = graph.nodes[node_id]
        node.status = NodeStatus.INCLUDED if _evaluate_condition(node, evaluator) else NodeStatus.EXCLUDED

    ordered = OrderedGraph(graph=graph, order=order, levels=levels, dependents=dependents)
    logger.info(
        "Dependencies resolved",
        extra={
            "order": [str(n) for n in order],
            "excluded": [str(n) for n in ordered.excluded],
            "depth": max(levels.values(), default=-1) + 1,
        },
    )
    return ordered
