"""Convergence planning.

Diffs the resolved graph against the last-applied records and classifies
each node:

    excluded + record            -> delete
    excluded, no record          -> skip
    included, no record          -> create
    included, hash differs       -> update
    included, awaiting values    -> update (re-checked during apply)
    included, drifted remotely   -> update
    otherwise                    -> skip

In complete deployment mode, records whose resource is no longer declared
are deleted too. Deletes come first, in reverse dependency order; all other
actions follow in dependency order. The planner never touches remote state.
"""

from __future__ import annotations

import heapq
import logging
from collections import Counter
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum

from .config import DeploymentMode
from .evaluator import ResolvedGraph
from .identifiers import NodeId
from .state import StateStore

logger = logging.getLogger(__name__)


class Action(str, Enum):
    """Planned action for one node."""

    CREATE = "create"
    UPDATE = "update"
    SKIP = "skip"
    DELETE = "delete"


@dataclass(frozen=True)
class PlanItem:
    """One planned action with the reason it was chosen."""

    node_id: NodeId
    action: Action
    reason: str
    api_version: str
    dependencies: tuple[NodeId, ...] = ()
    orphan: bool = False

    @property
    def is_change(self) -> bool:
        return self.action != Action.SKIP


@dataclass
class Plan:
    """Ordered actions: deletes first (reverse dependency order), then the rest."""

    items: list[PlanItem] = field(default_factory=list)
    deployment_mode: DeploymentMode = DeploymentMode.INCREMENTAL

    def __iter__(self) -> Iterator[PlanItem]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    def item(self, node_id: NodeId) -> PlanItem | None:
        for item in self.items:
            if item.node_id == node_id:
                return item
        return None

    @property
    def deletes(self) -> list[PlanItem]:
        return [i for i in self.items if i.action == Action.DELETE]

    @property
    def non_deletes(self) -> list[PlanItem]:
        return [i for i in self.items if i.action != Action.DELETE]

    def counts(self) -> dict[str, int]:
        counter = Counter(item.action.value for item in self.items)
        return {action.value: counter.get(action.value, 0) for action in Action}

    @property
    def has_changes(self) -> bool:
        return any(item.is_change for item in self.items)

    def summary(self) -> str:
        counts = self.counts()
        return (
            f"{counts['create']} to create, {counts['update']} to update, "
            f"{counts['delete']} to delete, {counts['skip']} unchanged"
        )


def _reverse_dependency_order(
    candidates: list[NodeId],
    dependencies: dict[NodeId, tuple[NodeId, ...]],
) -> list[NodeId]:
    """Order delete candidates so dependents are deleted before what they use.

    Ties break by candidate position. Dependencies outside the candidate set
    are ignored; a cycle among stale records falls back to candidate order.
    """
    position = {node_id: i for i, node_id in enumerate(candidates)}
    # Edges point from a dependency to its dependents; dependents go first
    blockers: dict[NodeId, int] = {node_id: 0 for node_id in candidates}
    users: dict[NodeId, list[NodeId]] = {node_id: [] for node_id in candidates}
    for node_id in candidates:
        for dep in dependencies.get(node_id, ()):
            if dep in position and dep != node_id:
                blockers[dep] += 1
                users[node_id].append(dep)

    # Reverse topological order: start from nodes nothing else depends on,
    # preferring the latest declared first
    ready = [(-position[n], n.key, n) for n, count in blockers.items() if count == 0]
    heapq.heapify(ready)
    result: list[NodeId] = []
    while ready:
        _, _, current = heapq.heappop(ready)
        result.append(current)
        for dep in users[current]:
            blockers[dep] -= 1
            if blockers[dep] == 0:
                heapq.heappush(ready, (-position[dep], dep.key, dep))

    if len(result) != len(candidates):
        logger.warning(
            "Cycle among delete candidates, falling back to declaration order",
            extra={"candidates": [str(n) for n in candidates]},
        )
        return list(reversed(candidates))
    return result


def _parse_recorded(value: str, records_by_key: dict[str, NodeId]) -> NodeId | None:
    return records_by_key.get(value.lower())


def plan(
    resolved: ResolvedGraph,
    state: StateStore,
    deployment_mode: DeploymentMode = DeploymentMode.INCREMENTAL,
) -> Plan:
    """Classify every node against the state store.

    Args:
        resolved: Evaluated graph.
        state: Last-applied records.
        deployment_mode: COMPLETE also deletes records of undeclared resources.

    Returns:
        Plan with deletes first, then the remaining actions in apply order.
    """
    ordered = resolved.ordered
    deletes: dict[NodeId, PlanItem] = {}
    others: list[PlanItem] = []

    for node_id in ordered.order:
        node = ordered.graph.nodes[node_id]
        resolved_node = resolved[node_id]
        record = state.get(node_id)
        dependencies = tuple(node.dependencies)

        if not node.included:
            if record is not None:
                deletes[node_id] = PlanItem(
                    node_id, Action.DELETE, "excluded by condition", record.api_version, dependencies
                )
            else:
                others.append(
                    PlanItem(node_id, Action.SKIP, "excluded by condition", node.api_version, dependencies)
                )
            continue

        if record is None:
            action, reason = Action.CREATE, "not yet applied"
        elif record.drifted:
            action, reason = Action.UPDATE, "remote drift"
        elif resolved_node.is_pending:
            awaiting = ", ".join(sorted(str(n) for n in resolved_node.awaiting))
            action, reason = Action.UPDATE, f"awaiting values from {awaiting}"
        elif resolved_node.property_hash != record.property_hash:
            action, reason = Action.UPDATE, "properties changed"
        else:
            action, reason = Action.SKIP, "up to date"
        others.append(PlanItem(node_id, action, reason, node.api_version, dependencies))

    if deployment_mode == DeploymentMode.COMPLETE:
        records_by_key = {r.node_id.key: r.node_id for r in state.records()}
        for record in state.records():
            if ordered.graph.find(record.node_id) is not None:
                continue
            recorded = tuple(
                dep
                for dep in (_parse_recorded(d, records_by_key) for d in record.dependencies)
                if dep is not None
            )
            deletes[record.node_id] = PlanItem(
                record.node_id,
                Action.DELETE,
                "no longer declared",
                record.api_version,
                recorded,
                orphan=True,
            )

    delete_order = _reverse_dependency_order(
        list(deletes), {node_id: item.dependencies for node_id, item in deletes.items()}
    )
    result = Plan(
        items=[deletes[n] for n in delete_order] + others,
        deployment_mode=deployment_mode,
    )

    logger.info(
        "Plan computed",
        extra={
            "deployment_mode": deployment_mode.value,
            **{f"{action}_count": count for action, count in result.counts().items()},
        },
    )
    for item in result:
        if item.is_change:
            logger.debug(
                "Planned change",
                extra={"node_id": str(item.node_id), "action": item.action.value, "reason": item.reason},
            )
    return result
