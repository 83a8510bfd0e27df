"""Apply executor.

Executes a plan against a provider:
1. Deletes first, each after the deletes of the resources that use it
2. Then creates/updates, each after all of its dependencies completed
3. Independent branches run concurrently, bounded by a semaphore

PER NODE:
- The node is re-resolved against the freshest records, so values deferred
  at plan time (reference() to a resource created in this run) are filled in
- If the re-resolved hash matches the record, the node is skipped
- On success a record is written; on failure every transitive dependent is
  reported blocked and never attempted, while independent branches continue

RETRY:
Transient provider errors and call timeouts are retried with exponential
backoff plus jitter, up to a fixed attempt cap. Permanent errors fail the
node immediately. A timed-out call keeps running in its worker thread, so the
next attempt starts only after it returns.

CANCELLATION:
cancel() is honored between node actions, never mid-call. Completed actions
are not rolled back; nodes not started yet report cancelled.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .config import ExecutorConfig
from .errors import EvaluationError, ProviderError, TransientProviderError
from .evaluator import Evaluator, ResolvedGraph
from .identifiers import NodeId
from .planner import Action, Plan, PlanItem
from .provider import ResourceProvider
from .state import RemoteRecord, StateError, StateStore

logger = logging.getLogger(__name__)


class NodeOutcome(str, Enum):
    """Terminal status of one node in an apply."""

    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"
    BLOCKED = "blocked"  # Never attempted because a dependency did not succeed
    CANCELLED = "cancelled"  # Never attempted because the apply was cancelled


_UNSUCCESSFUL = frozenset({NodeOutcome.FAILED, NodeOutcome.BLOCKED, NodeOutcome.CANCELLED})


@dataclass
class NodeResult:
    """What happened to one plan item."""

    node_id: NodeId
    planned_action: Action
    outcome: NodeOutcome
    action: Action | None = None
    reason: str = ""
    attempts: int = 0
    error: str | None = None
    remote_id: str | None = None


@dataclass
class ApplyResult:
    """Outcome of an apply: every node's terminal status plus outputs."""

    results: dict[NodeId, NodeResult] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    omitted_outputs: dict[str, str] = field(default_factory=dict)
    cancelled: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    def __getitem__(self, node_id: NodeId) -> NodeResult:
        return self.results[node_id]

    def outcome(self, node_id: NodeId) -> NodeOutcome:
        return self.results[node_id].outcome

    def with_outcome(self, outcome: NodeOutcome) -> list[NodeId]:
        return [n for n, r in self.results.items() if r.outcome == outcome]

    def counts(self) -> dict[str, int]:
        counter = Counter(r.outcome.value for r in self.results.values())
        return {outcome.value: counter.get(outcome.value, 0) for outcome in NodeOutcome}

    @property
    def succeeded(self) -> bool:
        """True when no node failed, was blocked or was cancelled."""
        return not any(r.outcome in _UNSUCCESSFUL for r in self.results.values())

    @property
    def changes_applied(self) -> int:
        return sum(1 for r in self.results.values() if r.outcome == NodeOutcome.SUCCEEDED)

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()


class _CallFailed(Exception):
    """Internal signal carrying the last provider error and the attempts made."""

    def __init__(self, error: Exception, attempts: int) -> None:
        self.error = error
        self.attempts = attempts
        super().__init__(str(error))


class ApplyExecutor:
    """Runs plan items against a provider in dependency order."""

    def __init__(
        self,
        provider: ResourceProvider,
        state: StateStore,
        evaluator: Evaluator,
        config: ExecutorConfig | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            provider: Remote operations.
            state: Record store; written after every confirmed call.
            evaluator: Re-resolves nodes once their dependencies completed.
            config: Parallelism, retry and timeout settings.
        """
        self._provider = provider
        self._state = state
        self._evaluator = evaluator
        self._config = config or ExecutorConfig()
        self._cancelled = False

        self._results: dict[NodeId, NodeResult] = {}
        self._done: dict[NodeId, asyncio.Event] = {}

    def cancel(self) -> None:
        """Stop starting new node actions. In-flight calls finish normally."""
        if not self._cancelled:
            logger.warning("Apply cancellation requested")
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def apply(self, plan: Plan, resolved: ResolvedGraph) -> ApplyResult:
        """Execute a plan.

        Args:
            plan: Planned actions (deletes first).
            resolved: Evaluated graph the plan was computed from.

        Returns:
            ApplyResult with a terminal status for every plan item.
        """
        result = ApplyResult()
        self._results = {}
        self._done = {item.node_id: asyncio.Event() for item in plan}
        semaphore = asyncio.Semaphore(self._config.max_parallel_workers)
        prerequisites = self._prerequisites(plan, resolved)

        logger.info(
            "Apply started",
            extra={
                "plan_items": len(plan),
                "max_parallel_workers": self._config.max_parallel_workers,
                **{f"{k}_count": v for k, v in plan.counts().items()},
            },
        )

        for phase in (plan.deletes, plan.non_deletes):
            await asyncio.gather(
                *(
                    self._run_item(item, prerequisites[item.node_id], resolved, semaphore)
                    for item in phase
                )
            )

        result.results = {item.node_id: self._results[item.node_id] for item in plan}
        result.cancelled = self._cancelled

        outputs = self._evaluator.evaluate_outputs(resolved.graph)
        result.outputs = outputs.values
        result.omitted_outputs = outputs.omitted
        result.end_time = datetime.now(UTC)

        log = logger.info if result.succeeded else logger.error
        log(
            "Apply finished",
            extra={
                "duration_seconds": result.duration_seconds,
                "cancelled": result.cancelled,
                **{f"{k}_count": v for k, v in result.counts().items()},
            },
        )
        return result

    @staticmethod
    def _prerequisites(plan: Plan, resolved: ResolvedGraph) -> dict[NodeId, list[NodeId]]:
        """Items each item must wait for.

        A delete waits for the deletes of resources that use it. Any other
        action waits for its included dependencies.
        """
        deletes = {item.node_id for item in plan.deletes}
        planned = {item.node_id for item in plan}
        prerequisites: dict[NodeId, list[NodeId]] = {}

        for item in plan:
            if item.action == Action.DELETE:
                prerequisites[item.node_id] = [
                    other.node_id
                    for other in plan.deletes
                    if other.node_id != item.node_id and item.node_id in other.dependencies
                ]
                continue

            waits: list[NodeId] = []
            for dep in item.dependencies:
                if dep in deletes or dep not in planned:
                    continue
                if resolved.graph.nodes[dep].included:
                    waits.append(dep)
            prerequisites[item.node_id] = waits
        return prerequisites

    async def _run_item(
        self,
        item: PlanItem,
        prerequisites: list[NodeId],
        resolved: ResolvedGraph,
        semaphore: asyncio.Semaphore,
    ) -> None:
        try:
            for dep in prerequisites:
                await self._done[dep].wait()
            try:
                node_result = await self._execute(item, prerequisites, resolved, semaphore)
            except Exception as e:
                logger.exception("Unexpected error applying node", extra={"node_id": str(item.node_id)})
                node_result = NodeResult(
                    item.node_id,
                    item.action,
                    NodeOutcome.FAILED,
                    reason="unexpected error",
                    error=f"{type(e).__name__}: {e}",
                )
            self._results[item.node_id] = node_result
            self._log_node(node_result)
        finally:
            self._done[item.node_id].set()

    async def _execute(
        self,
        item: PlanItem,
        prerequisites: list[NodeId],
        resolved: ResolvedGraph,
        semaphore: asyncio.Semaphore,
    ) -> NodeResult:
        if self._cancelled:
            return NodeResult(item.node_id, item.action, NodeOutcome.CANCELLED, reason="apply cancelled")

        for dep in prerequisites:
            dep_result = self._results[dep]
            if dep_result.outcome in _UNSUCCESSFUL:
                return NodeResult(
                    item.node_id,
                    item.action,
                    NodeOutcome.BLOCKED,
                    reason=f"dependency {dep} {dep_result.outcome.value}",
                )

        if item.action != Action.DELETE and not resolved.graph.nodes[item.node_id].included:
            return NodeResult(item.node_id, item.action, NodeOutcome.SKIPPED, reason=item.reason)

        async with semaphore:
            if self._cancelled:
                return NodeResult(item.node_id, item.action, NodeOutcome.CANCELLED, reason="apply cancelled")
            async with self._state.lock(item.node_id):
                if item.action == Action.DELETE:
                    return await self._delete(item)
                return await self._converge(item, resolved)

    async def _converge(self, item: PlanItem, resolved: ResolvedGraph) -> NodeResult:
        node = resolved.graph.nodes[item.node_id]
        try:
            fresh = self._evaluator.resolve_node(node)
        except EvaluationError as e:
            return NodeResult(item.node_id, item.action, NodeOutcome.FAILED, reason="evaluation failed", error=str(e))

        if fresh.is_pending:
            awaiting = ", ".join(sorted(str(n) for n in fresh.awaiting))
            error = EvaluationError(
                f"values from {awaiting} are still unavailable",
                node_id=str(node.id),
                path=fresh.pending_paths[0],
            )
            return NodeResult(item.node_id, item.action, NodeOutcome.FAILED, reason="evaluation failed", error=str(error))
        resolved.nodes[node.id] = fresh

        record = self._state.get(node.id)
        if record is not None and not record.drifted and record.property_hash == fresh.property_hash:
            return NodeResult(
                item.node_id,
                item.action,
                NodeOutcome.SKIPPED,
                reason="up to date",
                remote_id=record.remote_id,
            )

        action = Action.CREATE if record is None else Action.UPDATE
        try:
            provisioned, attempts = await self._call_with_retry(
                f"{action.value} {node.id}",
                self._provider.create_or_update,
                node.id.type,
                node.id.name,
                fresh.body,
                node.api_version,
            )
        except _CallFailed as e:
            return NodeResult(
                item.node_id,
                item.action,
                NodeOutcome.FAILED,
                action=action,
                reason="provider call failed",
                attempts=e.attempts,
                error=str(e.error),
            )

        remote_id, outputs = provisioned
        try:
            self._state.put(
                RemoteRecord(
                    resource_type=node.id.type,
                    name=node.id.name,
                    remote_id=remote_id,
                    api_version=node.api_version,
                    property_hash=fresh.property_hash or "",
                    outputs=dict(outputs),
                    dependencies=[str(d) for d in node.dependencies],
                )
            )
        except StateError as e:
            return NodeResult(
                item.node_id,
                item.action,
                NodeOutcome.FAILED,
                action=action,
                reason="record could not be written",
                attempts=attempts,
                error=str(e),
                remote_id=remote_id,
            )

        return NodeResult(
            item.node_id,
            item.action,
            NodeOutcome.SUCCEEDED,
            action=action,
            reason=item.reason,
            attempts=attempts,
            remote_id=remote_id,
        )

    async def _delete(self, item: PlanItem) -> NodeResult:
        record = self._state.get(item.node_id)
        if record is None:
            return NodeResult(item.node_id, item.action, NodeOutcome.SKIPPED, reason="no record to delete")

        try:
            _, attempts = await self._call_with_retry(
                f"delete {item.node_id}",
                self._provider.delete,
                record.resource_type,
                record.remote_id,
                record.api_version,
            )
        except _CallFailed as e:
            return NodeResult(
                item.node_id,
                item.action,
                NodeOutcome.FAILED,
                action=Action.DELETE,
                reason="provider call failed",
                attempts=e.attempts,
                error=str(e.error),
                remote_id=record.remote_id,
            )

        try:
            self._state.remove(item.node_id)
        except StateError as e:
            return NodeResult(
                item.node_id,
                item.action,
                NodeOutcome.FAILED,
                action=Action.DELETE,
                reason="record could not be removed",
                attempts=attempts,
                error=str(e),
                remote_id=record.remote_id,
            )

        return NodeResult(
            item.node_id,
            item.action,
            NodeOutcome.SUCCEEDED,
            action=Action.DELETE,
            reason=item.reason,
            attempts=attempts,
            remote_id=record.remote_id,
        )

    async def _call_with_retry(
        self,
        operation: str,
        func: Callable[..., Any],
        *args: Any,
    ) -> tuple[Any, int]:
        """Run a provider call in the thread pool with timeout and retry.

        Returns:
            Tuple of (call result, attempts made).

        Raises:
            _CallFailed: When the error is permanent or attempts ran out.
        """
        loop = asyncio.get_running_loop()
        max_attempts = self._config.max_attempts

        for attempt in range(1, max_attempts + 1):
            call = loop.run_in_executor(None, functools.partial(func, *args))
            try:
                value = await asyncio.wait_for(
                    asyncio.shield(call),
                    timeout=self._config.provider_call_timeout_seconds,
                )
                return value, attempt
            except TimeoutError:
                error: ProviderError = TransientProviderError(
                    f"{operation} timed out after {self._config.provider_call_timeout_seconds}s"
                )
                # The worker thread cannot be interrupted; one call per resource at a time
                await self._drain(operation, call)
            except ProviderError as e:
                error = e

            if not error.transient:
                raise _CallFailed(error, attempt)
            if attempt == max_attempts:
                raise _CallFailed(error, attempt)

            # Exponential backoff with jitter
            backoff = min(
                self._config.retry_backoff_base_seconds * (2 ** (attempt - 1)),
                self._config.retry_backoff_max_seconds,
            )
            wait_time = backoff + random.uniform(0, backoff * 0.2)
            logger.warning(
                "Provider call failed, retrying",
                extra={
                    "operation": operation,
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "wait_seconds": wait_time,
                    "error": str(error),
                },
            )
            await asyncio.sleep(wait_time)

        # SAFETY: max_attempts >= 1 is enforced by ExecutorConfig.validate,
        # so the loop always returns or raises
        raise AssertionError("Retry loop completed without a result")

    @staticmethod
    async def _drain(operation: str, call: asyncio.Future[Any]) -> None:
        """Wait for a timed-out call's worker thread before another attempt."""
        logger.warning("Waiting for timed-out provider call to finish", extra={"operation": operation})
        (late,) = await asyncio.gather(call, return_exceptions=True)
        if isinstance(late, BaseException):
            logger.info(
                "Timed-out provider call finished with an error",
                extra={"operation": operation, "error": str(late)},
            )

    @staticmethod
    def _log_node(result: NodeResult) -> None:
        extra: dict[str, Any] = {
            "node_id": str(result.node_id),
            "planned_action": result.planned_action.value,
            "outcome": result.outcome.value,
            "reason": result.reason,
        }
        if result.attempts:
            extra["attempts"] = result.attempts
        if result.error is not None:
            extra["error"] = result.error

        match result.outcome:
            case NodeOutcome.FAILED:
                logger.error("Node failed", extra=extra)
            case NodeOutcome.BLOCKED | NodeOutcome.CANCELLED:
                logger.warning("Node not attempted", extra=extra)
            case _:
                logger.info("Node completed", extra=extra)
