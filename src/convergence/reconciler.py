"""Reconciliation pipeline and control loop.

One reconciliation run:
1. Load template, parameters and state (pre-flight, no mutation)
2. Build the resource graph, resolve dependencies, evaluate expressions
3. Optionally refresh records against the provider (missing resources are
   forgotten, drifted ones flagged)
4. Plan create/update/skip/delete actions
5. In enforce mode, apply the plan and write records as calls succeed
6. Resolve outputs and stamp a provenance record

Any ValidationError, CycleError or EvaluationError raised before step 5
aborts the run before a single provider call is made.

The run() loop repeats this on an interval with a circuit breaker that
pauses reconciliation after consecutive failures.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from .config import Config, ReconciliationMode
from .drift import DriftDetector, create_drift_detector_from_env
from .errors import EngineError, ProviderError
from .evaluator import DeploymentEnvironment, Evaluator, OutputsResult, ResolvedGraph
from .executor import ApplyExecutor, ApplyResult, NodeOutcome
from .graph import build_graph
from .planner import Action, Plan, plan
from .provenance import ChangeProvenanceSummary, RunProvenance, get_provenance_logger
from .provider import ResourceProvider
from .resolver import resolve
from .security import log_security_audit_event
from .state import StateError, StateStore
from .template_loader import load_parameters, load_template

logger = logging.getLogger(__name__)

# Circuit breaker constants
MAX_CONSECUTIVE_FAILURES = 5
CIRCUIT_BREAKER_RESET_SECONDS = 300


@dataclass
class ReconcileResult:
    """Result of a single reconciliation run."""

    deployment_name: str
    mode: ReconciliationMode = ReconciliationMode.OBSERVE
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    plan: Plan | None = None
    apply: ApplyResult | None = None
    outputs: dict[str, Any] = field(default_factory=dict)
    omitted_outputs: dict[str, str] = field(default_factory=dict)
    drifted_nodes: list[str] = field(default_factory=list)
    forgotten_nodes: list[str] = field(default_factory=list)
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def changes_planned(self) -> int:
        if self.plan is None:
            return 0
        return sum(1 for item in self.plan if item.is_change)

    @property
    def changes_applied(self) -> int:
        return self.apply.changes_applied if self.apply is not None else 0

    @property
    def success(self) -> bool:
        """True when the run raised nothing and every node converged."""
        if self.error is not None:
            return False
        return self.apply is None or self.apply.succeeded


@dataclass
class _Prepared:
    """Everything computed before a plan."""

    template_hash: str
    state: StateStore
    evaluator: Evaluator
    resolved: ResolvedGraph


class Reconciler:
    """Runs the convergence pipeline against one provider.

    The reconciler:
    1. Loads the template and parameters from disk on every run
    2. Plans against the state file
    3. Applies changes in enforce mode, only reports them in observe mode

    Circuit breaker prevents runaway retries on persistent failures.
    """

    def __init__(
        self,
        config: Config,
        provider: ResourceProvider,
        drift_detector: DriftDetector | None = None,
    ) -> None:
        """Initialize the reconciler.

        Args:
            config: Validated engine configuration.
            provider: Remote operations.
            drift_detector: Comparison used when refreshing state.
        """
        self._config = config
        self._provider = provider
        self._drift = drift_detector or create_drift_detector_from_env()

        self._shutdown_event = asyncio.Event()
        self._executor: ApplyExecutor | None = None

        # Circuit breaker state
        self._consecutive_failures = 0
        self._circuit_open_until: datetime | None = None

    @property
    def config(self) -> Config:
        return self._config

    # -------------------------------------------------------------------------
    # Control loop
    # -------------------------------------------------------------------------

    async def run(self) -> None:
        """Reconcile once, or on the configured interval until shutdown.

        After MAX_CONSECUTIVE_FAILURES the circuit opens and reconciliation
        pauses for CIRCUIT_BREAKER_RESET_SECONDS.
        """
        logger.info(
            "Starting reconciler",
            extra={
                "deployment": self._config.deployment_name,
                "mode": self._config.mode.value,
                "deployment_mode": self._config.deployment_mode.value,
                "run_once": self._config.run_once,
                "interval_seconds": self._config.reconcile_interval_seconds,
            },
        )

        while not self._shutdown_event.is_set():
            if self._circuit_open_until is not None:
                now = datetime.now(UTC)
                if now < self._circuit_open_until:
                    remaining = (self._circuit_open_until - now).total_seconds()
                    logger.warning(
                        "Circuit breaker open, skipping reconciliation",
                        extra={
                            "remaining_seconds": remaining,
                            "consecutive_failures": self._consecutive_failures,
                        },
                    )
                    await self._wait(min(remaining, self._config.reconcile_interval_seconds))
                    continue
                logger.info("Circuit breaker reset, resuming reconciliation")
                self._circuit_open_until = None
                self._consecutive_failures = 0

            result = await self.reconcile_once()

            if result.success:
                self._consecutive_failures = 0
            else:
                self._consecutive_failures += 1
                if self._consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                    self._circuit_open_until = datetime.now(UTC) + timedelta(
                        seconds=CIRCUIT_BREAKER_RESET_SECONDS
                    )
                    logger.error(
                        "Circuit breaker opened after consecutive failures",
                        extra={
                            "consecutive_failures": self._consecutive_failures,
                            "reset_seconds": CIRCUIT_BREAKER_RESET_SECONDS,
                        },
                    )

            if self._config.run_once:
                break
            await self._wait(self._config.reconcile_interval_seconds)

        logger.info("Reconciler stopped", extra={"deployment": self._config.deployment_name})

    async def _wait(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except TimeoutError:
            pass

    def shutdown(self) -> None:
        """Stop the loop; an apply in progress stops starting new actions."""
        logger.info("Shutdown requested", extra={"deployment": self._config.deployment_name})
        self._shutdown_event.set()
        if self._executor is not None:
            self._executor.cancel()

    # -------------------------------------------------------------------------
    # Single run
    # -------------------------------------------------------------------------

    async def preview(self) -> ReconcileResult:
        """Plan without applying, whatever the configured mode."""
        return await self._reconcile(ReconciliationMode.OBSERVE)

    async def reconcile_once(self) -> ReconcileResult:
        """Run the pipeline once in the configured mode."""
        return await self._reconcile(self._config.mode)

    async def _reconcile(self, mode: ReconciliationMode) -> ReconcileResult:
        result = ReconcileResult(deployment_name=self._config.deployment_name, mode=mode)

        provenance_logger = get_provenance_logger()
        provenance = provenance_logger.create_provenance(
            deployment_name=self._config.deployment_name,
            subscription_id=self._config.subscription_id,
            resource_group_name=self._config.resource_group_name,
            mode=mode.value,
            deployment_mode=self._config.deployment_mode.value,
            template_path=str(self._config.template_path),
        )

        try:
            prepared = self._prepare()
            provenance.template_hash = prepared.template_hash
            provenance.state_serial_before = prepared.state.serial

            if self._config.refresh_state:
                await self._refresh_state(prepared, result, persist=mode == ReconciliationMode.ENFORCE)
                prepared.resolved = prepared.evaluator.evaluate(prepared.resolved.ordered)

            result.plan = plan(prepared.resolved, prepared.state, self._config.deployment_mode)
            logger.info(
                "Plan ready",
                extra={"summary": result.plan.summary(), "has_changes": result.plan.has_changes},
            )

            if mode == ReconciliationMode.ENFORCE and result.plan.has_changes:
                self._executor = ApplyExecutor(
                    self._provider, prepared.state, prepared.evaluator, self._config.executor
                )
                try:
                    result.apply = await self._executor.apply(result.plan, prepared.resolved)
                finally:
                    self._executor = None
                result.outputs = result.apply.outputs
                result.omitted_outputs = result.apply.omitted_outputs
                self._audit(result.apply, provenance)
            else:
                outputs: OutputsResult = prepared.evaluator.evaluate_outputs(prepared.resolved.graph)
                result.outputs = outputs.values
                result.omitted_outputs = outputs.omitted

            provenance.state_serial_after = prepared.state.serial

        except (EngineError, StateError) as e:
            logger.error(
                "Reconciliation aborted before apply",
                extra={"error": str(e), "error_type": type(e).__name__},
            )
            result.error = e

        result.end_time = datetime.now(UTC)
        self._finish_provenance(result, provenance)
        provenance_logger.log_provenance(provenance)
        self._log_result(result)
        return result

    def _prepare(self) -> _Prepared:
        """Run every pre-flight step.

        Raises:
            ValidationError: Template, parameters or state are invalid.
            CycleError: Dependencies contain a cycle.
            EvaluationError: An expression cannot be resolved.
            StateError: The state file cannot be read.
        """
        template, template_hash = load_template(self._config.template_path)
        parameter_values = load_parameters(self._config.parameters_path)

        state = StateStore.load(self._config.state_path)
        state.check_hash_version()

        environment = DeploymentEnvironment(
            subscription_id=self._config.subscription_id,
            resource_group_name=self._config.resource_group_name,
            location=self._config.location,
            tenant_id=self._config.tenant_id,
            deployment_name=self._config.deployment_name,
            cloud_name=self._config.cloud_name,
            cloud_metadata=self._provider.environment_metadata(self._config.cloud_name),
        )
        evaluator = Evaluator(environment, template, parameter_values, state)
        graph = build_graph(template, evaluator)
        ordered = resolve(graph, evaluator)
        resolved = evaluator.evaluate(ordered)
        return _Prepared(template_hash, state, evaluator, resolved)

    async def _refresh_state(self, prepared: _Prepared, result: ReconcileResult, persist: bool) -> None:
        """Check every record against the provider.

        Resources that no longer exist are forgotten (planned as creates), on
        disk only when persist is set;
        included resources whose declared properties differ are flagged as
        drifted (planned as updates).
        """
        loop = asyncio.get_running_loop()
        timeout = self._config.executor.provider_call_timeout_seconds
        graph = prepared.resolved.graph

        for record in prepared.state.records():
            try:
                remote = await asyncio.wait_for(
                    loop.run_in_executor(
                        None,
                        self._provider.get,
                        record.resource_type,
                        record.remote_id,
                        record.api_version,
                    ),
                    timeout=timeout,
                )
            except (ProviderError, TimeoutError) as e:
                logger.warning(
                    "State refresh failed for record, keeping it",
                    extra={"node_id": str(record.node_id), "error": str(e)},
                )
                continue

            if remote is None:
                prepared.state.forget(record.node_id, persist=persist)
                result.forgotten_nodes.append(str(record.node_id))
                continue

            node = graph.find(record.node_id)
            if node is None or not node.included:
                continue
            resolved_node = prepared.resolved[node.id]
            if resolved_node.is_pending:
                continue

            report = self._drift.compare(node.id.type, resolved_node.body, remote)
            if report.drifted:
                prepared.state.mark_drifted(node.id)
                result.drifted_nodes.append(str(node.id))
                logger.warning(
                    "Remote drift detected",
                    extra={
                        "node_id": str(node.id),
                        "paths": [d.path for d in report.differences],
                    },
                )

    def _audit(self, apply_result: ApplyResult, provenance: RunProvenance) -> None:
        provenance_logger = get_provenance_logger()
        for node_result in apply_result.results.values():
            if node_result.action is None:
                continue
            if node_result.outcome not in (NodeOutcome.SUCCEEDED, NodeOutcome.FAILED):
                continue
            log_security_audit_event(
                event_type="resource_change",
                deployment_name=self._config.deployment_name,
                target_resource=node_result.remote_id or str(node_result.node_id),
                action=node_result.action.value,
                result=node_result.outcome.value,
            )
            provenance_logger.log_change_detail(
                provenance,
                node_id=str(node_result.node_id),
                action=node_result.action.value,
                outcome=node_result.outcome.value,
                remote_id=node_result.remote_id,
            )

    @staticmethod
    def _finish_provenance(result: ReconcileResult, provenance: RunProvenance) -> None:
        summary = ChangeProvenanceSummary()
        if result.plan is not None:
            counts = result.plan.counts()
            summary.create_count = counts[Action.CREATE.value]
            summary.update_count = counts[Action.UPDATE.value]
            summary.delete_count = counts[Action.DELETE.value]
            summary.skip_count = counts[Action.SKIP.value]
        if result.apply is not None:
            outcomes = result.apply.counts()
            summary.failed_count = outcomes[NodeOutcome.FAILED.value]
            summary.blocked_count = outcomes[NodeOutcome.BLOCKED.value]

        provenance.change_summary = summary
        provenance.changes_planned = result.changes_planned
        provenance.changes_applied = result.changes_applied
        provenance.duration_seconds = result.duration_seconds
        if result.error is not None:
            provenance.error = str(result.error)
            provenance.error_type = type(result.error).__name__

    def _log_result(self, result: ReconcileResult) -> None:
        extra: dict[str, Any] = {
            "deployment": result.deployment_name,
            "mode": result.mode.value,
            "duration_seconds": result.duration_seconds,
            "changes_planned": result.changes_planned,
            "changes_applied": result.changes_applied,
            "outputs": sorted(result.outputs),
        }
        if result.drifted_nodes:
            extra["drifted_nodes"] = result.drifted_nodes
        if result.forgotten_nodes:
            extra["forgotten_nodes"] = result.forgotten_nodes

        if result.error is not None:
            extra["error"] = str(result.error)
            logger.error("Reconciliation failed", extra=extra)
        elif result.apply is not None and not result.apply.succeeded:
            extra.update({f"{k}_count": v for k, v in result.apply.counts().items()})
            logger.error("Reconciliation partially failed", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
