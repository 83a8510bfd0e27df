"""Tests for the apply executor."""

import asyncio
from collections.abc import Callable
from typing import Any

import pytest
from provider_mock import InMemoryProvider, simple_resource, template_of

from convergence.config import ExecutorConfig
from convergence.evaluator import Evaluator, ResolvedGraph
from convergence.executor import ApplyExecutor, NodeOutcome
from convergence.identifiers import NodeId
from convergence.planner import Action, plan
from convergence.state import StateStore

WIDGET = "Microsoft.Test/widgets"
Pipeline = Callable[..., tuple[Evaluator, ResolvedGraph]]

EXECUTOR = ExecutorConfig(
    max_parallel_workers=4,
    max_attempts=3,
    retry_backoff_base_seconds=0.0,
    retry_backoff_max_seconds=0.0,
    provider_call_timeout_seconds=5.0,
)


def widget(name: str) -> NodeId:
    return NodeId(WIDGET, name)


def target(name: str) -> str:
    return f"{WIDGET}/{name}".lower()


class TestApplyOrdering:
    """Tests for dependency-ordered execution."""

    @pytest.mark.asyncio
    async def test_creates_in_dependency_order(
        self, pipeline: Pipeline, provider: InMemoryProvider
    ) -> None:
        state = StateStore()
        template = template_of(
            simple_resource("app", dependsOn=["plan"]),
            simple_resource("plan"),
        )
        evaluator, resolved = pipeline(template, state=state)

        result = await ApplyExecutor(provider, state, evaluator, EXECUTOR).apply(plan(resolved, state), resolved)

        assert result.succeeded
        assert provider.mutating_targets() == [target("plan"), target("app")]
        assert result[widget("app")].action == Action.CREATE
        assert widget("app") in state
        assert state.get(widget("app")).remote_id.endswith(f"/providers/{WIDGET}/app")

    @pytest.mark.asyncio
    async def test_deferred_reference_filled_after_dependency(
        self, pipeline: Pipeline, provider: InMemoryProvider
    ) -> None:
        state = StateStore()
        template = template_of(
            simple_resource("a", properties={"key": "k1"}),
            simple_resource("b", properties={"copy": "[reference('a').key]"}),
            outputs={"copied": {"type": "string", "value": "[reference('b').copy]"}},
        )
        evaluator, resolved = pipeline(template, state=state)
        assert resolved[widget("b")].is_pending

        result = await ApplyExecutor(provider, state, evaluator, EXECUTOR).apply(plan(resolved, state), resolved)

        assert result.outcome(widget("b")) == NodeOutcome.SUCCEEDED
        assert provider.resource(target("b")).representation["properties"]["copy"] == "k1"
        assert state.get(widget("b")).property_hash
        assert result.outputs == {"copied": "k1"}

    @pytest.mark.asyncio
    async def test_rerun_is_all_skipped(self, pipeline: Pipeline, provider: InMemoryProvider) -> None:
        state = StateStore()
        template = template_of(
            simple_resource("a", properties={"key": "k1"}),
            simple_resource("b", properties={"copy": "[reference('a').key]"}),
        )
        evaluator, resolved = pipeline(template, state=state)
        await ApplyExecutor(provider, state, evaluator, EXECUTOR).apply(plan(resolved, state), resolved)
        calls_before = len(provider.mutating_targets())

        evaluator, resolved = pipeline(template, state=state)
        second = plan(resolved, state)
        result = await ApplyExecutor(provider, state, evaluator, EXECUTOR).apply(second, resolved)

        assert not second.has_changes
        assert result.with_outcome(NodeOutcome.SKIPPED) == [widget("a"), widget("b")]
        assert len(provider.mutating_targets()) == calls_before
        assert result.changes_applied == 0

    @pytest.mark.asyncio
    async def test_excluded_node_without_record_is_skipped(
        self, pipeline: Pipeline, provider: InMemoryProvider
    ) -> None:
        state = StateStore()
        evaluator, resolved = pipeline(
            template_of(simple_resource("a", condition=False), simple_resource("b", dependsOn=["a"])),
            state=state,
        )

        result = await ApplyExecutor(provider, state, evaluator, EXECUTOR).apply(plan(resolved, state), resolved)

        assert result.outcome(widget("a")) == NodeOutcome.SKIPPED
        assert result[widget("a")].reason == "excluded by condition"
        assert result.outcome(widget("b")) == NodeOutcome.SUCCEEDED
        assert not provider.exists(target("a"))


class TestFailures:
    """Tests for failure isolation and retry."""

    @pytest.mark.asyncio
    async def test_permanent_failure_blocks_dependents_only(
        self, pipeline: Pipeline, provider: InMemoryProvider
    ) -> None:
        state = StateStore()
        template = template_of(
            simple_resource("a"),
            simple_resource("b", dependsOn=["a"]),
            simple_resource("c", dependsOn=["b"]),
            simple_resource("d"),
        )
        provider.fail_permanently(f"{WIDGET}/a")
        evaluator, resolved = pipeline(template, state=state)

        result = await ApplyExecutor(provider, state, evaluator, EXECUTOR).apply(plan(resolved, state), resolved)

        assert not result.succeeded
        assert result.outcome(widget("a")) == NodeOutcome.FAILED
        assert result[widget("a")].reason == "provider call failed"
        assert result[widget("a")].attempts == 1
        assert "status 400" in (result[widget("a")].error or "")
        assert result.outcome(widget("b")) == NodeOutcome.BLOCKED
        assert result[widget("b")].reason == f"dependency {WIDGET}/a failed"
        assert result.outcome(widget("c")) == NodeOutcome.BLOCKED
        assert result.outcome(widget("d")) == NodeOutcome.SUCCEEDED
        assert provider.call_count("create_or_update", target("b")) == 0
        assert provider.call_count("create_or_update", target("c")) == 0
        assert widget("a") not in state
        assert widget("d") in state

    @pytest.mark.asyncio
    async def test_node_waits_for_every_dependency(
        self, pipeline: Pipeline, provider: InMemoryProvider
    ) -> None:
        state = StateStore()
        template = template_of(
            simple_resource("site"),
            simple_resource("vault"),
            simple_resource(
                "role",
                dependsOn=["vault"],
                properties={"principal": "[reference('site').provisioningState]"},
            ),
        )
        provider.fail_permanently(f"{WIDGET}/vault")
        evaluator, resolved = pipeline(template, state=state)

        result = await ApplyExecutor(provider, state, evaluator, EXECUTOR).apply(plan(resolved, state), resolved)

        assert result.outcome(widget("site")) == NodeOutcome.SUCCEEDED
        assert result.outcome(widget("vault")) == NodeOutcome.FAILED
        assert result.outcome(widget("role")) == NodeOutcome.BLOCKED
        assert result[widget("role")].reason == f"dependency {WIDGET}/vault failed"
        assert provider.call_count("create_or_update", target("role")) == 0

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(
        self, pipeline: Pipeline, provider: InMemoryProvider
    ) -> None:
        state = StateStore()
        provider.fail_transiently(f"{WIDGET}/a", times=1)
        evaluator, resolved = pipeline(template_of(simple_resource("a")), state=state)

        result = await ApplyExecutor(provider, state, evaluator, EXECUTOR).apply(plan(resolved, state), resolved)

        assert result.outcome(widget("a")) == NodeOutcome.SUCCEEDED
        assert result[widget("a")].attempts == 2
        assert provider.call_count("create_or_update", target("a")) == 2

    @pytest.mark.asyncio
    async def test_retries_are_capped(self, pipeline: Pipeline, provider: InMemoryProvider) -> None:
        state = StateStore()
        provider.fail_transiently(f"{WIDGET}/a", times=10, status_code=503)
        evaluator, resolved = pipeline(template_of(simple_resource("a")), state=state)

        result = await ApplyExecutor(provider, state, evaluator, EXECUTOR).apply(plan(resolved, state), resolved)

        assert result.outcome(widget("a")) == NodeOutcome.FAILED
        assert result[widget("a")].attempts == EXECUTOR.max_attempts
        assert provider.call_count("create_or_update", target("a")) == EXECUTOR.max_attempts

    @pytest.mark.asyncio
    async def test_timeout_counts_as_transient(
        self, pipeline: Pipeline, provider: InMemoryProvider
    ) -> None:
        state = StateStore()
        config = ExecutorConfig(
            max_parallel_workers=2,
            max_attempts=2,
            retry_backoff_base_seconds=0.0,
            retry_backoff_max_seconds=0.0,
            provider_call_timeout_seconds=0.05,
        )
        provider.delay(f"{WIDGET}/slow", 0.2)
        evaluator, resolved = pipeline(template_of(simple_resource("slow")), state=state)

        result = await ApplyExecutor(provider, state, evaluator, config).apply(plan(resolved, state), resolved)

        assert result.outcome(widget("slow")) == NodeOutcome.FAILED
        assert result[widget("slow")].attempts == 2
        assert "timed out" in (result[widget("slow")].error or "")

    @pytest.mark.asyncio
    async def test_timed_out_call_finishes_before_retry(
        self, pipeline: Pipeline, provider: InMemoryProvider
    ) -> None:
        state = StateStore()
        config = ExecutorConfig(
            max_parallel_workers=2,
            max_attempts=3,
            retry_backoff_base_seconds=0.0,
            retry_backoff_max_seconds=0.0,
            provider_call_timeout_seconds=0.05,
        )
        provider.delay(f"{WIDGET}/slow", 0.15)
        evaluator, resolved = pipeline(template_of(simple_resource("slow")), state=state)

        result = await ApplyExecutor(provider, state, evaluator, config).apply(plan(resolved, state), resolved)

        assert result[widget("slow")].attempts == 3
        assert provider.call_count("create_or_update", target("slow")) == 3
        assert provider.max_in_flight == 1

    @pytest.mark.asyncio
    async def test_unexpected_provider_error_fails_node(
        self,
        pipeline: Pipeline,
        provider: InMemoryProvider,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        state = StateStore()
        create_or_update = provider.create_or_update

        def broken(resource_type: str, name: str, body: Any, api_version: str) -> Any:
            if name == "a":
                raise RuntimeError("plugin bug")
            return create_or_update(resource_type, name, body, api_version)

        monkeypatch.setattr(provider, "create_or_update", broken)
        template = template_of(
            simple_resource("a"),
            simple_resource("b", dependsOn=["a"]),
            simple_resource("c"),
        )
        evaluator, resolved = pipeline(template, state=state)

        result = await ApplyExecutor(provider, state, evaluator, EXECUTOR).apply(plan(resolved, state), resolved)

        assert result.outcome(widget("a")) == NodeOutcome.FAILED
        assert result[widget("a")].error == "RuntimeError: plugin bug"
        assert result.outcome(widget("b")) == NodeOutcome.BLOCKED
        assert result.outcome(widget("c")) == NodeOutcome.SUCCEEDED
        assert widget("a") not in state

    @pytest.mark.asyncio
    async def test_failed_delete_does_not_block_creates(
        self, pipeline: Pipeline, provider: InMemoryProvider
    ) -> None:
        state = StateStore()
        template = template_of(
            simple_resource("old", condition="[parameters('keep')]"),
            simple_resource("new", condition="[not(parameters('keep'))]"),
            parameters={"keep": {"type": "bool"}},
        )
        evaluator, resolved = pipeline(template, {"keep": True}, state=state)
        await ApplyExecutor(provider, state, evaluator, EXECUTOR).apply(plan(resolved, state), resolved)
        provider.fail_permanently(f"{WIDGET}/old", operation="delete")

        evaluator, resolved = pipeline(template, {"keep": False}, state=state)
        result = await ApplyExecutor(provider, state, evaluator, EXECUTOR).apply(plan(resolved, state), resolved)

        assert result.outcome(widget("old")) == NodeOutcome.FAILED
        assert result.outcome(widget("new")) == NodeOutcome.SUCCEEDED
        assert widget("old") in state


class TestConcurrency:
    """Tests for bounded parallelism and cancellation."""

    @pytest.mark.asyncio
    async def test_parallelism_is_bounded(self, pipeline: Pipeline, provider: InMemoryProvider) -> None:
        state = StateStore()
        names = [f"w{i}" for i in range(6)]
        for name in names:
            provider.delay(f"{WIDGET}/{name}", 0.05)
        config = ExecutorConfig(
            max_parallel_workers=2,
            max_attempts=1,
            retry_backoff_base_seconds=0.0,
            retry_backoff_max_seconds=0.0,
            provider_call_timeout_seconds=5.0,
        )
        evaluator, resolved = pipeline(template_of(*(simple_resource(n) for n in names)), state=state)

        result = await ApplyExecutor(provider, state, evaluator, config).apply(plan(resolved, state), resolved)

        assert result.succeeded
        assert 1 <= provider.max_in_flight <= 2

    @pytest.mark.asyncio
    async def test_cancel_before_apply(self, pipeline: Pipeline, provider: InMemoryProvider) -> None:
        state = StateStore()
        evaluator, resolved = pipeline(template_of(simple_resource("a"), simple_resource("b")), state=state)
        executor = ApplyExecutor(provider, state, evaluator, EXECUTOR)
        executor.cancel()

        result = await executor.apply(plan(resolved, state), resolved)

        assert result.cancelled
        assert result.with_outcome(NodeOutcome.CANCELLED) == [widget("a"), widget("b")]
        assert provider.calls == []
        assert len(state) == 0

    @pytest.mark.asyncio
    async def test_cancel_lets_in_flight_call_finish(
        self, pipeline: Pipeline, provider: InMemoryProvider
    ) -> None:
        state = StateStore()
        provider.delay(f"{WIDGET}/a", 0.2)
        evaluator, resolved = pipeline(
            template_of(simple_resource("a"), simple_resource("b", dependsOn=["a"])),
            state=state,
        )
        executor = ApplyExecutor(provider, state, evaluator, EXECUTOR)
        asyncio.get_running_loop().call_later(0.05, executor.cancel)

        result = await executor.apply(plan(resolved, state), resolved)

        assert result.outcome(widget("a")) == NodeOutcome.SUCCEEDED
        assert widget("a") in state
        assert result.outcome(widget("b")) == NodeOutcome.CANCELLED
        assert not result.succeeded


class TestDeletes:
    """Tests for delete execution."""

    @pytest.mark.asyncio
    async def test_deletes_run_before_users(self, pipeline: Pipeline, provider: InMemoryProvider) -> None:
        state = StateStore()
        template = template_of(
            simple_resource("base", condition="[parameters('on')]"),
            simple_resource("mid", condition="[parameters('on')]", dependsOn=["base"]),
            simple_resource("top", condition="[parameters('on')]", dependsOn=["mid"]),
            simple_resource("other"),
            parameters={"on": {"type": "bool"}},
        )
        evaluator, resolved = pipeline(template, {"on": True}, state=state)
        await ApplyExecutor(provider, state, evaluator, EXECUTOR).apply(plan(resolved, state), resolved)
        first_calls = len(provider.mutating_targets())

        evaluator, resolved = pipeline(template, {"on": False}, state=state)
        result = await ApplyExecutor(provider, state, evaluator, EXECUTOR).apply(plan(resolved, state), resolved)

        assert provider.mutating_targets()[first_calls:] == [target("top"), target("mid"), target("base")]
        assert result.with_outcome(NodeOutcome.SUCCEEDED) == [widget("top"), widget("mid"), widget("base")]
        assert result.outcome(widget("other")) == NodeOutcome.SKIPPED
        assert len(state) == 1
        assert provider.resource_count == 1

    @pytest.mark.asyncio
    async def test_delete_without_record_is_skipped(
        self, pipeline: Pipeline, provider: InMemoryProvider
    ) -> None:
        state = StateStore()
        template = template_of(simple_resource("a", condition="[parameters('on')]"), parameters={"on": {"type": "bool"}})
        evaluator, resolved = pipeline(template, {"on": True}, state=state)
        await ApplyExecutor(provider, state, evaluator, EXECUTOR).apply(plan(resolved, state), resolved)

        evaluator, resolved = pipeline(template, {"on": False}, state=state)
        planned = plan(resolved, state)
        state.remove(widget("a"))
        result = await ApplyExecutor(provider, state, evaluator, EXECUTOR).apply(planned, resolved)

        assert result.outcome(widget("a")) == NodeOutcome.SKIPPED
        assert result[widget("a")].reason == "no record to delete"
        assert provider.call_count("delete") == 0
