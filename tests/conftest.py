"""Pytest configuration and fixtures."""

from __future__ import annotations

import copy
import json
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for provider_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from convergence.config import Config, ExecutorConfig, ReconciliationMode  # noqa: E402
from convergence.evaluator import DeploymentEnvironment, Evaluator, ResolvedGraph  # noqa: E402
from convergence.graph import build_graph  # noqa: E402
from convergence.resolver import resolve  # noqa: E402
from convergence.state import StateStore  # noqa: E402
from convergence.template_loader import parse_template  # noqa: E402
from provider_mock import InMemoryProvider  # noqa: E402
from provider_mock.provider import (  # noqa: E402
    MOCK_CLOUD_METADATA,
    MOCK_RESOURCE_GROUP,
    MOCK_SUBSCRIPTION_ID,
)

FIXTURES_DIR = tests_path / "fixtures"
FUNCTION_APP_TEMPLATE = FIXTURES_DIR / "function_app.json"
FUNCTION_APP_PARAMETERS = FIXTURES_DIR / "function_app.parameters.json"

# Zero backoff keeps retry tests fast
FAST_EXECUTOR = ExecutorConfig(
    max_parallel_workers=4,
    max_attempts=3,
    retry_backoff_base_seconds=0.0,
    retry_backoff_max_seconds=0.0,
    provider_call_timeout_seconds=5.0,
)


@pytest.fixture
def environment() -> DeploymentEnvironment:
    return DeploymentEnvironment(
        subscription_id=MOCK_SUBSCRIPTION_ID,
        resource_group_name=MOCK_RESOURCE_GROUP,
        location="westeurope",
        tenant_id="11111111-1111-1111-1111-111111111111",
        deployment_name="test-deployment",
        cloud_metadata=MOCK_CLOUD_METADATA,
    )


@pytest.fixture
def provider() -> InMemoryProvider:
    return InMemoryProvider()


@pytest.fixture
def template_path() -> Path:
    return FUNCTION_APP_TEMPLATE


@pytest.fixture
def parameters_path() -> Path:
    return FUNCTION_APP_PARAMETERS


@pytest.fixture
def function_app_template() -> dict[str, Any]:
    """Raw function app template; tests may modify their copy."""
    return json.loads(FUNCTION_APP_TEMPLATE.read_text(encoding="utf-8"))


@pytest.fixture
def make_evaluator(
    environment: DeploymentEnvironment,
) -> Callable[..., Evaluator]:
    """Factory building an evaluator for an in-memory template."""

    def factory(
        template: dict[str, Any],
        parameters: dict[str, Any] | None = None,
        state: StateStore | None = None,
    ) -> Evaluator:
        parsed = parse_template(copy.deepcopy(template))
        return Evaluator(environment, parsed, parameters or {}, state if state is not None else StateStore())

    return factory


@pytest.fixture
def pipeline(
    environment: DeploymentEnvironment,
) -> Callable[..., tuple[Evaluator, ResolvedGraph]]:
    """Factory running build, resolve and evaluate for an in-memory template."""

    def factory(
        template: dict[str, Any],
        parameters: dict[str, Any] | None = None,
        state: StateStore | None = None,
    ) -> tuple[Evaluator, ResolvedGraph]:
        parsed = parse_template(copy.deepcopy(template))
        evaluator = Evaluator(environment, parsed, parameters or {}, state if state is not None else StateStore())
        graph = build_graph(parsed, evaluator)
        ordered = resolve(graph, evaluator)
        return evaluator, evaluator.evaluate(ordered)

    return factory


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., Config]:
    """Factory for a valid enforce-mode config writing state under tmp_path."""

    def factory(template_path: Path = FUNCTION_APP_TEMPLATE, **overrides: Any) -> Config:
        values: dict[str, Any] = {
            "template_path": template_path,
            "subscription_id": MOCK_SUBSCRIPTION_ID,
            "resource_group_name": MOCK_RESOURCE_GROUP,
            "location": "westeurope",
            "state_path": tmp_path / "state.json",
            "deployment_name": "test-deployment",
            "mode": ReconciliationMode.ENFORCE,
            "executor": FAST_EXECUTOR,
        }
        values.update(overrides)
        return Config(**values)

    return factory
