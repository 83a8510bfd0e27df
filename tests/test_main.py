"""Tests for the operator entry point."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator
from pathlib import Path
from unittest import mock

import pytest
from provider_mock import InMemoryProvider
from provider_mock.provider import MOCK_RESOURCE_GROUP, MOCK_SUBSCRIPTION_ID

from convergence.main import JsonFormatter, main


class TestJsonFormatter:
    """Tests for structured log output."""

    def test_extra_fields_are_included(self) -> None:
        record = logging.LogRecord("convergence.executor", logging.INFO, __file__, 1, "Node completed", None, None)
        record.node_id = "Microsoft.Web/sites/fnapp"
        record.attempts = 2

        data = json.loads(JsonFormatter().format(record))

        assert data["message"] == "Node completed"
        assert data["level"] == "INFO"
        assert data["logger"] == "convergence.executor"
        assert data["node_id"] == "Microsoft.Web/sites/fnapp"
        assert data["attempts"] == 2
        assert data["timestamp"].endswith("Z")
        assert "msg" not in data


class TestMain:
    """Tests for main() exit codes."""

    @pytest.fixture(autouse=True)
    def no_logging_setup(self) -> Iterator[None]:
        with mock.patch("convergence.main.setup_logging"):
            yield

    @pytest.fixture
    def env(self, template_path: Path, tmp_path: Path) -> dict[str, str]:
        return {
            "TEMPLATE_PATH": str(template_path),
            "STATE_PATH": str(tmp_path / "state.json"),
            "AZURE_SUBSCRIPTION_ID": MOCK_SUBSCRIPTION_ID,
            "RESOURCE_GROUP_NAME": MOCK_RESOURCE_GROUP,
            "AZURE_LOCATION": "westeurope",
            "RECONCILIATION_MODE": "enforce",
            "RETRY_BACKOFF_BASE": "0",
            "RETRY_BACKOFF_MAX": "0",
        }

    @pytest.mark.asyncio
    async def test_configuration_error(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            assert await main() == 1

    @pytest.mark.asyncio
    async def test_secret_in_environment(self, env: dict[str, str]) -> None:
        with mock.patch.dict(os.environ, {**env, "AZURE_CLIENT_SECRET": "secret"}, clear=True):
            assert await main() == 2

    @pytest.mark.asyncio
    async def test_run_once_converges(self, env: dict[str, str], provider: InMemoryProvider) -> None:
        with (
            mock.patch.dict(os.environ, env, clear=True),
            mock.patch("convergence.main.create_azure_provider", return_value=provider),
        ):
            assert await main() == 0

        assert provider.resource_count == 6

    @pytest.mark.asyncio
    async def test_run_once_failure(self, env: dict[str, str], provider: InMemoryProvider) -> None:
        provider.fail_permanently("Microsoft.Web/serverfarms/plan-fnapp")
        with (
            mock.patch.dict(os.environ, env, clear=True),
            mock.patch("convergence.main.create_azure_provider", return_value=provider),
        ):
            assert await main() == 1
