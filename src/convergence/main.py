"""Operator entry point.

Reads configuration from the environment, authenticates with managed
identity, and runs the reconciler against Azure Resource Manager until
shutdown (or once, with RUN_ONCE=true).

Exit codes:
    0: Converged (or planned, in observe mode)
    1: Configuration, validation or apply failure
    2: Security violation (credential secrets in the environment)
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from azure.mgmt.resource import ResourceManagementClient

from .azure_provider import AzureResourceProvider
from .config import Config, ConfigurationError
from .reconciler import Reconciler
from .security import SecretlessViolationError, get_managed_identity_credential

_RESERVED_RECORD_ATTRIBUTES = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Extra fields passed via extra={...}
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRIBUTES:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output to stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def create_azure_provider(config: Config) -> AzureResourceProvider:
    """Build the Azure provider from a managed identity credential.

    Raises:
        SecretlessViolationError: If credential secrets are present.
    """
    credential = get_managed_identity_credential(config.managed_identity_client_id)
    client = ResourceManagementClient(
        credential=credential,
        subscription_id=config.subscription_id,
    )
    return AzureResourceProvider(client, config.subscription_id, config.resource_group_name)


async def main() -> int:
    """Run the engine.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting convergence engine",
        extra={
            "deployment": config.deployment_name,
            "subscription_id": config.subscription_id,
            "resource_group": config.resource_group_name,
            "location": config.location,
            "mode": config.mode.value,
        },
    )

    try:
        provider = create_azure_provider(config)
    except SecretlessViolationError as e:
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return 2

    reconciler = Reconciler(config, provider)

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        reconciler.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    if config.run_once:
        result = await reconciler.reconcile_once()
        return 0 if result.success else 1

    await reconciler.run()
    logger.info("Engine stopped")
    return 0


def run() -> None:
    """Entry point for the operator script."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
