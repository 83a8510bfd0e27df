"""Configuration management with validation.

All settings come from environment variables and are validated at load time
so a misconfigured engine fails before it touches any remote resource.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class ReconciliationMode(str, Enum):
    """What the reconciler does with a plan."""

    OBSERVE = "observe"  # Plan and report only
    ENFORCE = "enforce"  # Plan and apply


class DeploymentMode(str, Enum):
    """How records without a declaration are treated."""

    INCREMENTAL = "incremental"  # Leave undeclared resources alone
    COMPLETE = "complete"  # Delete resources no longer declared


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RECONCILE_INTERVAL_SECONDS = 300
MIN_RECONCILE_INTERVAL_SECONDS = 10
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_PROVIDER_CALL_TIMEOUT_SECONDS = 300
MAX_PROVIDER_CALL_TIMEOUT_SECONDS = 3600

DEFAULT_MAX_PARALLEL_WORKERS = 4
MAX_PARALLEL_WORKERS = 32

DEFAULT_MAX_APPLY_ATTEMPTS = 3
MAX_APPLY_ATTEMPTS = 10
DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 5.0
DEFAULT_RETRY_BACKOFF_MAX_SECONDS = 60.0

# File size limits
MAX_TEMPLATE_FILE_SIZE_BYTES = 4 * 1024 * 1024
MAX_PARAMETERS_FILE_SIZE_BYTES = 1024 * 1024
MAX_STATE_FILE_SIZE_BYTES = 16 * 1024 * 1024

MAX_RESOURCE_GROUP_NAME_LENGTH = 90
MAX_DEPLOYMENT_NAME_LENGTH = 64

DEFAULT_CLOUD_NAME = "AzureCloud"
DEFAULT_STATE_PATH = ".converge/state.json"

# Input validation patterns
VALID_GUID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"
VALID_DEPLOYMENT_NAME_PATTERN = r"^[A-Za-z0-9_.()-]+$"


@dataclass(frozen=True)
class ExecutorConfig:
    """Apply executor tuning."""

    max_parallel_workers: int = DEFAULT_MAX_PARALLEL_WORKERS
    max_attempts: int = DEFAULT_MAX_APPLY_ATTEMPTS
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    retry_backoff_max_seconds: float = DEFAULT_RETRY_BACKOFF_MAX_SECONDS
    provider_call_timeout_seconds: float = DEFAULT_PROVIDER_CALL_TIMEOUT_SECONDS

    def validate(self) -> list[str]:
        """Return a list of validation errors (empty when valid)."""
        errors: list[str] = []
        if not 1 <= self.max_parallel_workers <= MAX_PARALLEL_WORKERS:
            errors.append(f"MAX_PARALLEL_WORKERS must be between 1 and {MAX_PARALLEL_WORKERS}")
        if not 1 <= self.max_attempts <= MAX_APPLY_ATTEMPTS:
            errors.append(f"MAX_APPLY_ATTEMPTS must be between 1 and {MAX_APPLY_ATTEMPTS}")
        if self.retry_backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE must not be negative")
        if self.retry_backoff_max_seconds < self.retry_backoff_base_seconds:
            errors.append("RETRY_BACKOFF_MAX must be at least RETRY_BACKOFF_BASE")
        if not 0 < self.provider_call_timeout_seconds <= MAX_PROVIDER_CALL_TIMEOUT_SECONDS:
            errors.append(
                f"PROVIDER_CALL_TIMEOUT must be between 0 and {MAX_PROVIDER_CALL_TIMEOUT_SECONDS} seconds"
            )
        return errors


@dataclass(frozen=True)
class Config:
    """Engine configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    template_path: Path
    subscription_id: str
    resource_group_name: str
    location: str

    # Optional deployment context
    tenant_id: str = "00000000-0000-0000-0000-000000000000"
    parameters_path: Path | None = None
    state_path: Path = field(default_factory=lambda: Path(DEFAULT_STATE_PATH))
    cloud_name: str = DEFAULT_CLOUD_NAME
    deployment_name: str = "convergence"
    managed_identity_client_id: str | None = None

    # Behavior
    mode: ReconciliationMode = ReconciliationMode.OBSERVE
    deployment_mode: DeploymentMode = DeploymentMode.INCREMENTAL
    refresh_state: bool = False
    run_once: bool = True
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS

    executor: ExecutorConfig = field(default_factory=ExecutorConfig)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_GUID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not re.match(VALID_GUID_PATTERN, self.tenant_id.lower()):
            errors.append(f"AZURE_TENANT_ID must be a valid GUID: {self.tenant_id}")

        if not self.resource_group_name:
            errors.append("RESOURCE_GROUP_NAME is required")
        elif len(self.resource_group_name) > MAX_RESOURCE_GROUP_NAME_LENGTH:
            errors.append(
                f"RESOURCE_GROUP_NAME exceeds maximum length of {MAX_RESOURCE_GROUP_NAME_LENGTH}"
            )

        if not self.location:
            errors.append("AZURE_LOCATION is required")
        elif not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"AZURE_LOCATION must be a valid region name: {self.location}")

        if len(self.deployment_name) > MAX_DEPLOYMENT_NAME_LENGTH or not re.match(
            VALID_DEPLOYMENT_NAME_PATTERN, self.deployment_name
        ):
            errors.append(f"DEPLOYMENT_NAME is not a valid deployment name: {self.deployment_name}")

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if not self.template_path.is_file():
            errors.append(f"Template file does not exist: {self.template_path}")

        if self.parameters_path is not None and not self.parameters_path.is_file():
            errors.append(f"Parameters file does not exist: {self.parameters_path}")

        errors.extend(self.executor.validate())

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            TEMPLATE_PATH: Deployment template (JSON or YAML)
            PARAMETERS_PATH: Optional parameters file
            STATE_PATH: State file (default: .converge/state.json)
            AZURE_SUBSCRIPTION_ID: Target subscription
            AZURE_TENANT_ID: Tenant exposed to subscription()/tenant()
            RESOURCE_GROUP_NAME: Target resource group
            AZURE_LOCATION: Default location, exposed as resourceGroup().location
            AZURE_CLOUD: Cloud environment name for environment() (default: AzureCloud)
            DEPLOYMENT_NAME: Exposed as deployment().name (default: convergence)
            AZURE_CLIENT_ID: User-assigned managed identity client ID (optional)
            RECONCILIATION_MODE: observe or enforce (default: observe)
            DEPLOYMENT_MODE: incremental or complete (default: incremental)
            REFRESH_STATE: Check recorded resources against the provider (default: false)
            RUN_ONCE: Reconcile once and exit instead of looping (default: true)
            RECONCILE_INTERVAL: Seconds between loops (default: 300)

        Executor Variables:
            MAX_PARALLEL_WORKERS: Concurrent provider calls (default: 4)
            MAX_APPLY_ATTEMPTS: Attempts per provider call (default: 3)
            RETRY_BACKOFF_BASE: Base backoff in seconds (default: 5)
            RETRY_BACKOFF_MAX: Backoff cap in seconds (default: 60)
            PROVIDER_CALL_TIMEOUT: Per-call timeout in seconds (default: 300)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_enum(key: str, enum_type: type[Enum], default: Enum) -> Enum:
            value = os.environ.get(key)
            if not value:
                return default
            try:
                return enum_type(value.lower())
            except ValueError as e:
                valid = [m.value for m in enum_type]
                raise ConfigurationError(f"{key} must be one of {valid}: {value}") from e

        parameters_path = os.environ.get("PARAMETERS_PATH")

        return cls(
            template_path=Path(os.environ.get("TEMPLATE_PATH", "template.json")),
            parameters_path=Path(parameters_path) if parameters_path else None,
            state_path=Path(os.environ.get("STATE_PATH", DEFAULT_STATE_PATH)),
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            tenant_id=os.environ.get("AZURE_TENANT_ID", "00000000-0000-0000-0000-000000000000"),
            resource_group_name=os.environ.get("RESOURCE_GROUP_NAME", ""),
            location=os.environ.get("AZURE_LOCATION", ""),
            cloud_name=os.environ.get("AZURE_CLOUD", DEFAULT_CLOUD_NAME),
            deployment_name=os.environ.get("DEPLOYMENT_NAME", "convergence"),
            managed_identity_client_id=os.environ.get("AZURE_CLIENT_ID") or None,
            mode=get_enum("RECONCILIATION_MODE", ReconciliationMode, ReconciliationMode.OBSERVE),  # type: ignore[arg-type]
            deployment_mode=get_enum("DEPLOYMENT_MODE", DeploymentMode, DeploymentMode.INCREMENTAL),  # type: ignore[arg-type]
            refresh_state=get_bool("REFRESH_STATE", False),
            run_once=get_bool("RUN_ONCE", True),
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            executor=ExecutorConfig(
                max_parallel_workers=get_int("MAX_PARALLEL_WORKERS", DEFAULT_MAX_PARALLEL_WORKERS),
                max_attempts=get_int("MAX_APPLY_ATTEMPTS", DEFAULT_MAX_APPLY_ATTEMPTS),
                retry_backoff_base_seconds=get_float(
                    "RETRY_BACKOFF_BASE", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
                ),
                retry_backoff_max_seconds=get_float(
                    "RETRY_BACKOFF_MAX", DEFAULT_RETRY_BACKOFF_MAX_SECONDS
                ),
                provider_call_timeout_seconds=get_float(
                    "PROVIDER_CALL_TIMEOUT", DEFAULT_PROVIDER_CALL_TIMEOUT_SECONDS
                ),
            ),
        )
