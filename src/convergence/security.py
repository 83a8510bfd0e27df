"""Credential supply for the Azure provider.

The engine itself never authenticates; the Azure provider plugin needs a
credential, and this module is the only place one is created.

SECURITY INVARIANTS:
1. Only managed identity credentials are handed out
2. Service principal secrets, certificates and passwords in the environment
   abort startup instead of being silently ignored
"""

from __future__ import annotations

import logging
import os

from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Environment variables that indicate secret-based authentication
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

SECRETLESS_VIOLATION_MESSAGE = (
    "Secret-based credentials detected in the environment ({env_var}). "
    "The engine authenticates with managed identity only: remove the variable "
    "and assign a managed identity with the required RBAC roles instead."
)


class SecretlessViolationError(Exception):
    """Raised when credential secrets are present in the environment."""

    pass


def enforce_secretless_architecture() -> None:
    """Refuse to run when secret-based credentials are configured.

    Raises:
        SecretlessViolationError: If any forbidden variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))

    logger.info(
        "Secretless architecture verified",
        extra={"security_event": "secretless_verified", "credential_type": "ManagedIdentity"},
    )


def get_managed_identity_credential(
    client_id: str | None = None,
) -> ManagedIdentityCredential:
    """Get a ManagedIdentityCredential after verifying no secrets are configured.

    Args:
        client_id: Client ID of a user-assigned identity; None selects the
            system-assigned identity.

    Raises:
        SecretlessViolationError: If credential secrets are present.
    """
    enforce_secretless_architecture()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()


def log_security_audit_event(
    event_type: str,
    deployment_name: str,
    target_resource: str | None = None,
    action: str | None = None,
    result: str | None = None,
) -> None:
    """Log a mutation of a remote resource for SIEM ingestion.

    Args:
        event_type: Kind of event (e.g. "resource_change").
        deployment_name: Deployment performing the change.
        target_resource: Remote id or node id of the resource.
        action: create, update or delete.
        result: succeeded or failed.
    """
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "deployment": deployment_name,
            "target_resource": target_resource,
            "action": action,
            "result": result,
        },
    )
