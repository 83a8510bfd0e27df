"""Provider plugin interface.

A provider performs the remote calls for opaque resource bodies. The engine
never interprets a body beyond expression substitution; schema knowledge
belongs to the provider and the remote API behind it.

Providers are synchronous. The apply executor runs each call in the default
thread pool with a timeout, so a provider must be safe to call from several
threads at once for different resources.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, NamedTuple, Protocol, runtime_checkable


class ProvisionedResource(NamedTuple):
    """Result of a create-or-update call."""

    remote_id: str
    outputs: dict[str, Any]


@runtime_checkable
class ResourceProvider(Protocol):
    """Remote operations the engine needs.

    All methods raise TransientProviderError for retryable failures and
    PermanentProviderError for everything else.
    """

    def create_or_update(
        self,
        resource_type: str,
        name: str,
        body: Mapping[str, Any],
        api_version: str,
    ) -> ProvisionedResource:
        """Create or replace a resource and return its id and outputs."""
        ...

    def delete(self, resource_type: str, remote_id: str, api_version: str) -> None:
        """Delete a resource. Deleting a missing resource is not an error."""
        ...

    def get(self, resource_type: str, remote_id: str, api_version: str) -> dict[str, Any] | None:
        """Read a resource's current representation, or None if it does not exist."""
        ...

    def environment_metadata(self, cloud_name: str) -> Mapping[str, Any]:
        """Endpoint and suffix tables exposed to templates via environment()."""
        ...
