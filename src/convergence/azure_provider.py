"""Azure Resource Manager provider plugin.

Forwards opaque resource bodies to the generic ARM resources API
(resources.*_by_id), so any resource type with an API version works without
type-specific code.

ERROR CLASSIFICATION:
- 408, 429 and 5xx responses, connection and timeout errors: transient
- Everything else (400 validation, 401/403 authorization, 409 conflict): permanent

SECURITY: The ARM client is built from a managed identity credential; see
security.get_managed_identity_credential.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource

from .errors import PermanentProviderError, ProviderError, TransientProviderError
from .identifiers import format_resource_id
from .provider import ProvisionedResource

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

# Endpoint tables exposed via environment(); keyed by cloud name
CLOUD_ENVIRONMENTS: dict[str, dict[str, Any]] = {
    "AzureCloud": {
        "resourceManager": "https://management.azure.com/",
        "portal": "https://portal.azure.com",
        "graph": "https://graph.windows.net/",
        "graphAudience": "https://graph.windows.net/",
        "authentication": {
            "loginEndpoint": "https://login.microsoftonline.com/",
            "audiences": [
                "https://management.core.windows.net/",
                "https://management.azure.com/",
            ],
            "tenant": "common",
            "identityProvider": "AAD",
        },
        "suffixes": {
            "storage": "core.windows.net",
            "sqlServerHostname": ".database.windows.net",
            "keyvaultDns": ".vault.azure.net",
            "acrLoginServer": ".azurecr.io",
            "azureDatalakeStoreFileSystem": "azuredatalakestore.net",
            "azureDatalakeAnalyticsCatalogAndJob": "azuredatalakeanalytics.net",
        },
    },
    "AzureUSGovernment": {
        "resourceManager": "https://management.usgovcloudapi.net/",
        "portal": "https://portal.azure.us",
        "graph": "https://graph.windows.net/",
        "graphAudience": "https://graph.windows.net/",
        "authentication": {
            "loginEndpoint": "https://login.microsoftonline.us/",
            "audiences": [
                "https://management.core.usgovcloudapi.net/",
                "https://management.usgovcloudapi.net/",
            ],
            "tenant": "common",
            "identityProvider": "AAD",
        },
        "suffixes": {
            "storage": "core.usgovcloudapi.net",
            "sqlServerHostname": ".database.usgovcloudapi.net",
            "keyvaultDns": ".vault.usgovcloudapi.net",
            "acrLoginServer": ".azurecr.us",
        },
    },
    "AzureChinaCloud": {
        "resourceManager": "https://management.chinacloudapi.cn/",
        "portal": "https://portal.azure.cn",
        "graph": "https://graph.chinacloudapi.cn/",
        "graphAudience": "https://graph.chinacloudapi.cn/",
        "authentication": {
            "loginEndpoint": "https://login.chinacloudapi.cn/",
            "audiences": [
                "https://management.core.chinacloudapi.cn/",
                "https://management.chinacloudapi.cn/",
            ],
            "tenant": "common",
            "identityProvider": "AAD",
        },
        "suffixes": {
            "storage": "core.chinacloudapi.cn",
            "sqlServerHostname": ".database.chinacloudapi.cn",
            "keyvaultDns": ".vault.azure.cn",
            "acrLoginServer": ".azurecr.cn",
        },
    },
}


def classify_error(error: AzureError, operation: str) -> ProviderError:
    """Map an Azure SDK error to a transient or permanent provider error."""
    message = f"{operation} failed: {error}"

    if isinstance(error, ClientAuthenticationError):
        return PermanentProviderError(message, getattr(error, "status_code", None))

    if isinstance(error, HttpResponseError):
        status_code = error.status_code
        if status_code is not None and status_code in TRANSIENT_STATUS_CODES:
            return TransientProviderError(message, status_code)
        return PermanentProviderError(message, status_code)

    if isinstance(error, ServiceRequestError | ServiceResponseError):
        return TransientProviderError(message)

    return PermanentProviderError(message)


class AzureResourceProvider:
    """ResourceProvider backed by azure-mgmt-resource generic operations."""

    def __init__(
        self,
        client: ResourceManagementClient,
        subscription_id: str,
        resource_group_name: str,
    ) -> None:
        """Initialize the provider.

        Args:
            client: Authenticated ARM client.
            subscription_id: Subscription resources are deployed into.
            resource_group_name: Resource group resources are deployed into.
        """
        self._client = client
        self._subscription_id = subscription_id
        self._resource_group_name = resource_group_name

    def resource_id(self, resource_type: str, name: str) -> str:
        return format_resource_id(
            self._subscription_id, self._resource_group_name, resource_type, name
        )

    def create_or_update(
        self,
        resource_type: str,
        name: str,
        body: Mapping[str, Any],
        api_version: str,
    ) -> ProvisionedResource:
        resource_id = self.resource_id(resource_type, name)
        logger.info(
            "Creating or updating resource",
            extra={"resource_id": resource_id, "api_version": api_version},
        )
        try:
            poller = self._client.resources.begin_create_or_update_by_id(
                resource_id=resource_id,
                api_version=api_version,
                parameters=GenericResource.from_dict(dict(body)),
            )
            result = poller.result()
        except AzureError as e:
            raise classify_error(e, f"create_or_update {resource_id}") from e

        outputs = result.serialize(keep_readonly=True) if result is not None else {}
        return ProvisionedResource(remote_id=outputs.get("id") or resource_id, outputs=outputs)

    def delete(self, resource_type: str, remote_id: str, api_version: str) -> None:
        logger.info("Deleting resource", extra={"resource_id": remote_id, "api_version": api_version})
        try:
            poller = self._client.resources.begin_delete_by_id(
                resource_id=remote_id,
                api_version=api_version,
            )
            poller.result()
        except ResourceNotFoundError:
            logger.info("Resource already absent", extra={"resource_id": remote_id})
        except AzureError as e:
            raise classify_error(e, f"delete {remote_id}") from e

    def get(self, resource_type: str, remote_id: str, api_version: str) -> dict[str, Any] | None:
        try:
            resource = self._client.resources.get_by_id(
                resource_id=remote_id,
                api_version=api_version,
            )
        except ResourceNotFoundError:
            return None
        except AzureError as e:
            raise classify_error(e, f"get {remote_id}") from e
        return resource.serialize(keep_readonly=True) if resource is not None else None

    def environment_metadata(self, cloud_name: str) -> Mapping[str, Any]:
        metadata = CLOUD_ENVIRONMENTS.get(cloud_name)
        if metadata is None:
            logger.warning(
                "No environment metadata for cloud",
                extra={"cloud_name": cloud_name, "known_clouds": sorted(CLOUD_ENVIRONMENTS)},
            )
            return {}
        return metadata
