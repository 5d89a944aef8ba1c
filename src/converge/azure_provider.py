"""Azure Resource Manager provider.

Serves kinds of the form "<Namespace>/<type>" (for example
"Microsoft.Storage/storageAccounts") through the generic resources API.

SECRETLESS:
Authentication uses ManagedIdentityCredential only. No client secrets are
read from configuration.

Attributes:
    name: Resource name (required)
    resourceGroup: Resource group (required)
    location, properties, tags, kind, sku: Passed to the generic resource

The provider handle is the ARM resource id.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.core.exceptions import ResourceNotFoundError as AzureResourceNotFoundError
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource, Sku

from .config import Config, ConfigurationError
from .provider import (
    ProviderError,
    ProviderResult,
    ResourceNotFoundError,
    ResourceProvider,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

AZURE_KIND_PREFIX = "Microsoft."

# HTTP status codes worth retrying
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

REQUIRED_ATTRIBUTES = ("name", "resourceGroup")


def _translate_error(e: AzureError, operation: str, kind: str, handle: str | None) -> ProviderError:
    message = f"Azure {operation} failed for {handle or kind}: {e}"
    if isinstance(e, AzureResourceNotFoundError):
        return ResourceNotFoundError(message, kind=kind, handle=handle)
    if isinstance(e, (ServiceRequestError, ServiceResponseError)):
        return TransientProviderError(message, kind=kind, handle=handle)
    if isinstance(e, HttpResponseError) and e.status_code in TRANSIENT_STATUS_CODES:
        return TransientProviderError(message, kind=kind, handle=handle)
    return ProviderError(message, kind=kind, handle=handle)


class AzureResourceProvider(ResourceProvider):
    """ResourceProvider backed by ResourceManagementClient."""

    name = "azure"

    def __init__(
        self,
        subscription_id: str,
        client: ResourceManagementClient | None = None,
        credential: TokenCredential | None = None,
        api_versions: dict[str, str] | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            subscription_id: Subscription resources are created in.
            client: Preconfigured client (tests inject a mock here).
            credential: Credential used to build a client when none is given.
            api_versions: Kind to API version overrides. Kinds not listed are
                resolved from the resource provider registration.
        """
        if client is None:
            if credential is None:
                raise ConfigurationError("AzureResourceProvider needs a client or a credential")
            client = ResourceManagementClient(credential=credential, subscription_id=subscription_id)

        self._subscription_id = subscription_id
        self._client = client
        self._api_versions: dict[str, str] = {
            kind.lower(): version for kind, version in (api_versions or {}).items()
        }
        self._api_versions_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Config) -> AzureResourceProvider:
        """Build a provider authenticated with a managed identity.

        Raises:
            ConfigurationError: If AZURE_SUBSCRIPTION_ID is not set.
        """
        if not config.subscription_id:
            raise ConfigurationError("AZURE_SUBSCRIPTION_ID is required for Azure resource kinds")

        from azure.identity import ManagedIdentityCredential

        if config.client_id:
            credential = ManagedIdentityCredential(client_id=config.client_id)
        else:
            credential = ManagedIdentityCredential()

        logger.info(
            "Azure provider initialized",
            extra={
                "subscription_id": config.subscription_id,
                "user_assigned_identity": bool(config.client_id),
            },
        )
        return cls(config.subscription_id, credential=credential)

    def resource_id(self, kind: str, attributes: dict[str, Any]) -> str:
        missing = [key for key in REQUIRED_ATTRIBUTES if not attributes.get(key)]
        if missing:
            raise ProviderError(f"{kind} is missing required attributes {missing}", kind=kind)
        return (
            f"/subscriptions/{self._subscription_id}"
            f"/resourceGroups/{attributes['resourceGroup']}"
            f"/providers/{kind}/{attributes['name']}"
        )

    def api_version(self, kind: str) -> str:
        """Return the API version for kind, looking it up once per kind."""
        key = kind.lower()
        with self._api_versions_lock:
            if key in self._api_versions:
                return self._api_versions[key]

        namespace, _, resource_type = kind.partition("/")
        try:
            registration = self._client.providers.get(namespace)
        except AzureError as e:
            raise _translate_error(e, "provider lookup", kind, None) from e

        for candidate in registration.resource_types or []:
            if (candidate.resource_type or "").lower() != resource_type.lower():
                continue
            versions = candidate.api_versions or []
            stable = [version for version in versions if "preview" not in version]
            chosen = (stable or versions or [None])[0]
            if chosen:
                with self._api_versions_lock:
                    self._api_versions[key] = chosen
                return chosen

        raise ProviderError(f"No API version registered for {kind}", kind=kind)

    def _to_generic(self, attributes: dict[str, Any]) -> GenericResource:
        sku = attributes.get("sku")
        return GenericResource(
            location=attributes.get("location"),
            tags=attributes.get("tags"),
            properties=attributes.get("properties"),
            kind=attributes.get("kind"),
            sku=Sku(**sku) if isinstance(sku, dict) else None,
        )

    def _to_attributes(self, resource: GenericResource, handle: str) -> dict[str, Any]:
        """Map a generic resource to the attribute layout used in documents."""
        raw = resource.as_dict()
        resource_group = handle.split("/resourceGroups/", 1)[-1].split("/", 1)[0]
        attributes: dict[str, Any] = {
            "id": raw.get("id") or handle,
            "name": raw.get("name"),
            "resourceGroup": resource_group,
            "location": raw.get("location"),
            "properties": raw.get("properties"),
            "tags": raw.get("tags"),
            "kind": raw.get("kind"),
            "sku": raw.get("sku"),
        }
        return {key: value for key, value in attributes.items() if value is not None}

    def _put(self, kind: str, handle: str, attributes: dict[str, Any], operation: str) -> dict[str, Any]:
        api_version = self.api_version(kind)
        try:
            poller = self._client.resources.begin_create_or_update_by_id(
                handle, api_version, self._to_generic(attributes)
            )
            resource = poller.result()
        except AzureError as e:
            raise _translate_error(e, operation, kind, handle) from e

        logger.info(
            f"Azure resource {operation}d",
            extra={"kind": kind, "resource_id": handle, "api_version": api_version},
        )
        return self._to_attributes(resource, handle)

    def create(self, kind: str, attributes: dict[str, Any]) -> ProviderResult:
        handle = self.resource_id(kind, attributes)
        return ProviderResult(handle=handle, attributes=self._put(kind, handle, attributes, "create"))

    def read(self, kind: str, handle: str) -> dict[str, Any]:
        api_version = self.api_version(kind)
        try:
            resource = self._client.resources.get_by_id(handle, api_version)
        except AzureError as e:
            raise _translate_error(e, "read", kind, handle) from e
        return self._to_attributes(resource, handle)

    def update(self, kind: str, handle: str, attributes: dict[str, Any]) -> dict[str, Any]:
        if self.resource_id(kind, attributes).lower() != handle.lower():
            raise ProviderError(
                f"Renaming or moving {handle} requires replacement; declare a new logical id",
                kind=kind,
                handle=handle,
            )
        return self._put(kind, handle, attributes, "update")

    def delete(self, kind: str, handle: str) -> None:
        api_version = self.api_version(kind)
        try:
            self._client.resources.begin_delete_by_id(handle, api_version).result()
        except AzureError as e:
            raise _translate_error(e, "delete", kind, handle) from e

        logger.info("Azure resource deleted", extra={"kind": kind, "resource_id": handle})
