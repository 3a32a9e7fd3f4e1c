"""Azure Resource Manager provider.

Resources are managed as ARM generic resources addressed by resource ID,
except resource groups which have their own API. Attribute layout:

    name            resource name (injected from the context when omitted)
    resource_group  resource group name (all types except resource groups)
    parent          "/"-separated parent names for child resource types
    api_version     ARM API version (defaults exist for common types)
    location, tags, sku, kind, properties, identity, plan, managedBy
                    sent as the ARM request body

ERROR MAPPING:
- 408, 429 and 5xx responses, connection failures and in-progress
  conflicts are transient
- 409 and "in use" errors on delete are dependency conflicts
- 404 on read or delete means the object is gone
- Everything else is fatal
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, TypeVar

from azure.core.credentials import TokenCredential
from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource, ResourceGroup

from ..config import Config, ConfigurationError, DEFAULT_PROVIDER_TIMEOUT_SECONDS
from ..credentials import get_credential
from .base import (
    Provider,
    ProviderDependencyConflict,
    ProviderError,
    ProviderFatalError,
    ProviderResult,
    ProviderTransientError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

RESOURCE_GROUP_TYPE = "Microsoft.Resources/resourceGroups"

# Attributes that address the object rather than describe it
META_ATTRIBUTES: tuple[str, ...] = ("name", "resource_group", "parent", "api_version")

# Attributes sent in the ARM request body
BODY_ATTRIBUTES: tuple[str, ...] = (
    "location",
    "tags",
    "sku",
    "kind",
    "properties",
    "identity",
    "plan",
    "managedBy",
)

# ARM rejects changes to these on an existing resource
IMMUTABLE_ATTRIBUTES: frozenset[str] = frozenset(
    {"location", "kind", "name", "resource_group", "parent"}
)

# Default API versions for common resource types (lowercased keys)
DEFAULT_API_VERSIONS: dict[str, str] = {
    "microsoft.storage/storageaccounts": "2023-05-01",
    "microsoft.web/serverfarms": "2023-12-01",
    "microsoft.web/sites": "2023-12-01",
    "microsoft.containerregistry/registries": "2023-07-01",
    "microsoft.keyvault/vaults": "2023-07-01",
    "microsoft.network/virtualnetworks": "2023-11-01",
    "microsoft.network/virtualnetworks/subnets": "2023-11-01",
    "microsoft.network/publicipaddresses": "2023-11-01",
    "microsoft.dbforpostgresql/flexibleservers": "2023-06-01-preview",
    "microsoft.cache/redis": "2023-08-01",
    "microsoft.cdn/profiles": "2024-02-01",
    "microsoft.cdn/profiles/afdendpoints": "2024-02-01",
    "microsoft.cdn/profiles/origingroups": "2024-02-01",
    "microsoft.cdn/profiles/origingroups/origins": "2024-02-01",
    "microsoft.cdn/profiles/afdendpoints/routes": "2024-02-01",
    "microsoft.cdn/profiles/customdomains": "2024-02-01",
    "microsoft.operationalinsights/workspaces": "2023-09-01",
    "microsoft.insights/components": "2020-02-02",
    "microsoft.managedidentity/userassignedidentities": "2023-01-31",
}

TRANSIENT_STATUS_CODES: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})

TRANSIENT_ERROR_CODES: frozenset[str] = frozenset(
    {
        "AnotherOperationInProgress",
        "OperationNotAllowed",
        "RetryableError",
        "TooManyRequests",
        # Eventual consistency right after a parent was created
        "ParentResourceNotFound",
        "ResourceGroupNotFound",
    }
)

DEPENDENCY_CONFLICT_CODES: frozenset[str] = frozenset(
    {
        "InUseSubnetCannotBeDeleted",
        "InUseNetworkSecurityGroupCannotBeDeleted",
        "InUseRouteTableCannotBeDeleted",
        "PublicIPAddressInUse",
        "NicInUse",
        "ServerFarmInUse",
        "CannotDeleteResource",
    }
)


def build_resource_id(subscription_id: str, resource_type: str, attributes: dict[str, Any]) -> str:
    """Build the ARM resource ID for a resource.

    Raises:
        ProviderFatalError: If a required addressing attribute is missing.
    """
    name = attributes.get("name")
    if not name:
        raise ProviderFatalError(
            "Missing resource name", resource_type=resource_type, attribute="name"
        )

    if resource_type.lower() == RESOURCE_GROUP_TYPE.lower():
        return f"/subscriptions/{subscription_id}/resourceGroups/{name}"

    namespace, _, type_path = resource_type.partition("/")
    type_segments = type_path.split("/") if type_path else []
    if not type_segments:
        raise ProviderFatalError(
            f"Resource type must be '<namespace>/<type>': {resource_type}",
            resource_type=resource_type,
        )

    parent = attributes.get("parent") or ""
    parents = [p for p in str(parent).split("/") if p]
    if len(parents) != len(type_segments) - 1:
        raise ProviderFatalError(
            f"{resource_type} needs {len(type_segments) - 1} parent name(s), got {parents}",
            resource_type=resource_type,
            attribute="parent",
        )

    resource_group = attributes.get("resource_group")
    if not resource_group:
        raise ProviderFatalError(
            "Missing resource group", resource_type=resource_type, attribute="resource_group"
        )

    path = "/".join(
        f"{segment}/{segment_name}"
        for segment, segment_name in zip(type_segments, [*parents, name], strict=True)
    )
    return (
        f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"
        f"/providers/{namespace}/{path}"
    )


class AzureResourceProvider(Provider):
    """Provider backed by the ARM resources and resource groups APIs.

    SECURITY: Credentials come from credentials.get_credential, which refuses
    secret-based authentication.
    """

    name = "azure"

    def __init__(
        self,
        subscription_id: str,
        credential: TokenCredential,
        timeout_seconds: int = DEFAULT_PROVIDER_TIMEOUT_SECONDS,
        client: ResourceManagementClient | None = None,
    ) -> None:
        self._subscription_id = subscription_id
        self._timeout_seconds = timeout_seconds
        self._client = client or ResourceManagementClient(
            credential=credential,
            subscription_id=subscription_id,
        )

    @classmethod
    def from_config(cls, config: Config) -> AzureResourceProvider:
        if not config.subscription_id:
            raise ConfigurationError("AZURE_SUBSCRIPTION_ID is required for the azure provider")
        return cls(
            subscription_id=config.subscription_id,
            credential=get_credential(config.managed_identity_client_id),
            timeout_seconds=config.provider_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    def immutable_attributes(self, resource_type: str) -> set[str]:
        return set(IMMUTABLE_ATTRIBUTES)

    def identity_attributes(self, resource_type: str) -> set[str]:
        return {"name", "resource_group", "parent"}

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create(self, resource_type: str, attributes: dict[str, Any]) -> ProviderResult:
        resource_id = build_resource_id(self._subscription_id, resource_type, attributes)
        return self._put("create", resource_type, resource_id, attributes)

    def update(
        self,
        resource_type: str,
        remote_id: str,
        attributes: dict[str, Any],
        changed: list[str],
    ) -> ProviderResult:
        logger.debug(
            "Updating resource in place",
            extra={"resource_type": resource_type, "remote_id": remote_id, "changed": changed},
        )
        return self._put("update", resource_type, remote_id, attributes)

    def delete(self, resource_type: str, remote_id: str, attributes: dict[str, Any]) -> None:
        if _is_resource_group(resource_type):
            name = attributes.get("name") or remote_id.rsplit("/", 1)[-1]
            self._call(
                "delete",
                resource_type,
                remote_id,
                lambda: self._wait(self._client.resource_groups.begin_delete(name)),
                missing_ok=True,
            )
            return

        api_version = self._api_version(resource_type, attributes)
        self._call(
            "delete",
            resource_type,
            remote_id,
            lambda: self._wait(self._client.resources.begin_delete_by_id(remote_id, api_version)),
            missing_ok=True,
        )

    def read(
        self, resource_type: str, remote_id: str, attributes: dict[str, Any]
    ) -> dict[str, Any] | None:
        if _is_resource_group(resource_type):
            name = attributes.get("name") or remote_id.rsplit("/", 1)[-1]
            result = self._call(
                "read",
                resource_type,
                remote_id,
                lambda: self._client.resource_groups.get(name),
                missing_ok=True,
            )
        else:
            api_version = self._api_version(resource_type, attributes)
            result = self._call(
                "read",
                resource_type,
                remote_id,
                lambda: self._client.resources.get_by_id(remote_id, api_version),
                missing_ok=True,
            )
        if result is None:
            return None

        observed = result.serialize(keep_readonly=True)
        # Addressing attributes are not part of the ARM body; they are implied by the ID
        for key in META_ATTRIBUTES:
            if key in attributes and key != "name":
                observed[key] = attributes[key]
        return observed

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _put(
        self,
        operation: str,
        resource_type: str,
        resource_id: str,
        attributes: dict[str, Any],
    ) -> ProviderResult:
        body = _request_body(resource_type, attributes)

        if _is_resource_group(resource_type):
            group = ResourceGroup(
                location=body.get("location"),
                tags=body.get("tags"),
                managed_by=body.get("managedBy"),
            )
            result = self._call(
                operation,
                resource_type,
                resource_id,
                lambda: self._client.resource_groups.create_or_update(attributes["name"], group),
            )
        else:
            api_version = self._api_version(resource_type, attributes)
            resource = GenericResource.from_dict(body)
            result = self._call(
                operation,
                resource_type,
                resource_id,
                lambda: self._wait(
                    self._client.resources.begin_create_or_update_by_id(
                        resource_id, api_version, resource
                    )
                ),
            )

        outputs = result.serialize(keep_readonly=True) if result is not None else {}
        logger.info(
            "Resource %sd",
            operation,
            extra={"resource_type": resource_type, "remote_id": resource_id},
        )
        return ProviderResult(remote_id=outputs.get("id") or resource_id, outputs=outputs)

    def _api_version(self, resource_type: str, attributes: dict[str, Any]) -> str:
        api_version = attributes.get("api_version") or DEFAULT_API_VERSIONS.get(
            resource_type.lower()
        )
        if not api_version:
            raise ProviderFatalError(
                f"No default API version for {resource_type}, set api_version",
                resource_type=resource_type,
                attribute="api_version",
            )
        return str(api_version)

    def _wait(self, poller: Any) -> Any:
        """Wait for a long-running operation, bounded by the provider timeout."""
        result = poller.result(timeout=self._timeout_seconds)
        if not poller.done():
            raise ProviderTransientError(
                f"Operation did not finish within {self._timeout_seconds}s"
            )
        return result

    def _call(
        self,
        operation: str,
        resource_type: str,
        remote_id: str | None,
        func: Callable[[], T],
        missing_ok: bool = False,
    ) -> T | None:
        try:
            return func()
        except ResourceNotFoundError as e:
            if missing_ok:
                logger.info(
                    "Resource not found",
                    extra={
                        "operation": operation,
                        "resource_type": resource_type,
                        "remote_id": remote_id,
                    },
                )
                return None
            raise classify_error(e, operation, resource_type, remote_id) from e
        except AzureError as e:
            raise classify_error(e, operation, resource_type, remote_id) from e


def classify_error(
    error: AzureError,
    operation: str,
    resource_type: str,
    remote_id: str | None,
) -> ProviderError:
    """Map an Azure SDK error onto the provider error taxonomy."""
    if isinstance(error, (ServiceRequestError, ServiceResponseError)):
        return ProviderTransientError(
            f"{operation} {resource_type} failed to reach Azure: {error.message}",
            resource_type=resource_type,
            remote_id=remote_id,
        )

    if isinstance(error, HttpResponseError):
        status = error.status_code
        code = error.error.code if error.error else None
        target = error.error.target if error.error else None
        message = f"{operation} {resource_type} failed ({status} {code}): {error.message}"
        kwargs: dict[str, Any] = {
            "resource_type": resource_type,
            "remote_id": remote_id,
            "attribute": target,
            "code": code,
        }

        if operation == "delete" and (status == 409 or code in DEPENDENCY_CONFLICT_CODES):
            return ProviderDependencyConflict(message, **kwargs)
        if status in TRANSIENT_STATUS_CODES or code in TRANSIENT_ERROR_CODES:
            return ProviderTransientError(message, **kwargs)
        return ProviderFatalError(message, **kwargs)

    return ProviderFatalError(
        f"{operation} {resource_type} failed: {error.message}",
        resource_type=resource_type,
        remote_id=remote_id,
    )


def _is_resource_group(resource_type: str) -> bool:
    return resource_type.lower() == RESOURCE_GROUP_TYPE.lower()


def _request_body(resource_type: str, attributes: dict[str, Any]) -> dict[str, Any]:
    body: dict[str, Any] = {}
    for key, value in attributes.items():
        if key in META_ATTRIBUTES:
            continue
        if key not in BODY_ATTRIBUTES:
            raise ProviderFatalError(
                f"Unsupported attribute '{key}' for {resource_type}; "
                f"use one of {list(META_ATTRIBUTES + BODY_ATTRIBUTES)}",
                resource_type=resource_type,
                attribute=key,
            )
        body[key] = value
    return body
