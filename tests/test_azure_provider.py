"""Tests for the Azure provider with a mocked management client."""

from __future__ import annotations

from typing import Any
from unittest import mock

import pytest
from azure.core.exceptions import (
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
)

from graphctl.config import Config, ConfigurationError
from graphctl.providers.azure import (
    AzureResourceProvider,
    build_resource_id,
    classify_error,
)
from graphctl.providers.base import (
    ProviderDependencyConflict,
    ProviderFatalError,
    ProviderTransientError,
)

SUBSCRIPTION = "12345678-1234-1234-1234-123456789012"
RG_ID = f"/subscriptions/{SUBSCRIPTION}/resourceGroups/shop-dev-core"
SITE_ID = f"{RG_ID}/providers/Microsoft.Web/sites/shop-dev-web"


def http_error(status: int, code: str | None = None) -> HttpResponseError:
    error = HttpResponseError(message="boom")
    error.status_code = status
    error.error = mock.Mock(code=code, target=None) if code else None
    return error


def poller(result: Any, done: bool = True) -> mock.Mock:
    p = mock.Mock()
    p.result.return_value = result
    p.done.return_value = done
    return p


def arm_object(data: dict[str, Any]) -> mock.Mock:
    obj = mock.Mock()
    obj.serialize.return_value = data
    return obj


@pytest.fixture
def client() -> mock.MagicMock:
    return mock.MagicMock()


@pytest.fixture
def provider(client: mock.MagicMock) -> AzureResourceProvider:
    return AzureResourceProvider(SUBSCRIPTION, credential=mock.Mock(), client=client)


class TestBuildResourceId:
    """Tests for ARM resource ID construction."""

    def test_resource_group(self) -> None:
        assert build_resource_id(
            SUBSCRIPTION, "Microsoft.Resources/resourceGroups", {"name": "shop-dev-core"}
        ) == RG_ID

    def test_top_level_resource(self) -> None:
        resource_id = build_resource_id(
            SUBSCRIPTION,
            "Microsoft.Web/sites",
            {"name": "shop-dev-web", "resource_group": "shop-dev-core"},
        )
        assert resource_id == SITE_ID

    def test_child_resource(self) -> None:
        resource_id = build_resource_id(
            SUBSCRIPTION,
            "Microsoft.Network/virtualNetworks/subnets",
            {"name": "apps", "resource_group": "shop-dev-core", "parent": "shop-dev-vnet"},
        )
        assert resource_id == (
            f"{RG_ID}/providers/Microsoft.Network/virtualNetworks/shop-dev-vnet/subnets/apps"
        )

    def test_missing_parent(self) -> None:
        with pytest.raises(ProviderFatalError) as exc_info:
            build_resource_id(
                SUBSCRIPTION,
                "Microsoft.Network/virtualNetworks/subnets",
                {"name": "apps", "resource_group": "shop-dev-core"},
            )
        assert exc_info.value.attribute == "parent"

    def test_missing_resource_group(self) -> None:
        with pytest.raises(ProviderFatalError) as exc_info:
            build_resource_id(SUBSCRIPTION, "Microsoft.Web/sites", {"name": "shop-dev-web"})
        assert exc_info.value.attribute == "resource_group"


class TestClassifyError:
    """Tests for mapping SDK errors onto the provider error taxonomy."""

    def test_connection_errors_are_transient(self) -> None:
        error = classify_error(
            ServiceRequestError("connection reset"), "create", "Microsoft.Web/sites", None
        )
        assert isinstance(error, ProviderTransientError)

    @pytest.mark.parametrize("status", [408, 429, 500, 503])
    def test_transient_status(self, status: int) -> None:
        error = classify_error(http_error(status), "update", "Microsoft.Web/sites", SITE_ID)
        assert isinstance(error, ProviderTransientError)

    def test_transient_code(self) -> None:
        error = classify_error(
            http_error(400, "AnotherOperationInProgress"), "update", "Microsoft.Web/sites", SITE_ID
        )
        assert isinstance(error, ProviderTransientError)

    def test_bad_request_is_fatal(self) -> None:
        error = classify_error(
            http_error(400, "InvalidResourceName"), "create", "Microsoft.Web/sites", None
        )
        assert isinstance(error, ProviderFatalError)
        assert error.code == "InvalidResourceName"

    def test_in_use_on_delete_is_dependency_conflict(self) -> None:
        error = classify_error(
            http_error(400, "InUseSubnetCannotBeDeleted"),
            "delete",
            "Microsoft.Network/virtualNetworks/subnets",
            SITE_ID,
        )
        assert isinstance(error, ProviderDependencyConflict)

    def test_conflict_only_defers_deletes(self) -> None:
        assert isinstance(
            classify_error(http_error(409), "delete", "Microsoft.Web/serverfarms", SITE_ID),
            ProviderDependencyConflict,
        )
        assert isinstance(
            classify_error(http_error(409, "Conflict"), "create", "Microsoft.Web/sites", None),
            ProviderFatalError,
        )


class TestAzureResourceProvider:
    """Tests for CRUD calls against the management client."""

    def test_create_generic_resource(
        self, provider: AzureResourceProvider, client: mock.MagicMock
    ) -> None:
        client.resources.begin_create_or_update_by_id.return_value = poller(
            arm_object({"id": SITE_ID, "properties": {"defaultHostName": "web.example.net"}})
        )

        result = provider.create(
            "Microsoft.Web/sites",
            {
                "name": "shop-dev-web",
                "resource_group": "shop-dev-core",
                "location": "westeurope",
                "properties": {"httpsOnly": True},
            },
        )

        assert result.remote_id == SITE_ID
        assert result.outputs["properties"]["defaultHostName"] == "web.example.net"
        args = client.resources.begin_create_or_update_by_id.call_args[0]
        assert args[0] == SITE_ID
        assert args[1] == "2023-12-01"
        assert args[2].location == "westeurope"

    def test_create_resource_group(
        self, provider: AzureResourceProvider, client: mock.MagicMock
    ) -> None:
        client.resource_groups.create_or_update.return_value = arm_object({"id": RG_ID})

        result = provider.create(
            "Microsoft.Resources/resourceGroups",
            {"name": "shop-dev-core", "location": "westeurope", "tags": {"project": "shop"}},
        )

        assert result.remote_id == RG_ID
        name, group = client.resource_groups.create_or_update.call_args[0]
        assert name == "shop-dev-core"
        assert group.location == "westeurope"
        assert group.tags == {"project": "shop"}

    def test_unsupported_attribute(
        self, provider: AzureResourceProvider, client: mock.MagicMock
    ) -> None:
        with pytest.raises(ProviderFatalError) as exc_info:
            provider.create(
                "Microsoft.Web/sites",
                {"name": "shop-dev-web", "resource_group": "shop-dev-core", "colour": "blue"},
            )

        assert exc_info.value.attribute == "colour"
        client.resources.begin_create_or_update_by_id.assert_not_called()

    def test_unknown_api_version(self, provider: AzureResourceProvider) -> None:
        with pytest.raises(ProviderFatalError, match="api_version"):
            provider.create("Contoso.Widgets/gadgets", {"name": "g", "resource_group": "rg"})

    def test_operation_timeout_is_transient(
        self, provider: AzureResourceProvider, client: mock.MagicMock
    ) -> None:
        client.resources.begin_create_or_update_by_id.return_value = poller(None, done=False)

        with pytest.raises(ProviderTransientError, match="did not finish"):
            provider.create("Microsoft.Web/sites", {"name": "w", "resource_group": "rg"})

    def test_http_error_is_classified(
        self, provider: AzureResourceProvider, client: mock.MagicMock
    ) -> None:
        client.resources.begin_create_or_update_by_id.side_effect = http_error(503)

        with pytest.raises(ProviderTransientError):
            provider.create("Microsoft.Web/sites", {"name": "w", "resource_group": "rg"})

    def test_read(self, provider: AzureResourceProvider, client: mock.MagicMock) -> None:
        client.resources.get_by_id.return_value = arm_object(
            {"id": SITE_ID, "name": "shop-dev-web", "location": "westeurope"}
        )

        observed = provider.read(
            "Microsoft.Web/sites",
            SITE_ID,
            {"name": "shop-dev-web", "resource_group": "shop-dev-core"},
        )

        assert observed == {
            "id": SITE_ID,
            "name": "shop-dev-web",
            "location": "westeurope",
            "resource_group": "shop-dev-core",
        }
        client.resources.get_by_id.assert_called_once_with(SITE_ID, "2023-12-01")

    def test_read_missing(self, provider: AzureResourceProvider, client: mock.MagicMock) -> None:
        client.resources.get_by_id.side_effect = ResourceNotFoundError("gone")

        assert provider.read("Microsoft.Web/sites", SITE_ID, {"name": "shop-dev-web"}) is None

    def test_delete_missing_is_success(
        self, provider: AzureResourceProvider, client: mock.MagicMock
    ) -> None:
        client.resource_groups.begin_delete.side_effect = ResourceNotFoundError("gone")

        provider.delete("Microsoft.Resources/resourceGroups", RG_ID, {"name": "shop-dev-core"})

        client.resource_groups.begin_delete.assert_called_once_with("shop-dev-core")

    def test_delete_in_use(self, provider: AzureResourceProvider, client: mock.MagicMock) -> None:
        client.resources.begin_delete_by_id.side_effect = http_error(
            400, "InUseSubnetCannotBeDeleted"
        )

        with pytest.raises(ProviderDependencyConflict) as exc_info:
            provider.delete(
                "Microsoft.Network/virtualNetworks/subnets",
                f"{RG_ID}/providers/Microsoft.Network/virtualNetworks/v/subnets/apps",
                {"name": "apps"},
            )
        assert exc_info.value.code == "InUseSubnetCannotBeDeleted"

    def test_capabilities(self, provider: AzureResourceProvider) -> None:
        assert provider.supports_in_place_update("Microsoft.Web/sites", ["properties", "tags"])
        assert not provider.supports_in_place_update("Microsoft.Web/sites", ["location"])
        assert "resource_group" in provider.identity_attributes("Microsoft.Web/sites")


def test_from_config_requires_subscription() -> None:
    with pytest.raises(ConfigurationError, match="AZURE_SUBSCRIPTION_ID"):
        AzureResourceProvider.from_config(Config())
