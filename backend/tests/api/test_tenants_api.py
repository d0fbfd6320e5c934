"""Tests for tenant API endpoints."""

import uuid

import httpx
import pytest
from conftest import SUBSCRIPTION_ID, AzureStub, FakeCredentialFactory, bearer
from sqlalchemy import func, select

from azpulse.core.authz import Capability
from azpulse.models.resource import CachedResource
from azpulse.models.tenant import Tenant

READ_ONLY = [Capability.TENANTS_READ, Capability.SYNC_READ, Capability.ANALYTICS_READ]


def _stub_subscriptions(azure: AzureStub, subscription_id: str = SUBSCRIPTION_ID) -> None:
    azure.json(
        "/subscriptions",
        {"value": [{"subscriptionId": subscription_id, "displayName": "Production", "state": "Enabled"}]},
    )


class TestTenantAuth:
    """Test authentication and capability checks."""

    @pytest.mark.asyncio
    async def test_missing_token_is_rejected(self, async_client: httpx.AsyncClient):
        response = await async_client.get("/api/v1/tenants/")

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    @pytest.mark.asyncio
    async def test_invalid_token_is_rejected(self, async_client: httpx.AsyncClient):
        response = await async_client.get("/api/v1/tenants/", headers={"Authorization": "Bearer not-a-jwt"})

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_read_only_caller_cannot_create(
        self, async_client: httpx.AsyncClient, mock_azure_credentials: dict, session_factory
    ):
        """Test that a caller without tenants:write gets 403 and nothing is stored."""
        response = await async_client.post(
            "/api/v1/tenants/",
            json={"display_name": "Contoso", "credentials": mock_azure_credentials},
            headers=bearer(READ_ONLY),
        )

        assert response.status_code == 403
        assert response.json()["error"] == "AuthorizationError"
        async with session_factory() as db:
            assert (await db.execute(select(func.count()).select_from(Tenant))).scalar_one() == 0

    @pytest.mark.asyncio
    async def test_read_only_caller_can_list(self, async_client: httpx.AsyncClient):
        response = await async_client.get("/api/v1/tenants/", headers=bearer(READ_ONLY))

        assert response.status_code == 200
        assert response.json() == []


class TestTenantCrudAPI:
    @pytest.mark.asyncio
    async def test_create_tenant(self, async_client: httpx.AsyncClient, mock_azure_credentials: dict):
        """Test creating a tenant returns its schedules and never its secret."""
        response = await async_client.post(
            "/api/v1/tenants/",
            json={
                "display_name": "Contoso Production",
                "credentials": mock_azure_credentials,
                "schedules": [{"sync_kind": "costs", "interval_minutes": 1440}],
            },
            headers=bearer(),
        )

        assert response.status_code == 201
        data = response.json()
        assert data["display_name"] == "Contoso Production"
        assert data["directory_id"] == mock_azure_credentials["tenant_id"]
        assert data["subscription_id"] == SUBSCRIPTION_ID
        assert "credentials" not in data
        assert "client_secret" not in response.text
        schedules = {s["sync_kind"]: s for s in data["schedules"]}
        assert set(schedules) == {"resources", "costs", "metrics", "sql-insights"}
        assert schedules["costs"]["interval_minutes"] == 1440

    @pytest.mark.asyncio
    async def test_create_tenant_invalid_credentials_shape(self, async_client: httpx.AsyncClient):
        response = await async_client.post(
            "/api/v1/tenants/",
            json={
                "display_name": "Contoso",
                "credentials": {"tenant_id": "short", "client_id": "x", "client_secret": "s", "subscription_id": "y"},
            },
            headers=bearer(),
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_get_and_list(self, async_client: httpx.AsyncClient, tenant: Tenant):
        listed = await async_client.get("/api/v1/tenants/", headers=bearer())
        fetched = await async_client.get(f"/api/v1/tenants/{tenant.id}", headers=bearer())

        assert [t["id"] for t in listed.json()] == [str(tenant.id)]
        assert fetched.status_code == 200
        assert fetched.json()["display_name"] == "Contoso Production"
        assert len(fetched.json()["schedules"]) == 4

    @pytest.mark.asyncio
    async def test_get_unknown_tenant(self, async_client: httpx.AsyncClient):
        response = await async_client.get(f"/api/v1/tenants/{uuid.uuid4()}", headers=bearer())

        assert response.status_code == 404
        assert response.json()["error"] == "TenantNotFoundError"

    @pytest.mark.asyncio
    async def test_partial_update(self, async_client: httpx.AsyncClient, tenant: Tenant):
        response = await async_client.patch(
            f"/api/v1/tenants/{tenant.id}",
            json={"display_name": "Contoso Staging", "is_enabled": False},
            headers=bearer(),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["display_name"] == "Contoso Staging"
        assert data["is_enabled"] is False
        assert data["subscription_id"] == SUBSCRIPTION_ID

    @pytest.mark.asyncio
    async def test_update_schedule(self, async_client: httpx.AsyncClient, tenant: Tenant):
        response = await async_client.patch(
            f"/api/v1/tenants/{tenant.id}",
            json={"schedules": [{"sync_kind": "metrics", "interval_minutes": 30, "is_enabled": False}]},
            headers=bearer(),
        )

        schedules = {s["sync_kind"]: s for s in response.json()["schedules"]}
        assert schedules["metrics"] == {
            "sync_kind": "metrics",
            "interval_minutes": 30,
            "is_enabled": False,
            "last_enqueued_at": None,
        }

    @pytest.mark.asyncio
    async def test_update_unknown_tenant(self, async_client: httpx.AsyncClient):
        response = await async_client.patch(
            f"/api/v1/tenants/{uuid.uuid4()}", json={"display_name": "x"}, headers=bearer()
        )

        assert response.status_code == 404


class TestConnectionChecks:
    """Test credential validation endpoints, which never write to the database."""

    @pytest.mark.asyncio
    async def test_connection_success(
        self, async_client: httpx.AsyncClient, azure: AzureStub, mock_azure_credentials: dict, session_factory
    ):
        _stub_subscriptions(azure)

        response = await async_client.post(
            "/api/v1/tenants/test-connection", json=mock_azure_credentials, headers=bearer()
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["subscriptions"] == [{"id": SUBSCRIPTION_ID, "name": "Production", "state": "Enabled"}]
        async with session_factory() as db:
            assert (await db.execute(select(func.count()).select_from(Tenant))).scalar_one() == 0
            assert (await db.execute(select(func.count()).select_from(CachedResource))).scalar_one() == 0

    @pytest.mark.asyncio
    async def test_connection_rejected_credentials(
        self,
        async_client: httpx.AsyncClient,
        azure: AzureStub,
        credential_factory: FakeCredentialFactory,
        mock_azure_credentials: dict,
    ):
        """Test that a rejected secret is reported in the body, not as an HTTP error."""
        credential_factory.rejected.add(mock_azure_credentials["client_secret"])

        response = await async_client.post(
            "/api/v1/tenants/test-connection", json=mock_azure_credentials, headers=bearer()
        )

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert "Authentication failed" in response.json()["error"]
        assert azure.requests == []

    @pytest.mark.asyncio
    async def test_connection_subscription_not_visible(
        self, async_client: httpx.AsyncClient, azure: AzureStub, mock_azure_credentials: dict
    ):
        _stub_subscriptions(azure, subscription_id="00000000-0000-0000-0000-000000000000")

        response = await async_client.post(
            "/api/v1/tenants/test-connection", json=mock_azure_credentials, headers=bearer()
        )

        data = response.json()
        assert data["success"] is False
        assert "Subscription not accessible" in data["error"]
        assert len(data["subscriptions"]) == 1

    @pytest.mark.asyncio
    async def test_fetch_resources_summary(
        self, async_client: httpx.AsyncClient, azure: AzureStub, mock_azure_credentials: dict, session_factory
    ):
        base = f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups"
        azure.json("/resourcegroups", {"value": [{"name": "rg-web"}, {"name": "rg-data"}]})
        azure.json(
            "/resources",
            {
                "value": [
                    {
                        "id": f"{base}/rg-web/providers/Microsoft.Web/sites/app-{i}",
                        "name": f"app-{i}",
                        "type": "Microsoft.Web/sites",
                        "location": "westeurope",
                    }
                    for i in range(3)
                ]
                + [{"name": "missing-id"}]
            },
        )

        response = await async_client.post(
            "/api/v1/tenants/test-fetch-resources", json=mock_azure_credentials, headers=bearer()
        )

        assert response.status_code == 200
        data = response.json()
        assert data["total_resources"] == 3
        assert data["resource_groups"] == 2
        assert data["by_type"] == {"microsoft.web/sites": 3}
        assert data["by_resource_group"] == {"rg-web": 3}
        assert data["skipped_records"] == 1
        assert data["sample_resources"][0]["name"] == "app-0"
        async with session_factory() as db:
            assert (await db.execute(select(func.count()).select_from(CachedResource))).scalar_one() == 0

    @pytest.mark.asyncio
    async def test_fetch_resources_rejected_credentials(
        self,
        async_client: httpx.AsyncClient,
        credential_factory: FakeCredentialFactory,
        mock_azure_credentials: dict,
    ):
        credential_factory.rejected.add(mock_azure_credentials["client_secret"])

        response = await async_client.post(
            "/api/v1/tenants/test-fetch-resources", json=mock_azure_credentials, headers=bearer()
        )

        assert response.status_code == 400
        assert response.json()["error"] == "AuthError"
