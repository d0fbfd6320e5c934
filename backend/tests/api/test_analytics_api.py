"""Tests for analytics API endpoints."""

import uuid
from datetime import date, datetime, timedelta

import httpx
import pytest
from conftest import bearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from azpulse.analytics.anomalies import AnomalyThresholds, CostAnomalyDetector
from azpulse.analytics.idle import IdleResourceDetector, IdleThresholds
from azpulse.analytics.optimization import OptimizationScorer
from azpulse.core.authz import Capability
from azpulse.models.resource import CachedResource
from azpulse.models.tenant import Tenant
from azpulse.schemas.records import CostRow, MetricPoint, ResourceRecord
from azpulse.writers.cost import CostWriter
from azpulse.writers.metrics import MetricsWriter
from azpulse.writers.resource import ResourceWriter

NOW = datetime(2026, 3, 1, 12, 0, 0)
VM_ID = "/subscriptions/s1/resourcegroups/rg-web/providers/microsoft.compute/virtualmachines/vm-01"
READER = [Capability.ANALYTICS_READ]


async def _seed_spike(db: AsyncSession, tenant: Tenant) -> None:
    last_day = date(2026, 2, 20)
    values = [10.0] * 19 + [16.0]
    rows = [
        CostRow(resource_id=VM_ID, usage_date=last_day - timedelta(days=len(values) - 1 - i), cost=cost)
        for i, cost in enumerate(values)
    ]
    await CostWriter(db).upsert(tenant.id, rows)


async def _seed_idle_vm(db: AsyncSession, tenant: Tenant) -> CachedResource:
    await ResourceWriter(db).upsert(
        tenant.id, [ResourceRecord(external_id=VM_ID, name="vm-01", type="Microsoft.Compute/virtualMachines")]
    )
    resource = (await db.execute(select(CachedResource))).scalar_one()
    points = [
        MetricPoint(
            metric_name="Percentage CPU",
            timestamp=(NOW - timedelta(days=day)).replace(hour=hour),
            aggregation_type="average",
            value=2.0,
        )
        for day in range(1, 21)
        for hour in (6, 18)
    ]
    await MetricsWriter(db).upsert(resource.id, points)
    await IdleResourceDetector(db, IdleThresholds(utilization_percent=5.0, min_days=14, lookback_days=30)).run(
        tenant.id, now=NOW
    )
    return resource


class TestAnomalyEndpoints:
    """Test listing and acknowledging cost anomalies."""

    @pytest.mark.asyncio
    async def test_list_with_filters(self, async_client: httpx.AsyncClient, db_session: AsyncSession, tenant: Tenant):
        await _seed_spike(db_session, tenant)
        await CostAnomalyDetector(db_session, AnomalyThresholds()).run(tenant.id)

        everything = await async_client.get("/api/v1/analytics/anomalies", headers=bearer(READER))
        critical = await async_client.get(
            "/api/v1/analytics/anomalies",
            params={"severity": "critical", "tenant_id": str(tenant.id)},
            headers=bearer(READER),
        )
        info = await async_client.get("/api/v1/analytics/anomalies", params={"severity": "info"}, headers=bearer(READER))

        assert everything.status_code == 200
        assert len(everything.json()) == 2
        assert {a["resource_id"] for a in critical.json()} == {VM_ID, None}
        assert critical.json()[0]["deviation_percent"] == 60.0
        assert info.json() == []

    @pytest.mark.asyncio
    async def test_acknowledge_then_conflict(
        self, async_client: httpx.AsyncClient, db_session: AsyncSession, tenant: Tenant
    ):
        """Test that acknowledgement records the caller and cannot be repeated."""
        await _seed_spike(db_session, tenant)
        await CostAnomalyDetector(db_session, AnomalyThresholds()).run(tenant.id)
        anomaly_id = (await async_client.get("/api/v1/analytics/anomalies", headers=bearer(READER))).json()[0]["id"]

        first = await async_client.post(
            f"/api/v1/analytics/anomalies/{anomaly_id}/acknowledge",
            json={"notes": "Month-end batch"},
            headers=bearer(subject="finops@example.com"),
        )
        second = await async_client.post(
            f"/api/v1/analytics/anomalies/{anomaly_id}/acknowledge", json={}, headers=bearer()
        )
        unacked = await async_client.get(
            "/api/v1/analytics/anomalies", params={"acknowledged": "false"}, headers=bearer(READER)
        )

        assert first.status_code == 200
        assert first.json()["is_acknowledged"] is True
        assert first.json()["acknowledged_by"] == "finops@example.com"
        assert first.json()["notes"] == "Month-end batch"
        assert second.status_code == 409
        assert anomaly_id not in [a["id"] for a in unacked.json()]
        assert len(unacked.json()) == 1

    @pytest.mark.asyncio
    async def test_acknowledge_unknown(self, async_client: httpx.AsyncClient):
        response = await async_client.post(
            f"/api/v1/analytics/anomalies/{uuid.uuid4()}/acknowledge", json={}, headers=bearer()
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_reader_cannot_acknowledge(self, async_client: httpx.AsyncClient):
        response = await async_client.post(
            f"/api/v1/analytics/anomalies/{uuid.uuid4()}/acknowledge", json={}, headers=bearer(READER)
        )

        assert response.status_code == 403


class TestIdleResourceEndpoints:
    @pytest.mark.asyncio
    async def test_list_and_ignore(self, async_client: httpx.AsyncClient, db_session: AsyncSession, tenant: Tenant):
        resource = await _seed_idle_vm(db_session, tenant)

        listed = await async_client.get(
            "/api/v1/analytics/idle-resources", params={"status": "open"}, headers=bearer(READER)
        )
        flag = listed.json()[0]
        ignored = await async_client.patch(
            f"/api/v1/analytics/idle-resources/{flag['id']}",
            json={"status": "ignored", "reason": "DR standby"},
            headers=bearer(),
        )
        still_open = await async_client.get(
            "/api/v1/analytics/idle-resources", params={"status": "open"}, headers=bearer(READER)
        )

        assert flag["resource_id"] == str(resource.id)
        assert flag["idle_days"] == 20
        assert ignored.status_code == 200
        assert ignored.json()["status"] == "ignored"
        assert ignored.json()["ignored_reason"] == "DR standby"
        assert ignored.json()["status_changed_by"] == "ops@example.com"
        assert still_open.json() == []

    @pytest.mark.asyncio
    async def test_same_status_conflict(
        self, async_client: httpx.AsyncClient, db_session: AsyncSession, tenant: Tenant
    ):
        await _seed_idle_vm(db_session, tenant)
        flag_id = (await async_client.get("/api/v1/analytics/idle-resources", headers=bearer(READER))).json()[0]["id"]

        response = await async_client.patch(
            f"/api/v1/analytics/idle-resources/{flag_id}", json={"status": "open"}, headers=bearer()
        )

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_invalid_status(self, async_client: httpx.AsyncClient):
        response = await async_client.patch(
            f"/api/v1/analytics/idle-resources/{uuid.uuid4()}", json={"status": "deleted"}, headers=bearer()
        )

        assert response.status_code == 422


class TestScoreEndpoints:
    """Test score listing, the fleet summary and on-demand runs."""

    @pytest.mark.asyncio
    async def test_optimization_scores_and_fleet_summary(
        self, async_client: httpx.AsyncClient, db_session: AsyncSession, tenant: Tenant
    ):
        resource = await _seed_idle_vm(db_session, tenant)
        await OptimizationScorer(db_session, lookback_days=30).run(tenant.id, now=NOW)

        scores = await async_client.get("/api/v1/analytics/scores/optimization", headers=bearer(READER))
        health = await async_client.get("/api/v1/analytics/scores/health", headers=bearer(READER))
        summary = await async_client.get(
            "/api/v1/analytics/fleet-summary", params={"tenant_id": str(tenant.id)}, headers=bearer(READER)
        )

        assert scores.status_code == 200
        assert [s["resource_id"] for s in scores.json()] == [str(resource.id)]
        assert scores.json()[0]["score_kind"] == "optimization"
        assert health.json() == []
        assert summary.json()["total_resources"] == 1
        assert sum(summary.json()["grade_counts"].values()) == 1

    @pytest.mark.asyncio
    async def test_unknown_score_kind(self, async_client: httpx.AsyncClient):
        response = await async_client.get("/api/v1/analytics/scores/popularity", headers=bearer(READER))

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_run_now(self, async_client: httpx.AsyncClient, db_session: AsyncSession, tenant: Tenant):
        await _seed_spike(db_session, tenant)

        response = await async_client.post(
            "/api/v1/analytics/run", json={"tenant_id": str(tenant.id)}, headers=bearer()
        )

        assert response.status_code == 200
        data = response.json()
        assert data["tenant_id"] == str(tenant.id)
        assert data["anomalies_created"] == 2
        assert data["health_scores"] == 0

    @pytest.mark.asyncio
    async def test_run_unknown_tenant(self, async_client: httpx.AsyncClient):
        response = await async_client.post(
            "/api/v1/analytics/run", json={"tenant_id": str(uuid.uuid4())}, headers=bearer()
        )

        assert response.status_code == 404
