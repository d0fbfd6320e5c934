"""Tests for the idempotent cache writers."""

from datetime import date, datetime

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from azpulse.models.cost import CostRecord
from azpulse.models.metric import MetricSample
from azpulse.models.resource import CachedResource, CachedResourceGroup
from azpulse.models.sql_insight import ReplicationLagSample, ReplicationLink, SqlPerformanceStat
from azpulse.models.tenant import Tenant
from azpulse.schemas.records import (
    CostRow,
    MetricPoint,
    ReplicationLinkRecord,
    ResourceGroupRecord,
    ResourceRecord,
    SqlPerformancePoint,
)
from azpulse.writers.base import dedupe_rows
from azpulse.writers.cost import CostWriter
from azpulse.writers.metrics import MetricsWriter
from azpulse.writers.resource import ResourceWriter
from azpulse.writers.sql_insight import SqlInsightWriter

VM_ID = "/subscriptions/s1/resourcegroups/rg-web/providers/microsoft.compute/virtualmachines/vm-01"


async def _count(db: AsyncSession, model) -> int:
    return (await db.execute(select(func.count()).select_from(model))).scalar_one()


def _vm(name: str = "vm-01", location: str = "westeurope") -> ResourceRecord:
    return ResourceRecord(
        external_id=VM_ID,
        name=name,
        type="Microsoft.Compute/virtualMachines",
        resource_group="rg-web",
        location=location,
        tags={"env": "prod"},
    )


async def _cached_vm(db: AsyncSession, tenant: Tenant) -> CachedResource:
    await ResourceWriter(db).upsert(tenant.id, [_vm()])
    result = await db.execute(select(CachedResource).where(CachedResource.external_id == VM_ID))
    return result.scalar_one()


class TestDedupeRows:
    def test_last_value_wins(self):
        rows = [{"k": 1, "v": "a"}, {"k": 2, "v": "b"}, {"k": 1, "v": "c"}]

        assert dedupe_rows(rows, ("k",)) == [{"k": 1, "v": "c"}, {"k": 2, "v": "b"}]


class TestResourceWriter:
    """Test resource upserts keyed by external id."""

    @pytest.mark.asyncio
    async def test_rewriting_same_batch_is_idempotent(self, db_session: AsyncSession, tenant: Tenant):
        writer = ResourceWriter(db_session)

        assert await writer.upsert(tenant.id, [_vm()]) == 1
        assert await writer.upsert(tenant.id, [_vm()]) == 1

        assert await _count(db_session, CachedResource) == 1

    @pytest.mark.asyncio
    async def test_existing_resource_is_updated(self, db_session: AsyncSession, tenant: Tenant):
        """Test that a changed record overwrites the cached fields."""
        writer = ResourceWriter(db_session)
        await writer.upsert(tenant.id, [_vm()])

        await writer.upsert(tenant.id, [_vm(name="vm-01-renamed", location="northeurope")])

        db_session.expire_all()
        resource = (await db_session.execute(select(CachedResource))).scalar_one()
        assert resource.name == "vm-01-renamed"
        assert resource.location == "northeurope"
        assert resource.type == "microsoft.compute/virtualmachines"

    @pytest.mark.asyncio
    async def test_duplicate_ids_in_one_batch(self, db_session: AsyncSession, tenant: Tenant):
        written = await ResourceWriter(db_session).upsert(tenant.id, [_vm(name="first"), _vm(name="second")])

        assert written == 1
        resource = (await db_session.execute(select(CachedResource))).scalar_one()
        assert resource.name == "second"

    @pytest.mark.asyncio
    async def test_resource_groups(self, db_session: AsyncSession, tenant: Tenant):
        writer = ResourceWriter(db_session)
        groups = [ResourceGroupRecord(name="rg-web", location="westeurope"), ResourceGroupRecord(name="rg-data")]

        await writer.upsert_groups(tenant.id, groups)
        await writer.upsert_groups(tenant.id, groups)

        assert await _count(db_session, CachedResourceGroup) == 2

    @pytest.mark.asyncio
    async def test_empty_batch_writes_nothing(self, db_session: AsyncSession, tenant: Tenant):
        assert await ResourceWriter(db_session).upsert(tenant.id, []) == 0


class TestCostWriter:
    """Test cost upserts and folding of rows sharing a natural key."""

    @staticmethod
    def _row(cost: float, resource_id: str | None = VM_ID, day: date = date(2026, 1, 15)) -> CostRow:
        return CostRow(
            resource_id=resource_id,
            resource_group="rg-web",
            usage_date=day,
            meter_category="Virtual Machines",
            meter_subcategory="Dv3",
            meter_name="D2 v3",
            cost=cost,
            usage_quantity=1.0,
            currency="EUR",
        )

    @pytest.mark.asyncio
    async def test_rows_with_same_key_are_summed(self, db_session: AsyncSession, tenant: Tenant):
        written = await CostWriter(db_session).upsert(tenant.id, [self._row(2.0), self._row(3.5)])

        assert written == 1
        record = (await db_session.execute(select(CostRecord))).scalar_one()
        assert record.cost == pytest.approx(5.5)
        assert record.usage_quantity == pytest.approx(2.0)

    @pytest.mark.asyncio
    async def test_resync_overwrites_instead_of_adding(self, db_session: AsyncSession, tenant: Tenant):
        """Test that syncing a day twice keeps the latest value, not the sum of both syncs."""
        writer = CostWriter(db_session)
        await writer.upsert(tenant.id, [self._row(4.0)])
        await writer.upsert(tenant.id, [self._row(4.25)])

        db_session.expire_all()
        record = (await db_session.execute(select(CostRecord))).scalar_one()
        assert record.cost == pytest.approx(4.25)

    @pytest.mark.asyncio
    async def test_tenant_level_rows_are_idempotent(self, db_session: AsyncSession, tenant: Tenant):
        """Test that rows without a resource id still upsert on a single key."""
        writer = CostWriter(db_session)
        await writer.upsert(tenant.id, [self._row(1.0, resource_id=None)])
        await writer.upsert(tenant.id, [self._row(1.0, resource_id=None)])

        record = (await db_session.execute(select(CostRecord))).scalar_one()
        assert record.resource_id is None
        assert record.resource_key == ""


class TestMetricsWriter:
    @pytest.mark.asyncio
    async def test_points_are_keyed_by_aggregation(self, db_session: AsyncSession, tenant: Tenant):
        resource = await _cached_vm(db_session, tenant)
        ts = datetime(2026, 1, 1, 0, 0, 0)
        points = [
            MetricPoint(metric_name="Percentage CPU", timestamp=ts, aggregation_type="average", value=10.0),
            MetricPoint(metric_name="Percentage CPU", timestamp=ts, aggregation_type="maximum", value=30.0),
        ]
        writer = MetricsWriter(db_session)

        await writer.upsert(resource.id, points)
        await writer.upsert(resource.id, points)

        assert await _count(db_session, MetricSample) == 2


class TestSqlInsightWriter:
    @pytest.mark.asyncio
    async def test_performance_upsert(self, db_session: AsyncSession, tenant: Tenant):
        resource = await _cached_vm(db_session, tenant)
        ts = datetime(2026, 1, 1, 0, 5, 0)
        writer = SqlInsightWriter(db_session)

        await writer.upsert_performance(resource.id, [SqlPerformancePoint(timestamp=ts, cpu_percent=20.0)])
        await writer.upsert_performance(
            resource.id, [SqlPerformancePoint(timestamp=ts, cpu_percent=25.0, blocked_count=3)]
        )

        db_session.expire_all()
        stat = (await db_session.execute(select(SqlPerformanceStat))).scalar_one()
        assert stat.cpu_percent == 25.0
        assert stat.blocked_count == 3

    @pytest.mark.asyncio
    async def test_replication_link_keeps_current_state_and_history(
        self, db_session: AsyncSession, tenant: Tenant
    ):
        """Test that the link row is updated while one lag sample is appended per capture."""
        resource = await _cached_vm(db_session, tenant)
        writer = SqlInsightWriter(db_session)

        await writer.upsert_replication_links(
            resource.id,
            [ReplicationLinkRecord(partner_server="sql-dr", state="CATCH_UP", lag_seconds=2.0)],
            captured_at=datetime(2026, 1, 1, 0, 0, 0),
        )
        await writer.upsert_replication_links(
            resource.id,
            [ReplicationLinkRecord(partner_server="sql-dr", state="CATCH_UP", lag_seconds=15.0)],
            captured_at=datetime(2026, 1, 1, 1, 0, 0),
        )

        db_session.expire_all()
        link = (await db_session.execute(select(ReplicationLink))).scalar_one()
        assert link.lag_seconds == 15.0
        assert await _count(db_session, ReplicationLagSample) == 2
