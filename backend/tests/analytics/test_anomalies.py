"""Tests for cost anomaly detection."""

import uuid
from datetime import date, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from azpulse.analytics.anomalies import (
    AnomalyThresholds,
    CostAnomalyDetector,
    acknowledge,
    classify_deviation,
    expected_cost,
    list_anomalies,
    score_series,
)
from azpulse.core.errors import InvalidTransitionError, NotFoundError
from azpulse.models.analytics import AnomalySeverity, AnomalyType
from azpulse.models.tenant import Tenant
from azpulse.schemas.records import CostRow
from azpulse.writers.cost import CostWriter

THRESHOLDS = AnomalyThresholds()
VM_ID = "/subscriptions/s1/resourcegroups/rg-web/providers/microsoft.compute/virtualmachines/vm-01"
LAST_DAY = date(2026, 2, 20)


def _series(values: list[float], last_day: date = LAST_DAY) -> dict[date, float]:
    first = last_day - timedelta(days=len(values) - 1)
    return {first + timedelta(days=i): value for i, value in enumerate(values)}


async def _write_costs(
    db: AsyncSession,
    tenant: Tenant,
    values: list[float],
    resource_id: str | None = VM_ID,
    last_day: date = LAST_DAY,
) -> None:
    rows = [
        CostRow(resource_id=resource_id, usage_date=day, meter_category="Compute", cost=cost)
        for day, cost in _series(values, last_day).items()
    ]
    await CostWriter(db).upsert(tenant.id, rows)


class TestClassification:
    def test_mean_and_median_baselines(self):
        assert expected_cost([10.0, 10.0, 40.0]) == 20.0
        assert expected_cost([10.0, 10.0, 40.0], "median") == 10.0

    @pytest.mark.parametrize(
        "actual,anomaly_type,severity",
        [
            (11.5, AnomalyType.SPIKE, AnomalySeverity.INFO),
            (13.0, AnomalyType.SPIKE, AnomalySeverity.WARNING),
            (16.0, AnomalyType.SPIKE, AnomalySeverity.CRITICAL),
            (7.0, AnomalyType.DROP, AnomalySeverity.WARNING),
            (0.0, AnomalyType.DROP, AnomalySeverity.CRITICAL),
        ],
    )
    def test_classify(self, actual, anomaly_type, severity):
        deviation = classify_deviation(actual, 10.0, THRESHOLDS)

        assert deviation.anomaly_type == anomaly_type
        assert deviation.severity == severity

    def test_within_threshold_is_not_anomalous(self):
        assert classify_deviation(10.5, 10.0, THRESHOLDS) is None
        assert classify_deviation(9.5, 10.0, THRESHOLDS) is None


class TestScoreSeries:
    """Test baseline construction over a daily series."""

    def test_flat_series_has_no_anomalies(self):
        assert score_series(_series([10.0] * 20), [LAST_DAY], THRESHOLDS) == {}

    def test_spike_on_last_day(self):
        found = score_series(_series([10.0] * 19 + [16.0]), [LAST_DAY], THRESHOLDS)

        assert found[LAST_DAY].deviation_percent == 60.0
        assert found[LAST_DAY].severity == AnomalySeverity.CRITICAL

    def test_short_history_is_not_scored(self):
        assert score_series(_series([10.0] * 5 + [50.0]), [LAST_DAY], THRESHOLDS) == {}

    def test_tiny_expected_cost_is_ignored(self):
        assert score_series(_series([0.1] * 19 + [5.0]), [LAST_DAY], THRESHOLDS) == {}

    def test_gaps_inside_history_count_as_zero(self):
        """Test that a missing day inside the window lowers the baseline."""
        daily = _series([10.0] * 14 + [20.0])
        del daily[LAST_DAY - timedelta(days=3)]

        found = score_series(daily, [LAST_DAY], THRESHOLDS)

        expected = (10.0 * 13) / 14
        assert found[LAST_DAY].expected_cost == pytest.approx(round(expected, 4))


class TestCostAnomalyDetector:
    @pytest.mark.asyncio
    async def test_flat_costs_create_nothing(self, db_session: AsyncSession, tenant: Tenant):
        await _write_costs(db_session, tenant, [10.0] * 20)

        assert await CostAnomalyDetector(db_session, THRESHOLDS).run(tenant.id) == 0

    @pytest.mark.asyncio
    async def test_spike_creates_resource_and_tenant_anomalies(self, db_session: AsyncSession, tenant: Tenant):
        """Test that a 60% jump is flagged for the resource and the tenant total."""
        await _write_costs(db_session, tenant, [10.0] * 19 + [16.0])

        created = await CostAnomalyDetector(db_session, THRESHOLDS).run(tenant.id)

        assert created == 2
        anomalies = await list_anomalies(db_session, tenant_id=tenant.id)
        by_resource = {a.resource_id: a for a in anomalies}
        assert set(by_resource) == {VM_ID, None}
        spike = by_resource[VM_ID]
        assert spike.anomaly_date == LAST_DAY
        assert spike.anomaly_type == AnomalyType.SPIKE.value
        assert spike.severity == AnomalySeverity.CRITICAL.value
        assert spike.actual_cost == 16.0
        assert spike.expected_cost == 10.0

    @pytest.mark.asyncio
    async def test_second_run_does_not_rescore(self, db_session: AsyncSession, tenant: Tenant):
        await _write_costs(db_session, tenant, [10.0] * 19 + [16.0])
        detector = CostAnomalyDetector(db_session, THRESHOLDS)
        await detector.run(tenant.id)

        assert await detector.run(tenant.id) == 0
        assert len(await list_anomalies(db_session)) == 2

    @pytest.mark.asyncio
    async def test_rerun_keeps_acknowledgement(self, db_session: AsyncSession, tenant: Tenant):
        """Test that forced re-scoring updates values without creating duplicates or clearing acks."""
        await _write_costs(db_session, tenant, [10.0] * 19 + [16.0])
        detector = CostAnomalyDetector(db_session, THRESHOLDS)
        await detector.run(tenant.id)
        spike = next(a for a in await list_anomalies(db_session) if a.resource_id == VM_ID)
        await acknowledge(db_session, spike.id, "ops@example.com")
        await _write_costs(db_session, tenant, [10.0] * 19 + [18.0])

        assert await detector.run(tenant.id, rerun=True) == 0

        db_session.expire_all()
        updated = next(a for a in await list_anomalies(db_session) if a.resource_id == VM_ID)
        assert updated.id == spike.id
        assert updated.is_acknowledged is True
        assert updated.actual_cost == 18.0

    @pytest.mark.asyncio
    async def test_partial_current_day_is_not_scored(self, db_session: AsyncSession, tenant: Tenant):
        """Test that today's accruing cost waits until the day is complete."""
        today = LAST_DAY + timedelta(days=1)
        await _write_costs(db_session, tenant, [100.0] * 20 + [6.0], last_day=today)
        detector = CostAnomalyDetector(db_session, THRESHOLDS)

        during = await detector.run(tenant.id, today=today)
        await _write_costs(db_session, tenant, [100.0] * 20 + [100.0], last_day=today)
        after = await detector.run(tenant.id, today=today + timedelta(days=1))

        assert during == 0
        assert after == 0
        assert await list_anomalies(db_session) == []

    @pytest.mark.asyncio
    async def test_completed_day_is_scored_on_next_run(self, db_session: AsyncSession, tenant: Tenant):
        today = LAST_DAY + timedelta(days=1)
        await _write_costs(db_session, tenant, [100.0] * 20 + [6.0], last_day=today)
        detector = CostAnomalyDetector(db_session, THRESHOLDS)
        await detector.run(tenant.id, today=today)
        await _write_costs(db_session, tenant, [100.0] * 20 + [40.0], last_day=today)

        created = await detector.run(tenant.id, today=today + timedelta(days=1))

        assert created == 2
        drop = next(a for a in await list_anomalies(db_session) if a.resource_id == VM_ID)
        assert drop.anomaly_date == today
        assert drop.anomaly_type == AnomalyType.DROP.value
        assert drop.actual_cost == 40.0

    @pytest.mark.asyncio
    async def test_no_cost_data(self, db_session: AsyncSession, tenant: Tenant):
        assert await CostAnomalyDetector(db_session, THRESHOLDS).run(tenant.id) == 0


class TestAcknowledge:
    @pytest.mark.asyncio
    async def test_acknowledge_is_one_way(self, db_session: AsyncSession, tenant: Tenant):
        await _write_costs(db_session, tenant, [10.0] * 19 + [16.0])
        await CostAnomalyDetector(db_session, THRESHOLDS).run(tenant.id)
        anomaly = (await list_anomalies(db_session, severity=AnomalySeverity.CRITICAL))[0]

        acked = await acknowledge(db_session, anomaly.id, "ops@example.com", notes="Planned load test")

        assert acked.is_acknowledged is True
        assert acked.acknowledged_by == "ops@example.com"
        assert acked.notes == "Planned load test"
        with pytest.raises(InvalidTransitionError):
            await acknowledge(db_session, anomaly.id, "someone-else@example.com")
        assert len(await list_anomalies(db_session, acknowledged=False)) == 1

    @pytest.mark.asyncio
    async def test_unknown_anomaly(self, db_session: AsyncSession):
        with pytest.raises(NotFoundError):
            await acknowledge(db_session, uuid.uuid4(), "ops@example.com")
