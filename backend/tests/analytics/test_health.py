"""Tests for the SQL database health score."""

from dataclasses import dataclass
from datetime import datetime

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from azpulse.analytics.health import (
    HealthScoreCalculator,
    HealthThresholds,
    calculate_health_score,
    categorize_wait_type,
    score_performance,
    score_replication,
    score_wait_stats,
)
from azpulse.analytics.scores import list_scores
from azpulse.models.analytics import ScoreKind
from azpulse.models.resource import CachedResource
from azpulse.models.tenant import Tenant
from azpulse.schemas.records import ReplicationLinkRecord, ResourceRecord, SqlPerformancePoint, WaitStatRecord
from azpulse.writers.resource import ResourceWriter
from azpulse.writers.sql_insight import SqlInsightWriter

THRESHOLDS = HealthThresholds()


@dataclass
class Perf:
    cpu_percent: float | None = 20.0
    dtu_percent: float | None = None
    deadlock_count: int = 0
    blocked_count: int = 0


@dataclass
class Wait:
    wait_type: str
    wait_time_ms: float


@dataclass
class Link:
    state: str
    lag_seconds: float | None = None


class TestWaitCategories:
    @pytest.mark.parametrize(
        "wait_type,category",
        [
            ("PAGEIOLATCH_SH", "io"),
            ("LCK_M_X", "lock"),
            ("SOS_SCHEDULER_YIELD", "cpu"),
            ("Buffer IO", "io"),
            ("Lock", "lock"),
            ("Unknown", "other"),
        ],
    )
    def test_categorize(self, wait_type, category):
        assert categorize_wait_type(wait_type) == category


class TestSubScores:
    """Test the three sub-scores in isolation."""

    def test_idle_database_is_perfect(self):
        assert calculate_health_score(Perf(), [], [], THRESHOLDS).score == 100

    def test_missing_inputs_score_full(self):
        assert score_performance(None) == (100, {})
        assert score_wait_stats([]) == (100, {})
        assert score_replication([], 10.0) == (100, {})

    def test_high_utilization_uses_worst_of_cpu_and_dtu(self):
        score, factors = score_performance(Perf(cpu_percent=10.0, dtu_percent=95.0))

        assert score == 60
        assert factors["utilization_percent"] == 95.0

    def test_io_and_lock_heavy_waits_are_penalized(self):
        score, factors = score_wait_stats([Wait("LCK_M_X", 800.0), Wait("SOS_SCHEDULER_YIELD", 200.0)])

        assert factors["io_lock_share_percent"] == 80.0
        assert score == 60

    def test_replication_lag_and_unhealthy_state(self):
        score, factors = score_replication([Link("SUSPENDED", lag_seconds=400.0)], 10.0)

        assert factors["unhealthy_links"] == 1
        assert score == 100 - 5 - 40

    def test_composite_is_weighted(self):
        health = calculate_health_score(
            Perf(cpu_percent=95.0),
            [],
            [],
            HealthThresholds(weight_performance=0.5, weight_wait_stats=0.3, weight_replication=0.2),
        )

        assert health.performance == 60
        assert health.score == 80
        assert set(health.breakdown()) == {"performance", "wait_stats", "replication", "factors"}


class TestMonotonicity:
    """Test that degrading any single input never raises the score."""

    @staticmethod
    def _assert_non_increasing(scores: list[int]) -> None:
        assert all(later <= earlier for earlier, later in zip(scores, scores[1:])), scores

    def test_cpu(self):
        self._assert_non_increasing(
            [calculate_health_score(Perf(cpu_percent=cpu), [], [], THRESHOLDS).score for cpu in range(0, 101, 5)]
        )

    def test_deadlocks_and_blocks(self):
        self._assert_non_increasing(
            [calculate_health_score(Perf(deadlock_count=n), [], [], THRESHOLDS).score for n in range(0, 15)]
        )
        self._assert_non_increasing(
            [calculate_health_score(Perf(blocked_count=n), [], [], THRESHOLDS).score for n in range(0, 25)]
        )

    def test_wait_time(self):
        self._assert_non_increasing(
            [
                calculate_health_score(Perf(), [Wait("PAGEIOLATCH_SH", ms)], [], THRESHOLDS).score
                for ms in (0, 50_000, 200_000, 2_000_000, 6_000_000, 20_000_000)
            ]
        )

    def test_replication_lag(self):
        self._assert_non_increasing(
            [
                calculate_health_score(Perf(), [], [Link("CATCH_UP", lag)], THRESHOLDS).score
                for lag in (0, 5, 11, 31, 61, 301, 1000)
            ]
        )

    def test_score_stays_in_range(self):
        worst = calculate_health_score(
            Perf(cpu_percent=100.0, deadlock_count=50, blocked_count=50),
            [Wait("LCK_M_X", 50_000_000.0)],
            [Link("SUSPENDED", 10_000.0)] * 6,
            THRESHOLDS,
        )

        assert 0 <= worst.score <= 100


class TestHealthScoreCalculator:
    @pytest.mark.asyncio
    async def test_scores_databases_with_stats(self, db_session: AsyncSession, tenant: Tenant):
        """Test that only databases with performance stats are scored, from their latest rows."""
        server = "/subscriptions/s1/resourcegroups/rg/providers/microsoft.sql/servers/sql-prod"
        await ResourceWriter(db_session).upsert(
            tenant.id,
            [
                ResourceRecord(external_id=f"{server}/databases/{name}", name=f"sql-prod/{name}", type="Microsoft.Sql/servers/databases")
                for name in ("orders", "empty")
            ],
        )
        orders = (
            await db_session.execute(select(CachedResource).where(CachedResource.name == "sql-prod/orders"))
        ).scalar_one()
        writer = SqlInsightWriter(db_session)
        await writer.upsert_performance(
            orders.id,
            [
                SqlPerformancePoint(timestamp=datetime(2026, 1, 1, 0, 0), cpu_percent=99.0),
                SqlPerformancePoint(timestamp=datetime(2026, 1, 1, 1, 0), cpu_percent=30.0),
            ],
        )
        await writer.upsert_wait_stats(
            orders.id,
            [WaitStatRecord(wait_type="Lock", captured_at=datetime(2026, 1, 1, 1, 0), wait_time_ms=10.0)],
        )
        await writer.upsert_replication_links(
            orders.id, [ReplicationLinkRecord(partner_server="sql-dr", state="CATCH_UP", lag_seconds=1.0)]
        )

        written = await HealthScoreCalculator(db_session, THRESHOLDS).run(tenant.id)

        assert written == 1
        scores = await list_scores(db_session, ScoreKind.HEALTH, tenant_id=tenant.id)
        assert len(scores) == 1
        assert scores[0].resource_id == orders.id
        assert scores[0].breakdown["performance"] == 100
        assert scores[0].breakdown["factors"]["wait_stats"]["io_lock_share_percent"] == 100.0

    @pytest.mark.asyncio
    async def test_rerun_overwrites_latest_score(self, db_session: AsyncSession, tenant: Tenant):
        await ResourceWriter(db_session).upsert(
            tenant.id,
            [ResourceRecord(external_id="/sql/databases/db1", name="srv/db1", type="Microsoft.Sql/servers/databases")],
        )
        database = (await db_session.execute(select(CachedResource))).scalar_one()
        writer = SqlInsightWriter(db_session)
        await writer.upsert_performance(
            database.id, [SqlPerformancePoint(timestamp=datetime(2026, 1, 1, 0, 0), cpu_percent=10.0)]
        )
        await HealthScoreCalculator(db_session, THRESHOLDS).run(tenant.id)
        await writer.upsert_performance(
            database.id, [SqlPerformancePoint(timestamp=datetime(2026, 1, 1, 1, 0), cpu_percent=95.0)]
        )

        await HealthScoreCalculator(db_session, THRESHOLDS).run(tenant.id)

        db_session.expire_all()
        scores = await list_scores(db_session, ScoreKind.HEALTH)
        assert len(scores) == 1
        assert scores[0].score == 80
