"""Composite health score for Azure SQL databases."""

import uuid
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from azpulse.analytics.scores import save_scores
from azpulse.core.config import settings
from azpulse.models.analytics import ScoreKind
from azpulse.models.resource import CachedResource
from azpulse.models.sql_insight import ReplicationLink, SqlPerformanceStat, WaitStat
from azpulse.providers.azure_gateway import SQL_DATABASE_TYPE

logger = structlog.get_logger(__name__)

# Replication states that mean the secondary is keeping up
HEALTHY_REPLICATION_STATES = frozenset({"CATCH_UP", "CATCHING_UP", "SEEDING"})

# Wait type prefix -> category, checked in order
WAIT_TYPE_PREFIXES: tuple[tuple[str, str], ...] = (
    ("PAGEIOLATCH", "io"),
    ("WRITELOG", "io"),
    ("IO_", "io"),
    ("LCK_M", "lock"),
    ("PAGELATCH", "memory"),
    ("RESOURCE_SEMAPHORE", "memory"),
    ("ASYNC_NETWORK", "network"),
    ("SOS_SCHEDULER", "cpu"),
    ("CXPACKET", "parallelism"),
    ("CXCONSUMER", "parallelism"),
)

# Query Store wait categories (wait_category_s)
WAIT_CATEGORY_NAMES: dict[str, str] = {
    "buffer io": "io",
    "tran log io": "io",
    "other disk io": "io",
    "lock": "lock",
    "buffer latch": "memory",
    "memory": "memory",
    "network io": "network",
    "cpu": "cpu",
    "worker thread": "cpu",
    "parallelism": "parallelism",
}


class PerformanceInput(Protocol):
    cpu_percent: float | None
    dtu_percent: float | None
    deadlock_count: int
    blocked_count: int


class WaitInput(Protocol):
    wait_type: str
    wait_time_ms: float


class ReplicationInput(Protocol):
    state: str
    lag_seconds: float | None


@dataclass(frozen=True)
class HealthThresholds:
    """Weights and limits of the health score."""

    weight_performance: float = 0.5
    weight_wait_stats: float = 0.3
    weight_replication: float = 0.2
    replication_lag_seconds: float = 10.0

    @classmethod
    def from_settings(cls) -> "HealthThresholds":
        return cls(
            weight_performance=settings.HEALTH_WEIGHT_PERFORMANCE,
            weight_wait_stats=settings.HEALTH_WEIGHT_WAIT_STATS,
            weight_replication=settings.HEALTH_WEIGHT_REPLICATION,
            replication_lag_seconds=settings.HEALTH_REPLICATION_LAG_THRESHOLD_SECONDS,
        )


@dataclass(frozen=True)
class HealthScore:
    """Composite score with its sub-scores."""

    score: int
    performance: int
    wait_stats: int
    replication: int
    factors: dict[str, Any]

    def breakdown(self) -> dict[str, Any]:
        return {
            "performance": self.performance,
            "wait_stats": self.wait_stats,
            "replication": self.replication,
            "factors": self.factors,
        }


def categorize_wait_type(wait_type: str) -> str:
    """Map a wait type or Query Store wait category to a coarse category ("other" if unknown)."""
    category = WAIT_CATEGORY_NAMES.get(wait_type.strip().lower())
    if category is not None:
        return category
    upper = wait_type.upper()
    for prefix, category in WAIT_TYPE_PREFIXES:
        if upper.startswith(prefix):
            return category
    return "other"


def _step_penalty(value: float, steps: Sequence[tuple[float, int]]) -> int:
    # steps are (threshold, penalty) ordered from the highest threshold down
    for threshold, penalty in steps:
        if value > threshold:
            return penalty
    return 0


def _clamp(value: float) -> int:
    return int(max(0, min(100, round(value))))


def score_performance(perf: PerformanceInput | None) -> tuple[int, dict[str, Any]]:
    if perf is None:
        return 100, {}
    utilization = max(perf.dtu_percent or 0.0, perf.cpu_percent or 0.0)
    penalties = {
        "utilization": _step_penalty(utilization, ((90, 40), (80, 25), (70, 10))),
        "deadlocks": _step_penalty(perf.deadlock_count, ((10, 30), (5, 20), (0, 10))),
        "blocked": _step_penalty(perf.blocked_count, ((20, 20), (10, 10), (0, 5))),
    }
    factors = {
        "utilization_percent": round(utilization, 2),
        "deadlock_count": perf.deadlock_count,
        "blocked_count": perf.blocked_count,
        "penalties": penalties,
    }
    return _clamp(100 - sum(penalties.values())), factors


def score_wait_stats(waits: Sequence[WaitInput]) -> tuple[int, dict[str, Any]]:
    total_ms = sum(max(w.wait_time_ms, 0.0) for w in waits)
    if total_ms <= 0:
        return 100, {}

    by_category: dict[str, float] = {}
    for wait in waits:
        category = categorize_wait_type(wait.wait_type)
        by_category[category] = by_category.get(category, 0.0) + max(wait.wait_time_ms, 0.0)

    io_lock_share = (by_category.get("io", 0.0) + by_category.get("lock", 0.0)) / total_ms * 100
    top_wait_seconds = max(w.wait_time_ms for w in waits) / 1000
    penalties = {
        "io_lock_share": _step_penalty(io_lock_share, ((50, 40), (35, 25), (20, 10))),
        "top_wait": _step_penalty(top_wait_seconds, ((10000, 40), (5000, 25), (1000, 15), (100, 5))),
    }
    factors = {
        "io_lock_share_percent": round(io_lock_share, 2),
        "top_wait_seconds": round(top_wait_seconds, 2),
        "by_category_ms": {k: round(v, 2) for k, v in sorted(by_category.items())},
        "penalties": penalties,
    }
    return _clamp(100 - sum(penalties.values())), factors


def score_replication(links: Sequence[ReplicationInput], lag_threshold: float) -> tuple[int, dict[str, Any]]:
    if not links:
        return 100, {}

    issues = sum(1 for link in links if link.state.upper() not in HEALTHY_REPLICATION_STATES)
    worst_lag = max((link.lag_seconds or 0.0 for link in links), default=0.0)
    penalties = {
        "issues": _step_penalty(issues, ((5, 30), (2, 15), (0, 5))),
        "lag": _step_penalty(
            worst_lag,
            (
                (lag_threshold * 30, 40),
                (lag_threshold * 6, 25),
                (lag_threshold * 3, 15),
                (lag_threshold, 5),
            ),
        ),
    }
    factors = {
        "links": len(links),
        "unhealthy_links": issues,
        "worst_lag_seconds": worst_lag,
        "penalties": penalties,
    }
    return _clamp(100 - sum(penalties.values())), factors


def calculate_health_score(
    perf: PerformanceInput | None,
    waits: Sequence[WaitInput],
    links: Sequence[ReplicationInput],
    thresholds: HealthThresholds | None = None,
) -> HealthScore:
    """
    Weighted composite of performance, wait statistics and replication.

    Every penalty is a non-decreasing step function of its input, so
    degrading one input never raises the composite.

    Args:
        perf: Latest performance counters (None when not collected)
        waits: Wait stats of the latest capture
        links: Current replication links
        thresholds: Weights and lag threshold (defaults from settings)

    Returns:
        HealthScore with a 0-100 composite
    """
    thresholds = thresholds or HealthThresholds.from_settings()
    performance, perf_factors = score_performance(perf)
    wait_stats, wait_factors = score_wait_stats(waits)
    replication, replication_factors = score_replication(links, thresholds.replication_lag_seconds)

    composite = (
        performance * thresholds.weight_performance
        + wait_stats * thresholds.weight_wait_stats
        + replication * thresholds.weight_replication
    )
    return HealthScore(
        score=_clamp(composite),
        performance=performance,
        wait_stats=wait_stats,
        replication=replication,
        factors={
            "performance": perf_factors,
            "wait_stats": wait_factors,
            "replication": replication_factors,
        },
    )


class HealthScoreCalculator:
    """Scores every SQL database of a tenant from its latest insight rows."""

    def __init__(self, db: AsyncSession, thresholds: HealthThresholds | None = None) -> None:
        self.db = db
        self.thresholds = thresholds or HealthThresholds.from_settings()

    async def run(self, tenant_id: uuid.UUID) -> int:
        """
        Recompute health scores for a tenant.

        Databases without any performance stats are skipped.

        Returns:
            Number of scores written
        """
        result = await self.db.execute(
            select(CachedResource).where(
                CachedResource.tenant_id == tenant_id,
                CachedResource.type == SQL_DATABASE_TYPE,
            )
        )
        scores = []
        for database in result.scalars().all():
            perf = await self._latest_performance(database.id)
            if perf is None:
                continue
            health = calculate_health_score(
                perf,
                await self._latest_waits(database.id),
                await self._links(database.id),
                self.thresholds,
            )
            scores.append(
                {
                    "resource_id": database.id,
                    "tenant_id": tenant_id,
                    "score": health.score,
                    "breakdown": health.breakdown(),
                }
            )

        written = await save_scores(self.db, ScoreKind.HEALTH, scores)
        logger.info("analytics.health_scored", tenant_id=str(tenant_id), databases=written)
        return written

    async def _latest_performance(self, resource_id: uuid.UUID) -> SqlPerformanceStat | None:
        result = await self.db.execute(
            select(SqlPerformanceStat)
            .where(SqlPerformanceStat.resource_id == resource_id)
            .order_by(SqlPerformanceStat.timestamp.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _latest_waits(self, resource_id: uuid.UUID) -> list[WaitStat]:
        latest = (
            select(func.max(WaitStat.captured_at))
            .where(WaitStat.resource_id == resource_id)
            .scalar_subquery()
        )
        result = await self.db.execute(
            select(WaitStat).where(WaitStat.resource_id == resource_id, WaitStat.captured_at == latest)
        )
        return list(result.scalars().all())

    async def _links(self, resource_id: uuid.UUID) -> list[ReplicationLink]:
        result = await self.db.execute(
            select(ReplicationLink).where(ReplicationLink.resource_id == resource_id)
        )
        return list(result.scalars().all())
