"""Idle resource detection from utilization metrics."""

import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from azpulse.core.config import settings
from azpulse.core.database import utcnow
from azpulse.core.errors import InvalidTransitionError, NotFoundError
from azpulse.models.analytics import IdleResourceFlag, IdleStatus
from azpulse.models.cost import CostRecord
from azpulse.models.metric import MetricSample
from azpulse.models.resource import CachedResource

logger = structlog.get_logger(__name__)

# CPU / DTU percentage metrics across resource types
UTILIZATION_METRICS = ("Percentage CPU", "cpu_percent", "dtu_consumption_percent", "CpuPercentage")

COST_ESTIMATE_DAYS = 30


@dataclass(frozen=True)
class IdleThresholds:
    """Detection parameters."""

    utilization_percent: float = 5.0
    min_days: int = 14
    lookback_days: int = 30
    min_monthly_cost: float = 0.0

    @classmethod
    def from_settings(cls) -> "IdleThresholds":
        return cls(
            utilization_percent=settings.IDLE_CPU_THRESHOLD_PERCENT,
            min_days=settings.IDLE_MIN_DAYS,
            lookback_days=settings.IDLE_LOOKBACK_DAYS,
            min_monthly_cost=settings.IDLE_MIN_MONTHLY_COST,
        )


@dataclass(frozen=True)
class IdleStreak:
    """Most recent run of idle days of a resource."""

    days: int
    avg_utilization: float
    max_utilization: float


def _as_date(value: date | datetime | str) -> date:
    # SQLite returns DATE() as text
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def idle_streak(daily: dict[date, float], threshold: float) -> IdleStreak:
    """
    Count consecutive days below the threshold ending at the newest observed day.

    A day without samples ends the streak.
    """
    if not daily:
        return IdleStreak(days=0, avg_utilization=0.0, max_utilization=0.0)

    values = []
    day = max(daily)
    while day in daily and daily[day] < threshold:
        values.append(daily[day])
        day -= timedelta(days=1)

    if not values:
        return IdleStreak(days=0, avg_utilization=0.0, max_utilization=0.0)
    return IdleStreak(
        days=len(values),
        avg_utilization=round(sum(values) / len(values), 2),
        max_utilization=round(max(values), 2),
    )


class IdleResourceDetector:
    """
    Flags resources whose utilization stayed below the threshold.

    Re-running updates open flags in place. Flags a human has moved out
    of ``open`` are never touched.
    """

    def __init__(self, db: AsyncSession, thresholds: IdleThresholds | None = None) -> None:
        self.db = db
        self.thresholds = thresholds or IdleThresholds.from_settings()

    async def run(self, tenant_id: uuid.UUID, now: datetime | None = None) -> tuple[int, int]:
        """
        Detect idle resources for one tenant.

        Args:
            tenant_id: Tenant to scan
            now: Reference time (naive UTC)

        Returns:
            (flags opened, open flags updated)
        """
        now = now or utcnow()
        utilization = await self._daily_utilization(tenant_id, now)
        if not utilization:
            return 0, 0

        resources = {
            r.id: r
            for r in (
                await self.db.execute(
                    select(CachedResource).where(CachedResource.id.in_(list(utilization)))
                )
            ).scalars()
        }
        flags = {
            f.resource_id: f
            for f in (
                await self.db.execute(
                    select(IdleResourceFlag).where(IdleResourceFlag.resource_id.in_(list(utilization)))
                )
            ).scalars()
        }

        opened = updated = 0
        for resource_id, daily in utilization.items():
            resource = resources.get(resource_id)
            if resource is None:
                continue
            streak = idle_streak(daily, self.thresholds.utilization_percent)
            if streak.days < self.thresholds.min_days:
                continue
            monthly_cost = await estimate_monthly_cost(self.db, tenant_id, resource.external_id, now.date())
            if monthly_cost < self.thresholds.min_monthly_cost:
                continue

            reason = (
                f"Average utilization below {self.thresholds.utilization_percent:g}% "
                f"for {streak.days} consecutive days"
            )
            summary = {
                "avg_utilization": streak.avg_utilization,
                "max_utilization": streak.max_utilization,
                "threshold_percent": self.thresholds.utilization_percent,
            }

            flag = flags.get(resource_id)
            if flag is None:
                self.db.add(
                    IdleResourceFlag(
                        resource_id=resource_id,
                        tenant_id=tenant_id,
                        idle_reason=reason,
                        idle_days=streak.days,
                        monthly_cost_estimate=monthly_cost,
                        metrics_summary=summary,
                        status=IdleStatus.OPEN.value,
                        detected_at=now,
                        updated_at=now,
                    )
                )
                opened += 1
            elif flag.status == IdleStatus.OPEN.value:
                flag.idle_reason = reason
                flag.idle_days = streak.days
                flag.monthly_cost_estimate = monthly_cost
                flag.metrics_summary = summary
                flag.updated_at = now
                updated += 1

        await self.db.commit()
        logger.info("analytics.idle_detected", tenant_id=str(tenant_id), opened=opened, updated=updated)
        return opened, updated

    async def _daily_utilization(
        self, tenant_id: uuid.UUID, now: datetime
    ) -> dict[uuid.UUID, dict[date, float]]:
        """Per resource and day, the highest daily average across utilization metrics."""
        since = now - timedelta(days=self.thresholds.lookback_days)
        day = func.date(MetricSample.timestamp)
        result = await self.db.execute(
            select(MetricSample.resource_id, MetricSample.metric_name, day, func.avg(MetricSample.value))
            .join(CachedResource, CachedResource.id == MetricSample.resource_id)
            .where(
                CachedResource.tenant_id == tenant_id,
                MetricSample.metric_name.in_(UTILIZATION_METRICS),
                MetricSample.aggregation_type == "average",
                MetricSample.timestamp >= since,
            )
            .group_by(MetricSample.resource_id, MetricSample.metric_name, day)
        )

        utilization: dict[uuid.UUID, dict[date, float]] = defaultdict(dict)
        for resource_id, _, sample_day, average in result.all():
            sample_day = _as_date(sample_day)
            current = utilization[resource_id].get(sample_day)
            utilization[resource_id][sample_day] = max(current or 0.0, float(average))
        return dict(utilization)


async def estimate_monthly_cost(db: AsyncSession, tenant_id: uuid.UUID, external_id: str, today: date) -> float:
    """Cost of the last 30 days of cost rows for a resource, scaled to 30 days."""
    since = today - timedelta(days=COST_ESTIMATE_DAYS)
    result = await db.execute(
        select(func.sum(CostRecord.cost), func.count(func.distinct(CostRecord.usage_date))).where(
            CostRecord.tenant_id == tenant_id,
            CostRecord.resource_key == external_id.lower(),
            CostRecord.usage_date >= since,
        )
    )
    total, days = result.one()
    if not total or not days:
        return 0.0
    return round(float(total) / days * COST_ESTIMATE_DAYS, 2)


async def list_idle_resources(
    db: AsyncSession,
    tenant_id: uuid.UUID | None = None,
    status: IdleStatus | None = None,
    limit: int = 100,
) -> list[IdleResourceFlag]:
    """Idle flags, most expensive first."""
    query = select(IdleResourceFlag)
    if tenant_id is not None:
        query = query.where(IdleResourceFlag.tenant_id == tenant_id)
    if status is not None:
        query = query.where(IdleResourceFlag.status == status.value)
    result = await db.execute(query.order_by(IdleResourceFlag.monthly_cost_estimate.desc()).limit(limit))
    return list(result.scalars().all())


async def set_status(
    db: AsyncSession,
    flag_id: uuid.UUID,
    status: IdleStatus,
    changed_by: str,
    reason: str | None = None,
) -> IdleResourceFlag:
    """
    Apply a human status change to an idle flag.

    Args:
        db: Database session
        flag_id: Flag UUID
        status: New status
        changed_by: Subject of the caller
        reason: Why the flag is ignored (kept only for IGNORED)

    Returns:
        Updated flag

    Raises:
        NotFoundError: If the flag does not exist
        InvalidTransitionError: If the flag already has that status
    """
    flag = await db.get(IdleResourceFlag, flag_id)
    if flag is None:
        raise NotFoundError(f"Idle resource flag {flag_id} not found")
    if flag.status == status.value:
        raise InvalidTransitionError(f"Idle resource flag {flag_id} is already {status.value}")

    flag.status = status.value
    flag.ignored_reason = reason if status == IdleStatus.IGNORED else None
    flag.status_changed_by = changed_by
    flag.status_changed_at = utcnow()
    await db.commit()
    await db.refresh(flag)
    return flag
