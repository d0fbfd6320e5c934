"""Cost anomaly detection against a trailing daily baseline."""

import statistics
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Sequence

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from azpulse.core.config import settings
from azpulse.core.database import utcnow
from azpulse.core.errors import InvalidTransitionError, NotFoundError
from azpulse.models.analytics import AnomalySeverity, AnomalyType, CostAnomaly, CostAnomalyWatermark
from azpulse.models.cost import CostRecord

logger = structlog.get_logger(__name__)

# resource_key of the tenant-wide series
AGGREGATE_KEY = ""


@dataclass(frozen=True)
class AnomalyThresholds:
    """Baseline and classification parameters."""

    window_days: int = 14
    min_history_days: int = 7
    baseline: str = "mean"
    min_expected_cost: float = 1.0
    spike_percent: float = 10.0
    drop_percent: float = 10.0
    warning_percent: float = 20.0
    critical_percent: float = 50.0
    max_catchup_days: int = 3

    @classmethod
    def from_settings(cls) -> "AnomalyThresholds":
        return cls(
            window_days=settings.ANOMALY_WINDOW_DAYS,
            min_history_days=settings.ANOMALY_MIN_HISTORY_DAYS,
            baseline=settings.ANOMALY_BASELINE,
            min_expected_cost=settings.ANOMALY_MIN_EXPECTED_COST,
            spike_percent=settings.ANOMALY_SPIKE_THRESHOLD_PERCENT,
            drop_percent=settings.ANOMALY_DROP_THRESHOLD_PERCENT,
            warning_percent=settings.ANOMALY_WARNING_PERCENT,
            critical_percent=settings.ANOMALY_CRITICAL_PERCENT,
            max_catchup_days=settings.ANOMALY_MAX_CATCHUP_DAYS,
        )


@dataclass(frozen=True)
class Deviation:
    """Classified deviation of one day from its baseline."""

    anomaly_type: AnomalyType
    severity: AnomalySeverity
    actual_cost: float
    expected_cost: float
    deviation_percent: float


def expected_cost(history: Sequence[float], baseline: str = "mean") -> float:
    if baseline == "median":
        return float(statistics.median(history))
    return sum(history) / len(history)


def classify_deviation(actual: float, expected: float, thresholds: AnomalyThresholds) -> Deviation | None:
    """
    Classify a day's cost against its expected value.

    Returns:
        Deviation, or None when the day is within thresholds
    """
    deviation = (actual - expected) / expected * 100
    if deviation >= thresholds.spike_percent:
        anomaly_type = AnomalyType.SPIKE
    elif deviation <= -thresholds.drop_percent:
        anomaly_type = AnomalyType.DROP
    else:
        return None

    magnitude = abs(deviation)
    if magnitude > thresholds.critical_percent:
        severity = AnomalySeverity.CRITICAL
    elif magnitude > thresholds.warning_percent:
        severity = AnomalySeverity.WARNING
    else:
        severity = AnomalySeverity.INFO

    return Deviation(
        anomaly_type=anomaly_type,
        severity=severity,
        actual_cost=round(actual, 4),
        expected_cost=round(expected, 4),
        deviation_percent=round(deviation, 2),
    )


def score_series(
    daily: dict[date, float],
    dates: Sequence[date],
    thresholds: AnomalyThresholds,
) -> dict[date, Deviation]:
    """
    Score selected dates of one daily series.

    Days without cost between the first and last observed day count as
    zero; days before the first observation are not history.

    Args:
        daily: Cost per day
        dates: Dates to score
        thresholds: Detection parameters

    Returns:
        Deviations keyed by date (dates within thresholds are omitted)
    """
    if not daily:
        return {}
    first = min(daily)
    found: dict[date, Deviation] = {}
    for day in dates:
        history = []
        for offset in range(thresholds.window_days, 0, -1):
            past = day - timedelta(days=offset)
            if past >= first:
                history.append(daily.get(past, 0.0))
        if len(history) < thresholds.min_history_days:
            continue
        expected = expected_cost(history, thresholds.baseline)
        if expected < thresholds.min_expected_cost:
            continue
        deviation = classify_deviation(daily.get(day, 0.0), expected, thresholds)
        if deviation is not None:
            found[day] = deviation
    return found


class CostAnomalyDetector:
    """
    Scores per-resource and tenant-wide daily cost series.

    A watermark per series records the newest scored day so repeated
    runs never re-score a day unless ``rerun`` is requested. Only days
    before ``today`` are scored; the current day is still accruing cost.
    """

    def __init__(self, db: AsyncSession, thresholds: AnomalyThresholds | None = None) -> None:
        self.db = db
        self.thresholds = thresholds or AnomalyThresholds.from_settings()

    async def run(self, tenant_id: uuid.UUID, rerun: bool = False, today: date | None = None) -> int:
        """
        Detect anomalies for one tenant.

        Args:
            tenant_id: Tenant to scan
            rerun: Re-score the newest days even if already scored; existing
                anomalies are updated but keep their acknowledgement
            today: First incomplete day (UTC); defaults to the current date

        Returns:
            Number of anomalies created
        """
        today = today or utcnow().date()
        series = await self._load_series(tenant_id)
        if not series:
            return 0

        watermarks = {
            w.resource_key: w
            for w in (
                await self.db.execute(
                    select(CostAnomalyWatermark).where(CostAnomalyWatermark.tenant_id == tenant_id)
                )
            ).scalars()
        }

        found: dict[tuple[str, date], Deviation] = {}
        scored_through: dict[str, date] = {}
        for resource_key, daily in series.items():
            complete = [d for d in daily if d < today]
            if not complete:
                continue
            newest = max(complete)
            watermark = watermarks.get(resource_key)
            candidates = [newest - timedelta(days=i) for i in range(self.thresholds.max_catchup_days)]
            if watermark is not None and not rerun:
                candidates = [d for d in candidates if d > watermark.last_scored_date]
            if not candidates:
                continue
            for day, deviation in score_series(daily, sorted(candidates), self.thresholds).items():
                found[(resource_key, day)] = deviation
            scored_through[resource_key] = newest

        created = await self._save(tenant_id, found)

        for resource_key, newest in scored_through.items():
            watermark = watermarks.get(resource_key)
            if watermark is None:
                self.db.add(
                    CostAnomalyWatermark(
                        tenant_id=tenant_id, resource_key=resource_key, last_scored_date=newest
                    )
                )
            elif newest > watermark.last_scored_date:
                watermark.last_scored_date = newest
        await self.db.commit()

        logger.info(
            "analytics.anomalies_detected",
            tenant_id=str(tenant_id),
            series=len(series),
            found=len(found),
            created=created,
        )
        return created

    async def _load_series(self, tenant_id: uuid.UUID) -> dict[str, dict[date, float]]:
        newest = await self.db.scalar(
            select(func.max(CostRecord.usage_date)).where(CostRecord.tenant_id == tenant_id)
        )
        if newest is None:
            return {}
        # Full history for series whose newest day lags the tenant's by up to 30 days
        since = newest - timedelta(
            days=self.thresholds.window_days + self.thresholds.max_catchup_days + 30
        )
        result = await self.db.execute(
            select(CostRecord.resource_key, CostRecord.usage_date, func.sum(CostRecord.cost))
            .where(CostRecord.tenant_id == tenant_id, CostRecord.usage_date >= since)
            .group_by(CostRecord.resource_key, CostRecord.usage_date)
        )

        series: dict[str, dict[date, float]] = defaultdict(dict)
        aggregate: dict[date, float] = defaultdict(float)
        for resource_key, usage_date, cost in result.all():
            cost = float(cost or 0.0)
            aggregate[usage_date] += cost
            if resource_key != AGGREGATE_KEY:
                series[resource_key][usage_date] = cost
        series[AGGREGATE_KEY] = dict(aggregate)
        return dict(series)

    async def _save(self, tenant_id: uuid.UUID, found: dict[tuple[str, date], Deviation]) -> int:
        if not found:
            return 0
        result = await self.db.execute(
            select(CostAnomaly).where(
                CostAnomaly.tenant_id == tenant_id,
                CostAnomaly.anomaly_date.in_({day for _, day in found}),
            )
        )
        existing = {(a.resource_key, a.anomaly_date): a for a in result.scalars()}

        created = 0
        for (resource_key, day), deviation in found.items():
            anomaly = existing.get((resource_key, day))
            if anomaly is None:
                anomaly = CostAnomaly(
                    tenant_id=tenant_id,
                    resource_id=resource_key or None,
                    resource_key=resource_key,
                    anomaly_date=day,
                    is_acknowledged=False,
                    detected_at=utcnow(),
                )
                self.db.add(anomaly)
                created += 1
            anomaly.anomaly_type = deviation.anomaly_type.value
            anomaly.severity = deviation.severity.value
            anomaly.actual_cost = deviation.actual_cost
            anomaly.expected_cost = deviation.expected_cost
            anomaly.deviation_percent = deviation.deviation_percent
        await self.db.flush()
        return created


async def list_anomalies(
    db: AsyncSession,
    tenant_id: uuid.UUID | None = None,
    severity: AnomalySeverity | None = None,
    acknowledged: bool | None = None,
    limit: int = 100,
) -> list[CostAnomaly]:
    """Anomalies newest first."""
    query = select(CostAnomaly)
    if tenant_id is not None:
        query = query.where(CostAnomaly.tenant_id == tenant_id)
    if severity is not None:
        query = query.where(CostAnomaly.severity == severity.value)
    if acknowledged is not None:
        query = query.where(CostAnomaly.is_acknowledged == acknowledged)
    result = await db.execute(
        query.order_by(CostAnomaly.anomaly_date.desc(), CostAnomaly.deviation_percent.desc()).limit(limit)
    )
    return list(result.scalars().all())


async def acknowledge(
    db: AsyncSession,
    anomaly_id: uuid.UUID,
    acknowledged_by: str,
    notes: str | None = None,
) -> CostAnomaly:
    """
    Mark an anomaly as acknowledged. The transition is one-way.

    Raises:
        NotFoundError: If the anomaly does not exist
        InvalidTransitionError: If it is already acknowledged
    """
    anomaly = await db.get(CostAnomaly, anomaly_id)
    if anomaly is None:
        raise NotFoundError(f"Cost anomaly {anomaly_id} not found")
    if anomaly.is_acknowledged:
        raise InvalidTransitionError(f"Cost anomaly {anomaly_id} is already acknowledged")

    anomaly.is_acknowledged = True
    anomaly.acknowledged_by = acknowledged_by
    anomaly.acknowledged_at = utcnow()
    if notes:
        anomaly.notes = notes
    await db.commit()
    await db.refresh(anomaly)
    return anomaly
