"""Optimization score and A-F grade per resource, plus fleet summary."""

import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from azpulse.analytics.idle import UTILIZATION_METRICS, estimate_monthly_cost
from azpulse.analytics.scores import list_scores, save_scores
from azpulse.core.config import settings
from azpulse.core.database import utcnow
from azpulse.models.analytics import ScoreKind
from azpulse.models.cost import CostRecord
from azpulse.models.metric import MetricSample
from azpulse.models.resource import CachedResource
from azpulse.models.sql_insight import AdvisorRecommendation
from azpulse.schemas.analytics import FleetSummary

logger = structlog.get_logger(__name__)

GRADE_THRESHOLDS: tuple[tuple[int, str], ...] = ((90, "A"), (80, "B"), (70, "C"), (60, "D"))
ATTENTION_GRADES = frozenset({"D", "F"})


@dataclass(frozen=True)
class OptimizationInputs:
    """Signals gathered for one resource."""

    avg_utilization: float
    max_utilization: float
    recommendation_count: int = 0
    monthly_cost: float = 0.0
    cost_trend_percent: float = 0.0


@dataclass(frozen=True)
class OptimizationWeights:
    utilization: float = 0.4
    cost_efficiency: float = 0.3
    best_practices: float = 0.3

    @classmethod
    def from_settings(cls) -> "OptimizationWeights":
        return cls(
            utilization=settings.OPTIMIZATION_WEIGHT_UTILIZATION,
            cost_efficiency=settings.OPTIMIZATION_WEIGHT_COST_EFFICIENCY,
            best_practices=settings.OPTIMIZATION_WEIGHT_BEST_PRACTICES,
        )


@dataclass(frozen=True)
class OptimizationScore:
    score: int
    grade: str
    utilization: int
    cost_efficiency: int
    best_practices: int

    def breakdown(self, inputs: OptimizationInputs) -> dict[str, Any]:
        return {
            "utilization": self.utilization,
            "cost_efficiency": self.cost_efficiency,
            "best_practices": self.best_practices,
            "inputs": {
                "avg_utilization": round(inputs.avg_utilization, 2),
                "max_utilization": round(inputs.max_utilization, 2),
                "recommendation_count": inputs.recommendation_count,
                "monthly_cost": round(inputs.monthly_cost, 2),
                "cost_trend_percent": round(inputs.cost_trend_percent, 2),
            },
        }


def grade_for(score: int) -> str:
    for threshold, grade in GRADE_THRESHOLDS:
        if score >= threshold:
            return grade
    return "F"


def _clamp(value: float) -> int:
    return int(max(0, min(100, round(value))))


def utilization_score(avg: float, peak: float) -> int:
    score = 100
    if avg < 10:
        score -= 40
    elif avg < 20:
        score -= 25
    elif avg < 40:
        score -= 10
    elif avg > 85:
        score -= 20
    elif avg > 75:
        score -= 10
    # Steady load is easier to right-size
    if avg > 0 and (peak - avg) / avg < 0.3:
        score += 5
    return _clamp(score)


def cost_efficiency_score(avg: float, monthly_cost: float, trend_percent: float) -> int:
    score = 100
    if avg < 15 and monthly_cost > 100:
        score -= 40
    elif avg < 25 and monthly_cost > 200:
        score -= 30
    elif avg < 20 and monthly_cost > 50:
        score -= 20
    if trend_percent > 50:
        score -= 20
    elif trend_percent > 20:
        score -= 10
    return _clamp(score)


def best_practices_score(recommendation_count: int) -> int:
    return _clamp(100 - min(recommendation_count * 15, 60))


def calculate_optimization_score(
    inputs: OptimizationInputs, weights: OptimizationWeights | None = None
) -> OptimizationScore:
    """
    Combine utilization, cost efficiency and best practices into a graded score.

    Args:
        inputs: Resource signals
        weights: Sub-score weights (defaults from settings)

    Returns:
        OptimizationScore; identical inputs always give the identical score
    """
    weights = weights or OptimizationWeights.from_settings()
    utilization = utilization_score(inputs.avg_utilization, inputs.max_utilization)
    cost_efficiency = cost_efficiency_score(
        inputs.avg_utilization, inputs.monthly_cost, inputs.cost_trend_percent
    )
    best_practices = best_practices_score(inputs.recommendation_count)
    score = _clamp(
        utilization * weights.utilization
        + cost_efficiency * weights.cost_efficiency
        + best_practices * weights.best_practices
    )
    return OptimizationScore(
        score=score,
        grade=grade_for(score),
        utilization=utilization,
        cost_efficiency=cost_efficiency,
        best_practices=best_practices,
    )


class OptimizationScorer:
    """Scores every resource of a tenant that reported utilization in the lookback window."""

    def __init__(
        self,
        db: AsyncSession,
        weights: OptimizationWeights | None = None,
        lookback_days: int | None = None,
    ) -> None:
        self.db = db
        self.weights = weights or OptimizationWeights.from_settings()
        self.lookback_days = lookback_days or settings.OPTIMIZATION_LOOKBACK_DAYS

    async def run(self, tenant_id: uuid.UUID, now: datetime | None = None) -> int:
        """
        Recompute optimization scores for a tenant.

        Returns:
            Number of scores written
        """
        now = now or utcnow()
        utilization = await self._utilization(tenant_id, now - timedelta(days=self.lookback_days))
        if not utilization:
            return 0

        resources = (
            await self.db.execute(select(CachedResource).where(CachedResource.id.in_(list(utilization))))
        ).scalars().all()
        recommendations = await self._recommendation_counts(tenant_id)

        scores = []
        for resource in resources:
            avg, peak = utilization[resource.id]
            inputs = OptimizationInputs(
                avg_utilization=avg,
                max_utilization=peak,
                recommendation_count=recommendations.get(resource.external_id, 0),
                monthly_cost=await estimate_monthly_cost(self.db, tenant_id, resource.external_id, now.date()),
                cost_trend_percent=await self._cost_trend(tenant_id, resource.external_id, now),
            )
            result = calculate_optimization_score(inputs, self.weights)
            scores.append(
                {
                    "resource_id": resource.id,
                    "tenant_id": tenant_id,
                    "score": result.score,
                    "grade": result.grade,
                    "breakdown": result.breakdown(inputs),
                }
            )

        written = await save_scores(self.db, ScoreKind.OPTIMIZATION, scores)
        logger.info("analytics.optimization_scored", tenant_id=str(tenant_id), resources=written)
        return written

    async def _utilization(
        self, tenant_id: uuid.UUID, since: datetime
    ) -> dict[uuid.UUID, tuple[float, float]]:
        """(average, peak) utilization per resource; peak from maximum samples when present."""
        result = await self.db.execute(
            select(
                MetricSample.resource_id,
                MetricSample.aggregation_type,
                func.avg(MetricSample.value),
                func.max(MetricSample.value),
            )
            .join(CachedResource, CachedResource.id == MetricSample.resource_id)
            .where(
                CachedResource.tenant_id == tenant_id,
                MetricSample.metric_name.in_(UTILIZATION_METRICS),
                MetricSample.aggregation_type.in_(("average", "maximum")),
                MetricSample.timestamp >= since,
            )
            .group_by(MetricSample.resource_id, MetricSample.aggregation_type)
        )

        stats: dict[uuid.UUID, dict[str, tuple[float, float]]] = defaultdict(dict)
        for resource_id, aggregation, average, peak in result.all():
            stats[resource_id][aggregation] = (float(average), float(peak))

        utilization = {}
        for resource_id, by_aggregation in stats.items():
            if "average" not in by_aggregation:
                continue
            avg, peak = by_aggregation["average"]
            if "maximum" in by_aggregation:
                peak = by_aggregation["maximum"][1]
            utilization[resource_id] = (avg, peak)
        return utilization

    async def _recommendation_counts(self, tenant_id: uuid.UUID) -> dict[str, int]:
        result = await self.db.execute(
            select(AdvisorRecommendation.resource_id, func.count())
            .where(
                AdvisorRecommendation.tenant_id == tenant_id,
                AdvisorRecommendation.resource_id.is_not(None),
            )
            .group_by(AdvisorRecommendation.resource_id)
        )
        return {resource_id: count for resource_id, count in result.all()}

    async def _cost_trend(self, tenant_id: uuid.UUID, external_id: str, now: datetime) -> float:
        """Percent change of the last 7 days of cost over the 7 days before."""
        today = now.date()
        boundary = today - timedelta(days=7)
        start = today - timedelta(days=14)
        result = await self.db.execute(
            select(CostRecord.usage_date, func.sum(CostRecord.cost))
            .where(
                CostRecord.tenant_id == tenant_id,
                CostRecord.resource_key == external_id.lower(),
                CostRecord.usage_date > start,
                CostRecord.usage_date <= today,
            )
            .group_by(CostRecord.usage_date)
        )
        recent = previous = 0.0
        for usage_date, cost in result.all():
            if usage_date > boundary:
                recent += float(cost or 0.0)
            else:
                previous += float(cost or 0.0)
        if previous <= 0:
            return 0.0
        return (recent - previous) / previous * 100


async def summarize_fleet(db: AsyncSession, tenant_id: uuid.UUID | None = None) -> FleetSummary:
    """
    Grade distribution and average optimization score.

    Args:
        db: Database session
        tenant_id: Restrict to one tenant

    Returns:
        FleetSummary with resources graded D or F listed as needing attention
    """
    scores = await list_scores(db, ScoreKind.OPTIMIZATION, tenant_id=tenant_id, limit=100000)
    grade_counts = {grade: 0 for _, grade in GRADE_THRESHOLDS}
    grade_counts["F"] = 0
    for score in scores:
        grade = score.grade or grade_for(score.score)
        grade_counts[grade] = grade_counts.get(grade, 0) + 1

    average = round(sum(s.score for s in scores) / len(scores), 2) if scores else 0.0
    return FleetSummary(
        total_resources=len(scores),
        average_score=average,
        grade_counts=grade_counts,
        needs_attention=[s.resource_id for s in scores if (s.grade or grade_for(s.score)) in ATTENTION_GRADES],
    )
