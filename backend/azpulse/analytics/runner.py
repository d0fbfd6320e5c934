"""Runs the derived analytics for one or all tenants."""

import uuid
from datetime import datetime
from typing import Callable

import sentry_sdk
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from azpulse.analytics.anomalies import CostAnomalyDetector
from azpulse.analytics.health import HealthScoreCalculator
from azpulse.analytics.idle import IdleResourceDetector
from azpulse.analytics.optimization import OptimizationScorer
from azpulse.core.database import AsyncSessionLocal, utcnow
from azpulse.crud import tenant as tenant_crud
from azpulse.schemas.analytics import AnalyticsRunResult

logger = structlog.get_logger(__name__)


async def run_tenant_analytics(
    tenant_id: uuid.UUID,
    session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
    now: datetime | None = None,
    rerun_anomalies: bool = False,
) -> AnalyticsRunResult:
    """
    Recompute health, anomalies, idle flags and optimization scores.

    Each calculation reads whatever the syncs have committed so far and
    uses its own session; a failing calculation is logged and the others
    still run.

    Args:
        tenant_id: Tenant to process
        session_factory: Session factory
        now: Reference time (naive UTC)
        rerun_anomalies: Re-score already scored cost days

    Returns:
        Counts per calculation
    """
    now = now or utcnow()
    result = AnalyticsRunResult(tenant_id=tenant_id)
    log = logger.bind(tenant_id=str(tenant_id))

    try:
        async with session_factory() as db:
            result.health_scores = await HealthScoreCalculator(db).run(tenant_id)
    except Exception as e:
        log.exception("analytics.health_failed")
        sentry_sdk.capture_exception(e)

    try:
        async with session_factory() as db:
            result.anomalies_created = await CostAnomalyDetector(db).run(
                tenant_id, rerun=rerun_anomalies, today=now.date()
            )
    except Exception as e:
        log.exception("analytics.anomalies_failed")
        sentry_sdk.capture_exception(e)

    try:
        async with session_factory() as db:
            opened, updated = await IdleResourceDetector(db).run(tenant_id, now=now)
            result.idle_flags_opened = opened
            result.idle_flags_updated = updated
    except Exception as e:
        log.exception("analytics.idle_failed")
        sentry_sdk.capture_exception(e)

    try:
        async with session_factory() as db:
            result.optimization_scores = await OptimizationScorer(db).run(tenant_id, now=now)
    except Exception as e:
        log.exception("analytics.optimization_failed")
        sentry_sdk.capture_exception(e)

    log.info("analytics.tenant_completed", **result.model_dump(exclude={"tenant_id"}))
    return result


async def run_all_tenants(
    session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
) -> list[AnalyticsRunResult]:
    """Run analytics for every enabled tenant."""
    async with session_factory() as db:
        tenant_ids = [t.id for t in await tenant_crud.list_tenants(db, enabled_only=True, limit=10000)]

    results = []
    for tenant_id in tenant_ids:
        try:
            results.append(await run_tenant_analytics(tenant_id, session_factory))
        except Exception as e:
            logger.exception("analytics.tenant_failed", tenant_id=str(tenant_id))
            sentry_sdk.capture_exception(e)
    return results
