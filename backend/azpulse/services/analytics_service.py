"""Analytics read operations and human-in-the-loop transitions."""

import uuid
from typing import Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from azpulse.analytics import anomalies, idle, optimization
from azpulse.analytics.runner import run_tenant_analytics
from azpulse.analytics.scores import list_scores as list_derived_scores
from azpulse.core.authz import Capability, Principal, ensure_capability
from azpulse.core.errors import TenantNotFoundError
from azpulse.crud import tenant as tenant_crud
from azpulse.models.analytics import (
    AnomalySeverity,
    CostAnomaly,
    DerivedScore,
    IdleResourceFlag,
    IdleStatus,
    ScoreKind,
)
from azpulse.schemas.analytics import AnalyticsRunResult, FleetSummary

logger = structlog.get_logger(__name__)


async def acknowledge_anomaly(
    db: AsyncSession,
    principal: Principal,
    anomaly_id: uuid.UUID,
    notes: str | None = None,
) -> CostAnomaly:
    """
    Acknowledge a cost anomaly on behalf of the caller.

    Raises:
        NotFoundError: If the anomaly does not exist
        InvalidTransitionError: If it was already acknowledged
    """
    ensure_capability(principal, Capability.ANALYTICS_WRITE)
    anomaly = await anomalies.acknowledge(db, anomaly_id, principal.subject, notes)
    logger.info("analytics.anomaly_acknowledged", anomaly_id=str(anomaly_id), by=principal.subject)
    return anomaly


async def set_idle_resource_status(
    db: AsyncSession,
    principal: Principal,
    flag_id: uuid.UUID,
    status: IdleStatus,
    reason: str | None = None,
) -> IdleResourceFlag:
    """
    Move an idle flag to a new status.

    Raises:
        NotFoundError: If the flag does not exist
        InvalidTransitionError: If the flag already has that status
    """
    ensure_capability(principal, Capability.ANALYTICS_WRITE)
    flag = await idle.set_status(db, flag_id, status, principal.subject, reason)
    logger.info(
        "analytics.idle_status_changed",
        flag_id=str(flag_id),
        status=status.value,
        by=principal.subject,
    )
    return flag


async def list_anomalies(
    db: AsyncSession,
    principal: Principal,
    tenant_id: uuid.UUID | None = None,
    severity: AnomalySeverity | None = None,
    acknowledged: bool | None = None,
    limit: int = 100,
) -> list[CostAnomaly]:
    ensure_capability(principal, Capability.ANALYTICS_READ)
    return await anomalies.list_anomalies(db, tenant_id, severity, acknowledged, limit)


async def list_idle_resources(
    db: AsyncSession,
    principal: Principal,
    tenant_id: uuid.UUID | None = None,
    status: IdleStatus | None = None,
    limit: int = 100,
) -> list[IdleResourceFlag]:
    ensure_capability(principal, Capability.ANALYTICS_READ)
    return await idle.list_idle_resources(db, tenant_id, status, limit)


async def list_scores(
    db: AsyncSession,
    principal: Principal,
    kind: ScoreKind,
    tenant_id: uuid.UUID | None = None,
    limit: int = 500,
) -> list[DerivedScore]:
    ensure_capability(principal, Capability.ANALYTICS_READ)
    return await list_derived_scores(db, kind, tenant_id, limit)


async def fleet_summary(
    db: AsyncSession,
    principal: Principal,
    tenant_id: uuid.UUID | None = None,
) -> FleetSummary:
    ensure_capability(principal, Capability.ANALYTICS_READ)
    return await optimization.summarize_fleet(db, tenant_id)


async def run_analytics(
    db: AsyncSession,
    principal: Principal,
    tenant_id: uuid.UUID,
    session_factory: Callable[[], AsyncSession],
    rerun_anomalies: bool = False,
) -> AnalyticsRunResult:
    """
    Recompute all derived analytics for a tenant now.

    Raises:
        TenantNotFoundError: If the tenant does not exist
    """
    ensure_capability(principal, Capability.ANALYTICS_WRITE)
    if await tenant_crud.get_tenant(db, tenant_id) is None:
        raise TenantNotFoundError(f"Tenant {tenant_id} not found")
    return await run_tenant_analytics(tenant_id, session_factory, rerun_anomalies=rerun_anomalies)
