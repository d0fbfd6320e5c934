"""Derived analytics API endpoints."""

import uuid
from typing import Annotated, Callable

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from azpulse.api.deps import get_db, get_principal, get_session_factory
from azpulse.core.authz import Principal
from azpulse.models.analytics import AnomalySeverity, IdleStatus, ScoreKind
from azpulse.schemas.analytics import (
    AnalyticsRunRequest,
    AnalyticsRunResult,
    AnomalyAcknowledge,
    CostAnomaly,
    DerivedScore,
    FleetSummary,
    IdleResourceFlag,
    IdleStatusUpdate,
)
from azpulse.services import analytics_service

router = APIRouter()


@router.get("/anomalies", response_model=list[CostAnomaly])
async def list_anomalies(
    db: Annotated[AsyncSession, Depends(get_db)],
    principal: Annotated[Principal, Depends(get_principal)],
    tenant_id: uuid.UUID | None = None,
    severity: AnomalySeverity | None = None,
    acknowledged: bool | None = None,
    limit: int = Query(100, ge=1, le=1000),
) -> list[CostAnomaly]:
    """Cost anomalies, newest first."""
    return await analytics_service.list_anomalies(db, principal, tenant_id, severity, acknowledged, limit)


@router.post("/anomalies/{anomaly_id}/acknowledge", response_model=CostAnomaly)
async def acknowledge_anomaly(
    anomaly_id: uuid.UUID,
    body: AnomalyAcknowledge,
    db: Annotated[AsyncSession, Depends(get_db)],
    principal: Annotated[Principal, Depends(get_principal)],
) -> CostAnomaly:
    """
    Acknowledge a cost anomaly.

    Returns 404 if the anomaly does not exist and 409 if it was already
    acknowledged.
    """
    return await analytics_service.acknowledge_anomaly(db, principal, anomaly_id, body.notes)


@router.get("/idle-resources", response_model=list[IdleResourceFlag])
async def list_idle_resources(
    db: Annotated[AsyncSession, Depends(get_db)],
    principal: Annotated[Principal, Depends(get_principal)],
    tenant_id: uuid.UUID | None = None,
    status: IdleStatus | None = None,
    limit: int = Query(100, ge=1, le=1000),
) -> list[IdleResourceFlag]:
    return await analytics_service.list_idle_resources(db, principal, tenant_id, status, limit)


@router.patch("/idle-resources/{flag_id}", response_model=IdleResourceFlag)
async def set_idle_resource_status(
    flag_id: uuid.UUID,
    body: IdleStatusUpdate,
    db: Annotated[AsyncSession, Depends(get_db)],
    principal: Annotated[Principal, Depends(get_principal)],
) -> IdleResourceFlag:
    """Mark an idle resource as ignored, actioned, resolved or open again."""
    return await analytics_service.set_idle_resource_status(db, principal, flag_id, body.status, body.reason)


@router.get("/scores/{score_kind}", response_model=list[DerivedScore])
async def list_scores(
    score_kind: ScoreKind,
    db: Annotated[AsyncSession, Depends(get_db)],
    principal: Annotated[Principal, Depends(get_principal)],
    tenant_id: uuid.UUID | None = None,
    limit: int = Query(500, ge=1, le=5000),
) -> list[DerivedScore]:
    """Health or optimization scores, worst first."""
    return await analytics_service.list_scores(db, principal, score_kind, tenant_id, limit)


@router.get("/fleet-summary", response_model=FleetSummary)
async def fleet_summary(
    db: Annotated[AsyncSession, Depends(get_db)],
    principal: Annotated[Principal, Depends(get_principal)],
    tenant_id: uuid.UUID | None = None,
) -> FleetSummary:
    return await analytics_service.fleet_summary(db, principal, tenant_id)


@router.post("/run", response_model=AnalyticsRunResult)
async def run_analytics(
    request: AnalyticsRunRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    principal: Annotated[Principal, Depends(get_principal)],
    session_factory: Annotated[Callable[[], AsyncSession], Depends(get_session_factory)],
) -> AnalyticsRunResult:
    """Recompute health, anomaly, idle and optimization results for a tenant now."""
    return await analytics_service.run_analytics(
        db, principal, request.tenant_id, session_factory, rerun_anomalies=request.rerun_anomalies
    )
