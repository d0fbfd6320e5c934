"""Sync trigger, cancellation and history API endpoints."""

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from azpulse.api.deps import get_db, get_dispatcher, get_principal
from azpulse.core.authz import Principal
from azpulse.models.sync import SyncKind
from azpulse.schemas.sync import SyncCancelRequest, SyncLogEntry, SyncTriggerRequest, SyncTriggerResponse
from azpulse.services import sync_service
from azpulse.services.sync_service import SyncDispatcher

router = APIRouter()


@router.post("/trigger", response_model=SyncTriggerResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_sync(
    request: SyncTriggerRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    principal: Annotated[Principal, Depends(get_principal)],
    dispatcher: Annotated[SyncDispatcher, Depends(get_dispatcher)],
) -> SyncTriggerResponse:
    """
    Queue a manual sync and return immediately.

    Returns 409 if the same kind is already running for the tenant and
    503 if the job queue is unreachable.
    """
    return await sync_service.trigger_sync(db, principal, request, dispatcher)


@router.post("/cancel", response_model=SyncLogEntry)
async def cancel_sync(
    request: SyncCancelRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    principal: Annotated[Principal, Depends(get_principal)],
) -> SyncLogEntry:
    """Ask a running sync to stop before its next remote call."""
    return await sync_service.cancel_sync(db, principal, request)


@router.get("/logs", response_model=list[SyncLogEntry])
async def get_sync_logs(
    db: Annotated[AsyncSession, Depends(get_db)],
    principal: Annotated[Principal, Depends(get_principal)],
    tenant_id: uuid.UUID | None = None,
    sync_kind: SyncKind | None = None,
    limit: int = Query(50, ge=1, le=500),
) -> list[SyncLogEntry]:
    """Sync history, newest first."""
    return await sync_service.get_sync_logs(db, principal, tenant_id=tenant_id, kind=sync_kind, limit=limit)
