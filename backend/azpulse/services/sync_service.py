"""Manual sync triggering, cancellation and sync history."""

import uuid
from datetime import date
from typing import Protocol

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from azpulse.core.authz import Capability, Principal, ensure_capability
from azpulse.core.database import utcnow
from azpulse.core.errors import NotFoundError, SyncAlreadyRunningError, TenantDisabledError, TenantNotFoundError
from azpulse.crud import sync_log as sync_log_crud
from azpulse.crud import tenant as tenant_crud
from azpulse.models.sync import SyncKind, SyncLogEntry, SyncTrigger
from azpulse.schemas.sync import SyncCancelRequest, SyncTriggerRequest, SyncTriggerResponse

logger = structlog.get_logger(__name__)


class SyncDispatcher(Protocol):
    """Queues a sync job for the worker pool."""

    def enqueue(
        self,
        tenant_id: uuid.UUID,
        kind: SyncKind,
        trigger: SyncTrigger,
        window: tuple[date, date] | None = None,
    ) -> str:
        """
        Queue one run.

        Returns:
            Task id

        Raises:
            SyncEnqueueError: If the queue is unreachable
        """
        ...


async def trigger_sync(
    db: AsyncSession,
    principal: Principal,
    request: SyncTriggerRequest,
    dispatcher: SyncDispatcher,
) -> SyncTriggerResponse:
    """
    Queue a manual run. Returns as soon as the job is queued.

    Manual runs go through the same queue and worker entry point as
    scheduled ones, so the running-row check-and-set arbitrates between
    them.

    Args:
        db: Database session
        principal: Caller
        request: Tenant, kind and optional cost backfill window
        dispatcher: Queue to submit to

    Returns:
        Task id and queue time

    Raises:
        TenantNotFoundError: If the tenant does not exist
        TenantDisabledError: If the tenant is disabled
        SyncAlreadyRunningError: If a run for the same tenant and kind is active
        SyncEnqueueError: If the queue is unreachable
    """
    ensure_capability(principal, Capability.SYNC_TRIGGER)
    tenant = await tenant_crud.get_tenant(db, request.tenant_id)
    if tenant is None:
        raise TenantNotFoundError(f"Tenant {request.tenant_id} not found")
    if not tenant.is_enabled:
        raise TenantDisabledError(f"Tenant {request.tenant_id} is disabled")
    if await sync_log_crud.get_running(db, request.tenant_id, request.sync_kind) is not None:
        raise SyncAlreadyRunningError(
            f"A {request.sync_kind.value} sync is already running for tenant {request.tenant_id}"
        )

    window = None
    if request.backfill_from is not None:
        window = (request.backfill_from, request.backfill_to or utcnow().date())

    task_id = dispatcher.enqueue(request.tenant_id, request.sync_kind, SyncTrigger.MANUAL, window)
    logger.info(
        "sync.manual_enqueued",
        tenant_id=str(request.tenant_id),
        kind=request.sync_kind.value,
        task_id=task_id,
        requested_by=principal.subject,
        backfill=window is not None,
    )
    return SyncTriggerResponse(
        tenant_id=request.tenant_id,
        sync_kind=request.sync_kind,
        task_id=task_id,
        queued_at=utcnow(),
    )


async def get_sync_logs(
    db: AsyncSession,
    principal: Principal,
    tenant_id: uuid.UUID | None = None,
    kind: SyncKind | None = None,
    limit: int = 50,
) -> list[SyncLogEntry]:
    """Sync history, newest first."""
    ensure_capability(principal, Capability.SYNC_READ)
    return await sync_log_crud.list_entries(db, tenant_id=tenant_id, kind=kind, limit=limit)


async def cancel_sync(db: AsyncSession, principal: Principal, request: SyncCancelRequest) -> SyncLogEntry:
    """
    Ask a running sync to stop at its next remote call.

    Raises:
        NotFoundError: If nothing is running for the tenant and kind
    """
    ensure_capability(principal, Capability.SYNC_TRIGGER)
    entry = await sync_log_crud.request_cancel(db, request.tenant_id, request.sync_kind)
    if entry is None:
        raise NotFoundError(
            f"No {request.sync_kind.value} sync is running for tenant {request.tenant_id}"
        )
    logger.info(
        "sync.cancel_requested",
        tenant_id=str(request.tenant_id),
        kind=request.sync_kind.value,
        log_id=str(entry.id),
        requested_by=principal.subject,
        reason=request.reason,
    )
    return entry
