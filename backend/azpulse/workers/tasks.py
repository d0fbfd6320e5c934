"""Celery tasks: sync execution, scheduling and derived analytics."""

import asyncio
import uuid
from datetime import date
from typing import Any, Callable, Coroutine

import structlog
from kombu.exceptions import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from azpulse.analytics.runner import run_all_tenants
from azpulse.core.config import settings
from azpulse.core.database import AsyncSessionLocal, utcnow
from azpulse.core.errors import SyncAlreadyRunningError, SyncEnqueueError
from azpulse.crud import sync_job as sync_job_crud
from azpulse.crud import sync_log as sync_log_crud
from azpulse.models.sync import SyncKind, SyncTrigger
from azpulse.services.sync_service import SyncDispatcher
from azpulse.sync.orchestrator import SyncOrchestrator
from azpulse.workers.celery_app import celery_app

logger = structlog.get_logger(__name__)

_orchestrator: SyncOrchestrator | None = None


def _run(coro: Coroutine[Any, Any, Any]) -> Any:
    # Get or create event loop for Celery solo/prefork pool; the engine pool
    # and the orchestrator's semaphore stay bound to this loop
    try:
        loop = asyncio.get_event_loop()
        if loop.is_closed():
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    return loop.run_until_complete(coro)


def get_orchestrator() -> SyncOrchestrator:
    """Process-wide orchestrator so the token cache survives between tasks."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = SyncOrchestrator()
    return _orchestrator


class CeleryDispatcher:
    """Queues sync runs on the Celery broker."""

    def enqueue(
        self,
        tenant_id: uuid.UUID,
        kind: SyncKind,
        trigger: SyncTrigger,
        window: tuple[date, date] | None = None,
    ) -> str:
        """
        Queue one run of ``run_sync_job``.

        Returns:
            Celery task id

        Raises:
            SyncEnqueueError: If the broker is unreachable
        """
        window_from, window_to = (window[0].isoformat(), window[1].isoformat()) if window else (None, None)
        try:
            async_result = run_sync_job.apply_async(
                args=[str(tenant_id), kind.value, trigger.value, window_from, window_to],
            )
        except OperationalError as e:
            logger.error("sync.enqueue_failed", tenant_id=str(tenant_id), kind=kind.value, error=str(e))
            raise SyncEnqueueError(f"Could not queue {kind.value} sync: {e}") from e
        return async_result.id


@celery_app.task(name="azpulse.workers.tasks.run_sync_job", bind=True)
def run_sync_job(
    self: Any,
    tenant_id: str,
    sync_kind: str,
    trigger: str = SyncTrigger.SCHEDULED.value,
    window_from: str | None = None,
    window_to: str | None = None,
) -> dict[str, Any]:
    """
    Run one sync job for a tenant.

    Args:
        tenant_id: UUID of the tenant
        sync_kind: resources, costs, metrics or sql-insights
        trigger: manual or scheduled
        window_from: ISO start date of a cost backfill
        window_to: ISO end date of a cost backfill

    Returns:
        Dict with the terminal state of the run
    """
    window = None
    if window_from and window_to:
        window = (date.fromisoformat(window_from), date.fromisoformat(window_to))
    return _run(
        _run_sync_job_async(
            uuid.UUID(tenant_id), SyncKind(sync_kind), SyncTrigger(trigger), window, self.request.id
        )
    )


async def _run_sync_job_async(
    tenant_id: uuid.UUID,
    kind: SyncKind,
    trigger: SyncTrigger,
    window: tuple[date, date] | None,
    task_id: str | None,
) -> dict[str, Any]:
    try:
        result = await get_orchestrator().run_job(tenant_id, kind, trigger=trigger, window=window)
    except SyncAlreadyRunningError:
        logger.info(
            "sync.job_already_running",
            tenant_id=str(tenant_id),
            kind=kind.value,
            task_id=task_id,
        )
        return {"status": "skipped", "reason": "already_running"}

    if result.skipped:
        return {"status": "skipped", "reason": "tenant_unavailable"}
    return {
        "status": result.status.value if result.status else None,
        "log_id": str(result.log_id),
        "records_processed": result.records_processed,
        "warning_count": result.warning_count,
        "error_kind": result.error_kind.value if result.error_kind else None,
        "error_message": result.error_message,
    }


@celery_app.task(name="azpulse.workers.tasks.dispatch_due_syncs")
def dispatch_due_syncs() -> dict[str, Any]:
    """
    Enqueue every (tenant, kind) whose sync interval has elapsed.

    This task runs every minute from Celery Beat.

    Returns:
        Dict with the number of jobs enqueued
    """
    return _run(enqueue_due_jobs(CeleryDispatcher()))


async def enqueue_due_jobs(
    dispatcher: SyncDispatcher,
    session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
) -> dict[str, Any]:
    """Enqueue due jobs through ``dispatcher`` and stamp each one as enqueued."""
    now = utcnow()
    enqueued = []
    async with session_factory() as db:
        jobs = await sync_job_crud.get_due_jobs(db, now)
        for job in jobs:
            try:
                task_id = dispatcher.enqueue(job.tenant_id, SyncKind(job.sync_kind), SyncTrigger.SCHEDULED)
            except SyncEnqueueError:
                # Broker is down; the remaining jobs stay due for the next tick
                break
            await sync_job_crud.mark_enqueued(db, job.id, now)
            enqueued.append(task_id)

    if enqueued:
        logger.info("sync.jobs_dispatched", due=len(jobs), enqueued=len(enqueued))
    return {"status": "success", "due": len(jobs), "enqueued": len(enqueued)}


@celery_app.task(name="azpulse.workers.tasks.fail_stale_sync_logs")
def fail_stale_sync_logs() -> dict[str, Any]:
    """Fail running log rows older than the stale limit so their (tenant, kind) can run again."""
    return _run(reap_stale_logs())


async def reap_stale_logs(session_factory: Callable[[], AsyncSession] = AsyncSessionLocal) -> dict[str, Any]:
    async with session_factory() as db:
        failed = await sync_log_crud.fail_stale_running(db, settings.SYNC_STALE_AFTER_MINUTES)
    if failed:
        logger.warning("sync.stale_logs_failed", count=failed)
    return {"status": "success", "failed": failed}


@celery_app.task(name="azpulse.workers.tasks.run_derived_analytics")
def run_derived_analytics() -> dict[str, Any]:
    """Recompute health, anomaly, idle and optimization results for every enabled tenant."""
    results = _run(run_all_tenants(AsyncSessionLocal))
    return {
        "status": "success",
        "tenants": len(results),
        "anomalies_created": sum(r.anomalies_created for r in results),
        "idle_flags_opened": sum(r.idle_flags_opened for r in results),
    }
