"""Tests for Celery task bodies and the broker dispatcher."""

import uuid
from datetime import date, timedelta
from unittest.mock import MagicMock, patch

import pytest
from conftest import FakeDispatcher
from kombu.exceptions import OperationalError
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from azpulse.core.database import utcnow
from azpulse.core.errors import SyncAlreadyRunningError, SyncEnqueueError
from azpulse.crud import sync_job as sync_job_crud
from azpulse.crud import sync_log as sync_log_crud
from azpulse.models.sync import SyncErrorKind, SyncKind, SyncLogEntry, SyncStatus, SyncTrigger
from azpulse.models.tenant import Tenant
from azpulse.sync.orchestrator import SyncRunResult
from azpulse.workers import tasks


class FlakyDispatcher(FakeDispatcher):
    """Accepts ``capacity`` runs, then behaves like an unreachable broker."""

    def __init__(self, capacity: int) -> None:
        super().__init__()
        self.capacity = capacity

    def enqueue(self, tenant_id, kind, trigger, window=None) -> str:
        if len(self.enqueued) >= self.capacity:
            raise SyncEnqueueError("Connection refused")
        return super().enqueue(tenant_id, kind, trigger, window)


class FakeOrchestrator:
    def __init__(self, result: SyncRunResult | None = None, error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.calls: list[tuple] = []

    async def run_job(self, tenant_id, kind, trigger=SyncTrigger.SCHEDULED, window=None):
        self.calls.append((tenant_id, kind, trigger, window))
        if self.error is not None:
            raise self.error
        return self.result


class TestEnqueueDueJobs:
    """Test the scheduler tick."""

    @pytest.mark.asyncio
    async def test_enqueues_every_due_job_once(self, session_factory, tenant: Tenant):
        dispatcher = FakeDispatcher()

        first = await tasks.enqueue_due_jobs(dispatcher, session_factory)
        second = await tasks.enqueue_due_jobs(dispatcher, session_factory)

        assert first == {"status": "success", "due": len(SyncKind), "enqueued": len(SyncKind)}
        assert second["enqueued"] == 0
        assert {kind for _, kind, _, _ in dispatcher.enqueued} == set(SyncKind)
        assert all(trigger == SyncTrigger.SCHEDULED for _, _, trigger, _ in dispatcher.enqueued)

    @pytest.mark.asyncio
    async def test_broker_outage_leaves_remaining_jobs_due(self, session_factory, tenant: Tenant):
        """Test that jobs the broker refused are picked up by the next tick."""
        result = await tasks.enqueue_due_jobs(FlakyDispatcher(capacity=1), session_factory)

        assert result["enqueued"] == 1
        async with session_factory() as db:
            still_due = await sync_job_crud.get_due_jobs(db, utcnow())
        assert len(still_due) == len(SyncKind) - 1

    @pytest.mark.asyncio
    async def test_no_tenants(self, session_factory):
        assert await tasks.enqueue_due_jobs(FakeDispatcher(), session_factory) == {
            "status": "success",
            "due": 0,
            "enqueued": 0,
        }


class TestReapStaleLogs:
    @pytest.mark.asyncio
    async def test_old_running_rows_are_failed(self, session_factory, db_session: AsyncSession, tenant: Tenant):
        stale = await sync_log_crud.start_entry(db_session, tenant.id, SyncKind.COSTS)
        fresh = await sync_log_crud.start_entry(db_session, tenant.id, SyncKind.METRICS)
        await db_session.execute(
            update(SyncLogEntry)
            .where(SyncLogEntry.id == stale.id)
            .values(started_at=utcnow() - timedelta(hours=2))
        )
        await db_session.commit()

        result = await tasks.reap_stale_logs(session_factory)

        assert result == {"status": "success", "failed": 1}
        db_session.expire_all()
        reaped = await sync_log_crud.get_entry(db_session, stale.id)
        assert reaped.status == SyncStatus.FAILED.value
        assert reaped.error_kind == SyncErrorKind.TRANSIENT.value
        assert (await sync_log_crud.get_entry(db_session, fresh.id)).status == SyncStatus.RUNNING.value


class TestRunSyncJob:
    """Test the worker entry point around the orchestrator."""

    @pytest.mark.asyncio
    async def test_reports_terminal_state(self, monkeypatch):
        tenant_id = uuid.uuid4()
        log_id = uuid.uuid4()
        orchestrator = FakeOrchestrator(
            SyncRunResult(
                tenant_id=tenant_id,
                sync_kind=SyncKind.COSTS,
                status=SyncStatus.FAILED,
                log_id=log_id,
                records_processed=7,
                error_kind=SyncErrorKind.TRANSIENT,
                error_message="Cost query throttled",
            )
        )
        monkeypatch.setattr(tasks, "_orchestrator", orchestrator)
        window = (date(2026, 1, 1), date(2026, 1, 31))

        result = await tasks._run_sync_job_async(tenant_id, SyncKind.COSTS, SyncTrigger.MANUAL, window, "task-1")

        assert orchestrator.calls == [(tenant_id, SyncKind.COSTS, SyncTrigger.MANUAL, window)]
        assert result["status"] == "failed"
        assert result["log_id"] == str(log_id)
        assert result["records_processed"] == 7
        assert result["error_kind"] == "transient"

    @pytest.mark.asyncio
    async def test_already_running_is_skipped(self, monkeypatch):
        monkeypatch.setattr(tasks, "_orchestrator", FakeOrchestrator(error=SyncAlreadyRunningError("busy")))

        result = await tasks._run_sync_job_async(uuid.uuid4(), SyncKind.METRICS, SyncTrigger.SCHEDULED, None, "t")

        assert result == {"status": "skipped", "reason": "already_running"}

    @pytest.mark.asyncio
    async def test_missing_tenant_is_skipped(self, monkeypatch):
        tenant_id = uuid.uuid4()
        monkeypatch.setattr(
            tasks, "_orchestrator", FakeOrchestrator(SyncRunResult(tenant_id=tenant_id, sync_kind=SyncKind.METRICS))
        )

        result = await tasks._run_sync_job_async(tenant_id, SyncKind.METRICS, SyncTrigger.SCHEDULED, None, "t")

        assert result == {"status": "skipped", "reason": "tenant_unavailable"}


class TestCeleryDispatcher:
    def test_enqueue_passes_serializable_args(self):
        tenant_id = uuid.uuid4()
        with patch.object(tasks.run_sync_job, "apply_async", return_value=MagicMock(id="celery-123")) as apply_async:
            task_id = tasks.CeleryDispatcher().enqueue(
                tenant_id, SyncKind.COSTS, SyncTrigger.MANUAL, (date(2026, 1, 1), date(2026, 2, 1))
            )

        assert task_id == "celery-123"
        apply_async.assert_called_once_with(
            args=[str(tenant_id), "costs", "manual", "2026-01-01", "2026-02-01"],
        )

    def test_broker_error_becomes_enqueue_error(self):
        with patch.object(tasks.run_sync_job, "apply_async", side_effect=OperationalError("Connection refused")):
            with pytest.raises(SyncEnqueueError):
                tasks.CeleryDispatcher().enqueue(uuid.uuid4(), SyncKind.RESOURCES, SyncTrigger.SCHEDULED)
