"""CRUD operations for the sync log."""

import uuid
from datetime import timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from azpulse.core.database import utcnow
from azpulse.core.errors import SyncAlreadyRunningError
from azpulse.models.sync import SyncErrorKind, SyncKind, SyncLogEntry, SyncStatus, SyncTrigger

MAX_ERROR_MESSAGE_LENGTH = 2000


async def start_entry(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    kind: SyncKind,
    trigger: SyncTrigger = SyncTrigger.MANUAL,
) -> SyncLogEntry:
    """
    Insert a running log row for (tenant, kind).

    The partial unique index on running rows turns this insert into an
    atomic check-and-set: it only succeeds when no other run is active.

    Args:
        db: Database session
        tenant_id: Tenant UUID
        kind: Sync kind
        trigger: Manual or scheduled

    Returns:
        The committed running entry

    Raises:
        SyncAlreadyRunningError: If a running entry already exists
    """
    entry = SyncLogEntry(
        tenant_id=tenant_id,
        sync_kind=kind.value,
        trigger=trigger.value,
        status=SyncStatus.RUNNING.value,
        started_at=utcnow(),
    )
    db.add(entry)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise SyncAlreadyRunningError(
            f"A {kind.value} sync is already running for tenant {tenant_id}"
        ) from e
    await db.refresh(entry)
    return entry


async def complete_entry(
    db: AsyncSession,
    entry_id: uuid.UUID,
    records_processed: int,
    warning_count: int = 0,
    details: dict[str, Any] | None = None,
) -> bool:
    """
    Transition a running entry to success.

    Args:
        db: Database session
        entry_id: Sync log UUID
        records_processed: Total records upserted
        warning_count: Records skipped as malformed
        details: Per-step counts

    Returns:
        False if the entry was no longer running (e.g. reaped as stale)
    """
    result = await db.execute(
        update(SyncLogEntry)
        .where(SyncLogEntry.id == entry_id, SyncLogEntry.status == SyncStatus.RUNNING.value)
        .values(
            status=SyncStatus.SUCCESS.value,
            completed_at=utcnow(),
            records_processed=records_processed,
            warning_count=warning_count,
            details=details,
        )
    )
    await db.commit()
    return result.rowcount == 1


async def fail_entry(
    db: AsyncSession,
    entry_id: uuid.UUID,
    error_kind: SyncErrorKind,
    error_message: str,
    records_processed: int = 0,
    warning_count: int = 0,
    details: dict[str, Any] | None = None,
) -> bool:
    """
    Transition a running entry to failed.

    Args:
        db: Database session
        entry_id: Sync log UUID
        error_kind: Failure classification
        error_message: Human readable reason
        records_processed: Records written before the failure
        warning_count: Records skipped as malformed
        details: Per-step counts

    Returns:
        False if the entry was no longer running
    """
    result = await db.execute(
        update(SyncLogEntry)
        .where(SyncLogEntry.id == entry_id, SyncLogEntry.status == SyncStatus.RUNNING.value)
        .values(
            status=SyncStatus.FAILED.value,
            completed_at=utcnow(),
            error_kind=error_kind.value,
            error_message=error_message[:MAX_ERROR_MESSAGE_LENGTH],
            records_processed=records_processed,
            warning_count=warning_count,
            details=details,
        )
    )
    await db.commit()
    return result.rowcount == 1


async def get_entry(db: AsyncSession, entry_id: uuid.UUID) -> SyncLogEntry | None:
    """Get a sync log entry by ID."""
    result = await db.execute(select(SyncLogEntry).where(SyncLogEntry.id == entry_id))
    return result.scalar_one_or_none()


async def get_running(db: AsyncSession, tenant_id: uuid.UUID, kind: SyncKind) -> SyncLogEntry | None:
    """Return the running entry for (tenant, kind), if any."""
    result = await db.execute(
        select(SyncLogEntry).where(
            SyncLogEntry.tenant_id == tenant_id,
            SyncLogEntry.sync_kind == kind.value,
            SyncLogEntry.status == SyncStatus.RUNNING.value,
        )
    )
    return result.scalar_one_or_none()


async def list_entries(
    db: AsyncSession,
    tenant_id: uuid.UUID | None = None,
    kind: SyncKind | None = None,
    limit: int = 50,
) -> list[SyncLogEntry]:
    """
    Sync history, newest first.

    Args:
        db: Database session
        tenant_id: Restrict to one tenant
        kind: Restrict to one sync kind
        limit: Maximum number of records to return

    Returns:
        List of SyncLogEntry objects
    """
    query = select(SyncLogEntry)
    if tenant_id is not None:
        query = query.where(SyncLogEntry.tenant_id == tenant_id)
    if kind is not None:
        query = query.where(SyncLogEntry.sync_kind == kind.value)
    result = await db.execute(query.order_by(SyncLogEntry.started_at.desc()).limit(limit))
    return list(result.scalars().all())


async def request_cancel(db: AsyncSession, tenant_id: uuid.UUID, kind: SyncKind) -> SyncLogEntry | None:
    """
    Ask the running sync for (tenant, kind) to stop at its next gateway call.

    Returns:
        The running entry, or None if nothing is running
    """
    entry = await get_running(db, tenant_id, kind)
    if entry is None:
        return None
    entry.cancel_requested = True
    await db.commit()
    return entry


async def get_stop_reason(db: AsyncSession, entry_id: uuid.UUID) -> str | None:
    """
    Why the job behind an entry should stop, or None to keep going.

    An entry that is no longer running was failed elsewhere, typically by
    the stale reaper, and no longer holds the running slot.

    Args:
        db: Database session
        entry_id: Sync log UUID

    Returns:
        Stop reason, or None while the entry is running and not cancelled
    """
    row = (
        await db.execute(
            select(SyncLogEntry.cancel_requested, SyncLogEntry.status).where(SyncLogEntry.id == entry_id)
        )
    ).one_or_none()
    if row is None:
        return "Sync log entry no longer exists"
    cancel_requested, status = row
    if status != SyncStatus.RUNNING.value:
        return f"Sync log entry was already marked {status}"
    if cancel_requested:
        return "Cancellation requested"
    return None


async def is_cancel_requested(db: AsyncSession, entry_id: uuid.UUID) -> bool:
    """Whether the job behind an entry should stop."""
    return await get_stop_reason(db, entry_id) is not None


async def fail_stale_running(db: AsyncSession, max_runtime_minutes: int) -> int:
    """
    Fail running entries that exceeded the maximum runtime.

    A crashed worker leaves its row running forever, which would block
    every later run for that (tenant, kind).

    Args:
        db: Database session
        max_runtime_minutes: Age after which a running row is considered dead

    Returns:
        Number of entries failed
    """
    now = utcnow()
    cutoff = now - timedelta(minutes=max_runtime_minutes)
    result = await db.execute(
        update(SyncLogEntry)
        .where(
            SyncLogEntry.status == SyncStatus.RUNNING.value,
            SyncLogEntry.started_at < cutoff,
        )
        .values(
            status=SyncStatus.FAILED.value,
            completed_at=now,
            error_kind=SyncErrorKind.TRANSIENT.value,
            error_message=f"Job exceeded maximum runtime of {max_runtime_minutes} minutes",
        )
    )
    await db.commit()
    return result.rowcount
