"""CRUD operations for sync job schedules."""

import uuid
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from azpulse.core.config import settings
from azpulse.models.sync import SyncJob, SyncKind
from azpulse.models.tenant import Tenant
from azpulse.schemas.tenant import SyncScheduleConfig


def default_interval(kind: SyncKind) -> int:
    """Configured default interval in minutes for a sync kind."""
    return {
        SyncKind.RESOURCES: settings.SYNC_INTERVAL_RESOURCES_MINUTES,
        SyncKind.COSTS: settings.SYNC_INTERVAL_COSTS_MINUTES,
        SyncKind.METRICS: settings.SYNC_INTERVAL_METRICS_MINUTES,
        SyncKind.SQL_INSIGHTS: settings.SYNC_INTERVAL_SQL_INSIGHTS_MINUTES,
    }[kind]


async def create_default_jobs(db: AsyncSession, tenant_id: uuid.UUID) -> list[SyncJob]:
    """Create one enabled job per sync kind using default intervals."""
    jobs = [
        SyncJob(tenant_id=tenant_id, sync_kind=kind.value, interval_minutes=default_interval(kind))
        for kind in SyncKind
    ]
    db.add_all(jobs)
    await db.flush()
    return jobs


async def apply_schedules(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    schedules: list[SyncScheduleConfig],
) -> None:
    """Apply per-kind interval/enabled overrides to a tenant's jobs."""
    for schedule in schedules:
        await db.execute(
            update(SyncJob)
            .where(SyncJob.tenant_id == tenant_id, SyncJob.sync_kind == schedule.sync_kind.value)
            .values(interval_minutes=schedule.interval_minutes, is_enabled=schedule.is_enabled)
        )


async def get_jobs_for_tenant(db: AsyncSession, tenant_id: uuid.UUID) -> list[SyncJob]:
    """Return a tenant's jobs ordered by kind."""
    result = await db.execute(
        select(SyncJob).where(SyncJob.tenant_id == tenant_id).order_by(SyncJob.sync_kind)
    )
    return list(result.scalars().all())


async def get_due_jobs(db: AsyncSession, now: datetime) -> list[SyncJob]:
    """
    Enabled jobs of enabled tenants whose interval has elapsed.

    Args:
        db: Database session
        now: Current naive UTC time

    Returns:
        Jobs to enqueue, oldest first
    """
    result = await db.execute(
        select(SyncJob)
        .join(Tenant, Tenant.id == SyncJob.tenant_id)
        .where(SyncJob.is_enabled.is_(True), Tenant.is_enabled.is_(True))
        .order_by(SyncJob.last_enqueued_at.asc().nulls_first())
    )
    return [job for job in result.scalars().all() if job.is_due(now)]


async def mark_enqueued(db: AsyncSession, job_id: uuid.UUID, now: datetime) -> None:
    """Stamp a job as enqueued so the next tick waits a full interval."""
    await db.execute(update(SyncJob).where(SyncJob.id == job_id).values(last_enqueued_at=now))
    await db.commit()
