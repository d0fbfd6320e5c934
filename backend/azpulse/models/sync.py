"""Sync job schedule and sync log database models."""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from azpulse.core.database import Base, utcnow


class SyncKind(str, Enum):
    """Independent synchronization pipelines."""

    RESOURCES = "resources"
    COSTS = "costs"
    METRICS = "metrics"
    SQL_INSIGHTS = "sql-insights"


class SyncStatus(str, Enum):
    """Sync log status enumeration."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class SyncTrigger(str, Enum):
    """What caused a sync run."""

    MANUAL = "manual"
    SCHEDULED = "scheduled"


class SyncErrorKind(str, Enum):
    """Classification of a failed run."""

    AUTH = "auth"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    WRITE = "write"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


class SyncJob(Base):
    """Recurring schedule for one (tenant, kind) pipeline."""

    __tablename__ = "sync_jobs"
    __table_args__ = (UniqueConstraint("tenant_id", "sync_kind", name="uq_sync_jobs_tenant_kind"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sync_kind: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    interval_minutes: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    is_enabled: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )
    last_enqueued_at: Mapped[datetime | None] = mapped_column(
        nullable=True,
    )

    # Relationships
    tenant: Mapped["Tenant"] = relationship("Tenant", back_populates="sync_jobs")  # type: ignore

    def is_due(self, now: datetime) -> bool:
        """Whether the interval has elapsed since the job was last enqueued."""
        if self.last_enqueued_at is None:
            return True
        return (now - self.last_enqueued_at).total_seconds() >= self.interval_minutes * 60

    def __repr__(self) -> str:
        """String representation."""
        return f"<SyncJob {self.tenant_id}:{self.sync_kind} every {self.interval_minutes}m>"


class SyncLogEntry(Base):
    """
    History of one sync execution.

    Rows are inserted in ``running`` state and updated exactly once to a
    terminal state. The partial unique index guarantees at most one
    running row per (tenant, kind); inserting a second one fails, which is
    the check-and-set used to start a job.
    """

    __tablename__ = "sync_logs"
    __table_args__ = (
        Index(
            "uq_sync_logs_one_running",
            "tenant_id",
            "sync_kind",
            unique=True,
            postgresql_where=text("status = 'running'"),
            sqlite_where=text("status = 'running'"),
        ),
        Index("ix_sync_logs_tenant_kind_started", "tenant_id", "sync_kind", "started_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        index=True,
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sync_kind: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    trigger: Mapped[str] = mapped_column(
        String(20),
        default=SyncTrigger.MANUAL.value,
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        default=SyncStatus.RUNNING.value,
        nullable=False,
        index=True,
    )
    started_at: Mapped[datetime] = mapped_column(
        default=utcnow,
        nullable=False,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        nullable=True,
    )
    records_processed: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    warning_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    error_kind: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
    )
    error_message: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    details: Mapped[dict | None] = mapped_column(
        JSON,
        nullable=True,
    )
    cancel_requested: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    @property
    def duration_seconds(self) -> float | None:
        """Wall time of the run, None while running."""
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def __repr__(self) -> str:
        """String representation."""
        return f"<SyncLogEntry {self.tenant_id}:{self.sync_kind} - {self.status}>"
