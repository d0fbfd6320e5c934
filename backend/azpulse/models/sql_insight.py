"""SQL database insight models: performance, waits, replication, Advisor."""

import uuid
from datetime import datetime

from sqlalchemy import Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from azpulse.core.database import Base, utcnow


class SqlPerformanceStat(Base):
    """Point-in-time performance counters for an Azure SQL database."""

    __tablename__ = "sql_performance_stats"
    __table_args__ = (UniqueConstraint("resource_id", "timestamp", name="uq_sql_perf_resource_ts"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    resource_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("cached_resources.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    timestamp: Mapped[datetime] = mapped_column(
        nullable=False,
    )
    cpu_percent: Mapped[float | None] = mapped_column(Float, nullable=True)
    dtu_percent: Mapped[float | None] = mapped_column(Float, nullable=True)
    storage_percent: Mapped[float | None] = mapped_column(Float, nullable=True)
    deadlock_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    blocked_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class WaitStat(Base):
    """Aggregated wait time for one wait type captured at one time."""

    __tablename__ = "wait_stats"
    __table_args__ = (
        UniqueConstraint("resource_id", "wait_type", "captured_at", name="uq_wait_stats_natural_key"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    resource_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("cached_resources.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    wait_type: Mapped[str] = mapped_column(String(120), nullable=False)
    captured_at: Mapped[datetime] = mapped_column(nullable=False)
    wait_time_ms: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    wait_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    avg_wait_time_ms: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)


class ReplicationLink(Base):
    """Current state of a geo-replication link. History lives in ReplicationLagSample."""

    __tablename__ = "replication_links"
    __table_args__ = (
        UniqueConstraint("resource_id", "partner_server", name="uq_replication_links_partner"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    resource_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("cached_resources.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    partner_server: Mapped[str] = mapped_column(String(255), nullable=False)
    partner_database: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[str | None] = mapped_column(String(50), nullable=True)
    state: Mapped[str] = mapped_column(String(50), nullable=False)
    lag_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_replicated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


class ReplicationLagSample(Base):
    """Replication state and lag observed at one sync."""

    __tablename__ = "replication_lag_samples"
    __table_args__ = (
        UniqueConstraint(
            "resource_id", "partner_server", "captured_at", name="uq_replication_lag_samples_key"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    resource_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("cached_resources.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    partner_server: Mapped[str] = mapped_column(String(255), nullable=False)
    captured_at: Mapped[datetime] = mapped_column(nullable=False)
    state: Mapped[str] = mapped_column(String(50), nullable=False)
    lag_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)


class AdvisorRecommendation(Base):
    """Azure Advisor recommendation for a resource in a tenant's subscription."""

    __tablename__ = "advisor_recommendations"
    __table_args__ = (
        UniqueConstraint("tenant_id", "recommendation_id", name="uq_advisor_recommendations_key"),
    )

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
    recommendation_id: Mapped[str] = mapped_column(String(255), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(
        String(1024),
        nullable=True,
        index=True,
    )  # lower-cased ARM id
    category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    impact: Mapped[str | None] = mapped_column(String(20), nullable=True)
    problem: Mapped[str | None] = mapped_column(Text, nullable=True)
    solution: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_synced_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
