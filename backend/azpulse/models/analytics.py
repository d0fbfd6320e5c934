"""Derived analytics models: scores, cost anomalies and idle flags."""

import uuid
from datetime import date, datetime
from enum import Enum

from sqlalchemy import Boolean, Date, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from azpulse.core.database import Base, utcnow


class ScoreKind(str, Enum):
    """Kinds of derived per-resource scores."""

    HEALTH = "health"
    OPTIMIZATION = "optimization"


class AnomalyType(str, Enum):
    """Direction of a cost deviation."""

    SPIKE = "spike"
    DROP = "drop"


class AnomalySeverity(str, Enum):
    """Cost anomaly severity."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class IdleStatus(str, Enum):
    """Idle resource flag status. Only human action moves a flag out of OPEN."""

    OPEN = "open"
    IGNORED = "ignored"
    ACTIONED = "actioned"
    RESOLVED = "resolved"


class DerivedScore(Base):
    """Latest health or optimization score of a resource. Overwritten on each run."""

    __tablename__ = "derived_scores"
    __table_args__ = (UniqueConstraint("resource_id", "score_kind", name="uq_derived_scores_kind"),)

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
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    score_kind: Mapped[str] = mapped_column(String(20), nullable=False)
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    grade: Mapped[str | None] = mapped_column(String(1), nullable=True)
    breakdown: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    computed_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    def __repr__(self) -> str:
        """String representation."""
        return f"<DerivedScore {self.score_kind} {self.score}>"


class CostAnomaly(Base):
    """
    Day whose spend deviates from the trailing baseline.

    Created by the detector; afterwards only acknowledgement mutates it.
    """

    __tablename__ = "cost_anomalies"
    __table_args__ = (
        UniqueConstraint("tenant_id", "resource_key", "anomaly_date", name="uq_cost_anomalies_key"),
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
    resource_id: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    resource_key: Mapped[str] = mapped_column(String(1024), default="", nullable=False)
    anomaly_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    anomaly_type: Mapped[str] = mapped_column(String(10), nullable=False)
    actual_cost: Mapped[float] = mapped_column(Float, nullable=False)
    expected_cost: Mapped[float] = mapped_column(Float, nullable=False)
    deviation_percent: Mapped[float] = mapped_column(Float, nullable=False)
    severity: Mapped[str] = mapped_column(String(10), nullable=False, index=True)
    is_acknowledged: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    acknowledged_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    detected_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    def __repr__(self) -> str:
        """String representation."""
        return f"<CostAnomaly {self.anomaly_date} {self.anomaly_type} {self.severity}>"


class CostAnomalyWatermark(Base):
    """Newest date already scored for a (tenant, resource|aggregate) series."""

    __tablename__ = "cost_anomaly_watermarks"
    __table_args__ = (
        UniqueConstraint("tenant_id", "resource_key", name="uq_cost_anomaly_watermarks_key"),
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
    )
    resource_key: Mapped[str] = mapped_column(String(1024), default="", nullable=False)
    last_scored_date: Mapped[date] = mapped_column(Date, nullable=False)


class IdleResourceFlag(Base):
    """Resource whose utilization stayed below the idle threshold."""

    __tablename__ = "idle_resource_flags"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        index=True,
    )
    resource_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("cached_resources.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    idle_reason: Mapped[str] = mapped_column(Text, nullable=False)
    idle_days: Mapped[int] = mapped_column(Integer, nullable=False)
    monthly_cost_estimate: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    metrics_summary: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default=IdleStatus.OPEN.value,
        nullable=False,
        index=True,
    )
    ignored_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    status_changed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status_changed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    detected_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        """String representation."""
        return f"<IdleResourceFlag {self.resource_id} {self.status} {self.idle_days}d>"
