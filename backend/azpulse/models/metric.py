"""Azure Monitor metric sample model."""

import uuid
from datetime import datetime

from sqlalchemy import Float, ForeignKey, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from azpulse.core.database import Base


class MetricSample(Base):
    """One aggregated metric value for a resource at a point in time."""

    __tablename__ = "metric_samples"
    __table_args__ = (
        UniqueConstraint(
            "resource_id",
            "metric_name",
            "timestamp",
            "aggregation_type",
            name="uq_metric_samples_natural_key",
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
    metric_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    timestamp: Mapped[datetime] = mapped_column(
        nullable=False,
        index=True,
    )
    aggregation_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )  # average, minimum, maximum, total, count
    value: Mapped[float] = mapped_column(
        Float,
        nullable=False,
    )
    unit: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )

    def __repr__(self) -> str:
        """String representation."""
        return f"<MetricSample {self.metric_name}/{self.aggregation_type} @ {self.timestamp}>"
