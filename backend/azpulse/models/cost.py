"""Daily cost record model."""

import uuid
from datetime import date

from sqlalchemy import Date, Float, ForeignKey, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from azpulse.core.database import Base


class CostRecord(Base):
    """
    Cost of one meter for one resource (or the tenant aggregate) on one day.

    ``resource_id`` is NULL for tenant level rows. Because NULLs never
    collide in a unique index, ``resource_key`` carries the same value with
    NULL folded to an empty string and takes its place in the natural key.
    """

    __tablename__ = "cost_records"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "resource_key",
            "usage_date",
            "meter_category",
            "meter_subcategory",
            "meter_name",
            name="uq_cost_records_natural_key",
        ),
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
    resource_id: Mapped[str | None] = mapped_column(
        String(1024),
        nullable=True,
    )  # lower-cased ARM id
    resource_key: Mapped[str] = mapped_column(
        String(1024),
        nullable=False,
        default="",
    )
    resource_group: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    usage_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        index=True,
    )
    meter_category: Mapped[str] = mapped_column(
        String(255),
        default="",
        nullable=False,
    )
    meter_subcategory: Mapped[str] = mapped_column(
        String(255),
        default="",
        nullable=False,
    )
    meter_name: Mapped[str] = mapped_column(
        String(255),
        default="",
        nullable=False,
    )
    cost: Mapped[float] = mapped_column(
        Float,
        default=0.0,
        nullable=False,
    )
    currency: Mapped[str] = mapped_column(
        String(3),
        default="USD",
        nullable=False,
    )
    usage_quantity: Mapped[float] = mapped_column(
        Float,
        default=0.0,
        nullable=False,
    )

    def __repr__(self) -> str:
        """String representation."""
        return f"<CostRecord {self.usage_date} {self.meter_category} {self.cost:.2f} {self.currency}>"
