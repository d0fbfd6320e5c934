"""Cached Azure inventory models."""

import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from azpulse.core.database import Base, utcnow


class CachedResource(Base):
    """
    Local copy of one Azure resource.

    ``external_id`` is the lower-cased ARM resource id and the upsert key.
    Tags are a flat string map; provider specific properties are kept as an
    opaque JSON text blob.
    """

    __tablename__ = "cached_resources"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        index=True,
    )
    external_id: Mapped[str] = mapped_column(
        String(1024),
        nullable=False,
        unique=True,
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    type: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )  # e.g. 'microsoft.sql/servers/databases'
    resource_group: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    location: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )
    tags: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )
    properties: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    last_synced_at: Mapped[datetime] = mapped_column(
        default=utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        """String representation."""
        return f"<CachedResource {self.type}:{self.name}>"


class CachedResourceGroup(Base):
    """Resource group seen during the last resource sync."""

    __tablename__ = "cached_resource_groups"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_resource_groups_tenant_name"),)

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
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    location: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )
    last_synced_at: Mapped[datetime] = mapped_column(
        default=utcnow,
        nullable=False,
    )
