"""Tenant and tenant secret database models."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, LargeBinary, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from azpulse.core.database import Base


class TenantSecret(Base):
    """
    Encrypted service principal credentials for one tenant.

    Tenants reference secrets by id. The plaintext is never stored and is
    only decrypted inside the credential store when a token is needed.
    """

    __tablename__ = "tenant_secrets"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    secret_encrypted: Mapped[bytes] = mapped_column(
        LargeBinary,
        nullable=False,
    )
    rotated_at: Mapped[datetime | None] = mapped_column(
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        """String representation (never includes the secret)."""
        return f"<TenantSecret {self.id}>"


class Tenant(Base):
    """Azure tenant/subscription configured for synchronization."""

    __tablename__ = "tenants"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        index=True,
    )
    display_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    directory_id: Mapped[str] = mapped_column(
        String(36),
        nullable=False,
    )  # Azure AD tenant id
    application_id: Mapped[str] = mapped_column(
        String(36),
        nullable=False,
    )  # Service principal client id
    subscription_id: Mapped[str] = mapped_column(
        String(36),
        nullable=False,
        index=True,
    )
    secret_ref: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("tenant_secrets.id", ondelete="RESTRICT"),
        nullable=False,
    )
    log_analytics_workspace_id: Mapped[str | None] = mapped_column(
        String(36),
        nullable=True,
    )
    is_enabled: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )
    needs_revalidation: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    last_validated_at: Mapped[datetime | None] = mapped_column(
        nullable=True,
    )
    last_sync_at: Mapped[datetime | None] = mapped_column(
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # Relationships
    secret: Mapped["TenantSecret"] = relationship("TenantSecret")
    sync_jobs: Mapped[list["SyncJob"]] = relationship(  # type: ignore
        "SyncJob",
        back_populates="tenant",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        """String representation."""
        return f"<Tenant {self.display_name}:{self.subscription_id}>"
