"""Tenant Pydantic schemas for request/response validation."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from azpulse.models.sync import SyncKind


# Azure credentials schema (not stored directly, used for encryption)
class AzureCredentials(BaseModel):
    """Azure service principal credentials."""

    tenant_id: str = Field(..., min_length=36, max_length=36, description="Azure AD Tenant ID (GUID)")
    client_id: str = Field(..., min_length=36, max_length=36, description="Azure Service Principal Application/Client ID (GUID)")
    client_secret: str = Field(..., min_length=1, max_length=256, description="Azure Service Principal Client Secret")
    subscription_id: str = Field(..., min_length=36, max_length=36, description="Azure Subscription ID (GUID)")

    def __repr__(self) -> str:
        return f"AzureCredentials(tenant_id={self.tenant_id!r}, client_id={self.client_id!r}, client_secret='***')"

    __str__ = __repr__


class SyncScheduleConfig(BaseModel):
    """Interval override for one sync kind."""

    sync_kind: SyncKind
    interval_minutes: int = Field(..., ge=5, le=10080)
    is_enabled: bool = True


# Base schema
class TenantBase(BaseModel):
    """Base tenant schema."""

    display_name: str = Field(..., min_length=1, max_length=255)
    log_analytics_workspace_id: str | None = Field(
        default=None,
        min_length=36,
        max_length=36,
        description="Log Analytics workspace receiving SQL diagnostics (enables wait stats)",
    )
    is_enabled: bool = True


class TenantCreate(TenantBase):
    """Schema for creating a tenant."""

    credentials: AzureCredentials
    schedules: list[SyncScheduleConfig] = Field(
        default_factory=list,
        description="Per-kind schedule overrides. Kinds not listed use configured defaults.",
    )


class TenantUpdate(BaseModel):
    """Schema for updating a tenant. Supplying credentials rotates the secret."""

    display_name: str | None = Field(default=None, min_length=1, max_length=255)
    log_analytics_workspace_id: str | None = Field(default=None, min_length=36, max_length=36)
    is_enabled: bool | None = None
    credentials: AzureCredentials | None = None
    schedules: list[SyncScheduleConfig] | None = None


class SyncSchedule(BaseModel):
    """Sync schedule in responses."""

    model_config = ConfigDict(from_attributes=True)

    sync_kind: str
    interval_minutes: int
    is_enabled: bool
    last_enqueued_at: datetime | None


class Tenant(TenantBase):
    """Tenant returned by the API. Secrets are never included."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    directory_id: str
    application_id: str
    subscription_id: str
    needs_revalidation: bool
    last_validated_at: datetime | None
    last_sync_at: datetime | None
    created_at: datetime


class TenantWithSchedules(Tenant):
    """Tenant plus its sync schedules."""

    schedules: list[SyncSchedule] = Field(default_factory=list)


class SubscriptionInfo(BaseModel):
    """Subscription reachable with a set of credentials."""

    id: str
    name: str
    state: str | None = None


class ConnectionTestResult(BaseModel):
    """Result of a credential check."""

    success: bool
    subscriptions: list[SubscriptionInfo] = Field(default_factory=list)
    error: str | None = None


class ResourceFetchSummary(BaseModel):
    """Dry-run inventory summary for a set of credentials."""

    subscription_id: str
    total_resources: int
    resource_groups: int
    by_type: dict[str, int]
    by_resource_group: dict[str, int]
    sample_resources: list[dict[str, str | None]]
    skipped_records: int = 0
