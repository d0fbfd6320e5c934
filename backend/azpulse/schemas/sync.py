"""Sync Pydantic schemas."""

import uuid
from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from azpulse.models.sync import SyncKind


class SyncTriggerRequest(BaseModel):
    """Manual 'run now' request."""

    tenant_id: uuid.UUID
    sync_kind: SyncKind
    backfill_from: date | None = Field(
        default=None,
        description="Costs only: start of a historical backfill window",
    )
    backfill_to: date | None = None

    @model_validator(mode="after")
    def check_backfill(self) -> "SyncTriggerRequest":
        """Backfill windows only apply to cost syncs and must be ordered."""
        if self.backfill_from is None and self.backfill_to is None:
            return self
        if self.sync_kind != SyncKind.COSTS:
            raise ValueError("Backfill windows are only supported for cost syncs")
        if self.backfill_from is None:
            raise ValueError("backfill_from is required when backfill_to is set")
        if self.backfill_to is not None and self.backfill_to < self.backfill_from:
            raise ValueError("backfill_to must not be before backfill_from")
        return self


class SyncTriggerResponse(BaseModel):
    """Acknowledgement that a sync was queued."""

    tenant_id: uuid.UUID
    sync_kind: SyncKind
    task_id: str
    queued_at: datetime


class SyncCancelRequest(BaseModel):
    """Cooperative cancellation request for a running sync."""

    tenant_id: uuid.UUID
    sync_kind: SyncKind
    reason: str = Field(default="Cancelled by operator", max_length=500)


class SyncLogEntry(BaseModel):
    """Sync log row returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tenant_id: uuid.UUID
    sync_kind: str
    trigger: str
    status: str
    started_at: datetime
    completed_at: datetime | None
    records_processed: int
    warning_count: int
    error_kind: str | None
    error_message: str | None
    details: dict | None
    duration_seconds: float | None
