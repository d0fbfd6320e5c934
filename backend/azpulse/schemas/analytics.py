"""Derived analytics Pydantic schemas."""

import uuid
from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field

from azpulse.models.analytics import IdleStatus


class CostAnomaly(BaseModel):
    """Cost anomaly returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tenant_id: uuid.UUID
    resource_id: str | None
    anomaly_date: date
    anomaly_type: str
    actual_cost: float
    expected_cost: float
    deviation_percent: float
    severity: str
    is_acknowledged: bool
    acknowledged_by: str | None
    acknowledged_at: datetime | None
    notes: str | None
    detected_at: datetime


class AnomalyAcknowledge(BaseModel):
    """Acknowledgement payload."""

    notes: str | None = Field(default=None, max_length=2000)


class IdleResourceFlag(BaseModel):
    """Idle resource flag returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    resource_id: uuid.UUID
    tenant_id: uuid.UUID
    idle_reason: str
    idle_days: int
    monthly_cost_estimate: float
    metrics_summary: dict
    status: str
    ignored_reason: str | None
    status_changed_by: str | None
    status_changed_at: datetime | None
    detected_at: datetime


class IdleStatusUpdate(BaseModel):
    """Human status transition for an idle flag."""

    status: IdleStatus
    reason: str | None = Field(default=None, max_length=2000)


class DerivedScore(BaseModel):
    """Health or optimization score returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    resource_id: uuid.UUID
    tenant_id: uuid.UUID
    score_kind: str
    score: int
    grade: str | None
    breakdown: dict
    computed_at: datetime


class FleetSummary(BaseModel):
    """Fleet wide optimization summary."""

    total_resources: int
    average_score: float
    grade_counts: dict[str, int]
    needs_attention: list[uuid.UUID]


class AnalyticsRunResult(BaseModel):
    """Counts produced by one analytics run for a tenant."""

    tenant_id: uuid.UUID
    health_scores: int = 0
    anomalies_created: int = 0
    idle_flags_opened: int = 0
    idle_flags_updated: int = 0
    optimization_scores: int = 0


class AnalyticsRunRequest(BaseModel):
    """On-demand analytics run for one tenant."""

    tenant_id: uuid.UUID
    rerun_anomalies: bool = Field(default=False, description="Re-score cost days that were already scored")
