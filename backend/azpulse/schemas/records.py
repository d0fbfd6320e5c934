"""Internal record types produced by the remote gateway and consumed by writers."""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Annotated, Generic, TypeVar

from pydantic import AfterValidator, BaseModel, BeforeValidator, Field


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _lower(value: str | None) -> str | None:
    return value.lower() if isinstance(value, str) else value


def _usage_date(value: object) -> object:
    # Cost Management returns UsageDate as 20260112 or as an ISO string
    if isinstance(value, int) or (isinstance(value, str) and value.isdigit() and len(value) == 8):
        raw = str(value)
        return date(int(raw[:4]), int(raw[4:6]), int(raw[6:8]))
    if isinstance(value, str) and "T" in value:
        return value.split("T", 1)[0]
    return value


UtcDatetime = Annotated[datetime, AfterValidator(_to_naive_utc)]
ArmId = Annotated[str, AfterValidator(_lower)]


class SubscriptionRecord(BaseModel):
    """Subscription visible to a service principal."""

    subscription_id: str = Field(..., min_length=1)
    display_name: str
    state: str | None = None


class ResourceGroupRecord(BaseModel):
    """Resource group in a subscription."""

    name: str = Field(..., min_length=1)
    location: str | None = None


class ResourceRecord(BaseModel):
    """Inventory item as cached locally."""

    external_id: ArmId = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    type: ArmId = Field(..., min_length=1)
    resource_group: str = "unknown"
    location: str | None = None
    tags: dict[str, str] = Field(default_factory=dict)
    properties: str | None = None


class CostRow(BaseModel):
    """One row of a daily grouped cost query."""

    resource_id: Annotated[str | None, AfterValidator(_lower)] = None
    resource_group: str | None = None
    usage_date: Annotated[date, BeforeValidator(_usage_date)]
    meter_category: str = ""
    meter_subcategory: str = ""
    meter_name: str = ""
    cost: float
    usage_quantity: float = 0.0
    currency: str = "USD"


class MetricPoint(BaseModel):
    """One aggregation of one metric at one timestamp."""

    metric_name: str = Field(..., min_length=1)
    timestamp: UtcDatetime
    aggregation_type: str
    value: float
    unit: str | None = None


class SqlPerformancePoint(BaseModel):
    """Performance counters of a SQL database at one timestamp."""

    timestamp: UtcDatetime
    cpu_percent: float | None = None
    dtu_percent: float | None = None
    storage_percent: float | None = None
    deadlock_count: int = 0
    blocked_count: int = 0


class WaitStatRecord(BaseModel):
    """Wait statistics for one wait type."""

    wait_type: str = Field(..., min_length=1)
    captured_at: UtcDatetime
    wait_time_ms: float = 0.0
    wait_count: int = 0
    avg_wait_time_ms: float = 0.0


class ReplicationLinkRecord(BaseModel):
    """Geo-replication link of a SQL database."""

    partner_server: str = Field(..., min_length=1)
    partner_database: str | None = None
    role: str | None = None
    state: str
    lag_seconds: float | None = None
    last_replicated_at: UtcDatetime | None = None


class RecommendationRecord(BaseModel):
    """Azure Advisor recommendation."""

    recommendation_id: str = Field(..., min_length=1)
    resource_id: Annotated[str | None, AfterValidator(_lower)] = None
    category: str | None = None
    impact: str | None = None
    problem: str | None = None
    solution: str | None = None


T = TypeVar("T")


@dataclass
class ParsedBatch(Generic[T]):
    """Records parsed from a provider response plus the reasons for skipped ones."""

    records: list[T] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def extend(self, other: "ParsedBatch[T]") -> None:
        self.records.extend(other.records)
        self.skipped.extend(other.skipped)

    @property
    def warning_count(self) -> int:
        return len(self.skipped)
