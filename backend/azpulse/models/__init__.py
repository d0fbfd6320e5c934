"""SQLAlchemy database models."""

from azpulse.models.tenant import Tenant, TenantSecret
from azpulse.models.sync import SyncJob, SyncLogEntry
from azpulse.models.resource import CachedResource, CachedResourceGroup
from azpulse.models.cost import CostRecord
from azpulse.models.metric import MetricSample
from azpulse.models.sql_insight import (
    AdvisorRecommendation,
    ReplicationLagSample,
    ReplicationLink,
    SqlPerformanceStat,
    WaitStat,
)
from azpulse.models.analytics import (
    CostAnomaly,
    CostAnomalyWatermark,
    DerivedScore,
    IdleResourceFlag,
)

__all__ = [
    "Tenant",
    "TenantSecret",
    "SyncJob",
    "SyncLogEntry",
    "CachedResource",
    "CachedResourceGroup",
    "CostRecord",
    "MetricSample",
    "SqlPerformanceStat",
    "WaitStat",
    "ReplicationLink",
    "ReplicationLagSample",
    "AdvisorRecommendation",
    "DerivedScore",
    "CostAnomaly",
    "CostAnomalyWatermark",
    "IdleResourceFlag",
]
