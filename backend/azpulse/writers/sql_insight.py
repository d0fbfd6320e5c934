"""SQL insight writer: performance stats, wait stats, replication, Advisor."""

import uuid
from datetime import datetime
from typing import Sequence

from azpulse.core.database import utcnow
from azpulse.models.sql_insight import (
    AdvisorRecommendation,
    ReplicationLagSample,
    ReplicationLink,
    SqlPerformanceStat,
    WaitStat,
)
from azpulse.schemas.records import (
    RecommendationRecord,
    ReplicationLinkRecord,
    SqlPerformancePoint,
    WaitStatRecord,
)
from azpulse.writers.base import BaseWriter, dedupe_rows


class SqlInsightWriter(BaseWriter):
    """Upserts the SQL database time series gathered by the sql-insights sync."""

    async def upsert_performance(
        self, resource_id: uuid.UUID, records: Sequence[SqlPerformancePoint]
    ) -> int:
        rows = [
            {
                "id": uuid.uuid4(),
                "resource_id": resource_id,
                "timestamp": record.timestamp,
                "cpu_percent": record.cpu_percent,
                "dtu_percent": record.dtu_percent,
                "storage_percent": record.storage_percent,
                "deadlock_count": record.deadlock_count,
                "blocked_count": record.blocked_count,
            }
            for record in records
        ]
        return await self._upsert(
            SqlPerformanceStat,
            dedupe_rows(rows, ("resource_id", "timestamp")),
            conflict_columns=("resource_id", "timestamp"),
            update_columns=(
                "cpu_percent",
                "dtu_percent",
                "storage_percent",
                "deadlock_count",
                "blocked_count",
            ),
        )

    async def upsert_wait_stats(self, resource_id: uuid.UUID, records: Sequence[WaitStatRecord]) -> int:
        rows = [
            {
                "id": uuid.uuid4(),
                "resource_id": resource_id,
                "wait_type": record.wait_type,
                "captured_at": record.captured_at,
                "wait_time_ms": record.wait_time_ms,
                "wait_count": record.wait_count,
                "avg_wait_time_ms": record.avg_wait_time_ms,
            }
            for record in records
        ]
        key = ("resource_id", "wait_type", "captured_at")
        return await self._upsert(
            WaitStat,
            dedupe_rows(rows, key),
            conflict_columns=key,
            update_columns=("wait_time_ms", "wait_count", "avg_wait_time_ms"),
        )

    async def upsert_replication_links(
        self,
        resource_id: uuid.UUID,
        records: Sequence[ReplicationLinkRecord],
        captured_at: datetime | None = None,
    ) -> int:
        """
        Refresh the current state of each link and append one lag sample.

        Args:
            resource_id: Cached SQL database
            records: Links as fetched
            captured_at: Time the lag sample is recorded under (default now)

        Returns:
            Number of links written
        """
        captured_at = captured_at or utcnow()
        now = utcnow()
        links = dedupe_rows(
            [
                {
                    "id": uuid.uuid4(),
                    "resource_id": resource_id,
                    "partner_server": record.partner_server,
                    "partner_database": record.partner_database,
                    "role": record.role,
                    "state": record.state,
                    "lag_seconds": record.lag_seconds,
                    "last_replicated_at": record.last_replicated_at,
                    "updated_at": now,
                }
                for record in records
            ],
            ("resource_id", "partner_server"),
        )
        written = await self._upsert(
            ReplicationLink,
            links,
            conflict_columns=("resource_id", "partner_server"),
            update_columns=(
                "partner_database",
                "role",
                "state",
                "lag_seconds",
                "last_replicated_at",
                "updated_at",
            ),
        )

        samples = [
            {
                "id": uuid.uuid4(),
                "resource_id": resource_id,
                "partner_server": link["partner_server"],
                "captured_at": captured_at,
                "state": link["state"],
                "lag_seconds": link["lag_seconds"],
            }
            for link in links
        ]
        await self._upsert(
            ReplicationLagSample,
            samples,
            conflict_columns=("resource_id", "partner_server", "captured_at"),
            update_columns=("state", "lag_seconds"),
        )
        return written

    async def upsert_recommendations(
        self, tenant_id: uuid.UUID, records: Sequence[RecommendationRecord]
    ) -> int:
        now = utcnow()
        rows = [
            {
                "id": uuid.uuid4(),
                "tenant_id": tenant_id,
                "recommendation_id": record.recommendation_id,
                "resource_id": record.resource_id,
                "category": record.category,
                "impact": record.impact,
                "problem": record.problem,
                "solution": record.solution,
                "last_synced_at": now,
            }
            for record in records
        ]
        key = ("tenant_id", "recommendation_id")
        return await self._upsert(
            AdvisorRecommendation,
            dedupe_rows(rows, key),
            conflict_columns=key,
            update_columns=("resource_id", "category", "impact", "problem", "solution", "last_synced_at"),
        )
