"""Metric sample writer."""

import uuid
from typing import Sequence

from azpulse.models.metric import MetricSample
from azpulse.schemas.records import MetricPoint
from azpulse.writers.base import BaseWriter, dedupe_rows

NATURAL_KEY = ("resource_id", "metric_name", "timestamp", "aggregation_type")


class MetricsWriter(BaseWriter):
    """Upserts metric samples keyed by (resource, metric, timestamp, aggregation)."""

    async def upsert(
        self,
        resource_id: uuid.UUID,
        records: Sequence[MetricPoint],
    ) -> int:
        """
        Write metric points of one cached resource.

        Args:
            resource_id: Cached resource the points belong to
            records: Points as fetched

        Returns:
            Number of samples written
        """
        rows = [
            {
                "id": uuid.uuid4(),
                "resource_id": resource_id,
                "metric_name": record.metric_name,
                "timestamp": record.timestamp,
                "aggregation_type": record.aggregation_type,
                "value": record.value,
                "unit": record.unit,
            }
            for record in records
        ]
        return await self._upsert(
            MetricSample,
            dedupe_rows(rows, NATURAL_KEY),
            conflict_columns=NATURAL_KEY,
            update_columns=("value", "unit"),
        )
