"""Cost record writer."""

import uuid
from typing import Any, Sequence

from azpulse.models.cost import CostRecord
from azpulse.schemas.records import CostRow
from azpulse.writers.base import BaseWriter

NATURAL_KEY = (
    "tenant_id",
    "resource_key",
    "usage_date",
    "meter_category",
    "meter_subcategory",
    "meter_name",
)


class CostWriter(BaseWriter):
    """Upserts daily cost rows keyed by (tenant, resource|aggregate, day, meter)."""

    async def upsert(self, tenant_id: uuid.UUID, records: Sequence[CostRow]) -> int:
        """
        Write cost rows, summing rows that share a natural key.

        The cost API can return several rows for the same key (for example
        when a resource id differs only by case); those are folded into
        one row before writing.

        Args:
            tenant_id: Owning tenant
            records: Cost rows as fetched

        Returns:
            Number of cost records written
        """
        folded: dict[tuple[Any, ...], dict[str, Any]] = {}
        for record in records:
            row = {
                "id": uuid.uuid4(),
                "tenant_id": tenant_id,
                "resource_id": record.resource_id,
                "resource_key": record.resource_id or "",
                "resource_group": record.resource_group,
                "usage_date": record.usage_date,
                "meter_category": record.meter_category,
                "meter_subcategory": record.meter_subcategory,
                "meter_name": record.meter_name,
                "cost": record.cost,
                "currency": record.currency,
                "usage_quantity": record.usage_quantity,
            }
            key = tuple(row[column] for column in NATURAL_KEY)
            existing = folded.get(key)
            if existing is None:
                folded[key] = row
            else:
                existing["cost"] += row["cost"]
                existing["usage_quantity"] += row["usage_quantity"]

        return await self._upsert(
            CostRecord,
            list(folded.values()),
            conflict_columns=NATURAL_KEY,
            update_columns=("resource_id", "resource_group", "cost", "currency", "usage_quantity"),
        )
