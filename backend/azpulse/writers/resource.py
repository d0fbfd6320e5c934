"""Resource cache writer."""

import uuid
from typing import Sequence

from azpulse.core.database import utcnow
from azpulse.models.resource import CachedResource, CachedResourceGroup
from azpulse.schemas.records import ResourceGroupRecord, ResourceRecord
from azpulse.writers.base import BaseWriter, dedupe_rows


class ResourceWriter(BaseWriter):
    """Upserts inventory keyed by external resource id."""

    async def upsert(self, tenant_id: uuid.UUID, records: Sequence[ResourceRecord]) -> int:
        """
        Insert new resources and refresh existing ones.

        Args:
            tenant_id: Owning tenant
            records: Resources as fetched

        Returns:
            Number of resources written
        """
        now = utcnow()
        rows = [
            {
                "id": uuid.uuid4(),
                "external_id": record.external_id,
                "tenant_id": tenant_id,
                "name": record.name,
                "type": record.type,
                "resource_group": record.resource_group,
                "location": record.location,
                "tags": record.tags,
                "properties": record.properties,
                "last_synced_at": now,
            }
            for record in records
        ]
        return await self._upsert(
            CachedResource,
            dedupe_rows(rows, ("external_id",)),
            conflict_columns=("external_id",),
            update_columns=(
                "tenant_id",
                "name",
                "type",
                "resource_group",
                "location",
                "tags",
                "properties",
                "last_synced_at",
            ),
        )

    async def upsert_groups(self, tenant_id: uuid.UUID, records: Sequence[ResourceGroupRecord]) -> int:
        """Insert or refresh resource groups keyed by (tenant, name)."""
        now = utcnow()
        rows = [
            {
                "id": uuid.uuid4(),
                "tenant_id": tenant_id,
                "name": record.name,
                "location": record.location,
                "last_synced_at": now,
            }
            for record in records
        ]
        return await self._upsert(
            CachedResourceGroup,
            dedupe_rows(rows, ("tenant_id", "name")),
            conflict_columns=("tenant_id", "name"),
            update_columns=("location", "last_synced_at"),
        )
