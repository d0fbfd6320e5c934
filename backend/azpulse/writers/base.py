"""Shared idempotent upsert machinery for the cache writers."""

import asyncio
from typing import Any, Sequence

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from azpulse.core.config import settings
from azpulse.core.database import dialect_insert
from azpulse.core.errors import WriteError

logger = structlog.get_logger(__name__)


class BaseWriter:
    """
    Batched ``INSERT ... ON CONFLICT DO UPDATE`` keyed by a natural tuple.

    Rows are written in the order given, in batches of
    ``WRITER_BATCH_SIZE``, and committed once per call. Any database error
    rolls the call back and surfaces as :class:`WriteError`.
    """

    def __init__(self, db: AsyncSession, batch_size: int | None = None) -> None:
        self.db = db
        self.batch_size = batch_size or settings.WRITER_BATCH_SIZE

    async def _upsert(
        self,
        model: Any,
        rows: Sequence[dict[str, Any]],
        conflict_columns: Sequence[str],
        update_columns: Sequence[str],
    ) -> int:
        """
        Upsert rows into a table.

        Args:
            model: Mapped class
            rows: Column dicts, each containing the conflict columns
            conflict_columns: Natural unique key
            update_columns: Columns overwritten when the key exists

        Returns:
            Number of rows written (inserted or updated)

        Raises:
            WriteError: If the database rejects the batch
        """
        if not rows:
            return 0

        written = 0
        table = model.__tablename__
        try:
            for offset in range(0, len(rows), self.batch_size):
                chunk = list(rows[offset : offset + self.batch_size])
                stmt = dialect_insert(self.db, model).values(chunk)
                stmt = stmt.on_conflict_do_update(
                    index_elements=list(conflict_columns),
                    set_={column: stmt.excluded[column] for column in update_columns},
                )
                await asyncio.wait_for(self.db.execute(stmt), settings.SYNC_CALL_TIMEOUT_SECONDS)
                written += len(chunk)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("writer.upsert_failed", table=table, error=str(e)[:300])
            raise WriteError(f"Failed to write {table}: {e.__class__.__name__}") from e
        except asyncio.TimeoutError as e:
            await self.db.rollback()
            raise WriteError(f"Timed out writing {table}", transient=True) from e

        logger.debug("writer.upserted", table=table, rows=written)
        return written


def dedupe_rows(rows: Sequence[dict[str, Any]], key_columns: Sequence[str]) -> list[dict[str, Any]]:
    """
    Collapse rows sharing a natural key, keeping the last value at the first position.

    PostgreSQL refuses to update the same row twice within one
    ``ON CONFLICT`` statement.
    """
    unique: dict[tuple[Any, ...], dict[str, Any]] = {}
    for row in rows:
        unique[tuple(row[column] for column in key_columns)] = row
    return list(unique.values())
