"""Persistence and queries for derived per-resource scores."""

import uuid
from typing import Any, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from azpulse.core.database import dialect_insert, utcnow
from azpulse.models.analytics import DerivedScore, ScoreKind


async def save_scores(db: AsyncSession, kind: ScoreKind, scores: Sequence[dict[str, Any]]) -> int:
    """
    Overwrite the latest score of each resource for one kind.

    Args:
        db: Database session
        kind: Health or optimization
        scores: Dicts with resource_id, tenant_id, score, breakdown and optionally grade

    Returns:
        Number of scores written
    """
    if not scores:
        return 0
    now = utcnow()
    rows = [
        {
            "id": uuid.uuid4(),
            "resource_id": score["resource_id"],
            "tenant_id": score["tenant_id"],
            "score_kind": kind.value,
            "score": score["score"],
            "grade": score.get("grade"),
            "breakdown": score["breakdown"],
            "computed_at": now,
        }
        for score in scores
    ]
    stmt = dialect_insert(db, DerivedScore).values(rows)
    stmt = stmt.on_conflict_do_update(
        index_elements=["resource_id", "score_kind"],
        set_={
            column: stmt.excluded[column]
            for column in ("tenant_id", "score", "grade", "breakdown", "computed_at")
        },
    )
    await db.execute(stmt)
    await db.commit()
    return len(rows)


async def list_scores(
    db: AsyncSession,
    kind: ScoreKind,
    tenant_id: uuid.UUID | None = None,
    limit: int = 500,
) -> list[DerivedScore]:
    """Latest scores of one kind, worst first."""
    query = select(DerivedScore).where(DerivedScore.score_kind == kind.value)
    if tenant_id is not None:
        query = query.where(DerivedScore.tenant_id == tenant_id)
    result = await db.execute(query.order_by(DerivedScore.score.asc()).limit(limit))
    return list(result.scalars().all())
