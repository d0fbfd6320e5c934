"""Database engine, session factory and declarative base."""

from datetime import datetime, timezone
from typing import Any, AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from azpulse.core.config import settings


class Base(DeclarativeBase):
    """Declarative base for all models."""

    pass


engine = create_async_engine(str(settings.DATABASE_URL), echo=False, pool_pre_ping=True)
AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Yield a database session for a request.

    Yields:
        AsyncSession bound to the application engine
    """
    async with AsyncSessionLocal() as session:
        yield session


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (all stored timestamps are naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def dialect_insert(db: AsyncSession, model: Any) -> Any:
    """
    Build an INSERT supporting ON CONFLICT for the session's dialect.

    Args:
        db: Database session
        model: Mapped class or table to insert into

    Returns:
        Dialect specific Insert construct

    Raises:
        NotImplementedError: If the backend has no ON CONFLICT support
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"Upserts are not supported on {dialect}")
    return insert(model)
