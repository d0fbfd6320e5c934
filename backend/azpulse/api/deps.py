"""FastAPI dependencies shared by the v1 routers."""

from functools import lru_cache
from typing import Annotated, Callable

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from azpulse.core.authz import Principal, principal_from_claims
from azpulse.core.database import AsyncSessionLocal, get_db
from azpulse.core.errors import AuthorizationError
from azpulse.core.security import decode_token
from azpulse.providers.token_broker import TokenBroker
from azpulse.services.sync_service import SyncDispatcher
from azpulse.sync.orchestrator import GatewayFactory, default_gateway_factory

security = HTTPBearer(auto_error=False)

__all__ = [
    "get_db",
    "get_principal",
    "get_dispatcher",
    "get_token_broker",
    "get_gateway_factory",
    "get_session_factory",
]


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_principal(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> Principal:
    """
    Resolve the caller from the bearer token.

    Raises:
        HTTPException: 401 if the token is missing, invalid or has no subject
    """
    if credentials is None:
        raise _unauthorized("Not authenticated")

    payload = decode_token(credentials.credentials)
    if payload is None:
        raise _unauthorized("Invalid authentication credentials")

    try:
        return principal_from_claims(payload)
    except AuthorizationError:
        raise _unauthorized("Invalid token payload")


def get_dispatcher() -> SyncDispatcher:
    # Imported here so the API process only loads Celery when it queues work
    from azpulse.workers.tasks import CeleryDispatcher

    return CeleryDispatcher()


@lru_cache
def get_token_broker() -> TokenBroker:
    """Process-wide broker; rotating credentials invalidates its cache entry."""
    return TokenBroker()


def get_gateway_factory() -> GatewayFactory:
    return default_gateway_factory


def get_session_factory() -> Callable[[], AsyncSession]:
    return AsyncSessionLocal
