"""Per-tenant bearer token cache with single-flight refresh."""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import structlog
from azure.core.exceptions import ClientAuthenticationError, HttpResponseError, ServiceRequestError
from azure.identity.aio import ClientSecretCredential

from azpulse.core.config import settings
from azpulse.core.database import utcnow
from azpulse.core.errors import AuthError, RemoteError
from azpulse.schemas.tenant import AzureCredentials

logger = structlog.get_logger(__name__)

MANAGEMENT_SCOPE = "https://management.azure.com/.default"
LOG_ANALYTICS_SCOPE = "https://api.loganalytics.io/.default"


@dataclass(frozen=True)
class AccessToken:
    """Bearer token and its expiry (naive UTC)."""

    token: str
    expires_at: datetime

    def is_fresh(self, margin: timedelta, now: datetime) -> bool:
        return self.expires_at - margin > now


def _client_secret_credential(credentials: AzureCredentials) -> ClientSecretCredential:
    return ClientSecretCredential(
        tenant_id=credentials.tenant_id,
        client_id=credentials.client_id,
        client_secret=credentials.client_secret,
    )


class TokenBroker:
    """
    Exchanges service principal credentials for bearer tokens.

    Tokens are cached per (tenant key, scope) and reused until they are
    within the refresh margin of expiry. Concurrent callers for the same key
    share a single in-flight exchange.
    """

    def __init__(
        self,
        credential_factory: Callable[[AzureCredentials], Any] | None = None,
        refresh_margin_seconds: int | None = None,
        timeout_seconds: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """
        Initialize the broker.

        Args:
            credential_factory: Builds an async credential exposing
                ``get_token(scope)`` and ``close()``. Defaults to
                azure-identity's ClientSecretCredential.
            refresh_margin_seconds: Refresh tokens this close to expiry
            timeout_seconds: Upper bound for one credential exchange
            clock: Source of the current naive UTC time
        """
        self._credential_factory = credential_factory or _client_secret_credential
        self._margin = timedelta(
            seconds=refresh_margin_seconds
            if refresh_margin_seconds is not None
            else settings.TOKEN_REFRESH_MARGIN_SECONDS
        )
        self._timeout = timeout_seconds or settings.SYNC_CALL_TIMEOUT_SECONDS
        self._clock = clock
        self._cache: dict[tuple[str, str], AccessToken] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    async def get_token(
        self,
        tenant_key: str,
        credentials: AzureCredentials,
        scope: str = MANAGEMENT_SCOPE,
    ) -> AccessToken:
        """
        Return a cached token or exchange credentials for a new one.

        Args:
            tenant_key: Cache key for the tenant (its internal id)
            credentials: Service principal credentials
            scope: OAuth scope

        Returns:
            AccessToken valid for at least the refresh margin

        Raises:
            AuthError: If the credentials are rejected
            RemoteError: If the token endpoint is unreachable
        """
        key = (tenant_key, scope)
        cached = self._cache.get(key)
        if cached is not None and cached.is_fresh(self._margin, self._clock()):
            return cached

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            # Another caller may have refreshed while we waited
            cached = self._cache.get(key)
            if cached is not None and cached.is_fresh(self._margin, self._clock()):
                return cached

            token = await self.exchange(credentials, scope)
            self._cache[key] = token
            logger.info(
                "token.refreshed",
                tenant=tenant_key,
                scope=scope,
                expires_at=token.expires_at.isoformat(),
            )
            return token

    async def exchange(self, credentials: AzureCredentials, scope: str = MANAGEMENT_SCOPE) -> AccessToken:
        """
        Perform one uncached client-credentials exchange.

        Args:
            credentials: Service principal credentials
            scope: OAuth scope

        Returns:
            Fresh AccessToken

        Raises:
            AuthError: If the credentials are rejected
            RemoteError: If the exchange timed out or the endpoint failed
        """
        credential = self._credential_factory(credentials)
        try:
            access = await asyncio.wait_for(credential.get_token(scope), self._timeout)
        except ClientAuthenticationError as e:
            logger.warning("token.exchange_rejected", directory=credentials.tenant_id, error=str(e))
            raise AuthError(
                f"Authentication failed for application {credentials.client_id}: {e.message}"
            ) from e
        except asyncio.TimeoutError as e:
            raise RemoteError("Token request timed out", transient=True) from e
        except ServiceRequestError as e:
            raise RemoteError(f"Token endpoint unreachable: {e}", transient=True) from e
        except HttpResponseError as e:
            status = e.status_code or 0
            raise RemoteError(
                f"Token endpoint error (status {status}): {e.message}",
                transient=status == 429 or status >= 500,
                status_code=status,
            ) from e
        finally:
            await credential.close()

        expires_at = datetime.fromtimestamp(access.expires_on, tz=timezone.utc).replace(tzinfo=None)
        return AccessToken(token=access.token, expires_at=expires_at)

    def invalidate(self, tenant_key: str) -> None:
        """Drop all cached tokens of a tenant (credential rotation or revocation)."""
        for key in [k for k in self._cache if k[0] == tenant_key]:
            del self._cache[key]
        # Held locks stay so waiters still share the in-flight exchange
        for key in [k for k, lock in self._locks.items() if k[0] == tenant_key and not lock.locked()]:
            del self._locks[key]
