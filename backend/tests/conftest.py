"""Pytest configuration and fixtures for AzPulse tests."""

import json
import os
import time
from datetime import timedelta
from typing import Any, AsyncGenerator, Callable

from cryptography.fernet import Fernet

# Settings are read at import time; configure the environment first
os.environ["APP_ENV"] = "test"
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-with-enough-length")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./azpulse-test.db")

import httpx  # noqa: E402
import pytest  # noqa: E402
from azure.core.credentials import AccessToken as AzureAccessToken  # noqa: E402
from azure.core.exceptions import ClientAuthenticationError  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

import azpulse.models  # noqa: E402,F401
from azpulse.core.authz import Capability, Principal  # noqa: E402
from azpulse.core.database import Base  # noqa: E402
from azpulse.core.security import create_access_token  # noqa: E402
from azpulse.crud import tenant as tenant_crud  # noqa: E402
from azpulse.models.tenant import Tenant  # noqa: E402
from azpulse.providers.azure_gateway import AzureGateway, RetryPolicy  # noqa: E402
from azpulse.providers.token_broker import TokenBroker  # noqa: E402
from azpulse.schemas.tenant import AzureCredentials, TenantCreate  # noqa: E402

SUBSCRIPTION_ID = "abcdef12-3456-7890-abcd-ef1234567890"
MANAGEMENT = "https://management.azure.com"


class FakeCredential:
    """Stands in for azure-identity's ClientSecretCredential."""

    def __init__(self, credentials: AzureCredentials, rejected: set[str], calls: list[str]) -> None:
        self.credentials = credentials
        self.rejected = rejected
        self.calls = calls

    async def get_token(self, scope: str) -> AzureAccessToken:
        self.calls.append(scope)
        if self.credentials.client_secret in self.rejected:
            raise ClientAuthenticationError(message="AADSTS7000215: Invalid client secret provided")
        return AzureAccessToken(f"token-{self.credentials.client_id}-{len(self.calls)}", int(time.time()) + 3600)

    async def close(self) -> None:
        pass


class FakeCredentialFactory:
    """Builds FakeCredentials and records every exchange."""

    def __init__(self) -> None:
        self.rejected: set[str] = set()
        self.calls: list[str] = []

    def __call__(self, credentials: AzureCredentials) -> FakeCredential:
        return FakeCredential(credentials, self.rejected, self.calls)


class AzureStub:
    """
    Routes httpx requests to canned Azure responses.

    Handlers are keyed by URL path suffix; unknown paths answer 404.
    """

    def __init__(self) -> None:
        self.routes: dict[str, Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: list[httpx.Request] = []

    def json(self, suffix: str, body: Any, status_code: int = 200) -> None:
        self.routes[suffix] = lambda request: httpx.Response(status_code, json=body)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        for suffix, route in sorted(self.routes.items(), key=lambda item: -len(item[0])):
            if path.endswith(suffix):
                return route(request)
        return httpx.Response(404, json={"error": {"code": "NotFound", "message": f"No route for {path}"}})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def gateway_factory(self) -> Callable[..., AzureGateway]:
        def factory(token_provider: Any, cancellation: Any) -> AzureGateway:
            return AzureGateway(
                token_provider,
                client=self.client(),
                cancellation=cancellation,
                retry=RetryPolicy(max_retries=2, base_delay=0.01, max_delay=0.01, jitter=False),
                sleep=_no_sleep,
            )

        return factory


async def _no_sleep(seconds: float) -> None:
    return None


def make_credentials(client_secret: str = "valid-secret", suffix: str = "1") -> AzureCredentials:
    return AzureCredentials(
        tenant_id=f"12345678-1234-1234-1234-12345678900{suffix}",
        client_id=f"87654321-4321-4321-4321-abc98765432{suffix}",
        client_secret=client_secret,
        subscription_id=SUBSCRIPTION_ID,
    )


def bearer(capabilities: list[Capability] | None = None, subject: str = "ops@example.com") -> dict[str, str]:
    caps = [c.value for c in (capabilities if capabilities is not None else list(Capability))]
    token = create_access_token({"sub": subject, "capabilities": caps}, expires_delta=timedelta(minutes=30))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def engine(tmp_path):
    """File backed SQLite engine so several sessions see each other's commits."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'azpulse.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def principal() -> Principal:
    """Caller holding every capability."""
    return Principal(subject="ops@example.com", capabilities=frozenset(Capability))


@pytest.fixture
def read_only_principal() -> Principal:
    return Principal(
        subject="viewer@example.com",
        capabilities=frozenset({Capability.TENANTS_READ, Capability.SYNC_READ, Capability.ANALYTICS_READ}),
    )


@pytest.fixture
def credential_factory() -> FakeCredentialFactory:
    return FakeCredentialFactory()


@pytest.fixture
def token_broker(credential_factory: FakeCredentialFactory) -> TokenBroker:
    return TokenBroker(credential_factory=credential_factory, timeout_seconds=5)


@pytest.fixture
def azure() -> AzureStub:
    return AzureStub()


@pytest.fixture
async def tenant(db_session: AsyncSession) -> Tenant:
    """Enabled tenant with valid credentials and default schedules."""
    return await tenant_crud.create_tenant(
        db_session,
        TenantCreate(display_name="Contoso Production", credentials=make_credentials()),
    )


@pytest.fixture
def mock_azure_credentials() -> dict:
    """Azure credentials payload as sent by API clients."""
    return json.loads(make_credentials().model_dump_json())


class FakeDispatcher:
    """Records enqueued runs instead of talking to the broker."""

    def __init__(self) -> None:
        self.enqueued: list[tuple] = []
        self.error: Exception | None = None

    def enqueue(self, tenant_id, kind, trigger, window=None) -> str:
        if self.error is not None:
            raise self.error
        self.enqueued.append((tenant_id, kind, trigger, window))
        return f"task-{len(self.enqueued)}"


@pytest.fixture
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture
async def async_client(
    session_factory, token_broker: TokenBroker, azure: AzureStub, dispatcher: FakeDispatcher
) -> AsyncGenerator[httpx.AsyncClient, None]:
    """API client wired to the test database, fake Azure and fake queue."""
    from azpulse.api import deps
    from azpulse.main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[deps.get_db] = override_get_db
    app.dependency_overrides[deps.get_session_factory] = lambda: session_factory
    app.dependency_overrides[deps.get_token_broker] = lambda: token_broker
    app.dependency_overrides[deps.get_gateway_factory] = azure.gateway_factory
    app.dependency_overrides[deps.get_dispatcher] = lambda: dispatcher

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
