"""Tenant configuration and credential validation operations."""

import uuid
from collections import Counter
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from azpulse.core.authz import Capability, Principal, ensure_capability
from azpulse.core.errors import AuthError, RemoteError, TenantNotFoundError
from azpulse.crud import sync_job as sync_job_crud
from azpulse.crud import tenant as tenant_crud
from azpulse.models.tenant import Tenant
from azpulse.providers.token_broker import MANAGEMENT_SCOPE, TokenBroker
from azpulse.schemas.tenant import (
    AzureCredentials,
    ConnectionTestResult,
    ResourceFetchSummary,
    SubscriptionInfo,
    SyncSchedule,
    TenantCreate,
    TenantUpdate,
    TenantWithSchedules,
)
from azpulse.sync.cancellation import CancellationToken
from azpulse.sync.orchestrator import GatewayFactory, default_gateway_factory

logger = structlog.get_logger(__name__)

SAMPLE_SIZE = 20


async def _with_schedules(db: AsyncSession, tenant: Tenant) -> TenantWithSchedules:
    jobs = await sync_job_crud.get_jobs_for_tenant(db, tenant.id)
    result = TenantWithSchedules.model_validate(tenant)
    result.schedules = [SyncSchedule.model_validate(job) for job in jobs]
    return result


async def list_tenants(
    db: AsyncSession,
    principal: Principal,
    skip: int = 0,
    limit: int = 100,
) -> list[TenantWithSchedules]:
    """List configured tenants with their sync schedules."""
    ensure_capability(principal, Capability.TENANTS_READ)
    tenants = await tenant_crud.list_tenants(db, skip=skip, limit=limit)
    return [await _with_schedules(db, tenant) for tenant in tenants]


async def get_tenant(db: AsyncSession, principal: Principal, tenant_id: uuid.UUID) -> TenantWithSchedules:
    ensure_capability(principal, Capability.TENANTS_READ)
    tenant = await tenant_crud.get_tenant(db, tenant_id)
    if tenant is None:
        raise TenantNotFoundError(f"Tenant {tenant_id} not found")
    return await _with_schedules(db, tenant)


async def create_tenant(db: AsyncSession, principal: Principal, tenant_in: TenantCreate) -> TenantWithSchedules:
    """
    Register a tenant. Credentials are encrypted before they are stored.

    Args:
        db: Database session
        principal: Caller
        tenant_in: Tenant configuration including credentials

    Returns:
        Created tenant with its sync schedules
    """
    ensure_capability(principal, Capability.TENANTS_WRITE)
    tenant = await tenant_crud.create_tenant(db, tenant_in)
    logger.info("tenant.created", tenant_id=str(tenant.id), created_by=principal.subject)
    return await _with_schedules(db, tenant)


async def update_tenant(
    db: AsyncSession,
    principal: Principal,
    tenant_id: uuid.UUID,
    tenant_in: TenantUpdate,
    broker: TokenBroker | None = None,
) -> TenantWithSchedules:
    """
    Update a tenant's configuration, rotating credentials when supplied.

    Raises:
        TenantNotFoundError: If the tenant does not exist
    """
    ensure_capability(principal, Capability.TENANTS_WRITE)
    tenant = await tenant_crud.get_tenant(db, tenant_id)
    if tenant is None:
        raise TenantNotFoundError(f"Tenant {tenant_id} not found")

    tenant = await tenant_crud.update_tenant(db, tenant, tenant_in)
    if tenant_in.credentials is not None and broker is not None:
        broker.invalidate(str(tenant_id))
    logger.info(
        "tenant.updated",
        tenant_id=str(tenant_id),
        updated_by=principal.subject,
        fields=sorted(tenant_in.model_dump(exclude_unset=True, exclude={"credentials"})),
        credentials_rotated=tenant_in.credentials is not None,
    )
    return await _with_schedules(db, tenant)


async def _gateway_for(credentials: AzureCredentials, broker: TokenBroker, gateway_factory: GatewayFactory) -> Any:
    # Uncached exchange; rejected credentials raise AuthError here
    token = await broker.exchange(credentials, MANAGEMENT_SCOPE)

    async def token_provider(scope: str) -> str:
        if scope == MANAGEMENT_SCOPE:
            return token.token
        return (await broker.exchange(credentials, scope)).token

    return gateway_factory(token_provider, CancellationToken())


async def test_connection(
    principal: Principal,
    credentials: AzureCredentials,
    broker: TokenBroker,
    gateway_factory: GatewayFactory = default_gateway_factory,
) -> ConnectionTestResult:
    """
    Check credentials by listing the subscriptions they can read.

    Nothing is written to the database.

    Args:
        principal: Caller
        credentials: Credentials to validate
        broker: Token broker used for the uncached exchange
        gateway_factory: Builds the gateway

    Returns:
        ConnectionTestResult; rejected credentials give success=False with the reason
    """
    ensure_capability(principal, Capability.TENANTS_WRITE)
    try:
        async with await _gateway_for(credentials, broker, gateway_factory) as gateway:
            subscriptions = await gateway.list_subscriptions()
    except AuthError as e:
        return ConnectionTestResult(success=False, error=f"Authentication failed: {e}")
    except RemoteError as e:
        return ConnectionTestResult(success=False, error=str(e))

    found = [
        SubscriptionInfo(id=s.subscription_id, name=s.display_name, state=s.state)
        for s in subscriptions.records
    ]
    if not any(s.id.lower() == credentials.subscription_id.lower() for s in found):
        return ConnectionTestResult(
            success=False,
            subscriptions=found,
            error=(
                f"Subscription not accessible: {credentials.subscription_id}. "
                f"Ensure the service principal has the 'Reader' role on it."
            ),
        )
    return ConnectionTestResult(success=True, subscriptions=found)


async def test_fetch_resources(
    principal: Principal,
    credentials: AzureCredentials,
    broker: TokenBroker,
    gateway_factory: GatewayFactory = default_gateway_factory,
) -> ResourceFetchSummary:
    """
    Dry run of a resource sync: fetch the inventory and summarize it.

    Nothing is written to the database.

    Raises:
        AuthError: If the credentials are rejected
        RemoteError: If the provider call fails
    """
    ensure_capability(principal, Capability.TENANTS_WRITE)
    async with await _gateway_for(credentials, broker, gateway_factory) as gateway:
        groups = await gateway.list_resource_groups(credentials.subscription_id)
        resources = await gateway.list_resources(credentials.subscription_id)

    by_type = Counter(r.type for r in resources.records)
    by_group = Counter(r.resource_group for r in resources.records)
    return ResourceFetchSummary(
        subscription_id=credentials.subscription_id,
        total_resources=len(resources.records),
        resource_groups=len(groups.records),
        by_type=dict(by_type.most_common()),
        by_resource_group=dict(by_group.most_common()),
        sample_resources=[
            {
                "name": r.name,
                "type": r.type,
                "resource_group": r.resource_group,
                "location": r.location,
            }
            for r in resources.records[:SAMPLE_SIZE]
        ],
        skipped_records=groups.warning_count + resources.warning_count,
    )
