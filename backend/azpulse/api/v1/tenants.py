"""Tenant configuration API endpoints."""

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from azpulse.api.deps import get_db, get_gateway_factory, get_principal, get_token_broker
from azpulse.core.authz import Principal
from azpulse.providers.token_broker import TokenBroker
from azpulse.schemas.tenant import (
    AzureCredentials,
    ConnectionTestResult,
    ResourceFetchSummary,
    TenantCreate,
    TenantUpdate,
    TenantWithSchedules,
)
from azpulse.services import tenant_service
from azpulse.sync.orchestrator import GatewayFactory

router = APIRouter()


@router.get("/", response_model=list[TenantWithSchedules])
async def list_tenants(
    db: Annotated[AsyncSession, Depends(get_db)],
    principal: Annotated[Principal, Depends(get_principal)],
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
) -> list[TenantWithSchedules]:
    """List configured tenants with their sync schedules."""
    return await tenant_service.list_tenants(db, principal, skip=skip, limit=limit)


@router.post("/", response_model=TenantWithSchedules, status_code=status.HTTP_201_CREATED)
async def create_tenant(
    tenant_in: TenantCreate,
    db: Annotated[AsyncSession, Depends(get_db)],
    principal: Annotated[Principal, Depends(get_principal)],
) -> TenantWithSchedules:
    """
    Register a new tenant.

    Credentials are encrypted before storage and never returned. Run
    ``/test-connection`` first to validate them.

    Args:
        tenant_in: Tenant configuration
        db: Database session
        principal: Caller

    Returns:
        Created tenant (without credentials)
    """
    return await tenant_service.create_tenant(db, principal, tenant_in)


@router.post("/test-connection", response_model=ConnectionTestResult)
async def test_connection(
    credentials: AzureCredentials,
    principal: Annotated[Principal, Depends(get_principal)],
    broker: Annotated[TokenBroker, Depends(get_token_broker)],
    gateway_factory: Annotated[GatewayFactory, Depends(get_gateway_factory)],
) -> ConnectionTestResult:
    """Validate credentials and list the subscriptions they can read. Nothing is stored."""
    return await tenant_service.test_connection(principal, credentials, broker, gateway_factory)


@router.post("/test-fetch-resources", response_model=ResourceFetchSummary)
async def test_fetch_resources(
    credentials: AzureCredentials,
    principal: Annotated[Principal, Depends(get_principal)],
    broker: Annotated[TokenBroker, Depends(get_token_broker)],
    gateway_factory: Annotated[GatewayFactory, Depends(get_gateway_factory)],
) -> ResourceFetchSummary:
    """Fetch the resource inventory without storing it and return a summary."""
    return await tenant_service.test_fetch_resources(principal, credentials, broker, gateway_factory)


@router.get("/{tenant_id}", response_model=TenantWithSchedules)
async def get_tenant(
    tenant_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    principal: Annotated[Principal, Depends(get_principal)],
) -> TenantWithSchedules:
    return await tenant_service.get_tenant(db, principal, tenant_id)


@router.patch("/{tenant_id}", response_model=TenantWithSchedules)
async def update_tenant(
    tenant_id: uuid.UUID,
    tenant_in: TenantUpdate,
    db: Annotated[AsyncSession, Depends(get_db)],
    principal: Annotated[Principal, Depends(get_principal)],
    broker: Annotated[TokenBroker, Depends(get_token_broker)],
) -> TenantWithSchedules:
    """Update a tenant. Supplying credentials rotates the stored secret."""
    return await tenant_service.update_tenant(db, principal, tenant_id, tenant_in, broker=broker)
