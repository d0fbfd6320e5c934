"""CRUD operations for tenants and the credential store."""

import json
import uuid

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from azpulse.core.database import utcnow
from azpulse.core.security import credential_encryption
from azpulse.crud import sync_job as sync_job_crud
from azpulse.models.tenant import Tenant, TenantSecret
from azpulse.schemas.tenant import AzureCredentials, TenantCreate, TenantUpdate


async def store_secret(db: AsyncSession, credentials: AzureCredentials) -> TenantSecret:
    """
    Encrypt and persist service principal credentials.

    Args:
        db: Database session
        credentials: Plaintext credentials

    Returns:
        New TenantSecret (not yet committed)
    """
    secret = TenantSecret(
        secret_encrypted=credential_encryption.encrypt(credentials.model_dump_json()),
    )
    db.add(secret)
    await db.flush()
    return secret


async def load_credentials(db: AsyncSession, tenant: Tenant) -> AzureCredentials:
    """
    Decrypt the credentials a tenant references.

    Args:
        db: Database session
        tenant: Tenant whose secret to load

    Returns:
        Plaintext AzureCredentials

    Raises:
        LookupError: If the referenced secret row is missing
    """
    result = await db.execute(select(TenantSecret).where(TenantSecret.id == tenant.secret_ref))
    secret = result.scalar_one_or_none()
    if secret is None:
        raise LookupError(f"Secret {tenant.secret_ref} for tenant {tenant.id} not found")
    return AzureCredentials(**json.loads(credential_encryption.decrypt(secret.secret_encrypted)))


async def rotate_secret(db: AsyncSession, tenant: Tenant, credentials: AzureCredentials) -> None:
    """
    Replace a tenant's credentials in place and clear the re-validation flag.

    Args:
        db: Database session
        tenant: Tenant to update
        credentials: New plaintext credentials
    """
    await db.execute(
        update(TenantSecret)
        .where(TenantSecret.id == tenant.secret_ref)
        .values(
            secret_encrypted=credential_encryption.encrypt(credentials.model_dump_json()),
            rotated_at=utcnow(),
        )
    )
    tenant.directory_id = credentials.tenant_id
    tenant.application_id = credentials.client_id
    tenant.subscription_id = credentials.subscription_id
    tenant.needs_revalidation = False


async def get_tenant(db: AsyncSession, tenant_id: uuid.UUID) -> Tenant | None:
    """
    Get tenant by ID.

    Args:
        db: Database session
        tenant_id: Tenant UUID

    Returns:
        Tenant or None if not found
    """
    result = await db.execute(select(Tenant).where(Tenant.id == tenant_id))
    return result.scalar_one_or_none()


async def list_tenants(
    db: AsyncSession,
    enabled_only: bool = False,
    skip: int = 0,
    limit: int = 100,
) -> list[Tenant]:
    """
    List tenants ordered by display name.

    Args:
        db: Database session
        enabled_only: Only return tenants the orchestrator processes
        skip: Number of records to skip
        limit: Maximum number of records to return

    Returns:
        List of Tenant objects
    """
    query = select(Tenant)
    if enabled_only:
        query = query.where(Tenant.is_enabled.is_(True))
    result = await db.execute(query.order_by(Tenant.display_name).offset(skip).limit(limit))
    return list(result.scalars().all())


async def create_tenant(db: AsyncSession, tenant_in: TenantCreate) -> Tenant:
    """
    Create a tenant, its encrypted secret and one sync job per kind.

    Args:
        db: Database session
        tenant_in: Tenant creation schema

    Returns:
        Created Tenant
    """
    secret = await store_secret(db, tenant_in.credentials)
    tenant = Tenant(
        display_name=tenant_in.display_name,
        directory_id=tenant_in.credentials.tenant_id,
        application_id=tenant_in.credentials.client_id,
        subscription_id=tenant_in.credentials.subscription_id,
        secret_ref=secret.id,
        log_analytics_workspace_id=tenant_in.log_analytics_workspace_id,
        is_enabled=tenant_in.is_enabled,
    )
    db.add(tenant)
    await db.flush()

    await sync_job_crud.create_default_jobs(db, tenant.id)
    if tenant_in.schedules:
        await sync_job_crud.apply_schedules(db, tenant.id, tenant_in.schedules)

    await db.commit()
    await db.refresh(tenant)
    return tenant


async def update_tenant(db: AsyncSession, tenant: Tenant, tenant_in: TenantUpdate) -> Tenant:
    """
    Update a tenant. Credentials, when supplied, are rotated.

    Args:
        db: Database session
        tenant: Existing tenant
        tenant_in: Fields to change

    Returns:
        Updated Tenant
    """
    changes = tenant_in.model_dump(exclude_unset=True, exclude={"credentials", "schedules"})
    for field, value in changes.items():
        setattr(tenant, field, value)

    if tenant_in.credentials is not None:
        await rotate_secret(db, tenant, tenant_in.credentials)
    if tenant_in.schedules:
        await sync_job_crud.apply_schedules(db, tenant.id, tenant_in.schedules)

    await db.commit()
    await db.refresh(tenant)
    return tenant


async def mark_needs_revalidation(db: AsyncSession, tenant_id: uuid.UUID) -> None:
    """Flag a tenant whose credentials were rejected."""
    await db.execute(update(Tenant).where(Tenant.id == tenant_id).values(needs_revalidation=True))
    await db.commit()


async def mark_synced(db: AsyncSession, tenant_id: uuid.UUID) -> None:
    """Record a successful sync on the tenant."""
    await db.execute(update(Tenant).where(Tenant.id == tenant_id).values(last_sync_at=utcnow()))
    await db.commit()


async def mark_validated(db: AsyncSession, tenant_id: uuid.UUID) -> None:
    """Record that the tenant's credentials were just exchanged successfully."""
    await db.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id)
        .values(last_validated_at=utcnow(), needs_revalidation=False)
    )
    await db.commit()
