"""Runs one (tenant, kind) sync through the running -> success/failed state machine."""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable

import sentry_sdk
import structlog

from azpulse.core.config import settings
from azpulse.core.database import AsyncSessionLocal, utcnow
from azpulse.core.errors import AuthError, RemoteError, SyncCancelledError, WriteError
from azpulse.core.security import CredentialDecryptionError
from azpulse.crud import sync_log as sync_log_crud
from azpulse.crud import tenant as tenant_crud
from azpulse.models.sync import SyncErrorKind, SyncKind, SyncStatus, SyncTrigger
from azpulse.providers.azure_gateway import AzureGateway, TokenProvider
from azpulse.providers.token_broker import TokenBroker
from azpulse.schemas.tenant import AzureCredentials
from azpulse.sync.cancellation import CancellationToken
from azpulse.sync.pipelines import PIPELINES, PipelineContext, PipelineProgress, SessionFactory

logger = structlog.get_logger(__name__)

GatewayFactory = Callable[[TokenProvider, CancellationToken], AzureGateway]


def default_gateway_factory(token_provider: TokenProvider, cancellation: CancellationToken) -> AzureGateway:
    return AzureGateway(token_provider, cancellation=cancellation)


@dataclass
class SyncRunResult:
    """Outcome of one run_job call."""

    tenant_id: uuid.UUID
    sync_kind: SyncKind
    status: SyncStatus | None = None
    log_id: uuid.UUID | None = None
    records_processed: int = 0
    warning_count: int = 0
    error_kind: SyncErrorKind | None = None
    error_message: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def skipped(self) -> bool:
        """True when nothing ran (tenant missing or disabled)."""
        return self.status is None


class SyncOrchestrator:
    """
    Executes sync jobs for any tenant and kind.

    Entering ``running`` is an atomic insert guarded by the partial unique
    index on running log rows, so at most one run per (tenant, kind) is
    active across all workers. Every failure inside a run is classified,
    recorded on the log row and kept from escaping; other tenants and
    kinds are unaffected.
    """

    def __init__(
        self,
        session_factory: SessionFactory = AsyncSessionLocal,
        token_broker: TokenBroker | None = None,
        gateway_factory: GatewayFactory = default_gateway_factory,
        max_concurrency: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._broker = token_broker or TokenBroker()
        self._gateway_factory = gateway_factory
        self._slots = asyncio.Semaphore(max_concurrency or settings.SYNC_MAX_CONCURRENCY)
        self._active: dict[tuple[uuid.UUID, SyncKind], CancellationToken] = {}

    async def run_job(
        self,
        tenant_id: uuid.UUID,
        kind: SyncKind,
        trigger: SyncTrigger = SyncTrigger.SCHEDULED,
        window: tuple[date, date] | None = None,
    ) -> SyncRunResult:
        """
        Run one sync job to completion.

        Args:
            tenant_id: Tenant to sync
            kind: Pipeline to run
            trigger: Manual or scheduled
            window: Explicit cost backfill window (costs only)

        Returns:
            SyncRunResult describing the terminal state

        Raises:
            SyncAlreadyRunningError: If the same (tenant, kind) is running
        """
        result = SyncRunResult(tenant_id=tenant_id, sync_kind=kind)

        async with self._session_factory() as db:
            tenant = await tenant_crud.get_tenant(db, tenant_id)
            if tenant is None or not tenant.is_enabled:
                logger.info(
                    "sync.tenant_skipped",
                    tenant_id=str(tenant_id),
                    kind=kind.value,
                    reason="missing" if tenant is None else "disabled",
                )
                return result
            subscription_id = tenant.subscription_id
            workspace_id = tenant.log_analytics_workspace_id

            entry = await sync_log_crud.start_entry(db, tenant_id, kind, trigger)
        result.log_id = entry.id

        log = logger.bind(tenant_id=str(tenant_id), kind=kind.value, log_id=str(entry.id))
        cancellation = CancellationToken(poll=lambda: self._stop_reason(entry.id))
        self._active[(tenant_id, kind)] = cancellation
        progress = PipelineProgress()

        log.info("sync.job_started", trigger=trigger.value)
        try:
            async with self._slots:
                credentials = await self._load_credentials(tenant_id)

                async def token_provider(scope: str) -> str:
                    token = await self._broker.get_token(str(tenant_id), credentials, scope)
                    return token.token

                async with self._gateway_factory(token_provider, cancellation) as gateway:
                    ctx = PipelineContext(
                        tenant_id=tenant_id,
                        subscription_id=subscription_id,
                        gateway=gateway,
                        session_factory=self._session_factory,
                        now=utcnow(),
                        workspace_id=workspace_id,
                        window=window,
                        progress=progress,
                    )
                    await PIPELINES[kind](ctx)
        except AuthError as e:
            await self._fail(result, progress, SyncErrorKind.AUTH, str(e))
            async with self._session_factory() as db:
                await tenant_crud.mark_needs_revalidation(db, tenant_id)
            self._broker.invalidate(str(tenant_id))
            log.warning("sync.auth_failed", error=str(e))
        except SyncCancelledError as e:
            await self._fail(result, progress, SyncErrorKind.CANCELLED, str(e))
            log.info("sync.job_cancelled", reason=str(e))
        except RemoteError as e:
            await self._fail(result, progress, SyncErrorKind(e.kind), str(e))
            log.warning("sync.remote_failed", error=str(e), status_code=e.status_code, transient=e.transient)
        except WriteError as e:
            error_kind = SyncErrorKind.TRANSIENT if e.transient else SyncErrorKind.WRITE
            await self._fail(result, progress, error_kind, str(e))
            log.error("sync.write_failed", error=str(e))
        except asyncio.CancelledError:
            await asyncio.shield(
                self._fail(result, progress, SyncErrorKind.CANCELLED, "Sync task was cancelled")
            )
            log.info("sync.task_cancelled")
            raise
        except Exception as e:
            await self._fail(result, progress, SyncErrorKind.INTERNAL, f"{e.__class__.__name__}: {e}")
            log.exception("sync.job_crashed")
            sentry_sdk.capture_exception(e)
        else:
            await self._complete(result, progress)
            log.info(
                "sync.job_completed",
                status=result.status.value if result.status else None,
                records_processed=result.records_processed,
                warning_count=result.warning_count,
            )
        finally:
            self._active.pop((tenant_id, kind), None)

        return result

    def cancel(self, tenant_id: uuid.UUID, kind: SyncKind, reason: str = "Cancelled by request") -> bool:
        """
        Cancel a run executing in this process at its next gateway call.

        Returns:
            False if no such run is active here
        """
        token = self._active.get((tenant_id, kind))
        if token is None:
            return False
        token.cancel(reason)
        return True

    async def _stop_reason(self, entry_id: uuid.UUID) -> str | None:
        async with self._session_factory() as db:
            return await sync_log_crud.get_stop_reason(db, entry_id)

    async def _load_credentials(self, tenant_id: uuid.UUID) -> AzureCredentials:
        async with self._session_factory() as db:
            tenant = await tenant_crud.get_tenant(db, tenant_id)
            if tenant is None:
                raise AuthError(f"Tenant {tenant_id} was deleted")
            try:
                return await tenant_crud.load_credentials(db, tenant)
            except (LookupError, CredentialDecryptionError) as e:
                raise AuthError(f"Stored credentials unusable: {e}") from e

    async def _complete(self, result: SyncRunResult, progress: PipelineProgress) -> None:
        async with self._session_factory() as db:
            completed = await sync_log_crud.complete_entry(
                db,
                result.log_id,
                records_processed=progress.records_processed,
                warning_count=progress.warning_count,
                details=_details(progress),
            )
            if completed:
                await tenant_crud.mark_synced(db, result.tenant_id)

        self._fill(result, progress)
        if completed:
            result.status = SyncStatus.SUCCESS
        else:
            # Reaped as stale while running
            result.status = SyncStatus.FAILED
            result.error_kind = SyncErrorKind.TRANSIENT
            result.error_message = "Run finished after it was marked as exceeding maximum runtime"

    async def _fail(
        self,
        result: SyncRunResult,
        progress: PipelineProgress,
        error_kind: SyncErrorKind,
        message: str,
    ) -> None:
        async with self._session_factory() as db:
            failed = await sync_log_crud.fail_entry(
                db,
                result.log_id,
                error_kind=error_kind,
                error_message=message,
                records_processed=progress.records_processed,
                warning_count=progress.warning_count,
                details=_details(progress),
            )
            if not failed:
                # Already terminal, usually reaped as stale; report what was recorded
                entry = await sync_log_crud.get_entry(db, result.log_id)
                if entry is not None and entry.error_kind:
                    error_kind = SyncErrorKind(entry.error_kind)
                    message = entry.error_message or message
        self._fill(result, progress)
        result.status = SyncStatus.FAILED
        result.error_kind = error_kind
        result.error_message = message

    @staticmethod
    def _fill(result: SyncRunResult, progress: PipelineProgress) -> None:
        result.records_processed = progress.records_processed
        result.warning_count = progress.warning_count
        result.details = _details(progress)


def _details(progress: PipelineProgress) -> dict[str, Any]:
    details: dict[str, Any] = dict(progress.details)
    if progress.warnings:
        # First few reasons are enough to diagnose a bad batch
        details["warnings"] = progress.warnings[:20]
    return details
