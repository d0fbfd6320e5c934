"""Fetch-then-upsert pipelines, one per sync kind."""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from azpulse.core.config import settings
from azpulse.models.resource import CachedResource
from azpulse.models.sync import SyncKind
from azpulse.providers.azure_gateway import (
    RESOURCE_METRICS,
    SQL_DATABASE_TYPE,
    AzureGateway,
    metric_interval,
)
from azpulse.schemas.records import ParsedBatch
from azpulse.writers.cost import CostWriter
from azpulse.writers.metrics import MetricsWriter
from azpulse.writers.resource import ResourceWriter
from azpulse.writers.sql_insight import SqlInsightWriter

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AsyncSession]

# Azure lists the logical master database next to user databases
SYSTEM_DATABASES = frozenset({"master"})


@dataclass
class PipelineProgress:
    """Counts accumulated while a pipeline runs; kept on failure too."""

    records_processed: int = 0
    warnings: list[str] = field(default_factory=list)
    details: dict[str, int] = field(default_factory=dict)

    @property
    def warning_count(self) -> int:
        return len(self.warnings)

    def record(self, step: str, written: int, batch: ParsedBatch[Any] | None = None) -> None:
        self.records_processed += written
        self.details[step] = self.details.get(step, 0) + written
        if batch is not None:
            self.warnings.extend(batch.skipped)

    def warn(self, message: str) -> None:
        self.warnings.append(message)


@dataclass
class PipelineContext:
    """Everything a pipeline needs for one (tenant, kind) run."""

    tenant_id: uuid.UUID
    subscription_id: str
    gateway: AzureGateway
    session_factory: SessionFactory
    now: datetime
    workspace_id: str | None = None
    window: tuple[date, date] | None = None
    progress: PipelineProgress = field(default_factory=PipelineProgress)


async def _cached_resources(
    ctx: PipelineContext, types: list[str]
) -> list[CachedResource]:
    async with ctx.session_factory() as db:
        result = await db.execute(
            select(CachedResource)
            .where(CachedResource.tenant_id == ctx.tenant_id, CachedResource.type.in_(types))
            .order_by(CachedResource.external_id)
        )
        return list(result.scalars().all())


async def sync_resources(ctx: PipelineContext) -> PipelineProgress:
    """Resource groups, then resources, into the inventory cache."""
    progress = ctx.progress

    groups = await ctx.gateway.list_resource_groups(ctx.subscription_id)
    async with ctx.session_factory() as db:
        written = await ResourceWriter(db).upsert_groups(ctx.tenant_id, groups.records)
    progress.record("resource_groups", written, groups)

    resources = await ctx.gateway.list_resources(ctx.subscription_id)
    async with ctx.session_factory() as db:
        written = await ResourceWriter(db).upsert(ctx.tenant_id, resources.records)
    progress.record("resources", written, resources)

    logger.info(
        "sync.resources_written",
        tenant_id=str(ctx.tenant_id),
        groups=progress.details["resource_groups"],
        resources=progress.details["resources"],
    )
    return progress


async def sync_costs(ctx: PipelineContext) -> PipelineProgress:
    """
    Daily costs for the incremental lookback or an explicit backfill window.

    The gateway splits the window per calendar month; rows are written
    once every month has been fetched.
    """
    progress = ctx.progress
    if ctx.window is not None:
        start, end = ctx.window
    else:
        end = ctx.now.date()
        start = end - timedelta(days=settings.COST_LOOKBACK_DAYS)

    rows = await ctx.gateway.query_costs(ctx.subscription_id, start, end)
    async with ctx.session_factory() as db:
        written = await CostWriter(db).upsert(ctx.tenant_id, rows.records)
    progress.record("cost_records", written, rows)

    logger.info(
        "sync.costs_written",
        tenant_id=str(ctx.tenant_id),
        start=start.isoformat(),
        end=end.isoformat(),
        records=progress.details.get("cost_records", 0),
    )
    return progress


async def sync_metrics(ctx: PipelineContext) -> PipelineProgress:
    """Monitor metrics for every cached resource type with a metric catalogue."""
    progress = ctx.progress
    end = ctx.now
    span = timedelta(hours=settings.METRICS_LOOKBACK_HOURS)
    start = end - span

    for resource in await _cached_resources(ctx, list(RESOURCE_METRICS)):
        points = await ctx.gateway.query_metrics(
            resource.external_id,
            RESOURCE_METRICS[resource.type],
            start,
            end,
            metric_interval(resource.type, span),
        )
        if points is None:
            progress.warn(f"Resource {resource.external_id} no longer exists")
            continue
        async with ctx.session_factory() as db:
            written = await MetricsWriter(db).upsert(resource.id, points.records)
        progress.record("metric_samples", written, points)

    return progress


async def sync_sql_insights(ctx: PipelineContext) -> PipelineProgress:
    """
    Performance, replication and wait statistics for each SQL database.

    Wait stats and blocked process counts come from Log Analytics and are
    only collected when the tenant has a workspace configured. Advisor
    recommendations are fetched once for the subscription.
    """
    progress = ctx.progress
    hours = settings.SQL_INSIGHTS_LOOKBACK_HOURS
    end = ctx.now
    start = end - timedelta(hours=hours)

    for database in await _cached_resources(ctx, [SQL_DATABASE_TYPE]):
        database_name = database.name.split("/")[-1]
        if database_name.lower() in SYSTEM_DATABASES:
            continue

        perf = await ctx.gateway.query_sql_performance(database.external_id, start, end)
        if perf is None:
            progress.warn(f"Database {database.external_id} no longer exists")
            continue

        waits = None
        if ctx.workspace_id:
            waits = await ctx.gateway.query_wait_stats(ctx.workspace_id, database_name, hours, end)
            blocked = await ctx.gateway.count_blocked_processes(ctx.workspace_id, database_name, hours)
            if blocked and perf.records:
                latest = perf.records[-1]
                perf.records[-1] = latest.model_copy(update={"blocked_count": blocked})

        links = await ctx.gateway.list_replication_links(database.external_id)

        async with ctx.session_factory() as db:
            writer = SqlInsightWriter(db)
            progress.record("sql_performance_stats", await writer.upsert_performance(database.id, perf.records), perf)
            if waits is not None:
                progress.record("wait_stats", await writer.upsert_wait_stats(database.id, waits.records), waits)
            progress.record(
                "replication_links",
                await writer.upsert_replication_links(database.id, links.records, captured_at=end),
                links,
            )

    recommendations = await ctx.gateway.list_advisor_recommendations(ctx.subscription_id)
    async with ctx.session_factory() as db:
        written = await SqlInsightWriter(db).upsert_recommendations(ctx.tenant_id, recommendations.records)
    progress.record("advisor_recommendations", written, recommendations)

    return progress


PIPELINES: dict[SyncKind, Callable[[PipelineContext], Awaitable[PipelineProgress]]] = {
    SyncKind.RESOURCES: sync_resources,
    SyncKind.COSTS: sync_costs,
    SyncKind.METRICS: sync_metrics,
    SyncKind.SQL_INSIGHTS: sync_sql_insights,
}
