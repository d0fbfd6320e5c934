"""Typed request functions against the Azure management, cost, monitor and Log Analytics APIs."""

import asyncio
import json
import random
import re
from collections import defaultdict
from datetime import date, datetime, timedelta
from email.utils import parsedate_to_datetime
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

import httpx
import structlog
from pydantic import BaseModel, Field

from azpulse.core.config import settings
from azpulse.core.errors import AuthError, RemoteError
from azpulse.providers.token_broker import LOG_ANALYTICS_SCOPE, MANAGEMENT_SCOPE
from azpulse.schemas.records import (
    CostRow,
    MetricPoint,
    ParsedBatch,
    RecommendationRecord,
    ReplicationLinkRecord,
    ResourceGroupRecord,
    ResourceRecord,
    SqlPerformancePoint,
    SubscriptionRecord,
    WaitStatRecord,
)
from azpulse.sync.cancellation import CancellationToken

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Scope -> bearer token
TokenProvider = Callable[[str], Awaitable[str]]

SUBSCRIPTIONS_API_VERSION = "2022-12-01"
RESOURCES_API_VERSION = "2021-04-01"
COST_API_VERSION = "2023-03-01"
METRICS_API_VERSION = "2023-10-01"
REPLICATION_API_VERSION = "2022-05-01-preview"
ADVISOR_API_VERSION = "2020-01-01"

SQL_DATABASE_TYPE = "microsoft.sql/servers/databases"
STORAGE_ACCOUNT_TYPE = "microsoft.storage/storageaccounts"

# Metrics collected per resource type
RESOURCE_METRICS: dict[str, list[str]] = {
    "microsoft.web/sites": ["CpuTime", "AverageMemoryWorkingSet", "Requests", "AverageResponseTime", "Http5xx"],
    SQL_DATABASE_TYPE: ["cpu_percent", "dtu_consumption_percent", "storage_percent", "connection_successful"],
    "microsoft.compute/virtualmachines": [
        "Percentage CPU",
        "Network In Total",
        "Network Out Total",
        "Disk Read Bytes",
        "Disk Write Bytes",
    ],
    STORAGE_ACCOUNT_TYPE: ["UsedCapacity", "Transactions", "Ingress", "Egress"],
}

# Azure SQL metric -> (SqlPerformancePoint field, aggregation)
SQL_PERFORMANCE_METRICS: dict[str, tuple[str, str]] = {
    "cpu_percent": ("cpu_percent", "average"),
    "dtu_consumption_percent": ("dtu_percent", "average"),
    "storage_percent": ("storage_percent", "average"),
    "deadlock": ("deadlock_count", "total"),
}

COST_GROUPING = ("ResourceId", "ResourceGroup", "MeterCategory", "MeterSubcategory", "Meter")
METRIC_AGGREGATIONS = ("average", "minimum", "maximum", "total", "count")
RESOURCE_PROPERTY_KEYS = ("properties", "sku", "kind", "managedBy", "identity", "plan")

_RESOURCE_GROUP_RE = re.compile(r"/resourceGroups/([^/]+)", re.IGNORECASE)

# Errors raised while translating one provider record
_RECORD_ERRORS = (KeyError, TypeError, ValueError, AttributeError)


class RetryPolicy(BaseModel):
    """Backoff parameters for rate limited responses."""

    max_retries: int = Field(default=3, ge=0)
    base_delay: float = Field(default=2.0, gt=0.0)
    max_delay: float = Field(default=60.0, gt=0.0)
    jitter: bool = Field(default=True, description="Randomise the delay within [0.5x, 1.5x]")

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_retries=settings.GATEWAY_MAX_RETRIES,
            base_delay=settings.GATEWAY_BACKOFF_BASE_SECONDS,
            max_delay=settings.GATEWAY_BACKOFF_MAX_SECONDS,
        )

    def compute_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (2**attempt), self.max_delay)
        if self.jitter:
            delay *= random.uniform(0.5, 1.5)
        return delay


def metric_interval(resource_type: str, span: timedelta) -> str:
    """
    Pick a metric granularity that keeps the number of points bounded.

    Args:
        resource_type: Lower-cased ARM resource type
        span: Length of the queried window

    Returns:
        ISO 8601 interval
    """
    if resource_type == STORAGE_ACCOUNT_TYPE or span >= timedelta(days=30):
        return "PT1H"
    if span >= timedelta(days=7):
        return "PT15M"
    return "PT5M"


def month_chunks(start: date, end: date) -> list[tuple[date, date]]:
    """Split an inclusive date range into calendar month pieces."""
    chunks = []
    cursor = start
    while cursor <= end:
        next_month = (cursor.replace(day=1) + timedelta(days=32)).replace(day=1)
        chunk_end = min(end, next_month - timedelta(days=1))
        chunks.append((cursor, chunk_end))
        cursor = chunk_end + timedelta(days=1)
    return chunks


def _iso(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def _kql_literal(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def _parse_each(items: list[Any], translate: Callable[[Any], T], what: str) -> ParsedBatch[T]:
    batch: ParsedBatch[T] = ParsedBatch()
    for raw in items:
        try:
            batch.records.append(translate(raw))
        except _RECORD_ERRORS as e:
            reason = f"Skipped malformed {what}: {e.__class__.__name__}: {str(e)[:200]}"
            batch.skipped.append(reason)
            logger.warning("gateway.record_skipped", record_type=what, error=str(e)[:200])
    return batch


def _to_subscription(raw: dict[str, Any]) -> SubscriptionRecord:
    return SubscriptionRecord(
        subscription_id=raw["subscriptionId"],
        display_name=raw.get("displayName") or raw["subscriptionId"],
        state=raw.get("state"),
    )


def _to_resource_group(raw: dict[str, Any]) -> ResourceGroupRecord:
    return ResourceGroupRecord(name=raw["name"], location=raw.get("location"))


def _to_resource(raw: dict[str, Any]) -> ResourceRecord:
    resource_id = raw["id"]
    match = _RESOURCE_GROUP_RE.search(resource_id)
    blob = {key: raw[key] for key in RESOURCE_PROPERTY_KEYS if raw.get(key) is not None}
    tags = raw.get("tags") or {}
    return ResourceRecord(
        external_id=resource_id,
        name=raw["name"],
        type=raw["type"],
        resource_group=match.group(1) if match else "unknown",
        location=raw.get("location"),
        tags={str(k): "" if v is None else str(v) for k, v in tags.items()},
        properties=json.dumps(blob, sort_keys=True) if blob else None,
    )


def _to_cost_row(raw: dict[str, Any]) -> CostRow:
    return CostRow(
        resource_id=raw.get("ResourceId") or None,
        resource_group=raw.get("ResourceGroup") or None,
        usage_date=raw["UsageDate"],
        meter_category=raw.get("MeterCategory") or "",
        meter_subcategory=raw.get("MeterSubcategory") or "",
        meter_name=raw.get("Meter") or "",
        cost=raw["Cost"],
        usage_quantity=raw.get("UsageQuantity") or 0.0,
        currency=raw.get("Currency") or "USD",
    )


def _to_replication_link(raw: dict[str, Any]) -> ReplicationLinkRecord:
    props = raw["properties"]
    return ReplicationLinkRecord(
        partner_server=props["partnerServer"],
        partner_database=props.get("partnerDatabase"),
        role=props.get("role"),
        state=props.get("replicationState") or "UNKNOWN",
        lag_seconds=props.get("replicationLagSeconds"),
        last_replicated_at=props.get("lastReplicatedTime"),
    )


def _to_recommendation(raw: dict[str, Any]) -> RecommendationRecord:
    props = raw["properties"]
    description = props.get("shortDescription") or {}
    metadata = props.get("resourceMetadata") or {}
    return RecommendationRecord(
        recommendation_id=raw["name"],
        resource_id=metadata.get("resourceId"),
        category=props.get("category"),
        impact=props.get("impact"),
        problem=description.get("problem"),
        solution=description.get("solution"),
    )


def _rows_to_dicts(columns: list[dict[str, Any]], rows: list[list[Any]]) -> list[dict[str, Any]]:
    names = [col["name"] for col in columns]
    return [dict(zip(names, row)) for row in rows]


class AzureGateway:
    """
    Client for the provider APIs used by the sync pipelines.

    Every call checks the cancellation token, obtains a bearer token from
    ``token_provider``, applies backoff with jitter on HTTP 429 (and 503
    responses carrying Retry-After), and raises :class:`RemoteError` or
    :class:`AuthError` for failures. List calls follow ``nextLink`` until
    exhaustion. Malformed records are skipped and reported in the returned
    :class:`ParsedBatch`.
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        *,
        client: httpx.AsyncClient | None = None,
        cancellation: CancellationToken | None = None,
        retry: RetryPolicy | None = None,
        timeout_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._token_provider = token_provider
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=settings.GATEWAY_HTTP_TIMEOUT_SECONDS)
        self._cancellation = cancellation
        self._retry = retry or RetryPolicy.from_settings()
        self._timeout = timeout_seconds or settings.SYNC_CALL_TIMEOUT_SECONDS
        self._sleep = sleep
        self.management_url = settings.AZURE_MANAGEMENT_URL.rstrip("/")
        self.log_analytics_url = settings.AZURE_LOG_ANALYTICS_URL.rstrip("/")

    async def __aenter__(self) -> "AzureGateway":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _retry_delay(self, response: httpx.Response, attempt: int) -> float:
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                seconds = float(retry_after)
            except ValueError:
                try:
                    when = parsedate_to_datetime(retry_after)
                    seconds = (when - datetime.now(when.tzinfo)).total_seconds()
                except (TypeError, ValueError):
                    seconds = -1
            if seconds >= 0:
                return min(seconds, self._retry.max_delay)
        return self._retry.compute_delay(attempt)

    @staticmethod
    def _error_for(response: httpx.Response, url: str) -> Exception:
        status = response.status_code
        detail = response.text[:300]
        try:
            body = response.json()
            if isinstance(body, dict) and isinstance(body.get("error"), dict):
                detail = body["error"].get("message") or detail
        except ValueError:
            pass

        path = httpx.URL(url).path
        if status == 401:
            return AuthError(f"Access token rejected for {path}: {detail}")
        transient = status in (408, 429) or status >= 500
        return RemoteError(
            f"Azure API error (status {status}) for {path}: {detail}",
            transient=transient,
            status_code=status,
        )

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        scope: str = MANAGEMENT_SCOPE,
        allow_not_found: bool = False,
    ) -> dict[str, Any] | None:
        attempt = 0
        while True:
            if self._cancellation is not None:
                await self._cancellation.checkpoint()

            token = await self._token_provider(scope)
            try:
                response = await asyncio.wait_for(
                    self._client.request(
                        method,
                        url,
                        params=params,
                        json=json_body,
                        headers={"Authorization": f"Bearer {token}"},
                    ),
                    self._timeout,
                )
            except (asyncio.TimeoutError, httpx.TimeoutException) as e:
                raise RemoteError(f"Request to {httpx.URL(url).path} timed out", transient=True) from e
            except httpx.TransportError as e:
                raise RemoteError(f"Network error calling {httpx.URL(url).path}: {e}", transient=True) from e

            status = response.status_code
            throttled = status == 429 or (status == 503 and "Retry-After" in response.headers)
            if throttled and attempt < self._retry.max_retries:
                delay = self._retry_delay(response, attempt)
                logger.warning(
                    "gateway.rate_limited",
                    path=httpx.URL(url).path,
                    status=status,
                    attempt=attempt + 1,
                    delay_seconds=round(delay, 2),
                )
                await self._sleep(delay)
                attempt += 1
                continue

            if status == 404 and allow_not_found:
                return None
            if status >= 400:
                raise self._error_for(response, url)

            try:
                data = response.json()
            except ValueError as e:
                raise RemoteError(
                    f"Malformed JSON from {httpx.URL(url).path}", transient=False, status_code=status
                ) from e
            if not isinstance(data, dict):
                raise RemoteError(
                    f"Unexpected response shape from {httpx.URL(url).path}",
                    transient=False,
                    status_code=status,
                )
            return data

    async def _paginate(self, url: str, params: dict[str, Any] | None = None) -> AsyncIterator[list[Any]]:
        seen: set[str] = set()
        next_url: str | None = url
        next_params = params
        while next_url:
            data = await self._request("GET", next_url, params=next_params) or {}
            yield data.get("value") or []
            next_url = data.get("nextLink")
            # nextLink already carries the query string
            next_params = None
            if next_url in seen:
                raise RemoteError(f"Pagination loop detected at {next_url}", transient=False)
            if next_url:
                seen.add(next_url)

    async def _collect(
        self,
        url: str,
        params: dict[str, Any],
        translate: Callable[[Any], T],
        what: str,
    ) -> ParsedBatch[T]:
        batch: ParsedBatch[T] = ParsedBatch()
        async for page in self._paginate(url, params):
            batch.extend(_parse_each(page, translate, what))
        return batch

    # ------------------------------------------------------------------
    # Resource Manager
    # ------------------------------------------------------------------

    async def list_subscriptions(self) -> ParsedBatch[SubscriptionRecord]:
        """List subscriptions the service principal can read."""
        return await self._collect(
            f"{self.management_url}/subscriptions",
            {"api-version": SUBSCRIPTIONS_API_VERSION},
            _to_subscription,
            "subscription",
        )

    async def list_resource_groups(self, subscription_id: str) -> ParsedBatch[ResourceGroupRecord]:
        """List resource groups of a subscription."""
        return await self._collect(
            f"{self.management_url}/subscriptions/{subscription_id}/resourcegroups",
            {"api-version": RESOURCES_API_VERSION},
            _to_resource_group,
            "resource group",
        )

    async def list_resources(self, subscription_id: str) -> ParsedBatch[ResourceRecord]:
        """List every resource of a subscription."""
        return await self._collect(
            f"{self.management_url}/subscriptions/{subscription_id}/resources",
            {"api-version": RESOURCES_API_VERSION},
            _to_resource,
            "resource",
        )

    # ------------------------------------------------------------------
    # Cost Management
    # ------------------------------------------------------------------

    async def query_costs(self, subscription_id: str, start: date, end: date) -> ParsedBatch[CostRow]:
        """
        Daily actual cost grouped by resource and meter.

        The window is split per calendar month so each query stays inside
        the API's range limit.

        Args:
            subscription_id: Subscription to query
            start: First day (inclusive)
            end: Last day (inclusive)

        Returns:
            Parsed cost rows
        """
        url = (
            f"{self.management_url}/subscriptions/{subscription_id}"
            f"/providers/Microsoft.CostManagement/query?api-version={COST_API_VERSION}"
        )
        batch: ParsedBatch[CostRow] = ParsedBatch()
        for chunk_start, chunk_end in month_chunks(start, end):
            body = {
                "type": "ActualCost",
                "timeframe": "Custom",
                "timePeriod": {
                    "from": f"{chunk_start.isoformat()}T00:00:00Z",
                    "to": f"{chunk_end.isoformat()}T23:59:59Z",
                },
                "dataset": {
                    "granularity": "Daily",
                    "aggregation": {
                        "totalCost": {"name": "Cost", "function": "Sum"},
                        "totalUsage": {"name": "UsageQuantity", "function": "Sum"},
                    },
                    "grouping": [{"type": "Dimension", "name": name} for name in COST_GROUPING],
                },
            }
            next_url: str | None = url
            columns: list[dict[str, Any]] = []
            while next_url:
                data = await self._request("POST", next_url, json_body=body) or {}
                properties = data.get("properties") or {}
                columns = properties.get("columns") or columns
                rows = _rows_to_dicts(columns, properties.get("rows") or [])
                batch.extend(_parse_each(rows, _to_cost_row, "cost row"))
                next_url = properties.get("nextLink")
            logger.info(
                "gateway.costs_fetched",
                subscription=subscription_id,
                start=chunk_start.isoformat(),
                end=chunk_end.isoformat(),
                rows=len(batch.records),
            )
        return batch

    # ------------------------------------------------------------------
    # Azure Monitor
    # ------------------------------------------------------------------

    async def _fetch_metrics(
        self,
        resource_id: str,
        names: list[str],
        start: datetime,
        end: datetime,
        interval: str,
    ) -> dict[str, Any] | None:
        return await self._request(
            "GET",
            f"{self.management_url}{resource_id}/providers/microsoft.insights/metrics",
            params={
                "api-version": METRICS_API_VERSION,
                "metricnames": ",".join(names),
                "timespan": f"{_iso(start)}/{_iso(end)}",
                "interval": interval,
                "aggregation": "Average,Minimum,Maximum,Total,Count",
            },
            allow_not_found=True,
        )

    async def query_metrics(
        self,
        resource_id: str,
        names: list[str],
        start: datetime,
        end: datetime,
        interval: str = "PT5M",
    ) -> ParsedBatch[MetricPoint] | None:
        """
        Time series for several metrics of one resource.

        Each data point is flattened to one MetricPoint per aggregation
        present. If the combined request is rejected (one of the names is
        unsupported for this SKU), the metrics are fetched one by one and
        unsupported ones are skipped.

        Args:
            resource_id: ARM resource id
            names: Metric names
            start: Window start (naive UTC)
            end: Window end (naive UTC)
            interval: ISO 8601 granularity

        Returns:
            Parsed points, or None if the resource no longer exists
        """
        try:
            payloads = [await self._fetch_metrics(resource_id, names, start, end, interval)]
        except RemoteError as e:
            if e.status_code != 400 or len(names) == 1:
                raise
            payloads = []
            for name in names:
                try:
                    payloads.append(await self._fetch_metrics(resource_id, [name], start, end, interval))
                except RemoteError as inner:
                    if inner.status_code != 400:
                        raise
                    logger.info("gateway.metric_unsupported", resource=resource_id, metric=name)

        if any(payload is None for payload in payloads):
            return None

        batch: ParsedBatch[MetricPoint] = ParsedBatch()
        for payload in payloads:
            for metric in payload.get("value") or []:
                batch.extend(self._flatten_metric(metric))
        return batch

    @staticmethod
    def _flatten_metric(metric: dict[str, Any]) -> ParsedBatch[MetricPoint]:
        batch: ParsedBatch[MetricPoint] = ParsedBatch()
        try:
            name = metric["name"]["value"]
        except _RECORD_ERRORS as e:
            batch.skipped.append(f"Skipped malformed metric: {e}")
            return batch
        unit = metric.get("unit")

        def translate(point: dict[str, Any]) -> list[MetricPoint]:
            return [
                MetricPoint(
                    metric_name=name,
                    timestamp=point["timeStamp"],
                    aggregation_type=agg,
                    value=point[agg],
                    unit=unit,
                )
                for agg in METRIC_AGGREGATIONS
                if point.get(agg) is not None
            ]

        for series in metric.get("timeseries") or []:
            parsed = _parse_each(series.get("data") or [], translate, "metric point")
            for points in parsed.records:
                batch.records.extend(points)
            batch.skipped.extend(parsed.skipped)
        return batch

    async def query_sql_performance(
        self,
        resource_id: str,
        start: datetime,
        end: datetime,
    ) -> ParsedBatch[SqlPerformancePoint] | None:
        """
        CPU, DTU, storage and deadlock counters of a SQL database per timestamp.

        Returns:
            Parsed points ordered by time, or None if the database is gone
        """
        points = await self.query_metrics(resource_id, list(SQL_PERFORMANCE_METRICS), start, end, "PT5M")
        if points is None:
            return None

        by_timestamp: dict[datetime, dict[str, Any]] = defaultdict(dict)
        for point in points.records:
            target = SQL_PERFORMANCE_METRICS.get(point.metric_name)
            if target is None or point.aggregation_type != target[1]:
                continue
            field_name, _ = target
            value: float | int = point.value
            if field_name == "deadlock_count":
                value = int(round(value))
            by_timestamp[point.timestamp][field_name] = value

        batch: ParsedBatch[SqlPerformancePoint] = ParsedBatch(skipped=list(points.skipped))
        for timestamp in sorted(by_timestamp):
            batch.records.append(SqlPerformancePoint(timestamp=timestamp, **by_timestamp[timestamp]))
        return batch

    async def list_replication_links(self, resource_id: str) -> ParsedBatch[ReplicationLinkRecord]:
        """Geo-replication links of a SQL database (empty when it has none)."""
        data = await self._request(
            "GET",
            f"{self.management_url}{resource_id}/replicationLinks",
            params={"api-version": REPLICATION_API_VERSION},
            allow_not_found=True,
        )
        if data is None:
            return ParsedBatch()
        return _parse_each(data.get("value") or [], _to_replication_link, "replication link")

    async def list_advisor_recommendations(self, subscription_id: str) -> ParsedBatch[RecommendationRecord]:
        """Advisor recommendations for every resource in a subscription."""
        return await self._collect(
            f"{self.management_url}/subscriptions/{subscription_id}/providers/Microsoft.Advisor/recommendations",
            {"api-version": ADVISOR_API_VERSION},
            _to_recommendation,
            "recommendation",
        )

    # ------------------------------------------------------------------
    # Log Analytics
    # ------------------------------------------------------------------

    async def _log_query(self, workspace_id: str, query: str, hours: int) -> list[dict[str, Any]]:
        data = await self._request(
            "POST",
            f"{self.log_analytics_url}/v1/workspaces/{workspace_id}/query",
            json_body={"query": query, "timespan": f"PT{hours}H"},
            scope=LOG_ANALYTICS_SCOPE,
        ) or {}
        tables = data.get("tables") or []
        if not tables:
            return []
        return _rows_to_dicts(tables[0].get("columns") or [], tables[0].get("rows") or [])

    async def query_wait_stats(
        self,
        workspace_id: str,
        database_name: str,
        hours: int,
        captured_at: datetime,
    ) -> ParsedBatch[WaitStatRecord]:
        """
        Top wait categories from Query Store diagnostics in Log Analytics.

        Args:
            workspace_id: Log Analytics workspace receiving SQL diagnostics
            database_name: Database name
            hours: Look-back window
            captured_at: Timestamp to stamp on the records

        Returns:
            Parsed wait stats
        """
        query = (
            "AzureDiagnostics"
            f" | where Category == 'QueryStoreWaitStatistics' and DatabaseName_s == {_kql_literal(database_name)}"
            " | summarize wait_time_ms = sum(total_query_wait_time_ms_d),"
            " wait_count = sum(count_executions_d) by wait_type = wait_category_s"
            " | extend avg_wait_time_ms = iff(wait_count > 0, wait_time_ms / wait_count, 0.0)"
            " | top 20 by wait_time_ms desc"
        )
        rows = await self._log_query(workspace_id, query, hours)

        def translate(row: dict[str, Any]) -> WaitStatRecord:
            return WaitStatRecord(
                wait_type=row["wait_type"],
                captured_at=captured_at,
                wait_time_ms=row.get("wait_time_ms") or 0.0,
                wait_count=int(row.get("wait_count") or 0),
                avg_wait_time_ms=row.get("avg_wait_time_ms") or 0.0,
            )

        return _parse_each(rows, translate, "wait stat")

    async def count_blocked_processes(self, workspace_id: str, database_name: str, hours: int) -> int:
        """Number of blocked process reports in the window."""
        query = (
            "AzureDiagnostics"
            f" | where Category == 'Blocks' and DatabaseName_s == {_kql_literal(database_name)}"
            " | summarize blocked = count()"
        )
        rows = await self._log_query(workspace_id, query, hours)
        if not rows:
            return 0
        try:
            return int(rows[0].get("blocked") or 0)
        except (TypeError, ValueError):
            return 0
