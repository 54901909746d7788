from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

lead_cache_requests_total = Counter(
    "lead_cache_requests_total",
    "Lead read cache lookups by operation and outcome",
    ["operation", "outcome"],
)

lead_cache_invalidations_total = Counter(
    "lead_cache_invalidations_total",
    "Lead cache tag invalidations",
    ["tag"],
)

lead_query_duration_seconds = Histogram(
    "lead_query_duration_seconds",
    "Lead read query duration in seconds",
    ["operation", "path"],
)

audit_trail_activities_total = Counter(
    "audit_trail_activities_total",
    "System-authored activities written for lead changes",
    ["change_type"],
)

audit_trail_field_failures_total = Counter(
    "audit_trail_field_failures_total",
    "Lead field changes whose audit activity could not be generated",
    ["field"],
)

lead_aggregate_recomputations_total = Counter(
    "lead_aggregate_recomputations_total",
    "Lead derived-field recomputations",
    ["outcome"],
)

search_queries_total = Counter(
    "search_queries_total",
    "Search index queries by outcome",
    ["outcome"],
)

search_index_sync_failures_total = Counter(
    "search_index_sync_failures_total",
    "Incremental search index sync failures",
    ["operation"],
)

search_reindex_runs_total = Counter(
    "search_reindex_runs_total",
    "Full reindex runs by outcome",
    ["outcome"],
)

search_reindexed_documents_total = Counter(
    "search_reindexed_documents_total",
    "Documents written by full reindex runs",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_lead_cache(operation: str, outcome: str) -> None:
    lead_cache_requests_total.labels(operation=operation, outcome=outcome).inc()


def observe_lead_cache_invalidation(tags: list[str]) -> None:
    for tag in tags:
        # per-lead tags would explode label cardinality
        label = "lead" if tag.startswith("lead:") else tag
        lead_cache_invalidations_total.labels(tag=label).inc()


def observe_lead_query(operation: str, path: str, duration: float) -> None:
    lead_query_duration_seconds.labels(operation=operation, path=path).observe(duration)


def observe_audit_trail_activity(change_type: str) -> None:
    audit_trail_activities_total.labels(change_type=change_type).inc()


def observe_audit_trail_failure(field: str) -> None:
    audit_trail_field_failures_total.labels(field=field).inc()


def observe_aggregate_recomputation(outcome: str) -> None:
    lead_aggregate_recomputations_total.labels(outcome=outcome).inc()


def observe_search_query(outcome: str) -> None:
    search_queries_total.labels(outcome=outcome).inc()


def observe_search_index_sync_failure(operation: str) -> None:
    search_index_sync_failures_total.labels(operation=operation).inc()


def observe_reindex(outcome: str, indexed_count: int = 0) -> None:
    search_reindex_runs_total.labels(outcome=outcome).inc()
    if indexed_count > 0:
        search_reindexed_documents_total.inc(indexed_count)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
