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

crm_mutations_total = Counter(
    "crm_mutations_total",
    "Total CRM row mutations by entity and action",
    ["entity", "action"],
)

rls_denied_reads_count = Counter(
    "rls_denied_reads_count",
    "Total denied reads by row-level security",
    ["resource"],
)

rls_denied_writes_count = Counter(
    "rls_denied_writes_count",
    "Total denied writes by row-level security",
    ["resource"],
)

realtime_deliveries_total = Counter(
    "realtime_deliveries_total",
    "Realtime change payloads delivered to subscribers",
    ["table", "event"],
)

email_provider_requests_total = Counter(
    "email_provider_requests_total",
    "Outbound email provider calls by provider and outcome",
    ["provider", "outcome"],
)

email_provider_duration_seconds = Histogram(
    "email_provider_duration_seconds",
    "Outbound email provider call duration in seconds",
    ["provider"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        route_path = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return route_path
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_crm_mutation(entity: str, action: str, count: int = 1) -> None:
    if count > 0:
        crm_mutations_total.labels(entity=entity, action=action).inc(count)


def observe_rls_denied_read(resource: str) -> None:
    rls_denied_reads_count.labels(resource=resource).inc()


def observe_rls_denied_write(resource: str) -> None:
    rls_denied_writes_count.labels(resource=resource).inc()


def observe_realtime_delivery(table: str, event: str) -> None:
    realtime_deliveries_total.labels(table=table, event=event).inc()


def observe_email_provider_call(provider: str, outcome: str, duration: float) -> None:
    email_provider_requests_total.labels(provider=provider, outcome=outcome).inc()
    email_provider_duration_seconds.labels(provider=provider).observe(duration)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
