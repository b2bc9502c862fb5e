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

crm_import_extraction_attempts_total = Counter(
    "crm_import_extraction_attempts_total",
    "Model extraction attempts by outcome",
    ["outcome"],
)

crm_import_extractions_total = Counter(
    "crm_import_extractions_total",
    "Extraction requests by final status",
    ["status"],
)

crm_import_records_total = Counter(
    "crm_import_records_total",
    "Imported CRM records by entity type and status",
    ["entity_type", "status"],
)

crm_import_duration_seconds = Histogram(
    "crm_import_duration_seconds",
    "Bulk import duration in seconds",
)

crm_rate_limited_total = Counter(
    "crm_rate_limited_total",
    "Requests rejected by the model-route rate limiter",
    ["route_group"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_extraction_attempt(outcome: str) -> None:
    crm_import_extraction_attempts_total.labels(outcome=outcome).inc()


def observe_extraction(status: str) -> None:
    crm_import_extractions_total.labels(status=status).inc()


def observe_import(counts: dict[str, dict[str, int]], duration: float) -> None:
    for entity_type, entity_counts in counts.items():
        for status in ("success", "failed"):
            amount = entity_counts.get(status, 0)
            if amount > 0:
                crm_import_records_total.labels(entity_type=entity_type, status=status).inc(amount)
    crm_import_duration_seconds.observe(duration)


def observe_rate_limited(route_group: str) -> None:
    crm_rate_limited_total.labels(route_group=route_group).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
