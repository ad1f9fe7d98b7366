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

process_events_total = Counter(
    "process_events_total",
    "Total process audit events by type",
    ["event_type"],
)

process_operation_duration_seconds = Histogram(
    "process_operation_duration_seconds",
    "Process engine operation duration in seconds",
    ["operation"],
)

process_operation_failures_total = Counter(
    "process_operation_failures_total",
    "Total failed process engine operations by reason",
    ["operation", "reason"],
)

process_jobs_total = Counter(
    "process_jobs_total",
    "Total process background jobs by status",
    ["job_type", "status"],
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


def observe_process_event(event_type: str) -> None:
    process_events_total.labels(event_type=event_type).inc()


def observe_process_operation(operation: str, duration: float) -> None:
    process_operation_duration_seconds.labels(operation=operation).observe(duration)


def observe_process_operation_failure(operation: str, reason: str) -> None:
    process_operation_failures_total.labels(operation=operation, reason=reason).inc()


def observe_process_job(job_type: str, status: str) -> None:
    process_jobs_total.labels(job_type=job_type, status=status).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
