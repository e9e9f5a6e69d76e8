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

customer_status_transitions_total = Counter(
    "customer_status_transitions_total",
    "Committed customer status transitions by target funnel category",
    ["category"],
)

customer_transition_rejections_total = Counter(
    "customer_transition_rejections_total",
    "Rejected customer status transitions by reason",
    ["reason"],
)

customer_audit_write_failures_total = Counter(
    "customer_audit_write_failures_total",
    "Customer history log writes that failed and were dropped",
    ["action_type"],
)

settlement_items_written_total = Counter(
    "settlement_items_written_total",
    "Settlement rows created or updated by the reconciler",
    ["operation"],
)

settlement_clawback_items_total = Counter(
    "settlement_clawback_items_total",
    "Clawback reversal rows written",
)

ranking_requests_total = Counter(
    "ranking_requests_total",
    "Ranking computations by scope",
    ["scope"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    return _UUID_RE.sub("{id}", path)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        route_path = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _PATH_PARAM_RE.sub("{id}", route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_status_transition(category: str) -> None:
    customer_status_transitions_total.labels(category=category).inc()


def observe_transition_rejection(reason: str) -> None:
    customer_transition_rejections_total.labels(reason=reason).inc()


def observe_audit_write_failure(action_type: str) -> None:
    customer_audit_write_failures_total.labels(action_type=action_type).inc()


def observe_settlement_items_written(operation: str, count: int = 1) -> None:
    if count > 0:
        settlement_items_written_total.labels(operation=operation).inc(count)


def observe_clawback_items(count: int = 1) -> None:
    if count > 0:
        settlement_clawback_items_total.inc(count)


def observe_ranking_request(scope: str) -> None:
    ranking_requests_total.labels(scope=scope).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
