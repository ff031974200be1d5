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

quotation_dispatch_total = Counter(
    "quotation_dispatch_total",
    "Total quotation dispatch attempts by channel and outcome",
    ["channel", "outcome"],
)

quotation_dispatch_duration_seconds = Histogram(
    "quotation_dispatch_duration_seconds",
    "Quotation dispatch duration in seconds",
    ["channel"],
)

quotation_preflight_total = Counter(
    "quotation_preflight_total",
    "Total quotation preflight verdicts",
    ["verdict"],
)

opportunity_stage_changes_total = Counter(
    "opportunity_stage_changes_total",
    "Total opportunity stage changes by target stage",
    ["stage"],
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


def observe_quotation_dispatch(channel: str, outcome: str, duration: float) -> None:
    quotation_dispatch_total.labels(channel=channel, outcome=outcome).inc()
    quotation_dispatch_duration_seconds.labels(channel=channel).observe(duration)


def observe_quotation_preflight(verdict: str) -> None:
    quotation_preflight_total.labels(verdict=verdict).inc()


def observe_opportunity_stage_change(stage: str) -> None:
    opportunity_stage_changes_total.labels(stage=stage).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
