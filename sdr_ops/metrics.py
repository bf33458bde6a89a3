from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
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

automation_trigger_events_total = Counter(
    "automation_trigger_events_total",
    "Total tag-change events evaluated by the trigger matcher",
    ["source"],
)

automation_rules_matched_total = Counter(
    "automation_rules_matched_total",
    "Total rule matches by trigger mode",
    ["trigger_mode"],
)

automation_rules_skipped_total = Counter(
    "automation_rules_skipped_total",
    "Stored rules skipped during matching by reason",
    ["reason"],
)

automation_dispatch_total = Counter(
    "automation_dispatch_total",
    "Total automation dispatch attempts by action type and terminal status",
    ["action_type", "status"],
)

automation_dispatch_duration_seconds = Histogram(
    "automation_dispatch_duration_seconds",
    "Automation dispatch duration in seconds",
    ["action_type"],
)

automation_stale_pending_logs = Gauge(
    "automation_stale_pending_logs",
    "Pending automation log rows older than the staleness threshold",
)

automation_analytics_cache_total = Counter(
    "automation_analytics_cache_total",
    "Analytics cache lookups by result",
    ["result"],
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
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_trigger_event(source: str, matched_modes: list[str]) -> None:
    automation_trigger_events_total.labels(source=source).inc()
    for trigger_mode in matched_modes:
        automation_rules_matched_total.labels(trigger_mode=trigger_mode).inc()


def observe_rule_skipped(reason: str) -> None:
    automation_rules_skipped_total.labels(reason=reason).inc()


def observe_dispatch(action_type: str, status: str, duration: float) -> None:
    automation_dispatch_total.labels(action_type=action_type, status=status).inc()
    automation_dispatch_duration_seconds.labels(action_type=action_type).observe(duration)


def set_stale_pending_logs(count: int) -> None:
    automation_stale_pending_logs.set(count)


def observe_analytics_cache(hit: bool) -> None:
    automation_analytics_cache_total.labels(result="hit" if hit else "miss").inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
