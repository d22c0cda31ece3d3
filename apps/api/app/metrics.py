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

lifecycle_transitions_total = Counter(
    "lifecycle_transitions_total",
    "Lifecycle transition attempts by outcome",
    ["entity_name", "outcome"],
)

lifecycle_transition_duration_seconds = Histogram(
    "lifecycle_transition_duration_seconds",
    "Lifecycle transition duration in seconds",
    ["entity_name"],
)

lifecycle_route_cache_total = Counter(
    "lifecycle_route_cache_total",
    "Compiled route cache lookups",
    ["result"],
)

policy_decisions_total = Counter(
    "policy_decisions_total",
    "Policy gate decisions by effect",
    ["resource", "effect"],
)

policy_cache_hit_total = Counter(
    "policy_cache_hit_total",
    "Policy decision cache hits",
)

policy_cache_miss_total = Counter(
    "policy_cache_miss_total",
    "Policy decision cache misses",
)

policy_malformed_rules_total = Counter(
    "policy_malformed_rules_total",
    "Policy rules that failed to compile",
    ["resource"],
)

approval_decisions_total = Counter(
    "approval_decisions_total",
    "Approval task decisions",
    ["decision"],
)

approval_instances_completed_total = Counter(
    "approval_instances_completed_total",
    "Approval instances reaching a final status",
    ["status"],
)

approval_timer_firings_total = Counter(
    "approval_timer_firings_total",
    "Approval reminder and escalation firings",
    ["timer", "result"],
)

lifecycle_timer_firings_total = Counter(
    "lifecycle_timer_firings_total",
    "Lifecycle state timer firings",
    ["timer_type", "result"],
)

jobs_total = Counter(
    "jobs_total",
    "Total queued jobs by status",
    ["job_type", "status"],
)

job_duration_seconds = Histogram(
    "job_duration_seconds",
    "Job duration in seconds",
    ["job_type"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    # keep the operation segment readable on transition routes
    if path.endswith("/{operation_code}"):
        return _PATH_PARAM_RE.sub("{id}", path[: -len("/{operation_code}")]) + "/{operation_code}"
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


def observe_transition(entity_name: str, outcome: str, duration: float | None = None) -> None:
    lifecycle_transitions_total.labels(entity_name=entity_name, outcome=outcome).inc()
    if duration is not None:
        lifecycle_transition_duration_seconds.labels(entity_name=entity_name).observe(duration)


def observe_route_cache(hit: bool) -> None:
    lifecycle_route_cache_total.labels(result="hit" if hit else "miss").inc()


def observe_policy_decision(resource: str, effect: str) -> None:
    policy_decisions_total.labels(resource=resource, effect=effect).inc()


def observe_policy_cache_hit() -> None:
    policy_cache_hit_total.inc()


def observe_policy_cache_miss() -> None:
    policy_cache_miss_total.inc()


def observe_policy_malformed_rule(resource: str) -> None:
    policy_malformed_rules_total.labels(resource=resource).inc()


def observe_approval_decision(decision: str) -> None:
    approval_decisions_total.labels(decision=decision).inc()


def observe_approval_completed(status: str) -> None:
    approval_instances_completed_total.labels(status=status).inc()


def observe_timer_firing(timer: str, result: str) -> None:
    approval_timer_firings_total.labels(timer=timer, result=result).inc()


def observe_lifecycle_timer(timer_type: str, result: str) -> None:
    lifecycle_timer_firings_total.labels(timer_type=timer_type, result=result).inc()


def observe_job(job_type: str, status: str, duration: float) -> None:
    jobs_total.labels(job_type=job_type, status=status).inc()
    job_duration_seconds.labels(job_type=job_type).observe(duration)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
