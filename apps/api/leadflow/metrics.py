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

pipeline_automation_runs_total = Counter(
    "pipeline_automation_runs_total",
    "Total pipeline automation runs by outcome",
    ["outcome"],
)

pipeline_automation_duration_seconds = Histogram(
    "pipeline_automation_duration_seconds",
    "Pipeline automation run duration in seconds",
)

pipeline_automation_tasks_created_total = Counter(
    "pipeline_automation_tasks_created_total",
    "Total tasks materialized by pipeline automation",
)

pipeline_automation_templates_skipped_total = Counter(
    "pipeline_automation_templates_skipped_total",
    "Total task templates skipped by reason",
    ["reason"],
)

round_robin_assignments_total = Counter(
    "round_robin_assignments_total",
    "Total round-robin member selections by mode",
    ["mode"],
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
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_automation_run(outcome: str, duration: float) -> None:
    pipeline_automation_runs_total.labels(outcome=outcome).inc()
    pipeline_automation_duration_seconds.observe(duration)


def observe_task_materialized(count: int = 1) -> None:
    if count > 0:
        pipeline_automation_tasks_created_total.inc(count)


def observe_template_skipped(reason: str) -> None:
    pipeline_automation_templates_skipped_total.labels(reason=reason).inc()


def observe_round_robin_assignment(mode: str) -> None:
    round_robin_assignments_total.labels(mode=mode).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
