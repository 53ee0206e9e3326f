"""Prometheus metrics module.

In-process counters for the heat engine and the HTTP surface, exposed in the
Prometheus text format by ``GET /metrics``.
"""
from __future__ import annotations

import re
import time
from collections import Counter
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable

_START_TIME = time.time()
_LOCK = Lock()

_UUID_SEGMENT_RE = re.compile(r"/[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}")
_NUMERIC_SEGMENT_RE = re.compile(r"/\d+(?=/|$)")
_CLUSTER_SEGMENT_RE = re.compile(r"(/v1/clusters)/(?!hot(?:/|$))[^/]+")

LATENCY_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
_MAX_LATENCY_SAMPLES = 1000


@dataclass
class MetricValue:
    value: float
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class Metric:
    name: str
    metric_type: str  # counter or gauge
    help_text: str
    values: list[MetricValue] = field(default_factory=list)


_METRICS: dict[str, Metric] = {}

_REQUEST_COUNT: Counter[tuple[str, str, int]] = Counter()
_REQUEST_LATENCY: dict[tuple[str, str], list[float]] = {}


def _labels_to_str(labels: dict[str, str]) -> str:
    if not labels:
        return ""
    parts = [f'{k}="{v}"' for k, v in sorted(labels.items())]
    return "{" + ",".join(parts) + "}"


def register_metric(name: str, metric_type: str, help_text: str) -> None:
    with _LOCK:
        if name not in _METRICS:
            _METRICS[name] = Metric(name=name, metric_type=metric_type, help_text=help_text)


def _upsert_value(
    name: str, metric_type: str, value: float, labels: dict[str, str], *, add: bool
) -> None:
    with _LOCK:
        metric = _METRICS.setdefault(name, Metric(name=name, metric_type=metric_type, help_text=""))
        for mv in metric.values:
            if mv.labels == labels:
                mv.value = mv.value + value if add else value
                return
        metric.values.append(MetricValue(value=value, labels=labels))


def inc_counter(name: str, value: float = 1, labels: dict[str, str] | None = None) -> None:
    _upsert_value(name, "counter", value, labels or {}, add=True)


def set_gauge(name: str, value: float, labels: dict[str, str] | None = None) -> None:
    _upsert_value(name, "gauge", value, labels or {}, add=False)


def get_counter(name: str, labels: dict[str, str] | None = None) -> float:
    wanted = labels or {}
    with _LOCK:
        metric = _METRICS.get(name)
        if metric is None:
            return 0.0
        return sum(mv.value for mv in metric.values if mv.labels == wanted)


def reset_metrics() -> None:
    """Drop every recorded sample; registrations are kept."""
    with _LOCK:
        for metric in _METRICS.values():
            metric.values.clear()
        _REQUEST_COUNT.clear()
        _REQUEST_LATENCY.clear()


def record_request(method: str, endpoint: str, status_code: int, latency_seconds: float) -> None:
    with _LOCK:
        _REQUEST_COUNT[(method, endpoint, status_code)] += 1
        samples = _REQUEST_LATENCY.setdefault((method, endpoint), [])
        samples.append(latency_seconds)
        if len(samples) > _MAX_LATENCY_SAMPLES:
            del samples[: len(samples) - _MAX_LATENCY_SAMPLES]


# Engine counters

register_metric("story_heat_clusters_created_total", "counter", "Clusters created on ingest")
register_metric("story_heat_articles_attached_total", "counter", "Article attaches by outcome")
register_metric("story_heat_cluster_merges_total", "counter", "Cluster merges applied")
register_metric("story_heat_anomalies_flagged_total", "counter", "Heat anomalies flagged by type")
register_metric("story_heat_degraded_operations_total", "counter", "Operations served a default")


def record_cluster_created(category: str | None = None) -> None:
    inc_counter("story_heat_clusters_created_total", labels={"category": category or "GENERAL"})


def record_article_attached(*, was_new: bool, duplicate_index: int) -> None:
    if not was_new:
        outcome = "reattach"
    elif duplicate_index > 0:
        outcome = "duplicate_title"
    else:
        outcome = "unique_title"
    inc_counter("story_heat_articles_attached_total", labels={"outcome": outcome})


def record_cluster_merged() -> None:
    inc_counter("story_heat_cluster_merges_total")


def record_anomaly_flagged(anomaly_type: str) -> None:
    inc_counter("story_heat_anomalies_flagged_total", labels={"type": anomaly_type})


def record_degraded(operation: str, error_kind: str) -> None:
    inc_counter(
        "story_heat_degraded_operations_total",
        labels={"operation": operation, "error_kind": error_kind},
    )


def generate_metrics() -> str:
    lines: list[str] = []

    lines.append("# HELP story_heat_uptime_seconds Process uptime in seconds")
    lines.append("# TYPE story_heat_uptime_seconds gauge")
    lines.append(f"story_heat_uptime_seconds {time.time() - _START_TIME:.2f}")
    lines.append("")

    lines.append("# HELP story_heat_http_requests_total Total HTTP requests")
    lines.append("# TYPE story_heat_http_requests_total counter")
    with _LOCK:
        for (method, endpoint, status), count in _REQUEST_COUNT.items():
            labels = f'method="{method}",endpoint="{endpoint}",status="{status}"'
            lines.append(f"story_heat_http_requests_total{{{labels}}} {count}")
    lines.append("")

    lines.append("# HELP story_heat_http_request_duration_seconds HTTP request latency")
    lines.append("# TYPE story_heat_http_request_duration_seconds histogram")
    with _LOCK:
        for (method, endpoint), latencies in _REQUEST_LATENCY.items():
            if not latencies:
                continue
            base = f'method="{method}",endpoint="{endpoint}"'
            name = "story_heat_http_request_duration_seconds"
            for bucket in LATENCY_BUCKETS:
                count = sum(1 for lat in latencies if lat <= bucket)
                lines.append(f'{name}_bucket{{{base},le="{bucket}"}} {count}')
            lines.append(f'{name}_bucket{{{base},le="+Inf"}} {len(latencies)}')
            lines.append(f"{name}_sum{{{base}}} {sum(latencies):.4f}")
            lines.append(f"{name}_count{{{base}}} {len(latencies)}")
    lines.append("")

    with _LOCK:
        for metric in _METRICS.values():
            if not metric.values:
                continue
            lines.append(f"# HELP {metric.name} {metric.help_text}")
            lines.append(f"# TYPE {metric.name} {metric.metric_type}")
            for mv in metric.values:
                lines.append(f"{metric.name}{_labels_to_str(mv.labels)} {mv.value}")
            lines.append("")

    return "\n".join(lines)


def normalize_path(path: str) -> str:
    """Collapse id segments so per-cluster paths share one label."""
    normalized = _UUID_SEGMENT_RE.sub("/{id}", path)
    normalized = _NUMERIC_SEGMENT_RE.sub("/{id}", normalized)
    return _CLUSTER_SEGMENT_RE.sub(r"\1/{id}", normalized)


class MetricsMiddleware:
    """ASGI middleware to record request metrics."""

    def __init__(self, app: Any) -> None:
        self.app = app

    async def __call__(
        self,
        scope: dict[str, Any],
        receive: Callable[[], Any],
        send: Callable[[dict[str, Any]], Any],
    ) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start_time = time.time()
        status_code = 500

        async def send_wrapper(message: dict[str, Any]) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message.get("status", 500)
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            record_request(
                scope.get("method", "UNKNOWN"),
                normalize_path(scope.get("path", "/")),
                status_code,
                time.time() - start_time,
            )
