from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

_REQ_COUNT = Counter(
    "routerfleet_http_requests_total",
    "Total HTTP requests",
    labelnames=("method", "path", "status"),
)
_REQ_LATENCY = Histogram(
    "routerfleet_http_request_duration_seconds",
    "HTTP request latency seconds",
    labelnames=("method", "path"),
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.3, 0.5, 1.0, 2.5, 5.0, 10.0),
)
_DISPATCH_UNITS = Counter(
    "routerfleet_dispatch_units_total",
    "Per-node dispatch units by outcome",
    labelnames=("operation", "result"),
)
_DISPATCH_LATENCY = Histogram(
    "routerfleet_dispatch_duration_seconds",
    "Wall time of a full cluster dispatch",
    labelnames=("operation",),
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0, 30.0, 60.0),
)
_RUNTIME_LOOPS = Counter(
    "routerfleet_runtime_loops_total",
    "Runtime loop ticks",
    labelnames=("loop", "result"),
)


def observe_http_request(*, method: str, path: str, status: int, duration_seconds: float) -> None:
    _REQ_COUNT.labels(method=method, path=path, status=str(status)).inc()
    _REQ_LATENCY.labels(method=method, path=path).observe(duration_seconds)


def record_dispatch_unit(*, operation: str, result: str) -> None:
    _DISPATCH_UNITS.labels(operation=operation, result=result).inc()


def observe_dispatch(*, operation: str, duration_seconds: float) -> None:
    _DISPATCH_LATENCY.labels(operation=operation).observe(duration_seconds)


def record_runtime_loop(*, loop: str, ok: bool) -> None:
    _RUNTIME_LOOPS.labels(loop=loop, result="ok" if ok else "error").inc()


def render_metrics() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
