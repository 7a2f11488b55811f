"""
Prometheus metrics for sheetstore

Instrumentation for the write path (saves, conflicts, lock contention), the
read path (cache hits and misses) and the maintenance paths (index writes,
etag bumps, reconciliation).
"""
import os
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

REGISTRY = CollectorRegistry()


# =======================
# WRITE PATH METRICS
# =======================

saves_total = Counter(
    name="sheetstore_saves_total",
    documentation="Total number of save attempts by outcome",
    labelnames=["form_key", "outcome"],  # outcome: created, updated, STALE_WRITE, DUPLICATE, ...
    registry=REGISTRY,
)

save_duration_seconds = Histogram(
    name="sheetstore_save_duration_seconds",
    documentation="Time spent in SubmissionStore.save in seconds",
    labelnames=["form_key"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)

lock_acquisitions_total = Counter(
    name="sheetstore_lock_acquisitions_total",
    documentation="Advisory lock acquisition attempts",
    labelnames=["status"],  # status: acquired, timeout, error
    registry=REGISTRY,
)

# =======================
# READ PATH METRICS
# =======================

cache_requests_total = Counter(
    name="sheetstore_cache_requests_total",
    documentation="Cache lookups by namespace and result",
    labelnames=["namespace", "result"],  # result: hit, miss, error
    registry=REGISTRY,
)

rows_read_total = Counter(
    name="sheetstore_rows_read_total",
    documentation="Rows read from the tabular store while building pages",
    labelnames=["table", "mode"],  # mode: projected, hydrated
    registry=REGISTRY,
)

# =======================
# MAINTENANCE METRICS
# =======================

etag_bumps_total = Counter(
    name="sheetstore_etag_bumps_total",
    documentation="Etag generations by reason",
    labelnames=["reason"],
    registry=REGISTRY,
)

maintenance_failures_total = Counter(
    name="sheetstore_maintenance_failures_total",
    documentation="Swallowed index/cache maintenance failures",
    labelnames=["component", "operation"],
    registry=REGISTRY,
)

reconciled_rows_total = Counter(
    name="sheetstore_reconciled_rows_total",
    documentation="Rows re-derived by the reconciliation path",
    labelnames=["table", "mode"],  # mode: reconcile, rebuild
    registry=REGISTRY,
)


# =======================
# HELPER FUNCTIONS
# =======================

def generate_metrics() -> bytes:
    """
    Generate Prometheus metrics in text format

    Returns:
        Metrics in Prometheus text format
    """
    return generate_latest(REGISTRY)


def start_metrics_server(port: Optional[int] = None) -> None:
    """
    Start HTTP server for Prometheus metrics

    Args:
        port: Port to listen on (defaults to env var METRICS_PORT or 8000)
    """
    from prometheus_client import start_http_server

    metrics_port = port or int(os.getenv("METRICS_PORT", "8000"))
    start_http_server(metrics_port, registry=REGISTRY)


class track_duration:
    """
    Context manager for tracking operation duration

    Usage:
        with track_duration(save_duration_seconds, form_key="orders"):
            ...
    """

    def __init__(self, histogram: Histogram, **labels):
        self.histogram = histogram
        self.labels = labels
        self.timer = None

    def __enter__(self):
        self.timer = self.histogram.labels(**self.labels).time()
        self.timer.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.timer.__exit__(exc_type, exc_val, exc_tb)
        return False


def increment_counter(counter: Counter, value: float = 1.0, **labels) -> None:
    """
    Increment a counter metric

    Args:
        counter: Prometheus Counter metric
        value: Amount to increment (default: 1.0)
        **labels: Label values for the metric
    """
    counter.labels(**labels).inc(value)


def record_cache_lookup(namespace: str, hit: bool) -> None:
    """Count a cache lookup as a hit or a miss."""
    increment_counter(cache_requests_total, 1, namespace=namespace, result="hit" if hit else "miss")


def record_maintenance_failure(component: str, operation: str) -> None:
    """Count a swallowed index or cache maintenance failure."""
    increment_counter(maintenance_failures_total, 1, component=component, operation=operation)
