"""
Prometheus Metrics for Observability

Tracks inference call latency, retries, ingestion outcomes and
preview-registry activity. Exposed via /api/v1/metrics.
"""

import time
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Remote inference calls
inference_latency_seconds = Histogram(
    "atelier_inference_latency_seconds",
    "Time spent in each remote inference operation",
    labelnames=["operation", "status"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0]
)

inference_calls_total = Counter(
    "atelier_inference_calls_total",
    "Total number of remote inference calls",
    labelnames=["operation", "status", "http_status"]
)

retry_attempts_total = Counter(
    "atelier_retry_attempts_total",
    "Retries issued by the retry wrapper",
    labelnames=["operation"]
)

# Ingestion pipeline
ingestion_transitions_total = Counter(
    "atelier_ingestion_transitions_total",
    "Ingestion pipeline stage transitions",
    labelnames=["from_stage", "to_stage"]
)

ingestion_outcomes_total = Counter(
    "atelier_ingestion_outcomes_total",
    "Terminal ingestion outcomes by strategy path",
    labelnames=["outcome", "path"]
)

# Preview registry
preview_results_total = Counter(
    "atelier_preview_results_total",
    "Preview generation completions (stale = dropped after revert/replace)",
    labelnames=["status"]
)

previews_inflight_gauge = Gauge(
    "atelier_previews_inflight",
    "Preview generation calls currently running"
)

# API Request Metrics
http_requests_total = Counter(
    "atelier_http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "atelier_http_request_duration_seconds",
    "HTTP request duration",
    labelnames=["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Application Info
app_info = Info(
    "atelier_app",
    "Application information"
)


# =============================================================================
# Helper Functions
# =============================================================================

def set_app_info(version: str, environment: str):
    """Set application info metric."""
    app_info.info({
        "version": version,
        "environment": environment
    })


@contextmanager
def track_inference_latency(operation: str):
    """
    Context manager to track a remote call's latency.

    Usage:
        with track_inference_latency("detect_person"):
            await client.post(...)
    """
    start = time.perf_counter()
    status = "success"
    try:
        yield
    except BaseException:
        status = "error"
        raise
    finally:
        inference_latency_seconds.labels(operation=operation, status=status).observe(
            time.perf_counter() - start
        )


def record_inference_call(operation: str, status: str, http_status: int = 0):
    """Record a remote inference call."""
    inference_calls_total.labels(
        operation=operation,
        status=status,
        http_status=str(http_status)
    ).inc()


def record_retry(operation: str):
    retry_attempts_total.labels(operation=operation).inc()


def record_transition(from_stage: str, to_stage: str):
    ingestion_transitions_total.labels(from_stage=from_stage, to_stage=to_stage).inc()


def record_ingestion_outcome(outcome: str, path: str):
    """Record a terminal ingestion outcome (done/failed) and the path taken."""
    ingestion_outcomes_total.labels(outcome=outcome, path=path).inc()


def record_preview_result(status: str):
    preview_results_total.labels(status=status).inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
