"""
Prometheus Metrics for Observability

Tracks cache effectiveness, per-stage latency and resolve outcomes.
Exposes /metrics endpoint for Prometheus scraping.
"""

import time
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Pipeline Latency - Per Stage
pipeline_latency_seconds = Histogram(
    "pipeline_latency_seconds",
    "Time spent in each pipeline stage",
    labelnames=["stage", "status"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)

# Resolve outcomes
resolve_total = Counter(
    "resolve_total",
    "Total number of resolve calls by terminal state",
    labelnames=["status"]
)

# Cache lookups per tier
cache_lookups_total = Counter(
    "cache_lookups_total",
    "Cache lookups by tier and result",
    labelnames=["tier", "result"]
)

# Callers that joined an already running computation
inflight_shared_total = Counter(
    "inflight_shared_total",
    "Resolve calls that waited on an in-flight computation",
    labelnames=["kind"]
)

# API Request Metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration",
    labelnames=["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0, 120.0, 600.0]
)

# Application Info
app_info = Info(
    "upscale_proxy",
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
def track_stage_latency(stage: str):
    """
    Context manager to track stage latency.

    Usage:
        with track_stage_latency("upscale"):
            # do work
    """
    start = time.time()
    status = "success"
    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        duration = time.time() - start
        pipeline_latency_seconds.labels(stage=stage, status=status).observe(duration)


def record_cache_lookup(tier: str, hit: bool):
    """Record a cache lookup against the raw or resolved tier."""
    cache_lookups_total.labels(tier=tier, result="hit" if hit else "miss").inc()


def record_resolve(status: str):
    """Record the terminal state of a resolve call."""
    resolve_total.labels(status=status).inc()


def record_inflight_shared(kind: str):
    """Record a caller that reused an in-flight computation."""
    inflight_shared_total.labels(kind=kind).inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
