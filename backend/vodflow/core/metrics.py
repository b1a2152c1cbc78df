"""Prometheus metrics for the pipeline and the streaming gateway."""

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST,
    multiprocess,
)
import os

# Create a custom registry for our metrics
REGISTRY = CollectorRegistry()

# Check if running in multiprocess mode (e.g., with gunicorn)
if "PROMETHEUS_MULTIPROC_DIR" in os.environ or "prometheus_multiproc_dir" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "vodflow_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# HTTP Request Metrics
# ============================================
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)


# ============================================
# Pipeline Metrics
# ============================================
PIPELINE_ACTIVE_RUNS = Gauge(
    "pipeline_active_runs",
    "Number of pipeline runs currently executing in this process",
    registry=REGISTRY,
)

PIPELINE_RUNS_TOTAL = Counter(
    "pipeline_runs_total",
    "Finished pipeline runs by outcome",
    ["outcome"],
    registry=REGISTRY,
)

STAGE_ATTEMPTS_TOTAL = Counter(
    "pipeline_stage_attempts_total",
    "Stage attempts by stage and result",
    ["stage", "result"],
    registry=REGISTRY,
)

STAGE_DURATION_SECONDS = Histogram(
    "pipeline_stage_duration_seconds",
    "Duration of a single stage attempt",
    ["stage"],
    buckets=[0.1, 1.0, 5.0, 30.0, 60.0, 300.0, 900.0, 1800.0, 3600.0],
    registry=REGISTRY,
)


# ============================================
# Streaming Gateway Metrics
# ============================================
CACHE_LOOKUPS_TOTAL = Counter(
    "stream_cache_lookups_total",
    "Cache lookups for manifests and segments by result (hit, miss, error)",
    ["format", "result"],
    registry=REGISTRY,
)

SIGNED_URLS_TOTAL = Counter(
    "stream_signed_urls_total",
    "Signed URLs issued by purpose",
    ["purpose"],
    registry=REGISTRY,
)


def set_app_info(version: str, environment: str) -> None:
    APP_INFO.info({"version": version, "environment": environment})


def get_metrics() -> bytes:
    """Render the registry in Prometheus text format."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
