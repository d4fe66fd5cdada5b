"""Prometheus metrics for the pitch pipeline.

Tracks HTTP traffic, transcode queue depth, worker occupancy and job outcomes.
"""

import os

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    multiprocess,
)

REGISTRY = CollectorRegistry()

if "prometheus_multiproc_dir" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "pitchstream_app",
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

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "Number of HTTP requests currently in progress",
    ["method", "endpoint"],
    registry=REGISTRY,
)


# ============================================
# Transcode Worker Metrics
# ============================================
TRANSCODE_QUEUE_DEPTH = Gauge(
    "transcode_queue_depth",
    "Number of transcode jobs waiting in the in-process queue",
    registry=REGISTRY,
)

TRANSCODE_WORKER_BUSY = Gauge(
    "transcode_worker_busy",
    "1 while the worker is running a job, 0 when idle",
    registry=REGISTRY,
)

TRANSCODE_JOBS_TOTAL = Counter(
    "transcode_jobs_total",
    "Transcode jobs by outcome",
    ["status"],
    registry=REGISTRY,
)

TRANSCODE_JOB_DURATION_SECONDS = Histogram(
    "transcode_job_duration_seconds",
    "Wall-clock duration of a transcode job",
    ["status"],
    buckets=[5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1200.0],
    registry=REGISTRY,
)

MEDIA_PROBE_FAILURES_TOTAL = Counter(
    "media_probe_failures_total",
    "Media probes that failed, by call site",
    ["stage"],
    registry=REGISTRY,
)

UPLOAD_VALIDATION_REJECTIONS_TOTAL = Counter(
    "upload_validation_rejections_total",
    "Finalized uploads rejected before transcoding",
    ["reason"],
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Generate latest metrics in Prometheus format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })
