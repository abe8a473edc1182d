"""
Prometheus Metrics for Observability

Tracks upscaling performance, device usage and GPU failovers.
Exposes /metrics endpoint for Prometheus scraping.
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

# Upscale Latency - Per Phase
upscale_phase_latency_seconds = Histogram(
    "upscale_phase_latency_seconds",
    "Time spent in each upscaling phase",
    labelnames=["phase", "status"],
    buckets=[0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)

# Total Upscale Duration
upscale_total_duration_seconds = Histogram(
    "upscale_total_duration_seconds",
    "Total time for one upscale call",
    labelnames=["outcome"],
    buckets=[0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0]
)

# Upscale Outcomes
upscale_requests_total = Counter(
    "upscale_requests_total",
    "Total number of upscale calls by outcome",
    labelnames=["outcome"]
)

# Tiles
upscale_tiles_processed_total = Counter(
    "upscale_tiles_processed_total",
    "Total number of tiles run through the model",
    labelnames=["device"]
)

# GPU -> CPU failovers
upscale_gpu_failovers_total = Counter(
    "upscale_gpu_failovers_total",
    "Number of times GPU inference failed and the service fell back to CPU"
)

# Session lifecycle
inference_session_init_seconds = Histogram(
    "inference_session_init_seconds",
    "Time to build the ONNX Runtime session",
    labelnames=["device"],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0]
)

inference_session_active_gauge = Gauge(
    "inference_session_active",
    "1 when a session is open on the given device",
    labelnames=["device"]
)

# Active upscales (0 or 1 per process)
active_upscales_gauge = Gauge(
    "upscale_active_operations",
    "Number of upscale operations currently in flight"
)

# Model downloads
model_downloads_total = Counter(
    "model_downloads_total",
    "Model download attempts by result",
    labelnames=["status"]
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
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 60.0]
)

# Application Info
app_info = Info(
    "imagery_upscaler",
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
def track_phase_latency(phase: str):
    """
    Context manager to track phase latency.

    Usage:
        with track_phase_latency("processing_tiles"):
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
        upscale_phase_latency_seconds.labels(phase=phase, status=status).observe(duration)


def record_upscale_outcome(outcome: str, duration_seconds: float = None):
    """Record the terminal outcome of an upscale call."""
    upscale_requests_total.labels(outcome=outcome).inc()
    if duration_seconds is not None:
        upscale_total_duration_seconds.labels(outcome=outcome).observe(duration_seconds)


def record_tile_processed(device: str):
    upscale_tiles_processed_total.labels(device=device).inc()


def record_gpu_failover():
    upscale_gpu_failovers_total.inc()


def record_session_created(device: str, load_time_seconds: float):
    """Record a freshly built inference session."""
    inference_session_init_seconds.labels(device=device).observe(load_time_seconds)
    inference_session_active_gauge.labels(device=device).set(1)


def record_session_released(device: str):
    inference_session_active_gauge.labels(device=device).set(0)


def record_model_download(status: str):
    model_downloads_total.labels(status=status).inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
