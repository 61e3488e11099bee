"""
Prometheus Metrics for Observability

Tracks stage latency, batching behaviour and job outcomes.
Exposed over HTTP for Prometheus scraping when a metrics port is configured.
"""

import time
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    start_http_server,
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Pipeline Latency - Per Stage
pipeline_latency_seconds = Histogram(
    "well_pipeline_stage_latency_seconds",
    "Time spent in each pipeline stage",
    labelnames=["stage", "status"],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

# Micro-batch sizes (real items, padding excluded)
batch_size_histogram = Histogram(
    "well_pipeline_batch_size",
    "Number of real images per inference call",
    buckets=[1, 2, 4, 8, 16, 32, 64]
)

# Jobs Counter
jobs_total = Counter(
    "well_pipeline_jobs_total",
    "Total number of jobs which produced an outcome",
    labelnames=["status", "failure_stage"]
)

# Jobs awaiting an outcome
pending_jobs_gauge = Gauge(
    "well_pipeline_pending_jobs",
    "Number of jobs submitted but not yet answered"
)

# Prepared images held in the batch channel (reserved or queued)
channel_occupancy_gauge = Gauge(
    "well_pipeline_batch_channel_occupancy",
    "Slots of the batch input channel currently reserved or filled"
)

protocol_violations_total = Counter(
    "well_pipeline_protocol_violations_total",
    "Results or failures received for jobs with no reply destination",
    labelnames=["kind"]
)

# Application Info
app_info = Info(
    "well_pipeline",
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


def start_metrics_server(port: int):
    """Expose the default registry on the given port."""
    start_http_server(port)


@contextmanager
def track_stage_latency(stage: str):
    """
    Context manager to track stage latency.

    Usage:
        with track_stage_latency("well_centering"):
            # do work
    """
    start = time.perf_counter()
    status = "success"
    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        duration = time.perf_counter() - start
        pipeline_latency_seconds.labels(stage=stage, status=status).observe(duration)


def record_job_completion(status: str, failure_stage: str = "none"):
    """Record job completion."""
    jobs_total.labels(status=status, failure_stage=failure_stage).inc()


def record_protocol_violation(kind: str):
    """Record a message for an unknown job."""
    protocol_violations_total.labels(kind=kind).inc()
