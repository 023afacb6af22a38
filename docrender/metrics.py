"""Prometheus instruments for render jobs and readiness layers."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

RENDER_JOBS = Counter(
    "docrender_jobs_total",
    "Render jobs by output type and outcome",
    ["output", "outcome"],
)
RENDER_DURATION = Histogram(
    "docrender_job_duration_seconds",
    "Wall-clock duration of render jobs",
    ["output"],
    buckets=(1, 2.5, 5, 10, 20, 30, 60, 120, 240, 480),
)
READINESS_LAYERS = Counter(
    "docrender_readiness_layers_total",
    "Readiness layer outcomes",
    ["layer", "status"],
)
BROKEN_IMAGES = Counter(
    "docrender_broken_images_total",
    "Images replaced with the fallback asset",
)
LAUNCH_FAILURES = Counter(
    "docrender_launch_failures_total",
    "Jobs that could not start a browser",
)


def observe_job(output: str, *, success: bool, duration_ms: int) -> None:
    RENDER_JOBS.labels(output=output, outcome="success" if success else "failure").inc()
    RENDER_DURATION.labels(output=output).observe(max(duration_ms, 0) / 1000)


def observe_layer(layer: str, status: str) -> None:
    READINESS_LAYERS.labels(layer=layer, status=status).inc()


def observe_broken_images(count: int) -> None:
    if count > 0:
        BROKEN_IMAGES.inc(count)
