"""Prometheus metrics and Sentry integration for the meeting sync workers.

Provides:
- Counters/histograms for sync operations, auto-end checks and re-arms
- track_sync_operation(): Context manager recording duration and outcome
- get_metrics_response(): Prometheus exposition format response for /metrics
- init_sentry(): Initialize Sentry for unhandled worker errors
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import sentry_sdk
import structlog
from fastapi.responses import Response
from prometheus_client import REGISTRY, Counter, Histogram, generate_latest

logger = structlog.get_logger(__name__)

# ── Sync Metrics ─────────────────────────────────────────────────────────────

meeting_sync_operations_total = Counter(
    "meeting_sync_operations_total",
    "Meeting sync operations processed by the workers",
    ["action", "outcome"],
)

meeting_sync_duration_seconds = Histogram(
    "meeting_sync_duration_seconds",
    "Duration of a meeting sync operation including the provider call",
    ["action"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# ── Auto-End Metrics ─────────────────────────────────────────────────────────

meeting_auto_end_checks_total = Counter(
    "meeting_auto_end_checks_total",
    "Overdue meeting checks recorded, by outcome",
    ["outcome"],
)

# ── Re-arm Metrics ───────────────────────────────────────────────────────────

meeting_errors_rearmed_total = Counter(
    "meeting_errors_rearmed_total",
    "Events and sessions moved back to pending after a parked error",
)


# ── Sync Metrics Helper ─────────────────────────────────────────────────────


@asynccontextmanager
async def track_sync_operation(action: str) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks a sync operation.

    Usage:
        async with track_sync_operation("create") as tracker:
            ...
            tracker["outcome"] = "parked"

    The outcome defaults to "success", and to "error" when the block raises.
    """
    tracker: dict[str, Any] = {"outcome": "success"}
    start_time = time.perf_counter()

    try:
        yield tracker
    except Exception:
        tracker["outcome"] = "error"
        raise
    finally:
        meeting_sync_duration_seconds.labels(action=action).observe(
            time.perf_counter() - start_time
        )
        meeting_sync_operations_total.labels(
            action=action,
            outcome=tracker["outcome"],
        ).inc()


# ── Exposition ───────────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK for the worker process.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    traces_sample_rate = 0.1 if environment == "production" else 1.0

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
    )
    sentry_sdk.set_tag("component", "meetsync")
    logger.info("sentry_initialized", environment=environment)
