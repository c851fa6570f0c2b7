"""
Prometheus metrics for calendar sync and display push.

Design principles:
- Low cardinality (controlled labels)
- Best-effort (never block main flow)

ALLOWED LABELS (bounded sets):
- status:    "ok", "error", "skipped" (sync runs); "ok", "failed" (SSE frames)
- provider:  "EXCHANGE", "GOOGLE", "CALDAV", "ICS", "unknown"
- kind:      "calendar_update", "config_update", "heartbeat", "init"

FORBIDDEN AS LABELS: calendar ids, display ids, tokens, error messages.
Use logs for per-entity debugging.
"""

import logging

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY,
)

logger = logging.getLogger(__name__)

# =============================================================================
# DISPATCH METRICS
# =============================================================================

sync_dispatch_runs_total = Counter(
    "sync_dispatch_runs_total",
    "Dispatch cycles by outcome",
    ["status"],  # ok, error
)

sync_dispatch_duration_ms = Histogram(
    "sync_dispatch_duration_ms",
    "Dispatch cycle duration in milliseconds",
    [],
    buckets=[10, 50, 100, 500, 1000, 5000, 15000, 60000, 300000],
)

sync_calendars_dispatched_total = Counter(
    "sync_calendars_dispatched_total",
    "Calendars handed to the sync runner",
    [],
)

sync_stale_locks_recovered_total = Counter(
    "sync_stale_locks_recovered_total",
    "Calendars force-recovered from an abandoned SYNCING state",
    [],
)

sync_dispatch_last_success_timestamp = Gauge(
    "sync_dispatch_last_success_timestamp",
    "Unix timestamp of last successful dispatch cycle",
    [],
)

# =============================================================================
# RUNNER METRICS
# =============================================================================

sync_runs_total = Counter(
    "sync_runs_total",
    "Per-calendar sync runs by provider and status",
    ["provider", "status"],  # status: ok, error, skipped
)

sync_run_duration_ms = Histogram(
    "sync_run_duration_ms",
    "Per-calendar sync duration in milliseconds",
    ["provider"],
    buckets=[50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000, 120000],
)

# =============================================================================
# PUSH (SSE) METRICS
# =============================================================================

sse_active_connections = Gauge(
    "sse_active_connections",
    "Currently registered display push connections",
    [],
)

sse_frames_total = Counter(
    "sse_frames_total",
    "Frames written to display connections",
    ["kind", "status"],  # status: ok, failed
)


# =============================================================================
# HELPERS
# =============================================================================


def record_dispatch(
    status: str,
    duration_ms: float,
    dispatched: int = 0,
    recovered: int = 0,
) -> None:
    """Record one dispatch cycle."""
    try:
        sync_dispatch_runs_total.labels(status=status).inc()
        if duration_ms > 0:
            sync_dispatch_duration_ms.observe(duration_ms)
        if dispatched:
            sync_calendars_dispatched_total.inc(dispatched)
        if recovered:
            sync_stale_locks_recovered_total.inc(recovered)
        if status == "ok":
            sync_dispatch_last_success_timestamp.set_to_current_time()
    except Exception as e:
        logger.warning(f"Failed to record dispatch metric: {e}")


def record_sync_run(provider: str, status: str, duration_ms: float = 0.0) -> None:
    """Record one calendar sync run."""
    try:
        provider = provider or "unknown"
        sync_runs_total.labels(provider=provider, status=status).inc()
        if duration_ms > 0:
            sync_run_duration_ms.labels(provider=provider).observe(duration_ms)
    except Exception as e:
        logger.warning(f"Failed to record sync run metric: {e}")


def record_sse_frame(kind: str, ok: bool) -> None:
    try:
        sse_frames_total.labels(kind=kind, status="ok" if ok else "failed").inc()
    except Exception as e:
        logger.warning(f"Failed to record SSE frame metric: {e}")


def set_sse_active_connections(count: int) -> None:
    try:
        sse_active_connections.set(count)
    except Exception as e:
        logger.warning(f"Failed to set SSE connections gauge: {e}")


def get_metrics_text() -> tuple[bytes, str]:
    """Return (payload, content_type) for the /metrics endpoint."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
