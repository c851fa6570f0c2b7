"""
Sync and push telemetry.

Provides Prometheus metrics for dispatch cycles, per-calendar sync runs and
display push connections, plus Sentry error reporting.
"""

from roomcast.telemetry.metrics import (
    get_metrics_text,
    record_dispatch,
    record_sse_frame,
    record_sync_run,
    set_sse_active_connections,
)
from roomcast.telemetry.sentry import (
    capture_exception,
    init_sentry,
    is_sentry_enabled,
    sentry_job_context,
)

__all__ = [
    "get_metrics_text",
    "record_dispatch",
    "record_sse_frame",
    "record_sync_run",
    "set_sse_active_connections",
    "capture_exception",
    "init_sentry",
    "is_sentry_enabled",
    "sentry_job_context",
]
