"""Observability helpers."""

from ghactivity.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_activity_query,
    record_automation_run,
    record_cache_refresh,
    record_classifier_batch,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_activity_query",
    "record_automation_run",
    "record_cache_refresh",
    "record_classifier_batch",
]
