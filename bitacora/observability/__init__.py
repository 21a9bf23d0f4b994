"""Observability helpers."""

from bitacora.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_capture,
    record_commit,
    record_classification_failure,
    record_cache_lookup,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_capture",
    "record_commit",
    "record_classification_failure",
    "record_cache_lookup",
]
