"""Tracing and structured logging for keel."""

from __future__ import annotations

from keel_core.telemetry.logging import add_trace_context, configure_logging
from keel_core.telemetry.sanitization import sanitize_error_message
from keel_core.telemetry.tracing import create_span, get_tracer

__all__ = [
    "add_trace_context",
    "configure_logging",
    "create_span",
    "get_tracer",
    "sanitize_error_message",
]
