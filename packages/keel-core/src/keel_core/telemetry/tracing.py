"""OpenTelemetry tracing utilities for keel.

Span errors are recorded with sanitized messages so tool output
containing credentials never reaches the trace backend.

Span names follow the ``keel.<component>.<operation>`` convention.
"""

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode, Tracer

from keel_core.telemetry.sanitization import sanitize_error_message

if TYPE_CHECKING:
    from opentelemetry.trace import Span

_TRACER_NAME = "keel_core"


def get_tracer() -> Tracer:
    """Tracer for keel spans (uses the globally configured provider)."""
    return trace.get_tracer(_TRACER_NAME)


def _record_error(span: Span, error: Exception) -> None:
    sanitized = sanitize_error_message(str(error))
    span.set_status(Status(StatusCode.ERROR, sanitized))
    span.set_attribute("exception.type", type(error).__name__)
    span.set_attribute("exception.message", sanitized)


@contextmanager
def create_span(
    name: str,
    attributes: dict[str, Any] | None = None,
) -> Generator[Span, None, None]:
    """Create a span as a context manager.

    Args:
        name: The name for the span.
        attributes: Optional attributes to set on the span. None values are skipped.

    Yields:
        The created span for additional attribute setting.

    Examples:
        >>> with create_span("keel.pipeline.run", attributes={"keel.branch": "dev"}) as span:
        ...     span.set_attribute("keel.build_id", "42")
    """
    tracer = get_tracer()
    with tracer.start_as_current_span(
        name,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            _record_error(span, e)
            raise


__all__ = ["create_span", "get_tracer"]
