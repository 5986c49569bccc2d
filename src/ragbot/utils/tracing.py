"""Tracing helper utilities."""

from __future__ import annotations

from typing import TypedDict
from uuid import uuid4

from opentelemetry.trace import Span, get_current_span


class TraceContext(TypedDict, total=False):
    trace_id: str
    span_id: str


def generate_debug_id() -> str:
    """Return an identifier correlating a chat response with its log lines.

    Prefers the active OpenTelemetry trace id so the response can be looked up in
    the tracing backend; falls back to a random hex id outside of a span.
    """

    trace_id = get_current_trace_ids().get("trace_id")
    return trace_id or uuid4().hex


def _format_span_ids(span: Span) -> TraceContext:
    span_context = span.get_span_context()
    if not span_context.is_valid:
        return TraceContext()
    return TraceContext(
        trace_id=f"{span_context.trace_id:032x}",
        span_id=f"{span_context.span_id:016x}",
    )


def get_current_trace_ids() -> TraceContext:
    """Return the active trace/span identifiers if present."""

    return _format_span_ids(get_current_span())
