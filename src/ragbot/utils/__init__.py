"""Utility helpers shared across services."""

from .retry import exponential_backoff, next_attempt_at
from .tracing import TraceContext, generate_debug_id, get_current_trace_ids

__all__ = [
    "TraceContext",
    "exponential_backoff",
    "generate_debug_id",
    "get_current_trace_ids",
    "next_attempt_at",
]
