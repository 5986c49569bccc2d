"""Backoff helpers for retried outbox operations."""

from __future__ import annotations

import random
from datetime import datetime, timedelta


def exponential_backoff(
    attempt: int,
    *,
    base: float = 1.0,
    factor: float = 2.0,
    max_delay: float = 60.0,
    jitter_ratio: float = 0.0,
) -> float:
    """Return the exponential backoff delay in seconds for ``attempt``.

    Attempt numbers start at 1; anything lower is treated as the first attempt.
    Jitter is opt-in so outbox schedules stay reproducible by default.
    """

    bounded_attempt = attempt if attempt > 0 else 1
    delay = min(base * (factor ** (bounded_attempt - 1)), max_delay)
    jitter = random.uniform(0, delay * jitter_ratio) if jitter_ratio else 0.0
    return delay + jitter


def next_attempt_at(now: datetime, attempt: int, *, max_delay: float = 60.0) -> datetime:
    """Schedule the next outbox attempt after a failure."""

    return now + timedelta(seconds=exponential_backoff(attempt, max_delay=max_delay))
