from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from ..contracts import RetryPolicy, utcnow


def compute_delay(policy: Optional[RetryPolicy]) -> float:
    """Fixed delay in seconds between attempts of a step."""
    if policy is None:
        return 0.0
    return policy.delay_ms / 1000.0


def next_attempt_at(
    policy: Optional[RetryPolicy], now: Optional[datetime] = None
) -> datetime:
    """Wall-clock time at which the next attempt may start."""
    return (now or utcnow()) + timedelta(seconds=compute_delay(policy))

