from __future__ import annotations

import random
from typing import Optional


def compute_backoff(
    attempt: int,
    base: float = 2.0,
    jitter: float = 0.5,
    max_delay: Optional[float] = 30.0,
) -> float:
    """Compute exponential backoff with jitter, capped at ``max_delay``."""
    delay = base ** attempt
    if max_delay is not None:
        delay = min(delay, max_delay)
    return delay + random.uniform(0, jitter)
