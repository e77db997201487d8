"""
Exponential back-off with jitter for dispatch retries.

    delay = min(BASE_MS * 2**attempts, MAX_MS) + uniform[0, JITTER_MS)
"""
from __future__ import annotations

import random

BASE_MS: float = 1000.0
MAX_MS: float = 32000.0
JITTER_MS: float = 1000.0


def base_delay(attempts: int) -> float:
    """Deterministic component of the back-off, in milliseconds."""
    return min(BASE_MS * (2 ** max(attempts, 0)), MAX_MS)


def backoff_delay(attempts: int) -> float:
    """Back-off before the next dispatch attempt, in milliseconds."""
    return base_delay(attempts) + random.random() * JITTER_MS
