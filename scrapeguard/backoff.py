from __future__ import annotations

import random
from typing import Optional


class BackoffStrategy:
    """Exponential backoff for retry delays.

    Computes min(base * 2^attempt, max) where attempt counts retries already
    made (0 for the first retry). An optional jitter ratio adds up to that
    fraction of the delay on top.
    """

    def __init__(self, base_seconds: float = 1.0, max_seconds: float = 30.0, jitter_ratio: float = 0.0) -> None:
        self._base = base_seconds
        self._max = max_seconds
        self._jitter_ratio = max(0.0, jitter_ratio)

    @property
    def max_seconds(self) -> float:
        return self._max

    def get_sleep(self, attempt: int, error_type: Optional[str] = None) -> float:
        """Calculate the backoff sleep duration in seconds for a given retry attempt."""
        exp = min(self._max, self._base * (2 ** max(attempt, 0)))
        if not self._jitter_ratio:
            return exp
        return exp + random.uniform(0, exp * self._jitter_ratio)
