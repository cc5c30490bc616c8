from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable, Deque, Optional

from .config import ScrapingConfig
from .models import RateLimitStatus

MINUTE = 60.0
HOUR = 3600.0


class RateLimiter:
    """Thread-safe sliding-window limiter for per-minute and per-hour request ceilings.

    One instance is shared by every session in the process: the external API
    enforces a global ceiling, so all throttling decisions route through here.
    Request timestamps live in a bounded ring; entries older than one hour are
    pruned on every read and write.
    """

    def __init__(
        self,
        config: ScrapingConfig,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._history: Deque[float] = deque(maxlen=max(1, config.requests_per_hour))

    @property
    def config(self) -> ScrapingConfig:
        return self._config

    def check_rate_limit(self) -> RateLimitStatus:
        """Report current usage and how long the caller should wait before the next request."""
        with self._lock:
            return self._status(self._clock())

    def record_request(self) -> None:
        """Append the current time to the request ring."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            self._history.append(now)

    def acquire(self, max_wait: Optional[float] = None) -> bool:
        """Block until a request is allowed, then record it.

        Returns False without recording when the required wait exceeds
        ``max_wait`` seconds. The lock is held while waiting so concurrent
        sessions queue behind each other instead of racing for the same slot.
        """
        with self._lock:
            while True:
                now = self._clock()
                status = self._status(now)
                if status.suggested_delay <= 0:
                    break
                if max_wait is not None and status.suggested_delay > max_wait:
                    return False
                self._sleep(status.suggested_delay)
            self._history.append(self._clock())
            return True

    def reset(self) -> None:
        with self._lock:
            self._history.clear()

    def _prune(self, now: float) -> None:
        cutoff = now - HOUR
        while self._history and self._history[0] <= cutoff:
            self._history.popleft()

    def _status(self, now: float) -> RateLimitStatus:
        self._prune(now)
        minute_cutoff = now - MINUTE
        in_minute = [ts for ts in self._history if ts > minute_cutoff]
        last_minute = len(in_minute)
        last_hour = len(self._history)

        minute_limited = last_minute >= self._config.requests_per_minute
        hour_limited = last_hour >= self._config.requests_per_hour

        delay = 0.0
        if self._history:
            delay = max(0.0, self._history[-1] + self._config.inter_request_delay - now)
        if minute_limited:
            # Wait until enough entries slide out of the minute window.
            excess = last_minute - self._config.requests_per_minute
            delay = max(delay, in_minute[excess] + MINUTE - now)
        if hour_limited:
            excess = last_hour - self._config.requests_per_hour
            delay = max(delay, self._history[excess] + HOUR - now)

        return RateLimitStatus(
            requests_last_minute=last_minute,
            requests_last_hour=last_hour,
            is_limited=minute_limited or hour_limited,
            suggested_delay=delay,
            next_allowed_request=now + delay,
        )
