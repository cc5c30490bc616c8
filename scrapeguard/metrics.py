from __future__ import annotations

import time
from collections import Counter, deque
from dataclasses import asdict
from threading import Lock
from typing import Callable, Deque, Dict, List, Optional

from .models import AccountOutcome, ErrorType, MetricsSnapshot, SessionType

MIN_SAMPLES = 5


class MetricsCollector:
    """Thread-safe collector of per-account scraping outcomes.

    Records AccountOutcome events and produces aggregated MetricsSnapshot
    objects over sliding time windows. The error rate per session type feeds
    the pre-session risk assessment."""

    def __init__(self, clock: Callable[[], float] = time.time, max_events: int = 10000) -> None:
        self._clock = clock
        self._lock = Lock()
        self._events: Deque[tuple[float, AccountOutcome]] = deque(maxlen=max_events)

    def record(self, outcome: AccountOutcome) -> None:
        """Record an outcome with the current timestamp."""
        with self._lock:
            self._events.append((self._clock(), outcome))

    def _window(self, window_secs: float, session_type: Optional[SessionType] = None) -> List[AccountOutcome]:
        cutoff = self._clock() - window_secs
        with self._lock:
            events = [e for ts, e in self._events if ts >= cutoff]
        if session_type is not None:
            events = [e for e in events if e.session_type is session_type]
        return events

    def snapshot(self, window_secs: int, session_type: Optional[SessionType] = None) -> MetricsSnapshot:
        """Return aggregated metrics for outcomes within the last window_secs seconds."""
        events = self._window(window_secs, session_type)
        total = len(events)
        error_counts = Counter(e.error_type.value for e in events if not e.success and e.error_type is not None)
        avg_latency_ms = (sum(e.latency_ms for e in events) / total) if total else 0.0

        return MetricsSnapshot(
            window_secs=window_secs,
            total_requests=total,
            success_count=sum(1 for e in events if e.success),
            error_counts=dict(error_counts),
            rate_limit_count=error_counts.get(ErrorType.RATE_LIMIT.value, 0),
            timeout_count=error_counts.get(ErrorType.TIMEOUT_ERROR.value, 0),
            avg_latency_ms=avg_latency_ms,
            timestamp=self._clock(),
        )

    def error_rate(self, session_type: Optional[SessionType] = None, window_secs: float = 7 * 24 * 3600.0) -> Optional[float]:
        """Failed share of outcomes in the window, or None below MIN_SAMPLES outcomes."""
        events = self._window(window_secs, session_type)
        if len(events) < MIN_SAMPLES:
            return None
        return sum(1 for e in events if not e.success) / len(events)

    def export_json(self) -> List[Dict]:
        """Export all recorded outcomes as a list of dictionaries."""
        with self._lock:
            events = list(self._events)
        rows = []
        for ts, e in events:
            row = asdict(e)
            row["session_type"] = e.session_type.value
            row["error_type"] = e.error_type.value if e.error_type else None
            rows.append({"timestamp": ts, **row})
        return rows
