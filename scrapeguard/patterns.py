from __future__ import annotations

import logging
import queue
import threading
import time
from collections import Counter, deque
from typing import Callable, Deque, Dict, Iterable, List, Optional, Tuple

from .logging_utils import log_event
from .models import ErrorContext, ErrorPattern, ErrorType, Impact, Mitigation, PatternMatch, ScrapingError

logger = logging.getLogger(__name__)

MAX_HISTORY = 10000

# (name, seconds) pairs; each window is analysed independently.
TIME_WINDOWS: Tuple[Tuple[str, float], ...] = (
    ("5min", 5 * 60.0),
    ("30min", 30 * 60.0),
    ("2hour", 2 * 3600.0),
    ("24hour", 24 * 3600.0),
)

FREQUENCY_THRESHOLD = 5
ACCOUNT_THRESHOLD = 3
SEQUENCE_THRESHOLD = 2
SEQUENCE_LENGTH = 3


class ErrorPatternAnalyzer:
    """Rolling error history plus the recurring patterns mined from it.

    History is most-recent-first and capped at MAX_HISTORY entries. Pattern
    mining is never run inline with add_error(): attach a
    PatternAnalysisWorker (see start()) to have it scheduled in the background,
    or call analyze_patterns() directly.
    """

    def __init__(self, clock: Callable[[], float] = time.time, max_history: int = MAX_HISTORY) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._history: Deque[ScrapingError] = deque(maxlen=max_history)
        self._patterns: Dict[str, ErrorPattern] = {}
        self._worker: Optional[PatternAnalysisWorker] = None

    def add_error(self, error: ScrapingError) -> None:
        with self._lock:
            # appendleft on a bounded deque drops the oldest entry from the right.
            self._history.appendleft(error)
        if self._worker is not None:
            self._worker.schedule()

    def history(self, account_id: Optional[str] = None) -> List[ScrapingError]:
        """Snapshot of the history, most recent first, optionally for one account."""
        with self._lock:
            errors = list(self._history)
        if account_id is None:
            return errors
        return [e for e in errors if e.account_id == account_id]

    def analyze_patterns(self, now: Optional[float] = None) -> List[ErrorPattern]:
        """Recompute every pattern over all time windows and replace the stored set."""
        now = self._clock() if now is None else now
        errors = self.history()

        found: Dict[str, ErrorPattern] = {}
        for window_name, duration in TIME_WINDOWS:
            recent = [e for e in errors if now - e.timestamp < duration]
            for pattern in _frequency_patterns(recent, window_name, duration):
                found[pattern.pattern_id] = pattern
            for pattern in _account_patterns(recent, window_name, duration):
                found[pattern.pattern_id] = pattern
            for pattern in _sequential_patterns(recent, window_name, duration):
                found[pattern.pattern_id] = pattern

        with self._lock:
            self._patterns = found
        log_event(logger, logging.DEBUG, "pattern_analysis", history=len(errors), patterns=len(found))
        return list(found.values())

    def get_patterns(self) -> List[ErrorPattern]:
        with self._lock:
            return list(self._patterns.values())

    def matches_pattern(self, context: ErrorContext) -> PatternMatch:
        """Known patterns touching this account or the context's last error type.

        The risk score is the sum of matched confidences, capped at 1.
        """
        last_type = context.last_error.type if context.last_error else None
        matched: List[ErrorPattern] = []
        for pattern in self.get_patterns():
            if context.account_id and pattern.account_ids and context.account_id in pattern.account_ids:
                matched.append(pattern)
            elif last_type is not None and last_type in pattern.error_types:
                matched.append(pattern)
        risk = min(sum(p.confidence for p in matched), 1.0)
        return PatternMatch(matched=bool(matched), patterns=tuple(matched), risk_score=risk)

    def start(self, delay: float = 0.1) -> "PatternAnalysisWorker":
        """Attach and start a background worker that re-analyses after each new error."""
        if self._worker is None:
            self._worker = PatternAnalysisWorker(self, delay=delay)
            self._worker.start()
        return self._worker

    def stop(self) -> None:
        if self._worker is not None:
            self._worker.stop()
            self._worker = None

    @property
    def worker(self) -> Optional["PatternAnalysisWorker"]:
        return self._worker

    @property
    def worker_running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()


class PatternAnalysisWorker:
    """Consumes analysis requests from a queue on a daemon thread.

    Each add_error() enqueues a request. The worker waits ``delay`` seconds so
    bursts of errors coalesce, drains everything queued, then runs a single
    analysis. A None item stops the loop.
    """

    def __init__(self, analyzer: ErrorPatternAnalyzer, delay: float = 0.1) -> None:
        self._analyzer = analyzer
        self._delay = delay
        self._queue: "queue.Queue[Optional[bool]]" = queue.Queue()
        self._thread = threading.Thread(target=self._run, name="pattern-analysis", daemon=True)
        self.runs = 0

    def start(self) -> None:
        self._thread.start()

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def schedule(self) -> None:
        self._queue.put(True)

    def flush(self) -> None:
        """Block until every scheduled analysis has completed."""
        self._queue.join()

    def stop(self, timeout: float = 5.0) -> None:
        self._queue.put(None)
        self._thread.join(timeout=timeout)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is None:
                self._queue.task_done()
                break
            time.sleep(self._delay)
            pending = 1
            stop = False
            while True:
                try:
                    extra = self._queue.get_nowait()
                except queue.Empty:
                    break
                pending += 1
                if extra is None:
                    stop = True
                    break
            try:
                self._analyzer.analyze_patterns()
                self.runs += 1
            except Exception:  # noqa: BLE001
                logger.exception("Pattern analysis failed")
            finally:
                for _ in range(pending):
                    self._queue.task_done()
            if stop:
                break


def _frequency_patterns(errors: Iterable[ScrapingError], window: str, duration: float) -> List[ErrorPattern]:
    counts = Counter(e.type for e in errors)
    patterns = []
    for error_type, count in counts.items():
        if count < FREQUENCY_THRESHOLD:
            continue
        patterns.append(
            ErrorPattern(
                pattern_id=f"freq_{error_type.value}_{window}",
                error_types=(error_type,),
                frequency=count,
                time_window=duration,
                confidence=min(count / 20.0, 1.0),
                predicted_impact=_impact(error_type, count),
                mitigation_strategy=_mitigation(error_type, count),
            )
        )
    return patterns


def _account_patterns(errors: Iterable[ScrapingError], window: str, duration: float) -> List[ErrorPattern]:
    by_account: Dict[str, List[ScrapingError]] = {}
    for e in errors:
        if e.account_id:
            by_account.setdefault(e.account_id, []).append(e)

    patterns = []
    for account_id, account_errors in by_account.items():
        count = len(account_errors)
        if count < ACCOUNT_THRESHOLD:
            continue
        types = tuple(dict.fromkeys(e.type for e in account_errors))
        patterns.append(
            ErrorPattern(
                pattern_id=f"account_{account_id}_{window}",
                error_types=types,
                frequency=count,
                time_window=duration,
                confidence=min(count / 10.0, 0.9),
                predicted_impact=Impact.HIGH,
                mitigation_strategy=Mitigation.PROACTIVE,
                account_ids=(account_id,),
            )
        )
    return patterns


def _sequential_patterns(errors: List[ScrapingError], window: str, duration: float) -> List[ErrorPattern]:
    sequences: Counter = Counter()
    for i in range(len(errors) - SEQUENCE_LENGTH + 1):
        sequences[tuple(e.type for e in errors[i:i + SEQUENCE_LENGTH])] += 1

    patterns = []
    for seq, count in sequences.items():
        if count < SEQUENCE_THRESHOLD:
            continue
        patterns.append(
            ErrorPattern(
                pattern_id="seq_" + "_".join(t.value for t in seq) + f"_{window}",
                error_types=seq,
                frequency=count,
                time_window=duration,
                confidence=min(count / 5.0, 0.8),
                predicted_impact=Impact.MEDIUM,
                mitigation_strategy=Mitigation.PREVENTIVE,
            )
        )
    return patterns


def _impact(error_type: ErrorType, count: int) -> Impact:
    # INSUFFICIENT_BALANCE is the API's quota-exhausted signal.
    if error_type is ErrorType.INSUFFICIENT_BALANCE or count > 15:
        return Impact.CRITICAL
    if error_type is ErrorType.AUTHENTICATION_ERROR or count > 10:
        return Impact.HIGH
    if count > 5:
        return Impact.MEDIUM
    return Impact.LOW


def _mitigation(error_type: ErrorType, count: int) -> Mitigation:
    if error_type is ErrorType.RATE_LIMIT:
        return Mitigation.PREVENTIVE
    if count > 10:
        return Mitigation.PROACTIVE
    return Mitigation.REACTIVE
