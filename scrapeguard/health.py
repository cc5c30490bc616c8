"""
Per-account health scoring with a predicted probability of the next failure.

Scores are derived from an account's error history and cached per account
for CACHE_TTL seconds as explicit (value, computed_at) entries.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from .logging_utils import log_event
from .models import (
    AccountHealth,
    ErrorType,
    HealthPrediction,
    HealthRiskFactors,
    RecommendedAction,
    ScrapingError,
    Severity,
)

logger = logging.getLogger(__name__)

CACHE_TTL = 30 * 60.0
DAY = 24 * 3600.0


@dataclass(frozen=True)
class _CacheEntry:
    value: AccountHealth
    computed_at: float


class AccountHealthMonitor:
    def __init__(self, clock: Callable[[], float] = time.time, ttl: float = CACHE_TTL) -> None:
        self._clock = clock
        self._ttl = ttl
        self._lock = threading.Lock()
        self._cache: Dict[str, _CacheEntry] = {}
        self._last_success: Dict[str, float] = {}

    def analyze_account_health(self, account_id: str, error_history: Iterable[ScrapingError]) -> AccountHealth:
        """Return the account's health, served from cache while it is fresh.

        ``error_history`` is most-recent-first; entries for other accounts are
        ignored.
        """
        now = self._clock()
        cached = self.cached(account_id, now)
        if cached is not None:
            return cached

        account_errors = [e for e in error_history if e.account_id == account_id]
        last_24h = [e for e in account_errors if now - e.timestamp < DAY]

        consecutive = _consecutive_failures(account_errors)
        error_rate = len(last_24h) / 24.0
        suspicious = _suspicious(last_24h)
        rate_limits = tuple(e.timestamp for e in last_24h if e.type is ErrorType.RATE_LIMIT)
        with self._lock:
            last_success = self._last_success.get(account_id)

        score = 100.0
        score -= consecutive * 5
        score -= error_rate * 10
        score -= 20 if suspicious else 0
        score -= len(rate_limits) * 2
        if last_success is not None:
            score -= max(0.0, (now - last_success) / DAY)
        score = max(0.0, min(100.0, score))

        probability = predict_next_error_probability(consecutive, error_rate, score)
        health = AccountHealth(
            account_id=account_id,
            health_score=score,
            risk_factors=HealthRiskFactors(
                consecutive_failures=consecutive,
                hourly_error_rate=error_rate,
                last_successful_session=last_success,
                suspicious_activity=suspicious,
                rate_limit_history=rate_limits,
            ),
            predictions=HealthPrediction(
                next_error_probability=probability,
                recommended_action=recommend_action(score, probability),
                confidence=min(len(account_errors) / 100.0, 0.95),
            ),
            last_analyzed=now,
        )

        with self._lock:
            self._cache[account_id] = _CacheEntry(value=health, computed_at=now)
        if health.predictions.recommended_action is not RecommendedAction.CONTINUE:
            log_event(
                logger,
                logging.INFO,
                "account_health_degraded",
                account_id=account_id,
                health_score=round(score, 2),
                next_error_probability=round(probability, 3),
                recommended_action=health.predictions.recommended_action,
            )
        return health

    def get_bulk_account_health(
        self, account_ids: Iterable[str], error_history: Iterable[ScrapingError] = ()
    ) -> List[AccountHealth]:
        history = list(error_history)
        return [self.analyze_account_health(account_id, history) for account_id in account_ids]

    def cached(self, account_id: str, now: Optional[float] = None) -> Optional[AccountHealth]:
        """The cached health if it has not expired, else None."""
        now = self._clock() if now is None else now
        with self._lock:
            entry = self._cache.get(account_id)
        if entry is None or now - entry.computed_at >= self._ttl:
            return None
        return entry.value

    def cached_accounts(self) -> List[AccountHealth]:
        now = self._clock()
        with self._lock:
            entries = list(self._cache.values())
        return [e.value for e in entries if now - e.computed_at < self._ttl]

    def invalidate(self, account_id: str) -> None:
        with self._lock:
            self._cache.pop(account_id, None)

    def record_success(self, account_id: str, at: Optional[float] = None) -> None:
        with self._lock:
            self._last_success[account_id] = self._clock() if at is None else at
            self._cache.pop(account_id, None)


def predict_next_error_probability(consecutive_failures: int, error_rate: float, health_score: float) -> float:
    probability = min(consecutive_failures * 0.1, 0.5)
    probability += min(error_rate * 0.05, 0.3)
    probability += min((100.0 - health_score) * 0.002, 0.2)
    return max(0.0, min(probability, 0.95))


def recommend_action(health_score: float, probability: float) -> RecommendedAction:
    if health_score < 20 or probability > 0.8:
        return RecommendedAction.QUARANTINE
    if health_score < 40 or probability > 0.6:
        return RecommendedAction.INVESTIGATE
    if health_score < 70 or probability > 0.4:
        return RecommendedAction.PAUSE
    return RecommendedAction.CONTINUE


def _consecutive_failures(errors: Iterable[ScrapingError]) -> int:
    count = 0
    for e in errors:
        if e.severity not in (Severity.HIGH, Severity.CRITICAL):
            break
        count += 1
    return count


def _suspicious(errors: List[ScrapingError]) -> bool:
    auth = sum(1 for e in errors if e.type is ErrorType.AUTHENTICATION_ERROR)
    rate_limited = sum(1 for e in errors if e.type is ErrorType.RATE_LIMIT)
    return auth > 3 or rate_limited > 10
