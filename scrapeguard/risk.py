"""
Pre-flight risk assessment for a whole scraping session.

The weighting below is a tunable policy, not a calibrated model: every
coefficient lives on RiskPolicy so deployments can adjust it.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Sequence

from .health import AccountHealthMonitor
from .logging_utils import log_event
from .models import AccountHealth, RiskLevel, ScrapingError, SessionRisk, SessionRiskFactors, SessionType, TimeOfDay

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RiskPolicy:
    health_weight: float = 0.01  # per point of missing average health
    error_rate_weight: float = 2.0
    peak_penalty: float = 0.2
    off_peak_bonus: float = 0.1
    busy_sessions: int = 5
    crowded_sessions: int = 8
    busy_penalty: float = 0.3
    overloaded_sessions: int = 10
    overloaded_penalty: float = 0.5
    load_weight: float = 0.4

    medium_threshold: float = 0.5
    high_threshold: float = 1.0
    extreme_threshold: float = 1.5

    unhealthy_score: float = 50.0
    default_error_rate: float = 0.1


def time_of_day(at: datetime) -> TimeOfDay:
    if 9 <= at.hour <= 17:
        return TimeOfDay.PEAK
    if 6 <= at.hour <= 22:
        return TimeOfDay.NORMAL
    return TimeOfDay.OFF_PEAK


def default_system_load() -> float:
    """One-minute load average per CPU, capped at 1.0; 0.0 where unavailable."""
    try:
        load = os.getloadavg()[0]
    except (AttributeError, OSError):
        return 0.0
    return max(0.0, min(load / (os.cpu_count() or 1), 1.0))


class SessionRiskAssessment:
    """Combines account health and system conditions into a go/no-go decision.

    Historical error rate, concurrent session count and system load come from
    injected providers so the assessment itself stays side-effect free.
    """

    def __init__(
        self,
        health_monitor: AccountHealthMonitor,
        policy: Optional[RiskPolicy] = None,
        error_rate_provider: Optional[Callable[[SessionType], Optional[float]]] = None,
        concurrent_sessions_provider: Optional[Callable[[], int]] = None,
        system_load_provider: Callable[[], float] = default_system_load,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._health = health_monitor
        self._policy = policy or RiskPolicy()
        self._error_rate = error_rate_provider
        self._concurrent = concurrent_sessions_provider
        self._system_load = system_load_provider
        self._clock = clock

    @property
    def policy(self) -> RiskPolicy:
        return self._policy

    def assess(
        self,
        account_ids: Sequence[str],
        session_type: SessionType,
        error_history: Iterable[ScrapingError] = (),
    ) -> SessionRisk:
        healths = self._health.get_bulk_account_health(account_ids, error_history)
        scores = tuple(h.health_score for h in healths)

        historical = self._error_rate(session_type) if self._error_rate else None
        factors = SessionRiskFactors(
            account_health_scores=scores,
            historical_error_rate=self._policy.default_error_rate if historical is None else historical,
            time_of_day=time_of_day(datetime.fromtimestamp(self._clock())),
            concurrent_sessions=self._concurrent() if self._concurrent else 0,
            system_load=self._system_load(),
        )

        score = self.risk_score(factors)
        level = self.risk_level(score)
        risk = SessionRisk(
            risk_level=level,
            risk_score=round(score, 4),
            factors=factors,
            recommendations=tuple(self._recommendations(factors, healths)),
            should_proceed=level is not RiskLevel.EXTREME,
        )
        log_event(
            logger,
            logging.INFO,
            "session_risk_assessed",
            session_type=session_type,
            accounts=len(scores),
            risk_level=level,
            risk_score=risk.risk_score,
            should_proceed=risk.should_proceed,
        )
        return risk

    def risk_score(self, factors: SessionRiskFactors) -> float:
        p = self._policy
        scores = factors.account_health_scores
        avg_health = sum(scores) / len(scores) if scores else 100.0

        risk = (100.0 - avg_health) * p.health_weight
        risk += factors.historical_error_rate * p.error_rate_weight
        if factors.time_of_day is TimeOfDay.PEAK:
            risk += p.peak_penalty
        elif factors.time_of_day is TimeOfDay.OFF_PEAK:
            risk -= p.off_peak_bonus
        if factors.concurrent_sessions > p.busy_sessions:
            risk += p.busy_penalty
        if factors.concurrent_sessions > p.overloaded_sessions:
            risk += p.overloaded_penalty
        risk += factors.system_load * p.load_weight
        return risk

    def risk_level(self, score: float) -> RiskLevel:
        p = self._policy
        if score > p.extreme_threshold:
            return RiskLevel.EXTREME
        if score > p.high_threshold:
            return RiskLevel.HIGH
        if score > p.medium_threshold:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def _recommendations(self, factors: SessionRiskFactors, healths: List[AccountHealth]) -> List[str]:
        p = self._policy
        recommendations = []
        unhealthy = [h for h in healths if h.health_score < p.unhealthy_score]
        if unhealthy:
            recommendations.append(f"Consider excluding {len(unhealthy)} unhealthy accounts")
        if factors.time_of_day is TimeOfDay.PEAK:
            recommendations.append("Consider running during off-peak hours for better performance")
        if factors.system_load > 0.8:
            recommendations.append("System load high - consider reducing concurrent sessions")
        if factors.concurrent_sessions > p.crowded_sessions:
            recommendations.append("High concurrent session count may increase error rates")
        return recommendations
