"""
Error recovery pipeline.

handle_error() runs one failure through classification, pattern history,
account health and strategy selection, then applies the chosen strategy to
the live session through the SessionCallbacks it was given.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from .config import ScrapingConfig, validate_config
from .errors import classify_error
from .health import AccountHealthMonitor
from .logging_utils import log_event
from .models import (
    AccountHealth,
    ErrorContext,
    ErrorPattern,
    Impact,
    PatternMatch,
    ProgressUpdate,
    RecommendedAction,
    RecoveryDecision,
    RecoveryStrategy,
    ScrapingError,
    SessionRisk,
    SessionType,
    SystemHealth,
)
from .patterns import ErrorPatternAnalyzer
from .risk import SessionRiskAssessment
from .strategies import RecoverySelector

logger = logging.getLogger(__name__)

# Strategies after which the current account is given up on.
ACCOUNT_FINISHED = frozenset(
    {
        RecoveryStrategy.SKIP,
        RecoveryStrategy.QUARANTINE,
        RecoveryStrategy.PAUSE_SESSION,
        RecoveryStrategy.CANCEL_SESSION,
    }
)


class SessionCallbacks(ABC):
    """The narrow interface through which recovery acts on a live session."""

    @abstractmethod
    def pause_session(self, session_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def cancel_session(self, session_id: str, reason: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def update_session_progress(self, session_id: str, update: ProgressUpdate) -> None:
        raise NotImplementedError


@dataclass(frozen=True)
class RecoveryOutcome:
    error: ScrapingError
    decision: RecoveryDecision
    pattern_match: PatternMatch
    health: Optional[AccountHealth] = None

    @property
    def account_finished(self) -> bool:
        return self.decision.strategy in ACCOUNT_FINISHED


class ErrorRecoveryManager:
    def __init__(
        self,
        config: ScrapingConfig,
        analyzer: Optional[ErrorPatternAnalyzer] = None,
        health_monitor: Optional[AccountHealthMonitor] = None,
        selector: Optional[RecoverySelector] = None,
        risk_assessment: Optional[SessionRiskAssessment] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._clock = clock
        self.analyzer = analyzer or ErrorPatternAnalyzer(clock=clock)
        self.health_monitor = health_monitor or AccountHealthMonitor(clock=clock)
        self.selector = selector or RecoverySelector()
        self.risk_assessment = risk_assessment or SessionRiskAssessment(self.health_monitor, clock=clock)

    def handle_error(self, raw: Any, context: ErrorContext, callbacks: Optional[SessionCallbacks] = None) -> RecoveryOutcome:
        error = classify_error(raw, context, now=self._clock())
        self.analyzer.add_error(error)

        context = dataclasses.replace(context, last_error=error)
        match = self.analyzer.matches_pattern(context)

        health = None
        if context.account_id:
            self.health_monitor.invalidate(context.account_id)
            health = self.health_monitor.analyze_account_health(
                context.account_id, self.analyzer.history(context.account_id)
            )

        decision = self.selector.select(error, context, health, match)
        log_event(
            logger,
            logging.WARNING if decision.strategy in ACCOUNT_FINISHED else logging.INFO,
            "recovery_decision",
            session_id=context.session_id,
            account_id=context.account_id,
            attempt=context.attempt,
            error=error.to_dict(),
            strategy=decision.strategy,
            reason=decision.reason,
            delay=decision.delay,
            pattern_risk=round(match.risk_score, 3),
            health_score=health.health_score if health else None,
        )

        outcome = RecoveryOutcome(error=error, decision=decision, pattern_match=match, health=health)
        if callbacks is not None and context.session_id:
            self._execute(outcome, context.session_id, callbacks)
        return outcome

    def _execute(self, outcome: RecoveryOutcome, session_id: str, callbacks: SessionCallbacks) -> None:
        callbacks.update_session_progress(
            session_id,
            ProgressUpdate(
                failed=1 if outcome.account_finished else 0,
                errors=1,
                last_error=outcome.error.message,
            ),
        )
        strategy = outcome.decision.strategy
        if strategy is RecoveryStrategy.PAUSE_SESSION:
            callbacks.pause_session(session_id)
        elif strategy is RecoveryStrategy.CANCEL_SESSION:
            callbacks.cancel_session(session_id, outcome.decision.reason)

    def assess_pre_session_risk(self, account_ids: Sequence[str], session_type: SessionType) -> SessionRisk:
        return self.risk_assessment.assess(account_ids, session_type, self.analyzer.history())

    def get_system_analytics(self) -> Dict[str, Any]:
        patterns = self.analyzer.get_patterns()
        risk_accounts = [
            h for h in self.health_monitor.cached_accounts()
            if h.predictions.recommended_action is not RecommendedAction.CONTINUE
        ]
        return {
            "patterns": [p.to_dict() for p in patterns],
            "pattern_count": len(patterns),
            "risk_accounts": len(risk_accounts),
            "system_health": system_health(patterns).value,
        }

    def validate_system(self) -> Dict[str, Any]:
        """Capability report for health-check endpoints."""
        validation = validate_config(self._config)
        checks = {
            "config_valid": validation.is_valid,
            "pattern_worker_running": self.analyzer.worker_running,
            "error_history_size": len(self.analyzer.history()),
            "cached_account_health": len(self.health_monitor.cached_accounts()),
        }
        capabilities: List[str] = [
            "Error classification into a closed taxonomy",
            "Frequency, per-account and sequential error pattern recognition",
            "Account health scoring with next-error prediction",
            "Pre-session risk assessment",
            "Pattern-driven escalation of recovery strategies",
        ]
        valid = validation.is_valid
        return {
            "valid": valid,
            "message": "Error recovery system operational" if valid else "Configuration invalid: " + "; ".join(validation.errors),
            "checks": checks,
            "warnings": list(validation.warnings),
            "capabilities": capabilities,
        }


def system_health(patterns: Sequence[ErrorPattern]) -> SystemHealth:
    if any(p.predicted_impact is Impact.CRITICAL for p in patterns):
        return SystemHealth.POOR
    if len(patterns) > 10:
        return SystemHealth.FAIR
    if len(patterns) > 5:
        return SystemHealth.GOOD
    return SystemHealth.EXCELLENT
