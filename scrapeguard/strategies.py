from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from .backoff import BackoffStrategy
from .models import (
    AccountHealth,
    ErrorContext,
    ErrorType,
    Mitigation,
    PatternMatch,
    RecommendedAction,
    RecoveryDecision,
    RecoveryStrategy,
    ScrapingError,
    Severity,
)

ESCALATION_THRESHOLD = 0.7
PATTERN_PAUSE_SECONDS = 300.0


class RecoveryRule(ABC):
    """Abstract base class for recovery rules.

    Each rule inspects a classified error with its context and, when it
    applies, decides the recovery strategy. Rules are evaluated in order and
    the first one that applies wins."""

    @abstractmethod
    def should_apply(self, error: ScrapingError, context: ErrorContext, health: Optional[AccountHealth]) -> bool:
        """Return True if this rule decides the outcome for the given error."""
        raise NotImplementedError

    @abstractmethod
    def decide(self, error: ScrapingError, context: ErrorContext, health: Optional[AccountHealth]) -> RecoveryDecision:
        """Build the recovery decision."""
        raise NotImplementedError


class QuarantineRule(RecoveryRule):
    """Skips any account whose health monitor recommends quarantine, whatever the error."""

    def should_apply(self, error: ScrapingError, context: ErrorContext, health: Optional[AccountHealth]) -> bool:
        return is_quarantined(health)

    def decide(self, error: ScrapingError, context: ErrorContext, health: Optional[AccountHealth]) -> RecoveryDecision:
        return quarantine_decision()


class CancelOnRepeatedCriticalRule(RecoveryRule):
    """Aborts the session once CRITICAL errors have exhausted the retry budget."""

    def should_apply(self, error: ScrapingError, context: ErrorContext, health: Optional[AccountHealth]) -> bool:
        return error.severity is Severity.CRITICAL and context.consecutive_critical >= context.max_attempts

    def decide(self, error: ScrapingError, context: ErrorContext, health: Optional[AccountHealth]) -> RecoveryDecision:
        return RecoveryDecision(
            strategy=RecoveryStrategy.CANCEL_SESSION,
            reason=f"Repeated critical errors: {error.message}",
        )


class PauseOnExhaustedSevereRule(RecoveryRule):
    """Pauses the session when a HIGH or CRITICAL error outlasts the retry budget."""

    def should_apply(self, error: ScrapingError, context: ErrorContext, health: Optional[AccountHealth]) -> bool:
        return context.attempt >= context.max_attempts and error.severity in (Severity.HIGH, Severity.CRITICAL)

    def decide(self, error: ScrapingError, context: ErrorContext, health: Optional[AccountHealth]) -> RecoveryDecision:
        return RecoveryDecision(
            strategy=RecoveryStrategy.PAUSE_SESSION,
            reason=f"Max retries exceeded for {error.severity.value.lower()} severity error",
        )


class SkipNonRetryableRule(RecoveryRule):
    def should_apply(self, error: ScrapingError, context: ErrorContext, health: Optional[AccountHealth]) -> bool:
        return not error.retryable

    def decide(self, error: ScrapingError, context: ErrorContext, health: Optional[AccountHealth]) -> RecoveryDecision:
        return RecoveryDecision(strategy=RecoveryStrategy.SKIP, reason=f"Non-retryable error: {error.message}")


class SkipExhaustedRule(RecoveryRule):
    def should_apply(self, error: ScrapingError, context: ErrorContext, health: Optional[AccountHealth]) -> bool:
        return context.attempt >= context.max_attempts

    def decide(self, error: ScrapingError, context: ErrorContext, health: Optional[AccountHealth]) -> RecoveryDecision:
        return RecoveryDecision(
            strategy=RecoveryStrategy.SKIP,
            reason=f"Max retries ({context.max_attempts}) exceeded",
        )


class RateLimitBackoffRule(RecoveryRule):
    """Backs off on throttling, honouring the API's retry-after when it sent one."""

    def __init__(self, backoff: BackoffStrategy) -> None:
        self._backoff = backoff

    def should_apply(self, error: ScrapingError, context: ErrorContext, health: Optional[AccountHealth]) -> bool:
        return error.type is ErrorType.RATE_LIMIT

    def decide(self, error: ScrapingError, context: ErrorContext, health: Optional[AccountHealth]) -> RecoveryDecision:
        if error.retry_after is not None and error.retry_after > 0:
            return RecoveryDecision(
                strategy=RecoveryStrategy.BACKOFF,
                reason="Rate limited, waiting for the API's retry-after",
                delay=float(error.retry_after),
            )
        return RecoveryDecision(
            strategy=RecoveryStrategy.BACKOFF,
            reason="Rate limited, applying exponential backoff",
            delay=self._backoff.get_sleep(context.attempt, error.type.value),
        )


class RetryRule(RecoveryRule):
    def __init__(self, backoff: BackoffStrategy) -> None:
        self._backoff = backoff

    def should_apply(self, error: ScrapingError, context: ErrorContext, health: Optional[AccountHealth]) -> bool:
        return error.retryable

    def decide(self, error: ScrapingError, context: ErrorContext, health: Optional[AccountHealth]) -> RecoveryDecision:
        return RecoveryDecision(
            strategy=RecoveryStrategy.RETRY,
            reason=f"Retrying after {error.type.value} (attempt {context.attempt + 1}/{context.max_attempts})",
            delay=self._backoff.get_sleep(context.attempt, error.type.value),
        )


def default_rules(backoff: BackoffStrategy) -> List[RecoveryRule]:
    return [
        QuarantineRule(),
        CancelOnRepeatedCriticalRule(),
        PauseOnExhaustedSevereRule(),
        SkipNonRetryableRule(),
        SkipExhaustedRule(),
        RateLimitBackoffRule(backoff),
        RetryRule(backoff),
    ]


def is_quarantined(health: Optional[AccountHealth]) -> bool:
    return health is not None and health.predictions.recommended_action is RecommendedAction.QUARANTINE


def quarantine_decision() -> RecoveryDecision:
    return RecoveryDecision(strategy=RecoveryStrategy.SKIP, reason="Account quarantined due to poor health score")


class RecoverySelector:
    """Picks a recovery strategy for a classified error. Pure: no I/O, no clock."""

    def __init__(
        self,
        backoff: Optional[BackoffStrategy] = None,
        rules: Optional[Sequence[RecoveryRule]] = None,
        escalation_threshold: float = ESCALATION_THRESHOLD,
    ) -> None:
        self._backoff = backoff or BackoffStrategy()
        self._rules = list(rules) if rules is not None else default_rules(self._backoff)
        self._escalation_threshold = escalation_threshold

    def select(
        self,
        error: ScrapingError,
        context: ErrorContext,
        health: Optional[AccountHealth] = None,
        match: Optional[PatternMatch] = None,
    ) -> RecoveryDecision:
        decision = None
        for rule in self._rules:
            if rule.should_apply(error, context, health):
                decision = rule.decide(error, context, health)
                break
        if decision is None:
            decision = RecoveryDecision(strategy=RecoveryStrategy.SKIP, reason="No recovery rule applied")

        if match is not None:
            decision = self.escalate(decision, match)
        # Quarantine wins over anything the rules or pattern escalation chose.
        if is_quarantined(health):
            return quarantine_decision()
        return decision

    def escalate(self, decision: RecoveryDecision, match: PatternMatch) -> RecoveryDecision:
        """Tighten a decision when known error patterns match strongly."""
        if not match.matched or match.risk_score <= self._escalation_threshold:
            return decision
        mitigations = {p.mitigation_strategy for p in match.patterns}

        if Mitigation.PREVENTIVE in mitigations and decision.delay:
            decision = RecoveryDecision(
                strategy=decision.strategy,
                reason=f"{decision.reason} (delay doubled: recurring error pattern)",
                delay=decision.delay * 2,
            )
        if Mitigation.PROACTIVE in mitigations and decision.strategy is RecoveryStrategy.BACKOFF:
            decision = RecoveryDecision(
                strategy=RecoveryStrategy.PAUSE_SESSION,
                reason="Proactive pause due to detected error pattern",
                delay=PATTERN_PAUSE_SECONDS,
            )
        return decision
