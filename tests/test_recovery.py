"""Tests for the ErrorRecoveryManager pipeline."""

import unittest

from scrapeguard.config import get_preset
from scrapeguard.errors import HttpFailure, TimeoutFailure
from scrapeguard.models import (
    ErrorContext,
    ErrorPattern,
    ErrorType,
    Impact,
    Mitigation,
    RecoveryStrategy,
    ScrapingError,
    SessionType,
    Severity,
    SystemHealth,
)
from scrapeguard.recovery import ErrorRecoveryManager, SessionCallbacks, system_health

NOW = 1_700_000_000.0


class RecordingCallbacks(SessionCallbacks):
    """Records every call made against the session."""

    def __init__(self):
        self.calls = []

    def pause_session(self, session_id):
        self.calls.append(("pause", session_id))

    def cancel_session(self, session_id, reason):
        self.calls.append(("cancel", session_id, reason))

    def update_session_progress(self, session_id, update):
        self.calls.append(("progress", session_id, update))


def _manager(**overrides):
    return ErrorRecoveryManager(get_preset("test", **overrides), clock=lambda: NOW)


def _context(**overrides) -> ErrorContext:
    defaults = dict(session_id="s1", account_id="a1", attempt=0, max_attempts=3, session_type=SessionType.METRICS)
    defaults.update(overrides)
    return ErrorContext(**defaults)


def _pattern(impact: Impact) -> ErrorPattern:
    return ErrorPattern(
        pattern_id=f"p_{impact.value}",
        error_types=(ErrorType.TIMEOUT_ERROR,),
        frequency=5,
        time_window=300.0,
        confidence=0.25,
        predicted_impact=impact,
        mitigation_strategy=Mitigation.REACTIVE,
    )


class TestHandleError(unittest.TestCase):
    """Verify decisions and the callbacks they trigger."""

    def setUp(self):
        self.recovery = _manager()
        self.callbacks = RecordingCallbacks()

    def test_timeout_retries_and_counts_error(self):
        outcome = self.recovery.handle_error(TimeoutFailure(message="read timed out"), _context(), self.callbacks)
        self.assertIs(outcome.decision.strategy, RecoveryStrategy.RETRY)
        self.assertFalse(outcome.account_finished)
        self.assertEqual(len(self.callbacks.calls), 1)
        kind, session_id, update = self.callbacks.calls[0]
        self.assertEqual((kind, session_id), ("progress", "s1"))
        self.assertEqual(update.failed, 0)
        self.assertEqual(update.errors, 1)
        self.assertEqual(update.last_error, outcome.error.message)

    def test_error_enters_history(self):
        self.recovery.handle_error(HttpFailure(status_code=404), _context(), self.callbacks)
        history = self.recovery.analyzer.history("a1")
        self.assertEqual(len(history), 1)
        self.assertIs(history[0].type, ErrorType.ACCOUNT_NOT_FOUND)

    def test_exhausted_rate_limit_pauses_session(self):
        outcome = self.recovery.handle_error(HttpFailure(status_code=429), _context(attempt=3), self.callbacks)
        self.assertIs(outcome.decision.strategy, RecoveryStrategy.PAUSE_SESSION)
        self.assertEqual(self.callbacks.calls[0][2].failed, 1)
        self.assertEqual(self.callbacks.calls[1], ("pause", "s1"))

    def test_repeated_critical_cancels_session(self):
        outcome = self.recovery.handle_error(
            HttpFailure(status_code=402, message="Insufficient balance"),
            _context(consecutive_critical=3),
            self.callbacks,
        )
        self.assertIs(outcome.decision.strategy, RecoveryStrategy.CANCEL_SESSION)
        kind, session_id, reason = self.callbacks.calls[1]
        self.assertEqual((kind, session_id), ("cancel", "s1"))
        self.assertIn("Insufficient API balance", reason)

    def test_no_callbacks_without_session(self):
        outcome = self.recovery.handle_error(TimeoutFailure(), _context(session_id=None), self.callbacks)
        self.assertIs(outcome.decision.strategy, RecoveryStrategy.RETRY)
        self.assertEqual(self.callbacks.calls, [])

    def test_quarantined_account_is_skipped_instead_of_paused(self):
        """A failing account is skipped even when the error alone would pause."""
        for i in range(20):
            self.recovery.analyzer.add_error(
                ScrapingError(
                    type=ErrorType.AUTHENTICATION_ERROR,
                    severity=Severity.HIGH,
                    message="Invalid API key",
                    timestamp=NOW - 100 - i,
                    retryable=False,
                    account_id="a1",
                )
            )
        outcome = self.recovery.handle_error(HttpFailure(status_code=429), _context(attempt=3), self.callbacks)
        self.assertIs(outcome.decision.strategy, RecoveryStrategy.SKIP)
        self.assertEqual(outcome.decision.reason, "Account quarantined due to poor health score")
        self.assertEqual(outcome.health.health_score, 0.0)
        self.assertNotIn(("pause", "s1"), self.callbacks.calls)


class TestAnalytics(unittest.TestCase):
    def test_system_health_levels(self):
        self.assertIs(system_health([]), SystemHealth.EXCELLENT)
        self.assertIs(system_health([_pattern(Impact.LOW)] * 6), SystemHealth.GOOD)
        self.assertIs(system_health([_pattern(Impact.LOW)] * 11), SystemHealth.FAIR)
        self.assertIs(system_health([_pattern(Impact.LOW), _pattern(Impact.CRITICAL)]), SystemHealth.POOR)

    def test_system_analytics(self):
        recovery = _manager()
        for _ in range(5):
            recovery.handle_error(HttpFailure(status_code=402), _context())
        recovery.analyzer.analyze_patterns()
        analytics = recovery.get_system_analytics()
        self.assertGreater(analytics["pattern_count"], 0)
        self.assertEqual(analytics["system_health"], "POOR")
        self.assertEqual(analytics["risk_accounts"], 1)

    def test_pre_session_risk_uses_history(self):
        recovery = _manager()
        risk = recovery.assess_pre_session_risk(["a1", "a2"], SessionType.METRICS)
        self.assertEqual(risk.factors.account_health_scores, (100.0, 100.0))

    def test_validate_system(self):
        report = _manager().validate_system()
        self.assertTrue(report["valid"])
        self.assertEqual(report["message"], "Error recovery system operational")
        self.assertFalse(report["checks"]["pattern_worker_running"])
        self.assertTrue(report["capabilities"])

    def test_validate_system_reports_invalid_config(self):
        report = _manager(daily_budget_limit=0.0).validate_system()
        self.assertFalse(report["valid"])
        self.assertIn("Daily budget limit must be greater than 0", report["message"])


if __name__ == "__main__":
    unittest.main()
