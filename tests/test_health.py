"""Tests for AccountHealthMonitor scoring, prediction and caching."""

import random
import unittest

from scrapeguard.health import AccountHealthMonitor, predict_next_error_probability, recommend_action
from scrapeguard.models import ErrorType, RecommendedAction, ScrapingError, Severity

NOW = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _make_error(error_type=ErrorType.TIMEOUT_ERROR, severity=Severity.MEDIUM, account_id="a1", age=0.0):
    return ScrapingError(
        type=error_type,
        severity=severity,
        message=error_type.value,
        timestamp=NOW - age,
        retryable=True,
        account_id=account_id,
    )


class TestHealthScore(unittest.TestCase):
    """Verify the score deductions and clamping."""

    def test_clean_account_is_healthy(self):
        health = AccountHealthMonitor(clock=FakeClock()).analyze_account_health("a1", [])
        self.assertEqual(health.health_score, 100.0)
        self.assertIs(health.predictions.recommended_action, RecommendedAction.CONTINUE)
        self.assertEqual(health.predictions.confidence, 0.0)

    def test_deductions(self):
        """Two HIGH errors then one MEDIUM: streak 2, rate 3/24."""
        history = [
            _make_error(ErrorType.AUTHENTICATION_ERROR, Severity.HIGH, age=10),
            _make_error(ErrorType.AUTHENTICATION_ERROR, Severity.HIGH, age=20),
            _make_error(ErrorType.TIMEOUT_ERROR, Severity.MEDIUM, age=30),
        ]
        health = AccountHealthMonitor(clock=FakeClock()).analyze_account_health("a1", history)
        self.assertEqual(health.risk_factors.consecutive_failures, 2)
        self.assertAlmostEqual(health.risk_factors.hourly_error_rate, 3 / 24)
        self.assertFalse(health.risk_factors.suspicious_activity)
        self.assertAlmostEqual(health.health_score, 100 - 10 - 10 * 3 / 24)

    def test_rate_limits_and_suspicious_activity(self):
        history = [_make_error(ErrorType.RATE_LIMIT, age=i) for i in range(11)]
        health = AccountHealthMonitor(clock=FakeClock()).analyze_account_health("a1", history)
        self.assertTrue(health.risk_factors.suspicious_activity)
        self.assertEqual(len(health.risk_factors.rate_limit_history), 11)
        self.assertAlmostEqual(health.health_score, 100 - 10 * 11 / 24 - 20 - 22)

    def test_days_since_last_success(self):
        clock = FakeClock()
        monitor = AccountHealthMonitor(clock=clock)
        monitor.record_success("a1", at=NOW - 3 * 24 * 3600)
        health = monitor.analyze_account_health("a1", [])
        self.assertAlmostEqual(health.health_score, 97.0)

    def test_other_accounts_and_old_errors_ignored(self):
        history = [
            _make_error(account_id="b2"),
            _make_error(age=2 * 24 * 3600),
        ]
        health = AccountHealthMonitor(clock=FakeClock()).analyze_account_health("a1", history)
        self.assertEqual(health.risk_factors.hourly_error_rate, 0.0)

    def test_score_and_probability_always_clamped(self):
        rng = random.Random(7)
        types = list(ErrorType)
        severities = list(Severity)
        for _ in range(50):
            history = [
                _make_error(rng.choice(types), rng.choice(severities), age=rng.uniform(0, 3 * 24 * 3600))
                for _ in range(rng.randint(0, 200))
            ]
            history.sort(key=lambda e: e.timestamp, reverse=True)
            health = AccountHealthMonitor(clock=FakeClock()).analyze_account_health("a1", history)
            self.assertGreaterEqual(health.health_score, 0.0)
            self.assertLessEqual(health.health_score, 100.0)
            self.assertGreaterEqual(health.predictions.next_error_probability, 0.0)
            self.assertLessEqual(health.predictions.next_error_probability, 0.95)


class TestQuarantine(unittest.TestCase):
    def test_many_severe_failures_quarantine(self):
        history = [_make_error(ErrorType.AUTHENTICATION_ERROR, Severity.HIGH, age=i) for i in range(20)]
        health = AccountHealthMonitor(clock=FakeClock()).analyze_account_health("a1", history)
        self.assertLess(health.health_score, 20)
        self.assertIs(health.predictions.recommended_action, RecommendedAction.QUARANTINE)

    def test_recommend_action_thresholds(self):
        self.assertIs(recommend_action(19, 0.0), RecommendedAction.QUARANTINE)
        self.assertIs(recommend_action(90, 0.81), RecommendedAction.QUARANTINE)
        self.assertIs(recommend_action(39, 0.0), RecommendedAction.INVESTIGATE)
        self.assertIs(recommend_action(69, 0.0), RecommendedAction.PAUSE)
        self.assertIs(recommend_action(90, 0.41), RecommendedAction.PAUSE)
        self.assertIs(recommend_action(70, 0.4), RecommendedAction.CONTINUE)

    def test_probability_weights(self):
        self.assertAlmostEqual(predict_next_error_probability(2, 1.0, 90.0), 0.2 + 0.05 + 0.02)
        self.assertEqual(predict_next_error_probability(100, 100.0, 0.0), 0.95)


class TestHealthCache(unittest.TestCase):
    """Verify the explicit TTL cache."""

    def test_idempotent_within_ttl(self):
        clock = FakeClock()
        monitor = AccountHealthMonitor(clock=clock)
        history = [_make_error(ErrorType.RATE_LIMIT)]
        first = monitor.analyze_account_health("a1", history)
        clock.now += 60
        second = monitor.analyze_account_health("a1", history)
        self.assertEqual(first, second)
        self.assertEqual(first.last_analyzed, second.last_analyzed)

    def test_recomputed_after_ttl(self):
        clock = FakeClock()
        monitor = AccountHealthMonitor(clock=clock, ttl=1800)
        first = monitor.analyze_account_health("a1", [])
        clock.now += 1800
        self.assertIsNone(monitor.cached("a1"))
        second = monitor.analyze_account_health("a1", [])
        self.assertNotEqual(first.last_analyzed, second.last_analyzed)

    def test_invalidate_forces_recompute(self):
        clock = FakeClock()
        monitor = AccountHealthMonitor(clock=clock)
        monitor.analyze_account_health("a1", [])
        monitor.invalidate("a1")
        history = [_make_error(ErrorType.AUTHENTICATION_ERROR, Severity.HIGH)]
        self.assertLess(monitor.analyze_account_health("a1", history).health_score, 100.0)

    def test_bulk_health(self):
        monitor = AccountHealthMonitor(clock=FakeClock())
        results = monitor.get_bulk_account_health(["a1", "b2"], [_make_error(account_id="b2")])
        self.assertEqual([h.account_id for h in results], ["a1", "b2"])
        self.assertEqual(len(monitor.cached_accounts()), 2)


if __name__ == "__main__":
    unittest.main()
