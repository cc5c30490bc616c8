"""Tests for SessionRiskAssessment."""

import unittest
from datetime import datetime

from scrapeguard.health import AccountHealthMonitor
from scrapeguard.models import (
    ErrorType,
    RiskLevel,
    ScrapingError,
    SessionRiskFactors,
    SessionType,
    Severity,
    TimeOfDay,
)
from scrapeguard.risk import RiskPolicy, SessionRiskAssessment, time_of_day

NOON = datetime(2026, 3, 4, 12, 0).timestamp()
EVENING = datetime(2026, 3, 4, 20, 0).timestamp()
NIGHT = datetime(2026, 3, 4, 2, 0).timestamp()


def _assessment(at=EVENING, error_rate=None, concurrent=0, load=0.0, policy=None):
    return SessionRiskAssessment(
        AccountHealthMonitor(clock=lambda: at),
        policy=policy,
        error_rate_provider=lambda session_type: error_rate,
        concurrent_sessions_provider=lambda: concurrent,
        system_load_provider=lambda: load,
        clock=lambda: at,
    )


def _factors(**overrides) -> SessionRiskFactors:
    defaults = dict(
        account_health_scores=(100.0,),
        historical_error_rate=0.0,
        time_of_day=TimeOfDay.NORMAL,
        concurrent_sessions=0,
        system_load=0.0,
    )
    defaults.update(overrides)
    return SessionRiskFactors(**defaults)


def _auth_failures(account_id: str, count: int):
    return [
        ScrapingError(
            type=ErrorType.AUTHENTICATION_ERROR,
            severity=Severity.HIGH,
            message="Invalid API key",
            timestamp=EVENING - i,
            retryable=False,
            account_id=account_id,
        )
        for i in range(count)
    ]


class TestTimeOfDay(unittest.TestCase):
    def test_buckets(self):
        self.assertIs(time_of_day(datetime(2026, 1, 1, 9)), TimeOfDay.PEAK)
        self.assertIs(time_of_day(datetime(2026, 1, 1, 17)), TimeOfDay.PEAK)
        self.assertIs(time_of_day(datetime(2026, 1, 1, 18)), TimeOfDay.NORMAL)
        self.assertIs(time_of_day(datetime(2026, 1, 1, 6)), TimeOfDay.NORMAL)
        self.assertIs(time_of_day(datetime(2026, 1, 1, 23)), TimeOfDay.OFF_PEAK)
        self.assertIs(time_of_day(datetime(2026, 1, 1, 5)), TimeOfDay.OFF_PEAK)


class TestRiskScore(unittest.TestCase):
    """Verify the weighted score and level thresholds."""

    def setUp(self):
        self.assessment = _assessment()

    def test_components(self):
        score = self.assessment.risk_score(
            _factors(
                account_health_scores=(80.0, 60.0),
                historical_error_rate=0.1,
                time_of_day=TimeOfDay.PEAK,
                concurrent_sessions=11,
                system_load=0.5,
            )
        )
        self.assertAlmostEqual(score, 0.3 + 0.2 + 0.2 + 0.3 + 0.5 + 0.2)

    def test_off_peak_bonus(self):
        self.assertAlmostEqual(self.assessment.risk_score(_factors(time_of_day=TimeOfDay.OFF_PEAK)), -0.1)

    def test_no_accounts_counts_as_healthy(self):
        self.assertEqual(self.assessment.risk_score(_factors(account_health_scores=())), 0.0)

    def test_levels(self):
        self.assertIs(self.assessment.risk_level(0.5), RiskLevel.LOW)
        self.assertIs(self.assessment.risk_level(0.51), RiskLevel.MEDIUM)
        self.assertIs(self.assessment.risk_level(1.01), RiskLevel.HIGH)
        self.assertIs(self.assessment.risk_level(1.51), RiskLevel.EXTREME)

    def test_policy_is_tunable(self):
        assessment = _assessment(policy=RiskPolicy(error_rate_weight=10.0))
        self.assertAlmostEqual(assessment.risk_score(_factors(historical_error_rate=0.1)), 1.0)


class TestAssess(unittest.TestCase):
    def test_healthy_evening_session_proceeds(self):
        risk = _assessment(error_rate=0.0).assess(["a1", "a2"], SessionType.METRICS)
        self.assertIs(risk.risk_level, RiskLevel.LOW)
        self.assertTrue(risk.should_proceed)
        self.assertEqual(risk.factors.account_health_scores, (100.0, 100.0))
        self.assertEqual(risk.recommendations, ())

    def test_missing_error_rate_uses_default(self):
        risk = _assessment(error_rate=None).assess(["a1"], SessionType.METRICS)
        self.assertEqual(risk.factors.historical_error_rate, 0.1)

    def test_peak_and_load_recommendations(self):
        risk = _assessment(at=NOON, error_rate=0.0, concurrent=9, load=0.9).assess(["a1"], SessionType.METRICS)
        self.assertIs(risk.factors.time_of_day, TimeOfDay.PEAK)
        self.assertEqual(
            risk.recommendations,
            (
                "Consider running during off-peak hours for better performance",
                "System load high - consider reducing concurrent sessions",
                "High concurrent session count may increase error rates",
            ),
        )

    def test_busy_but_not_crowded_has_no_session_recommendation(self):
        risk = _assessment(error_rate=0.0, concurrent=6).assess(["a1"], SessionType.METRICS)
        self.assertGreater(risk.factors.concurrent_sessions, RiskPolicy().busy_sessions)
        self.assertNotIn("High concurrent session count may increase error rates", risk.recommendations)

    def test_unhealthy_accounts_are_reported(self):
        history = _auth_failures("a1", 12)
        risk = _assessment(error_rate=0.0).assess(["a1", "a2"], SessionType.METRICS, history)
        self.assertIn("Consider excluding 1 unhealthy accounts", risk.recommendations)

    def test_extreme_risk_blocks_session(self):
        history = _auth_failures("a1", 20) + _auth_failures("a2", 20)
        risk = _assessment(at=NOON, error_rate=0.5, concurrent=11, load=1.0).assess(
            ["a1", "a2"], SessionType.METRICS, history
        )
        self.assertIs(risk.risk_level, RiskLevel.EXTREME)
        self.assertFalse(risk.should_proceed)

    def test_night_runs_are_cheaper(self):
        risk = _assessment(at=NIGHT, error_rate=0.0).assess(["a1"], SessionType.METRICS)
        self.assertIs(risk.factors.time_of_day, TimeOfDay.OFF_PEAK)
        self.assertLess(risk.risk_score, 0)


if __name__ == "__main__":
    unittest.main()
