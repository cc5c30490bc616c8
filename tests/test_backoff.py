"""Tests for the BackoffStrategy class."""

import unittest

from scrapeguard.backoff import BackoffStrategy


class TestBackoffStrategy(unittest.TestCase):
    """Verify exponential backoff produces min(base * 2^attempt, cap)."""

    def test_first_retry_returns_base(self):
        backoff = BackoffStrategy(base_seconds=1.0, max_seconds=30.0)
        self.assertEqual(backoff.get_sleep(attempt=0), 1.0)

    def test_exponential_growth(self):
        """Each subsequent attempt should double the sleep time."""
        backoff = BackoffStrategy(base_seconds=0.5, max_seconds=100.0)
        self.assertEqual(
            [backoff.get_sleep(a) for a in range(4)],
            [0.5, 1.0, 2.0, 4.0],
        )

    def test_respects_max_seconds(self):
        backoff = BackoffStrategy(base_seconds=1.0, max_seconds=5.0)
        self.assertEqual(backoff.get_sleep(attempt=20), 5.0)

    def test_jitter_stays_within_ratio(self):
        """Jitter adds at most jitter_ratio of the delay and never subtracts."""
        backoff = BackoffStrategy(base_seconds=1.0, max_seconds=30.0, jitter_ratio=0.1)
        for attempt in range(6):
            exp = min(30.0, 2.0 ** attempt)
            sleep = backoff.get_sleep(attempt)
            self.assertGreaterEqual(sleep, exp)
            self.assertLessEqual(sleep, exp * 1.1)

    def test_error_type_is_accepted(self):
        backoff = BackoffStrategy()
        self.assertEqual(backoff.get_sleep(attempt=1, error_type="TIMEOUT_ERROR"), 2.0)


if __name__ == "__main__":
    unittest.main()
