"""Tests for the metrics API clients."""

import unittest
from unittest import mock

import requests

from scrapeguard.client import (
    BASIC_PROFILE_ENDPOINT,
    PROFILE_ENDPOINT,
    HttpMetricsApiClient,
    MockMetricsApiClient,
)
from scrapeguard.config import ApiSettings
from scrapeguard.errors import HttpFailure, NetworkFailure, TimeoutFailure, UnexpectedFailure


def _response(status_code=200, payload=None, headers=None, text=""):
    response = mock.MagicMock()
    response.status_code = status_code
    response.headers = headers or {}
    response.text = text
    if isinstance(payload, Exception):
        response.json.side_effect = payload
    else:
        response.json.return_value = payload
    return response


def _client(response=None, side_effect=None, **settings):
    session = mock.MagicMock()
    if side_effect is not None:
        session.request.side_effect = side_effect
    else:
        session.request.return_value = response
    defaults = dict(base_url="https://api.example.test/", api_key="secret")
    defaults.update(settings)
    return HttpMetricsApiClient(ApiSettings(**defaults), session=session), session


class TestHttpMetricsApiClient(unittest.TestCase):
    """Verify request construction and failure mapping."""

    def test_success(self):
        client, session = _client(_response(payload={"response": {"username": "alice"}, "request_units": 2}))
        outcome = client.fetch_profile("alice")
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.data, {"username": "alice"})
        self.assertEqual(outcome.request_units, 2)

        method, url = session.request.call_args.args
        kwargs = session.request.call_args.kwargs
        self.assertEqual(method, "GET")
        self.assertEqual(url, "https://api.example.test" + PROFILE_ENDPOINT)
        self.assertEqual(kwargs["params"], {"username": "alice"})
        self.assertEqual(kwargs["headers"]["x-access-key"], "secret")
        self.assertEqual(kwargs["timeout"], 30.0)
        self.assertNotIn("impersonate", kwargs)

    def test_reduced_data_uses_basic_endpoint(self):
        session = mock.MagicMock()
        session.request.return_value = _response(payload={"username": "bob"})
        client = HttpMetricsApiClient(ApiSettings(api_key="k"), reduced_data=True, session=session)
        outcome = client.fetch_profile("bob")
        self.assertEqual(outcome.request_units, 1)
        self.assertTrue(session.request.call_args.args[1].endswith(BASIC_PROFILE_ENDPOINT))

    def test_impersonate_is_passed_through(self):
        client, session = _client(_response(payload={}), impersonate="chrome120")
        client.fetch_profile("alice")
        self.assertEqual(session.request.call_args.kwargs["impersonate"], "chrome120")

    def test_rate_limited_response(self):
        client, _ = _client(_response(429, {"message": "Too many requests"}, headers={"retry-after": "17"}))
        outcome = client.fetch_profile("alice")
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.failure, HttpFailure(status_code=429, message="Too many requests", retry_after=17.0))

    def test_rate_limited_without_header_defaults(self):
        client, _ = _client(_response(429, ValueError("no json"), text=""))
        outcome = client.fetch_profile("alice")
        self.assertEqual(outcome.failure.retry_after, 60.0)
        self.assertEqual(outcome.failure.message, "HTTP 429")

    def test_not_found(self):
        client, _ = _client(_response(404, {"detail": "Target user not found"}))
        failure = client.fetch_profile("ghost").failure
        self.assertEqual(failure.status_code, 404)
        self.assertIsNone(failure.retry_after)

    def test_timeout(self):
        client, _ = _client(side_effect=requests.Timeout("read timed out"))
        failure = client.fetch_profile("alice").failure
        self.assertIsInstance(failure, TimeoutFailure)
        self.assertEqual(failure.timeout_seconds, 30.0)

    def test_connection_error(self):
        client, _ = _client(side_effect=requests.ConnectionError("connection refused"))
        self.assertIsInstance(client.fetch_profile("alice").failure, NetworkFailure)

    def test_invalid_json(self):
        client, _ = _client(_response(200, ValueError("bad json")))
        failure = client.fetch_profile("alice").failure
        self.assertIsInstance(failure, UnexpectedFailure)

    def test_blank_username_never_hits_the_api(self):
        client, session = _client(_response(payload={}))
        outcome = client.fetch_profile("  ")
        self.assertFalse(outcome.success)
        self.assertIsInstance(outcome.failure, UnexpectedFailure)
        session.request.assert_not_called()

    def test_default_session_is_requests(self):
        with mock.patch.object(requests.Session, "request", return_value=_response(payload={"pk": 1})) as request:
            outcome = HttpMetricsApiClient(ApiSettings(api_key="k")).fetch_profile("alice")
        self.assertTrue(outcome.success)
        request.assert_called_once()


class TestMockMetricsApiClient(unittest.TestCase):
    def test_scripted_failures_then_success(self):
        client = MockMetricsApiClient(scripted={"alice": [TimeoutFailure(), HttpFailure(status_code=429)]})
        results = [client.fetch_profile("alice") for _ in range(3)]
        self.assertIsInstance(results[0].failure, TimeoutFailure)
        self.assertEqual(results[1].failure.status_code, 429)
        self.assertTrue(results[2].success)
        self.assertEqual(results[2].data["username"], "alice")
        self.assertEqual(client.calls, ["alice"] * 3)

    def test_seeded_failures_are_reproducible(self):
        first = MockMetricsApiClient(failure_rate=0.5, seed=42)
        second = MockMetricsApiClient(failure_rate=0.5, seed=42)
        a = [first.fetch_profile(f"u{i}").success for i in range(20)]
        b = [second.fetch_profile(f"u{i}").success for i in range(20)]
        self.assertEqual(a, b)
        self.assertIn(False, a)


if __name__ == "__main__":
    unittest.main()
