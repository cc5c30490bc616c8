from __future__ import annotations

import random
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests
from curl_cffi import CurlError
from curl_cffi import requests as curl_requests

from .config import FULL_PROFILE_UNITS, REDUCED_PROFILE_UNITS, ApiSettings
from .errors import HttpFailure, NetworkFailure, RawFailure, TimeoutFailure, UnexpectedFailure
from .exceptions import ApiFailure
from .models import FetchOutcome

PROFILE_ENDPOINT = "/a2/user"
BASIC_PROFILE_ENDPOINT = "/v1/user/by/username"
DEFAULT_RETRY_AFTER = 60.0
USER_AGENT = "scrapeguard/0.1"


class MetricsApiClient(ABC):
    """Abstract base class defining the profile-fetch pipeline.

    fetch_profile() never raises: transport and HTTP failures come back as a
    failed FetchOutcome carrying a RawFailure for the error classifier.
    """

    def fetch_profile(self, username: str) -> FetchOutcome:
        start_ms = self._now_ms()
        try:
            self.validate(username)
            response = self.fetch(username)
            data, units = self.parse(response)
            return FetchOutcome(
                success=True,
                username=username,
                latency_ms=self._now_ms() - start_ms,
                data=data,
                request_units=units,
            )
        except ApiFailure as exc:
            failure: RawFailure = exc.raw
        except Exception as exc:  # noqa: BLE001
            failure = UnexpectedFailure(message=str(exc), exception_type=type(exc).__name__)
        return FetchOutcome(
            success=False,
            username=username,
            latency_ms=self._now_ms() - start_ms,
            failure=failure,
        )

    def validate(self, username: str) -> None:
        if not username or not username.strip():
            raise ValueError("username is required")

    @abstractmethod
    def fetch(self, username: str) -> Any:
        """Perform the request; raise ApiFailure on transport or HTTP failure."""

    @abstractmethod
    def parse(self, response: Any) -> Tuple[Any, int]:
        """Return (profile data, request units billed)."""

    @staticmethod
    def _now_ms() -> int:
        return int(time.time() * 1000)


class HttpMetricsApiClient(MetricsApiClient):
    """Profile client for the HikerAPI-style metrics API.

    Uses a requests.Session by default. When ``settings.impersonate`` is set
    (e.g. "chrome120") requests go through curl_cffi with browser TLS
    impersonation instead.
    """

    def __init__(self, settings: ApiSettings, reduced_data: bool = False, session: Any = None) -> None:
        self._settings = settings
        self._reduced = reduced_data
        if session is not None:
            self._session = session
        elif settings.impersonate:
            self._session = curl_requests.Session()
        else:
            self._session = requests.Session()

    @property
    def endpoint(self) -> str:
        return BASIC_PROFILE_ENDPOINT if self._reduced else PROFILE_ENDPOINT

    @property
    def default_units(self) -> int:
        return REDUCED_PROFILE_UNITS if self._reduced else FULL_PROFILE_UNITS

    def fetch(self, username: str) -> Any:
        kwargs: Dict[str, Any] = {
            "params": {"username": username},
            "headers": self._headers(),
            "timeout": self._settings.timeout_seconds,
        }
        if self._settings.impersonate:
            kwargs["impersonate"] = self._settings.impersonate
        url = self._settings.base_url.rstrip("/") + self.endpoint

        try:
            response = self._session.request("GET", url, **kwargs)
        except requests.Timeout as exc:
            raise ApiFailure(TimeoutFailure(message=str(exc), timeout_seconds=self._settings.timeout_seconds))
        except requests.ConnectionError as exc:
            raise ApiFailure(NetworkFailure(message=str(exc)))
        except CurlError as exc:
            if "timed out" in str(exc).lower() or "timeout" in str(exc).lower():
                raise ApiFailure(TimeoutFailure(message=str(exc), timeout_seconds=self._settings.timeout_seconds))
            raise ApiFailure(NetworkFailure(message=str(exc)))

        status_code = int(response.status_code)
        if not 200 <= status_code < 300:
            raise ApiFailure(
                HttpFailure(
                    status_code=status_code,
                    message=_error_message(response),
                    retry_after=_retry_after(response) if status_code == 429 else None,
                )
            )
        return response

    def parse(self, response: Any) -> Tuple[Any, int]:
        try:
            payload = response.json()
        except ValueError:
            raise ApiFailure(
                UnexpectedFailure(message="invalid JSON in profile response", exception_type="ValueError")
            )
        if not isinstance(payload, dict):
            return payload, self.default_units
        data = payload.get("response") or payload
        units = payload.get("request_units") or self.default_units
        return data, int(units)

    def _headers(self) -> Dict[str, str]:
        headers = {"accept": "application/json", "user-agent": USER_AGENT}
        if self._settings.api_key:
            headers["x-access-key"] = self._settings.api_key
        return headers


def _error_message(response: Any) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        message = payload.get("message") or payload.get("detail") or payload.get("error")
        if message:
            return str(message)
    text = getattr(response, "text", "") or ""
    return text[:200] or f"HTTP {response.status_code}"


def _retry_after(response: Any) -> float:
    value = (getattr(response, "headers", None) or {}).get("retry-after")
    try:
        return float(value) if value is not None else DEFAULT_RETRY_AFTER
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER


class MockMetricsApiClient(MetricsApiClient):
    """Offline client for demos and tests.

    ``scripted`` maps a username to failures returned, in order, before the
    account starts succeeding. Otherwise each call fails with probability
    ``failure_rate`` using a seeded generator.
    """

    RANDOM_FAILURES: Sequence[RawFailure] = (
        HttpFailure(status_code=429, message="Too Many Requests", retry_after=2.0),
        TimeoutFailure(message="read timed out", timeout_seconds=30.0),
        NetworkFailure(message="connection reset by peer"),
        HttpFailure(status_code=404, message="Account not found or private"),
    )

    def __init__(
        self,
        scripted: Optional[Dict[str, Sequence[RawFailure]]] = None,
        failure_rate: float = 0.0,
        seed: Optional[int] = None,
        reduced_data: bool = False,
    ) -> None:
        self._scripted: Dict[str, List[RawFailure]] = {k: list(v) for k, v in (scripted or {}).items()}
        self._failure_rate = failure_rate
        self._rng = random.Random(seed)
        self._reduced = reduced_data
        self.calls: List[str] = []

    def fetch(self, username: str) -> Any:
        self.calls.append(username)
        pending = self._scripted.get(username)
        if pending:
            raise ApiFailure(pending.pop(0))
        if self._failure_rate and self._rng.random() < self._failure_rate:
            raise ApiFailure(self._rng.choice(self.RANDOM_FAILURES))
        return {
            "pk": f"mock_{username}",
            "username": username,
            "full_name": f"Mock User {username}",
            "is_private": False,
            "follower_count": self._rng.randint(1000, 101000),
            "following_count": self._rng.randint(100, 2100),
            "media_count": self._rng.randint(50, 550),
        }

    def parse(self, response: Any) -> Tuple[Any, int]:
        return response, REDUCED_PROFILE_UNITS if self._reduced else FULL_PROFILE_UNITS
