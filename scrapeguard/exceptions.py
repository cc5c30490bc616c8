from __future__ import annotations

from typing import Any


class ScrapeGuardError(Exception):
    """Base class for all errors raised by this package."""


class ConfigError(ScrapeGuardError):
    """Raised when a configuration fails validation in strict mode."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("Invalid scraping configuration: " + "; ".join(self.errors))


class SessionNotFoundError(ScrapeGuardError):
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class IllegalTransitionError(ScrapeGuardError):
    """Raised when an action is not allowed for the session's current status."""

    def __init__(self, current_status: Any, action: Any) -> None:
        self.current_status = current_status
        self.action = action
        status = getattr(current_status, "value", current_status)
        name = getattr(action, "value", action)
        super().__init__(f"Cannot {name} session in {status} status")


class ApiFailure(ScrapeGuardError):
    """Carries a raw failure from the transport layer to the client boundary.

    Only raised inside MetricsApiClient implementations; fetch_profile() turns
    it into a failed FetchOutcome.
    """

    def __init__(self, raw: Any) -> None:
        self.raw = raw
        super().__init__(getattr(raw, "message", str(raw)))
