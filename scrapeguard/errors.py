"""Raw failure shapes at the API-client boundary and their classification.

Every failure coming out of a metrics-API client is one of the RawFailure
variants below. classify_error() maps a raw failure (or any other
object) onto the closed ErrorType taxonomy. It is deterministic, has no
side effects and never raises.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

from .models import ErrorContext, ErrorType, ScrapingError, Severity


@dataclass(frozen=True)
class HttpFailure:
    status_code: int
    message: str = ""
    retry_after: Optional[float] = None


@dataclass(frozen=True)
class TimeoutFailure:
    message: str = "request timed out"
    timeout_seconds: Optional[float] = None


@dataclass(frozen=True)
class NetworkFailure:
    message: str = "network error"


@dataclass(frozen=True)
class UnexpectedFailure:
    message: str
    exception_type: str = "Exception"


RawFailure = Union[HttpFailure, TimeoutFailure, NetworkFailure, UnexpectedFailure]


SEVERITY: Dict[ErrorType, Severity] = {
    ErrorType.RATE_LIMIT: Severity.MEDIUM,
    ErrorType.INSUFFICIENT_BALANCE: Severity.CRITICAL,
    ErrorType.ACCOUNT_NOT_FOUND: Severity.LOW,
    ErrorType.AUTHENTICATION_ERROR: Severity.HIGH,
    ErrorType.TIMEOUT_ERROR: Severity.MEDIUM,
    ErrorType.NETWORK_ERROR: Severity.MEDIUM,
    ErrorType.UNKNOWN_ERROR: Severity.MEDIUM,
}

RETRYABLE = frozenset({ErrorType.RATE_LIMIT, ErrorType.TIMEOUT_ERROR, ErrorType.NETWORK_ERROR})

MESSAGES: Dict[ErrorType, str] = {
    ErrorType.RATE_LIMIT: "API rate limit exceeded",
    ErrorType.INSUFFICIENT_BALANCE: "Insufficient API balance",
    ErrorType.ACCOUNT_NOT_FOUND: "Account not found or private",
    ErrorType.AUTHENTICATION_ERROR: "API authentication failed",
    ErrorType.TIMEOUT_ERROR: "Request timeout",
    ErrorType.NETWORK_ERROR: "Network error while contacting the API",
    ErrorType.UNKNOWN_ERROR: "Unknown error occurred",
}


_RATE_LIMIT_HINTS = ("rate limit", "too many requests", "throttl")
_BALANCE_HINTS = ("insufficient balance", "payment required", "balance", "quota")
_NOT_FOUND_HINTS = ("not found", "private", "does not exist")
_TIMEOUT_HINTS = ("timeout", "timed out")
_AUTH_HINTS = ("unauthorized", "forbidden", "authentication", "invalid api key", "access key")
_NETWORK_HINTS = ("connection", "network", "dns", "unreachable", "reset by peer")

_MAX_DETAIL = 200


def is_retryable(error_type: ErrorType) -> bool:
    return error_type in RETRYABLE


def classify_error(raw: Any, context: Optional[ErrorContext] = None, now: Optional[float] = None) -> ScrapingError:
    """Turn a raw client failure into a ScrapingError."""
    context = context or ErrorContext()
    timestamp = time.time() if now is None else now
    try:
        error_type, retry_after, detail = _match(raw)
    except Exception:  # noqa: BLE001
        error_type, retry_after, detail = ErrorType.UNKNOWN_ERROR, None, ""

    retryable = is_retryable(error_type)
    severity = SEVERITY[error_type]
    if error_type is ErrorType.RATE_LIMIT and context.attempt >= context.max_attempts:
        # Throttling that outlasted the retry budget.
        severity = Severity.HIGH

    message = MESSAGES[error_type]
    if error_type is ErrorType.UNKNOWN_ERROR and detail:
        message = f"{message}: {detail[:_MAX_DETAIL]}"

    return ScrapingError(
        type=error_type,
        severity=severity,
        message=message,
        timestamp=timestamp,
        retryable=retryable,
        account_id=context.account_id,
        session_id=context.session_id,
        retry_after=retry_after if error_type is ErrorType.RATE_LIMIT else None,
    )


def _match(raw: Any) -> Tuple[ErrorType, Optional[float], str]:
    status, text, retry_after = _describe(raw)
    lowered = text.lower()

    if status == 429 or _contains(lowered, _RATE_LIMIT_HINTS):
        return ErrorType.RATE_LIMIT, retry_after, text
    if status == 402 or _contains(lowered, _BALANCE_HINTS):
        return ErrorType.INSUFFICIENT_BALANCE, None, text
    if status == 404 or _contains(lowered, _NOT_FOUND_HINTS):
        return ErrorType.ACCOUNT_NOT_FOUND, None, text
    if isinstance(raw, (TimeoutFailure, TimeoutError)) or status in (408, 504) or _contains(lowered, _TIMEOUT_HINTS):
        return ErrorType.TIMEOUT_ERROR, None, text
    if status in (401, 403) or _contains(lowered, _AUTH_HINTS):
        return ErrorType.AUTHENTICATION_ERROR, None, text
    if isinstance(raw, (NetworkFailure, ConnectionError)) or _contains(lowered, _NETWORK_HINTS):
        return ErrorType.NETWORK_ERROR, None, text
    return ErrorType.UNKNOWN_ERROR, None, text


def _describe(raw: Any) -> Tuple[Optional[int], str, Optional[float]]:
    """Extract (status code, text, retry-after) from whatever the client produced."""
    if isinstance(raw, HttpFailure):
        return raw.status_code, raw.message, raw.retry_after
    if isinstance(raw, (TimeoutFailure, NetworkFailure)):
        return None, raw.message, None
    if isinstance(raw, UnexpectedFailure):
        return None, f"{raw.exception_type}: {raw.message}", None
    if isinstance(raw, BaseException):
        status = _as_int(getattr(raw, "status_code", None) or getattr(getattr(raw, "response", None), "status_code", None))
        return status, f"{type(raw).__name__}: {raw}", _as_float(getattr(raw, "retry_after", None))
    if isinstance(raw, dict):
        status = _as_int(raw.get("status_code") or raw.get("status"))
        text = str(raw.get("message") or raw.get("error") or raw.get("detail") or "")
        return status, text, _as_float(raw.get("retry_after"))
    if raw is None:
        return None, "", None
    return None, str(raw), None


def _contains(text: str, hints: Tuple[str, ...]) -> bool:
    return any(h in text for h in hints)


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None
