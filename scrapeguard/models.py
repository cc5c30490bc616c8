from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class SessionType(str, Enum):
    METRICS = "METRICS"
    FOLLOWERS = "FOLLOWERS"
    CONTENT = "CONTENT"
    TREND = "TREND"


class SessionStatus(str, Enum):
    PENDING = "PENDING"
    IDLE = "IDLE"
    SCHEDULED = "SCHEDULED"
    INITIALIZING = "INITIALIZING"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    RATE_LIMITED = "RATE_LIMITED"


TERMINAL_STATUSES = frozenset(
    {
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
        SessionStatus.CANCELLED,
        SessionStatus.RATE_LIMITED,
    }
)

ACTIVE_STATUSES = frozenset({SessionStatus.INITIALIZING, SessionStatus.RUNNING, SessionStatus.PAUSED})


class SessionAction(str, Enum):
    """Operator-facing control actions."""

    START = "START"
    PAUSE = "PAUSE"
    RESUME = "RESUME"
    STOP = "STOP"
    RETRY = "RETRY"


class SystemAction(str, Enum):
    """Transitions driven by the session worker rather than an operator."""

    RUN = "RUN"
    COMPLETE = "COMPLETE"
    FAIL = "FAIL"
    RATE_LIMIT = "RATE_LIMIT"


class ErrorType(str, Enum):
    RATE_LIMIT = "RATE_LIMIT_EXCEEDED"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class Impact(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class Mitigation(str, Enum):
    PREVENTIVE = "PREVENTIVE"
    REACTIVE = "REACTIVE"
    PROACTIVE = "PROACTIVE"


class RecoveryStrategy(str, Enum):
    RETRY = "RETRY"
    BACKOFF = "BACKOFF"
    PAUSE_SESSION = "PAUSE_SESSION"
    SKIP = "SKIP"
    QUARANTINE = "QUARANTINE"
    CANCEL_SESSION = "CANCEL_SESSION"


class RecommendedAction(str, Enum):
    CONTINUE = "CONTINUE"
    PAUSE = "PAUSE"
    INVESTIGATE = "INVESTIGATE"
    QUARANTINE = "QUARANTINE"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    EXTREME = "EXTREME"


class TimeOfDay(str, Enum):
    PEAK = "PEAK"
    NORMAL = "NORMAL"
    OFF_PEAK = "OFF_PEAK"


class SystemHealth(str, Enum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    FAIR = "FAIR"
    POOR = "POOR"


@dataclass(frozen=True)
class Account:
    """A target account as read from the external account store."""

    account_id: str
    username: str
    last_scraped_at: Optional[float] = None
    is_owned: bool = False


@dataclass(frozen=True)
class ScrapingError:
    """A classified failure. Created once per failed call and never mutated."""

    type: ErrorType
    severity: Severity
    message: str
    timestamp: float
    retryable: bool
    account_id: Optional[str] = None
    session_id: Optional[str] = None
    retry_after: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "timestamp": self.timestamp,
            "retryable": self.retryable,
            "account_id": self.account_id,
            "session_id": self.session_id,
            "retry_after": self.retry_after,
        }


@dataclass(frozen=True)
class ErrorContext:
    session_id: Optional[str] = None
    account_id: Optional[str] = None
    attempt: int = 0
    max_attempts: int = 3
    session_type: Optional[SessionType] = None
    last_error: Optional[ScrapingError] = None
    consecutive_critical: int = 0


@dataclass(frozen=True)
class ErrorPattern:
    pattern_id: str
    error_types: Tuple[ErrorType, ...]
    frequency: int
    time_window: float
    confidence: float
    predicted_impact: Impact
    mitigation_strategy: Mitigation
    account_ids: Optional[Tuple[str, ...]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pattern_id": self.pattern_id,
            "error_types": [t.value for t in self.error_types],
            "frequency": self.frequency,
            "time_window": self.time_window,
            "confidence": self.confidence,
            "predicted_impact": self.predicted_impact.value,
            "mitigation_strategy": self.mitigation_strategy.value,
            "account_ids": list(self.account_ids) if self.account_ids else None,
        }


@dataclass(frozen=True)
class PatternMatch:
    matched: bool
    patterns: Tuple[ErrorPattern, ...]
    risk_score: float


@dataclass(frozen=True)
class HealthRiskFactors:
    consecutive_failures: int
    hourly_error_rate: float
    last_successful_session: Optional[float]
    suspicious_activity: bool
    rate_limit_history: Tuple[float, ...]


@dataclass(frozen=True)
class HealthPrediction:
    next_error_probability: float
    recommended_action: RecommendedAction
    confidence: float


@dataclass(frozen=True)
class AccountHealth:
    account_id: str
    health_score: float
    risk_factors: HealthRiskFactors
    predictions: HealthPrediction
    last_analyzed: float

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["predictions"]["recommended_action"] = self.predictions.recommended_action.value
        data["risk_factors"]["rate_limit_history"] = list(self.risk_factors.rate_limit_history)
        return data


@dataclass(frozen=True)
class SessionRiskFactors:
    account_health_scores: Tuple[float, ...]
    historical_error_rate: float
    time_of_day: TimeOfDay
    concurrent_sessions: int
    system_load: float


@dataclass(frozen=True)
class SessionRisk:
    risk_level: RiskLevel
    risk_score: float
    factors: SessionRiskFactors
    recommendations: Tuple[str, ...]
    should_proceed: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "risk_level": self.risk_level.value,
            "risk_score": self.risk_score,
            "factors": {
                "account_health_scores": list(self.factors.account_health_scores),
                "historical_error_rate": self.factors.historical_error_rate,
                "time_of_day": self.factors.time_of_day.value,
                "concurrent_sessions": self.factors.concurrent_sessions,
                "system_load": self.factors.system_load,
            },
            "recommendations": list(self.recommendations),
            "should_proceed": self.should_proceed,
        }


@dataclass(frozen=True)
class RecoveryDecision:
    strategy: RecoveryStrategy
    reason: str
    delay: Optional[float] = None


@dataclass(frozen=True)
class ProgressUpdate:
    """Increments applied to a session's counters. All fields are deltas."""

    completed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0
    request_units: int = 0
    cost: float = 0.0
    last_error: Optional[str] = None


@dataclass(frozen=True)
class RateLimitStatus:
    requests_last_minute: int
    requests_last_hour: int
    is_limited: bool
    suggested_delay: float
    next_allowed_request: float


@dataclass(frozen=True)
class CostAnalysis:
    total_eligible_accounts: int
    accounts_within_budget: int
    estimated_daily_cost: float
    estimated_monthly_cost: float
    budget_utilization: float
    recommended_account_limit: int
    savings_opportunities: Tuple[str, ...]


@dataclass(frozen=True)
class FetchOutcome:
    """Result of one metrics-API call. Exactly one of data / failure is meaningful."""

    success: bool
    username: str
    latency_ms: int
    data: Optional[Any] = None
    request_units: int = 0
    failure: Optional[Any] = None


@dataclass(frozen=True)
class ScrapingSession:
    session_id: str
    session_type: SessionType
    status: SessionStatus
    target_accounts: Tuple[Account, ...]
    total_accounts: int
    created_at: float
    updated_at: float
    completed_accounts: int = 0
    failed_accounts: int = 0
    skipped_accounts: int = 0
    progress: int = 0
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    estimated_completion: Optional[float] = None
    scheduled_for: Optional[float] = None
    total_request_units: int = 0
    estimated_cost: float = 0.0
    error_count: int = 0
    last_error: Optional[str] = None
    triggered_by: Optional[str] = None
    trigger_source: str = "MANUAL"

    @property
    def processed_accounts(self) -> int:
        return self.completed_accounts + self.failed_accounts + self.skipped_accounts

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "session_type": self.session_type.value,
            "status": self.status.value,
            "target_accounts": [a.username for a in self.target_accounts],
            "total_accounts": self.total_accounts,
            "completed_accounts": self.completed_accounts,
            "failed_accounts": self.failed_accounts,
            "skipped_accounts": self.skipped_accounts,
            "progress": self.progress,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "estimated_completion": self.estimated_completion,
            "scheduled_for": self.scheduled_for,
            "total_request_units": self.total_request_units,
            "estimated_cost": self.estimated_cost,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "triggered_by": self.triggered_by,
            "trigger_source": self.trigger_source,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class LogInstruction:
    level: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PersistInstruction:
    session: ScrapingSession


@dataclass(frozen=True)
class TransitionResult:
    session: ScrapingSession
    events: Tuple[Any, ...]


@dataclass(frozen=True)
class ControlResult:
    session_id: str
    action: SessionAction
    accepted: bool
    previous_status: SessionStatus
    new_status: SessionStatus
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "action": self.action.value,
            "accepted": self.accepted,
            "previous_status": self.previous_status.value,
            "new_status": self.new_status.value,
            "message": self.message,
        }


@dataclass(frozen=True)
class AccountOutcome:
    """One per-account result, recorded by MetricsCollector."""

    session_id: str
    session_type: SessionType
    account_id: str
    success: bool
    latency_ms: int
    error_type: Optional[ErrorType] = None
    request_units: int = 0


@dataclass(frozen=True)
class MetricsSnapshot:
    window_secs: int
    total_requests: int
    success_count: int
    error_counts: Dict[str, int]
    rate_limit_count: int
    timeout_count: int
    avg_latency_ms: float
    timestamp: float

    @property
    def error_rate(self) -> float:
        if not self.total_requests:
            return 0.0
        return (self.total_requests - self.success_count) / self.total_requests


@dataclass(frozen=True)
class ConfigValidation:
    is_valid: bool
    errors: List[str]
    warnings: List[str]
