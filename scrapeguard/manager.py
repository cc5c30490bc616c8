"""
Session manager: creation, operator control, queries and the per-account worker.

The manager is the only component that owns durable state. All status
changes go through session.transition()/apply_progress() and the resulting
instructions are carried out here (store upsert, event log, logger).
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import Future
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from .backoff import BackoffStrategy
from .client import MetricsApiClient
from .config import ScrapingConfig
from .controller import SessionPool
from .cost_optimizer import CostOptimizer
from .exceptions import IllegalTransitionError, ScrapeGuardError
from .health import AccountHealthMonitor
from .logging_utils import log_event
from .metrics import MetricsCollector
from .models import (
    ACTIVE_STATUSES,
    Account,
    AccountHealth,
    AccountOutcome,
    ControlResult,
    ErrorContext,
    LogInstruction,
    PersistInstruction,
    ProgressUpdate,
    RecoveryStrategy,
    RiskLevel,
    ScrapingSession,
    SessionAction,
    SessionRisk,
    SessionStatus,
    SessionType,
    Severity,
    SystemAction,
    TransitionResult,
)
from .patterns import ErrorPatternAnalyzer
from .rate_limiter import RateLimiter
from .recovery import ErrorRecoveryManager, SessionCallbacks
from .risk import SessionRiskAssessment, default_system_load
from .session import apply_progress, transition
from .storage import EventLog, InMemoryEventLog, InMemorySessionStore, SessionStore, make_record
from .strategies import RecoverySelector

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 30.0
MAX_RATE_LIMIT_WAIT = 300.0
PAUSE_POLL_SECONDS = 1.0

_LOG_LEVELS = {"DEBUG": logging.DEBUG, "INFO": logging.INFO, "WARN": logging.WARNING, "ERROR": logging.ERROR}


class SessionManager(SessionCallbacks):
    def __init__(
        self,
        config: ScrapingConfig,
        client: MetricsApiClient,
        store: Optional[SessionStore] = None,
        event_log: Optional[EventLog] = None,
        rate_limiter: Optional[RateLimiter] = None,
        recovery: Optional[ErrorRecoveryManager] = None,
        metrics: Optional[MetricsCollector] = None,
        pool: Optional[SessionPool] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        system_load_provider: Callable[[], float] = default_system_load,
        max_rate_limit_wait: float = MAX_RATE_LIMIT_WAIT,
        autorun: bool = True,
        analyze_patterns: bool = True,
    ) -> None:
        self._config = config
        self._client = client
        self._clock = clock
        self._sleep = sleep
        self._max_rate_limit_wait = max_rate_limit_wait
        self._autorun = autorun

        self.store = store or InMemorySessionStore()
        self.event_log = event_log or InMemoryEventLog()
        self.metrics = metrics or MetricsCollector(clock=clock)
        self.rate_limiter = rate_limiter or RateLimiter(config, clock=clock, sleep=sleep)
        self.cost_optimizer = CostOptimizer(config, clock=clock)
        self.pool = pool or SessionPool()

        if recovery is None:
            health = AccountHealthMonitor(clock=clock)
            recovery = ErrorRecoveryManager(
                config,
                analyzer=ErrorPatternAnalyzer(clock=clock),
                health_monitor=health,
                selector=RecoverySelector(BackoffStrategy(config.retry_backoff_base, MAX_BACKOFF_SECONDS)),
                risk_assessment=SessionRiskAssessment(
                    health,
                    error_rate_provider=self.metrics.error_rate,
                    concurrent_sessions_provider=self.active_session_count,
                    system_load_provider=system_load_provider,
                    clock=clock,
                ),
                clock=clock,
            )
        self.recovery = recovery
        if analyze_patterns:
            self.recovery.analyzer.start()

        self._lock = threading.RLock()
        self._cv = threading.Condition(self._lock)
        self._critical_streaks: Dict[str, int] = {}
        # Bumped on every accepted START or RETRY; a worker only acts for the run it was started for.
        self._runs: Dict[str, int] = {}

    @property
    def config(self) -> ScrapingConfig:
        return self._config

    # Creation and queries

    def create_session(
        self,
        session_type: SessionType,
        accounts: Sequence[Account],
        triggered_by: Optional[str] = None,
        trigger_source: str = "MANUAL",
        scheduled_for: Optional[float] = None,
    ) -> ScrapingSession:
        now = self._clock()
        session = ScrapingSession(
            session_id=uuid.uuid4().hex,
            session_type=SessionType(session_type),
            status=SessionStatus.SCHEDULED if scheduled_for is not None else SessionStatus.PENDING,
            target_accounts=tuple(accounts),
            total_accounts=len(accounts),
            created_at=now,
            updated_at=now,
            scheduled_for=scheduled_for,
            triggered_by=triggered_by,
            trigger_source=trigger_source,
        )
        with self._lock:
            self.store.save(session)
            self._record(session.session_id, "INFO", "Session created", details={
                "session_type": session.session_type.value,
                "total_accounts": session.total_accounts,
                "status": session.status.value,
                "trigger_source": trigger_source,
            })
        log_event(
            logger,
            logging.INFO,
            "session_created",
            session_id=session.session_id,
            session_type=session.session_type,
            total_accounts=session.total_accounts,
            status=session.status,
        )
        return session

    def get_session(self, session_id: str) -> ScrapingSession:
        return self.store.require(session_id)

    def list_sessions(self, status_filter: Optional[str] = None) -> List[ScrapingSession]:
        """All sessions, newest first. ``status_filter`` is "all", "active" or a status name."""
        sessions = self.store.all_sessions()
        if not status_filter or status_filter.lower() == "all":
            return sessions
        if status_filter.lower() == "active":
            return [s for s in sessions if s.status in ACTIVE_STATUSES]
        wanted = SessionStatus(status_filter.upper())
        return [s for s in sessions if s.status is wanted]

    def session_stats(self) -> Dict[str, int]:
        sessions = self.store.all_sessions()
        return {
            "total": len(sessions),
            "active": sum(1 for s in sessions if s.status in ACTIVE_STATUSES),
            "completed": sum(1 for s in sessions if s.status is SessionStatus.COMPLETED),
            "failed": sum(1 for s in sessions if s.status is SessionStatus.FAILED),
        }

    def active_session_count(self) -> int:
        return sum(1 for s in self.store.all_sessions() if s.status in ACTIVE_STATUSES)

    def preflight(self, accounts: Sequence[Union[Account, str]], session_type: SessionType) -> SessionRisk:
        """Risk assessment for a candidate account list; starts nothing."""
        account_ids = [a.account_id if isinstance(a, Account) else a for a in accounts]
        return self.recovery.assess_pre_session_risk(account_ids, SessionType(session_type))

    def system_analytics(self) -> Dict[str, Any]:
        return self.recovery.get_system_analytics()

    def account_health(self, account_id: str) -> AccountHealth:
        analyzer = self.recovery.analyzer
        return self.recovery.health_monitor.analyze_account_health(account_id, analyzer.history(account_id))

    def validate_system(self) -> Dict[str, Any]:
        return self.recovery.validate_system()

    # Operator control

    def control(
        self, session_id: str, action: Union[SessionAction, str], force: bool = False
    ) -> ControlResult:
        """Apply an operator action. Illegal actions are rejected and leave the status unchanged."""
        action = SessionAction(action.upper() if isinstance(action, str) else action)
        restart = action in (SessionAction.START, SessionAction.RETRY)
        with self._cv:
            session = self.store.require(session_id)
            if restart and self.pool.is_running(session_id):
                return self._reject(session, action, f"Session {session_id} still has a running worker")
            try:
                result = transition(
                    session,
                    action,
                    self._clock(),
                    estimated_duration=self._estimated_duration(session) if action is SessionAction.START else None,
                )
            except IllegalTransitionError as exc:
                return self._reject(session, action, str(exc))
            self._apply(result)
            if restart:
                self._runs[session_id] = self._runs.get(session_id, 0) + 1
            if action is SessionAction.START:
                self._critical_streaks.pop(session_id, None)
            # Wake a worker parked in PAUSED so it sees RESUME or STOP.
            self._cv.notify_all()

        if action is SessionAction.START and self._autorun:
            try:
                self.submit(session_id, force=force)
            except ScrapeGuardError as exc:
                self._fail(session_id, f"Worker not started: {exc}")
                return ControlResult(
                    session_id=session_id,
                    action=action,
                    accepted=False,
                    previous_status=session.status,
                    new_status=self.store.require(session_id).status,
                    message=str(exc),
                )
        return ControlResult(
            session_id=session_id,
            action=action,
            accepted=True,
            previous_status=session.status,
            new_status=result.session.status,
            message=f"Session {action.value.lower()} successful",
        )

    def _reject(self, session: ScrapingSession, action: SessionAction, message: str) -> ControlResult:
        self._record(session.session_id, "WARN", message, details={"action": action.value})
        log_event(
            logger,
            logging.WARNING,
            "session_transition_rejected",
            session_id=session.session_id,
            action=action,
            status=session.status,
        )
        return ControlResult(
            session_id=session.session_id,
            action=action,
            accepted=False,
            previous_status=session.status,
            new_status=session.status,
            message=message,
        )

    def submit(self, session_id: str, force: bool = False) -> Future:
        return self.pool.submit(session_id, lambda: self.run_session(session_id, force=force))

    def close(self, wait: bool = True) -> None:
        self.pool.stop(wait=wait)
        self.recovery.analyzer.stop()
        self.event_log.close()

    # SessionCallbacks

    def pause_session(self, session_id: str, run_id: Optional[int] = None) -> None:
        with self._cv:
            session = self.store.require(session_id)
            if session.status is not SessionStatus.RUNNING or self._superseded(session_id, run_id):
                return
            self._apply(transition(session, SessionAction.PAUSE, self._clock(), reason="error recovery"))

    def cancel_session(self, session_id: str, reason: str, run_id: Optional[int] = None) -> None:
        # Engine-initiated cancellation ends the session as FAILED; operator STOP is CANCELLED.
        self._fail(session_id, reason, run_id)

    def update_session_progress(self, session_id: str, update: ProgressUpdate, run_id: Optional[int] = None) -> None:
        """Fold counter deltas into the session.

        Deltas for a terminal session, or from a worker whose run was
        superseded by a later START/RETRY, are dropped.
        """
        with self._cv:
            session = self.store.require(session_id)
            if session.is_terminal or self._superseded(session_id, run_id):
                log_event(
                    logger,
                    logging.DEBUG,
                    "progress_dropped",
                    session_id=session_id,
                    status=session.status,
                    run_id=run_id,
                )
                return
            self._apply(apply_progress(session, update, self._clock()))

    # Worker

    def run_session(self, session_id: str, force: bool = False) -> ScrapingSession:
        """Process a started session's accounts one at a time. Runs on a pool thread."""
        with self._lock:
            run_id = self._runs.get(session_id, 0)
        try:
            self._run(session_id, run_id, force)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Session worker failed for %s", session_id)
            self._fail(session_id, f"{type(exc).__name__}: {exc}", run_id)
        return self.store.require(session_id)

    def _run(self, session_id: str, run_id: int, force: bool) -> None:
        session = self.store.require(session_id)
        if session.status is not SessionStatus.INITIALIZING:
            log_event(logger, logging.INFO, "session_worker_skipped", session_id=session_id, status=session.status)
            return

        callbacks = _RunCallbacks(self, run_id)
        accounts = list(session.target_accounts)
        risk = self.preflight(accounts, session.session_type)
        self._record(session_id, "INFO", "Pre-flight risk assessed", details=risk.to_dict())
        if not risk.should_proceed and not force:
            self._fail(session_id, f"Pre-flight risk {risk.risk_level.value} ({risk.risk_score}), session aborted", run_id)
            return
        if force and risk.risk_level in (RiskLevel.HIGH, RiskLevel.EXTREME):
            accounts = self._reduce_for_risk(accounts, risk)

        with self._cv:
            session = self.store.require(session_id)
            if session.status is not SessionStatus.INITIALIZING or self._superseded(session_id, run_id):
                return
            self._apply(transition(session, SystemAction.RUN, self._clock()))

        selected = self._select_accounts(accounts)
        not_selected = session.total_accounts - len(selected)
        if not_selected:
            self._record(session_id, "INFO", f"Skipping {not_selected} accounts over budget or risk limits")
            callbacks.update_session_progress(session_id, ProgressUpdate(skipped=not_selected))

        for index, account in enumerate(selected):
            if not self._wait_while_paused(session_id, run_id):
                break
            if self.cost_optimizer.should_skip_account(account.last_scraped_at):
                self._record(session_id, "INFO", "Skipped recently scraped account", account_id=account.account_id)
                callbacks.update_session_progress(session_id, ProgressUpdate(skipped=1))
                continue
            if not self.cost_optimizer.can_afford():
                self._record(session_id, "WARN", "Daily or monthly budget exhausted", account_id=account.account_id)
                callbacks.update_session_progress(session_id, ProgressUpdate(skipped=1))
                continue

            self._scrape_account(callbacks, session_id, session.session_type, account)
            if index < len(selected) - 1:
                self._sleep(self._config.inter_request_delay)

        with self._cv:
            session = self.store.require(session_id)
            if self._superseded(session_id, run_id):
                return
            if session.status is SessionStatus.RUNNING and session.processed_accounts >= session.total_accounts:
                self._apply(transition(session, SystemAction.COMPLETE, self._clock()))

    def _scrape_account(
        self, callbacks: "_RunCallbacks", session_id: str, session_type: SessionType, account: Account
    ) -> None:
        run_id = callbacks.run_id
        attempt = 0
        while True:
            if not self._wait_while_paused(session_id, run_id):
                return
            if not self.rate_limiter.acquire(max_wait=self._max_rate_limit_wait):
                self._rate_limited(session_id, run_id)
                return

            outcome = self._client.fetch_profile(account.username)
            if outcome.success:
                cost = self.cost_optimizer.record_spend(outcome.request_units)
                self.recovery.health_monitor.record_success(account.account_id)
                self.metrics.record(
                    AccountOutcome(
                        session_id=session_id,
                        session_type=session_type,
                        account_id=account.account_id,
                        success=True,
                        latency_ms=outcome.latency_ms,
                        request_units=outcome.request_units,
                    )
                )
                with self._lock:
                    self._critical_streaks[session_id] = 0
                self._record(session_id, "INFO", "Account scraped", account_id=account.account_id, details={
                    "request_units": outcome.request_units,
                    "latency_ms": outcome.latency_ms,
                })
                callbacks.update_session_progress(
                    session_id,
                    ProgressUpdate(completed=1, request_units=outcome.request_units, cost=cost),
                )
                return

            with self._lock:
                streak = self._critical_streaks.get(session_id, 0)
            context = ErrorContext(
                session_id=session_id,
                account_id=account.account_id,
                attempt=attempt,
                max_attempts=self._config.max_retry_attempts,
                session_type=session_type,
                consecutive_critical=streak,
            )
            handled = self.recovery.handle_error(outcome.failure, context, callbacks)
            error = handled.error
            with self._lock:
                self._critical_streaks[session_id] = streak + 1 if error.severity is Severity.CRITICAL else 0
            self.metrics.record(
                AccountOutcome(
                    session_id=session_id,
                    session_type=session_type,
                    account_id=account.account_id,
                    success=False,
                    latency_ms=outcome.latency_ms,
                    error_type=error.type,
                )
            )
            self._record(session_id, "WARN", error.message, account_id=account.account_id, details={
                "error_type": error.type.value,
                "severity": error.severity.value,
                "attempt": attempt,
                "strategy": handled.decision.strategy.value,
                "reason": handled.decision.reason,
            })

            if handled.decision.strategy in (RecoveryStrategy.RETRY, RecoveryStrategy.BACKOFF):
                self._sleep(handled.decision.delay or 0.0)
                attempt += 1
                continue
            return

    def _wait_while_paused(self, session_id: str, run_id: Optional[int] = None) -> bool:
        """Park while the session is PAUSED; True if it is RUNNING afterwards for this run."""
        with self._cv:
            while True:
                session = self.store.require(session_id)
                if self._superseded(session_id, run_id):
                    return False
                if session.status is not SessionStatus.PAUSED:
                    return session.status is SessionStatus.RUNNING
                self._cv.wait(timeout=PAUSE_POLL_SECONDS)

    def _select_accounts(self, accounts: List[Account]) -> List[Account]:
        if self._config.prioritize_owned_accounts:
            accounts = sorted(accounts, key=lambda a: not a.is_owned)
        limit = self.cost_optimizer.get_optimal_session_params(len(accounts))["accounts_to_scrape"]
        return accounts[:limit]

    def _reduce_for_risk(self, accounts: List[Account], risk: SessionRisk) -> List[Account]:
        threshold = self.recovery.risk_assessment.policy.unhealthy_score
        scores = risk.factors.account_health_scores
        kept = [a for a, score in zip(accounts, scores) if score >= threshold]
        if risk.risk_level is RiskLevel.EXTREME:
            kept = kept[: len(kept) // 2]
        log_event(
            logger,
            logging.WARNING,
            "session_reduced_for_risk",
            risk_level=risk.risk_level,
            requested=len(accounts),
            kept=len(kept),
        )
        return kept

    def _estimated_duration(self, session: ScrapingSession) -> float:
        params = self.cost_optimizer.get_optimal_session_params(session.total_accounts)
        return float(params["estimated_duration_minutes"]) * 60.0

    def _superseded(self, session_id: str, run_id: Optional[int]) -> bool:
        """True when a later START/RETRY replaced the run. Caller holds self._lock."""
        return run_id is not None and self._runs.get(session_id, 0) != run_id

    def _fail(self, session_id: str, reason: str, run_id: Optional[int] = None) -> None:
        with self._cv:
            session = self.store.require(session_id)
            if session.status not in ACTIVE_STATUSES or self._superseded(session_id, run_id):
                return
            self._apply(transition(session, SystemAction.FAIL, self._clock(), reason=reason))
            self._cv.notify_all()

    def _rate_limited(self, session_id: str, run_id: Optional[int] = None) -> None:
        # The limiter lock can be held by another session sleeping in acquire(); never wait on it under self._cv.
        status = self.rate_limiter.check_rate_limit()
        reason = f"Rate limit wait of {status.suggested_delay:.0f}s exceeds {self._max_rate_limit_wait:.0f}s"
        with self._cv:
            session = self.store.require(session_id)
            if session.status not in (SessionStatus.RUNNING, SessionStatus.PAUSED) or self._superseded(session_id, run_id):
                return
            self._apply(transition(session, SystemAction.RATE_LIMIT, self._clock(), reason=reason))

    def _apply(self, result: TransitionResult) -> None:
        """Carry out the persist and log instructions of a transition."""
        session_id = result.session.session_id
        for event in result.events:
            if isinstance(event, PersistInstruction):
                self.store.save(event.session)
            elif isinstance(event, LogInstruction):
                self._record(session_id, event.level, event.message, details=event.details)
                log_event(
                    logger,
                    _LOG_LEVELS.get(event.level, logging.INFO),
                    "session_transition",
                    session_id=session_id,
                    **event.details,
                )

    def _record(
        self,
        session_id: str,
        level: str,
        message: str,
        account_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.event_log.append(
            make_record(session_id, level, message, account_id=account_id, details=details, clock=self._clock)
        )


class _RunCallbacks(SessionCallbacks):
    """SessionCallbacks bound to one worker run of a session."""

    def __init__(self, manager: SessionManager, run_id: int) -> None:
        self._manager = manager
        self.run_id = run_id

    def pause_session(self, session_id: str) -> None:
        self._manager.pause_session(session_id, run_id=self.run_id)

    def cancel_session(self, session_id: str, reason: str) -> None:
        self._manager.cancel_session(session_id, reason, run_id=self.run_id)

    def update_session_progress(self, session_id: str, update: ProgressUpdate) -> None:
        self._manager.update_session_progress(session_id, update, run_id=self.run_id)
