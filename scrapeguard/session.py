"""
Session lifecycle as a pure transition function.

transition() and apply_progress() never touch storage or loggers; they return
the next session together with the side effects (log and persist
instructions) the caller is expected to carry out.
"""

from __future__ import annotations

import dataclasses
from typing import Dict, FrozenSet, Optional, Union

from .exceptions import IllegalTransitionError
from .models import (
    LogInstruction,
    PersistInstruction,
    ProgressUpdate,
    ScrapingSession,
    SessionAction,
    SessionStatus,
    SystemAction,
    TransitionResult,
)

Action = Union[SessionAction, SystemAction]

_RESTARTABLE = frozenset({SessionAction.RETRY, SessionAction.START})

ALLOWED_ACTIONS: Dict[SessionStatus, FrozenSet[SessionAction]] = {
    SessionStatus.PENDING: frozenset({SessionAction.START}),
    SessionStatus.IDLE: frozenset({SessionAction.START}),
    SessionStatus.SCHEDULED: frozenset({SessionAction.START, SessionAction.STOP}),
    SessionStatus.INITIALIZING: frozenset({SessionAction.STOP}),
    SessionStatus.RUNNING: frozenset({SessionAction.PAUSE, SessionAction.STOP}),
    SessionStatus.PAUSED: frozenset({SessionAction.RESUME, SessionAction.STOP}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.FAILED: _RESTARTABLE,
    SessionStatus.CANCELLED: _RESTARTABLE,
    SessionStatus.RATE_LIMITED: _RESTARTABLE,
}

SYSTEM_ALLOWED: Dict[SystemAction, FrozenSet[SessionStatus]] = {
    SystemAction.RUN: frozenset({SessionStatus.INITIALIZING}),
    SystemAction.COMPLETE: frozenset({SessionStatus.INITIALIZING, SessionStatus.RUNNING, SessionStatus.PAUSED}),
    SystemAction.FAIL: frozenset({SessionStatus.INITIALIZING, SessionStatus.RUNNING, SessionStatus.PAUSED}),
    SystemAction.RATE_LIMIT: frozenset({SessionStatus.RUNNING, SessionStatus.PAUSED}),
}


def allowed_actions(status: SessionStatus) -> FrozenSet[SessionAction]:
    return ALLOWED_ACTIONS.get(status, frozenset())


def is_allowed(status: SessionStatus, action: Action) -> bool:
    if isinstance(action, SystemAction):
        return status in SYSTEM_ALLOWED[action]
    return action in allowed_actions(status)


def transition(
    session: ScrapingSession,
    action: Action,
    now: float,
    reason: Optional[str] = None,
    estimated_duration: Optional[float] = None,
) -> TransitionResult:
    """Apply ``action`` to ``session``.

    Raises IllegalTransitionError when the action is not allowed from the
    current status; the input session is never modified.
    """
    if not is_allowed(session.status, action):
        raise IllegalTransitionError(session.status, action)

    if action is SessionAction.START:
        updated = dataclasses.replace(
            _reset_counts(session),
            status=SessionStatus.INITIALIZING,
            start_time=now,
            end_time=None,
            estimated_completion=now + estimated_duration if estimated_duration is not None else None,
            updated_at=now,
        )
    elif action is SessionAction.PAUSE:
        updated = dataclasses.replace(session, status=SessionStatus.PAUSED, updated_at=now)
    elif action is SessionAction.RESUME:
        updated = dataclasses.replace(session, status=SessionStatus.RUNNING, updated_at=now)
    elif action is SessionAction.STOP:
        updated = dataclasses.replace(session, status=SessionStatus.CANCELLED, end_time=now, updated_at=now)
    elif action is SessionAction.RETRY:
        updated = dataclasses.replace(
            _reset_counts(session),
            status=SessionStatus.PENDING,
            error_count=0,
            last_error=None,
            start_time=None,
            end_time=None,
            estimated_completion=None,
            updated_at=now,
        )
    elif action is SystemAction.RUN:
        updated = dataclasses.replace(session, status=SessionStatus.RUNNING, updated_at=now)
    elif action is SystemAction.COMPLETE:
        updated = dataclasses.replace(
            session, status=SessionStatus.COMPLETED, progress=100, end_time=now, updated_at=now
        )
    elif action is SystemAction.FAIL:
        updated = dataclasses.replace(
            session,
            status=SessionStatus.FAILED,
            end_time=now,
            last_error=reason or session.last_error,
            updated_at=now,
        )
    else:  # SystemAction.RATE_LIMIT
        updated = dataclasses.replace(
            session,
            status=SessionStatus.RATE_LIMITED,
            end_time=now,
            last_error=reason or session.last_error,
            updated_at=now,
        )

    return TransitionResult(session=updated, events=_events(session, updated, action, reason))


def apply_progress(session: ScrapingSession, update: ProgressUpdate, now: float) -> TransitionResult:
    """Add ``update``'s deltas to the session counters.

    Recomputes the progress percentage and completes the session once every
    target account has been processed. Counts of a terminal session are frozen.
    """
    if session.is_terminal:
        raise IllegalTransitionError(session.status, "update progress of")
    if min(update.completed, update.failed, update.skipped, update.errors, update.request_units) < 0:
        raise ValueError("progress deltas must be non-negative")

    completed = session.completed_accounts + update.completed
    failed = session.failed_accounts + update.failed
    skipped = session.skipped_accounts + update.skipped
    processed = completed + failed + skipped
    if processed > session.total_accounts:
        raise ValueError(
            f"processed accounts ({processed}) would exceed the session total ({session.total_accounts})"
        )

    updated = dataclasses.replace(
        session,
        completed_accounts=completed,
        failed_accounts=failed,
        skipped_accounts=skipped,
        progress=progress_percent(processed, session.total_accounts),
        error_count=session.error_count + update.errors,
        total_request_units=session.total_request_units + update.request_units,
        estimated_cost=round(session.estimated_cost + update.cost, 6),
        last_error=update.last_error if update.last_error is not None else session.last_error,
        updated_at=now,
    )
    if session.total_accounts and processed >= session.total_accounts:
        # The COMPLETE transition carries its own persist instruction.
        return transition(updated, SystemAction.COMPLETE, now)
    return TransitionResult(session=updated, events=(PersistInstruction(updated),))


def progress_percent(processed: int, total: int) -> int:
    if total <= 0:
        return 0
    return min(int(round(processed / total * 100)), 100)


def _reset_counts(session: ScrapingSession) -> ScrapingSession:
    return dataclasses.replace(
        session,
        completed_accounts=0,
        failed_accounts=0,
        skipped_accounts=0,
        progress=0,
    )


def _events(before: ScrapingSession, after: ScrapingSession, action: Action, reason: Optional[str]):
    details = {
        "action": action.value,
        "previous_status": before.status.value,
        "new_status": after.status.value,
    }
    if reason:
        details["reason"] = reason
    level = "ERROR" if after.status is SessionStatus.FAILED else "INFO"
    return (
        LogInstruction(
            level=level,
            message=f"Session {action.value.lower()}: {before.status.value} -> {after.status.value}",
            details=details,
        ),
        PersistInstruction(after),
    )
