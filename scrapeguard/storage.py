from __future__ import annotations

import json
import queue
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from .exceptions import SessionNotFoundError
from .models import ScrapingSession


@dataclass(frozen=True)
class LogRecord:
    """One entry of the append-only session event log."""

    session_id: str
    level: str
    message: str
    timestamp: float
    account_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class SessionStore(ABC):
    """Abstract base class for session persistence backends.

    Sessions are upserted whole; the store never derives or merges fields.
    """

    @abstractmethod
    def save(self, session: ScrapingSession) -> None:
        """Insert or replace a session."""

    @abstractmethod
    def get(self, session_id: str) -> Optional[ScrapingSession]:
        """Return the stored session or None."""

    @abstractmethod
    def all_sessions(self) -> List[ScrapingSession]:
        """All sessions, newest first."""

    def require(self, session_id: str) -> ScrapingSession:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session


class InMemorySessionStore(SessionStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: Dict[str, ScrapingSession] = {}

    def save(self, session: ScrapingSession) -> None:
        with self._lock:
            self._sessions[session.session_id] = session

    def get(self, session_id: str) -> Optional[ScrapingSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def all_sessions(self) -> List[ScrapingSession]:
        with self._lock:
            sessions = list(self._sessions.values())
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)


class EventLog(ABC):
    """Append-only sink for session log records."""

    @abstractmethod
    def append(self, record: LogRecord) -> None:
        """Persist a single record."""

    def close(self) -> None:
        """Flush pending writes and release resources."""


class InMemoryEventLog(EventLog):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: List[LogRecord] = []

    def append(self, record: LogRecord) -> None:
        with self._lock:
            self._records.append(record)

    def records(self, session_id: Optional[str] = None) -> List[LogRecord]:
        with self._lock:
            records = list(self._records)
        if session_id is None:
            return records
        return [r for r in records if r.session_id == session_id]


class JsonlEventLog(EventLog):
    """Stores log records as JSON Lines (.jsonl) using a background writer thread."""

    def __init__(self, path: str) -> None:
        self._path = path
        self._queue: queue.Queue[Optional[LogRecord]] = queue.Queue()
        self._thread = threading.Thread(target=self._writer, name="event-log-writer", daemon=True)
        self._thread.start()

    def append(self, record: LogRecord) -> None:
        """Enqueue a record for background writing."""
        self._queue.put(record)

    def close(self) -> None:
        """Signal the writer thread to flush and stop."""
        self._queue.put(None)
        self._thread.join(timeout=5)

    def _writer(self) -> None:
        with open(self._path, "a", encoding="utf-8") as f:
            while True:
                item = self._queue.get()
                if item is None:
                    break
                f.write(json.dumps(asdict(item), ensure_ascii=False, default=_json_default) + "\n")
                f.flush()


def read_jsonl(path: str) -> Iterable[LogRecord]:
    """Read back records written by JsonlEventLog."""
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line:
                yield LogRecord(**json.loads(line))


def make_record(
    session_id: str,
    level: str,
    message: str,
    account_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    clock: Callable[[], float] = time.time,
) -> LogRecord:
    return LogRecord(
        session_id=session_id,
        level=level,
        message=message,
        timestamp=clock(),
        account_id=account_id,
        details=dict(details or {}),
    )


def _json_default(value: Any) -> Any:
    enum_value = getattr(value, "value", None)
    if enum_value is not None:
        return enum_value
    return str(value)
