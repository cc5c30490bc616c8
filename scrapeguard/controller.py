from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional, Set

from .exceptions import ScrapeGuardError


class SessionPool:
    """Runs session workers on a bounded thread pool.

    Each session gets exactly one sequential worker; accounts inside a
    session are never fanned out. ``max_sessions`` bounds how many sessions
    run at once, further submissions queue in the executor.
    """

    def __init__(self, max_sessions: int = 4) -> None:
        self._max_sessions = max(1, max_sessions)
        self._executor = ThreadPoolExecutor(max_workers=self._max_sessions, thread_name_prefix="session")

        self._lock = threading.Lock()
        self._cv = threading.Condition(self._lock)

        self._active: Set[str] = set()
        self._pending = 0
        self._running = True

    def stop(self, wait: bool = True) -> None:
        with self._cv:
            self._running = False
            self._cv.notify_all()
        self._executor.shutdown(wait=wait, cancel_futures=False)

    def submit(self, session_id: str, fn: Callable[[], Any]) -> Future:
        """Queue a session worker. A session that already has a worker is rejected."""
        with self._cv:
            if not self._running:
                raise ScrapeGuardError("Session pool is stopped")
            if session_id in self._active:
                raise ScrapeGuardError(f"Session {session_id} already has a running worker")
            self._active.add(session_id)
            self._pending += 1
        return self._executor.submit(self._wrap, session_id, fn)

    def _wrap(self, session_id: str, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        finally:
            with self._cv:
                self._active.discard(session_id)
                self._pending = max(0, self._pending - 1)
                self._cv.notify_all()

    def is_running(self, session_id: str) -> bool:
        with self._cv:
            return session_id in self._active

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every submitted worker has finished. Returns False on timeout."""
        with self._cv:
            return self._cv.wait_for(lambda: self._pending == 0, timeout=timeout)

    @property
    def active_count(self) -> int:
        with self._cv:
            return len(self._active)

    @property
    def max_sessions(self) -> int:
        return self._max_sessions
