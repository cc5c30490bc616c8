"""Tests for session stores and event logs."""

import dataclasses
import os
import tempfile
import unittest

from scrapeguard.exceptions import SessionNotFoundError
from scrapeguard.models import ScrapingSession, SessionStatus, SessionType
from scrapeguard.storage import InMemoryEventLog, InMemorySessionStore, JsonlEventLog, make_record, read_jsonl


def _make_session(session_id: str, created_at: float) -> ScrapingSession:
    return ScrapingSession(
        session_id=session_id,
        session_type=SessionType.METRICS,
        status=SessionStatus.PENDING,
        target_accounts=(),
        total_accounts=0,
        created_at=created_at,
        updated_at=created_at,
    )


class TestInMemorySessionStore(unittest.TestCase):
    def test_upsert_and_order(self):
        store = InMemorySessionStore()
        store.save(_make_session("old", 1.0))
        store.save(_make_session("new", 2.0))
        self.assertEqual([s.session_id for s in store.all_sessions()], ["new", "old"])

    def test_save_replaces(self):
        store = InMemorySessionStore()
        session = _make_session("s1", 1.0)
        store.save(session)
        store.save(dataclasses.replace(session, status=SessionStatus.SCHEDULED))
        self.assertIs(store.require("s1").status, SessionStatus.SCHEDULED)
        self.assertEqual(len(store.all_sessions()), 1)

    def test_require_missing(self):
        with self.assertRaises(SessionNotFoundError):
            InMemorySessionStore().require("nope")


class TestEventLogs(unittest.TestCase):
    """Verify records are appended and read back intact."""

    def test_in_memory_filter(self):
        log = InMemoryEventLog()
        log.append(make_record("s1", "INFO", "one", clock=lambda: 1.0))
        log.append(make_record("s2", "WARN", "two", clock=lambda: 2.0))
        self.assertEqual([r.message for r in log.records("s2")], ["two"])
        self.assertEqual(len(log.records()), 2)

    def test_jsonl_round_trip(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "events.jsonl")
            log = JsonlEventLog(path)
            log.append(make_record("s1", "INFO", "Session created", details={"status": SessionStatus.PENDING}, clock=lambda: 5.0))
            log.append(make_record("s1", "WARN", "Request timeout", account_id="a1", clock=lambda: 6.0))
            log.close()

            records = list(read_jsonl(path))
        self.assertEqual(len(records), 2)
        self.assertEqual(records[0].details, {"status": "PENDING"})
        self.assertEqual(records[1].account_id, "a1")
        self.assertEqual(records[1].timestamp, 6.0)


if __name__ == "__main__":
    unittest.main()
