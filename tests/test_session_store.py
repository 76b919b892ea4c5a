from __future__ import annotations

import itertools
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from core.enums import SessionStatus
from core.errors import GraphInvalidError, SessionConflictError
from graph.parser import parse_graph
from sessions.repository import SqliteSessionRepository
from sessions.store import SessionStore


class _StepClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: int) -> None:
        self.now = self.now + timedelta(minutes=minutes)


def _graph(version: int = 1):
    return parse_graph(
        {
            "id": "wf",
            "version": version,
            "nodes": [
                {"id": "start", "isStart": True, "data": {"label": "Start", "messageType": "text", "message": "Hi"}},
                {"id": "next", "data": {"label": "Next", "messageType": "text", "message": "Next"}},
            ],
            "edges": [{"id": "e1", "source": "start", "target": "next"}],
        }
    )


class SessionStoreTest(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.repo = SqliteSessionRepository(str(Path(self._tmp.name) / "sessions.db"))
        self.clock = _StepClock(datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc))
        counter = itertools.count(1)
        self.store = SessionStore(self.repo, history_limit=3, clock=self.clock, id_factory=lambda: f"S{next(counter)}")

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_get_or_create_does_not_write(self) -> None:
        session = self.store.get_or_create("U1", _graph(version=4))
        self.assertEqual(session.session_id, "S1")
        self.assertEqual(session.current_node_id, "start")
        self.assertEqual(session.workflow_version, 4)
        self.assertEqual(session.status, SessionStatus.ACTIVE)
        self.assertEqual(session.revision, 0)
        self.assertIsNone(self.store.load("U1", "wf"))

    def test_save_then_get_or_create_returns_stored(self) -> None:
        saved = self.store.save(self.store.get_or_create("U1", _graph()))
        self.assertEqual(saved.revision, 1)
        again = self.store.get_or_create("U1", _graph())
        self.assertEqual(again.session_id, saved.session_id)
        self.assertEqual(self.store.find("S1"), again)

    def test_save_returns_copy_with_new_revision(self) -> None:
        session = self.store.get_or_create("U1", _graph())
        saved = self.store.save(session)
        self.assertEqual(session.revision, 0)
        self.assertEqual(saved.revision, 1)
        self.clock.advance(5)
        self.store.enter_node(saved, "next")
        resaved = self.store.save(saved)
        self.assertEqual(resaved.revision, 2)
        self.assertEqual(resaved.updated_at, "2026-03-01T09:05:00+00:00")
        self.assertEqual(resaved.created_at, "2026-03-01T09:00:00+00:00")

    def test_history_is_bounded(self) -> None:
        session = self.store.get_or_create("U1", _graph())
        for node_id in ("a", "b", "c", "d"):
            self.store.enter_node(session, node_id)
        self.assertEqual([entry.node_id for entry in session.history], ["b", "c", "d"])
        self.assertEqual(session.current_node_id, "d")

    def test_end_then_get_or_create_starts_fresh(self) -> None:
        saved = self.store.save(self.store.get_or_create("U1", _graph()))
        ended = self.store.end(saved)
        self.assertEqual(ended.status, SessionStatus.ENDED)

        fresh = self.store.get_or_create("U1", _graph(version=2))
        self.assertEqual(fresh.session_id, "S2")
        self.assertEqual(fresh.workflow_version, 2)
        self.assertEqual(fresh.revision, ended.revision)
        stored = self.store.save(fresh)
        self.assertEqual(self.store.load("U1", "wf").session_id, stored.session_id)

    def test_end_rejects_already_ended_session(self) -> None:
        ended = self.store.end(self.store.save(self.store.get_or_create("U1", _graph())))
        with self.assertRaises(SessionConflictError):
            self.store.end(ended)
        self.assertEqual(self.store.load("U1", "wf").revision, ended.revision)

    def test_user_sessions_lists_every_workflow(self) -> None:
        other = parse_graph(
            {
                "id": "wf2",
                "nodes": [{"id": "s", "isStart": True, "data": {"label": "S", "messageType": "text", "message": "x"}}],
            }
        )
        self.store.save(self.store.get_or_create("U1", _graph()))
        self.store.save(self.store.get_or_create("U1", other))
        self.store.save(self.store.get_or_create("U2", _graph()))
        self.assertEqual([session.workflow_id for session in self.store.user_sessions("U1")], ["wf", "wf2"])
        self.assertEqual(self.store.user_sessions("U3"), [])

    def test_reset_deletes_state(self) -> None:
        self.store.save(self.store.get_or_create("U1", _graph()))
        self.assertEqual(self.store.reset("U1"), 1)
        self.assertIsNone(self.store.load("U1", "wf"))

    def test_idle_sessions(self) -> None:
        self.store.save(self.store.get_or_create("U1", _graph()))
        self.clock.advance(60)
        self.store.save(self.store.get_or_create("U2", _graph()))

        idle = self.store.idle_sessions(30)
        self.assertEqual([session.channel_user_id for session in idle], ["U1"])

    def test_graph_without_start_is_rejected(self) -> None:
        graph = parse_graph({"id": "wf", "nodes": [{"id": "a", "data": {"label": "A", "message": "x"}}]})
        with self.assertRaises(GraphInvalidError):
            self.store.get_or_create("U1", graph)


if __name__ == "__main__":
    unittest.main()
