from __future__ import annotations

import itertools
import tempfile
import threading
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from core.enums import SessionStatus
from core.errors import (
    GraphNotFoundError,
    RenderError,
    SessionConflictError,
    StoreUnavailableError,
    TurnTimeoutError,
)
from core.models import InboundEvent, WorkflowGraph
from engine.conversation_engine import ConversationEngine
from engine.factory import build_conversation_engine
from graph.parser import parse_graph
from sessions.repository import SqliteSessionRepository
from sessions.store import SessionStore


class _TickClock:
    def __init__(self) -> None:
        self._start = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
        self._ticks = itertools.count()

    def __call__(self) -> datetime:
        return self._start + timedelta(seconds=next(self._ticks))


class _StaticGraphs:
    def __init__(self, *graphs: WorkflowGraph, active: str | None = None) -> None:
        self.graphs = {(graph.id, graph.version): graph for graph in graphs}
        self.live: dict[str, int] = {}
        for graph in graphs:
            self.live[graph.id] = max(self.live.get(graph.id, 0), graph.version)
        self.active = active

    def get(self, workflow_id: str, version: int) -> WorkflowGraph:
        try:
            return self.graphs[(workflow_id, version)]
        except KeyError:
            raise GraphNotFoundError(workflow_id, version) from None

    def get_live(self, workflow_id: str) -> WorkflowGraph:
        if workflow_id not in self.live:
            raise GraphNotFoundError(workflow_id)
        return self.get(workflow_id, self.live[workflow_id])

    def active_workflow_id(self) -> str | None:
        return self.active


def _text(node_id: str, message: str | None = None, start: bool = False) -> dict[str, Any]:
    return {
        "id": node_id,
        "isStart": start,
        "data": {"label": node_id, "messageType": "text", "message": message if message is not None else node_id},
    }


def _quick(node_id: str) -> dict[str, Any]:
    return {
        "id": node_id,
        "data": {
            "label": node_id,
            "messageType": "quick_replies",
            "message": "Yes or no?",
            "quickReplies": [{"title": "Yes", "payload": "Y"}, {"title": "No", "payload": "N"}],
        },
    }


def _edge(source: str, target: str, payload: str | None = None) -> dict[str, Any]:
    edge: dict[str, Any] = {"id": f"{source}-{target}", "source": source, "target": target}
    if payload is not None:
        edge["conditionPayload"] = payload
    return edge


def _graph(nodes: list[dict[str, Any]], edges: list[dict[str, Any]], version: int = 1) -> WorkflowGraph:
    return parse_graph({"id": "wf", "version": version, "nodes": nodes, "edges": edges})


def _hello_graph(version: int = 1, greeting: str = "Hi") -> WorkflowGraph:
    return _graph([_text("start", "Welcome", start=True), _text("hi", greeting)], [_edge("start", "hi")], version)


def _question_graph() -> WorkflowGraph:
    return _graph(
        [_text("start", "Welcome", start=True), _quick("Q"), _text("T1", "Great"), _text("T2", "Too bad")],
        [_edge("start", "Q"), _edge("Q", "T1", "Y"), _edge("Q", "T2", "N")],
    )


def _chain_graph() -> WorkflowGraph:
    return _graph(
        [_text("S", start=True), _text("A"), _text("B"), _text("C"), _text("D")],
        [_edge("S", "A"), _edge("A", "B"), _edge("B", "C"), _edge("C", "D")],
    )


def _event(text: str = "", payload: str | None = None, title: str | None = None, user: str = "U1") -> InboundEvent:
    return InboundEvent(channel_user_id=user, raw=text, trigger_payload=payload, trigger_title=title)


class _FlakyRepository(SqliteSessionRepository):
    def __init__(self, sqlite_path: str) -> None:
        super().__init__(sqlite_path)
        self.fail_saves = False

    def save_session(self, session, expected_revision):  # type: ignore[no-untyped-def]
        if self.fail_saves:
            raise StoreUnavailableError("session store is down")
        return super().save_session(session, expected_revision)


class ConversationEngineTest(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _engine(self, *graphs: WorkflowGraph, name: str = "sessions.db", **kwargs: Any) -> ConversationEngine:
        repository = kwargs.pop("repository", None) or SqliteSessionRepository(str(self.tmp / name))
        counter = itertools.count(1)
        store = SessionStore(repository, history_limit=50, clock=_TickClock(), id_factory=lambda: f"S{next(counter)}")
        kwargs.setdefault("default_workflow_id", "wf")
        return ConversationEngine(_StaticGraphs(*graphs), store, **kwargs)

    def test_first_event_creates_session_and_follows_default_edge(self) -> None:
        engine = self._engine(_hello_graph())

        result = engine.process_turn(_event("hello"))

        self.assertEqual(result.message.to_dict()["messageType"], "text")
        self.assertEqual(result.message.text, "Hi")
        self.assertTrue(result.created)
        self.assertTrue(result.matched)
        session = engine.session_snapshot("U1")
        self.assertEqual(session.current_node_id, "hi")
        self.assertEqual([entry.node_id for entry in session.history], ["start", "hi"])

    def test_payload_selects_conditioned_edge(self) -> None:
        engine = self._engine(_question_graph())
        self.assertEqual(engine.process_event(_event("hi")).metadata.node_id, "Q")

        result = engine.process_turn(_event("Yes", payload="Y", title="Yes"))

        self.assertEqual(result.node_id, "T1")
        self.assertEqual(result.message.metadata.triggered_by_payload, "Y")
        self.assertEqual(result.message.metadata.triggered_by_title, "Yes")
        self.assertEqual(result.message.metadata.from_node_id, "Q")
        self.assertEqual(engine.session_snapshot("U1").current_node_id, "T1")

    def test_free_text_on_quick_replies_rerenders_current_node(self) -> None:
        engine = self._engine(_question_graph())
        engine.process_event(_event("hi"))
        before = engine.session_snapshot("U1")

        result = engine.process_turn(_event("yes"))

        self.assertFalse(result.matched)
        self.assertFalse(result.workflow_ended)
        self.assertEqual(result.message.metadata.node_id, "Q")
        self.assertEqual(len(result.message.quick_replies), 2)
        after = engine.session_snapshot("U1")
        self.assertEqual(after.current_node_id, "Q")
        self.assertEqual(after.history, before.history)
        self.assertEqual(after.revision, before.revision + 1)
        self.assertGreater(after.updated_at, before.updated_at)

    def test_terminal_node_ends_session_and_next_event_starts_fresh(self) -> None:
        engine = self._engine(_question_graph())
        engine.process_event(_event("hi"))

        closing = engine.process_turn(_event(payload="N"))

        self.assertTrue(closing.workflow_ended)
        self.assertEqual(closing.message.text, "Too bad")
        ended = engine.session_snapshot("U1")
        self.assertEqual(ended.status, SessionStatus.ENDED)

        again = engine.process_turn(_event("hello again"))

        self.assertTrue(again.created)
        self.assertNotEqual(again.session_id, closing.session_id)
        fresh = engine.session_snapshot("U1")
        self.assertEqual(fresh.status, SessionStatus.ACTIVE)
        self.assertEqual(fresh.history[0].node_id, "start")
        self.assertEqual(fresh.current_node_id, "Q")

    def test_concurrent_events_for_same_user_are_serialized(self) -> None:
        engine = self._engine(_chain_graph())
        engine.process_event(_event("go"))
        self.assertEqual(engine.session_snapshot("U1").current_node_id, "A")

        barrier = threading.Barrier(2)
        results: list[str] = []
        errors: list[BaseException] = []

        def fire() -> None:
            barrier.wait()
            try:
                results.append(engine.process_turn(_event("next")).node_id)
            except BaseException as exc:  # noqa: BLE001
                errors.append(exc)

        threads = [threading.Thread(target=fire) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        self.assertEqual(sorted(results), ["B", "C"])
        session = engine.session_snapshot("U1")
        self.assertEqual([entry.node_id for entry in session.history], ["S", "A", "B", "C"])
        self.assertEqual(session.current_node_id, "C")

    def test_many_users_progress_in_parallel(self) -> None:
        engine = self._engine(_chain_graph())
        users = [f"U{i}" for i in range(6)]

        def talk(user: str) -> None:
            for _ in range(3):
                engine.process_event(_event("next", user=user))

        threads = [threading.Thread(target=talk, args=(user,)) for user in users]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        for user in users:
            self.assertEqual(engine.session_snapshot(user).current_node_id, "C")

    def test_render_failure_leaves_session_untouched(self) -> None:
        broken = _graph(
            [_text("start", start=True), _text("A"), {"id": "bad", "data": {"label": "bad", "messageType": "image"}}],
            [_edge("start", "A"), _edge("A", "bad")],
        )
        engine = self._engine(broken)
        engine.process_event(_event("hi"))
        before = engine.session_snapshot("U1")

        with self.assertRaises(RenderError):
            engine.process_turn(_event("next"))

        self.assertEqual(engine.session_snapshot("U1"), before)

    def test_render_failure_on_first_event_creates_nothing(self) -> None:
        broken = _graph(
            [_text("start", start=True), {"id": "bad", "data": {"label": "bad", "messageType": "video"}}],
            [_edge("start", "bad")],
        )
        engine = self._engine(broken)
        with self.assertRaises(RenderError):
            engine.process_turn(_event("hi"))
        self.assertIsNone(engine.session_snapshot("U1"))

    def test_store_failure_surfaces_typed_error(self) -> None:
        repository = _FlakyRepository(str(self.tmp / "flaky.db"))
        engine = self._engine(_chain_graph(), repository=repository)
        engine.process_event(_event("go"))
        before = engine.session_snapshot("U1")

        repository.fail_saves = True
        with self.assertRaises(StoreUnavailableError) as ctx:
            engine.process_turn(_event("next"))
        self.assertTrue(ctx.exception.retryable)

        repository.fail_saves = False
        self.assertEqual(engine.session_snapshot("U1"), before)

    def test_concurrent_writer_in_other_process_is_detected(self) -> None:
        engine = self._engine(_chain_graph())
        engine.process_event(_event("go"))
        other = self._engine(_chain_graph())

        original_load = engine.store.load

        def load_then_race(channel_user_id: str, workflow_id: str):  # type: ignore[no-untyped-def]
            loaded = original_load(channel_user_id, workflow_id)
            other.process_event(_event("next"))
            return loaded

        engine.store.load = load_then_race  # type: ignore[method-assign]
        with self.assertRaises(SessionConflictError):
            engine.process_turn(_event("next"))

        session = other.session_snapshot("U1")
        self.assertEqual([entry.node_id for entry in session.history], ["S", "A", "B"])

    def test_deadline_exceeded_before_save_aborts(self) -> None:
        ticks = iter([0.0, 0.0, 100.0])
        engine = self._engine(_hello_graph(), turn_timeout_sec=5, monotonic=lambda: next(ticks, 100.0))

        with self.assertRaises(TurnTimeoutError):
            engine.process_turn(_event("hello"))
        self.assertIsNone(engine.session_snapshot("U1"))

    def test_lock_wait_times_out(self) -> None:
        engine = self._engine(_hello_graph(), lock_timeout_sec=0.05)
        holding = threading.Event()
        release = threading.Event()

        def hold() -> None:
            with engine.locks.hold(("U1", "wf")):
                holding.set()
                release.wait(5)

        thread = threading.Thread(target=hold)
        thread.start()
        holding.wait(5)
        try:
            with self.assertRaises(TurnTimeoutError):
                engine.process_turn(_event("hello"))
        finally:
            release.set()
            thread.join()
        self.assertIsNone(engine.session_snapshot("U1"))

    def test_replay_is_deterministic(self) -> None:
        events = [_event("hi"), _event("maybe"), _event(payload="Y", title="Yes")]
        first = self._engine(_question_graph(), name="a.db")
        second = self._engine(_question_graph(), name="b.db")

        first_out = [first.process_event(event).to_dict() for event in events]
        second_out = [second.process_event(event).to_dict() for event in events]

        self.assertEqual(first_out, second_out)
        self.assertEqual(first.session_snapshot("U1"), second.session_snapshot("U1"))

    def test_sessions_stay_on_their_graph_version(self) -> None:
        graphs = _StaticGraphs(
            _graph(
                [_text("start", start=True), _text("A", "old A"), _text("B", "old B")],
                [_edge("start", "A"), _edge("A", "B")],
                version=1,
            )
        )
        counter = itertools.count(1)
        store = SessionStore(
            SqliteSessionRepository(str(self.tmp / "pin.db")),
            clock=_TickClock(),
            id_factory=lambda: f"S{next(counter)}",
        )
        engine = ConversationEngine(graphs, store, default_workflow_id="wf")
        engine.process_event(_event("hi", user="old"))

        v2 = _graph(
            [_text("start", start=True), _text("A", "new A"), _text("B", "new B")],
            [_edge("start", "A"), _edge("A", "B")],
            version=2,
        )
        graphs.graphs[("wf", 2)] = v2
        graphs.live["wf"] = 2

        self.assertEqual(engine.process_event(_event("next", user="old")).text, "old B")
        self.assertEqual(engine.process_event(_event("hi", user="new")).text, "new A")
        self.assertEqual(engine.session_snapshot("new").workflow_version, 2)

    def test_free_text_without_default_edge_ends_on_current_node(self) -> None:
        graph = _graph(
            [_text("start", start=True), _text("A", "Say the word"), _text("B")],
            [_edge("start", "A"), _edge("A", "B", "MAGIC")],
        )
        engine = self._engine(graph)
        engine.process_event(_event("hi"))

        result = engine.process_turn(_event("something"))

        self.assertTrue(result.workflow_ended)
        self.assertEqual(result.message.text, "Say the word")
        self.assertEqual(engine.session_snapshot("U1").status, SessionStatus.ENDED)

    def test_reset_session(self) -> None:
        engine = self._engine(_chain_graph())
        engine.process_event(_event("go"))
        self.assertEqual(engine.reset_session("U1", "wf"), 1)
        self.assertIsNone(engine.session_snapshot("U1"))
        self.assertTrue(engine.process_turn(_event("go")).created)
        self.assertEqual(engine.reset_session("U1"), 1)

    def test_reset_without_workflow_takes_each_session_lock(self) -> None:
        other = parse_graph(
            {"id": "wf2", "version": 1, "nodes": [_text("start", start=True), _text("x")], "edges": [_edge("start", "x")]}
        )
        engine = self._engine(_chain_graph(), other, lock_timeout_sec=0.05)
        engine.process_event(_event("go"))
        engine.process_event(InboundEvent(channel_user_id="U1", workflow_id="wf2", raw="go"))
        holding = threading.Event()
        release = threading.Event()

        def hold() -> None:
            with engine.locks.hold(("U1", "wf2")):
                holding.set()
                release.wait(5)

        thread = threading.Thread(target=hold)
        thread.start()
        holding.wait(5)
        try:
            with self.assertRaises(TurnTimeoutError):
                engine.reset_session("U1")
            self.assertIsNotNone(engine.session_snapshot("U1", "wf2"))
        finally:
            release.set()
            thread.join()

        self.assertIsNone(engine.session_snapshot("U1", "wf"))
        self.assertEqual(engine.reset_session("U1"), 1)
        self.assertIsNone(engine.session_snapshot("U1", "wf2"))
        self.assertEqual(engine.reset_session("U1"), 0)

    def test_session_and_user_history(self) -> None:
        engine = self._engine(_chain_graph())
        first = engine.process_turn(_event("go"))
        engine.process_event(_event("go"))

        history = engine.session_history(first.session_id)
        self.assertEqual([item["nodeId"] for item in history], ["S", "A", "B"])
        self.assertEqual(history[0]["sessionId"], first.session_id)
        self.assertEqual(history[0]["workflowId"], "wf")
        self.assertIsNone(engine.session_history("missing"))

        recent = engine.chat_history("U1", limit=2)
        self.assertEqual([item["nodeId"] for item in recent], ["A", "B"])
        self.assertEqual(engine.chat_history("U2"), [])

    def test_end_session_by_id(self) -> None:
        engine = self._engine(_chain_graph())
        result = engine.process_turn(_event("go"))

        self.assertTrue(engine.end_session(result.session_id))
        self.assertFalse(engine.end_session(result.session_id))
        self.assertFalse(engine.end_session("missing"))
        self.assertEqual(engine.session_snapshot("U1").status, SessionStatus.ENDED)

    def test_end_idle_sessions(self) -> None:
        engine = self._engine(_chain_graph())
        engine.process_event(_event("go", user="U1"))
        engine.process_event(_event("go", user="U2"))

        later = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
        self.assertEqual(engine.end_idle_sessions(idle_minutes=30, now=later), 2)
        self.assertEqual(engine.end_idle_sessions(idle_minutes=30, now=later), 0)
        self.assertEqual(engine.session_snapshot("U1").status, SessionStatus.ENDED)

    def test_workflow_resolution(self) -> None:
        engine = self._engine(_hello_graph(), default_workflow_id=None)
        with self.assertRaises(GraphNotFoundError):
            engine.process_turn(_event("hello"))

        engine.graphs.active = "wf"
        self.assertEqual(engine.resolve_workflow_id(), "wf")
        self.assertEqual(engine.resolve_workflow_id("other"), "other")
        with self.assertRaises(GraphNotFoundError):
            engine.process_turn(InboundEvent(channel_user_id="U1", workflow_id="other", raw="hi"))


class EngineFactoryTest(unittest.TestCase):
    def test_build_from_config_uses_published_graphs(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            config = {
                "engine": {"history_limit": 10, "turn_timeout_sec": 5},
                "graphs": {"store_path": str(Path(tmp) / "graphs")},
                "sessions": {"backend": "sqlite", "sqlite_path": str(Path(tmp) / "sessions.db")},
            }
            engine = build_conversation_engine(config)
            repository = engine.graphs.repository
            document = {
                "id": "wf",
                "nodes": [_text("start", "Welcome", start=True), _text("hi", "Hi")],
                "edges": [_edge("start", "hi")],
            }
            repository.activate("wf", repository.publish(document))

            result = engine.process_turn(_event("hello"))

            self.assertEqual(result.message.text, "Hi")
            self.assertEqual(engine.store.history_limit, 10)

            document["nodes"][1] = _text("hi", "Hello there")
            repository.activate("wf", repository.publish(document))
            self.assertEqual(engine.process_turn(_event("hello", user="U2")).message.text, "Hello there")


if __name__ == "__main__":
    unittest.main()
