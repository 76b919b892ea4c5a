from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from core.enums import IssueCategory
from core.errors import GraphInvalidError, GraphNotFoundError, SessionConflictError, TurnTimeoutError
from core.models import InboundEvent, OutboundMessage, RenderContext, ValidationIssue, WorkflowGraph
from engine.renderer import render
from engine.resolver import resolve_transition
from graph.cache import GraphCache
from sessions.locks import KeyedLockManager
from sessions.models import ConversationSession, HistoryEntry
from sessions.state_machine import STATE_NEW, lifecycle_state
from sessions.store import SessionStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TurnResult:
    message: OutboundMessage
    session_id: str
    workflow_ended: bool
    matched: bool
    created: bool
    node_id: str


class ConversationEngine:
    """Drives one conversation turn per inbound event.

    Turns for the same (user, workflow) key are serialized with an
    in-process lock; the session revision check in the store catches
    writers in other processes. Everything up to the final save works on
    a copy, so a failed turn leaves the stored session as it was.
    """

    def __init__(
        self,
        graphs: GraphCache,
        store: SessionStore,
        locks: KeyedLockManager | None = None,
        turn_timeout_sec: float = 10.0,
        lock_timeout_sec: float | None = None,
        idle_timeout_minutes: int = 30,
        default_workflow_id: str | None = None,
        monotonic: Callable[[], float] | None = None,
    ) -> None:
        self.graphs = graphs
        self.store = store
        self.locks = locks or KeyedLockManager()
        self.turn_timeout_sec = max(0.1, float(turn_timeout_sec))
        self.lock_timeout_sec = float(lock_timeout_sec) if lock_timeout_sec is not None else None
        self.idle_timeout_minutes = max(1, int(idle_timeout_minutes))
        self.default_workflow_id = (default_workflow_id or "").strip() or None
        self._monotonic = monotonic or time.monotonic

    def resolve_workflow_id(self, workflow_id: str | None = None) -> str:
        explicit = (workflow_id or "").strip()
        if explicit:
            return explicit
        active = self.graphs.active_workflow_id() or self.default_workflow_id
        if not active:
            raise GraphNotFoundError("<active>")
        return active

    def process_event(self, event: InboundEvent) -> OutboundMessage:
        return self.process_turn(event).message

    def process_turn(self, event: InboundEvent) -> TurnResult:
        deadline = self._monotonic() + self.turn_timeout_sec
        workflow_id = self.resolve_workflow_id(event.workflow_id)
        key = (event.channel_user_id, workflow_id)
        with self.locks.hold(key, timeout=self._lock_wait(deadline)):
            return self._run_turn(event, workflow_id, deadline)

    def reset_session(self, channel_user_id: str, workflow_id: str | None = None) -> int:
        if workflow_id is not None:
            workflow_ids = [workflow_id]
        else:
            workflow_ids = [session.workflow_id for session in self.store.user_sessions(channel_user_id)]
        deleted = 0
        # Each key is deleted under its turn lock.
        for current_id in workflow_ids:
            with self.locks.hold((channel_user_id, current_id), timeout=self._lock_wait(None)):
                deleted += self.store.reset(channel_user_id, current_id)
        return deleted

    def end_session(self, session_id: str) -> bool:
        found = self.store.find(session_id)
        if found is None or not found.is_active:
            return False
        with self.locks.hold(found.key, timeout=self._lock_wait(None)):
            current = self.store.load(found.channel_user_id, found.workflow_id)
            if current is None or current.session_id != session_id or not current.is_active:
                return False
            self.store.end(current)
        return True

    def end_idle_sessions(self, idle_minutes: int | None = None, now: datetime | None = None) -> int:
        minutes = idle_minutes if idle_minutes is not None else self.idle_timeout_minutes
        ended = 0
        for stale in self.store.idle_sessions(minutes, now=now):
            try:
                with self.locks.hold(stale.key, timeout=self._lock_wait(None)):
                    current = self.store.load(stale.channel_user_id, stale.workflow_id)
                    # Skip sessions that moved on since the idle query ran.
                    if (
                        current is None
                        or current.session_id != stale.session_id
                        or current.updated_at != stale.updated_at
                        or not current.is_active
                    ):
                        continue
                    self.store.end(current)
                    ended += 1
            except (SessionConflictError, TurnTimeoutError) as exc:
                logger.warning("idle-end-skipped session=%s error=%s", stale.session_id, exc)
        return ended

    def session_snapshot(self, channel_user_id: str, workflow_id: str | None = None) -> ConversationSession | None:
        return self.store.load(channel_user_id, self.resolve_workflow_id(workflow_id))

    def session_history(self, session_id: str) -> list[dict[str, Any]] | None:
        session = self.store.find(session_id)
        if session is None:
            return None
        return [_history_item(session, entry) for entry in session.history]

    def chat_history(self, channel_user_id: str, limit: int = 50) -> list[dict[str, Any]]:
        """Most recent node visits across all of the user's workflows, oldest first."""
        items = [
            _history_item(session, entry)
            for session in self.store.user_sessions(channel_user_id)
            for entry in session.history
        ]
        items.sort(key=lambda item: item["enteredAt"])
        return items[-max(1, int(limit)):]

    def _run_turn(self, event: InboundEvent, workflow_id: str, deadline: float) -> TurnResult:
        user_id = event.channel_user_id
        stored = self.store.load(user_id, workflow_id)
        state = lifecycle_state(stored)
        created = state == STATE_NEW
        if created:
            graph = self.graphs.get_live(workflow_id)
            session = self.store.start_session(user_id, graph, replaces=stored)
        else:
            graph = self.graphs.get(workflow_id, stored.workflow_version)
            session = stored.copy()

        current = graph.node(session.current_node_id)
        if current is None:
            raise GraphInvalidError(workflow_id, [_missing_node_issue(graph, session)])

        transition = resolve_transition(graph, current, event)
        ctx = RenderContext(
            trigger_title=event.trigger_title,
            trigger_payload=event.payload,
            from_node_id=current.id,
        )

        if transition.terminal:
            message = render(current, ctx)
            ended = True
        elif not transition.matched:
            message = render(current, ctx)
            ended = False
        else:
            target = graph.node(transition.next_node_id)
            if target is None:
                raise GraphInvalidError(workflow_id, [_missing_node_issue(graph, session, transition.next_node_id)])
            self.store.enter_node(session, target.id)
            message = render(target, ctx)
            ended = graph.is_terminal(target.id)

        if self._monotonic() > deadline:
            raise TurnTimeoutError(f"turn deadline exceeded user={user_id} workflow={workflow_id}")

        if ended:
            saved = self.store.end(session)
        else:
            saved = self.store.save(session)

        logger.info(
            "turn-processed user=%s workflow=%s version=%s from=%s to=%s matched=%s ended=%s created=%s",
            user_id,
            workflow_id,
            graph.version,
            current.id,
            saved.current_node_id,
            transition.matched,
            ended,
            created,
        )
        return TurnResult(
            message=message,
            session_id=saved.session_id,
            workflow_ended=ended,
            matched=transition.matched,
            created=created,
            node_id=message.metadata.node_id,
        )

    def _lock_wait(self, deadline: float | None) -> float:
        budget = self.lock_timeout_sec if self.lock_timeout_sec is not None else self.turn_timeout_sec
        if deadline is None:
            return budget
        return max(0.0, min(budget, deadline - self._monotonic()))


def _missing_node_issue(graph: WorkflowGraph, session: ConversationSession, node_id: str | None = None) -> ValidationIssue:
    missing = node_id if node_id is not None else session.current_node_id
    return ValidationIssue(
        code="unknown_node",
        message=f"node {missing} is not part of {graph.id}@v{graph.version}",
        category=IssueCategory.STRUCTURAL,
        node_id=missing,
    )


def _history_item(session: ConversationSession, entry: HistoryEntry) -> dict[str, Any]:
    item = entry.to_dict()
    item.update({"sessionId": session.session_id, "workflowId": session.workflow_id})
    return item
