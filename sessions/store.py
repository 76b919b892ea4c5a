from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable
from uuid import uuid4

from core.enums import IssueCategory, SessionStatus
from core.errors import GraphInvalidError, SessionConflictError
from core.models import ValidationIssue, WorkflowGraph
from sessions.models import ConversationSession
from sessions.repository_interface import SessionRepositoryProtocol
from sessions.retention import idle_cutoff
from sessions.state_machine import STATE_ENDED, can_transition, state_of

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utc_clock() -> datetime:
    return datetime.now(timezone.utc)


class SessionStore:
    """Owns every session mutation; callers get copies, never live rows.

    A freshly started session is not written until `save`, so a turn that
    fails after `start_session` leaves the store untouched.
    """

    def __init__(
        self,
        repository: SessionRepositoryProtocol,
        history_limit: int = 50,
        clock: Clock | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.repository = repository
        self.history_limit = max(1, int(history_limit))
        self._clock = clock or _utc_clock
        self._id_factory = id_factory or (lambda: str(uuid4()))

    def now_iso(self) -> str:
        return self._clock().isoformat()

    def load(self, channel_user_id: str, workflow_id: str) -> ConversationSession | None:
        return self.repository.get_session(channel_user_id, workflow_id)

    def mark_event_processed(self, event_id: str) -> bool:
        return self.repository.mark_event_processed(event_id)

    def find(self, session_id: str) -> ConversationSession | None:
        return self.repository.get_session_by_id(session_id)

    def user_sessions(self, channel_user_id: str) -> list[ConversationSession]:
        return self.repository.list_user_sessions(channel_user_id)

    def get_or_create(self, channel_user_id: str, graph: WorkflowGraph) -> ConversationSession:
        stored = self.load(channel_user_id, graph.id)
        if stored is not None and stored.is_active:
            return stored
        return self.start_session(channel_user_id, graph, replaces=stored)

    def start_session(
        self,
        channel_user_id: str,
        graph: WorkflowGraph,
        replaces: ConversationSession | None = None,
    ) -> ConversationSession:
        start = graph.start_node()
        if start is None:
            issue = ValidationIssue(
                code="missing_start_node",
                message="no node is flagged as start",
                category=IssueCategory.STRUCTURAL,
            )
            raise GraphInvalidError(graph.id, [issue])
        now = self.now_iso()
        session = ConversationSession(
            session_id=self._id_factory(),
            channel_user_id=channel_user_id,
            workflow_id=graph.id,
            workflow_version=graph.version,
            current_node_id=None,
            status=SessionStatus.ACTIVE,
            created_at=now,
            updated_at=now,
            # Carry the stored revision so the new session replaces the ended row.
            revision=replaces.revision if replaces is not None else 0,
        )
        session.enter(start.id, now, self.history_limit)
        return session

    def enter_node(self, session: ConversationSession, node_id: str) -> None:
        session.enter(node_id, self.now_iso(), self.history_limit)

    def save(self, session: ConversationSession) -> ConversationSession:
        saved = session.copy()
        saved.updated_at = self.now_iso()
        if not saved.created_at:
            saved.created_at = saved.updated_at
        saved.revision = self.repository.save_session(saved, expected_revision=session.revision)
        return saved

    def end(self, session: ConversationSession) -> ConversationSession:
        if not can_transition(state_of(session), STATE_ENDED):
            raise SessionConflictError(f"session already ended session={session.session_id}")
        ended = session.copy()
        ended.status = SessionStatus.ENDED
        saved = self.save(ended)
        logger.info(
            "session-ended user=%s workflow=%s session=%s node=%s",
            saved.channel_user_id,
            saved.workflow_id,
            saved.session_id,
            saved.current_node_id,
        )
        return saved

    def reset(self, channel_user_id: str, workflow_id: str | None = None) -> int:
        deleted = self.repository.delete_sessions(channel_user_id, workflow_id)
        logger.info("session-reset user=%s workflow=%s deleted=%s", channel_user_id, workflow_id or "*", deleted)
        return deleted

    def idle_sessions(
        self,
        idle_minutes: int,
        now: datetime | None = None,
        limit: int = 100,
    ) -> list[ConversationSession]:
        cutoff = idle_cutoff(idle_minutes, now or self._clock())
        return self.repository.list_idle_sessions(cutoff.isoformat(), limit=limit)
