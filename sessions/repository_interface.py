from __future__ import annotations

from typing import Protocol

from sessions.models import ConversationSession


class SessionRepositoryProtocol(Protocol):
    def mark_event_processed(self, event_id: str) -> bool: ...

    def get_session(self, channel_user_id: str, workflow_id: str) -> ConversationSession | None: ...

    def get_session_by_id(self, session_id: str) -> ConversationSession | None: ...

    def save_session(self, session: ConversationSession, expected_revision: int) -> int: ...

    def delete_sessions(self, channel_user_id: str, workflow_id: str | None = None) -> int: ...

    def list_idle_sessions(self, updated_before: str, limit: int = 100) -> list[ConversationSession]: ...

    def list_user_sessions(self, channel_user_id: str) -> list[ConversationSession]: ...
