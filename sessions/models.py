from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from core.enums import SessionStatus


@dataclass(slots=True)
class HistoryEntry:
    node_id: str
    entered_at: str

    def to_dict(self) -> dict[str, Any]:
        return {"nodeId": self.node_id, "enteredAt": self.entered_at}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryEntry:
        return cls(node_id=str(data.get("nodeId", "")), entered_at=str(data.get("enteredAt", "")))


@dataclass(slots=True)
class ConversationSession:
    session_id: str
    channel_user_id: str
    workflow_id: str
    workflow_version: int
    current_node_id: str | None
    status: SessionStatus
    history: list[HistoryEntry] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""
    revision: int = 0

    @property
    def key(self) -> tuple[str, str]:
        return (self.channel_user_id, self.workflow_id)

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def enter(self, node_id: str, entered_at: str, history_limit: int) -> None:
        self.current_node_id = node_id
        self.history.append(HistoryEntry(node_id=node_id, entered_at=entered_at))
        overflow = len(self.history) - max(1, history_limit)
        if overflow > 0:
            del self.history[:overflow]

    def copy(self) -> ConversationSession:
        return ConversationSession(
            session_id=self.session_id,
            channel_user_id=self.channel_user_id,
            workflow_id=self.workflow_id,
            workflow_version=self.workflow_version,
            current_node_id=self.current_node_id,
            status=self.status,
            history=[HistoryEntry(node_id=h.node_id, entered_at=h.entered_at) for h in self.history],
            created_at=self.created_at,
            updated_at=self.updated_at,
            revision=self.revision,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "channelUserId": self.channel_user_id,
            "workflowId": self.workflow_id,
            "workflowVersion": self.workflow_version,
            "currentNodeId": self.current_node_id,
            "status": self.status.value,
            "history": [entry.to_dict() for entry in self.history],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "revision": self.revision,
        }
