from __future__ import annotations

from core.enums import SessionStatus
from sessions.models import ConversationSession

STATE_NEW = "NEW"
STATE_ACTIVE = "ACTIVE"
STATE_ENDED = "ENDED"


def lifecycle_state(session: ConversationSession | None) -> str:
    # An ended session is never resumed; the next event starts over as NEW.
    if session is None or session.status == SessionStatus.ENDED:
        return STATE_NEW
    return STATE_ACTIVE


def state_of(session: ConversationSession) -> str:
    if session.status == SessionStatus.ENDED:
        return STATE_ENDED
    return STATE_ACTIVE


def can_transition(current: str, target: str) -> bool:
    allowed: dict[str, set[str]] = {
        STATE_NEW: {STATE_ACTIVE, STATE_ENDED},
        STATE_ACTIVE: {STATE_ACTIVE, STATE_ENDED},
        STATE_ENDED: set(),
    }
    return target in allowed.get(current, set())
