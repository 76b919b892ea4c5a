from __future__ import annotations

from typing import Any


def build_messenger_event_id(event: dict[str, Any]) -> str:
    message = event.get("message", {})
    if isinstance(message, dict):
        mid = str(message.get("mid", "") or "").strip()
        if mid:
            return mid
    postback = event.get("postback", {})
    if isinstance(postback, dict):
        mid = str(postback.get("mid", "") or "").strip()
        if mid:
            return mid
    sender_id = str(event.get("sender", {}).get("id", "") or "").strip()
    timestamp = str(event.get("timestamp", "") or "").strip()
    return ":".join(part for part in (sender_id, timestamp) if part)
