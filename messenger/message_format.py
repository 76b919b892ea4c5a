from __future__ import annotations

from typing import Any

from core.models import OutboundMessage


def to_send_api_message(message: OutboundMessage) -> dict[str, Any]:
    """Send API `message` body for a rendered message; metadata stays behind."""
    output: dict[str, Any] = {}
    if message.attachment is not None:
        output["attachment"] = message.attachment
    elif message.text is not None:
        output["text"] = message.text
    if message.quick_replies:
        output["quick_replies"] = message.quick_replies
    return output


def text_message(text: str) -> dict[str, Any]:
    return {"text": text}
