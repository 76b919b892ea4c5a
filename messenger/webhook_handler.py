from __future__ import annotations

import json
import logging
from typing import Any

from core.errors import ChatflowError
from core.models import InboundEvent
from engine.conversation_engine import ConversationEngine
from messenger.event_ids import build_messenger_event_id
from messenger.message_format import text_message, to_send_api_message
from messenger.send_client import MessengerApiError, MessengerSendClient

logger = logging.getLogger(__name__)

RESET_REPLY_TEXT = "The conversation has been reset."


class MessengerWebhookHandler:
    def __init__(
        self,
        config: dict[str, Any],
        engine: ConversationEngine,
        send_client: MessengerSendClient | None = None,
    ) -> None:
        self.messenger_conf = config.get("messenger", {})
        self.engine = engine
        self.enabled = bool(self.messenger_conf.get("enabled", False))
        self.verify_token = str(self.messenger_conf.get("verify_token", "") or "").strip()
        self.enable_text_commands = bool(self.messenger_conf.get("enable_text_commands", True))
        commands = self.messenger_conf.get("reset_commands", [])
        self.reset_commands = {
            str(command).strip().lower()
            for command in (commands if isinstance(commands, list) else [])
            if str(command).strip()
        }
        self.fallback_text = str(self.messenger_conf.get("fallback_text", "") or "Please try again.")
        self.send_client = send_client or MessengerSendClient(
            page_access_token=str(self.messenger_conf.get("page_access_token", "") or ""),
            api_base_url=str(self.messenger_conf.get("api_base_url", "https://graph.facebook.com")),
            api_version=str(self.messenger_conf.get("api_version", "v19.0")),
            timeout_sec=float(self.messenger_conf.get("timeout_sec", 10)),
        )

    def verify_subscription(self, mode: str | None, token: str | None, challenge: str | None) -> tuple[int, str]:
        if not self.enabled:
            return 503, "messenger.enabled is false"
        if mode == "subscribe" and self.verify_token and token == self.verify_token:
            return 200, str(challenge or "")
        return 403, "verification failed"

    def handle(self, body: bytes) -> tuple[int, dict[str, Any]]:
        if not self.enabled:
            return 503, {"ok": False, "error": "messenger.enabled is false"}
        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return 400, {"ok": False, "error": "invalid json payload"}
        if not isinstance(payload, dict) or payload.get("object") != "page":
            return 404, {"ok": False, "error": "object must be page"}
        entries = payload.get("entry", [])
        if not isinstance(entries, list):
            return 400, {"ok": False, "error": "entry must be list"}

        handled = 0
        skipped = 0
        errors: list[str] = []
        for entry in entries:
            messaging = entry.get("messaging", []) if isinstance(entry, dict) else []
            for raw_event in messaging if isinstance(messaging, list) else []:
                if not isinstance(raw_event, dict):
                    skipped += 1
                    continue
                event = parse_messaging_event(raw_event)
                if event is None:
                    skipped += 1
                    continue
                event_id = build_messenger_event_id(raw_event)
                try:
                    fresh = not event_id or self.engine.store.mark_event_processed(event_id)
                except ChatflowError as exc:
                    errors.append(self._fail(event, exc))
                    continue
                if not fresh:
                    skipped += 1
                    continue
                error = self._handle_event(event)
                if error:
                    errors.append(error)
                else:
                    handled += 1
        return 200, {"ok": len(errors) == 0, "handled": handled, "skipped": skipped, "errors": errors}

    def _handle_event(self, event: InboundEvent) -> str | None:
        try:
            if self._is_reset_command(event):
                deleted = self.engine.reset_session(event.channel_user_id)
                logger.info("messenger-reset user=%s deleted=%s", event.channel_user_id, deleted)
                self._send(event.channel_user_id, text_message(RESET_REPLY_TEXT))
                return None
            result = self.engine.process_turn(event)
        except ChatflowError as exc:
            return self._fail(event, exc)
        self._send(event.channel_user_id, to_send_api_message(result.message))
        return None

    def _fail(self, event: InboundEvent, exc: ChatflowError) -> str:
        logger.warning(
            "messenger-turn-failed user=%s error=%s retryable=%s",
            event.channel_user_id,
            exc,
            exc.retryable,
        )
        self._send(event.channel_user_id, text_message(self.fallback_text))
        return str(exc)

    def _is_reset_command(self, event: InboundEvent) -> bool:
        if not self.enable_text_commands or event.payload is not None:
            return False
        return event.raw.strip().lower() in self.reset_commands

    def _send(self, recipient_id: str, message: dict[str, Any]) -> None:
        try:
            self.send_client.send(recipient_id, message)
        except MessengerApiError as exc:
            logger.error("messenger-send-failed user=%s error=%s", recipient_id, exc)


def parse_messaging_event(raw: dict[str, Any]) -> InboundEvent | None:
    sender = raw.get("sender", {})
    user_id = str(sender.get("id", "") or "").strip() if isinstance(sender, dict) else ""
    if not user_id:
        return None

    message = raw.get("message")
    if isinstance(message, dict):
        if message.get("is_echo"):
            return None
        text = str(message.get("text", "") or "")
        quick_reply = message.get("quick_reply")
        if isinstance(quick_reply, dict):
            return InboundEvent(
                channel_user_id=user_id,
                raw=text,
                trigger_payload=str(quick_reply.get("payload", "") or "") or None,
                trigger_title=text or None,
            )
        return InboundEvent(channel_user_id=user_id, raw=text)

    postback = raw.get("postback")
    if isinstance(postback, dict):
        title = str(postback.get("title", "") or "")
        return InboundEvent(
            channel_user_id=user_id,
            raw=title,
            trigger_payload=str(postback.get("payload", "") or "") or None,
            trigger_title=title or None,
        )
    # delivery / read receipts and other notifications
    return None
