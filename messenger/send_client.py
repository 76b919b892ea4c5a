from __future__ import annotations

import json
from typing import Any
from urllib import error, request


class MessengerApiError(RuntimeError):
    pass


class MessengerSendClient:
    def __init__(
        self,
        page_access_token: str,
        api_base_url: str = "https://graph.facebook.com",
        api_version: str = "v19.0",
        timeout_sec: float = 10.0,
    ) -> None:
        self.page_access_token = (page_access_token or "").strip()
        self.api_base_url = (api_base_url or "https://graph.facebook.com").rstrip("/")
        self.api_version = (api_version or "v19.0").strip("/")
        self.timeout_sec = float(timeout_sec)

    def send(self, recipient_id: str, message: dict[str, Any], messaging_type: str = "RESPONSE") -> dict[str, Any]:
        if not self.page_access_token:
            raise MessengerApiError("messenger.page_access_token is required")
        target = (recipient_id or "").strip()
        if not target:
            raise MessengerApiError("recipient id is empty")
        if not message:
            raise MessengerApiError("message body is empty")

        payload = {
            "recipient": {"id": target},
            "messaging_type": messaging_type,
            "message": message,
        }
        return self._post_json(f"/{self.api_version}/me/messages", payload)

    def send_text(self, recipient_id: str, text: str) -> dict[str, Any]:
        return self.send(recipient_id, {"text": text})

    def _post_json(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        data = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        url = f"{self.api_base_url}{path}"
        req = request.Request(url=url, data=data, method="POST")
        req.add_header("Content-Type", "application/json; charset=utf-8")
        req.add_header("Authorization", f"Bearer {self.page_access_token}")
        try:
            with request.urlopen(req, timeout=self.timeout_sec) as resp:
                status = int(getattr(resp, "status", 200))
                body = resp.read().decode("utf-8", errors="ignore")
                if status >= 400:
                    raise MessengerApiError(f"messenger api error: status={status} body={body}")
        except error.HTTPError as exc:
            body = ""
            try:
                body = exc.read().decode("utf-8", errors="ignore")
            except OSError:
                pass
            raise MessengerApiError(f"messenger api error: status={exc.code} body={body}") from exc
        except error.URLError as exc:
            raise MessengerApiError(f"messenger api connection error: {exc}") from exc
        if not body.strip():
            return {}
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
