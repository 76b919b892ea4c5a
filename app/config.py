from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml

DEFAULT_CONFIG: dict[str, Any] = {
    "engine": {
        "history_limit": 50,
        "turn_timeout_sec": 10,
        "lock_timeout_sec": None,
        "default_workflow_id": None,
    },
    "graphs": {
        "store_path": "data/graphs",
    },
    "sessions": {
        "backend": "sqlite",
        "sqlite_path": "data/sessions/sessions.db",
        "store_timeout_sec": 5,
        "idle_timeout_minutes": 30,
        "sweep_interval_sec": 300,
        "dynamodb": {
            "region": None,
            "table_prefix": "chatflow",
            "connect_timeout_sec": 3,
            "read_timeout_sec": 5,
            "event_ttl_days": 7,
            "tables": {
                "sessions": None,
                "event_dedupe": None,
            },
        },
    },
    "messenger": {
        "enabled": False,
        "page_access_token": None,
        "verify_token": None,
        "api_base_url": "https://graph.facebook.com",
        "api_version": "v19.0",
        "webhook_path": "/webhook/messenger",
        "timeout_sec": 10,
        "enable_text_commands": True,
        "reset_commands": ["reset", "restart"],
        "fallback_text": "Sorry, something went wrong. Please try again.",
    },
    "api": {
        "title": "Chatflow Conversation Engine",
    },
}


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(config_path: str | None = None) -> dict[str, Any]:
    if not config_path:
        return DEFAULT_CONFIG

    path = Path(config_path)
    if not path.exists():
        return DEFAULT_CONFIG

    text = path.read_text(encoding="utf-8")
    if not text.strip():
        return DEFAULT_CONFIG

    if path.suffix.lower() == ".json":
        loaded = json.loads(text)
    else:
        loaded = yaml.safe_load(text)
    data = loaded if isinstance(loaded, dict) else {}
    return deep_merge(DEFAULT_CONFIG, data)
