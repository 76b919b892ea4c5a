from __future__ import annotations

from typing import Any

from sessions.dynamo_repository import DynamoSessionRepository
from sessions.repository import SqliteSessionRepository
from sessions.repository_interface import SessionRepositoryProtocol


def create_session_repository(config: dict[str, Any]) -> SessionRepositoryProtocol:
    sessions_conf = config.get("sessions", {})
    backend = str(sessions_conf.get("backend", "sqlite") or "sqlite").strip().lower()
    store_timeout_sec = float(sessions_conf.get("store_timeout_sec", 5))

    if backend == "dynamodb":
        ddb_conf = sessions_conf.get("dynamodb", {}) if isinstance(sessions_conf, dict) else {}
        tables = ddb_conf.get("tables", {}) if isinstance(ddb_conf, dict) else {}
        return DynamoSessionRepository(
            region_name=_as_optional_str(ddb_conf.get("region")),
            table_prefix=str(ddb_conf.get("table_prefix", "chatflow")),
            sessions_table_name=_as_optional_str(tables.get("sessions")),
            event_table_name=_as_optional_str(tables.get("event_dedupe")),
            event_ttl_days=int(ddb_conf.get("event_ttl_days", 7)),
            connect_timeout_sec=float(ddb_conf.get("connect_timeout_sec", store_timeout_sec)),
            read_timeout_sec=float(ddb_conf.get("read_timeout_sec", store_timeout_sec)),
        )

    sqlite_path = str(sessions_conf.get("sqlite_path", "data/sessions/sessions.db"))
    return SqliteSessionRepository(sqlite_path=sqlite_path, timeout_sec=store_timeout_sec)


def _as_optional_str(value: Any) -> str | None:
    text = str(value or "").strip()
    return text or None
