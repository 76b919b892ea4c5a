from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from core.enums import SessionStatus
from core.errors import SessionConflictError, StoreUnavailableError
from sessions.models import ConversationSession, HistoryEntry

_SESSION_COLUMNS = """
    session_id, channel_user_id, workflow_id, workflow_version, current_node_id,
    status, history_json, revision, created_at, updated_at
"""


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SqliteSessionRepository:
    def __init__(self, sqlite_path: str, timeout_sec: float = 5.0) -> None:
        self.sqlite_path = Path(sqlite_path)
        self.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
        self.timeout_sec = max(0.1, float(timeout_sec))
        self._init_schema()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.sqlite_path, timeout=self.timeout_sec)
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"session store unavailable: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"session store error: {exc}") from exc
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS conversation_sessions (
                    channel_user_id TEXT NOT NULL,
                    workflow_id TEXT NOT NULL,
                    session_id TEXT NOT NULL,
                    workflow_version INTEGER NOT NULL,
                    current_node_id TEXT,
                    status TEXT NOT NULL,
                    history_json TEXT NOT NULL,
                    revision INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (channel_user_id, workflow_id)
                );
                CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_session_id
                    ON conversation_sessions(session_id);
                CREATE INDEX IF NOT EXISTS idx_sessions_status_updated
                    ON conversation_sessions(status, updated_at);

                CREATE TABLE IF NOT EXISTS processed_channel_events (
                    event_id TEXT PRIMARY KEY,
                    received_at TEXT NOT NULL
                );
                """
            )
            conn.commit()

    def mark_event_processed(self, event_id: str) -> bool:
        key = (event_id or "").strip()
        if not key:
            return False

        with self._connect() as conn:
            cur = conn.execute(
                "INSERT OR IGNORE INTO processed_channel_events(event_id, received_at) VALUES(?, ?)",
                (key, _utc_now()),
            )
            conn.commit()
            return cur.rowcount > 0

    def get_session(self, channel_user_id: str, workflow_id: str) -> ConversationSession | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM conversation_sessions WHERE channel_user_id = ? AND workflow_id = ?",
                (channel_user_id, workflow_id),
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_session_by_id(self, session_id: str) -> ConversationSession | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM conversation_sessions WHERE session_id = ?",
                (session_id,),
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def save_session(self, session: ConversationSession, expected_revision: int) -> int:
        new_revision = int(expected_revision) + 1
        values = (
            session.session_id,
            session.workflow_version,
            session.current_node_id,
            session.status.value,
            json.dumps([entry.to_dict() for entry in session.history], ensure_ascii=False),
            new_revision,
            session.created_at or session.updated_at,
            session.updated_at,
        )
        with self._connect() as conn:
            if expected_revision <= 0:
                try:
                    conn.execute(
                        """
                        INSERT INTO conversation_sessions(
                            session_id, workflow_version, current_node_id, status, history_json,
                            revision, created_at, updated_at, channel_user_id, workflow_id
                        ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (*values, session.channel_user_id, session.workflow_id),
                    )
                except sqlite3.IntegrityError as exc:
                    raise SessionConflictError(
                        f"session already exists user={session.channel_user_id} workflow={session.workflow_id}"
                    ) from exc
            else:
                cur = conn.execute(
                    """
                    UPDATE conversation_sessions
                    SET session_id = ?, workflow_version = ?, current_node_id = ?, status = ?, history_json = ?,
                        revision = ?, created_at = ?, updated_at = ?
                    WHERE channel_user_id = ? AND workflow_id = ? AND revision = ?
                    """,
                    (*values, session.channel_user_id, session.workflow_id, int(expected_revision)),
                )
                if cur.rowcount == 0:
                    raise SessionConflictError(
                        f"session revision changed user={session.channel_user_id} "
                        f"workflow={session.workflow_id} expected={expected_revision}"
                    )
            conn.commit()
        return new_revision

    def delete_sessions(self, channel_user_id: str, workflow_id: str | None = None) -> int:
        with self._connect() as conn:
            if workflow_id is None:
                cur = conn.execute("DELETE FROM conversation_sessions WHERE channel_user_id = ?", (channel_user_id,))
            else:
                cur = conn.execute(
                    "DELETE FROM conversation_sessions WHERE channel_user_id = ? AND workflow_id = ?",
                    (channel_user_id, workflow_id),
                )
            conn.commit()
            return int(cur.rowcount)

    def list_idle_sessions(self, updated_before: str, limit: int = 100) -> list[ConversationSession]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS}
                FROM conversation_sessions
                WHERE status = ? AND updated_at < ?
                ORDER BY updated_at ASC
                LIMIT ?
                """,
                (SessionStatus.ACTIVE.value, updated_before, max(1, int(limit))),
            ).fetchall()
        return [_row_to_session(row) for row in rows]

    def list_user_sessions(self, channel_user_id: str) -> list[ConversationSession]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM conversation_sessions WHERE channel_user_id = ? ORDER BY workflow_id",
                (channel_user_id,),
            ).fetchall()
        return [_row_to_session(row) for row in rows]


def _row_to_session(row: sqlite3.Row) -> ConversationSession:
    raw_history = _load_json(row["history_json"])
    history = [HistoryEntry.from_dict(item) for item in raw_history if isinstance(item, dict)] if isinstance(raw_history, list) else []
    return ConversationSession(
        session_id=row["session_id"],
        channel_user_id=row["channel_user_id"],
        workflow_id=row["workflow_id"],
        workflow_version=int(row["workflow_version"]),
        current_node_id=row["current_node_id"],
        status=SessionStatus(row["status"]),
        history=history,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        revision=int(row["revision"]),
    )


def _load_json(text: Any) -> Any:
    if not text:
        return None
    try:
        return json.loads(str(text))
    except json.JSONDecodeError:
        return None
