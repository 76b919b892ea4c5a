from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterator

import boto3
from boto3.dynamodb.conditions import Key
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, ConnectTimeoutError, ReadTimeoutError

from core.enums import SessionStatus
from core.errors import SessionConflictError, StoreUnavailableError, TurnTimeoutError
from sessions.models import ConversationSession, HistoryEntry
from sessions.repository_interface import SessionRepositoryProtocol


class DynamoSessionRepository(SessionRepositoryProtocol):
    SESSION_ID_INDEX = "session_id_index"
    STATUS_UPDATED_INDEX = "status_updated_at_index"

    def __init__(
        self,
        *,
        region_name: str | None = None,
        table_prefix: str = "chatflow",
        sessions_table_name: str | None = None,
        event_table_name: str | None = None,
        event_ttl_days: int = 7,
        connect_timeout_sec: float = 3.0,
        read_timeout_sec: float = 5.0,
        dynamodb_resource: Any | None = None,
    ) -> None:
        normalized_prefix = (table_prefix or "chatflow").strip()
        self.event_ttl_days = max(1, int(event_ttl_days))
        client_config = Config(
            connect_timeout=float(connect_timeout_sec),
            read_timeout=float(read_timeout_sec),
            retries={"max_attempts": 2, "mode": "standard"},
        )
        self._ddb = dynamodb_resource or boto3.resource("dynamodb", region_name=region_name, config=client_config)
        self._sessions_table = self._ddb.Table(sessions_table_name or f"{normalized_prefix}-sessions")
        self._event_table = self._ddb.Table(event_table_name or f"{normalized_prefix}-channel-event-dedupe")

    def mark_event_processed(self, event_id: str) -> bool:
        key = (event_id or "").strip()
        if not key:
            return False
        now = datetime.now(timezone.utc)
        expires = int((now + timedelta(days=self.event_ttl_days)).timestamp())
        try:
            with _translate_errors():
                self._event_table.put_item(
                    Item={
                        "event_id": key,
                        "received_at": now.isoformat(),
                        "expires_at_epoch": expires,
                    },
                    ConditionExpression="attribute_not_exists(event_id)",
                )
        except SessionConflictError:
            # already recorded by an earlier delivery
            return False
        return True

    def get_session(self, channel_user_id: str, workflow_id: str) -> ConversationSession | None:
        with _translate_errors():
            item = self._sessions_table.get_item(
                Key={"channel_user_id": channel_user_id, "workflow_id": workflow_id},
                ConsistentRead=True,
            ).get("Item")
        return _item_to_session(item) if item else None

    def get_session_by_id(self, session_id: str) -> ConversationSession | None:
        with _translate_errors():
            rows = self._sessions_table.query(
                IndexName=self.SESSION_ID_INDEX,
                KeyConditionExpression=Key("session_id").eq(session_id),
                Limit=1,
            ).get("Items", [])
        if not rows:
            return None
        # Index projections can lag; re-read the base item for the full record.
        row = rows[0]
        return self.get_session(str(row["channel_user_id"]), str(row["workflow_id"]))

    def save_session(self, session: ConversationSession, expected_revision: int) -> int:
        new_revision = int(expected_revision) + 1
        item = {
            "channel_user_id": session.channel_user_id,
            "workflow_id": session.workflow_id,
            "session_id": session.session_id,
            "workflow_version": session.workflow_version,
            "current_node_id": session.current_node_id,
            "status": session.status.value,
            "history_json": json.dumps([entry.to_dict() for entry in session.history], ensure_ascii=False),
            "revision": new_revision,
            "created_at": session.created_at or session.updated_at,
            "updated_at": session.updated_at,
        }
        if expected_revision <= 0:
            condition: dict[str, Any] = {"ConditionExpression": "attribute_not_exists(channel_user_id)"}
        else:
            condition = {
                "ConditionExpression": "#revision = :expected",
                "ExpressionAttributeNames": {"#revision": "revision"},
                "ExpressionAttributeValues": {":expected": int(expected_revision)},
            }
        with _translate_errors():
            self._sessions_table.put_item(Item=item, **condition)
        return new_revision

    def delete_sessions(self, channel_user_id: str, workflow_id: str | None = None) -> int:
        with _translate_errors():
            if workflow_id is not None:
                response = self._sessions_table.delete_item(
                    Key={"channel_user_id": channel_user_id, "workflow_id": workflow_id},
                    ReturnValues="ALL_OLD",
                )
                return 1 if response.get("Attributes") else 0

            rows = self._query_sessions_by_user(channel_user_id)
            if rows:
                with self._sessions_table.batch_writer() as batch:
                    for row in rows:
                        batch.delete_item(
                            Key={"channel_user_id": row["channel_user_id"], "workflow_id": row["workflow_id"]}
                        )
            return len(rows)

    def list_idle_sessions(self, updated_before: str, limit: int = 100) -> list[ConversationSession]:
        with _translate_errors():
            rows = self._sessions_table.query(
                IndexName=self.STATUS_UPDATED_INDEX,
                KeyConditionExpression=Key("status").eq(SessionStatus.ACTIVE.value) & Key("updated_at").lt(updated_before),
                ScanIndexForward=True,
                Limit=max(1, int(limit)),
            ).get("Items", [])
        return [_item_to_session(row) for row in rows]

    def list_user_sessions(self, channel_user_id: str) -> list[ConversationSession]:
        with _translate_errors():
            rows = self._query_sessions_by_user(channel_user_id, keys_only=False)
        return [_item_to_session(row) for row in rows]

    def _query_sessions_by_user(self, channel_user_id: str, keys_only: bool = True) -> list[dict[str, Any]]:
        kwargs: dict[str, Any] = {"KeyConditionExpression": Key("channel_user_id").eq(channel_user_id)}
        if keys_only:
            kwargs["ProjectionExpression"] = "channel_user_id, workflow_id"
        items: list[dict[str, Any]] = []
        while True:
            response = self._sessions_table.query(**kwargs)
            items.extend(response.get("Items", []))
            if "LastEvaluatedKey" not in response:
                break
            kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]
        return items


@contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except ClientError as exc:
        code = str(exc.response.get("Error", {}).get("Code", ""))
        if code == "ConditionalCheckFailedException":
            raise SessionConflictError("session changed concurrently") from exc
        raise StoreUnavailableError(f"dynamodb error: {code or exc}") from exc
    except (ConnectTimeoutError, ReadTimeoutError) as exc:
        raise TurnTimeoutError(f"dynamodb timed out: {exc}") from exc
    except BotoCoreError as exc:
        raise StoreUnavailableError(f"dynamodb unavailable: {exc}") from exc


def _item_to_session(item: dict[str, Any]) -> ConversationSession:
    raw_history = _load_json(item.get("history_json"))
    history = [HistoryEntry.from_dict(entry) for entry in raw_history if isinstance(entry, dict)]
    return ConversationSession(
        session_id=str(item["session_id"]),
        channel_user_id=str(item["channel_user_id"]),
        workflow_id=str(item["workflow_id"]),
        workflow_version=_to_int(item.get("workflow_version")),
        current_node_id=item.get("current_node_id"),
        status=SessionStatus(str(item.get("status", SessionStatus.ACTIVE.value))),
        history=history,
        created_at=str(item.get("created_at", "")),
        updated_at=str(item.get("updated_at", "")),
        revision=_to_int(item.get("revision")),
    )


def _to_int(value: Any) -> int:
    if isinstance(value, Decimal):
        return int(value)
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _load_json(text: str | None) -> list[Any]:
    if not text:
        return []
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return []
    return data if isinstance(data, list) else []
