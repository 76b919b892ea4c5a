from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

from engine.conversation_engine import ConversationEngine
from graph.cache import GraphCache
from graph.repository import FileGraphRepository
from sessions.repository_factory import create_session_repository
from sessions.repository_interface import SessionRepositoryProtocol
from sessions.store import SessionStore


def build_conversation_engine(
    config: dict[str, Any],
    repository: SessionRepositoryProtocol | None = None,
    clock: Callable[[], datetime] | None = None,
    id_factory: Callable[[], str] | None = None,
) -> ConversationEngine:
    engine_conf = config.get("engine", {})
    sessions_conf = config.get("sessions", {})
    graphs_conf = config.get("graphs", {})

    graph_repository = FileGraphRepository(str(graphs_conf.get("store_path", "data/graphs")))
    cache = GraphCache(graph_repository)
    graph_repository.add_listener(cache.on_activation)

    store = SessionStore(
        repository=repository or create_session_repository(config),
        history_limit=int(engine_conf.get("history_limit", 50)),
        clock=clock,
        id_factory=id_factory,
    )
    lock_timeout = engine_conf.get("lock_timeout_sec")
    return ConversationEngine(
        graphs=cache,
        store=store,
        turn_timeout_sec=float(engine_conf.get("turn_timeout_sec", 10)),
        lock_timeout_sec=float(lock_timeout) if lock_timeout is not None else None,
        idle_timeout_minutes=int(sessions_conf.get("idle_timeout_minutes", 30)),
        default_workflow_id=engine_conf.get("default_workflow_id"),
    )
