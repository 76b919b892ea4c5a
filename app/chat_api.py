from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import Body, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse

from core.errors import (
    ChatflowError,
    GraphInvalidError,
    GraphNotFoundError,
    RenderError,
)
from core.models import InboundEvent
from engine.conversation_engine import ConversationEngine
from engine.factory import build_conversation_engine
from graph.parser import parse_graph
from graph.validator import validate_graph
from messenger.webhook_handler import MessengerWebhookHandler
from sessions.retention import IdleSessionSweeper

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_TEXT = "Sorry, something went wrong. Please try again."


def error_status(exc: ChatflowError) -> int:
    if isinstance(exc, GraphNotFoundError):
        return 404
    if isinstance(exc, GraphInvalidError):
        return 422
    if isinstance(exc, RenderError):
        return 500
    if exc.retryable:
        return 503
    return 500


def error_body(exc: ChatflowError, fallback_text: str) -> dict[str, Any]:
    body: dict[str, Any] = {
        "ok": False,
        "error": str(exc),
        "errorType": type(exc).__name__,
        "retryable": exc.retryable,
        "fallbackText": fallback_text,
    }
    if isinstance(exc, GraphInvalidError):
        body["issues"] = [issue.to_dict() for issue in exc.issues]
    if isinstance(exc, RenderError):
        body["nodeId"] = exc.node_id
    return body


def create_app(
    config: dict[str, Any],
    engine: ConversationEngine | None = None,
    webhook_handler: MessengerWebhookHandler | None = None,
    run_sweeper: bool = False,
) -> FastAPI:
    engine = engine or build_conversation_engine(config)
    handler = webhook_handler or MessengerWebhookHandler(config, engine)
    sessions_conf = config.get("sessions", {})
    fallback_text = str(config.get("messenger", {}).get("fallback_text", "") or DEFAULT_FALLBACK_TEXT)
    sweeper = IdleSessionSweeper(
        engine,
        idle_minutes=int(sessions_conf.get("idle_timeout_minutes", 30)),
        interval_sec=float(sessions_conf.get("sweep_interval_sec", 300)),
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if run_sweeper:
            sweeper.start()
        try:
            yield
        finally:
            sweeper.stop(timeout=5)

    app = FastAPI(title=str(config.get("api", {}).get("title", "Chatflow")), version="0.1.0", lifespan=lifespan)
    app.state.engine = engine
    app.state.webhook_handler = handler
    app.state.sweeper = sweeper

    @app.exception_handler(ChatflowError)
    async def chatflow_error_handler(request: Request, exc: ChatflowError) -> JSONResponse:
        status_code = error_status(exc)
        logger.warning("api-error path=%s status=%s error=%s", request.url.path, status_code, exc)
        return JSONResponse(status_code=status_code, content=error_body(exc, fallback_text))

    @app.get("/healthz")
    async def healthz() -> dict[str, Any]:
        return {"ok": True}

    @app.post("/chat/message")
    def chat_message(payload: dict[str, Any] = Body(...)) -> JSONResponse:
        user_id = str(payload.get("facebookUserId", "") or "").strip()
        if not user_id:
            return JSONResponse(
                status_code=400,
                content={"ok": False, "error": "facebookUserId is required", "fallbackText": fallback_text},
            )
        event = InboundEvent(
            channel_user_id=user_id,
            workflow_id=_optional_str(payload.get("workflowId")),
            raw=str(payload.get("message", "") or ""),
            trigger_payload=_optional_str(payload.get("payload")),
            trigger_title=_optional_str(payload.get("title")),
        )
        result = engine.process_turn(event)
        content = result.message.to_dict()
        content.update(
            {
                "sessionId": result.session_id,
                "workflowEnded": result.workflow_ended,
                "matched": result.matched,
            }
        )
        return JSONResponse(content=content)

    @app.get("/chat/session/{user_id}")
    def chat_session(user_id: str, workflowId: str | None = None) -> JSONResponse:
        session = engine.session_snapshot(user_id, workflowId)
        if session is None:
            return JSONResponse(status_code=404, content={"ok": False, "error": "session not found"})
        return JSONResponse(content=session.to_dict())

    @app.get("/chat/session/{session_id}/history")
    def chat_session_history(session_id: str) -> JSONResponse:
        history = engine.session_history(session_id)
        if history is None:
            return JSONResponse(status_code=404, content={"ok": False, "error": "session not found"})
        return JSONResponse(content=history)

    @app.get("/chat/history/{user_id}")
    def chat_history(user_id: str, limit: int = 50) -> JSONResponse:
        return JSONResponse(content=engine.chat_history(user_id, limit=limit))

    @app.post("/chat/reset/{user_id}")
    def chat_reset(user_id: str, workflowId: str | None = None) -> dict[str, Any]:
        deleted = engine.reset_session(user_id, workflowId)
        return {"ok": True, "deleted": deleted}

    @app.post("/chat/session/{session_id}/end")
    def chat_end_session(session_id: str) -> JSONResponse:
        if not engine.end_session(session_id):
            return JSONResponse(status_code=404, content={"ok": False, "error": "active session not found"})
        return JSONResponse(content={"ok": True, "sessionId": session_id})

    @app.post("/workflows/validate")
    def workflows_validate(payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
        document = payload.get("graph", payload)
        result = validate_graph(parse_graph(document))
        return result.to_dict()

    @app.post("/workflows/{workflow_id}/activate")
    def workflows_activate(workflow_id: str, payload: dict[str, Any] = Body(...)) -> JSONResponse:
        try:
            version = int(payload.get("version"))
        except (TypeError, ValueError):
            return JSONResponse(status_code=400, content={"ok": False, "error": "version must be an integer"})
        graph = engine.graphs.repository.activate(workflow_id, version)
        return JSONResponse(content={"ok": True, "workflowId": graph.id, "version": graph.version})

    webhook_path = str(config.get("messenger", {}).get("webhook_path", "/webhook/messenger"))

    @app.get(webhook_path)
    async def messenger_verify(request: Request) -> PlainTextResponse:
        params = request.query_params
        status_code, text = handler.verify_subscription(
            params.get("hub.mode"),
            params.get("hub.verify_token"),
            params.get("hub.challenge"),
        )
        return PlainTextResponse(status_code=status_code, content=text)

    @app.post(webhook_path)
    async def messenger_webhook(request: Request) -> JSONResponse:
        body = await request.body()
        status_code, content = await run_in_threadpool(handler.handle, body)
        return JSONResponse(status_code=status_code, content=content)

    return app


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)
