from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any

from app.config import load_config
from core.errors import ChatflowError
from core.models import InboundEvent
from engine.conversation_engine import ConversationEngine
from engine.factory import build_conversation_engine
from graph.parser import parse_graph
from graph.repository import FileGraphRepository
from graph.validator import validate_graph

DEFAULT_CONFIG_PATH = "config.yaml"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Chatbot workflow conversation engine")
    parser.add_argument("--log-level", default="WARNING", help="Root log level (DEBUG, INFO, WARNING, ...)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser("validate-graph", help="Validate a workflow graph document")
    validate_parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to config.yaml or config.json")
    validate_parser.add_argument("--graph", required=True)

    publish_parser = subparsers.add_parser("publish", help="Publish a workflow graph as a new version")
    publish_parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to config.yaml or config.json")
    publish_parser.add_argument("--graph", required=True)
    publish_parser.add_argument("--activate", action="store_true", help="Activate the published version")

    activate_parser = subparsers.add_parser("activate", help="Make a published version live")
    activate_parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to config.yaml or config.json")
    activate_parser.add_argument("--workflow-id", required=True)
    activate_parser.add_argument("--version", required=True, type=int)

    send_parser = subparsers.add_parser("send", help="Process one inbound event and print the reply")
    send_parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to config.yaml or config.json")
    send_parser.add_argument("--user", required=True)
    send_parser.add_argument("--workflow-id", default=None)
    send_parser.add_argument("--text", default="")
    send_parser.add_argument("--payload", default=None)
    send_parser.add_argument("--title", default=None)

    reset_parser = subparsers.add_parser("reset", help="Delete stored sessions for a user")
    reset_parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to config.yaml or config.json")
    reset_parser.add_argument("--user", required=True)
    reset_parser.add_argument("--workflow-id", default=None)

    sweep_parser = subparsers.add_parser("sweep-idle", help="End sessions idle for longer than the timeout")
    sweep_parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to config.yaml or config.json")
    sweep_parser.add_argument("--idle-minutes", default=None, type=int)

    return parser


def _load_document(path: str) -> dict[str, Any]:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"JSON root must be object: {path}")
    return data


def _graph_repository(config: dict[str, Any]) -> FileGraphRepository:
    return FileGraphRepository(str(config.get("graphs", {}).get("store_path", "data/graphs")))


def cmd_validate_graph(args: argparse.Namespace, config: dict[str, Any]) -> int:
    try:
        result = validate_graph(parse_graph(_load_document(args.graph)))
    except (OSError, ValueError, ChatflowError) as exc:
        print(f"validate failed: {exc}")
        return 1
    print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
    return 0 if result.ok else 2


def cmd_publish(args: argparse.Namespace, config: dict[str, Any]) -> int:
    repository = _graph_repository(config)
    try:
        document = _load_document(args.graph)
        version = repository.publish(document)
        print(f"published workflow={document.get('id')} version={version}")
        if args.activate:
            repository.activate(str(document.get("id")), version)
            print(f"activated workflow={document.get('id')} version={version}")
    except (OSError, ValueError, ChatflowError) as exc:
        print(f"publish failed: {exc}")
        return 1
    return 0


def cmd_activate(args: argparse.Namespace, config: dict[str, Any]) -> int:
    try:
        graph = _graph_repository(config).activate(args.workflow_id, args.version)
    except ChatflowError as exc:
        print(f"activate failed: {exc}")
        return 1
    print(f"activated workflow={graph.id} version={graph.version}")
    return 0


def cmd_send(args: argparse.Namespace, engine: ConversationEngine) -> int:
    event = InboundEvent(
        channel_user_id=args.user,
        workflow_id=args.workflow_id,
        raw=args.text or "",
        trigger_payload=args.payload,
        trigger_title=args.title,
    )
    try:
        result = engine.process_turn(event)
    except ChatflowError as exc:
        print(f"send failed: {exc}")
        return 1
    output = result.message.to_dict()
    output.update({"sessionId": result.session_id, "workflowEnded": result.workflow_ended, "matched": result.matched})
    print(json.dumps(output, ensure_ascii=False, indent=2))
    return 0


def cmd_reset(args: argparse.Namespace, engine: ConversationEngine) -> int:
    try:
        deleted = engine.reset_session(args.user, args.workflow_id)
    except ChatflowError as exc:
        print(f"reset failed: {exc}")
        return 1
    print(f"reset user={args.user} deleted={deleted}")
    return 0


def cmd_sweep_idle(args: argparse.Namespace, engine: ConversationEngine) -> int:
    try:
        ended = engine.end_idle_sessions(idle_minutes=args.idle_minutes)
    except ChatflowError as exc:
        print(f"sweep failed: {exc}")
        return 1
    print(f"ended={ended}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=str(args.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    config = load_config(args.config)

    if args.command == "validate-graph":
        return cmd_validate_graph(args, config)
    if args.command == "publish":
        return cmd_publish(args, config)
    if args.command == "activate":
        return cmd_activate(args, config)
    if args.command in {"send", "reset", "sweep-idle"}:
        try:
            engine = build_conversation_engine(config)
        except ChatflowError as exc:
            print(f"{args.command} failed: {exc}")
            return 1
        if args.command == "send":
            return cmd_send(args, engine)
        if args.command == "reset":
            return cmd_reset(args, engine)
        return cmd_sweep_idle(args, engine)

    parser.print_help()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
