from __future__ import annotations

import json
import logging
import os
import re
import threading
from pathlib import Path
from typing import Any, Callable

from core.enums import IssueCategory
from core.errors import GraphInvalidError, GraphNotFoundError
from core.models import ValidationIssue, WorkflowGraph
from graph.parser import parse_graph
from graph.validator import validate_graph

logger = logging.getLogger(__name__)

ActivationListener = Callable[[str, int], None]

_VERSION_FILE = re.compile(r"^v(\d+)\.json$")
_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class FileGraphRepository:
    """Versioned workflow documents on disk.

    Layout: `{root}/{workflow_id}/v{version}.json` per published version and
    `{root}/activations.json` holding the active workflow and the live
    version of each workflow. Published versions are never rewritten.
    """

    ACTIVATIONS_FILE = "activations.json"

    def __init__(self, root_path: str) -> None:
        self.root = Path(root_path)
        self.root.mkdir(parents=True, exist_ok=True)
        self._write_lock = threading.Lock()
        self._listeners: list[ActivationListener] = []

    def add_listener(self, listener: ActivationListener) -> None:
        self._listeners.append(listener)

    def publish(self, document: dict[str, Any]) -> int:
        graph = parse_graph(document)
        with self._write_lock:
            versions = self.list_versions(graph.id)
            version = (versions[-1] + 1) if versions else 1
            stored = dict(document)
            stored["id"] = graph.id
            stored["version"] = version
            path = self._version_path(graph.id, version)
            path.parent.mkdir(parents=True, exist_ok=True)
            _atomic_write_json(path, stored)
        logger.info("graph-published workflow=%s version=%s nodes=%s", graph.id, version, len(graph.nodes))
        return version

    def load_document(self, workflow_id: str, version: int | None = None) -> dict[str, Any]:
        resolved = self.live_version(workflow_id) if version is None else int(version)
        if resolved is None:
            raise GraphNotFoundError(workflow_id)
        path = self._version_path(workflow_id, resolved)
        if not path.exists():
            raise GraphNotFoundError(workflow_id, resolved)
        data = _read_json(path, workflow_id)
        if not isinstance(data, dict):
            raise GraphInvalidError(workflow_id, [_malformed(f"{path.name} is not a JSON object")])
        data["version"] = resolved
        return data

    def load_graph(self, workflow_id: str, version: int | None = None) -> WorkflowGraph:
        return parse_graph(self.load_document(workflow_id, version))

    def list_versions(self, workflow_id: str) -> list[int]:
        if not _SAFE_ID.match(workflow_id):
            return []
        folder = self.root / workflow_id
        if not folder.is_dir():
            return []
        versions: list[int] = []
        for file in folder.glob("v*.json"):
            match = _VERSION_FILE.match(file.name)
            if match:
                versions.append(int(match.group(1)))
        return sorted(versions)

    def list_workflows(self) -> list[str]:
        return sorted(path.name for path in self.root.iterdir() if path.is_dir() and self.list_versions(path.name))

    def activate(self, workflow_id: str, version: int, make_active: bool = True) -> WorkflowGraph:
        graph = self.load_graph(workflow_id, version)
        result = validate_graph(graph)
        if not result.ok:
            logger.warning(
                "graph-activation-rejected workflow=%s version=%s issues=%s",
                workflow_id,
                version,
                len(result.issues),
            )
            raise GraphInvalidError(workflow_id, result.issues)

        with self._write_lock:
            activations = self._read_activations()
            live_versions = activations.setdefault("live_versions", {})
            live_versions[workflow_id] = int(version)
            if make_active or not activations.get("active_workflow_id"):
                activations["active_workflow_id"] = workflow_id
            _atomic_write_json(self.root / self.ACTIVATIONS_FILE, activations)

        logger.info("graph-activated workflow=%s version=%s", workflow_id, version)
        for listener in list(self._listeners):
            listener(workflow_id, int(version))
        return graph

    def live_version(self, workflow_id: str) -> int | None:
        live = self._read_activations().get("live_versions", {})
        value = live.get(workflow_id) if isinstance(live, dict) else None
        try:
            return int(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    def active_workflow_id(self) -> str | None:
        value = str(self._read_activations().get("active_workflow_id") or "").strip()
        return value or None

    def activation_token(self) -> tuple[int, int, int] | None:
        """Changes whenever activations.json is rewritten, by any process."""
        try:
            stat = (self.root / self.ACTIVATIONS_FILE).stat()
        except FileNotFoundError:
            return None
        return (stat.st_ino, stat.st_mtime_ns, stat.st_size)

    def _version_path(self, workflow_id: str, version: int) -> Path:
        if not _SAFE_ID.match(workflow_id):
            raise GraphNotFoundError(workflow_id, version)
        return self.root / workflow_id / f"v{int(version)}.json"

    def _read_activations(self) -> dict[str, Any]:
        path = self.root / self.ACTIVATIONS_FILE
        if not path.exists():
            return {}
        data = _read_json(path, self.ACTIVATIONS_FILE)
        return data if isinstance(data, dict) else {}


def _atomic_write_json(path: Path, payload: dict[str, Any]) -> None:
    tmp_path = path.with_name(f".{path.name}.tmp")
    tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    os.replace(tmp_path, path)


def _read_json(path: Path, owner: str) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.error("graph-document-malformed path=%s error=%s", path, exc)
        raise GraphInvalidError(owner, [_malformed(f"{path.name} is not valid JSON: {exc}")]) from exc


def _malformed(message: str) -> ValidationIssue:
    return ValidationIssue(code="malformed_document", message=message, category=IssueCategory.STRUCTURAL)
