from __future__ import annotations

import logging
import threading

from core.errors import GraphInvalidError, GraphNotFoundError
from core.models import WorkflowGraph
from graph.repository import FileGraphRepository
from graph.validator import validate_graph

logger = logging.getLogger(__name__)


class GraphCache:
    """Read-mostly cache of validated graphs keyed by (workflow_id, version).

    Readers only ever look at the current dict; writers build a new dict and
    swap the reference, so lookups never take a lock. Graphs loaded here are
    checked structurally and rejected with GraphInvalidError when broken.
    """

    def __init__(self, repository: FileGraphRepository) -> None:
        self.repository = repository
        self._graphs: dict[tuple[str, int], WorkflowGraph] = {}
        self._live: dict[str, int] = {}
        self._activation_token = repository.activation_token()
        self._write_lock = threading.Lock()

    def get(self, workflow_id: str, version: int) -> WorkflowGraph:
        key = (workflow_id, int(version))
        graph = self._graphs.get(key)
        if graph is not None:
            return graph
        graph = self.repository.load_graph(workflow_id, int(version))
        result = validate_graph(graph, include_content=False)
        if not result.ok:
            logger.error(
                "graph-load-rejected workflow=%s version=%s issues=%s",
                workflow_id,
                version,
                len(result.issues),
            )
            raise GraphInvalidError(workflow_id, result.issues)
        with self._write_lock:
            graphs = dict(self._graphs)
            graphs[key] = graph
            self._graphs = graphs
        return graph

    def get_live(self, workflow_id: str) -> WorkflowGraph:
        self._sync_activations()
        version = self._live.get(workflow_id)
        if version is None:
            version = self.repository.live_version(workflow_id)
            if version is None:
                raise GraphNotFoundError(workflow_id)
            with self._write_lock:
                live = dict(self._live)
                live[workflow_id] = version
                self._live = live
        return self.get(workflow_id, version)

    def active_workflow_id(self) -> str | None:
        return self.repository.active_workflow_id()

    def invalidate(self, workflow_id: str | None = None) -> None:
        with self._write_lock:
            if workflow_id is None:
                self._graphs = {}
                self._live = {}
            else:
                self._graphs = {key: graph for key, graph in self._graphs.items() if key[0] != workflow_id}
                self._live = {key: value for key, value in self._live.items() if key != workflow_id}
        logger.info("graph-cache-invalidated workflow=%s", workflow_id or "*")

    def on_activation(self, workflow_id: str, version: int) -> None:
        # Activation drops everything; pinned versions reload lazily.
        logger.info("graph-cache-activation workflow=%s version=%s", workflow_id, version)
        self.invalidate()

    def _sync_activations(self) -> None:
        # Activations written by another process (CLI, another worker) never
        # reach our listener; the file token catches them on the next lookup.
        token = self.repository.activation_token()
        if token == self._activation_token:
            return
        with self._write_lock:
            if token == self._activation_token:
                return
            self._live = {}
            self._activation_token = token
        logger.info("graph-cache-live-reloaded token=%s", token)
