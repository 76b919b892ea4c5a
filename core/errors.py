from __future__ import annotations

from typing import Any


class ChatflowError(RuntimeError):
    """Base class for failures that abort a conversation turn."""

    retryable = False


class GraphNotFoundError(ChatflowError):
    def __init__(self, workflow_id: str, version: int | None = None) -> None:
        self.workflow_id = workflow_id
        self.version = version
        target = workflow_id if version is None else f"{workflow_id}@v{version}"
        super().__init__(f"workflow graph not found: {target}")


class GraphInvalidError(ChatflowError):
    def __init__(self, workflow_id: str, issues: list[Any]) -> None:
        self.workflow_id = workflow_id
        self.issues = list(issues)
        codes = ", ".join(sorted({str(getattr(issue, "code", issue)) for issue in self.issues}))
        super().__init__(f"workflow graph is invalid: {workflow_id} issues={len(self.issues)} codes=[{codes}]")


class RenderError(ChatflowError):
    def __init__(self, node_id: str, reason: str) -> None:
        self.node_id = node_id
        self.reason = reason
        super().__init__(f"cannot render node {node_id}: {reason}")


class StoreUnavailableError(ChatflowError):
    retryable = True


class SessionConflictError(ChatflowError):
    """Another writer saved the session between our load and save."""

    retryable = True


class TurnTimeoutError(ChatflowError, TimeoutError):
    retryable = True
