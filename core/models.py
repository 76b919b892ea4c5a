from __future__ import annotations

from dataclasses import asdict, dataclass, field, is_dataclass
from enum import Enum
from typing import Any, Mapping, Optional, Union

from core.enums import ButtonType, IssueCategory, MessageType


def _serialize(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value):
        return {k: _serialize(v) for k, v in asdict(value).items()}
    if isinstance(value, tuple):
        return [_serialize(v) for v in value]
    if isinstance(value, list):
        return [_serialize(v) for v in value]
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    return value


# Node content building blocks


@dataclass(frozen=True, slots=True)
class Button:
    type: ButtonType
    title: str
    payload: Optional[str] = None
    url: Optional[str] = None


@dataclass(frozen=True, slots=True)
class QuickReply:
    title: str
    payload: str
    image_url: Optional[str] = None


@dataclass(frozen=True, slots=True)
class TemplateElement:
    title: str
    subtitle: Optional[str] = None
    image_url: Optional[str] = None
    default_action_url: Optional[str] = None
    buttons: tuple[Button, ...] = ()


@dataclass(frozen=True, slots=True)
class ReceiptItem:
    title: str
    price: float
    quantity: Optional[int] = None
    subtitle: Optional[str] = None
    currency: Optional[str] = None
    image_url: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ReceiptSummary:
    total_cost: float
    subtotal: Optional[float] = None
    shipping_cost: Optional[float] = None
    total_tax: Optional[float] = None


# Node content variants, one per message type


@dataclass(frozen=True, slots=True)
class TextContent:
    text: str


@dataclass(frozen=True, slots=True)
class QuickRepliesContent:
    text: str
    quick_replies: tuple[QuickReply, ...]


@dataclass(frozen=True, slots=True)
class ButtonTemplateContent:
    text: str
    buttons: tuple[Button, ...]


@dataclass(frozen=True, slots=True)
class MediaContent:
    url: str
    is_reusable: bool = False


@dataclass(frozen=True, slots=True)
class GenericTemplateContent:
    elements: tuple[TemplateElement, ...]


@dataclass(frozen=True, slots=True)
class ListTemplateContent:
    elements: tuple[TemplateElement, ...]
    buttons: tuple[Button, ...] = ()
    top_element_style: str = "compact"


@dataclass(frozen=True, slots=True)
class ReceiptTemplateContent:
    recipient_name: str
    order_number: str
    currency: str
    payment_method: str
    summary: Optional[ReceiptSummary]
    items: tuple[ReceiptItem, ...] = ()


@dataclass(frozen=True, slots=True)
class UnsupportedContent:
    raw_type: str
    data: dict[str, Any] = field(default_factory=dict)


NodeContent = Union[
    TextContent,
    QuickRepliesContent,
    ButtonTemplateContent,
    MediaContent,
    GenericTemplateContent,
    ListTemplateContent,
    ReceiptTemplateContent,
    UnsupportedContent,
]

CONTENT_TYPES: dict[MessageType, tuple[type, ...]] = {
    MessageType.TEXT: (TextContent,),
    MessageType.QUICK_REPLIES: (QuickRepliesContent,),
    MessageType.BUTTON_TEMPLATE: (ButtonTemplateContent,),
    MessageType.IMAGE: (MediaContent,),
    MessageType.VIDEO: (MediaContent,),
    MessageType.FILE: (MediaContent,),
    MessageType.GENERIC_TEMPLATE: (GenericTemplateContent,),
    MessageType.LIST_TEMPLATE: (ListTemplateContent,),
    MessageType.RECEIPT_TEMPLATE: (ReceiptTemplateContent,),
}


# Graph


@dataclass(frozen=True, slots=True)
class NodeDefinition:
    id: str
    label: str
    message_type: Union[MessageType, str]
    content: NodeContent
    is_start: bool = False


@dataclass(frozen=True, slots=True)
class EdgeDefinition:
    id: str
    source: str
    target: str
    condition_payload: Optional[str] = None

    @property
    def is_default(self) -> bool:
        return self.condition_payload is None


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    code: str
    message: str
    category: IssueCategory
    node_id: Optional[str] = None
    edge_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return _serialize(self)


@dataclass(frozen=True, slots=True)
class WorkflowGraph:
    """One immutable published version of a workflow.

    `edges` keeps declaration order; the transition resolver relies on it
    as the tie-break. `defects` carries problems found while parsing the
    authoring document (duplicate ids, malformed entries) so that
    validation can report them alongside everything else.
    """

    id: str
    version: int
    nodes: Mapping[str, NodeDefinition]
    edges: tuple[EdgeDefinition, ...]
    name: str = ""
    defects: tuple[ValidationIssue, ...] = ()

    def node(self, node_id: str | None) -> NodeDefinition | None:
        if node_id is None:
            return None
        return self.nodes.get(node_id)

    def start_node(self) -> NodeDefinition | None:
        for node in self.nodes.values():
            if node.is_start:
                return node
        return None

    def outgoing_edges(self, node_id: str) -> list[EdgeDefinition]:
        return [edge for edge in self.edges if edge.source == node_id]

    def is_terminal(self, node_id: str) -> bool:
        return not any(edge.source == node_id for edge in self.edges)


@dataclass(slots=True)
class ValidationResult:
    workflow_id: str
    version: int
    issues: list[ValidationIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues

    @property
    def structural_issues(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.category == IssueCategory.STRUCTURAL]

    @property
    def content_issues(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.category == IssueCategory.CONTENT]

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflowId": self.workflow_id,
            "version": self.version,
            "ok": self.ok,
            "issues": [issue.to_dict() for issue in self.issues],
        }


# Engine input / output


@dataclass(frozen=True, slots=True)
class InboundEvent:
    channel_user_id: str
    workflow_id: Optional[str] = None
    raw: str = ""
    trigger_payload: Optional[str] = None
    trigger_title: Optional[str] = None

    @property
    def payload(self) -> str | None:
        # An empty payload never satisfies an edge condition.
        text = (self.trigger_payload or "").strip()
        return text or None


@dataclass(frozen=True, slots=True)
class RenderContext:
    trigger_title: Optional[str] = None
    trigger_payload: Optional[str] = None
    from_node_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class TransitionResult:
    next_node_id: Optional[str]
    terminal: bool
    matched: bool
    edge_id: Optional[str] = None


@dataclass(slots=True)
class MessageMetadata:
    node_id: str
    node_type: str
    triggered_by_payload: Optional[str] = None
    triggered_by_title: Optional[str] = None
    from_node_id: Optional[str] = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        output: dict[str, Any] = {"nodeId": self.node_id, "nodeType": self.node_type}
        if self.triggered_by_payload is not None:
            output["triggeredByPayload"] = self.triggered_by_payload
        if self.triggered_by_title is not None:
            output["triggeredByTitle"] = self.triggered_by_title
        if self.from_node_id is not None:
            output["fromNodeId"] = self.from_node_id
        if self.warnings:
            output["warnings"] = list(self.warnings)
        return output

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MessageMetadata":
        warnings = data.get("warnings", [])
        return cls(
            node_id=str(data.get("nodeId", "")),
            node_type=str(data.get("nodeType", "")),
            triggered_by_payload=data.get("triggeredByPayload"),
            triggered_by_title=data.get("triggeredByTitle"),
            from_node_id=data.get("fromNodeId"),
            warnings=[str(item) for item in warnings] if isinstance(warnings, list) else [],
        )


@dataclass(slots=True)
class OutboundMessage:
    """Fully rendered bot message in messaging-platform shape.

    `attachment`, `quick_replies` and `buttons` hold plain JSON-ready
    structures so that `to_dict` / `from_dict` are lossless.
    """

    message_type: str
    metadata: MessageMetadata
    text: Optional[str] = None
    attachment: Optional[dict[str, Any]] = None
    quick_replies: Optional[list[dict[str, Any]]] = None
    buttons: Optional[list[dict[str, Any]]] = None

    def to_dict(self) -> dict[str, Any]:
        output: dict[str, Any] = {"messageType": self.message_type}
        if self.text is not None:
            output["text"] = self.text
        if self.attachment is not None:
            output["attachment"] = _serialize(self.attachment)
        if self.quick_replies is not None:
            output["quick_replies"] = _serialize(self.quick_replies)
        if self.buttons is not None:
            output["buttons"] = _serialize(self.buttons)
        output["metadata"] = self.metadata.to_dict()
        return output

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OutboundMessage":
        metadata = data.get("metadata", {})
        return cls(
            message_type=str(data.get("messageType", "")),
            metadata=MessageMetadata.from_dict(metadata if isinstance(metadata, dict) else {}),
            text=data.get("text"),
            attachment=data.get("attachment"),
            quick_replies=data.get("quick_replies"),
            buttons=data.get("buttons"),
        )
