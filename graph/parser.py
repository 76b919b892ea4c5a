from __future__ import annotations

from typing import Any

from core.enums import ButtonType, IssueCategory, MessageType
from core.errors import GraphInvalidError
from core.models import (
    Button,
    ButtonTemplateContent,
    EdgeDefinition,
    GenericTemplateContent,
    ListTemplateContent,
    MediaContent,
    NodeContent,
    NodeDefinition,
    QuickRepliesContent,
    QuickReply,
    ReceiptItem,
    ReceiptSummary,
    ReceiptTemplateContent,
    TemplateElement,
    TextContent,
    UnsupportedContent,
    ValidationIssue,
    WorkflowGraph,
)

START_LABEL = "Start"
_EDITOR_ALIASES = {"start": MessageType.TEXT, "end": MessageType.TEXT}


def parse_graph(document: dict[str, Any]) -> WorkflowGraph:
    """Build a WorkflowGraph from an editor workflow document.

    Only a document that is not an object or has no id is rejected here;
    every other defect is recorded on the graph for the validator.
    """
    if not isinstance(document, dict):
        raise GraphInvalidError("", [_defect("malformed_document", "workflow document must be an object")])
    workflow_id = _as_str(document.get("id"))
    if not workflow_id:
        raise GraphInvalidError("", [_defect("missing_workflow_id", "workflow document has no id")])

    defects: list[ValidationIssue] = []
    nodes: dict[str, NodeDefinition] = {}
    for raw_node in _node_entries(document.get("nodes")):
        if not isinstance(raw_node, dict):
            defects.append(_defect("malformed_node", "node entry must be an object"))
            continue
        node_id = _as_str(raw_node.get("id"))
        if not node_id:
            defects.append(_defect("malformed_node", "node entry has no id"))
            continue
        if node_id in nodes:
            defects.append(_defect("duplicate_node_id", f"node id {node_id} is declared twice", node_id=node_id))
            continue
        nodes[node_id] = parse_node(node_id, raw_node)

    if not any(node.is_start for node in nodes.values()):
        for node_id, node in nodes.items():
            if node.label == START_LABEL:
                nodes[node_id] = NodeDefinition(
                    id=node.id,
                    label=node.label,
                    message_type=node.message_type,
                    content=node.content,
                    is_start=True,
                )
                break

    edges: list[EdgeDefinition] = []
    seen_edge_ids: set[str] = set()
    raw_edges = document.get("edges", [])
    for index, raw_edge in enumerate(raw_edges if isinstance(raw_edges, list) else []):
        if not isinstance(raw_edge, dict):
            defects.append(_defect("malformed_edge", f"edge #{index} must be an object"))
            continue
        edge = parse_edge(raw_edge, index)
        if edge.id in seen_edge_ids:
            defects.append(_defect("duplicate_edge_id", f"edge id {edge.id} is declared twice", edge_id=edge.id))
            continue
        seen_edge_ids.add(edge.id)
        edges.append(edge)

    return WorkflowGraph(
        id=workflow_id,
        version=_as_int(document.get("version"), default=1),
        nodes=nodes,
        edges=tuple(edges),
        name=_as_str(document.get("name")),
        defects=tuple(defects),
    )


def parse_node(node_id: str, raw: dict[str, Any]) -> NodeDefinition:
    data = raw.get("data", {})
    if not isinstance(data, dict):
        data = {}
    label = _as_str(data.get("label")) or _as_str(raw.get("label"))
    raw_type = _as_str(data.get("messageType")) or _as_str(raw.get("messageType")) or MessageType.TEXT.value
    is_start = bool(raw.get("isStart", data.get("isStart", False))) or raw_type == "start"

    message_type: MessageType | str
    if raw_type in _EDITOR_ALIASES:
        message_type = _EDITOR_ALIASES[raw_type]
    else:
        try:
            message_type = MessageType(raw_type)
        except ValueError:
            message_type = raw_type

    content = _parse_content(message_type, data)
    if raw_type in _EDITOR_ALIASES and isinstance(content, TextContent) and not content.text:
        # Editor start/end markers without a message speak their label.
        content = TextContent(text=label)

    return NodeDefinition(
        id=node_id,
        label=label,
        message_type=message_type,
        content=content,
        is_start=is_start,
    )


def parse_edge(raw: dict[str, Any], index: int) -> EdgeDefinition:
    data = raw.get("data", {})
    condition = raw.get("conditionPayload")
    if condition is None and isinstance(data, dict):
        condition = data.get("conditionPayload")
    condition_text = _as_str(condition)
    source = _as_str(raw.get("source"))
    target = _as_str(raw.get("target"))
    return EdgeDefinition(
        id=_as_str(raw.get("id")) or f"e{index}-{source}-{target}",
        source=source,
        target=target,
        condition_payload=condition_text or None,
    )


def _parse_content(message_type: MessageType | str, data: dict[str, Any]) -> NodeContent:
    text = _as_str(data.get("message"))
    if message_type == MessageType.TEXT:
        return TextContent(text=text)
    if message_type == MessageType.QUICK_REPLIES:
        return QuickRepliesContent(
            text=text,
            quick_replies=tuple(_parse_quick_reply(item) for item in _dict_items(data.get("quickReplies"))),
        )
    if message_type == MessageType.BUTTON_TEMPLATE:
        template = data.get("buttonTemplate")
        raw_buttons = template.get("buttons") if isinstance(template, dict) else None
        if raw_buttons is None:
            raw_buttons = data.get("buttons")
        return ButtonTemplateContent(
            text=text,
            buttons=tuple(_parse_button(item) for item in _dict_items(raw_buttons)),
        )
    if message_type in (MessageType.IMAGE, MessageType.VIDEO, MessageType.FILE):
        return MediaContent(
            url=_as_str(data.get("attachmentUrl")),
            is_reusable=bool(data.get("isReusable", False)),
        )
    if message_type == MessageType.GENERIC_TEMPLATE:
        return GenericTemplateContent(
            elements=tuple(_parse_element(item) for item in _dict_items(data.get("elements"))),
        )
    if message_type == MessageType.LIST_TEMPLATE:
        return ListTemplateContent(
            elements=tuple(_parse_element(item) for item in _dict_items(data.get("elements"))),
            buttons=tuple(_parse_button(item) for item in _dict_items(data.get("buttons"))),
            top_element_style=_as_str(data.get("topElementStyle")) or "compact",
        )
    if message_type == MessageType.RECEIPT_TEMPLATE:
        return ReceiptTemplateContent(
            recipient_name=_as_str(data.get("recipientName")),
            order_number=_as_str(data.get("orderNumber")),
            currency=_as_str(data.get("currency")),
            payment_method=_as_str(data.get("paymentMethod")),
            summary=_parse_summary(data.get("summary")),
            items=tuple(_parse_receipt_item(item) for item in _dict_items(data.get("elements"))),
        )
    return UnsupportedContent(raw_type=str(message_type), data=dict(data))


def _parse_quick_reply(raw: dict[str, Any]) -> QuickReply:
    return QuickReply(
        title=_as_str(raw.get("title")),
        payload=_as_str(raw.get("payload")),
        image_url=_as_str(raw.get("imageUrl")) or None,
    )


def _parse_button(raw: dict[str, Any]) -> Button:
    raw_type = _as_str(raw.get("type")) or ButtonType.POSTBACK.value
    try:
        button_type = ButtonType(raw_type)
    except ValueError:
        button_type = ButtonType.POSTBACK
    return Button(
        type=button_type,
        title=_as_str(raw.get("title")),
        payload=_as_str(raw.get("payload")) or None,
        url=_as_str(raw.get("url")) or None,
    )


def _parse_element(raw: dict[str, Any]) -> TemplateElement:
    return TemplateElement(
        title=_as_str(raw.get("title")),
        subtitle=_as_str(raw.get("subtitle")) or None,
        image_url=_as_str(raw.get("imageUrl")) or None,
        default_action_url=_as_str(raw.get("url")) or None,
        buttons=tuple(_parse_button(item) for item in _dict_items(raw.get("buttons"))),
    )


def _parse_receipt_item(raw: dict[str, Any]) -> ReceiptItem:
    quantity = raw.get("quantity")
    return ReceiptItem(
        title=_as_str(raw.get("title")),
        price=_as_float(raw.get("price")) or 0.0,
        quantity=_as_int(quantity, default=None) if quantity is not None else None,
        subtitle=_as_str(raw.get("subtitle")) or None,
        currency=_as_str(raw.get("currency")) or None,
        image_url=_as_str(raw.get("imageUrl")) or None,
    )


def _parse_summary(raw: Any) -> ReceiptSummary | None:
    if not isinstance(raw, dict):
        return None
    total_cost = _as_float(raw.get("totalCost"))
    if total_cost is None:
        return None
    return ReceiptSummary(
        total_cost=total_cost,
        subtotal=_as_float(raw.get("subtotal")),
        shipping_cost=_as_float(raw.get("shippingCost")),
        total_tax=_as_float(raw.get("totalTax")),
    )


def graph_to_document(graph: WorkflowGraph) -> dict[str, Any]:
    nodes: list[dict[str, Any]] = []
    for node in graph.nodes.values():
        message_type = node.message_type.value if isinstance(node.message_type, MessageType) else str(node.message_type)
        data: dict[str, Any] = {"label": node.label, "messageType": message_type}
        data.update(_content_to_data(node.content))
        entry: dict[str, Any] = {"id": node.id, "data": data}
        if node.is_start:
            entry["isStart"] = True
        nodes.append(entry)

    edges: list[dict[str, Any]] = []
    for edge in graph.edges:
        entry = {"id": edge.id, "source": edge.source, "target": edge.target}
        if edge.condition_payload is not None:
            entry["conditionPayload"] = edge.condition_payload
        edges.append(entry)

    return {"id": graph.id, "name": graph.name, "version": graph.version, "nodes": nodes, "edges": edges}


def _content_to_data(content: NodeContent) -> dict[str, Any]:
    if isinstance(content, TextContent):
        return {"message": content.text}
    if isinstance(content, QuickRepliesContent):
        return {
            "message": content.text,
            "quickReplies": [_drop_none({"title": q.title, "payload": q.payload, "imageUrl": q.image_url}) for q in content.quick_replies],
        }
    if isinstance(content, ButtonTemplateContent):
        return {"message": content.text, "buttons": [_button_to_data(b) for b in content.buttons]}
    if isinstance(content, MediaContent):
        return {"attachmentUrl": content.url, "isReusable": content.is_reusable}
    if isinstance(content, GenericTemplateContent):
        return {"elements": [_element_to_data(e) for e in content.elements]}
    if isinstance(content, ListTemplateContent):
        return {
            "elements": [_element_to_data(e) for e in content.elements],
            "buttons": [_button_to_data(b) for b in content.buttons],
            "topElementStyle": content.top_element_style,
        }
    if isinstance(content, ReceiptTemplateContent):
        data: dict[str, Any] = {
            "recipientName": content.recipient_name,
            "orderNumber": content.order_number,
            "currency": content.currency,
            "paymentMethod": content.payment_method,
            "elements": [
                _drop_none(
                    {
                        "title": item.title,
                        "price": item.price,
                        "quantity": item.quantity,
                        "subtitle": item.subtitle,
                        "currency": item.currency,
                        "imageUrl": item.image_url,
                    }
                )
                for item in content.items
            ],
        }
        if content.summary is not None:
            data["summary"] = _drop_none(
                {
                    "subtotal": content.summary.subtotal,
                    "shippingCost": content.summary.shipping_cost,
                    "totalTax": content.summary.total_tax,
                    "totalCost": content.summary.total_cost,
                }
            )
        return data
    return dict(content.data)


def _button_to_data(button: Button) -> dict[str, Any]:
    return _drop_none({"type": button.type.value, "title": button.title, "payload": button.payload, "url": button.url})


def _element_to_data(element: TemplateElement) -> dict[str, Any]:
    return _drop_none(
        {
            "title": element.title,
            "subtitle": element.subtitle,
            "imageUrl": element.image_url,
            "url": element.default_action_url,
            "buttons": [_button_to_data(b) for b in element.buttons],
        }
    )


def _node_entries(raw: Any) -> list[Any]:
    if isinstance(raw, list):
        return raw
    if isinstance(raw, dict):
        entries: list[Any] = []
        for node_id, value in raw.items():
            if isinstance(value, dict) and "id" not in value:
                value = {**value, "id": node_id}
            entries.append(value)
        return entries
    return []


def _dict_items(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, dict)]


def _drop_none(data: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in data.items() if value is not None}


def _defect(code: str, message: str, node_id: str | None = None, edge_id: str | None = None) -> ValidationIssue:
    return ValidationIssue(
        code=code,
        message=message,
        category=IssueCategory.STRUCTURAL,
        node_id=node_id,
        edge_id=edge_id,
    )


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _as_int(value: Any, default: int | None) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_float(value: Any) -> float | None:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
