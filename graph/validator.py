from __future__ import annotations

from core.enums import ButtonType, IssueCategory, MessageType, PlatformLimit
from core.models import (
    CONTENT_TYPES,
    Button,
    ButtonTemplateContent,
    GenericTemplateContent,
    ListTemplateContent,
    MediaContent,
    NodeDefinition,
    QuickRepliesContent,
    ReceiptTemplateContent,
    TemplateElement,
    TextContent,
    UnsupportedContent,
    ValidationIssue,
    ValidationResult,
    WorkflowGraph,
)


def validate_graph(graph: WorkflowGraph, include_content: bool = True) -> ValidationResult:
    """Collect every invariant violation of `graph`; never mutates it.

    Structural checks cover the node/edge topology the engine walks.
    Content checks cover per-node payloads and platform limits; they
    gate activation, while the renderer handles them leniently at runtime.
    """
    issues: list[ValidationIssue] = list(graph.defects)
    issues.extend(_structural_issues(graph))
    if include_content:
        for node in graph.nodes.values():
            issues.extend(validate_node_content(node))
    return ValidationResult(workflow_id=graph.id, version=graph.version, issues=issues)


def _structural_issues(graph: WorkflowGraph) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    if not graph.nodes:
        issues.append(_structural("empty_graph", "workflow has no nodes"))
        return issues

    start_nodes = [node.id for node in graph.nodes.values() if node.is_start]
    if not start_nodes:
        issues.append(_structural("missing_start_node", "no node is flagged as start"))
    for node_id in start_nodes[1:]:
        issues.append(_structural("multiple_start_nodes", f"node {node_id} is an additional start node", node_id=node_id))

    default_edge_by_source: dict[str, str] = {}
    condition_edges: dict[tuple[str, str], str] = {}
    for edge in graph.edges:
        if edge.source not in graph.nodes:
            issues.append(
                _structural("dangling_edge_source", f"edge source {edge.source or '-'} does not exist", edge_id=edge.id)
            )
        if edge.target not in graph.nodes:
            issues.append(
                _structural("dangling_edge_target", f"edge target {edge.target or '-'} does not exist", edge_id=edge.id)
            )

        if edge.condition_payload is None:
            first = default_edge_by_source.get(edge.source)
            if first is not None:
                issues.append(
                    _structural(
                        "multiple_default_edges",
                        f"node {edge.source} already has default edge {first}",
                        node_id=edge.source,
                        edge_id=edge.id,
                    )
                )
            else:
                default_edge_by_source[edge.source] = edge.id
            continue

        key = (edge.source, edge.condition_payload)
        first = condition_edges.get(key)
        if first is not None:
            issues.append(
                _structural(
                    "duplicate_condition_payload",
                    f"payload {edge.condition_payload} on node {edge.source} is already handled by edge {first}",
                    node_id=edge.source,
                    edge_id=edge.id,
                )
            )
        else:
            condition_edges[key] = edge.id
    return issues


def validate_node_content(node: NodeDefinition) -> list[ValidationIssue]:
    content = node.content
    if isinstance(content, UnsupportedContent) or not isinstance(node.message_type, MessageType):
        return [_content("unknown_message_type", f"message type {node.message_type} is not supported", node.id)]
    if not isinstance(content, CONTENT_TYPES[node.message_type]):
        return [_content("content_type_mismatch", f"content does not match message type {node.message_type.value}", node.id)]

    issues: list[ValidationIssue] = []
    if isinstance(content, TextContent):
        if not content.text:
            issues.append(_content("missing_text", "text message is empty", node.id))
    elif isinstance(content, QuickRepliesContent):
        if not content.text:
            issues.append(_content("missing_text", "quick replies need prompt text", node.id))
        if len(content.quick_replies) > PlatformLimit.MAX_QUICK_REPLIES:
            issues.append(
                _content(
                    "too_many_quick_replies",
                    f"{len(content.quick_replies)} quick replies exceed {PlatformLimit.MAX_QUICK_REPLIES}",
                    node.id,
                )
            )
        for index, reply in enumerate(content.quick_replies):
            if not reply.title or not reply.payload:
                issues.append(_content("invalid_quick_reply", f"quick reply #{index} needs title and payload", node.id))
    elif isinstance(content, ButtonTemplateContent):
        if not content.text:
            issues.append(_content("missing_text", "button template needs text", node.id))
        if not content.buttons:
            issues.append(_content("too_few_buttons", "button template has no buttons", node.id))
        issues.extend(_button_issues(node.id, content.buttons, PlatformLimit.MAX_TEMPLATE_BUTTONS))
    elif isinstance(content, MediaContent):
        if not content.url:
            issues.append(_content("missing_media_url", f"{node.message_type.value} node has no attachment url", node.id))
    elif isinstance(content, GenericTemplateContent):
        if not content.elements:
            issues.append(_content("too_few_elements", "generic template has no elements", node.id))
        if len(content.elements) > PlatformLimit.MAX_GENERIC_ELEMENTS:
            issues.append(
                _content(
                    "too_many_elements",
                    f"{len(content.elements)} elements exceed {PlatformLimit.MAX_GENERIC_ELEMENTS}",
                    node.id,
                )
            )
        issues.extend(_element_issues(node.id, content.elements))
    elif isinstance(content, ListTemplateContent):
        count = len(content.elements)
        if count < PlatformLimit.MIN_LIST_ELEMENTS or count > PlatformLimit.MAX_LIST_ELEMENTS:
            issues.append(
                _content(
                    "list_element_count",
                    f"list template needs {PlatformLimit.MIN_LIST_ELEMENTS}-{PlatformLimit.MAX_LIST_ELEMENTS} elements, got {count}",
                    node.id,
                )
            )
        issues.extend(_element_issues(node.id, content.elements))
        issues.extend(_button_issues(node.id, content.buttons, PlatformLimit.MAX_LIST_BUTTONS))
    elif isinstance(content, ReceiptTemplateContent):
        missing = [
            name
            for name, value in (
                ("recipientName", content.recipient_name),
                ("orderNumber", content.order_number),
                ("currency", content.currency),
                ("paymentMethod", content.payment_method),
            )
            if not value
        ]
        if content.summary is None:
            missing.append("summary.totalCost")
        if missing:
            issues.append(_content("incomplete_receipt", f"receipt is missing {', '.join(missing)}", node.id))
    return issues


def _element_issues(node_id: str, elements: tuple[TemplateElement, ...]) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    for index, element in enumerate(elements):
        if not element.title:
            issues.append(_content("missing_element_title", f"element #{index} has no title", node_id))
        issues.extend(_button_issues(node_id, element.buttons, PlatformLimit.MAX_ELEMENT_BUTTONS))
    return issues


def _button_issues(node_id: str, buttons: tuple[Button, ...], limit: int) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    if len(buttons) > limit:
        issues.append(_content("too_many_buttons", f"{len(buttons)} buttons exceed {limit}", node_id))
    for index, button in enumerate(buttons):
        if not button.title:
            issues.append(_content("invalid_button", f"button #{index} has no title", node_id))
        elif button.type == ButtonType.WEB_URL and not button.url:
            issues.append(_content("invalid_button", f"button {button.title} needs a url", node_id))
        elif button.type in (ButtonType.POSTBACK, ButtonType.PHONE_NUMBER) and not button.payload:
            issues.append(_content("invalid_button", f"button {button.title} needs a payload", node_id))
    return issues


def _structural(code: str, message: str, node_id: str | None = None, edge_id: str | None = None) -> ValidationIssue:
    return ValidationIssue(code=code, message=message, category=IssueCategory.STRUCTURAL, node_id=node_id, edge_id=edge_id)


def _content(code: str, message: str, node_id: str) -> ValidationIssue:
    return ValidationIssue(code=code, message=message, category=IssueCategory.CONTENT, node_id=node_id)
