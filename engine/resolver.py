from __future__ import annotations

from core.enums import ButtonType, MessageType
from core.models import (
    GenericTemplateContent,
    InboundEvent,
    ListTemplateContent,
    NodeDefinition,
    TransitionResult,
    WorkflowGraph,
)

NO_MATCH = TransitionResult(next_node_id=None, terminal=False, matched=False)
TERMINAL = TransitionResult(next_node_id=None, terminal=True, matched=True)


def expects_structured_reply(node: NodeDefinition) -> bool:
    """True when only a button or quick-reply payload can answer the node."""
    if node.message_type in (MessageType.QUICK_REPLIES, MessageType.BUTTON_TEMPLATE):
        return True
    content = node.content
    if isinstance(content, ListTemplateContent):
        buttons = list(content.buttons)
        for element in content.elements:
            buttons.extend(element.buttons)
        return any(b.type == ButtonType.POSTBACK for b in buttons)
    if isinstance(content, GenericTemplateContent):
        return any(b.type == ButtonType.POSTBACK for element in content.elements for b in element.buttons)
    return False


def resolve_transition(graph: WorkflowGraph, node: NodeDefinition, event: InboundEvent) -> TransitionResult:
    """Pick the edge out of `node` that `event` follows.

    Edges are scanned in declaration order. A payload matches the first
    edge with an equal condition, otherwise the node's default edge.
    Free text never answers a structured-choice node; on other nodes it
    follows the default edge, and without one the node is terminal.
    """
    edges = graph.outgoing_edges(node.id)
    if not edges:
        return TERMINAL

    default_edge = next((edge for edge in edges if edge.is_default), None)
    payload = event.payload

    if payload is not None:
        for edge in edges:
            if edge.condition_payload is not None and edge.condition_payload == payload:
                return TransitionResult(next_node_id=edge.target, terminal=False, matched=True, edge_id=edge.id)
        if default_edge is not None:
            return TransitionResult(next_node_id=default_edge.target, terminal=False, matched=True, edge_id=default_edge.id)
        return NO_MATCH

    if expects_structured_reply(node):
        return NO_MATCH
    if default_edge is not None:
        return TransitionResult(next_node_id=default_edge.target, terminal=False, matched=True, edge_id=default_edge.id)
    return TERMINAL
