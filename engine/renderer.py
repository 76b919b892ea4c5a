from __future__ import annotations

import logging
from typing import TypeVar

from core.enums import ButtonType, MessageType, PlatformLimit
from core.errors import RenderError
from core.models import (
    CONTENT_TYPES,
    ButtonTemplateContent,
    GenericTemplateContent,
    ListTemplateContent,
    MediaContent,
    MessageMetadata,
    NodeDefinition,
    OutboundMessage,
    QuickRepliesContent,
    ReceiptTemplateContent,
    RenderContext,
    TemplateElement,
    TextContent,
)
from messenger import templates

logger = logging.getLogger(__name__)

T = TypeVar("T")


def render(node: NodeDefinition, ctx: RenderContext | None = None) -> OutboundMessage:
    """Render a node into an outbound message. Pure: no I/O, no state.

    Over-limit element, button and quick-reply lists are clamped to the
    platform maxima and reported in `metadata.warnings`. Unknown types and
    content that cannot be delivered at all raise RenderError.
    """
    ctx = ctx or RenderContext()
    message_type = node.message_type
    if not isinstance(message_type, MessageType):
        raise RenderError(node.id, f"unsupported message type {message_type}")
    content = node.content
    if not isinstance(content, CONTENT_TYPES[message_type]):
        raise RenderError(node.id, f"content does not match message type {message_type.value}")

    metadata = MessageMetadata(
        node_id=node.id,
        node_type=message_type.value,
        triggered_by_payload=ctx.trigger_payload,
        triggered_by_title=ctx.trigger_title,
        from_node_id=ctx.from_node_id,
    )
    message = OutboundMessage(message_type=message_type.value, metadata=metadata)

    if isinstance(content, TextContent):
        if not content.text:
            raise RenderError(node.id, "text message is empty")
        message.text = content.text

    elif isinstance(content, QuickRepliesContent):
        if not content.text:
            raise RenderError(node.id, "quick replies need prompt text")
        replies = _clamp(node, metadata, "quick replies", list(content.quick_replies), PlatformLimit.MAX_QUICK_REPLIES)
        if not replies:
            raise RenderError(node.id, "quick replies node has no replies")
        message.text = content.text
        message.quick_replies = [templates.quick_reply(reply) for reply in replies]

    elif isinstance(content, ButtonTemplateContent):
        if not content.text:
            raise RenderError(node.id, "button template needs text")
        buttons = _clamp(node, metadata, "buttons", list(content.buttons), PlatformLimit.MAX_TEMPLATE_BUTTONS)
        if not buttons:
            raise RenderError(node.id, "button template has no buttons")
        message.attachment = templates.button_template(content.text, buttons)
        message.buttons = [templates.button(b) for b in buttons if b.type == ButtonType.POSTBACK]

    elif isinstance(content, MediaContent):
        if not content.url:
            raise RenderError(node.id, f"{message_type.value} node has no attachment url")
        message.attachment = templates.media_attachment(message_type.value, content.url, content.is_reusable)

    elif isinstance(content, GenericTemplateContent):
        elements = _clamp(node, metadata, "elements", list(content.elements), PlatformLimit.MAX_GENERIC_ELEMENTS)
        if not elements:
            raise RenderError(node.id, "generic template has no elements")
        message.attachment = templates.generic_template(_clamp_element_buttons(node, metadata, elements))

    elif isinstance(content, ListTemplateContent):
        if len(content.elements) < PlatformLimit.MIN_LIST_ELEMENTS:
            raise RenderError(node.id, f"list template needs at least {PlatformLimit.MIN_LIST_ELEMENTS} elements")
        elements = _clamp(node, metadata, "elements", list(content.elements), PlatformLimit.MAX_LIST_ELEMENTS)
        buttons = _clamp(node, metadata, "list buttons", list(content.buttons), PlatformLimit.MAX_LIST_BUTTONS)
        message.attachment = templates.list_template(
            _clamp_element_buttons(node, metadata, elements),
            buttons,
            content.top_element_style,
        )

    elif isinstance(content, ReceiptTemplateContent):
        if content.summary is None or not content.recipient_name or not content.order_number or not content.currency:
            raise RenderError(node.id, "receipt is incomplete")
        message.attachment = templates.receipt_template(
            recipient_name=content.recipient_name,
            order_number=content.order_number,
            currency=content.currency,
            payment_method=content.payment_method,
            summary=content.summary,
            items=list(content.items),
        )

    else:
        raise RenderError(node.id, f"no renderer for {type(content).__name__}")

    return message


def _clamp(node: NodeDefinition, metadata: MessageMetadata, what: str, items: list[T], limit: int) -> list[T]:
    if len(items) <= limit:
        return items
    warning = f"{what} clamped from {len(items)} to {limit}"
    metadata.warnings.append(warning)
    logger.warning("render-clamped node=%s %s", node.id, warning)
    return items[:limit]


def _clamp_element_buttons(
    node: NodeDefinition,
    metadata: MessageMetadata,
    elements: list[TemplateElement],
) -> list[TemplateElement]:
    output: list[TemplateElement] = []
    for item in elements:
        buttons = _clamp(node, metadata, f"buttons of element {item.title}", list(item.buttons), PlatformLimit.MAX_ELEMENT_BUTTONS)
        if len(buttons) == len(item.buttons):
            output.append(item)
            continue
        output.append(
            TemplateElement(
                title=item.title,
                subtitle=item.subtitle,
                image_url=item.image_url,
                default_action_url=item.default_action_url,
                buttons=tuple(buttons),
            )
        )
    return output
