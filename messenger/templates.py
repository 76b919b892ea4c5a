from __future__ import annotations

from typing import Any

from core.enums import ButtonType
from core.models import Button, QuickReply, ReceiptItem, ReceiptSummary, TemplateElement


def button(item: Button) -> dict[str, Any]:
    output: dict[str, Any] = {"type": item.type.value, "title": item.title}
    if item.type == ButtonType.WEB_URL:
        output["url"] = item.url or ""
    else:
        output["payload"] = item.payload or ""
    return output


def quick_reply(item: QuickReply) -> dict[str, Any]:
    output: dict[str, Any] = {
        "content_type": "text",
        "title": item.title,
        "payload": item.payload,
    }
    if item.image_url:
        output["image_url"] = item.image_url
    return output


def element(item: TemplateElement) -> dict[str, Any]:
    output: dict[str, Any] = {"title": item.title}
    if item.subtitle:
        output["subtitle"] = item.subtitle
    if item.image_url:
        output["image_url"] = item.image_url
    if item.default_action_url:
        output["default_action"] = {"type": "web_url", "url": item.default_action_url}
    if item.buttons:
        output["buttons"] = [button(b) for b in item.buttons]
    return output


def media_attachment(media_type: str, url: str, is_reusable: bool = False) -> dict[str, Any]:
    return {"type": media_type, "payload": {"url": url, "is_reusable": is_reusable}}


def button_template(text: str, buttons: list[Button]) -> dict[str, Any]:
    return {
        "type": "template",
        "payload": {
            "template_type": "button",
            "text": text,
            "buttons": [button(b) for b in buttons],
        },
    }


def generic_template(elements: list[TemplateElement]) -> dict[str, Any]:
    return {
        "type": "template",
        "payload": {
            "template_type": "generic",
            "elements": [element(e) for e in elements],
        },
    }


def list_template(elements: list[TemplateElement], buttons: list[Button], top_element_style: str) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "template_type": "list",
        "top_element_style": top_element_style,
        "elements": [element(e) for e in elements],
    }
    if buttons:
        payload["buttons"] = [button(b) for b in buttons]
    return {"type": "template", "payload": payload}


def receipt_template(
    recipient_name: str,
    order_number: str,
    currency: str,
    payment_method: str,
    summary: ReceiptSummary,
    items: list[ReceiptItem],
) -> dict[str, Any]:
    summary_payload: dict[str, Any] = {"total_cost": summary.total_cost}
    if summary.subtotal is not None:
        summary_payload["subtotal"] = summary.subtotal
    if summary.shipping_cost is not None:
        summary_payload["shipping_cost"] = summary.shipping_cost
    if summary.total_tax is not None:
        summary_payload["total_tax"] = summary.total_tax

    payload: dict[str, Any] = {
        "template_type": "receipt",
        "recipient_name": recipient_name,
        "order_number": order_number,
        "currency": currency,
        "payment_method": payment_method,
        "summary": summary_payload,
    }
    if items:
        payload["elements"] = [_receipt_item(item, currency) for item in items]
    return {"type": "template", "payload": payload}


def _receipt_item(item: ReceiptItem, currency: str) -> dict[str, Any]:
    output: dict[str, Any] = {"title": item.title, "price": item.price, "currency": item.currency or currency}
    if item.quantity is not None:
        output["quantity"] = item.quantity
    if item.subtitle:
        output["subtitle"] = item.subtitle
    if item.image_url:
        output["image_url"] = item.image_url
    return output