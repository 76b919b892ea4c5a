from __future__ import annotations

from enum import Enum


class MessageType(str, Enum):
    TEXT = "text"
    QUICK_REPLIES = "quick_replies"
    BUTTON_TEMPLATE = "button_template"
    IMAGE = "image"
    VIDEO = "video"
    FILE = "file"
    GENERIC_TEMPLATE = "generic_template"
    LIST_TEMPLATE = "list_template"
    RECEIPT_TEMPLATE = "receipt_template"


class ButtonType(str, Enum):
    POSTBACK = "postback"
    WEB_URL = "web_url"
    PHONE_NUMBER = "phone_number"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"


class IssueCategory(str, Enum):
    STRUCTURAL = "structural"
    CONTENT = "content"


class PlatformLimit:
    MAX_QUICK_REPLIES = 13
    MAX_TEMPLATE_BUTTONS = 3
    MAX_GENERIC_ELEMENTS = 10
    MIN_LIST_ELEMENTS = 2
    MAX_LIST_ELEMENTS = 4
    MAX_ELEMENT_BUTTONS = 3
    MAX_LIST_BUTTONS = 1
