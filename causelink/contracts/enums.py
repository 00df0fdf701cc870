from __future__ import annotations

from enum import Enum


class PartCategory(str, Enum):
    DOCUMENT = "document"
    SCRIPT = "script"
    STYLESHEET = "stylesheet"
    IMAGE = "image"
    FONT = "font"
    OTHER = "other"


class ElementKind(str, Enum):
    INPUT = "input"
    TEXTAREA = "textarea"
    SELECT = "select"
    FORM = "form"
    OTHER = "other"


class EventKind(str, Enum):
    CHANGE = "change"
    INPUT = "input"
    KEYDOWN = "keydown"
    KEYUP = "keyup"
    SUBMIT = "submit"


class RequestStatus(int, Enum):
    """Sentinel status values. Anything else is a transport status code."""
    UNRESOLVED = -1
    BLOCKED = -999


# Transport resource types (browser vocabulary) mapped onto part categories.
RESOURCE_TYPE_CATEGORIES = {
    "document": PartCategory.DOCUMENT,
    "script": PartCategory.SCRIPT,
    "stylesheet": PartCategory.STYLESHEET,
    "image": PartCategory.IMAGE,
    "font": PartCategory.FONT,
    "fetch": PartCategory.OTHER,
    "xhr": PartCategory.OTHER,
    "websocket": PartCategory.OTHER,
    "manifest": PartCategory.OTHER,
    "media": PartCategory.OTHER,
    "texttrack": PartCategory.OTHER,
    "eventsource": PartCategory.OTHER,
    "other": PartCategory.OTHER,
}


def category_for(resource_type: str) -> PartCategory:
    return RESOURCE_TYPE_CATEGORIES.get((resource_type or "").lower(), PartCategory.OTHER)


FIELD_ELEMENTS = frozenset({ElementKind.INPUT, ElementKind.TEXTAREA, ElementKind.SELECT})
FIELD_EVENTS = frozenset({EventKind.CHANGE, EventKind.INPUT, EventKind.KEYDOWN, EventKind.KEYUP})
FORM_EVENTS = frozenset({EventKind.SUBMIT})
