from __future__ import annotations

from dataclasses import dataclass

from .enums import FIELD_ELEMENTS, ElementKind


@dataclass(frozen=True)
class ElementRef:
    """
    What the interception layer needs to know about an element: its kind and
    enough identity to describe it in an Action.

    `index` is the position among elements with the same tag in the document.
    """
    kind: ElementKind
    tag: str
    index: int = 0
    id: str = ""
    name: str = ""

    @property
    def is_field(self) -> bool:
        return self.kind in FIELD_ELEMENTS

    @property
    def is_form(self) -> bool:
        return self.kind is ElementKind.FORM

    def describe(self) -> str:
        if self.id:
            return f"id={self.id}"
        if self.name:
            return f"name={self.name}"
        return f"element={self.tag.lower()}[{self.index}]"
