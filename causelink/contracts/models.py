from __future__ import annotations

from typing import List

from pydantic import BaseModel, ConfigDict, Field

from .enums import PartCategory, RequestStatus


class Action(BaseModel):
    """
    One cause: a moment a sensitive field was touched or a wrapped handler ran.
    Immutable once created.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    action_id: str = Field(alias="actionId", min_length=1, max_length=128)
    type: str = Field(min_length=1, max_length=64, description="value-read | listener:<event> | form-submit")
    data: str = Field(default="", max_length=2048, description="element descriptor, e.g. id=username")


class ResourcePart(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1, max_length=128)
    category: PartCategory
    actions: List[Action] = Field(default_factory=list)


class Request(BaseModel):
    """
    One observed network operation.

    ``status`` starts unresolved (-1) and moves exactly once to a transport
    status code or to the blocked sentinel (-999).
    """
    model_config = ConfigDict(populate_by_name=True)

    action_id: str = Field(alias="actionId", min_length=1, max_length=128)
    url: str
    request_source: str = Field(alias="requestSource", default="other")
    method: str = "GET"
    status: int = RequestStatus.UNRESOLVED.value

    @property
    def is_resolved(self) -> bool:
        return self.status != RequestStatus.UNRESOLVED.value

    @property
    def is_blocked(self) -> bool:
        return self.status == RequestStatus.BLOCKED.value

    def resolve(self, status: int) -> bool:
        """Apply the terminal status. Returns False if the record was already terminal."""
        if self.is_resolved:
            return False
        self.status = int(status)
        return True


class ExtraPage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str
    parts: List[ResourcePart] = Field(default_factory=list)
    requests: List[Request] = Field(default_factory=list)


class ScanRun(BaseModel):
    """Canonical result shape consumed by report tooling."""
    model_config = ConfigDict(populate_by_name=True)

    parts: List[ResourcePart] = Field(default_factory=list)
    requests: List[Request] = Field(default_factory=list)
    extra_pages: List[ExtraPage] = Field(alias="extraPages", default_factory=list)

    def to_document(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class LinkageStats(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    linked: int = Field(ge=0)
    unlinked: int = Field(ge=0)
    total_actions: int = Field(alias="totalActions", ge=0)
    linkage_rate: float = Field(alias="linkageRate", ge=0.0, le=100.0)
    unlinked_sample: List[Request] = Field(alias="unlinkedSample", default_factory=list, max_length=5)
