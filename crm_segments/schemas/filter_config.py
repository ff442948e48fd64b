"""
Persisted per-event filter configuration.

One document per event holding the manual table filters and the AI filter
state. ``manual`` and ``ai`` are independent top-level keys: writing one never
clobbers the other.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator
from typing import Optional, Any, Union


class MinimalFilter(BaseModel):
    """A manual filter stripped to the fields that survive UI schema drift."""
    model_config = {"frozen": True}

    label: str = ""
    operation: Optional[str] = None
    value: Any = None

    @field_validator("label", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> str:
        return "" if v is None else str(v)


class ManualFilterState(BaseModel):
    model_config = {"frozen": True}

    search: str = ""
    filters: list[MinimalFilter] = Field(default_factory=list)

    @field_validator("search", mode="before")
    @classmethod
    def coerce_search(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("filters", mode="before")
    @classmethod
    def coerce_filters(cls, v: Any) -> list:
        return v if isinstance(v, list) else []


class AiFilterState(BaseModel):
    """
    AI half of the document.

    ``ast`` holds the root AST document as JSON. The explicitly-cleared shape
    (see ``EMPTY_AI``) is how a reload tells "cleared" apart from "never set".
    """
    model_config = {"populate_by_name": True, "frozen": True}

    enabled: bool = False
    saved_segment_id: Optional[str] = Field(None, alias="savedSegmentId")
    ast: Optional[Union[dict[str, Any], list[Any]]] = None
    title: str = ""

    @field_validator("title", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> str:
        return v or ""

    @field_validator("ast", mode="before")
    @classmethod
    def unusable_to_none(cls, v: Any) -> Any:
        # legacy documents stored a bare list of conditions
        return v if isinstance(v, (dict, list)) else None


EMPTY_AI = AiFilterState(enabled=False, saved_segment_id=None, ast=None, title="")


class PersistedFilterConfig(BaseModel):
    model_config = {"populate_by_name": True, "frozen": True}

    manual: ManualFilterState = Field(default_factory=ManualFilterState)
    ai: AiFilterState = Field(default_factory=AiFilterState)

    @field_validator("manual", "ai", mode="before")
    @classmethod
    def none_to_default(cls, v: Any) -> Any:
        return {} if v is None else v

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")
