"""
Saved segment and segment execution schemas.

Wire format follows the CRM backend (camelCase); Python attributes are
snake_case and models accept either on input.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_serializer, field_validator
from datetime import datetime
from typing import Optional, Literal, Any

from crm_segments.schemas.filter_ast import SegmentRoot


class SegmentPagination(BaseModel):
    """Page/size/sort tuple, used both for requests and result metadata."""
    model_config = {"populate_by_name": True, "frozen": True}

    page: int = 1
    size: int = 25
    order_by: str = Field("createdAt", alias="orderBy")
    order: Literal["asc", "desc"] = "desc"

    @field_validator("order", mode="before")
    @classmethod
    def normalize_order(cls, v: Any) -> str:
        return "asc" if str(v).lower() == "asc" else "desc"

    def matches(self, other: Optional["SegmentPagination"]) -> bool:
        """Cheap equality across page, size, orderBy and order."""
        if other is None:
            return False
        return (
            self.page == other.page
            and self.size == other.size
            and self.order_by == other.order_by
            and self.order == other.order
        )


class SegmentResults(BaseModel):
    """Result of executing a filter AST against the event's CRM people."""
    model_config = {"populate_by_name": True, "frozen": True}

    crm_persons: list[dict[str, Any]] = Field(default_factory=list, alias="crmPersons")
    total: int = 0
    pagination: Optional[SegmentPagination] = None
    debug: Optional[dict[str, Any]] = None

    @field_validator("pagination", mode="before")
    @classmethod
    def drop_partial_pagination(cls, v: Any) -> Any:
        # Unpaged evaluations may come back without a page or size
        if isinstance(v, dict) and not all(isinstance(v.get(key), int) for key in ("page", "size")):
            return None
        return v


class GenerateResponse(BaseModel):
    """Generative backend output: the AST it produced plus its evaluation."""
    model_config = {"populate_by_name": True, "frozen": True}

    segment: SegmentRoot
    results: SegmentResults

    @field_validator("segment", mode="before")
    @classmethod
    def sanitize_segment(cls, v: Any) -> SegmentRoot:
        from crm_segments.services.filter_ast import sanitize_root
        return sanitize_root(v)


class SavedSegment(BaseModel):
    """A persisted, re-runnable filter AST plus the prompt that produced it."""
    model_config = {"populate_by_name": True, "frozen": True}

    id: str
    title: str = ""
    prompt: str = ""
    ast: SegmentRoot
    favorite: bool = False
    last_used: Optional[datetime] = Field(None, alias="lastUsed")
    created_at: Optional[datetime] = Field(None, alias="createdAt")
    updated_at: Optional[datetime] = Field(None, alias="updatedAt")

    @field_validator("title", "prompt", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> str:
        return v or ""

    @field_validator("ast", mode="before")
    @classmethod
    def sanitize_ast(cls, v: Any) -> SegmentRoot:
        # The backend stores the AST as-is; normalize on the way in.
        from crm_segments.services.filter_ast import sanitize_root
        return sanitize_root(v)

    @field_serializer("ast")
    def serialize_ast(self, ast: SegmentRoot) -> dict[str, Any]:
        from crm_segments.services.filter_ast import dump_root
        return dump_root(ast)


class SavedSegmentUpdate(BaseModel):
    """PATCH payload for a saved segment."""
    model_config = {"populate_by_name": True}

    title: Optional[str] = Field(None, min_length=1)
    favorite: Optional[bool] = None
    last_used: Optional[datetime] = Field(None, alias="lastUsed")
