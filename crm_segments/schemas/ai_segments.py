"""Request/response schemas for the AI segments API."""

from pydantic import BaseModel, Field
from typing import Optional, Literal, Any

from crm_segments.schemas.segment import SavedSegment, SegmentResults
from crm_segments.services.hydration import HydrationState


class PromptRequest(BaseModel):
    """New prompt, or a saved segment picked from the previous requests list."""
    model_config = {"populate_by_name": True}

    prompt: str = ""
    title: str = ""
    saved_segment_id: Optional[str] = Field(None, alias="savedSegmentId")
    debug: bool = False


class RefineRequest(BaseModel):
    prompt: str = ""
    title: str = ""
    debug: bool = False


class PaginationRequest(BaseModel):
    model_config = {"populate_by_name": True}

    page: int = Field(1, ge=1)
    size: int = Field(25, ge=1, le=500)
    order_by: str = Field("createdAt", alias="orderBy", min_length=1)
    order: Literal["asc", "desc"] = "desc"


class ManualFiltersRequest(BaseModel):
    model_config = {"populate_by_name": True}

    search: str = ""
    filters: list[dict[str, Any]] = Field(default_factory=list)
    crm_fields: list[dict[str, Any]] = Field(default_factory=list, alias="crmFields")


class AiStateResponse(BaseModel):
    """Everything a UI needs to render the AI filter of one event."""
    model_config = {"populate_by_name": True}

    event_id: str = Field(..., alias="eventId")
    ai_results: Optional[SegmentResults] = Field(None, alias="aiResults")
    ai_title: str = Field(..., alias="aiTitle")
    using_ai: bool = Field(..., alias="usingAi")
    current_saved_id: Optional[str] = Field(None, alias="currentSavedId")
    last_prompt: str = Field("", alias="lastPrompt")
    last_ast: Optional[dict[str, Any]] = Field(None, alias="lastAst")
    saved_title: str = Field("", alias="savedTitle")
    hydration: HydrationState


class TableResponse(BaseModel):
    """Rows and paging for the contacts table."""
    model_config = {"populate_by_name": True}

    data: list[dict[str, Any]] = Field(default_factory=list)
    total_rows: int = Field(0, alias="totalRows")
    page: int
    size: int
    order_by: str = Field(..., alias="orderBy")
    order: Literal["asc", "desc"]


class SavedSegmentListResponse(BaseModel):
    model_config = {"populate_by_name": True}

    saved_segments: list[SavedSegment] = Field(default_factory=list, alias="savedSegments")


class SavedSegmentResponse(BaseModel):
    model_config = {"populate_by_name": True}

    saved_segment: SavedSegment = Field(..., alias="savedSegment")
