"""
AI segments API - the UI layer's view of the AI segment engine.

Each event id maps to one engine. Prompt-driven flows take the submission
from the request body instead of an interactive dialog. Client failures are
raised as SegmentException and rendered as problem+json.
"""

from fastapi import APIRouter, Query
import logging

from crm_segments.api.deps import Registry
from crm_segments.schemas.ai_segments import (
    AiStateResponse,
    ManualFiltersRequest,
    PaginationRequest,
    PromptRequest,
    RefineRequest,
    SavedSegmentListResponse,
    SavedSegmentResponse,
    TableResponse,
)
from crm_segments.schemas.segment import SavedSegmentUpdate, SegmentPagination
from crm_segments.services.ai_segment_engine import AiSegmentEngine
from crm_segments.services.filter_ast import dump_root
from crm_segments.services.manual_filters import build_server_filters
from crm_segments.services.prompt_surface import PromptSubmission, StaticPromptSurface

logger = logging.getLogger(__name__)

router = APIRouter()


def _snapshot(engine: AiSegmentEngine) -> AiStateResponse:
    state = engine.state
    return AiStateResponse(
        event_id=engine.event_id,
        ai_results=state.results,
        ai_title=state.ai_title,
        using_ai=state.using_ai,
        current_saved_id=state.current_saved_id,
        last_prompt=state.last_prompt,
        last_ast=dump_root(state.last_ast) if state.last_ast else None,
        saved_title=state.saved_title,
        hydration=engine.hydration.state,
    )


@router.get("/{event_id}/crm/ai", response_model=AiStateResponse)
async def get_ai_state(event_id: str, registry: Registry):
    """Hydrate the event's AI filter (first call only) and return its state."""
    engine = registry.engine(event_id)
    await engine.hydrate()
    return _snapshot(engine)


@router.post("/{event_id}/crm/ai/prompt", response_model=AiStateResponse)
async def submit_prompt(event_id: str, body: PromptRequest, registry: Registry):
    """Generate a segment from a new prompt, or re-run a saved one."""
    engine = registry.engine(event_id)
    submission = PromptSubmission(
        prompt=body.prompt,
        title=body.title,
        saved_segment_id=body.saved_segment_id,
        debug=body.debug,
    )
    outcome = await engine.open_prompt(surface=StaticPromptSurface(submission))
    outcome.unwrap()
    return _snapshot(engine)


@router.post("/{event_id}/crm/ai/previous/{segment_id}", response_model=AiStateResponse)
async def run_previous(event_id: str, segment_id: str, registry: Registry):
    """Re-run a segment from the previous requests list."""
    engine = registry.engine(event_id)
    outcome = await engine.open_prompt(
        surface=StaticPromptSurface(PromptSubmission(saved_segment_id=segment_id))
    )
    outcome.unwrap()
    return _snapshot(engine)


@router.post("/{event_id}/crm/ai/refine", response_model=AiStateResponse)
async def refine(event_id: str, body: RefineRequest, registry: Registry):
    """Rename the active segment, or regenerate it when the prompt changed."""
    engine = registry.engine(event_id)
    submission = PromptSubmission(prompt=body.prompt, title=body.title, debug=body.debug)
    outcome = await engine.open_refine(surface=StaticPromptSurface(submission))
    outcome.unwrap()
    return _snapshot(engine)


@router.delete("/{event_id}/crm/ai", response_model=AiStateResponse)
async def clear_ai(event_id: str, registry: Registry):
    engine = registry.engine(event_id)
    await engine.clear()
    return _snapshot(engine)


@router.put("/{event_id}/crm/ai/pagination", response_model=TableResponse)
async def set_pagination(event_id: str, body: PaginationRequest, registry: Registry):
    """Move the table; re-runs the active AI segment when the rows on screen no longer apply."""
    sync = registry.pagination(event_id)
    result = await sync.set_pagination(
        SegmentPagination(page=body.page, size=body.size, order_by=body.order_by, order=body.order)
    )
    if result is not None:
        result.unwrap()
    return TableResponse(**sync.table_props())


@router.get("/{event_id}/crm/ai/saved-segments", response_model=SavedSegmentListResponse)
async def list_saved_segments(
    event_id: str,
    registry: Registry,
    refresh: bool = Query(False),
):
    engine = registry.engine(event_id)
    segments = (await engine.load_saved_segments(refresh=refresh)).unwrap()
    return SavedSegmentListResponse(saved_segments=segments)


@router.patch("/{event_id}/crm/ai/saved-segments/{segment_id}", response_model=SavedSegmentResponse)
async def update_saved_segment(
    event_id: str,
    segment_id: str,
    body: SavedSegmentUpdate,
    registry: Registry,
):
    """Rename or (un)favorite a saved segment."""
    engine = registry.engine(event_id)
    segment = (await engine.update_saved_segment(segment_id, body)).unwrap()
    return SavedSegmentResponse(saved_segment=segment)


@router.put("/{event_id}/crm/filters/manual")
async def save_manual_filters(event_id: str, body: ManualFiltersRequest, registry: Registry):
    """
    Persist the manual table filters (no-op when unchanged) and return them
    mapped to the person-list query format as ``serverFilters``.
    """
    document = (
        await registry.store.write_manual(event_id, body.search, body.filters)
    ).unwrap()
    response = document.to_wire()
    response["serverFilters"] = build_server_filters(body.filters, body.crm_fields)
    return response
