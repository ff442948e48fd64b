"""
AI Segmentation State Engine.

Single authority for "is an AI-generated segment active, and what is it".
State is an immutable AiSegmentState snapshot; every transition builds a new
one and hands it to subscribers.

Flows:
- apply/clear: user-driven state changes, always persisted to the filter store
- open_prompt: new prompt (generate, save, title, apply) or re-run of a saved
  segment picked from the previous requests list
- open_refine: title-only rename when the prompt is unchanged, otherwise a
  regeneration
- restore: hydration's way in; never persists and never overwrites state a
  user action already set

Execution client failures abort a flow before apply, so prior state is left
untouched and the failure is returned for a transient notice. Title
suggestion is the exception: its failure is logged and the flow carries on.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional

from crm_segments.config import settings
from crm_segments.exceptions import NotFoundError
from crm_segments.schemas.filter_ast import SegmentRoot
from crm_segments.schemas.filter_config import EMPTY_AI, AiFilterState, PersistedFilterConfig
from crm_segments.schemas.segment import SavedSegment, SavedSegmentUpdate, SegmentPagination, SegmentResults
from crm_segments.services.filter_ast import dump_root, sanitize_root
from crm_segments.services.filter_config_store import FilterConfigStore
from crm_segments.services.hydration import HydrationController
from crm_segments.services.prompt_surface import PromptDefaults, PromptSubmission, PromptSurface
from crm_segments.services.segment_client import ClientResult, SegmentClient
from crm_segments.utils.text import prompts_match

logger = logging.getLogger(__name__)


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


def build_default_pagination() -> SegmentPagination:
    return SegmentPagination(
        page=1,
        size=settings.DEFAULT_PAGE_SIZE,
        order_by=settings.DEFAULT_ORDER_BY,
        order=settings.DEFAULT_ORDER,
    )


@dataclass(frozen=True)
class AiSegmentState:
    results: Optional[SegmentResults] = None
    current_saved_id: Optional[str] = None
    last_prompt: str = ""
    last_ast: Optional[SegmentRoot] = None
    saved_title: str = ""
    persisted_title: str = ""

    @property
    def using_ai(self) -> bool:
        return self.results is not None

    @property
    def ai_title(self) -> str:
        """Most specific wins: saved title, persisted title, prompt, fallback."""
        return (
            self.saved_title
            or self.persisted_title
            or self.last_prompt
            or settings.AI_FILTER_FALLBACK_TITLE
        )

    @property
    def has_active_state(self) -> bool:
        return (
            self.results is not None
            or self.last_ast is not None
            or self.current_saved_id is not None
        )


Listener = Callable[[AiSegmentState], None]


class AiSegmentEngine:
    """Owns the AI segment state of one event context."""

    def __init__(
        self,
        event_id: str,
        client: SegmentClient,
        store: FilterConfigStore,
        default_pagination: Optional[SegmentPagination] = None,
        surface: Optional[PromptSurface] = None,
    ):
        self.event_id = event_id
        self.client = client
        self.store = store
        self.default_pagination = default_pagination or build_default_pagination()
        self.pagination = self.default_pagination
        self.surface = surface

        self._state = AiSegmentState()
        self._listeners: list[Listener] = []
        self._latest_token = 0
        # bumped by apply/clear; hydration started under an older generation is stale
        self._user_generation = 0

        self._saved_segments: Optional[list[SavedSegment]] = None
        self._saved_lock = asyncio.Lock()

        self.hydration = HydrationController(self)
        self._unsubscribe_store = store.subscribe(self._on_store_change)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> AiSegmentState:
        return self._state

    @property
    def ai_results(self) -> Optional[SegmentResults]:
        return self._state.results

    @property
    def ai_title(self) -> str:
        return self._state.ai_title

    @property
    def using_ai(self) -> bool:
        return self._state.using_ai

    @property
    def current_saved_id(self) -> Optional[str]:
        return self._state.current_saved_id

    @property
    def last_prompt(self) -> str:
        return self._state.last_prompt

    @property
    def last_ast(self) -> Optional[SegmentRoot]:
        return self._state.last_ast

    @property
    def saved_title(self) -> str:
        return self._state.saved_title

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _transition(self, **changes: Any) -> AiSegmentState:
        self._state = replace(self._state, **changes)
        for listener in list(self._listeners):
            listener(self._state)
        return self._state

    def _on_store_change(self, event_id: str, document: PersistedFilterConfig) -> None:
        if event_id == self.event_id and document.ai.title != self._state.persisted_title:
            self._transition(persisted_title=document.ai.title)

    def close(self) -> None:
        """Detach from the store; the engine is discarded with its event context."""
        self._unsubscribe_store()

    # ------------------------------------------------------------------
    # Request tokens
    # ------------------------------------------------------------------

    @property
    def user_generation(self) -> int:
        return self._user_generation

    def next_request_token(self) -> int:
        self._latest_token += 1
        return self._latest_token

    def update_results(self, results: SegmentResults, token: int) -> bool:
        """Accept re-executed results only from the newest request while AI is active."""
        if token != self._latest_token:
            logger.debug("Dropping stale segment results (token %s, latest %s)", token, self._latest_token)
            return False
        if not self._state.using_ai:
            logger.debug("Dropping segment results, AI filter no longer active")
            return False
        self._transition(results=results)
        return True

    # ------------------------------------------------------------------
    # apply / clear
    # ------------------------------------------------------------------

    async def apply(
        self,
        results: Any = UNSET,
        saved_segment_id: Any = UNSET,
        ast: Any = UNSET,
        title: Any = UNSET,
        prompt: Any = UNSET,
    ) -> AiSegmentState:
        """
        Merge new values into the current state and persist the AI block.

        Omitted arguments keep their current value, which is what lets a
        rename keep the results already on screen.
        """
        self._user_generation += 1
        changes: dict[str, Any] = {}
        if results is not UNSET:
            changes["results"] = results
            # in-flight re-executions are for the old segment
            self.next_request_token()
        if saved_segment_id is not UNSET:
            changes["current_saved_id"] = saved_segment_id or None
        if ast is not UNSET:
            changes["last_ast"] = sanitize_root(ast) if ast is not None else None
        if title is not UNSET:
            changes["saved_title"] = title or ""
        if prompt is not UNSET:
            changes["last_prompt"] = prompt or ""

        self._transition(**changes)
        await self._persist(saved_segment_id, ast, title)
        return self._state

    async def _persist(self, saved_segment_id: Any, ast: Any, title: Any) -> None:
        document = self.store.cached(self.event_id) or PersistedFilterConfig()
        prior = document.ai or EMPTY_AI

        next_saved = prior.saved_segment_id if saved_segment_id is UNSET else (saved_segment_id or None)
        if ast is UNSET:
            next_ast = prior.ast
        else:
            next_ast = dump_root(sanitize_root(ast)) if ast is not None else None
        next_title = prior.title if title is UNSET else (title or "")

        ai = AiFilterState(
            enabled=bool(next_saved or next_ast),
            saved_segment_id=next_saved,
            ast=next_ast,
            title=next_title,
        )
        result = await self.store.write(self.event_id, {"ai": ai})
        if not result.ok:
            logger.warning("Could not persist AI filter for event %s: %s", self.event_id, result.message)

    async def clear(self) -> AiSegmentState:
        """Reset to empty and persist the explicitly-cleared AI block."""
        self._user_generation += 1
        self.next_request_token()
        self._transition(
            results=None,
            current_saved_id=None,
            last_prompt="",
            last_ast=None,
            saved_title="",
        )
        result = await self.store.write(self.event_id, {"ai": EMPTY_AI})
        if not result.ok:
            logger.warning("Could not persist cleared AI filter for event %s: %s", self.event_id, result.message)
        return self._state

    def restore(
        self,
        results: SegmentResults,
        saved_segment_id: Optional[str],
        ast: Optional[SegmentRoot],
        title: str,
        prompt: Optional[str] = None,
        generation: Optional[int] = None,
    ) -> bool:
        """
        Adopt hydrated state without persisting it.

        Returns False (and changes nothing) when a user action already made
        AI state active, or when apply/clear ran after ``generation`` was
        taken: the last applied state wins over a late hydration.
        """
        if generation is not None and generation != self._user_generation:
            logger.info("Skipping hydrated AI state for event %s, the user changed it meanwhile", self.event_id)
            return False
        if self._state.has_active_state:
            logger.info("Skipping hydrated AI state for event %s, a newer state is active", self.event_id)
            return False
        self.next_request_token()
        # hydration always runs on the default page
        self.pagination = self.default_pagination
        changes: dict[str, Any] = {
            "results": results,
            "current_saved_id": saved_segment_id or None,
            "last_ast": ast,
            "saved_title": title or "",
        }
        if prompt:
            changes["last_prompt"] = prompt
        self._transition(**changes)
        self._backfill_prompt()
        return True

    async def hydrate(self):
        return await self.hydration.run()

    # ------------------------------------------------------------------
    # Saved segments
    # ------------------------------------------------------------------

    async def load_saved_segments(self, refresh: bool = False) -> ClientResult[list[SavedSegment]]:
        """Load (once) the saved segments; concurrent callers share one fetch."""
        async with self._saved_lock:
            if self._saved_segments is not None and not refresh:
                return ClientResult.success(self._saved_segments)
            result = await self.client.list_saved_segments(self.event_id)
            if result.ok:
                self._saved_segments = result.value
        if result.ok:
            self._backfill_prompt()
        return result

    @property
    def saved_segments(self) -> list[SavedSegment]:
        return list(self._saved_segments or [])

    def find_saved_segment(self, segment_id: Optional[str]) -> Optional[SavedSegment]:
        if not segment_id:
            return None
        for segment in self._saved_segments or []:
            if segment.id == segment_id:
                return segment
        return None

    def _invalidate_saved_segments(self) -> None:
        self._saved_segments = None

    def _replace_saved_segment(self, segment: SavedSegment) -> None:
        if self._saved_segments is None:
            return
        self._saved_segments = [segment if s.id == segment.id else s for s in self._saved_segments]

    def _backfill_prompt(self) -> None:
        """Show the original prompt once the saved segment behind an id-only state is known."""
        state = self._state
        if not state.current_saved_id or state.last_prompt.strip():
            return
        segment = self.find_saved_segment(state.current_saved_id)
        if segment and segment.prompt:
            self._transition(last_prompt=segment.prompt)

    async def require_saved_segment(self, segment_id: str) -> ClientResult[SavedSegment]:
        """Find a saved segment, refreshing the list once before giving up."""
        loaded = await self.load_saved_segments()
        if not loaded.ok:
            return ClientResult.failure(loaded.error)
        segment = self.find_saved_segment(segment_id)
        if segment is None:
            loaded = await self.load_saved_segments(refresh=True)
            if not loaded.ok:
                return ClientResult.failure(loaded.error)
            segment = self.find_saved_segment(segment_id)
        if segment is None:
            return ClientResult.failure(NotFoundError("Saved segment", segment_id))
        return ClientResult.success(segment)

    async def update_saved_segment(
        self,
        segment_id: str,
        patch: SavedSegmentUpdate,
    ) -> ClientResult[SavedSegment]:
        """Rename or (un)favorite a saved segment and keep the cached list current."""
        result = await self.client.update_saved_segment(self.event_id, segment_id, patch)
        if result.ok:
            self._replace_saved_segment(result.value)
            if segment_id == self._state.current_saved_id and "title" in patch.model_fields_set:
                self._transition(saved_title=result.value.title)
        return result

    # ------------------------------------------------------------------
    # Prompt flows
    # ------------------------------------------------------------------

    async def run_saved_segment(self, segment: SavedSegment) -> ClientResult[AiSegmentState]:
        """Re-run a segment from the previous requests list on page 1 of the current table."""
        pagination = self.pagination.model_copy(update={"page": 1})
        executed = await self.client.run_segment(self.event_id, segment.ast, pagination=pagination)
        if not executed.ok:
            return ClientResult.failure(executed.error)

        used = await self.client.mark_used(self.event_id, segment.id)
        if used.ok:
            # lastUsed changes the list order
            self._invalidate_saved_segments()
        else:
            logger.info("Could not mark saved segment %s as used: %s", segment.id, used.message)

        self.pagination = pagination
        state = await self.apply(
            results=executed.value,
            saved_segment_id=segment.id,
            ast=segment.ast,
            title=segment.title or segment.prompt,
            prompt=segment.prompt,
        )
        return ClientResult.success(state)

    async def generate(self, prompt: str, title: str = "", debug: bool = False) -> ClientResult[AiSegmentState]:
        """Generate a segment from a prompt, save it, title it and apply it."""
        generated = await self.client.generate_segment(self.event_id, prompt, debug=debug)
        if not generated.ok:
            return ClientResult.failure(generated.error)

        segment = generated.value.segment
        saved_title = (title or "").strip()
        saved_id = None

        created = await self.client.create_saved_segment(self.event_id, prompt, segment, title=saved_title)
        if created.ok:
            saved_id = created.value.id
            self._invalidate_saved_segments()
            if not saved_title:
                saved_title = await self._suggest_title(saved_id, prompt, segment)
        else:
            logger.warning("Generated segment for event %s was not saved: %s", self.event_id, created.message)

        state = await self.apply(
            results=generated.value.results,
            saved_segment_id=saved_id,
            ast=segment,
            title=saved_title,
            prompt=prompt,
        )
        return ClientResult.success(state)

    async def _suggest_title(self, saved_id: str, prompt: str, segment: SegmentRoot) -> str:
        suggestion = await self.client.suggest_title(self.event_id, prompt, segment)
        if not suggestion.ok:
            logger.info("No title suggestion for saved segment %s: %s", saved_id, suggestion.message)
            return ""
        updated = await self.client.update_saved_segment(
            self.event_id, saved_id, SavedSegmentUpdate(title=suggestion.value)
        )
        if updated.ok and updated.value.title:
            return updated.value.title
        return suggestion.value

    async def open_prompt(
        self,
        defaults: Optional[PromptDefaults] = None,
        surface: Optional[PromptSurface] = None,
    ) -> Optional[ClientResult[AiSegmentState]]:
        """
        Hand off to the prompt surface. None means the user dismissed it;
        otherwise the outcome of the chosen flow.
        """
        submission = await self._collect("prompt", defaults or PromptDefaults(), surface)
        if submission is None:
            return None

        if submission.saved_segment_id:
            found = await self.require_saved_segment(submission.saved_segment_id)
            if not found.ok:
                return ClientResult.failure(found.error)
            return await self.run_saved_segment(found.value)

        return await self.generate(submission.prompt, submission.title, submission.debug)

    async def open_refine(self, surface: Optional[PromptSurface] = None) -> Optional[ClientResult[AiSegmentState]]:
        """
        Refine the active segment. An unchanged prompt with a saved id only
        renames the saved segment; anything else regenerates.
        """
        segment = None
        if self._state.current_saved_id:
            await self.load_saved_segments()
            segment = self.find_saved_segment(self._state.current_saved_id)

        defaults = PromptDefaults(
            prompt=self._state.last_prompt or (segment.prompt if segment else ""),
            title=self._state.saved_title or (segment.title if segment else "") or self._state.persisted_title,
            saved_segment_id=self._state.current_saved_id,
        )
        submission = await self._collect("refine", defaults, surface)
        if submission is None:
            return None

        saved_id = self._state.current_saved_id
        if saved_id and prompts_match(submission.prompt, defaults.prompt):
            new_title = (submission.title or "").strip()
            renamed = await self.update_saved_segment(
                saved_id,
                SavedSegmentUpdate(title=new_title) if new_title else SavedSegmentUpdate(),
            )
            if not renamed.ok:
                return ClientResult.failure(renamed.error)
            state = await self.apply(
                saved_segment_id=saved_id,
                ast=self._state.last_ast,
                title=renamed.value.title,
                prompt=submission.prompt,
            )
            return ClientResult.success(state)

        return await self.generate(submission.prompt, submission.title, submission.debug)

    async def _collect(
        self,
        mode: str,
        defaults: PromptDefaults,
        surface: Optional[PromptSurface] = None,
    ) -> Optional[PromptSubmission]:
        surface = surface or self.surface
        if surface is None:
            raise RuntimeError("No prompt surface is attached to this engine")
        return await surface.collect(mode, defaults)
