"""
One-shot reconstruction of AI segment state after a reload.

uninitialized -> hydrating -> hydrated (terminal for the event context)

The persisted AI block is resolved in this order:
1. not enabled: nothing to restore
2. inline ``ast``: run it with the default pagination
3. ``savedSegmentId`` only: wait for the saved segments list, run that
   segment's AST and use its title/prompt as fallbacks

Any failure still ends in ``hydrated`` with the AI state left empty; the page
falls back to manual filtering and nothing is retried.
"""

import asyncio
import logging
from enum import Enum
from typing import TYPE_CHECKING, Optional

from crm_segments.exceptions import SegmentException
from crm_segments.schemas.filter_config import AiFilterState
from crm_segments.services.filter_ast import sanitize_root

if TYPE_CHECKING:
    from crm_segments.services.ai_segment_engine import AiSegmentEngine

logger = logging.getLogger(__name__)


class HydrationState(str, Enum):
    UNINITIALIZED = "uninitialized"
    HYDRATING = "hydrating"
    HYDRATED = "hydrated"


class HydrationController:
    """Runs hydration at most once; concurrent callers await the same task."""

    def __init__(self, engine: "AiSegmentEngine"):
        self.engine = engine
        self.state = HydrationState.UNINITIALIZED
        self.error: Optional[SegmentException] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def hydrated(self) -> bool:
        return self.state == HydrationState.HYDRATED

    async def run(self) -> HydrationState:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._hydrate())
        await self._task
        return self.state

    def _set_state(self, state: HydrationState) -> None:
        logger.info("AI hydration for event %s: %s -> %s", self.engine.event_id, self.state.value, state.value)
        self.state = state

    async def _hydrate(self) -> None:
        self._set_state(HydrationState.HYDRATING)
        try:
            await self._restore()
        except SegmentException as exc:
            self.error = exc
            logger.warning("AI hydration for event %s failed: %s", self.engine.event_id, exc.detail)
        finally:
            self._set_state(HydrationState.HYDRATED)

    async def _restore(self) -> None:
        engine = self.engine
        generation = engine.user_generation
        document = await engine.store.read(engine.event_id)
        ai = document.ai

        if not ai.enabled:
            return
        if ai.ast:
            await self._restore_inline(ai, generation)
        elif ai.saved_segment_id:
            await self._restore_saved(ai, generation)

    async def _restore_inline(self, ai: AiFilterState, generation: int) -> None:
        engine = self.engine
        root = sanitize_root(ai.ast)
        executed = await engine.client.run_segment(
            engine.event_id,
            root,
            debug=isinstance(ai.ast, dict) and bool(ai.ast.get("debug")),
            pagination=engine.default_pagination,
        )
        executed.unwrap()
        engine.restore(
            results=executed.value,
            saved_segment_id=ai.saved_segment_id,
            ast=root,
            title=ai.title,
            generation=generation,
        )

    async def _restore_saved(self, ai: AiFilterState, generation: int) -> None:
        engine = self.engine
        segment = (await engine.require_saved_segment(ai.saved_segment_id)).unwrap()
        executed = await engine.client.run_segment(
            engine.event_id,
            segment.ast,
            pagination=engine.default_pagination,
        )
        executed.unwrap()
        engine.restore(
            results=executed.value,
            saved_segment_id=segment.id,
            ast=segment.ast,
            title=ai.title or segment.title,
            prompt=segment.prompt,
            generation=generation,
        )
