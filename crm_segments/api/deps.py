"""
FastAPI Dependencies

One AI segment engine (plus its pagination sync) per event context, all
sharing a single CRM backend client and filter store. A different event id is
a fresh context with its own, not yet hydrated, engine.
"""

from typing import Annotated, Optional
from fastapi import Depends
import logging

from crm_segments.services.ai_segment_engine import AiSegmentEngine
from crm_segments.services.filter_config_store import FilterConfigStore
from crm_segments.services.pagination_sync import AiPaginationSync
from crm_segments.services.segment_client import SegmentClient

logger = logging.getLogger(__name__)


class EngineRegistry:
    """Event id -> engine, created on first use."""

    def __init__(self, client: Optional[SegmentClient] = None):
        self.client = client or SegmentClient()
        self.store = FilterConfigStore(self.client)
        self._engines: dict[str, AiSegmentEngine] = {}
        self._pagination: dict[str, AiPaginationSync] = {}

    def engine(self, event_id: str) -> AiSegmentEngine:
        if event_id not in self._engines:
            logger.debug("New AI segment context for event %s", event_id)
            self._engines[event_id] = AiSegmentEngine(event_id, self.client, self.store)
        return self._engines[event_id]

    def pagination(self, event_id: str) -> AiPaginationSync:
        if event_id not in self._pagination:
            self._pagination[event_id] = AiPaginationSync(self.engine(event_id))
        return self._pagination[event_id]

    def reset(self, event_id: str) -> None:
        """Forget an event context; the next request starts uninitialized."""
        engine = self._engines.pop(event_id, None)
        if engine is not None:
            engine.close()
        self._pagination.pop(event_id, None)
        self.store.forget(event_id)

    async def close(self) -> None:
        for event_id in list(self._engines):
            self.reset(event_id)
        await self.client.close()


_registry: Optional[EngineRegistry] = None


def get_registry() -> EngineRegistry:
    """Process-wide registry (overridden in tests)."""
    global _registry
    if _registry is None:
        _registry = EngineRegistry()
    return _registry


async def close_registry() -> None:
    global _registry
    if _registry is not None:
        await _registry.close()
        _registry = None


Registry = Annotated[EngineRegistry, Depends(get_registry)]
