"""
Persisted Filter Configuration Store.

One document per event (manual table filters + AI filter state), cached
locally and written optimistically:

    stage    -> merge the partial into the cache, remember the previous value
    PUT      -> server merges per top-level key (last write wins per key)
    confirm  -> the server document becomes the cache
    rollback -> the staged value is discarded and the server is re-read

Subscribers see every cache change, including the optimistic one, so a UI
can render immediately and correct itself on rollback.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from crm_segments.exceptions import NotFoundError, RequestError, SegmentException
from crm_segments.schemas.filter_config import ManualFilterState, PersistedFilterConfig
from crm_segments.services.manual_filters import normalize_manual_state
from crm_segments.services.segment_client import ClientResult, SegmentClient

logger = logging.getLogger(__name__)

Listener = Callable[[str, PersistedFilterConfig], None]

TOP_LEVEL_KEYS = ("manual", "ai")


def _unwrap_document(data: Any) -> dict[str, Any]:
    """Accept either the bare document or ``{"filters": document}``."""
    if isinstance(data, dict) and isinstance(data.get("filters"), dict):
        return data["filters"]
    return data if isinstance(data, dict) else {}


def _parse_document(data: Any) -> PersistedFilterConfig:
    try:
        return PersistedFilterConfig.model_validate(_unwrap_document(data))
    except PydanticValidationError as e:
        raise RequestError("The CRM backend returned an unreadable filter configuration") from e


def _partial_to_wire(partial: dict[str, Any]) -> dict[str, Any]:
    wire = {}
    for key in TOP_LEVEL_KEYS:
        if key not in partial:
            continue
        value = partial[key]
        if hasattr(value, "model_dump"):
            value = value.model_dump(by_alias=True, mode="json")
        wire[key] = value
    return wire


@dataclass
class PendingWrite:
    """An optimistic write between stage and confirm/rollback."""

    event_id: str
    partial: dict[str, Any]
    previous: PersistedFilterConfig
    staged: PersistedFilterConfig
    settled: bool = field(default=False)


class FilterConfigStore:
    """Per-event cache of PersistedFilterConfig in front of the CRM backend."""

    def __init__(self, client: SegmentClient):
        self.client = client
        self._cache: dict[str, PersistedFilterConfig] = {}
        self._last_manual: dict[str, ManualFilterState] = {}
        self._listeners: list[Listener] = []
        self._locks: dict[str, asyncio.Lock] = {}

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set(self, event_id: str, document: PersistedFilterConfig) -> None:
        self._cache[event_id] = document
        for listener in list(self._listeners):
            listener(event_id, document)

    def cached(self, event_id: str) -> Optional[PersistedFilterConfig]:
        return self._cache.get(event_id)

    def _lock(self, event_id: str) -> asyncio.Lock:
        if event_id not in self._locks:
            self._locks[event_id] = asyncio.Lock()
        return self._locks[event_id]

    async def _fetch(self, event_id: str) -> PersistedFilterConfig:
        try:
            data = await self.client.request(
                "GET",
                f"/events/{event_id}/crm/filters",
                not_found=("Filter configuration", event_id),
            )
        except NotFoundError:
            return PersistedFilterConfig()
        return _parse_document(data)

    async def read(self, event_id: str, refresh: bool = False) -> PersistedFilterConfig:
        """
        Fetch-or-default. The first read for an event hits the backend;
        later reads return the cache unless ``refresh`` is set.

        A missing document (404 or empty body) is the default document.
        Other backend failures propagate as RequestError.
        """
        async with self._lock(event_id):
            if not refresh and event_id in self._cache:
                return self._cache[event_id]
            document = await self._fetch(event_id)
            self._last_manual[event_id] = document.manual
            self._set(event_id, document)
            return document

    # ------------------------------------------------------------------
    # Two-phase write
    # ------------------------------------------------------------------

    def stage(self, event_id: str, partial: dict[str, Any]) -> PendingWrite:
        """Tentatively merge ``partial`` into the cached document."""
        previous = self._cache.get(event_id) or PersistedFilterConfig()
        merged = previous.model_dump(by_alias=True, mode="json")
        merged.update(_partial_to_wire(partial))
        staged = PersistedFilterConfig.model_validate(merged)

        pending = PendingWrite(event_id=event_id, partial=partial, previous=previous, staged=staged)
        self._set(event_id, staged)
        return pending

    def confirm(self, pending: PendingWrite, server_data: Any = None) -> PersistedFilterConfig:
        """Accept the server's document as the new truth."""
        document = pending.staged
        server_document = _unwrap_document(server_data)
        if server_document:
            try:
                document = _parse_document(server_document)
            except RequestError:
                logger.warning("Keeping staged filters for event %s, server echo was unreadable", pending.event_id)
        pending.settled = True
        self._set(pending.event_id, document)
        return document

    async def rollback(self, pending: PendingWrite) -> PersistedFilterConfig:
        """Drop the staged value and re-read the server; keep the previous value if that fails too."""
        pending.settled = True
        try:
            document = await self._fetch(pending.event_id)
        except SegmentException as exc:
            logger.warning(
                "Re-fetch after failed write for event %s also failed: %s",
                pending.event_id,
                exc.detail,
            )
            document = pending.previous
        self._set(pending.event_id, document)
        return document

    async def write(
        self,
        event_id: str,
        partial: dict[str, Any],
    ) -> ClientResult[PersistedFilterConfig]:
        """Optimistically merge ``partial`` (keys ``manual`` and/or ``ai``) and persist it."""
        pending = self.stage(event_id, partial)
        try:
            data = await self.client.request(
                "PUT",
                f"/events/{event_id}/crm/filters",
                json=_partial_to_wire(partial),
            )
        except SegmentException as exc:
            logger.warning("Filter write for event %s failed, rolling back: %s", event_id, exc.detail)
            await self.rollback(pending)
            return ClientResult.failure(exc)

        document = self.confirm(pending, data)
        if "manual" in partial:
            self._last_manual[event_id] = document.manual
        return ClientResult.success(document)

    async def write_manual(
        self,
        event_id: str,
        search: Any = "",
        filters: Optional[list[Any]] = None,
    ) -> ClientResult[PersistedFilterConfig]:
        """Persist manual filters, skipping the round-trip when nothing changed."""
        manual = normalize_manual_state(search, filters)
        if self._last_manual.get(event_id, ManualFilterState()) == manual:
            return ClientResult.success(self._cache.get(event_id) or PersistedFilterConfig())

        self._last_manual[event_id] = manual
        result = await self.write(event_id, {"manual": manual})
        if not result.ok:
            self._last_manual[event_id] = (self._cache.get(event_id) or PersistedFilterConfig()).manual
        return result

    def forget(self, event_id: Union[str, None]) -> None:
        """Drop cached state for an event (fresh event context)."""
        if event_id is None:
            return
        self._cache.pop(event_id, None)
        self._last_manual.pop(event_id, None)
