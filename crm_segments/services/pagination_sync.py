"""
Pagination-reactive re-execution of the active AI segment.

The table owns page/size/sort. While an AI segment is active, a change to that
tuple re-runs the segment's AST unless the results on screen were already
produced for exactly that tuple. Each run takes a request token from the
engine, so a slow response for an older tuple can never replace newer rows.
"""

import logging
import math
from typing import Any, Optional

from crm_segments.schemas.segment import SegmentPagination
from crm_segments.services.ai_segment_engine import AiSegmentEngine
from crm_segments.services.segment_client import ClientResult

logger = logging.getLogger(__name__)

# Same tuple model as the backend's pagination metadata
PaginationState = SegmentPagination


class AiPaginationSync:
    """Keeps the table's page/size/sort and re-executes the AI segment on change."""

    def __init__(self, engine: AiSegmentEngine, pagination: Optional[PaginationState] = None):
        self.engine = engine
        if pagination is not None:
            engine.pagination = pagination
        self.manual_total: Optional[int] = None
        self.executions = 0

    @property
    def pagination(self) -> PaginationState:
        """The engine's tuple, so flows that reset the page move the table too."""
        return self.engine.pagination

    @pagination.setter
    def pagination(self, pagination: PaginationState) -> None:
        self.engine.pagination = pagination

    async def set_page(self, page: int) -> Optional[ClientResult]:
        return await self.set_pagination(self.pagination.model_copy(update={"page": max(1, int(page))}))

    async def set_size(self, size: int) -> Optional[ClientResult]:
        return await self.set_pagination(
            self.pagination.model_copy(update={"size": max(1, int(size)), "page": 1})
        )

    async def set_order(self, order_by: str, order: str) -> Optional[ClientResult]:
        return await self.set_pagination(
            PaginationState(page=1, size=self.pagination.size, order_by=order_by, order=order)
        )

    async def set_pagination(self, pagination: PaginationState) -> Optional[ClientResult]:
        """
        Move the table to ``pagination``.

        Returns the execution result when a re-run happened, None otherwise.
        """
        changed = not pagination.matches(self.pagination)
        self.pagination = pagination

        if not self.engine.using_ai:
            self.clamp_manual_page()
            return None
        if not changed:
            return None

        cached = self.engine.ai_results.pagination if self.engine.ai_results else None
        if pagination.matches(cached):
            logger.debug("AI results already match page %s size %s", pagination.page, pagination.size)
            return None
        return await self.execute(pagination)

    async def execute(self, pagination: PaginationState) -> ClientResult:
        engine = self.engine
        token = engine.next_request_token()
        self.executions += 1
        result = await engine.client.run_segment(engine.event_id, engine.last_ast, pagination=pagination)
        if result.ok:
            engine.update_results(result.value, token)
        else:
            logger.warning("Re-running AI segment for event %s failed: %s", engine.event_id, result.message)
        return result

    def set_manual_total(self, total: Optional[int]) -> None:
        self.manual_total = total
        self.clamp_manual_page()

    def clamp_manual_page(self) -> None:
        """Keep the manual page inside the last page of the current total."""
        if self.engine.using_ai or self.manual_total is None:
            return
        max_page = max(1, math.ceil(self.manual_total / self.pagination.size))
        if self.pagination.page > max_page:
            self.pagination = self.pagination.model_copy(update={"page": max_page})

    def table_props(
        self,
        manual_rows: Optional[list[dict[str, Any]]] = None,
        manual_total: Optional[int] = None,
    ) -> dict[str, Any]:
        """Data and paging the table renders, from the AI results or the manual source."""
        if manual_total is not None and manual_total != self.manual_total:
            self.set_manual_total(manual_total)

        results = self.engine.ai_results
        if results is not None:
            data, total = results.crm_persons, results.total
        else:
            data, total = manual_rows or [], manual_total or 0

        return {
            "data": data,
            "totalRows": total,
            "page": self.pagination.page,
            "size": self.pagination.size,
            "orderBy": self.pagination.order_by,
            "order": self.pagination.order,
        }
