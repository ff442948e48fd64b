"""
Tests for pagination-reactive re-execution of the AI segment.
"""

import asyncio

import pytest

from crm_segments.schemas.segment import SegmentPagination
from crm_segments.services.filter_ast import sanitize_root
from crm_segments.services.pagination_sync import AiPaginationSync
from crm_segments.services.prompt_surface import PromptSubmission, StaticPromptSurface

from conftest import EVENT_ID, LAST_MINUTE_2024_AST
from factories import SavedSegmentFactory


@pytest.fixture
def sync(engine):
    return AiPaginationSync(engine)


async def _activate(engine, segment_client, pagination=None):
    """Put a paged AI segment on screen."""
    pagination = pagination or engine.pagination
    results = (await segment_client.run_segment(
        EVENT_ID, sanitize_root(LAST_MINUTE_2024_AST), pagination=pagination
    )).unwrap()
    await engine.apply(results=results, ast=LAST_MINUTE_2024_AST, prompt="Last minute")
    return results


class TestReexecution:

    @pytest.mark.asyncio
    async def test_page_change_runs_once(self, engine, sync, backend, segment_client):
        await _activate(engine, segment_client)
        backend.calls.clear()

        result = await sync.set_page(2)

        assert result.ok
        assert backend.count("POST", "segments") == 1
        assert backend.bodies("POST", "segments")[0]["pagination"]["page"] == 2
        assert engine.ai_results.pagination.page == 2
        assert sync.executions == 1

    @pytest.mark.asyncio
    async def test_same_tuple_does_nothing(self, engine, sync, backend, segment_client):
        await _activate(engine, segment_client)
        backend.calls.clear()

        result = await sync.set_pagination(SegmentPagination(**engine.pagination.model_dump()))

        assert result is None
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_results_already_matching_skip_run(self, engine, sync, backend, segment_client):
        """Results produced for the new tuple (e.g. by a re-run) are not fetched again."""
        await _activate(engine, segment_client, SegmentPagination(page=1, size=10))
        backend.calls.clear()

        result = await sync.set_size(10)

        assert result is None
        assert backend.count("POST", "segments") == 0
        assert engine.pagination.size == 10

    @pytest.mark.asyncio
    async def test_size_change_resets_page(self, engine, sync, backend, segment_client):
        await _activate(engine, segment_client)
        await sync.set_page(2)

        await sync.set_size(50)

        body = backend.bodies("POST", "segments")[-1]
        assert body["pagination"]["page"] == 1
        assert body["pagination"]["size"] == 50

    @pytest.mark.asyncio
    async def test_order_change(self, engine, sync, backend, segment_client):
        await _activate(engine, segment_client)

        await sync.set_order("name", "ASC")

        body = backend.bodies("POST", "segments")[-1]
        assert body["pagination"]["orderBy"] == "name"
        assert body["pagination"]["order"] == "asc"

    @pytest.mark.asyncio
    async def test_manual_mode_never_runs(self, engine, sync, backend):
        result = await sync.set_page(3)

        assert result is None
        assert backend.calls == []
        assert engine.pagination.page == 3

    @pytest.mark.asyncio
    async def test_failure_keeps_results(self, engine, sync, backend, segment_client):
        results = await _activate(engine, segment_client)
        backend.fail("POST", "segments", status=500)

        result = await sync.set_page(2)

        assert not result.ok
        assert engine.ai_results is results


class TestFlowsResettingThePage:

    @pytest.mark.asyncio
    async def test_rerun_saved_segment_moves_table_to_first_page(self, engine, sync, backend):
        backend.add_saved_segment(SavedSegmentFactory(id="s1"))
        await sync.set_pagination(SegmentPagination(page=3, size=10))

        await engine.open_prompt(surface=StaticPromptSurface(PromptSubmission(saved_segment_id="s1")))

        props = sync.table_props()
        assert props["page"] == 1
        assert props["size"] == 10
        assert engine.ai_results.pagination.page == 1

        backend.calls.clear()
        result = await sync.set_page(3)

        assert result.ok
        assert backend.count("POST", "segments") == 1
        assert backend.bodies("POST", "segments")[0]["pagination"]["page"] == 3
        assert sync.table_props()["page"] == 3

    @pytest.mark.asyncio
    async def test_hydration_moves_table_to_default_page(self, engine, sync, backend):
        backend.filters[EVENT_ID] = {"ai": {"enabled": True, "ast": LAST_MINUTE_2024_AST}}
        await sync.set_pagination(SegmentPagination(page=2, size=10))

        await engine.hydrate()

        assert sync.pagination == engine.default_pagination
        assert sync.table_props()["page"] == 1


class TestStaleResponses:

    @pytest.mark.asyncio
    async def test_older_response_is_dropped(self, engine, sync, backend, segment_client):
        await _activate(engine, segment_client)
        gate = backend.hold_next_run()

        slow = asyncio.ensure_future(sync.set_page(2))
        while backend.count("POST", "segments") < 2:
            await asyncio.sleep(0)
        await sync.set_page(3)
        gate.set()
        await slow

        assert engine.ai_results.pagination.page == 3

    @pytest.mark.asyncio
    async def test_response_after_clear_is_dropped(self, engine, sync, backend, segment_client):
        await _activate(engine, segment_client)
        gate = backend.hold_next_run()

        slow = asyncio.ensure_future(sync.set_page(2))
        while backend.count("POST", "segments") < 2:
            await asyncio.sleep(0)
        await engine.clear()
        gate.set()
        await slow

        assert not engine.using_ai
        assert engine.ai_results is None


class TestManualPaging:

    def test_page_clamped_to_last_page(self, engine, sync):
        sync.pagination = SegmentPagination(page=9, size=25)

        sync.set_manual_total(60)

        assert sync.pagination.page == 3
        assert engine.pagination.page == 3

    def test_empty_total_clamps_to_first_page(self, sync):
        sync.pagination = SegmentPagination(page=4, size=25)

        sync.set_manual_total(0)

        assert sync.pagination.page == 1

    def test_page_in_range_untouched(self, sync):
        sync.pagination = SegmentPagination(page=2, size=25)

        sync.set_manual_total(60)

        assert sync.pagination.page == 2


class TestTableProps:

    def test_manual_source(self, sync):
        rows = [{"id": "crm_1"}]

        props = sync.table_props(rows, 1)

        assert props == {
            "data": rows,
            "totalRows": 1,
            "page": 1,
            "size": 25,
            "orderBy": "createdAt",
            "order": "desc",
        }

    @pytest.mark.asyncio
    async def test_ai_source_wins(self, engine, sync, segment_client):
        results = await _activate(engine, segment_client)

        props = sync.table_props([{"id": "manual"}], 1)

        assert props["data"] == results.crm_persons
        assert props["totalRows"] == 30
