import asyncio
import json
import re
from datetime import datetime, timezone
from typing import Optional

import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from crm_segments.api.deps import EngineRegistry, get_registry
from crm_segments.main import app
from crm_segments.services.ai_segment_engine import AiSegmentEngine
from crm_segments.services.filter_config_store import FilterConfigStore
from crm_segments.services.segment_client import SegmentClient
from factories import CrmPersonFactory

BACKEND_URL = "http://crm.test/api"
EVENT_ID = "evt_1"

# Canonical AST the fake generative backend returns for
# "Participants in 2024 who registered during Last Minute"
LAST_MINUTE_2024_AST = {
    "filter": {
        "type": "group",
        "op": "and",
        "conditions": [
            {
                "type": "involvement",
                "role": "participant",
                "iteration": {"type": "year", "year": 2024},
                "exists": True,
                "participant": {"periodName": "Last Minute"},
            }
        ],
    }
}

_ROUTES = [
    ("filters", re.compile(r"^/api/events/(?P<event>[^/]+)/crm/filters$")),
    ("generative", re.compile(r"^/api/events/(?P<event>[^/]+)/crm/segments/generative$")),
    ("segments", re.compile(r"^/api/events/(?P<event>[^/]+)/crm/segments$")),
    ("suggest-title", re.compile(r"^/api/events/(?P<event>[^/]+)/crm/saved-segments/suggest-title$")),
    ("saved-segment", re.compile(r"^/api/events/(?P<event>[^/]+)/crm/saved-segments/(?P<segment>[^/]+)$")),
    ("saved-segments", re.compile(r"^/api/events/(?P<event>[^/]+)/crm/saved-segments$")),
]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class FakeCrmBackend:
    """
    In-memory stand-in for the CRM backend.

    Records every call as (method, route, json body). ``fail`` makes a route
    answer with an error; ``hold_next_run`` parks the next segment execution
    until the returned event is set.
    """

    def __init__(self, persons: int = 30):
        self.persons = CrmPersonFactory.create_batch(persons)
        self.filters: dict[str, dict] = {}
        self.saved_segments: list[dict] = []
        self.generated_segment: dict = LAST_MINUTE_2024_AST
        self.suggested_title = "Last Minute Registrants 2024"
        self.calls: list[tuple[str, str, Optional[dict]]] = []
        self.requests: list[httpx.Request] = []
        self.failures: dict[tuple[str, str], tuple[int, dict]] = {}
        self._gates: list[asyncio.Event] = []
        self._next_id = 1

    # -- helpers for tests -------------------------------------------------

    def count(self, method: str, route: str) -> int:
        return sum(1 for m, r, _ in self.calls if m == method and r == route)

    def bodies(self, method: str, route: str) -> list[Optional[dict]]:
        return [body for m, r, body in self.calls if m == method and r == route]

    def fail(self, method: str, route: str, status: int = 500, body: Optional[dict] = None) -> None:
        self.failures[(method, route)] = (status, body if body is not None else {"message": "Backend exploded"})

    def recover(self, method: str, route: str) -> None:
        self.failures.pop((method, route), None)

    def hold_next_run(self) -> asyncio.Event:
        gate = asyncio.Event()
        self._gates.append(gate)
        return gate

    def add_saved_segment(self, segment: dict) -> dict:
        self.saved_segments.append(segment)
        return segment

    # -- transport ---------------------------------------------------------

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        body = json.loads(request.content) if request.content else None

        for route, pattern in _ROUTES:
            match = pattern.match(request.url.path)
            if match:
                break
        else:
            return httpx.Response(404, json={"message": "No such route"})

        self.calls.append((request.method, route, body))
        failure = self.failures.get((request.method, route))
        if failure:
            status, payload = failure
            return httpx.Response(status, json=payload)

        params = match.groupdict()
        event_id = params["event"]
        handler = getattr(self, f"_{request.method.lower()}_{route.replace('-', '_')}", None)
        if handler is None:
            return httpx.Response(405, json={"message": "Method not allowed"})
        return await handler(event_id, body, params)

    async def _get_filters(self, event_id, body, params):
        if event_id not in self.filters:
            return httpx.Response(404, json={"message": "No stored filters"})
        return httpx.Response(200, json={"filters": self.filters[event_id]})

    async def _put_filters(self, event_id, body, params):
        document = dict(self.filters.get(event_id, {}))
        for key in ("manual", "ai"):
            if key in (body or {}):
                document[key] = body[key]
        self.filters[event_id] = document
        return httpx.Response(200, json={"filters": document})

    async def _post_segments(self, event_id, body, params):
        if self._gates:
            await self._gates.pop(0).wait()
        pagination = (body or {}).get("pagination")
        total = len(self.persons)
        if pagination:
            start = (pagination["page"] - 1) * pagination["size"]
            rows = self.persons[start:start + pagination["size"]]
        else:
            rows = self.persons
            pagination = {"page": 1, "size": total, "orderBy": "createdAt", "order": "desc"}
        return httpx.Response(200, json={"crmPersons": rows, "total": total, "pagination": pagination})

    async def _post_generative(self, event_id, body, params):
        return httpx.Response(200, json={
            "segment": self.generated_segment,
            "results": {"crmPersons": self.persons, "total": len(self.persons)},
        })

    async def _get_saved_segments(self, event_id, body, params):
        ordered = sorted(
            self.saved_segments,
            key=lambda s: (s.get("favorite", False), s.get("lastUsed") or "", s.get("updatedAt") or ""),
            reverse=True,
        )
        return httpx.Response(200, json={"savedSegments": ordered})

    async def _post_saved_segments(self, event_id, body, params):
        now = _now()
        segment = {
            "id": f"seg_new_{self._next_id}",
            "title": body.get("title"),
            "prompt": body.get("prompt"),
            "ast": body.get("ast"),
            "favorite": body.get("favorite", False),
            "lastUsed": None,
            "createdAt": now,
            "updatedAt": now,
        }
        self._next_id += 1
        self.saved_segments.append(segment)
        return httpx.Response(201, json={"savedSegment": segment})

    async def _patch_saved_segment(self, event_id, body, params):
        for segment in self.saved_segments:
            if segment["id"] == params["segment"]:
                if "title" in body:
                    segment["title"] = body["title"]
                if "favorite" in body:
                    segment["favorite"] = body["favorite"]
                if "lastUsed" in body:
                    segment["lastUsed"] = body["lastUsed"]
                segment["updatedAt"] = _now()
                return httpx.Response(200, json={"savedSegment": segment})
        return httpx.Response(404, json={"message": "Saved segment not found"})

    async def _post_suggest_title(self, event_id, body, params):
        return httpx.Response(200, json={"title": self.suggested_title})


@pytest.fixture
def backend() -> FakeCrmBackend:
    return FakeCrmBackend()


@pytest_asyncio.fixture
async def segment_client(backend: FakeCrmBackend):
    """SegmentClient wired to the fake backend."""
    client = SegmentClient(
        base_url=BACKEND_URL,
        token="test-token",
        instance_id="inst_2025",
        transport=httpx.MockTransport(backend.handler),
    )
    yield client
    await client.close()


@pytest.fixture
def store(segment_client: SegmentClient) -> FilterConfigStore:
    return FilterConfigStore(segment_client)


@pytest.fixture
def engine(segment_client: SegmentClient, store: FilterConfigStore) -> AiSegmentEngine:
    return AiSegmentEngine(EVENT_ID, segment_client, store)


@pytest_asyncio.fixture
async def client(segment_client: SegmentClient):
    """Create test client with the registry pointed at the fake backend."""
    registry = EngineRegistry(segment_client)
    app.dependency_overrides[get_registry] = lambda: registry

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
