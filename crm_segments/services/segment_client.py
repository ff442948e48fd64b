"""Segment Execution Client - request/response wrappers around the CRM backend.

Covers:
- Running a filter AST for an event
- Generating a filter AST from a natural-language prompt
- Saved segment CRUD (list, create, rename/favorite/mark used)
- Best-effort title suggestions for saved segments

Stateless apart from the pooled HTTP client. Callers must pass sanitized ASTs;
nothing here normalizes a filter. Every public call returns a ClientResult:
failures travel as typed errors instead of exceptions so each caller decides
whether to abort or degrade.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Generic, Optional, TypeVar, Union

import httpx
from pydantic import ValidationError as PydanticValidationError

from crm_segments.config import settings
from crm_segments.exceptions import (
    EmptyPromptError,
    ErrorCode,
    NotFoundError,
    RequestError,
    SegmentException,
    ValidationError,
)
from crm_segments.middleware.correlation import correlation_headers
from crm_segments.schemas.filter_ast import FilterNode, SegmentRoot
from crm_segments.schemas.segment import (
    GenerateResponse,
    SavedSegment,
    SavedSegmentUpdate,
    SegmentPagination,
    SegmentResults,
)
from crm_segments.services.filter_ast import dump_node, dump_root
from crm_segments.utils.text import normalize_title

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ClientResult(Generic[T]):
    """Outcome of a backend call: a value when ok, a typed error otherwise."""

    ok: bool
    value: Optional[T] = None
    error: Optional[SegmentException] = None

    @classmethod
    def success(cls, value: T) -> "ClientResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: SegmentException) -> "ClientResult[T]":
        return cls(ok=False, error=error)

    @property
    def message(self) -> str:
        return self.error.message if self.error else ""

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""
        if not self.ok:
            raise self.error
        return self.value


def _error_message(response: httpx.Response) -> str:
    """Message from a JSON error body, falling back to the reason phrase."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("message", "error", "detail"):
            if isinstance(body.get(key), str) and body[key]:
                return body[key]
    return response.reason_phrase or f"Request failed with status {response.status_code}"


class SegmentClient:
    """Async client for the CRM segment endpoints of one backend."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        instance_id: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url or settings.CRM_API_BASE_URL
        self.token = token if token is not None else settings.CRM_API_TOKEN
        self.instance_id = instance_id if instance_id is not None else settings.CRM_INSTANCE_ID
        self.timeout = timeout or settings.REQUEST_TIMEOUT_SECONDS
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client with auth headers."""
        if self._client is None or self._client.is_closed:
            headers = {"Accept": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            if self.instance_id:
                headers["X-Instance"] = self.instance_id
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self) -> "SegmentClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def request(
        self,
        method: str,
        path: str,
        json: Any = None,
        not_found: Optional[tuple[str, str]] = None,
    ) -> Any:
        """
        Send one request and return the decoded JSON body.

        Raises RequestError (or its ValidationError subclass) for any failure;
        ``not_found`` names the resource so a 404 becomes NotFoundError.
        """
        client = await self.get_client()
        try:
            response = await client.request(method, path, json=json, headers=correlation_headers())
        except httpx.TimeoutException:
            logger.warning("%s %s timed out after %ss", method, path, self.timeout)
            raise RequestError("The CRM backend timed out", code=ErrorCode.TIMEOUT)
        except httpx.HTTPError as e:
            logger.warning("%s %s failed: %s", method, path, type(e).__name__)
            raise RequestError(f"Could not reach the CRM backend ({type(e).__name__})")

        logger.debug("%s %s -> %s", method, path, response.status_code)

        if response.is_success:
            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError:
                raise RequestError(
                    "The CRM backend returned a non-JSON response",
                    upstream_status=response.status_code,
                )

        message = _error_message(response)
        status = response.status_code
        logger.warning("%s %s -> %s: %s", method, path, status, message)
        if status == 404 and not_found:
            raise NotFoundError(*not_found)
        if status in (400, 422):
            raise ValidationError(message, upstream_status=status)
        raise RequestError(message, upstream_status=status)

    async def _guard(self, operation: str, call: Awaitable[T]) -> ClientResult[T]:
        try:
            return ClientResult.success(await call)
        except SegmentException as exc:
            logger.info("%s failed: %s", operation, exc.detail)
            return ClientResult.failure(exc)

    @staticmethod
    def _parse(model, data: Any):
        try:
            return model.model_validate(data)
        except PydanticValidationError as e:
            raise RequestError(
                f"The CRM backend returned an unexpected {model.__name__} payload",
                upstream_status=200,
            ) from e

    @staticmethod
    def _event_path(event_id: Optional[str], suffix: str) -> str:
        if not event_id:
            raise RequestError("An event is required for this request")
        return f"/events/{event_id}/crm/{suffix}"

    # ------------------------------------------------------------------
    # Segment execution
    # ------------------------------------------------------------------

    async def run_segment(
        self,
        event_id: Optional[str],
        filter: Union[FilterNode, SegmentRoot],
        debug: bool = False,
        pagination: Optional[SegmentPagination] = None,
    ) -> ClientResult[SegmentResults]:
        """Execute a (sanitized) filter against the event's CRM people."""

        async def call() -> SegmentResults:
            path = self._event_path(event_id, "segments")
            node = filter.filter if isinstance(filter, SegmentRoot) else filter
            payload: dict[str, Any] = {"filter": dump_node(node), "debug": bool(debug)}
            if pagination is not None:
                payload["pagination"] = pagination.model_dump(by_alias=True)
            data = await self.request("POST", path, json=payload)
            return self._parse(SegmentResults, data)

        return await self._guard("run_segment", call())

    async def generate_segment(
        self,
        event_id: Optional[str],
        prompt: Optional[str],
        temperature: Optional[float] = None,
        include_context: Optional[bool] = None,
        debug: bool = False,
    ) -> ClientResult[GenerateResponse]:
        """Ask the generative backend for an AST (and its results) from free text."""
        if not prompt or not prompt.strip():
            return ClientResult.failure(EmptyPromptError())

        async def call() -> GenerateResponse:
            path = self._event_path(event_id, "segments/generative")
            payload = {
                "prompt": prompt,
                "temperature": settings.GENERATIVE_TEMPERATURE if temperature is None else temperature,
                "includeContext": settings.GENERATIVE_INCLUDE_CONTEXT if include_context is None else include_context,
                "debug": bool(debug),
            }
            data = await self.request("POST", path, json=payload)
            return self._parse(GenerateResponse, data)

        return await self._guard("generate_segment", call())

    # ------------------------------------------------------------------
    # Saved segments
    # ------------------------------------------------------------------

    async def list_saved_segments(self, event_id: Optional[str]) -> ClientResult[list[SavedSegment]]:
        async def call() -> list[SavedSegment]:
            data = await self.request("GET", self._event_path(event_id, "saved-segments"))
            rows = data.get("savedSegments") if isinstance(data, dict) else None
            return [self._parse(SavedSegment, row) for row in rows or []]

        return await self._guard("list_saved_segments", call())

    async def create_saved_segment(
        self,
        event_id: Optional[str],
        prompt: str,
        ast: SegmentRoot,
        title: Optional[str] = None,
        favorite: bool = False,
    ) -> ClientResult[SavedSegment]:
        async def call() -> SavedSegment:
            payload: dict[str, Any] = {"prompt": prompt, "ast": dump_root(ast), "favorite": favorite}
            if title and title.strip():
                payload["title"] = title.strip()
            data = await self.request("POST", self._event_path(event_id, "saved-segments"), json=payload)
            return self._parse(SavedSegment, (data or {}).get("savedSegment"))

        return await self._guard("create_saved_segment", call())

    async def update_saved_segment(
        self,
        event_id: Optional[str],
        segment_id: str,
        patch: Union[SavedSegmentUpdate, dict[str, Any]],
    ) -> ClientResult[SavedSegment]:
        """PATCH title, favorite and/or lastUsed on a saved segment."""

        async def call() -> SavedSegment:
            update = patch if isinstance(patch, SavedSegmentUpdate) else self._parse_update(patch)
            payload = update.model_dump(by_alias=True, exclude_none=True, mode="json")
            data = await self.request(
                "PATCH",
                self._event_path(event_id, f"saved-segments/{segment_id}"),
                json=payload,
                not_found=("Saved segment", segment_id),
            )
            return self._parse(SavedSegment, (data or {}).get("savedSegment"))

        return await self._guard("update_saved_segment", call())

    @staticmethod
    def _parse_update(patch: dict[str, Any]) -> SavedSegmentUpdate:
        try:
            return SavedSegmentUpdate.model_validate(patch)
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid saved segment update",
                errors=[{"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]} for err in e.errors()],
            ) from e

    async def mark_used(self, event_id: Optional[str], segment_id: str) -> ClientResult[SavedSegment]:
        """Stamp lastUsed, called whenever a segment is re-run from the previous requests list."""
        return await self.update_saved_segment(
            event_id,
            segment_id,
            SavedSegmentUpdate(last_used=datetime.now(timezone.utc)),
        )

    async def suggest_title(
        self,
        event_id: Optional[str],
        prompt: str,
        ast: Optional[SegmentRoot] = None,
    ) -> ClientResult[str]:
        """Ask the backend to title a saved search. Best effort: callers ignore failures."""

        async def call() -> str:
            payload: dict[str, Any] = {"prompt": prompt}
            if ast is not None:
                payload["ast"] = dump_root(ast)
            data = await self.request(
                "POST",
                self._event_path(event_id, "saved-segments/suggest-title"),
                json=payload,
            )
            title = normalize_title((data or {}).get("title"))
            if not title:
                raise RequestError("The title suggestion was empty", code=ErrorCode.AI_SERVICE_ERROR)
            return title

        return await self._guard("suggest_title", call())
