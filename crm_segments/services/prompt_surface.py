"""
Prompt collection hand-off.

The engine never renders anything: ``open_prompt``/``open_refine`` ask a
PromptSurface for a submission and act on the answer. A dialog-driven UI
implements the protocol interactively; the HTTP router answers with the
request body through StaticPromptSurface.
"""

from dataclasses import dataclass
from typing import Literal, Optional, Protocol

PromptMode = Literal["prompt", "refine"]


@dataclass(frozen=True)
class PromptDefaults:
    """Values the surface pre-fills."""

    prompt: str = ""
    title: str = ""
    saved_segment_id: Optional[str] = None


@dataclass(frozen=True)
class PromptSubmission:
    """
    What the user submitted.

    ``saved_segment_id`` set: re-run that segment from the previous requests
    list. Otherwise ``prompt`` is a new (or refined) request.
    """

    prompt: str = ""
    title: str = ""
    saved_segment_id: Optional[str] = None
    debug: bool = False


class PromptSurface(Protocol):
    async def collect(self, mode: PromptMode, defaults: PromptDefaults) -> Optional[PromptSubmission]:
        """Return the submission, or None when the user dismissed the surface."""
        ...


class StaticPromptSurface:
    """Answers every request with a fixed submission (None means dismissed)."""

    def __init__(self, submission: Optional[PromptSubmission]):
        self.submission = submission
        self.requests: list[tuple[PromptMode, PromptDefaults]] = []

    async def collect(self, mode: PromptMode, defaults: PromptDefaults) -> Optional[PromptSubmission]:
        self.requests.append((mode, defaults))
        return self.submission
