"""Text helpers for prompts and segment titles."""

import re

TITLE_MAX_LENGTH = 80

_WHITESPACE = re.compile(r"\s+")
_CODE_FENCE = re.compile(r"^```[a-zA-Z]*\n?|```$")


def canonical_prompt(prompt: str | None) -> str:
    """Trim and collapse internal whitespace runs to a single space.

    Two prompts that differ only in whitespace are the same request.
    """
    if not prompt:
        return ""
    return _WHITESPACE.sub(" ", prompt).strip()


def prompts_match(a: str | None, b: str | None) -> bool:
    return canonical_prompt(a) == canonical_prompt(b)


def normalize_title(raw: str | None) -> str:
    """Clean up an LLM-suggested title: no fences or wrapping quotes, one line, 80 chars max."""
    if not raw:
        return ""
    title = str(raw).strip()
    title = _CODE_FENCE.sub("", title)
    title = title.strip().strip('"').strip("'")
    title = _WHITESPACE.sub(" ", title).strip()
    if len(title) > TITLE_MAX_LENGTH:
        title = title[:TITLE_MAX_LENGTH].strip()
    return title
