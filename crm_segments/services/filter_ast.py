"""
Filter AST normalization.

Pure, total functions that coerce arbitrary input (LLM output, persisted JSON,
editor state) into a canonical filter tree. Nothing here raises: malformed
input degrades to the neutral filter, an empty ``and`` group.

Normalization rules:
- unknown or missing ``type`` at any position becomes an empty group
- enums fall back to a default: op "and", role "participant",
  direction "outbound"; ``exists`` is True unless explicitly False
- empty strings and None are dropped; an optional sub-object whose fields are
  all empty is dropped entirely
- transition endpoints are always involvements with exists=True
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any, Callable

from pydantic import BaseModel

from crm_segments.schemas.filter_ast import (
    NODE_TYPES,
    CurrentIteration,
    EmailNode,
    FilterNode,
    GroupNode,
    InvolvementNode,
    Iteration,
    NameIteration,
    ParticipantFilter,
    PreviousIteration,
    SegmentRoot,
    SpecificIteration,
    TransitionNode,
    UpsellNode,
    VolunteerFilter,
    YearIteration,
)


DEFAULT_EMAIL_WITHIN_DAYS = 21


# ---------------------------------------------------------------------------
# Canonical empty shapes
# ---------------------------------------------------------------------------


def _empty_group() -> GroupNode:
    return GroupNode(op="and", conditions=[])


def _empty_involvement(role: str = "participant") -> InvolvementNode:
    return InvolvementNode(role=role, iteration=CurrentIteration(), exists=True)


def _empty_transition() -> TransitionNode:
    return TransitionNode(
        from_=_empty_involvement("participant"),
        to=_empty_involvement("volunteer"),
    )


def _empty_upsell() -> UpsellNode:
    return UpsellNode(iteration=CurrentIteration(), exists=True)


def _empty_email() -> EmailNode:
    return EmailNode(direction="outbound", within_days=DEFAULT_EMAIL_WITHIN_DAYS, exists=True)


_EMPTY_NODES: dict[str, Callable[[], FilterNode]] = {
    "group": _empty_group,
    "involvement": _empty_involvement,
    "transition": _empty_transition,
    "upsell": _empty_upsell,
    "email": _empty_email,
}


def empty_node(node_type: str) -> FilterNode:
    """Canonical empty instance of a node type (unknown types give the empty group)."""
    factory = _EMPTY_NODES.get(node_type, _empty_group)
    return factory()


# ---------------------------------------------------------------------------
# Scalar helpers
# ---------------------------------------------------------------------------


def _clean_str(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str) and value != "":
        return value
    return None


def _clean_int(value: Any, minimum: int | None = None) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int):
        return None
    if minimum is not None and value < minimum:
        return None
    return value


def _clean_number(value: Any) -> int | float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        if value.is_integer():
            return int(value)
    return value


def _exists(node: Mapping) -> bool:
    return node.get("exists") is not False


def _collapse(model: type[BaseModel], **fields: Any) -> BaseModel | None:
    """Build ``model`` from the non-empty fields, or None when all are empty."""
    present = {key: value for key, value in fields.items() if value is not None}
    if not present:
        return None
    return model(**present)


def _as_mapping(value: Any) -> Mapping | None:
    if isinstance(value, BaseModel):
        return value.model_dump(by_alias=True, exclude_none=True, mode="json")
    if isinstance(value, Mapping):
        return value
    return None


# ---------------------------------------------------------------------------
# Iterations
# ---------------------------------------------------------------------------


def sanitize_iteration(iteration: Any) -> Iteration:
    """Map any input to one of the five iteration shapes, defaulting to current."""
    raw = _as_mapping(iteration)
    if raw is None:
        return CurrentIteration()

    kind = raw.get("type")
    if kind == "previous":
        return PreviousIteration()
    if kind == "specific":
        return SpecificIteration(instance_id=_clean_str(raw.get("instanceId")))
    if kind == "year":
        return YearIteration(year=_clean_int(raw.get("year")))
    if kind == "name":
        return NameIteration(name=_clean_str(raw.get("name")))
    return CurrentIteration()


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------


def _sanitize_group(node: Mapping) -> GroupNode:
    conditions = node.get("conditions")
    return GroupNode(
        op="or" if node.get("op") == "or" else "and",
        negate=True if node.get("not") else None,
        conditions=[sanitize_node(child) for child in conditions]
        if isinstance(conditions, (list, tuple))
        else [],
    )


def _sanitize_involvement(node: Mapping) -> InvolvementNode:
    role = "volunteer" if node.get("role") == "volunteer" else "participant"
    participant = None
    volunteer = None

    if role == "participant":
        raw = _as_mapping(node.get("participant")) or {}
        participant = _collapse(
            ParticipantFilter,
            tier_id=_clean_str(raw.get("tierId")),
            tier_name=_clean_str(raw.get("tierName")),
            period_id=_clean_str(raw.get("periodId")),
            period_name=_clean_str(raw.get("periodName")),
            created_at_gte=_clean_str(raw.get("createdAtGte")),
            created_at_lte=_clean_str(raw.get("createdAtLte")),
        )
    else:
        raw = _as_mapping(node.get("volunteer")) or {}
        volunteer = _collapse(
            VolunteerFilter,
            min_shifts=_clean_int(raw.get("minShifts"), minimum=0),
            created_at_gte=_clean_str(raw.get("createdAtGte")),
            created_at_lte=_clean_str(raw.get("createdAtLte")),
        )

    return InvolvementNode(
        role=role,
        iteration=sanitize_iteration(node.get("iteration")),
        exists=_exists(node),
        participant=participant,
        volunteer=volunteer,
    )


def _sanitize_transition(node: Mapping) -> TransitionNode:
    return TransitionNode(
        from_=force_involvement_exists_true(sanitize_node(node.get("from"))),
        to=force_involvement_exists_true(sanitize_node(node.get("to"))),
    )


def _sanitize_upsell(node: Mapping) -> UpsellNode:
    return UpsellNode(
        iteration=sanitize_iteration(node.get("iteration")),
        exists=_exists(node),
        upsell_item_id=_clean_str(node.get("upsellItemId")),
        upsell_item_name=_clean_str(node.get("upsellItemName")),
    )


def _sanitize_email(node: Mapping) -> EmailNode:
    direction = node.get("direction")
    within_days = _clean_number(node.get("withinDays"))
    return EmailNode(
        direction=direction if direction in ("inbound", "either") else "outbound",
        within_days=within_days if within_days is not None else DEFAULT_EMAIL_WITHIN_DAYS,
        exists=_exists(node),
    )


_NODE_SANITIZERS: dict[str, Callable[[Mapping], FilterNode]] = {
    "group": _sanitize_group,
    "involvement": _sanitize_involvement,
    "transition": _sanitize_transition,
    "upsell": _sanitize_upsell,
    "email": _sanitize_email,
}


def sanitize_node(node: Any) -> FilterNode:
    """Coerce any value into a canonical FilterNode."""
    raw = _as_mapping(node)
    if raw is None:
        return _empty_group()
    sanitizer = _NODE_SANITIZERS.get(raw.get("type"))
    if sanitizer is None:
        return _empty_group()
    return sanitizer(raw)


def force_involvement_exists_true(node: Any) -> InvolvementNode:
    """Transition endpoint rule: always an involvement, always exists=True."""
    if isinstance(node, InvolvementNode):
        return node.model_copy(update={"exists": True})
    return _empty_involvement()


def sanitize_root(value: Any) -> SegmentRoot:
    """
    Accept ``{"filter": node}``, a bare node, a list of nodes, or garbage and
    always return a well-formed root.

    A list is legacy input and becomes an ``and`` group of its elements.
    """
    if isinstance(value, SegmentRoot):
        return SegmentRoot(filter=sanitize_node(value.filter))
    if isinstance(value, (list, tuple)):
        return SegmentRoot(filter=_sanitize_group({"conditions": value}))

    raw = _as_mapping(value)
    if raw is None:
        return SegmentRoot(filter=_empty_group())

    inner = raw.get("filter")
    if isinstance(inner, (list, tuple)):
        return SegmentRoot(filter=_sanitize_group({"conditions": inner}))
    if _as_mapping(inner) is not None:
        return SegmentRoot(filter=sanitize_node(inner))
    return SegmentRoot(filter=sanitize_node(raw))


def coerce_node_type(node: Any, target_type: str) -> FilterNode:
    """
    Switch a node to ``target_type``.

    Same type: a copy with every field preserved. Different type: the target's
    canonical empty shape, nothing carried over from ``node``.
    """
    if isinstance(node, BaseModel):
        current = getattr(node, "type", None)
        if current == target_type and current in NODE_TYPES:
            return node.model_copy()
    elif isinstance(node, Mapping) and node.get("type") == target_type and target_type in NODE_TYPES:
        return sanitize_node(node)
    return empty_node(target_type)


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def dump_node(node: FilterNode) -> dict[str, Any]:
    """JSON-ready dict with wire names and no null fields."""
    return node.model_dump(by_alias=True, exclude_none=True, mode="json")


def dump_root(root: SegmentRoot) -> dict[str, Any]:
    return root.model_dump(by_alias=True, exclude_none=True, mode="json")
