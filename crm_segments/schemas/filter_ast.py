"""
Filter AST Schemas for CRM audience segments

A segment is a tree of filter nodes discriminated by ``type``:

- group: boolean combinator over child conditions
- involvement: was/was-not a participant or volunteer in an iteration
- transition: satisfied two involvement conditions (e.g. volunteer, then participant)
- upsell: bought (or did not buy) an upsell item in an iteration
- email: had email activity within a window of days

Models serialize with the camelCase wire names used by the CRM backend and
never emit ``null`` for an absent optional field. Use
``crm_segments.services.filter_ast`` to build them from untrusted input.
"""

from __future__ import annotations

from pydantic import BaseModel, Field
from typing import Optional, Literal, Union, Annotated


NODE_TYPES = ("group", "involvement", "transition", "upsell", "email")
ITERATION_TYPES = ("current", "previous", "specific", "year", "name")

_NODE_CONFIG = {"populate_by_name": True, "frozen": True}


# Iterations

class CurrentIteration(BaseModel):
    """The event instance the request is scoped to (X-Instance header)."""
    model_config = _NODE_CONFIG

    type: Literal["current"] = "current"


class PreviousIteration(BaseModel):
    """The instance immediately before the current one."""
    model_config = _NODE_CONFIG

    type: Literal["previous"] = "previous"


class SpecificIteration(BaseModel):
    model_config = _NODE_CONFIG

    type: Literal["specific"] = "specific"
    instance_id: Optional[str] = Field(None, alias="instanceId")


class YearIteration(BaseModel):
    model_config = _NODE_CONFIG

    type: Literal["year"] = "year"
    year: Optional[int] = None


class NameIteration(BaseModel):
    model_config = _NODE_CONFIG

    type: Literal["name"] = "name"
    name: Optional[str] = None


Iteration = Annotated[
    Union[CurrentIteration, PreviousIteration, SpecificIteration, YearIteration, NameIteration],
    Field(discriminator="type"),
]


# Involvement sub-filters

class ParticipantFilter(BaseModel):
    """Registration constraints for a participant involvement."""
    model_config = _NODE_CONFIG

    tier_id: Optional[str] = Field(None, alias="tierId")
    tier_name: Optional[str] = Field(None, alias="tierName")
    period_id: Optional[str] = Field(None, alias="periodId")
    period_name: Optional[str] = Field(None, alias="periodName")
    created_at_gte: Optional[str] = Field(None, alias="createdAtGte", description="ISO 8601 lower bound")
    created_at_lte: Optional[str] = Field(None, alias="createdAtLte", description="ISO 8601 upper bound")


class VolunteerFilter(BaseModel):
    """Registration constraints for a volunteer involvement."""
    model_config = _NODE_CONFIG

    min_shifts: Optional[int] = Field(None, alias="minShifts", ge=0)
    created_at_gte: Optional[str] = Field(None, alias="createdAtGte")
    created_at_lte: Optional[str] = Field(None, alias="createdAtLte")


# Nodes

class GroupNode(BaseModel):
    """AND/OR over child conditions, optionally negated."""
    model_config = _NODE_CONFIG

    type: Literal["group"] = "group"
    op: Literal["and", "or"] = "and"
    negate: Optional[Literal[True]] = Field(None, alias="not")
    conditions: list[FilterNode] = Field(default_factory=list)


class InvolvementNode(BaseModel):
    model_config = _NODE_CONFIG

    type: Literal["involvement"] = "involvement"
    role: Literal["participant", "volunteer"] = "participant"
    iteration: Iteration = Field(default_factory=CurrentIteration)
    exists: bool = True
    participant: Optional[ParticipantFilter] = None
    volunteer: Optional[VolunteerFilter] = None


class TransitionNode(BaseModel):
    """Person satisfied both endpoints; endpoints always have exists=True."""
    model_config = _NODE_CONFIG

    type: Literal["transition"] = "transition"
    from_: InvolvementNode = Field(alias="from")
    to: InvolvementNode


class UpsellNode(BaseModel):
    model_config = _NODE_CONFIG

    type: Literal["upsell"] = "upsell"
    iteration: Iteration = Field(default_factory=CurrentIteration)
    exists: bool = True
    upsell_item_id: Optional[str] = Field(None, alias="upsellItemId")
    upsell_item_name: Optional[str] = Field(None, alias="upsellItemName")


class EmailNode(BaseModel):
    model_config = _NODE_CONFIG

    type: Literal["email"] = "email"
    direction: Literal["outbound", "inbound", "either"] = "outbound"
    within_days: Union[int, float] = Field(21, alias="withinDays")
    exists: bool = True


FilterNode = Annotated[
    Union[GroupNode, InvolvementNode, TransitionNode, UpsellNode, EmailNode],
    Field(discriminator="type"),
]


class SegmentRoot(BaseModel):
    """Root AST document: always ``{"filter": <node>}``."""
    model_config = _NODE_CONFIG

    filter: FilterNode


# Enable self-referencing
GroupNode.model_rebuild()
SegmentRoot.model_rebuild()
