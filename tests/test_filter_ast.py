"""
Tests for filter AST normalization.

Covers the canonical empty shapes, enum defaults, sub-filter collapsing,
transition endpoint rules, type switching and root wrapping.
"""

import pytest

from crm_segments.schemas.filter_ast import (
    CurrentIteration,
    EmailNode,
    GroupNode,
    InvolvementNode,
    SegmentRoot,
    TransitionNode,
    UpsellNode,
    YearIteration,
)
from crm_segments.services.filter_ast import (
    coerce_node_type,
    dump_node,
    dump_root,
    empty_node,
    force_involvement_exists_true,
    sanitize_iteration,
    sanitize_node,
    sanitize_root,
)


EMPTY_GROUP = {"type": "group", "op": "and", "conditions": []}

MESSY_INPUTS = [
    None,
    42,
    "group",
    [],
    {},
    {"type": "bogus"},
    {"type": "group", "op": "xor", "conditions": None},
    {"type": "group", "not": True, "conditions": [{"type": "email"}, "junk", {"type": "nope"}]},
    {"type": "involvement", "role": "volunteer", "volunteer": {"minShifts": 2}, "participant": {"tierId": "t1"}},
    {"type": "involvement", "role": "admin", "iteration": {"type": "decade"}, "exists": "no"},
    {"type": "involvement", "participant": {"tierId": "", "tierName": None}},
    {"type": "transition", "from": {"type": "email"}, "to": {"type": "involvement", "exists": False}},
    {"type": "upsell", "upsellItemId": "", "upsellItemName": "T-Shirt", "exists": False},
    {"type": "email", "direction": "sideways", "withinDays": -3},
    {"filter": {"type": "email", "withinDays": 7}},
    [{"type": "email"}, {"type": "upsell"}],
]


class TestEmptyShapes:
    """Canonical empty instance of each node type."""

    def test_group(self):
        assert dump_node(empty_node("group")) == EMPTY_GROUP

    def test_involvement(self):
        assert dump_node(empty_node("involvement")) == {
            "type": "involvement",
            "role": "participant",
            "iteration": {"type": "current"},
            "exists": True,
        }

    def test_transition(self):
        node = dump_node(empty_node("transition"))
        assert node["from"]["role"] == "participant"
        assert node["to"]["role"] == "volunteer"
        assert node["from"]["exists"] is True
        assert node["to"]["exists"] is True

    def test_upsell(self):
        assert dump_node(empty_node("upsell")) == {
            "type": "upsell",
            "iteration": {"type": "current"},
            "exists": True,
        }

    def test_email(self):
        assert dump_node(empty_node("email")) == {
            "type": "email",
            "direction": "outbound",
            "withinDays": 21,
            "exists": True,
        }

    def test_unknown_type_is_empty_group(self):
        assert dump_node(empty_node("spaceship")) == EMPTY_GROUP


class TestSanitizeNode:
    """Dispatch on type, enum defaults, dropping of empty fields."""

    @pytest.mark.parametrize("value", [None, 42, "group", [], {}, {"type": "bogus"}, {"op": "or"}])
    def test_garbage_becomes_empty_group(self, value):
        assert dump_node(sanitize_node(value)) == EMPTY_GROUP

    def test_group_defaults(self):
        node = sanitize_node({"type": "group", "op": "xor", "conditions": None})
        assert isinstance(node, GroupNode)
        assert node.op == "and"
        assert node.conditions == []
        assert "not" not in dump_node(node)

    def test_group_keeps_or_and_negation(self):
        node = dump_node(sanitize_node({"type": "group", "op": "or", "not": True, "conditions": []}))
        assert node == {"type": "group", "op": "or", "not": True, "conditions": []}

    def test_group_children_are_sanitized(self):
        node = sanitize_node({"type": "group", "conditions": [{"type": "email"}, "junk"]})
        assert isinstance(node.conditions[0], EmailNode)
        assert dump_node(node.conditions[1]) == EMPTY_GROUP

    def test_involvement_role_defaults_to_participant(self):
        node = sanitize_node({"type": "involvement", "role": "admin"})
        assert node.role == "participant"

    def test_exists_true_unless_explicitly_false(self):
        assert sanitize_node({"type": "upsell", "exists": "no"}).exists is True
        assert sanitize_node({"type": "upsell", "exists": None}).exists is True
        assert sanitize_node({"type": "upsell", "exists": False}).exists is False

    def test_only_sub_filter_matching_role_survives(self):
        node = dump_node(sanitize_node({
            "type": "involvement",
            "role": "volunteer",
            "volunteer": {"minShifts": 2},
            "participant": {"tierId": "t1"},
        }))
        assert node["volunteer"] == {"minShifts": 2}
        assert "participant" not in node

    def test_all_empty_sub_filter_collapses(self):
        node = dump_node(sanitize_node({
            "type": "involvement",
            "participant": {"tierId": "", "tierName": None, "periodName": ""},
        }))
        assert "participant" not in node

    def test_participant_date_bounds_kept(self):
        node = dump_node(sanitize_node({
            "type": "involvement",
            "participant": {"createdAtGte": "2024-01-01T00:00:00Z", "periodName": "Early Bird"},
        }))
        assert node["participant"] == {
            "periodName": "Early Bird",
            "createdAtGte": "2024-01-01T00:00:00Z",
        }

    def test_negative_min_shifts_dropped(self):
        node = dump_node(sanitize_node({
            "type": "involvement",
            "role": "volunteer",
            "volunteer": {"minShifts": -1},
        }))
        assert "volunteer" not in node

    def test_upsell_empty_strings_dropped(self):
        node = dump_node(sanitize_node({"type": "upsell", "upsellItemId": "", "upsellItemName": "T-Shirt"}))
        assert node == {
            "type": "upsell",
            "iteration": {"type": "current"},
            "exists": True,
            "upsellItemName": "T-Shirt",
        }

    def test_email_defaults(self):
        node = sanitize_node({"type": "email", "direction": "sideways", "withinDays": "soon"})
        assert node.direction == "outbound"
        assert node.within_days == 21

    @pytest.mark.parametrize("days", [0, -3, 2.5])
    def test_email_keeps_any_number(self, days):
        node = dump_node(sanitize_node({"type": "email", "withinDays": days}))
        assert node["withinDays"] == days

    def test_email_integral_float_becomes_int(self):
        node = sanitize_node({"type": "email", "withinDays": 14.0})
        assert node.within_days == 14
        assert isinstance(node.within_days, int)

    @pytest.mark.parametrize("days", [None, True, float("nan"), float("inf")])
    def test_email_unusable_days_default(self, days):
        assert sanitize_node({"type": "email", "withinDays": days}).within_days == 21

    def test_email_keeps_valid_values(self):
        node = sanitize_node({"type": "email", "direction": "either", "withinDays": 7, "exists": False})
        assert dump_node(node) == {"type": "email", "direction": "either", "withinDays": 7, "exists": False}

    def test_extra_keys_dropped(self):
        node = dump_node(sanitize_node({"type": "email", "color": "red", "withinDays": 3}))
        assert set(node) == {"type", "direction", "withinDays", "exists"}

    def test_accepts_built_models(self):
        built = InvolvementNode(role="volunteer", iteration=YearIteration(year=2023))
        assert sanitize_node(built) == built

    @pytest.mark.parametrize("value", MESSY_INPUTS)
    def test_idempotent(self, value):
        once = sanitize_node(value)
        assert sanitize_node(once) == once
        assert sanitize_node(dump_node(once)) == once


class TestSanitizeIteration:

    @pytest.mark.parametrize("value", [None, "current", {}, {"type": "decade"}, {"type": "current", "x": 1}])
    def test_unknown_collapses_to_current(self, value):
        assert sanitize_iteration(value) == CurrentIteration()

    def test_specific_keeps_instance(self):
        iteration = sanitize_iteration({"type": "specific", "instanceId": "inst_9", "year": 2020})
        assert iteration.model_dump(by_alias=True, exclude_none=True) == {"type": "specific", "instanceId": "inst_9"}

    def test_year(self):
        assert sanitize_iteration({"type": "year", "year": 2024}) == YearIteration(year=2024)

    def test_year_without_value_stays_bare(self):
        iteration = sanitize_iteration({"type": "year", "year": "soon"})
        assert iteration.model_dump(exclude_none=True) == {"type": "year"}

    def test_name(self):
        iteration = sanitize_iteration({"type": "name", "name": "Spring Fling"})
        assert iteration.name == "Spring Fling"

    def test_previous_drops_extras(self):
        iteration = sanitize_iteration({"type": "previous", "instanceId": "inst_1"})
        assert iteration.model_dump() == {"type": "previous"}


class TestTransition:
    """Both endpoints are always involvements with exists=True."""

    @pytest.mark.parametrize("endpoint", [
        None,
        {"type": "email"},
        {"type": "involvement", "exists": False},
        {"type": "involvement", "role": "volunteer", "exists": False, "volunteer": {"minShifts": 1}},
    ])
    def test_endpoints_forced_to_existing_involvements(self, endpoint):
        node = sanitize_node({"type": "transition", "from": endpoint, "to": endpoint})
        assert isinstance(node, TransitionNode)
        assert isinstance(node.from_, InvolvementNode)
        assert isinstance(node.to, InvolvementNode)
        assert node.from_.exists is True
        assert node.to.exists is True

    def test_endpoint_fields_preserved(self):
        node = sanitize_node({
            "type": "transition",
            "from": {"type": "involvement", "role": "volunteer", "iteration": {"type": "previous"}},
            "to": {"type": "involvement", "role": "participant", "exists": False},
        })
        wire = dump_node(node)
        assert wire["from"]["role"] == "volunteer"
        assert wire["from"]["iteration"] == {"type": "previous"}
        assert wire["to"]["exists"] is True

    def test_force_replaces_non_involvement(self):
        node = force_involvement_exists_true(UpsellNode())
        assert dump_node(node) == dump_node(empty_node("involvement"))


class TestCoerceNodeType:

    def test_same_type_preserves_every_field(self):
        node = sanitize_node({
            "type": "involvement",
            "role": "volunteer",
            "iteration": {"type": "year", "year": 2022},
            "exists": False,
            "volunteer": {"minShifts": 3},
        })
        coerced = coerce_node_type(node, "involvement")
        assert coerced == node
        assert coerced is not node

    def test_same_type_from_mapping(self):
        coerced = coerce_node_type({"type": "email", "withinDays": 5}, "email")
        assert coerced.within_days == 5

    @pytest.mark.parametrize("target", ["group", "transition", "upsell", "email"])
    def test_other_type_is_exact_empty_shape(self, target):
        node = sanitize_node({
            "type": "involvement",
            "role": "volunteer",
            "exists": False,
            "iteration": {"type": "year", "year": 2022},
        })
        assert dump_node(coerce_node_type(node, target)) == dump_node(empty_node(target))

    def test_unknown_target_is_empty_group(self):
        assert dump_node(coerce_node_type(empty_node("email"), "spaceship")) == EMPTY_GROUP


class TestSanitizeRoot:

    @pytest.mark.parametrize("value", [None, 7, "x", {"filter": None}, {"filter": "junk"}])
    def test_garbage_yields_empty_group(self, value):
        assert dump_root(sanitize_root(value)) == {"filter": EMPTY_GROUP}

    def test_wrapped_node(self):
        root = sanitize_root({"filter": {"type": "email", "withinDays": 7}})
        assert isinstance(root.filter, EmailNode)

    def test_bare_node_is_wrapped(self):
        root = sanitize_root({"type": "upsell", "upsellItemName": "Hoodie"})
        assert isinstance(root.filter, UpsellNode)

    def test_list_becomes_and_group(self):
        root = sanitize_root([{"type": "email"}, {"type": "upsell"}])
        assert isinstance(root.filter, GroupNode)
        assert root.filter.op == "and"
        assert [c.type for c in root.filter.conditions] == ["email", "upsell"]

    def test_filter_list_becomes_and_group(self):
        root = sanitize_root({"filter": [{"type": "email"}]})
        assert root.filter.conditions[0].type == "email"

    def test_existing_root_is_resanitized(self):
        root = SegmentRoot(filter=empty_node("email"))
        assert sanitize_root(root) == root

    @pytest.mark.parametrize("value", MESSY_INPUTS)
    def test_always_valid_and_stable(self, value):
        root = sanitize_root(value)
        assert isinstance(root, SegmentRoot)
        assert sanitize_root(dump_root(root)) == root

    def test_last_minute_example_round_trip(self):
        ast = {
            "filter": {
                "type": "group",
                "op": "and",
                "conditions": [{
                    "type": "involvement",
                    "role": "participant",
                    "iteration": {"type": "year", "year": 2024},
                    "exists": True,
                    "participant": {"periodName": "Last Minute"},
                }],
            }
        }
        assert dump_root(sanitize_root(ast)) == ast
