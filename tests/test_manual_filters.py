"""
Tests for manual table filter helpers.
"""

from crm_segments.schemas.filter_config import ManualFilterState, MinimalFilter
from crm_segments.services.manual_filters import (
    build_server_filters,
    normalize_manual_state,
    to_minimal_filter,
)


UI_FILTER = {
    "field": {"label": "T-Shirt Size", "type": "select", "options": ["S", "M", "L"]},
    "operation": "equals",
    "value": "M",
}


class TestToMinimalFilter:

    def test_ui_shape_reduced(self):
        minimal = to_minimal_filter(UI_FILTER)
        assert minimal == MinimalFilter(label="T-Shirt Size", operation="equals", value="M")

    def test_already_minimal(self):
        minimal = to_minimal_filter({"label": "Name", "operation": "contains", "value": "ann"})
        assert minimal.label == "Name"
        assert minimal.operation == "contains"

    def test_model_passthrough(self):
        minimal = MinimalFilter(label="Name")
        assert to_minimal_filter(minimal) is minimal

    def test_garbage_is_blank(self):
        assert to_minimal_filter("nope") == MinimalFilter()
        assert to_minimal_filter({"field": {}}).label == ""


class TestNormalizeManualState:

    def test_defaults(self):
        assert normalize_manual_state() == ManualFilterState()

    def test_none_search_is_empty(self):
        assert normalize_manual_state(None, None).search == ""

    def test_filters_reduced(self):
        state = normalize_manual_state("ann", [UI_FILTER])
        assert state.search == "ann"
        assert state.model_dump()["filters"] == [
            {"label": "T-Shirt Size", "operation": "equals", "value": "M"}
        ]

    def test_ui_details_do_not_affect_equality(self):
        other = dict(UI_FILTER, field={"label": "T-Shirt Size", "type": "text"})
        assert normalize_manual_state("", [UI_FILTER]) == normalize_manual_state("", [other])


class TestBuildServerFilters:

    def test_custom_field_uses_id_path(self):
        filters = build_server_filters([UI_FILTER], [{"id": "fld_9", "label": "T-Shirt Size"}])
        assert filters == [{"path": "fields.fld_9", "operation": "equals", "value": "M"}]

    def test_builtin_column_keeps_label(self):
        filters = build_server_filters([{"label": "email", "operation": "contains", "value": "@x.org"}])
        assert filters == [{"path": "email", "operation": "contains", "value": "@x.org"}]

    def test_empty(self):
        assert build_server_filters(None) == []
