"""
Manual (non-AI) table filter helpers.

Table filters arrive in the UI's shape, ``{"field": {"label", ...}, "operation",
"value"}``. Only label, operation and value are persisted; everything else is
UI detail that would break reloads when the field definitions change.
"""

from typing import Any, Iterable, Optional

from crm_segments.schemas.filter_config import ManualFilterState, MinimalFilter


def to_minimal_filter(raw: Any) -> MinimalFilter:
    """Reduce a UI filter (or an already-minimal one) to label/operation/value."""
    if isinstance(raw, MinimalFilter):
        return raw
    if not isinstance(raw, dict):
        return MinimalFilter()

    field = raw.get("field")
    if isinstance(field, dict):
        label = field.get("label")
    else:
        label = raw.get("label")

    return MinimalFilter(
        label=label,
        operation=raw.get("operation"),
        value=raw.get("value"),
    )


def normalize_manual_state(
    search: Any = "",
    filters: Optional[Iterable[Any]] = None,
) -> ManualFilterState:
    return ManualFilterState(
        search=search,
        filters=[to_minimal_filter(f) for f in (filters or [])],
    )


def build_server_filters(
    filters: Optional[Iterable[Any]],
    crm_fields: Optional[Iterable[dict[str, Any]]] = None,
) -> list[dict[str, Any]]:
    """
    Map table filters to the person-list query format.

    A label naming a custom CRM field becomes ``fields.<id>``; built-in
    columns keep their label as the path.
    """
    field_ids = {
        f.get("label"): f.get("id")
        for f in (crm_fields or [])
        if isinstance(f, dict)
    }

    server_filters = []
    for raw in filters or []:
        minimal = to_minimal_filter(raw)
        field_id = field_ids.get(minimal.label)
        server_filters.append({
            "path": f"fields.{field_id}" if field_id else minimal.label,
            "operation": minimal.operation,
            "value": minimal.value,
        })
    return server_filters
