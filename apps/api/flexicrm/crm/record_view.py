"""Search, column filters, sort and windowing over an organization's customer records."""

from __future__ import annotations

import locale
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from functools import cmp_to_key
from typing import Any, Literal, Protocol, TypeVar

from flexicrm.crm.values import FieldLike, display_text

FilterOperator = Literal["contains", "equals", "startsWith", "endsWith"]
SortDirection = Literal["asc", "desc"]

T = TypeVar("T")


class VisibleFieldLike(FieldLike, Protocol):
    is_visible: bool


@dataclass
class ColumnFilter:
    field_id: str
    operator: FilterOperator
    value: str


@dataclass
class SortSpec:
    field_id: str
    direction: SortDirection = "asc"


@dataclass
class RecordQuery:
    search: str | None = None
    filters: list[ColumnFilter] = field(default_factory=list)
    sort: SortSpec | None = None
    offset: int = 0
    limit: int | None = None


def _data_of(row: Any) -> Mapping[str, Any]:
    return row.data


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def matches_search(data: Mapping[str, Any], visible_fields: Sequence[FieldLike], term: str) -> bool:
    if not term.strip():
        return True
    needle = term.lower()
    for definition in visible_fields:
        text = display_text(definition, data.get(definition.id))
        if text is not None and needle in text.lower():
            return True
    return False


def matches_filter(data: Mapping[str, Any], definition: FieldLike, column_filter: ColumnFilter) -> bool:
    text = display_text(definition, data.get(definition.id))
    if text is None:
        return False

    candidate = text.lower()
    expected = column_filter.value.lower()
    if column_filter.operator == "equals":
        return candidate == expected
    if column_filter.operator == "startsWith":
        return candidate.startswith(expected)
    if column_filter.operator == "endsWith":
        return candidate.endswith(expected)
    return expected in candidate


def compare_values(left: Any, right: Any) -> int:
    if _is_number(left) and _is_number(right):
        delta = left - right
        return (delta > 0) - (delta < 0)
    return locale.strcoll(str(left), str(right))


def sort_rows(
    rows: Sequence[T],
    definition: FieldLike,
    direction: SortDirection,
    data_of: Callable[[T], Mapping[str, Any]] = _data_of,
) -> list[T]:
    """Sort on one column; rows without a value always come last."""

    def sort_value(row: T) -> Any:
        raw = data_of(row).get(definition.id)
        if raw is None or _is_number(raw):
            return raw
        return display_text(definition, raw)

    present = [row for row in rows if sort_value(row) is not None]
    missing = [row for row in rows if sort_value(row) is None]
    sign = -1 if direction == "desc" else 1
    present.sort(key=cmp_to_key(lambda a, b: sign * compare_values(sort_value(a), sort_value(b))))
    return present + missing


def apply_view(
    rows: Sequence[T],
    fields: Sequence[VisibleFieldLike],
    query: RecordQuery,
    data_of: Callable[[T], Mapping[str, Any]] = _data_of,
) -> tuple[list[T], int]:
    """Return the requested window and the total number of rows that matched."""

    by_id = {definition.id: definition for definition in fields}
    visible_fields = [definition for definition in fields if definition.is_visible]

    result = list(rows)
    if query.search:
        result = [row for row in result if matches_search(data_of(row), visible_fields, query.search)]

    for column_filter in query.filters:
        if not column_filter.value:
            continue
        definition = by_id.get(column_filter.field_id)
        if definition is None:
            continue
        result = [row for row in result if matches_filter(data_of(row), definition, column_filter)]

    if query.sort is not None and query.sort.field_id in by_id:
        result = sort_rows(result, by_id[query.sort.field_id], query.sort.direction, data_of)

    total = len(result)
    end = None if query.limit is None else query.offset + query.limit
    return result[query.offset:end], total
