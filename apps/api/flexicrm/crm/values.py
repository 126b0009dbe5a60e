from __future__ import annotations

import math
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Protocol, Union


class FieldLike(Protocol):
    id: str
    field_type: str
    options: list[dict[str, str]] | None


@dataclass(frozen=True)
class TextValue:
    value: str


@dataclass(frozen=True)
class NumberValue:
    value: int | float


@dataclass(frozen=True)
class SelectValue:
    option_id: str
    label: str


@dataclass(frozen=True)
class DateValue:
    value: date


FieldValue = Union[TextValue, NumberValue, SelectValue, DateValue]

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+$")


class FieldValueError(ValueError):
    def __init__(self, field_id: str, message: str) -> None:
        self.field_id = field_id
        super().__init__(f"{field_id} {message}")


def option_label(field: FieldLike, option_id: Any) -> str | None:
    for option in field.options or []:
        if option.get("id") == option_id:
            return option.get("label")
    return None


def parse_value(field: FieldLike, raw: Any) -> FieldValue | None:
    """Validate a raw stored value against the field's declared type."""

    field_type = field.field_type
    if raw is None or (raw == "" and field_type not in {"text", "email"}):
        return None

    if field_type in {"text", "email"}:
        if not isinstance(raw, str):
            raise FieldValueError(field.id, "must be text")
        if field_type == "email" and raw and not _EMAIL_RE.match(raw):
            raise FieldValueError(field.id, "must be an email address")
        return TextValue(raw)

    if field_type in {"number", "currency"}:
        if isinstance(raw, bool):
            raise FieldValueError(field.id, "must be number")
        if isinstance(raw, int):
            return NumberValue(raw)
        if isinstance(raw, float):
            parsed = raw
        elif isinstance(raw, str):
            try:
                parsed = float(raw)
            except ValueError:
                raise FieldValueError(field.id, "must be number")
        else:
            raise FieldValueError(field.id, "must be number")
        # NaN and infinities have no JSON form and break ordering.
        if not math.isfinite(parsed):
            raise FieldValueError(field.id, "must be a finite number")
        if isinstance(raw, str) and parsed.is_integer():
            return NumberValue(int(parsed))
        return NumberValue(parsed)

    if field_type == "date":
        if not isinstance(raw, str):
            raise FieldValueError(field.id, "must be ISO date")
        try:
            return DateValue(date.fromisoformat(raw))
        except ValueError:
            pass
        try:
            return DateValue(datetime.fromisoformat(raw).date())
        except ValueError:
            raise FieldValueError(field.id, "must be ISO date")

    if field_type == "select":
        label = option_label(field, raw)
        if not isinstance(raw, str) or label is None:
            raise FieldValueError(field.id, "must be one of the field's option ids")
        return SelectValue(option_id=raw, label=label)

    raise FieldValueError(field.id, f"has unsupported type {field_type}")


def to_storage(value: FieldValue | None) -> Any:
    if value is None:
        return None
    if isinstance(value, SelectValue):
        return value.option_id
    if isinstance(value, DateValue):
        return value.value.isoformat()
    return value.value


def validate_record_data(
    fields: Mapping[str, FieldLike],
    data: Mapping[str, Any],
    previous: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Normalize values for known fields; keys of deleted fields pass through unchanged.

    A value identical to the one already stored in `previous` is kept as is even
    when it no longer fits the field, so a record written before a type change
    can still be saved without touching that value.
    """

    normalized: dict[str, Any] = {}
    for key, raw in data.items():
        field = fields.get(key)
        if field is None:
            normalized[key] = raw
            continue
        try:
            normalized[key] = to_storage(parse_value(field, raw))
        except FieldValueError:
            if previous is None or key not in previous or previous[key] != raw:
                raise
            normalized[key] = raw
    return normalized


def display_text(field: FieldLike, raw: Any) -> str | None:
    if raw is None:
        return None
    if field.field_type == "select":
        label = option_label(field, raw)
        return label if label is not None else str(raw)
    if isinstance(raw, float) and raw.is_integer():
        return str(int(raw))
    return str(raw)
