"""Field dependency rules: "when field A is set to V, force field B to W".

Rules fire only for the field the user edited. Targets written by a rule do not
trigger further rules.
"""

from __future__ import annotations

import json
import math
from collections.abc import Iterable, Mapping
from typing import Any, Protocol


class DependencyRule(Protocol):
    trigger_field_id: str
    trigger_value: Any
    target_field_id: str
    target_value: Any


def stringify(value: Any) -> str:
    """Loose string coercion used for trigger matching, so 2, 2.0 and "2" all compare equal."""

    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (list, tuple)):
        return ",".join("" if item is None else stringify(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True)
    return str(value)


def matching_rules(field_id: str, value: Any, rules: Iterable[DependencyRule]) -> list[DependencyRule]:
    expected = stringify(value)
    return [
        rule
        for rule in rules
        if rule.trigger_field_id == field_id and stringify(rule.trigger_value) == expected
    ]


def apply_change(
    field_id: str,
    value: Any,
    form_state: Mapping[str, Any],
    rules: Iterable[DependencyRule],
) -> dict[str, Any]:
    new_state = dict(form_state)
    new_state[field_id] = value
    # Stored order; a later rule on the same target overwrites an earlier one.
    for rule in matching_rules(field_id, value, rules):
        new_state[rule.target_field_id] = rule.target_value
    return new_state


def validate_rule(trigger_field_id: str, target_field_id: str, known_field_ids: Iterable[str]) -> list[str]:
    known = set(known_field_ids)
    errors: list[str] = []
    if trigger_field_id not in known:
        errors.append(f"unknown trigger field: {trigger_field_id}")
    if target_field_id not in known:
        errors.append(f"unknown target field: {target_field_id}")
    if trigger_field_id == target_field_id:
        errors.append("rule cannot target its own trigger field")
    return errors
