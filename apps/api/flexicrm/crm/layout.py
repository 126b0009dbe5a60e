"""Placement of fields on the record editor's 12-column grid."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

GRID_COLUMNS = 12
_LAYOUT_KEYS = ("x", "y", "w", "h")


def clamp_layout(layout: Mapping[str, Any]) -> dict[str, int]:
    """Force a rectangle inside the grid: w in [1, 12], x >= 0, x + w <= 12, y >= 0, h >= 1.

    Applying it to an already clamped rectangle returns the same rectangle.
    """

    x = int(layout.get("x", 0))
    y = int(layout.get("y", 0))
    w = int(layout.get("w", 1))
    h = int(layout.get("h", 1))

    w = min(max(w, 1), GRID_COLUMNS)
    x = max(x, 0)
    if x + w > GRID_COLUMNS:
        x = GRID_COLUMNS - w
    y = max(y, 0)
    h = max(h, 1)
    return {"x": x, "y": y, "w": w, "h": h}


def default_layout(index: int) -> dict[str, int]:
    """Two half-width columns, filled row by row in display order."""

    return {"x": (index % 2) * 6, "y": index // 2, "w": 6, "h": 1}


def merge_layout(current: Mapping[str, Any] | None, changes: Mapping[str, Any], *, index: int = 0) -> dict[str, int]:
    base = dict(current) if current else default_layout(index)
    for key in _LAYOUT_KEYS:
        value = changes.get(key)
        if value is not None:
            base[key] = value
    return clamp_layout(base)


def is_valid_layout(layout: Mapping[str, Any] | None) -> bool:
    if not layout or any(key not in layout for key in _LAYOUT_KEYS):
        return False
    return clamp_layout(layout) == {key: layout[key] for key in _LAYOUT_KEYS}
