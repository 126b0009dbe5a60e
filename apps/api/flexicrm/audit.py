from __future__ import annotations

import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any

from flexicrm.context import get_correlation_id

MAX_AUDIT_ENTRIES = 10_000

# Oldest entries fall off once the buffer is full.
audit_entries: deque[dict[str, Any]] = deque(maxlen=MAX_AUDIT_ENTRIES)


def record(
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
    organization_id: str | None = None,
) -> None:
    entry = {
        "id": str(uuid.uuid4()),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "organization_id": organization_id,
        "actor_user_id": actor_user_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "before": before,
        "after": after,
        "correlation_id": correlation_id or get_correlation_id(),
    }
    audit_entries.append(entry)


def entries_for_organization(
    organization_id: str,
    *,
    entity_type: str | None = None,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    """Newest first."""

    matched: list[dict[str, Any]] = []
    for entry in reversed(audit_entries):
        if entry["organization_id"] != organization_id:
            continue
        if entity_type is not None and entry["entity_type"] != entity_type:
            continue
        matched.append(entry)
        if limit is not None and len(matched) >= limit:
            break
    return matched
