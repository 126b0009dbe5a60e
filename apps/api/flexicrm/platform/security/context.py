from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class AuthContext:
    """Tenant and ownership scope used by organization-level checks."""

    user_id: str
    organization_id: str
    team_id: str | None = None
    role: str | None = None
    correlation_id: str | None = None
    permissions: frozenset[str] = field(default_factory=frozenset)
