from __future__ import annotations

from typing import Any

from sqlalchemy.sql import Select

from flexicrm.platform.security.context import AuthContext
from flexicrm.platform.security.rls import apply_rls_filter, validate_rls_write


class BaseRepository:
    resource = ""

    def apply_scope_query(self, query: Select[Any], ctx: AuthContext) -> Select[Any]:
        return apply_rls_filter(query, self.resource, ctx)

    def validate_write_security(
        self,
        payload: dict[str, Any],
        ctx: AuthContext,
        *,
        existing_organization_id: Any = None,
        action: str = "write",
    ) -> None:
        validate_rls_write(
            self.resource,
            payload,
            ctx,
            existing_organization_id=existing_organization_id,
            action=action,
        )
