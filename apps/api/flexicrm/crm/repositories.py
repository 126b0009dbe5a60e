from __future__ import annotations

import uuid
from typing import Any, Literal

from sqlalchemy import Select, false, or_

from flexicrm.crm.models import CustomerRecord
from flexicrm.platform.security.context import AuthContext
from flexicrm.platform.security.repository import BaseRepository


class FieldDefinitionRepository(BaseRepository):
    resource = "crm.field_definition"


class AutomationRuleRepository(BaseRepository):
    resource = "crm.automation_rule"


class CustomerRepository(BaseRepository):
    resource = "crm.customer"

    def apply_scope_query(
        self,
        query: Select[Any],
        ctx: AuthContext,
        *,
        access: Literal["read", "update"] = "read",
    ) -> Select[Any]:
        """Organization filter plus the all/team/own ownership tier the caller holds for `access`."""

        scoped = super().apply_scope_query(query, ctx)
        prefix = f"data.customers.{access}"
        if f"{prefix}.all" in ctx.permissions:
            return scoped

        user_id = uuid.UUID(ctx.user_id)
        conditions = []
        if f"{prefix}.team" in ctx.permissions and ctx.team_id:
            conditions.append(CustomerRecord.team_id == uuid.UUID(ctx.team_id))
        if f"{prefix}.own" in ctx.permissions or f"{prefix}.team" in ctx.permissions:
            conditions.append(CustomerRecord.created_by == user_id)
            conditions.append(CustomerRecord.assigned_to == user_id)

        if not conditions:
            return scoped.where(false())
        return scoped.where(or_(*conditions))
