from __future__ import annotations

from typing import Any

from sqlalchemy.sql import Select

from flexicrm import audit
from flexicrm.metrics import observe_rls_denied
from flexicrm.platform.security.context import AuthContext
from flexicrm.platform.security.errors import ScopeViolationError


def apply_rls_filter(query: Select[Any], resource: str, ctx: AuthContext) -> Select[Any]:
    """Restrict every selected model that carries an organization_id to the caller's organization."""

    for description in query.column_descriptions:
        model = description.get("entity")
        if model is None:
            continue
        if hasattr(model, "organization_id"):
            query = query.where(getattr(model, "organization_id") == _as_uuid_or_str(model, ctx.organization_id))
    return query


def validate_rls_write(
    resource: str,
    payload: dict[str, Any],
    ctx: AuthContext,
    *,
    action: str = "write",
    existing_organization_id: Any = None,
) -> None:
    """Reject writes whose payload or target row belongs to another organization."""

    for candidate in (payload.get("organization_id"), existing_organization_id):
        if candidate is not None and str(candidate) != ctx.organization_id:
            _emit_rls_denied(resource=resource, action=action, scope_value=str(candidate), ctx=ctx, is_read=False)
            raise ScopeViolationError(resource, "organization")


def validate_rls_read_scope(
    resource: str,
    ctx: AuthContext,
    *,
    organization_id: Any,
    action: str = "read",
) -> None:
    """Validate record-level read scope for rows loaded by id."""

    if organization_id is not None and str(organization_id) != ctx.organization_id:
        _emit_rls_denied(resource=resource, action=action, scope_value=str(organization_id), ctx=ctx, is_read=True)
        raise ScopeViolationError(resource, "organization")


def _as_uuid_or_str(model: Any, value: str) -> Any:
    column = getattr(model, "organization_id")
    python_type = getattr(getattr(column, "type", None), "python_type", str)
    try:
        return python_type(value)
    except (TypeError, ValueError):
        return value


def _emit_rls_denied(
    *,
    resource: str,
    action: str,
    scope_value: str,
    ctx: AuthContext,
    is_read: bool,
) -> None:
    observe_rls_denied(resource=resource, operation="read" if is_read else "write")

    audit.record(
        actor_user_id=ctx.user_id,
        entity_type="security.rls",
        entity_id="scope",
        action="rls.denied",
        before=None,
        after={
            "resource": resource,
            "action": action,
            "scope_type": "organization",
            "scope_value": scope_value,
            "user_id": ctx.user_id,
        },
        correlation_id=ctx.correlation_id,
        organization_id=ctx.organization_id,
    )
