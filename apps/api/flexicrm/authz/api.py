from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from flexicrm.api.deps import error_response, get_current_user, require_permission
from flexicrm.authz.schemas import (
    PermissionCheckRead,
    PermissionRead,
    PermissionStateRead,
    SessionContextRead,
    SetOverrideRequest,
)
from flexicrm.authz.service import ActorUser, permission_service
from flexicrm.core.database import get_db


me_router = APIRouter(prefix="/api/me", tags=["auth"])
admin_router = APIRouter(prefix="/api/admin/permissions", tags=["admin.permissions"])


@me_router.get("", response_model=SessionContextRead)
def read_session_context(user: ActorUser = Depends(get_current_user)) -> SessionContextRead:
    return user.to_read()


@me_router.post("/refresh", response_model=SessionContextRead)
def refresh_session_context(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SessionContextRead | JSONResponse:
    """Re-read the caller's profile and overrides, for clients that cache the session context."""

    refreshed = user.reload(db)
    if not refreshed.is_active:
        return error_response(
            request,
            status_code=401,
            code="session_refresh_failed",
            message="Not authenticated",
        )
    return refreshed.to_read()


@me_router.get("/permissions/{permission_id}", response_model=PermissionCheckRead)
def check_permission(permission_id: str, user: ActorUser = Depends(get_current_user)) -> PermissionCheckRead:
    return PermissionCheckRead(permission_id=permission_id, granted=user.has_permission(permission_id))


@admin_router.get("", response_model=list[PermissionRead])
def list_permission_catalog(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PermissionRead] | JSONResponse:
    try:
        require_permission(user, "admin.permissions.manage")
        return [PermissionRead.model_validate(row) for row in permission_service.list_catalog(db)]
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="admin_permissions_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@admin_router.get("/users/{user_id}", response_model=list[PermissionStateRead])
def list_member_permission_states(
    request: Request,
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PermissionStateRead] | JSONResponse:
    try:
        require_permission(user, "admin.permissions.manage")
        return permission_service.permission_states(db, user, user_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="admin_permissions_read_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@admin_router.post("/users/{user_id}/{permission_id}/toggle", response_model=PermissionStateRead)
def toggle_member_permission(
    request: Request,
    user_id: uuid.UUID,
    permission_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PermissionStateRead | JSONResponse:
    try:
        require_permission(user, "admin.permissions.manage")
        return permission_service.toggle_permission(db, user, user_id, permission_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="admin_permissions_toggle_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@admin_router.put("/users/{user_id}/{permission_id}", response_model=PermissionStateRead)
def set_member_permission_override(
    request: Request,
    user_id: uuid.UUID,
    permission_id: str,
    dto: SetOverrideRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PermissionStateRead | JSONResponse:
    try:
        require_permission(user, "admin.permissions.manage")
        return permission_service.set_override(db, user, user_id, permission_id, dto.granted)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="admin_permissions_set_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@admin_router.delete("/users/{user_id}/{permission_id}", response_model=PermissionStateRead)
def clear_member_permission_override(
    request: Request,
    user_id: uuid.UUID,
    permission_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PermissionStateRead | JSONResponse:
    try:
        require_permission(user, "admin.permissions.manage")
        return permission_service.clear_override(db, user, user_id, permission_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="admin_permissions_clear_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
