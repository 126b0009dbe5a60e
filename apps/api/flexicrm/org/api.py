from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from flexicrm.api.deps import error_response, get_current_user, require_any_permission, require_permission
from flexicrm.authz.service import ActorUser
from flexicrm.core.config import get_settings
from flexicrm.core.database import get_db
from flexicrm.org.schemas import (
    LoginRequest,
    MemberCreate,
    MemberRead,
    MemberUpdate,
    RegisterOrganizationRequest,
    TeamCreate,
    TeamRead,
    TeamUpdate,
    TokenResponse,
)
from flexicrm.org.service import auth_service, member_service, team_service

auth_router = APIRouter(prefix="/api/auth", tags=["auth"])
members_router = APIRouter(prefix="/api/admin/members", tags=["admin.members"])
teams_router = APIRouter(prefix="/api/admin/teams", tags=["admin.teams"])

_MEMBER_READ_PERMISSIONS = ["admin.users.read", "admin.users.manage"]


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


@auth_router.post("/login", response_model=TokenResponse)
def login(request: Request, dto: LoginRequest, db: Session = Depends(get_db)) -> TokenResponse | JSONResponse:
    try:
        return auth_service.login(db, dto)
    except HTTPException as exc:
        return _failed(request, exc, "auth_login_failed")


@auth_router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
def register(
    request: Request,
    dto: RegisterOrganizationRequest,
    db: Session = Depends(get_db),
) -> TokenResponse | JSONResponse:
    try:
        if not get_settings().registration_enabled:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="registration is disabled")
        return auth_service.provision_organization(db, dto)
    except HTTPException as exc:
        return _failed(request, exc, "auth_register_failed")


@members_router.get("", response_model=list[MemberRead])
def list_members(
    request: Request,
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[MemberRead] | JSONResponse:
    try:
        require_any_permission(user, _MEMBER_READ_PERMISSIONS)
        return member_service.list_members(db, user, include_inactive=include_inactive)
    except HTTPException as exc:
        return _failed(request, exc, "admin_members_list_failed")


@members_router.post("", response_model=MemberRead, status_code=status.HTTP_201_CREATED)
def create_member(
    request: Request,
    dto: MemberCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MemberRead | JSONResponse:
    try:
        require_permission(user, "admin.users.manage")
        return member_service.create_member(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "admin_members_create_failed")


@members_router.patch("/{user_id}", response_model=MemberRead)
def update_member(
    request: Request,
    user_id: uuid.UUID,
    dto: MemberUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MemberRead | JSONResponse:
    try:
        require_permission(user, "admin.users.manage")
        return member_service.update_member(db, user, user_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "admin_members_update_failed")


@members_router.post("/{user_id}/deactivate", response_model=MemberRead)
def deactivate_member(
    request: Request,
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MemberRead | JSONResponse:
    try:
        require_permission(user, "admin.users.manage")
        return member_service.set_active(db, user, user_id, False)
    except HTTPException as exc:
        return _failed(request, exc, "admin_members_deactivate_failed")


@members_router.post("/{user_id}/activate", response_model=MemberRead)
def activate_member(
    request: Request,
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MemberRead | JSONResponse:
    try:
        require_permission(user, "admin.users.manage")
        return member_service.set_active(db, user, user_id, True)
    except HTTPException as exc:
        return _failed(request, exc, "admin_members_activate_failed")


@teams_router.get("", response_model=list[TeamRead])
def list_teams(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TeamRead] | JSONResponse:
    try:
        require_any_permission(user, [*_MEMBER_READ_PERMISSIONS, "admin.teams.manage"])
        return team_service.list_teams(db, user)
    except HTTPException as exc:
        return _failed(request, exc, "admin_teams_list_failed")


@teams_router.get("/lead-candidates", response_model=list[MemberRead])
def list_lead_candidates(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[MemberRead] | JSONResponse:
    try:
        require_permission(user, "admin.teams.manage")
        return team_service.lead_candidates(db, user)
    except HTTPException as exc:
        return _failed(request, exc, "admin_teams_candidates_failed")


@teams_router.post("", response_model=TeamRead, status_code=status.HTTP_201_CREATED)
def create_team(
    request: Request,
    dto: TeamCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TeamRead | JSONResponse:
    try:
        require_permission(user, "admin.teams.manage")
        return team_service.create_team(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "admin_teams_create_failed")


@teams_router.patch("/{team_id}", response_model=TeamRead)
def update_team(
    request: Request,
    team_id: uuid.UUID,
    dto: TeamUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TeamRead | JSONResponse:
    try:
        require_permission(user, "admin.teams.manage")
        return team_service.update_team(db, user, team_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "admin_teams_update_failed")


@teams_router.delete("/{team_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_team(
    request: Request,
    team_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "admin.teams.manage")
        team_service.delete_team(db, user, team_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return _failed(request, exc, "admin_teams_delete_failed")
