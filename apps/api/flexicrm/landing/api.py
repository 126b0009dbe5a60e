from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from flexicrm.api.deps import error_response, get_current_user, require_permission
from flexicrm.authz.service import ActorUser
from flexicrm.core.database import get_db
from flexicrm.landing.schemas import (
    LandingPageCreate,
    LandingPageRead,
    LandingPageUpdate,
    LeadAccepted,
    LeadSubmission,
    PublicLandingPageRead,
)
from flexicrm.landing.service import landing_page_service
from flexicrm.metrics import observe_landing_unavailable

admin_router = APIRouter(prefix="/api/admin/landing-pages", tags=["admin.landing"])
public_router = APIRouter(prefix="/api/public/landing-pages", tags=["public.landing"])

# Same bytes for missing and inactive slugs.
UNAVAILABLE_BODY = {"code": "landing_page_unavailable", "message": "Page not found or is no longer active."}


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


def _unavailable() -> JSONResponse:
    observe_landing_unavailable()
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=UNAVAILABLE_BODY)


@admin_router.get("", response_model=list[LandingPageRead])
def list_landing_pages(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LandingPageRead] | JSONResponse:
    try:
        require_permission(user, "admin.settings.manage")
        return landing_page_service.list_pages(db, user)
    except HTTPException as exc:
        return _failed(request, exc, "admin_landing_list_failed")


@admin_router.post("", response_model=LandingPageRead, status_code=status.HTTP_201_CREATED)
def create_landing_page(
    request: Request,
    dto: LandingPageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LandingPageRead | JSONResponse:
    try:
        require_permission(user, "admin.settings.manage")
        return landing_page_service.create_page(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "admin_landing_create_failed")


@admin_router.patch("/{page_id}", response_model=LandingPageRead)
def update_landing_page(
    request: Request,
    page_id: uuid.UUID,
    dto: LandingPageUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LandingPageRead | JSONResponse:
    try:
        require_permission(user, "admin.settings.manage")
        return landing_page_service.update_page(db, user, page_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "admin_landing_update_failed")


@admin_router.delete("/{page_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_landing_page(
    request: Request,
    page_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "admin.settings.manage")
        landing_page_service.delete_page(db, user, page_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return _failed(request, exc, "admin_landing_delete_failed")


@public_router.get("/{slug}", response_model=PublicLandingPageRead)
def read_public_landing_page(slug: str, db: Session = Depends(get_db)) -> PublicLandingPageRead | JSONResponse:
    page = landing_page_service.resolve_public(db, slug)
    if page is None:
        return _unavailable()
    return landing_page_service.public_view(page)


@public_router.post("/{slug}/leads", response_model=LeadAccepted, status_code=status.HTTP_201_CREATED)
def submit_landing_lead(
    request: Request,
    slug: str,
    dto: LeadSubmission,
    db: Session = Depends(get_db),
) -> LeadAccepted | JSONResponse:
    page = landing_page_service.resolve_public(db, slug)
    if page is None:
        return _unavailable()
    try:
        return landing_page_service.submit_lead(db, page, dto.phone)
    except HTTPException as exc:
        return _failed(request, exc, "public_landing_lead_failed")
