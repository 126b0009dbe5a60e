from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response

from flexicrm import audit
from flexicrm.api.deps import error_response, get_current_user, require_permission
from flexicrm.authz.api import admin_router as permissions_admin_router, me_router
from flexicrm.authz.service import ActorUser
from flexicrm.core.config import get_settings
from flexicrm.crm.api import customers_router, fields_router, rules_router
from flexicrm.landing.api import admin_router as landing_admin_router, public_router as landing_public_router
from flexicrm.metrics import generate_metrics_payload, metrics_content_type
from flexicrm.org.api import auth_router, members_router, teams_router

router = APIRouter()
router.include_router(auth_router)
router.include_router(me_router)
router.include_router(permissions_admin_router)
router.include_router(members_router)
router.include_router(teams_router)
router.include_router(fields_router)
router.include_router(customers_router)
router.include_router(rules_router)
router.include_router(landing_admin_router)
router.include_router(landing_public_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: ActorUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    require_permission(user, "admin.settings.manage")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())


@router.get("/api/admin/audit", response_model=list[dict[str, Any]], tags=["admin.audit"])
def list_audit_entries(
    request: Request,
    entity_type: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    user: ActorUser = Depends(get_current_user),
) -> list[dict[str, Any]] | JSONResponse:
    try:
        require_permission(user, "admin.audit.read")
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="admin_audit_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    return audit.entries_for_organization(user.organization_id, entity_type=entity_type, limit=limit)
