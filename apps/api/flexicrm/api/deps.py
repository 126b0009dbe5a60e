from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from flexicrm.authz.service import ActorUser
from flexicrm.context import get_correlation_id
from flexicrm.core.auth import AuthUser, get_current_user as get_auth_user
from flexicrm.core.database import get_db


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def get_current_user(
    request: Request,
    auth_user: AuthUser | None = Depends(get_auth_user),
    db: Session = Depends(get_db),
) -> ActorUser:
    """Build the session context from the bearer token. Permissions are recomputed on every request."""

    if auth_user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    actor_user = ActorUser.load(db, auth_user.sub, correlation_id=correlation_id)
    if actor_user is None or (auth_user.organization_id and auth_user.organization_id != actor_user.organization_id):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return actor_user


def require_permission(user: ActorUser, permission: str) -> None:
    if not user.has_permission(permission):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def require_any_permission(user: ActorUser, permissions: list[str]) -> None:
    if not any(user.has_permission(permission) for permission in permissions):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {' or '.join(permissions)}")
