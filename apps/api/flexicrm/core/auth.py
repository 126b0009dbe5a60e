from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from starlette.requests import Request

from flexicrm.context import bind_actor
from flexicrm.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    organization_id: str | None = None


def create_access_token(user_id: str, organization_id: str) -> str:
    settings = get_settings()
    expires_at = datetime.now(timezone.utc) + timedelta(minutes=settings.access_token_ttl_minutes)
    payload = {"sub": user_id, "org": organization_id, "exp": expires_at}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> AuthUser | None:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    subject = payload.get("sub")
    if not subject:
        return None
    organization_id = payload.get("org")
    return AuthUser(sub=str(subject), organization_id=str(organization_id) if organization_id else None)


def bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""


async def get_current_user(request: Request) -> AuthUser | None:
    token = bearer_token(request)
    if not token:
        return None

    auth_user = decode_access_token(token)
    if auth_user is not None:
        bind_actor(auth_user.sub, auth_user.organization_id)
        context = getattr(request.state, "context", None)
        if context is not None:
            context.user_id = auth_user.sub
            context.organization_id = auth_user.organization_id
    return auth_user
