from __future__ import annotations

import math
import re
import threading
import time
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from flexicrm.api.deps import error_response
from flexicrm.core.auth import bearer_token, decode_access_token
from flexicrm.core.config import Settings, get_settings
from flexicrm.metrics import observe_rate_limited

WINDOW_SECONDS = 60
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
_PUBLIC_LEAD_PATH = re.compile(r"^/api/public/landing-pages/[^/]+/leads/?$")


@dataclass(frozen=True)
class Quota:
    subject: str
    route_group: str
    capacity: int


@dataclass
class _Bucket:
    tokens: float
    refilled_at: float


class TokenBucketLimiter:
    """Per (subject, route group) buckets that refill continuously over the window."""

    def __init__(self, window_seconds: int = WINDOW_SECONDS) -> None:
        self.window_seconds = window_seconds
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _Bucket] = {}

    def acquire(self, quota: Quota) -> int:
        """Take one token; returns 0 on success or the seconds to wait."""

        if quota.capacity <= 0:
            return self.window_seconds

        rate = quota.capacity / float(self.window_seconds)
        now = time.monotonic()
        with self._lock:
            bucket = self._buckets.setdefault(
                (quota.subject, quota.route_group),
                _Bucket(tokens=float(quota.capacity), refilled_at=now),
            )
            bucket.tokens = min(float(quota.capacity), bucket.tokens + max(0.0, now - bucket.refilled_at) * rate)
            bucket.refilled_at = now

            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return 0
            return max(1, math.ceil((1.0 - bucket.tokens) / rate))

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = TokenBucketLimiter()


def quota_for(request: Request, settings: Settings) -> Quota | None:
    if request.method.upper() not in MUTATING_METHODS:
        return None

    path = request.url.path
    if path.startswith("/api/crm"):
        parts = [part for part in path.split("/") if part]
        return Quota(
            subject=_resolve_user_id(request),
            route_group=parts[2] if len(parts) >= 3 else "crm",
            capacity=settings.rate_limit_crm_mutations_per_minute,
        )
    if _PUBLIC_LEAD_PATH.match(path):
        return Quota(
            subject=_resolve_client_ip(request),
            route_group="public.leads",
            capacity=settings.rate_limit_public_submissions_per_minute,
        )
    return None


class MutationRateLimitMiddleware(BaseHTTPMiddleware):
    """Token buckets for authenticated CRM writes and anonymous lead submissions."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        quota = None if settings.rate_limit_disabled else quota_for(request, settings)
        if quota is None:
            return await call_next(request)

        retry_after = _limiter.acquire(quota)
        if retry_after == 0:
            return await call_next(request)

        observe_rate_limited(quota.route_group)
        response = error_response(
            request,
            status_code=429,
            code="RATE_LIMITED",
            message="Too many requests",
        )
        response.headers["Retry-After"] = str(retry_after)
        return response


def _resolve_client_ip(request: Request) -> str:
    context = getattr(request.state, "context", None)
    client_ip = getattr(context, "client_ip", None)
    if client_ip is None and request.client is not None:
        client_ip = request.client.host
    return client_ip or "unknown"


def _resolve_user_id(request: Request) -> str:
    token = bearer_token(request)
    if not token:
        return "anonymous"
    auth_user = decode_access_token(token)
    return auth_user.sub if auth_user is not None else "anonymous"


def reset_rate_limiter() -> None:
    _limiter.clear()
