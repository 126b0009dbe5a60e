from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from flexicrm.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("flexicrm.request")


def _observe(request: Request, started: float, status_code: int) -> dict[str, Any]:
    duration = time.perf_counter() - started
    # Route is only matched once the inner app ran.
    path = resolve_http_path_label(request)
    observe_http_request(method=request.method, path=path, status=status_code, duration=duration)

    context = getattr(request.state, "context", None)
    return {
        "method": request.method,
        "path": path,
        "status_code": status_code,
        "duration_ms": round(duration * 1000, 2),
        "user_id": getattr(context, "user_id", None),
        "organization_id": getattr(context, "organization_id", None),
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One `http.request` line and one metrics sample per request."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.error("http.error", exc_info=True, extra=_observe(request, started, 500))
            raise

        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(level, "http.request", extra=_observe(request, started, response.status_code))
        return response
