from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from flexicrm.context import reset_correlation_id, set_correlation_id

_VALID_CORRELATION_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")
_INCOMING_HEADERS = ("x-correlation-id", "x-request-id")


def _resolve_correlation_id(request: Request) -> str:
    """First well-formed id from the known headers, else a fresh uuid4."""

    for header in _INCOMING_HEADERS:
        incoming = request.headers.get(header)
        if incoming and _VALID_CORRELATION_ID.match(incoming):
            return incoming
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = _resolve_correlation_id(request)
        request.state.correlation_id = correlation_id
        token = set_correlation_id(correlation_id)
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers["x-correlation-id"] = correlation_id
        return response
