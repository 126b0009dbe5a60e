from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


@dataclass
class RequestContext:
    """Per-request facts shared by middleware and handlers; auth fills in the actor."""

    request_id: str
    correlation_id: str
    client_ip: str | None
    user_id: str | None = None
    organization_id: str | None = None


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None) or ""
        request.state.context = RequestContext(
            request_id=correlation_id,
            correlation_id=correlation_id,
            client_ip=request.client.host if request.client is not None else None,
        )
        response = await call_next(request)
        response.headers["x-request-id"] = request.state.context.request_id
        return response
