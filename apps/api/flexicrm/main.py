from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from flexicrm.api.routes import router as api_router
from flexicrm.core.config import get_settings
from flexicrm.core.context import RequestContextMiddleware
from flexicrm.core.events import InternalEvent, event_bus
from flexicrm.logging import configure_logging
from flexicrm.middleware.correlation_id import CorrelationIdMiddleware
from flexicrm.middleware.rate_limit import MutationRateLimitMiddleware
from flexicrm.middleware.request_logging import RequestLoggingMiddleware
from flexicrm.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("flexicrm.lifecycle")


def _on_domain_event(event: InternalEvent) -> None:
    organization_id = event.payload.get("organization_id") if isinstance(event.payload, dict) else None
    logger.debug("domain_event", extra={"event_name": event.name, "organization_id": organization_id})


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe("*", _on_domain_event)
    event_bus.publish("system.started", {"service": "api"})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(MutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("flexicrm-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
