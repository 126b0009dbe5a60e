from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


# HTTP
http_requests_total = Counter("http_requests_total", "Total HTTP requests", ["method", "path", "status"])
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)
rate_limited_requests_total = Counter(
    "rate_limited_requests_total",
    "Requests rejected by the rate limiter",
    ["route_group"],
)

# Tenancy and permissions
rls_denied_total = Counter(
    "rls_denied_total",
    "Reads and writes refused because they crossed the organization boundary",
    ["resource", "operation"],
)
permission_overrides_changed_total = Counter(
    "permission_overrides_changed_total",
    "Permission override mutations by kind",
    ["action"],
)

# CRM and landing pages
crm_customers_created_total = Counter(
    "crm_customers_created_total",
    "Customer records created, by channel",
    ["source"],
)
landing_leads_submitted_total = Counter(
    "landing_leads_submitted_total",
    "Leads captured through public landing pages",
)
landing_page_unavailable_total = Counter(
    "landing_page_unavailable_total",
    "Public landing page lookups that resolved to nothing",
)


_UUID_SEGMENT = re.compile(r"/[0-9a-fA-F]{8}(?:-[0-9a-fA-F]{4}){3}-[0-9a-fA-F]{12}(?=/|$)")
_NUMERIC_SEGMENT = re.compile(r"/\d+(?=/|$)")
_ROUTE_PARAM = re.compile(r"\{[^{}]+\}")


def resolve_http_path_label(request: Request) -> str:
    """Route template with every parameter collapsed to ``{id}`` so labels stay bounded."""

    route = request.scope.get("route")
    template = getattr(route, "path_format", None) or getattr(route, "path", None)
    if isinstance(template, str) and template:
        return _ROUTE_PARAM.sub("{id}", template)
    path = _UUID_SEGMENT.sub("/{id}", request.url.path)
    return _NUMERIC_SEGMENT.sub("/{id}", path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_rate_limited(route_group: str) -> None:
    rate_limited_requests_total.labels(route_group=route_group).inc()


def observe_rls_denied(resource: str, operation: str) -> None:
    rls_denied_total.labels(resource=resource, operation=operation).inc()


def observe_permission_override(action: str) -> None:
    permission_overrides_changed_total.labels(action=action).inc()


def observe_customer_created(source: str) -> None:
    crm_customers_created_total.labels(source=source).inc()


def observe_landing_lead() -> None:
    landing_leads_submitted_total.inc()


def observe_landing_unavailable() -> None:
    landing_page_unavailable_total.inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
