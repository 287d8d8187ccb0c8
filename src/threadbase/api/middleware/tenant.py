"""Tenant resolution middleware.

Resolves the tenant from:
1. X-Tenant-ID header (explicit id, service-to-service calls)
2. Host header (custom domain or platform subdomain)

The resolved TenantRead is stored on request.state.tenant and the
TenantContext is set in contextvars for the request scope. Unknown or
inactive tenants get the same opaque 404 as a non-member would.
"""

from __future__ import annotations

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.threadbase.core.errors import TenantNotFound
from src.threadbase.core.tenant import (
    TenantContext,
    reset_tenant_context,
    set_tenant_context,
)

SKIP_TENANT_PATHS = (
    "/health",
    "/metrics",
    "/docs",
    "/redoc",
    "/openapi.json",
    "/api/v1/tenants",
)


class TenantMiddleware(BaseHTTPMiddleware):
    """Resolves the tenant of every request through app.state.resolver.

    Paths in SKIP_TENANT_PATHS are excluded from tenant resolution.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if any(path.startswith(skip) for skip in SKIP_TENANT_PATHS):
            return await call_next(request)

        host_or_id = request.headers.get("X-Tenant-ID") or request.headers.get("host", "")
        try:
            tenant = await request.app.state.resolver.resolve_tenant(host_or_id)
        except TenantNotFound as exc:
            return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

        request.state.tenant = tenant
        token = set_tenant_context(
            TenantContext(tenant_id=tenant.id, tenant_slug=tenant.slug, plan=tenant.plan)
        )
        try:
            return await call_next(request)
        finally:
            reset_tenant_context(token)
