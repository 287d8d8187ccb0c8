"""Prometheus metrics and Sentry integration.

Provides:
- MetricsMiddleware: HTTP request count and duration per tenant
- track_enrichment_step(): context manager timing one enrichment call
- record_ingest() / record_export(): pipeline and adapter counters
- init_sentry(): Sentry with tenant-aware before_send
- get_metrics_response(): exposition for the /metrics route
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import sentry_sdk
from prometheus_client import REGISTRY, Counter, Histogram, generate_latest
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from src.threadbase.core.tenant import get_current_tenant

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "threadbase_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code", "tenant_id"],
)

http_request_duration_seconds = Histogram(
    "threadbase_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "tenant_id"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Knowledge Metrics ────────────────────────────────────────────────────────

enrichment_calls_total = Counter(
    "threadbase_enrichment_calls_total",
    "Enrichment provider calls",
    ["step", "status"],
)

enrichment_call_duration_seconds = Histogram(
    "threadbase_enrichment_call_duration_seconds",
    "Enrichment provider call duration in seconds",
    ["step"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

knowledge_ingested_total = Counter(
    "threadbase_knowledge_ingested_total",
    "Knowledge items ingested",
    ["source_type", "enriched"],
)

knowledge_exports_total = Counter(
    "threadbase_knowledge_exports_total",
    "Knowledge exports to external wikis",
    ["integration", "status"],
)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Records request count and duration per method/endpoint/tenant.

    Skips the /metrics endpoint itself.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        tenant = getattr(request.state, "tenant", None)
        tenant_id = tenant.id if tenant is not None else "unknown"
        endpoint = request.url.path

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
            tenant_id=tenant_id,
        ).inc()
        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
            tenant_id=tenant_id,
        ).observe(duration)
        return response


@asynccontextmanager
async def track_enrichment_step(step: str) -> AsyncGenerator[None, None]:
    """Time one enrichment call and count it as success or error."""
    start_time = time.perf_counter()
    status = "success"
    try:
        yield
    except BaseException:
        status = "error"
        raise
    finally:
        enrichment_calls_total.labels(step=step, status=status).inc()
        enrichment_call_duration_seconds.labels(step=step).observe(
            time.perf_counter() - start_time
        )


def record_ingest(source_type: str, enriched: bool) -> None:
    knowledge_ingested_total.labels(source_type=source_type, enriched=str(enriched).lower()).inc()


def record_export(integration: str, success: bool) -> None:
    knowledge_exports_total.labels(
        integration=integration, status="success" if success else "error"
    ).inc()


# ── Sentry Integration ───────────────────────────────────────────────────────


def _before_send(event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any]:
    """Tag Sentry events with the tenant of the current request."""
    try:
        ctx = get_current_tenant()
    except RuntimeError:
        return event
    event.setdefault("tags", {})
    event["tags"]["tenant_id"] = ctx.tenant_id
    event["tags"]["tenant_slug"] = ctx.tenant_slug
    return event


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK with tenant-aware event tagging.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=0.1 if environment == "production" else 1.0,
        integrations=[StarletteIntegration(), FastApiIntegration()],
        before_send=_before_send,
    )


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
