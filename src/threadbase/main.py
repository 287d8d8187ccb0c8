"""FastAPI application factory.

Creates the app with tenant middleware, logging middleware, metrics middleware,
CORS, Sentry, the domain exception handlers, lifespan events for database and
service initialization, and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.threadbase.api.errors import register_exception_handlers
from src.threadbase.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.threadbase.api.middleware.tenant import TenantMiddleware
from src.threadbase.api.v1.router import router as v1_router
from src.threadbase.config import Settings, get_settings
from src.threadbase.core.access import AccessGate
from src.threadbase.core.database import SessionFactory, close_db, get_session_factory, init_db
from src.threadbase.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.threadbase.core.redis import close_redis, get_redis_pool
from src.threadbase.core.tenant import TenantResolver
from src.threadbase.integrations.listener import ListenerRegistry
from src.threadbase.knowledge.pipeline import IngestionPipeline
from src.threadbase.knowledge.service import KnowledgeService
from src.threadbase.services.audit import AuditRecorder
from src.threadbase.services.enrichment import EnrichmentProvider, get_enrichment_provider

log = structlog.get_logger(__name__)


def init_services(
    app: FastAPI,
    session_factory: SessionFactory,
    redis_client: aioredis.Redis | None = None,
    provider: EnrichmentProvider | None = None,
    settings: Settings | None = None,
) -> None:
    """Build the request-independent services and store them on app.state."""
    settings = settings or get_settings()
    audit = AuditRecorder(session_factory)
    gate = AccessGate(session_factory, audit)
    pipeline = IngestionPipeline(
        session_factory,
        audit,
        provider=provider,
        gate=gate,
        enrichment_timeout=settings.ENRICHMENT_TIMEOUT,
    )

    app.state.session_factory = session_factory
    app.state.redis = redis_client
    app.state.audit = audit
    app.state.gate = gate
    app.state.pipeline = pipeline
    app.state.resolver = TenantResolver(
        session_factory,
        redis_client=redis_client,
        audit=audit,
        base_domain=settings.PLATFORM_BASE_DOMAIN,
        cache_ttl=settings.TENANT_CACHE_TTL,
    )
    app.state.knowledge_service = KnowledgeService(
        session_factory,
        pipeline,
        gate,
        audit,
        settings=settings,
        listeners=ListenerRegistry(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and services on startup, close on shutdown."""
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    provider = get_enrichment_provider(settings)
    if provider is None:
        log.warning("startup.enrichment_disabled", hint="set ANTHROPIC_API_KEY or OPENAI_API_KEY")

    redis_client = get_redis_pool() if settings.REDIS_URL else None
    init_services(app, get_session_factory(), redis_client, provider, settings)
    log.info("startup.complete", environment=settings.ENVIRONMENT.value)

    yield

    await app.state.knowledge_service.listeners.stop_all()
    await close_redis()
    await close_db()
    log.info("shutdown.complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Threadbase API",
        version="0.1.0",
        description="Multi-tenant knowledge base built from chat conversations",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # Tenant middleware (inner -- resolves tenant from X-Tenant-ID or Host)
    app.add_middleware(TenantMiddleware)

    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(LoggingMiddleware)
    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    register_exception_handlers(app)
    app.include_router(v1_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
