"""Tenant resolution and request-scoped tenant context.

A tenant is addressed by an explicit id, a custom domain (kb.acme.com) or a
subdomain of the platform base domain (acme.threadbase.io). TenantResolver
turns any of those into a TenantRead, accepting only ACTIVE tenants, and
caches the lookup in Redis when a client is configured.

The TenantContext is set by middleware at the start of each request and is
accessible anywhere in the call stack via get_current_tenant().
"""

from __future__ import annotations

import contextvars
import re
import uuid
from dataclasses import dataclass
from typing import Literal

import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError
from sqlalchemy import select

from src.threadbase.core.database import SessionFactory
from src.threadbase.core.errors import TenantNotFound
from src.threadbase.models import Tenant
from src.threadbase.schemas.tenant import AuditSeverity, PlanTier, TenantRead, TenantStatus
from src.threadbase.services.audit import AuditRecorder

logger = structlog.get_logger(__name__)

# ── Tenant Context ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TenantContext:
    """Immutable tenant context for the current request."""

    tenant_id: str
    tenant_slug: str
    plan: PlanTier


_tenant_context: contextvars.ContextVar[TenantContext] = contextvars.ContextVar("tenant_context")


def get_current_tenant() -> TenantContext:
    """Get the tenant context for the current request.

    Raises RuntimeError if no tenant context has been set (i.e., the call
    is not within a tenant-scoped request).
    """
    try:
        return _tenant_context.get()
    except LookupError:
        raise RuntimeError("No tenant context set -- request is not tenant-scoped")


def set_tenant_context(ctx: TenantContext) -> contextvars.Token[TenantContext]:
    """Set the tenant context for the current request. Returns a token for reset."""
    return _tenant_context.set(ctx)


def reset_tenant_context(token: contextvars.Token[TenantContext]) -> None:
    _tenant_context.reset(token)


# ── Host parsing ────────────────────────────────────────────────────────────

NON_TENANT_SUBDOMAINS = frozenset({"www", "app", "api", "admin"})
DEV_HOST_SUFFIXES = (".localhost", ".vercel.app", ".netlify.app")
_TLD = re.compile(r"\.[a-z]{2,}$")


@dataclass(frozen=True)
class HostLookup:
    """What a host header points at: a custom domain or a subdomain label."""

    kind: Literal["domain", "subdomain"]
    value: str


def parse_host(host: str, base_domain: str) -> HostLookup | None:
    """Derive the tenant lookup key from a Host header.

    - port is dropped and the host lowercased
    - a leading www/app/api/admin label is stripped
    - hosts under base_domain and development hosts (localhost, *.vercel.app,
      *.netlify.app) resolve by their leftmost label as subdomain
    - any other dotted host with an alphabetic TLD is a custom domain

    Returns None when the host carries no tenant (e.g. the bare base domain).
    """
    host = (host or "").strip().lower().split(":", 1)[0].rstrip(".")
    base_domain = base_domain.strip().lower().rstrip(".")
    if not host:
        return None

    labels = host.split(".")
    if len(labels) > 2 and labels[0] in NON_TENANT_SUBDOMAINS:
        labels = labels[1:]
        host = ".".join(labels)

    if host == base_domain or host == "localhost":
        return None

    if host.endswith("." + base_domain) or host.endswith(DEV_HOST_SUFFIXES):
        if labels[0] in NON_TENANT_SUBDOMAINS:
            return None
        return HostLookup("subdomain", labels[0])

    if len(labels) >= 2 and _TLD.search(host):
        return HostLookup("domain", host)

    return None


def model_to_tenant(model: Tenant) -> TenantRead:
    return TenantRead(
        id=str(model.id),
        name=model.name,
        slug=model.slug,
        subdomain=model.subdomain,
        domain=model.domain,
        plan=model.plan,
        status=model.status,
        settings=model.settings or {},
        created_at=model.created_at,
    )


def _parse_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(value)
    except (TypeError, ValueError):
        return None


async def load_tenant(session_factory: SessionFactory, tenant_id: str) -> TenantRead | None:
    """Load a tenant by id regardless of status. Malformed ids load nothing."""
    tenant_uuid = _parse_uuid(str(tenant_id))
    if tenant_uuid is None:
        return None
    async with session_factory() as session:
        model = await session.get(Tenant, tenant_uuid)
        return model_to_tenant(model) if model else None


# ── Resolver ────────────────────────────────────────────────────────────────


class TenantResolver:
    """Resolve a tenant from an explicit id or a Host header value.

    Args:
        session_factory: Session factory for the tenants table.
        redis_client: Optional Redis client used as a lookup cache.
        audit: Optional AuditRecorder; failed resolutions are recorded as
            system-wide WARN events.
        base_domain: Platform base domain (e.g. "threadbase.io").
        cache_ttl: Cache lifetime in seconds.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        redis_client: aioredis.Redis | None = None,
        audit: AuditRecorder | None = None,
        base_domain: str = "threadbase.io",
        cache_ttl: int = 300,
    ) -> None:
        self._session_factory = session_factory
        self._redis = redis_client
        self._audit = audit
        self._base_domain = base_domain
        self._cache_ttl = cache_ttl

    async def resolve_tenant(self, host_or_id: str) -> TenantRead:
        """Resolve an ACTIVE tenant or raise TenantNotFound."""
        key = (host_or_id or "").strip()
        cached = await self._cache_get(key)
        if cached is not None:
            return cached

        tenant = await self._lookup(key)
        if tenant is None:
            logger.warning("tenant.resolution_failed", host_or_id=key)
            if self._audit is not None:
                await self._audit.record(
                    tenant_id=None,
                    actor_id=None,
                    action="tenant.resolution_failed",
                    entity="tenant",
                    detail={"host_or_id": key},
                    severity=AuditSeverity.WARN,
                )
            raise TenantNotFound(f"Tenant not found: {key}")

        await self._cache_set(key, tenant)
        return tenant

    async def get_tenant(self, tenant_id: str) -> TenantRead | None:
        """Load a tenant by id regardless of status."""
        return await load_tenant(self._session_factory, tenant_id)

    async def _lookup(self, key: str) -> TenantRead | None:
        tenant_uuid = _parse_uuid(key)
        if tenant_uuid is not None:
            clause = Tenant.id == tenant_uuid
        else:
            lookup = parse_host(key, self._base_domain)
            if lookup is None:
                return None
            column = Tenant.domain if lookup.kind == "domain" else Tenant.subdomain
            clause = column == lookup.value

        async with self._session_factory() as session:
            stmt = select(Tenant).where(clause, Tenant.status == TenantStatus.ACTIVE.value)
            model = (await session.execute(stmt)).scalar_one_or_none()
            return model_to_tenant(model) if model else None

    # ── Cache ───────────────────────────────────────────────────────────────
    #
    # tenant:lookup:<host or id> holds a tenant id, tenant:record:<id> the
    # serialized tenant. Dropping the record invalidates every alias at once.

    async def invalidate(self, tenant_id: str) -> None:
        """Drop the cached record of a tenant, e.g. after a status or plan change."""
        if self._redis is None:
            return
        try:
            await self._redis.delete(f"tenant:record:{tenant_id}")
        except Exception as exc:
            logger.warning("tenant.cache_invalidate_failed", tenant_id=tenant_id, error=str(exc))

    async def _cache_get(self, key: str) -> TenantRead | None:
        if self._redis is None or not key:
            return None
        try:
            tenant_id = await self._redis.get(f"tenant:lookup:{key}")
            cached = await self._redis.get(f"tenant:record:{tenant_id}") if tenant_id else None
        except Exception as exc:
            logger.warning("tenant.cache_get_failed", host_or_id=key, error=str(exc))
            return None
        if not cached:
            return None
        try:
            tenant = TenantRead.model_validate_json(cached)
        except ValidationError:
            logger.warning("tenant.cache_entry_invalid", host_or_id=key)
            return None
        if tenant.status != TenantStatus.ACTIVE:
            return None
        return tenant

    async def _cache_set(self, key: str, tenant: TenantRead) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.set(f"tenant:lookup:{key}", tenant.id, ex=self._cache_ttl)
            await self._redis.set(
                f"tenant:record:{tenant.id}", tenant.model_dump_json(), ex=self._cache_ttl
            )
        except Exception as exc:
            logger.warning("tenant.cache_set_failed", host_or_id=key, error=str(exc))
