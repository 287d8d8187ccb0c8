"""Tests for host parsing and tenant resolution.

Covers:
- parse_host: ports, case, non-tenant labels, base domain, dev hosts, custom domains
- TenantResolver: by id, subdomain and custom domain; inactive and unknown tenants
- Redis lookup cache: hits, writes, status recheck, invalidation and degradation
  when Redis fails
- Failed resolutions recorded as system-wide audit events
"""

from __future__ import annotations

import uuid

import pytest
from sqlalchemy import update

from src.threadbase.core.errors import TenantNotFound
from src.threadbase.core.scoped import TenantScopedAccessor, list_system_audit_events
from src.threadbase.core.tenant import (
    HostLookup,
    TenantContext,
    TenantResolver,
    get_current_tenant,
    parse_host,
    reset_tenant_context,
    set_tenant_context,
)
from src.threadbase.models import Tenant
from src.threadbase.schemas.tenant import AuditSeverity, PlanTier, TenantStatus
from src.threadbase.services.tenant_provisioning import change_tenant_status


BASE = "threadbase.io"


async def _set_status(session_factory, tenant_id: str, status: TenantStatus) -> None:
    async with session_factory() as session:
        await session.execute(
            update(Tenant).where(Tenant.id == uuid.UUID(tenant_id)).values(status=status.value)
        )
        await session.commit()


class TestParseHost:
    @pytest.mark.parametrize(
        ("host", "expected"),
        [
            ("alpha.threadbase.io", HostLookup("subdomain", "alpha")),
            ("alpha.threadbase.io:8443", HostLookup("subdomain", "alpha")),
            ("ALPHA.Threadbase.IO", HostLookup("subdomain", "alpha")),
            ("www.alpha.threadbase.io", HostLookup("subdomain", "alpha")),
            ("alpha.localhost:3000", HostLookup("subdomain", "alpha")),
            ("alpha.vercel.app", HostLookup("subdomain", "alpha")),
            ("kb.beta-corp.com", HostLookup("domain", "kb.beta-corp.com")),
            ("www.beta-corp.com", HostLookup("domain", "beta-corp.com")),
            ("kb.beta-corp.com.", HostLookup("domain", "kb.beta-corp.com")),
        ],
    )
    def test_tenant_hosts(self, host, expected):
        assert parse_host(host, BASE) == expected

    @pytest.mark.parametrize(
        "host",
        ["", "threadbase.io", "www.threadbase.io", "app.threadbase.io", "localhost", "localhost:8000"],
    )
    def test_hosts_without_tenant(self, host):
        assert parse_host(host, BASE) is None

    def test_numeric_tld_is_not_a_domain(self):
        """IP addresses carry no tenant."""
        assert parse_host("10.0.0.12", BASE) is None


class TestTenantResolver:
    @pytest.mark.asyncio
    async def test_resolve_by_subdomain(self, session_factory, tenant_alpha):
        resolver = TenantResolver(session_factory, base_domain=BASE)
        tenant = await resolver.resolve_tenant("alpha.threadbase.io")
        assert tenant.id == tenant_alpha.id
        assert tenant.plan == PlanTier.BUSINESS

    @pytest.mark.asyncio
    async def test_resolve_by_custom_domain(self, session_factory, tenant_beta):
        resolver = TenantResolver(session_factory, base_domain=BASE)
        tenant = await resolver.resolve_tenant("kb.beta-corp.com")
        assert tenant.id == tenant_beta.id

    @pytest.mark.asyncio
    async def test_resolve_by_id(self, session_factory, tenant_alpha):
        resolver = TenantResolver(session_factory, base_domain=BASE)
        tenant = await resolver.resolve_tenant(tenant_alpha.id)
        assert tenant.slug == "alpha"

    @pytest.mark.asyncio
    async def test_unknown_host_raises(self, session_factory, tenant_alpha):
        resolver = TenantResolver(session_factory, base_domain=BASE)
        with pytest.raises(TenantNotFound):
            await resolver.resolve_tenant("nobody.threadbase.io")

    @pytest.mark.asyncio
    async def test_unknown_id_raises(self, session_factory, tenant_alpha):
        resolver = TenantResolver(session_factory, base_domain=BASE)
        with pytest.raises(TenantNotFound):
            await resolver.resolve_tenant(str(uuid.uuid4()))

    @pytest.mark.asyncio
    async def test_suspended_tenant_is_not_resolved(self, session_factory, tenant_alpha):
        await _set_status(session_factory, tenant_alpha.id, TenantStatus.SUSPENDED)

        resolver = TenantResolver(session_factory, base_domain=BASE)
        with pytest.raises(TenantNotFound):
            await resolver.resolve_tenant("alpha.threadbase.io")

        # Loading by id still works for administrative reads
        loaded = await resolver.get_tenant(tenant_alpha.id)
        assert loaded is not None
        assert loaded.status == TenantStatus.SUSPENDED

    @pytest.mark.asyncio
    async def test_failed_resolution_is_audited(self, session_factory, audit, tenant_alpha):
        resolver = TenantResolver(session_factory, audit=audit, base_domain=BASE)
        with pytest.raises(TenantNotFound):
            await resolver.resolve_tenant("ghost.threadbase.io")

        events = await list_system_audit_events(session_factory, action="tenant.resolution_failed")
        assert len(events) == 1
        assert events[0].tenant_id is None
        assert events[0].severity == AuditSeverity.WARN
        assert events[0].detail == {"host_or_id": "ghost.threadbase.io"}

    @pytest.mark.asyncio
    async def test_not_found_detail_is_opaque(self, session_factory, tenant_alpha):
        resolver = TenantResolver(session_factory, base_domain=BASE)
        with pytest.raises(TenantNotFound) as exc_info:
            await resolver.resolve_tenant("ghost.threadbase.io")
        assert exc_info.value.detail == "Tenant not found"
        assert exc_info.value.status_code == 404


class TestResolverCache:
    @pytest.mark.asyncio
    async def test_resolution_is_cached(self, session_factory, tenant_alpha, redis_factory):
        redis = redis_factory()
        resolver = TenantResolver(session_factory, redis_client=redis, base_domain=BASE)

        await resolver.resolve_tenant("alpha.threadbase.io")
        assert redis.store["tenant:lookup:alpha.threadbase.io"] == tenant_alpha.id
        assert f"tenant:record:{tenant_alpha.id}" in redis.store

    @pytest.mark.asyncio
    async def test_cache_hit_skips_database(self, session_factory, tenant_alpha, redis_factory):
        redis = redis_factory()
        cached = tenant_alpha.model_copy(update={"name": "From Cache"})
        redis.store["tenant:lookup:alpha.threadbase.io"] = tenant_alpha.id
        redis.store[f"tenant:record:{tenant_alpha.id}"] = cached.model_dump_json()

        resolver = TenantResolver(session_factory, redis_client=redis, base_domain=BASE)
        tenant = await resolver.resolve_tenant("alpha.threadbase.io")
        assert tenant.name == "From Cache"

    @pytest.mark.asyncio
    async def test_cached_inactive_tenant_is_rechecked(
        self, session_factory, tenant_alpha, redis_factory
    ):
        redis = redis_factory()
        resolver = TenantResolver(session_factory, redis_client=redis, base_domain=BASE)
        await resolver.resolve_tenant("alpha.threadbase.io")

        # Another process wrote the suspension into the cached record
        suspended = tenant_alpha.model_copy(update={"status": TenantStatus.SUSPENDED})
        redis.store[f"tenant:record:{tenant_alpha.id}"] = suspended.model_dump_json()
        await _set_status(session_factory, tenant_alpha.id, TenantStatus.SUSPENDED)

        with pytest.raises(TenantNotFound):
            await resolver.resolve_tenant("alpha.threadbase.io")

    @pytest.mark.asyncio
    async def test_invalidate_drops_every_alias(
        self, session_factory, tenant_alpha, redis_factory
    ):
        redis = redis_factory()
        resolver = TenantResolver(session_factory, redis_client=redis, base_domain=BASE)
        await resolver.resolve_tenant("alpha.threadbase.io")
        await resolver.resolve_tenant(tenant_alpha.id)

        await _set_status(session_factory, tenant_alpha.id, TenantStatus.SUSPENDED)
        await resolver.invalidate(tenant_alpha.id)

        for key in ("alpha.threadbase.io", tenant_alpha.id):
            with pytest.raises(TenantNotFound):
                await resolver.resolve_tenant(key)

    @pytest.mark.asyncio
    async def test_status_change_invalidates_cache(
        self, session_factory, audit, tenant_alpha, alpha_owner_id, redis_factory
    ):
        redis = redis_factory()
        resolver = TenantResolver(session_factory, redis_client=redis, base_domain=BASE)
        await resolver.resolve_tenant("alpha.threadbase.io")

        changed = await change_tenant_status(
            session_factory,
            tenant_alpha.id,
            TenantStatus.SUSPENDED,
            actor_id=alpha_owner_id,
            resolver=resolver,
            audit=audit,
        )
        assert changed.status == TenantStatus.SUSPENDED
        with pytest.raises(TenantNotFound):
            await resolver.resolve_tenant("alpha.threadbase.io")

        await change_tenant_status(
            session_factory, tenant_alpha.id, TenantStatus.ACTIVE, resolver=resolver
        )
        assert (await resolver.resolve_tenant("alpha.threadbase.io")).id == tenant_alpha.id

        events = await TenantScopedAccessor(session_factory, tenant_alpha.id).list_audit_events(
            action="tenant.status_changed"
        )
        assert events[0].detail == {"from": "ACTIVE", "to": "SUSPENDED"}

    @pytest.mark.asyncio
    async def test_status_change_of_unknown_tenant(self, session_factory):
        with pytest.raises(TenantNotFound):
            await change_tenant_status(session_factory, str(uuid.uuid4()), TenantStatus.CANCELLED)

    @pytest.mark.asyncio
    async def test_broken_cache_falls_back_to_database(
        self, session_factory, tenant_alpha, redis_factory
    ):
        resolver = TenantResolver(
            session_factory, redis_client=redis_factory(broken=True), base_domain=BASE
        )
        tenant = await resolver.resolve_tenant("alpha.threadbase.io")
        assert tenant.id == tenant_alpha.id


class TestTenantContext:
    def test_context_not_set_raises(self):
        with pytest.raises(RuntimeError):
            get_current_tenant()

    def test_set_and_reset(self):
        ctx = TenantContext(tenant_id="t-1", tenant_slug="alpha", plan=PlanTier.FREE)
        token = set_tenant_context(ctx)
        try:
            assert get_current_tenant() == ctx
        finally:
            reset_tenant_context(token)
        with pytest.raises(RuntimeError):
            get_current_tenant()
