"""Tests for the access gate: membership, role rank, plan gates and quotas.

Every denial must be recorded as a WARN audit event before the error is raised.
"""

from __future__ import annotations

import uuid

import pytest

from src.threadbase.core.access import (
    PLAN_LIMITS,
    get_plan_limits,
    has_role,
    plan_at_least,
)
from src.threadbase.core.errors import (
    InsufficientRole,
    NotAuthorized,
    PlanLimitExceeded,
    PlanUpgradeRequired,
    TenantNotFound,
)
from src.threadbase.core.scoped import TenantScopedAccessor
from src.threadbase.schemas.tenant import AuditSeverity, MemberRole, PlanTier


class TestRankHelpers:
    def test_role_order(self):
        assert has_role(MemberRole.OWNER, MemberRole.ADMIN)
        assert has_role(MemberRole.MODERATOR, MemberRole.MEMBER)
        assert has_role("VIEWER", MemberRole.VIEWER)
        assert not has_role(MemberRole.MEMBER, MemberRole.MODERATOR)
        assert not has_role(MemberRole.ADMIN, MemberRole.OWNER)

    def test_plan_order(self):
        assert plan_at_least(PlanTier.ENTERPRISE, PlanTier.STARTER)
        assert plan_at_least("STARTER", PlanTier.STARTER)
        assert not plan_at_least(PlanTier.FREE, PlanTier.STARTER)

    def test_plan_limits(self):
        free = get_plan_limits(PlanTier.FREE)
        assert (free.max_items, free.max_users, free.max_tags) == (50, 3, 20)
        assert free.ai_enrichment is False
        assert get_plan_limits("BUSINESS").max_items is None
        assert get_plan_limits(PlanTier.ENTERPRISE).max_users is None

    def test_unknown_plan_gets_free_limits(self):
        assert get_plan_limits("PLATINUM") == PLAN_LIMITS[PlanTier.FREE]


class TestAuthorize:
    @pytest.mark.asyncio
    async def test_owner_passes_every_role(self, gate, tenant_alpha, alpha_owner_id):
        membership = await gate.authorize(tenant_alpha, alpha_owner_id, MemberRole.ADMIN)
        assert membership.role == MemberRole.OWNER
        assert membership.tenant_id == tenant_alpha.id

    @pytest.mark.asyncio
    async def test_insufficient_role(self, gate, tenant_alpha, add_member, session_factory):
        viewer_id = await add_member(tenant_alpha, MemberRole.VIEWER)
        with pytest.raises(InsufficientRole):
            await gate.authorize(tenant_alpha, viewer_id, MemberRole.MEMBER)

        events = await TenantScopedAccessor(session_factory, tenant_alpha.id).list_audit_events(
            action="access.insufficient_role"
        )
        assert len(events) == 1
        assert events[0].severity == AuditSeverity.WARN
        assert events[0].actor_id == viewer_id
        assert events[0].detail == {"role": "VIEWER", "min_role": "MEMBER"}

    @pytest.mark.asyncio
    async def test_member_of_other_tenant_is_not_authorized(
        self, gate, tenant_alpha, tenant_beta, beta_owner_id, session_factory
    ):
        with pytest.raises(NotAuthorized):
            await gate.authorize(tenant_alpha, beta_owner_id)

        events = await TenantScopedAccessor(session_factory, tenant_alpha.id).list_audit_events(
            action="access.not_member"
        )
        assert [e.actor_id for e in events] == [beta_owner_id]

    @pytest.mark.asyncio
    async def test_unknown_and_malformed_users(self, gate, tenant_alpha):
        with pytest.raises(NotAuthorized):
            await gate.authorize(tenant_alpha, str(uuid.uuid4()))
        with pytest.raises(NotAuthorized):
            await gate.authorize(tenant_alpha, "not-a-uuid")

    def test_not_authorized_looks_like_missing_tenant(self):
        """Non-members get the same opaque 404 as unknown tenants."""
        error = NotAuthorized("user x is not a member of tenant y")
        assert error.status_code == TenantNotFound.status_code
        assert error.detail == TenantNotFound().detail


class TestPlanGates:
    @pytest.mark.asyncio
    async def test_free_plan_requires_upgrade(self, gate, tenant_beta, session_factory):
        with pytest.raises(PlanUpgradeRequired):
            await gate.require_plan(tenant_beta, PlanTier.STARTER, actor_id="someone")

        events = await TenantScopedAccessor(session_factory, tenant_beta.id).list_audit_events(
            action="access.plan_upgrade_required"
        )
        assert events[0].detail == {"plan": "FREE", "min_plan": "STARTER"}

    @pytest.mark.asyncio
    async def test_business_plan_passes(self, gate, tenant_alpha):
        await gate.require_plan(tenant_alpha, PlanTier.STARTER)
        await gate.require_feature(tenant_alpha, "ai_summaries")

    @pytest.mark.asyncio
    async def test_feature_toggle_disables_ai(self, gate, tenant_alpha):
        disabled = tenant_alpha.model_copy(
            update={"settings": {"ai_summaries_enabled": False}}
        )
        with pytest.raises(PlanUpgradeRequired):
            await gate.require_feature(disabled, "ai_summaries")
        assert gate.allows_ai(disabled) is False

    def test_allows_ai(self, gate, tenant_alpha, tenant_beta):
        assert gate.allows_ai(tenant_alpha) is True
        assert gate.allows_ai(tenant_beta) is False


class TestQuota:
    @pytest.mark.asyncio
    async def test_below_limit_passes(self, gate, tenant_beta):
        await gate.check_quota(tenant_beta, "items", 49)

    @pytest.mark.asyncio
    async def test_at_limit_raises(self, gate, tenant_beta, session_factory):
        with pytest.raises(PlanLimitExceeded):
            await gate.check_quota(tenant_beta, "users", 3, actor_id="admin")

        events = await TenantScopedAccessor(session_factory, tenant_beta.id).list_audit_events(
            action="access.plan_limit_exceeded"
        )
        assert events[0].detail == {"resource": "users", "limit": 3, "current": 3}

    @pytest.mark.asyncio
    async def test_unlimited_plan(self, gate, tenant_alpha):
        await gate.check_quota(tenant_alpha, "items", 1_000_000)
        await gate.check_quota(tenant_alpha, "tags", 1_000_000)
