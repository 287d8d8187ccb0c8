"""Access gate -- membership, role, plan and quota checks for a resolved tenant.

Role rank: OWNER > ADMIN > MODERATOR > MEMBER > VIEWER.
Plan rank: ENTERPRISE > BUSINESS > STARTER > FREE. FREE never passes the AI gate.

Every denial is recorded through the AuditRecorder at WARN before the typed
error is raised.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

import structlog

from src.threadbase.core.database import SessionFactory
from src.threadbase.core.errors import (
    InsufficientRole,
    NotAuthorized,
    PlanLimitExceeded,
    PlanUpgradeRequired,
)
from src.threadbase.core.scoped import TenantScopedAccessor
from src.threadbase.schemas.tenant import (
    AuditSeverity,
    MemberRole,
    MembershipRead,
    PlanTier,
    TenantRead,
)
from src.threadbase.services.audit import AuditRecorder

logger = structlog.get_logger(__name__)


ROLE_RANK: dict[MemberRole, int] = {
    MemberRole.VIEWER: 1,
    MemberRole.MEMBER: 2,
    MemberRole.MODERATOR: 3,
    MemberRole.ADMIN: 4,
    MemberRole.OWNER: 5,
}

PLAN_RANK: dict[PlanTier, int] = {
    PlanTier.FREE: 0,
    PlanTier.STARTER: 1,
    PlanTier.BUSINESS: 2,
    PlanTier.ENTERPRISE: 3,
}


# ── Plan limits ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PlanLimits:
    """Quota row for a plan. None means unlimited."""

    max_items: int | None
    max_users: int | None
    max_tags: int | None
    ai_enrichment: bool


PLAN_LIMITS: dict[PlanTier, PlanLimits] = {
    PlanTier.FREE: PlanLimits(max_items=50, max_users=3, max_tags=20, ai_enrichment=False),
    PlanTier.STARTER: PlanLimits(max_items=200, max_users=10, max_tags=100, ai_enrichment=True),
    PlanTier.BUSINESS: PlanLimits(max_items=None, max_users=50, max_tags=None, ai_enrichment=True),
    PlanTier.ENTERPRISE: PlanLimits(max_items=None, max_users=None, max_tags=None, ai_enrichment=True),
}

_QUOTA_FIELDS = {"items": "max_items", "users": "max_users", "tags": "max_tags"}


def get_plan_limits(plan: PlanTier | str) -> PlanLimits:
    """Return the quota row for a plan (unknown plans get FREE limits)."""
    try:
        return PLAN_LIMITS[PlanTier(plan)]
    except ValueError:
        return PLAN_LIMITS[PlanTier.FREE]


def has_role(role: MemberRole | str, min_role: MemberRole) -> bool:
    return ROLE_RANK[MemberRole(role)] >= ROLE_RANK[min_role]


def plan_at_least(plan: PlanTier | str, min_plan: PlanTier) -> bool:
    return PLAN_RANK[PlanTier(plan)] >= PLAN_RANK[min_plan]


# ── Gate ────────────────────────────────────────────────────────────────────


FEATURE_TOGGLES: dict[str, str] = {
    "ai_summaries": "ai_summaries_enabled",
}


class AccessGate:
    """Authorizes users and features against a resolved tenant.

    Args:
        session_factory: Session factory for membership lookups.
        audit: AuditRecorder receiving every denial.
    """

    def __init__(self, session_factory: SessionFactory, audit: AuditRecorder) -> None:
        self._session_factory = session_factory
        self._audit = audit

    async def authorize(
        self,
        tenant: TenantRead,
        user_id: str,
        min_role: MemberRole = MemberRole.VIEWER,
    ) -> MembershipRead:
        """Return the user's membership, or raise NotAuthorized / InsufficientRole."""
        membership = None
        if _is_uuid(user_id):
            accessor = TenantScopedAccessor(self._session_factory, tenant.id)
            membership = await accessor.get_membership(user_id)

        if membership is None:
            await self._deny(
                tenant,
                user_id,
                "access.not_member",
                {"min_role": min_role.value},
            )
            raise NotAuthorized(f"User {user_id} is not a member of tenant {tenant.id}")

        if not has_role(membership.role, min_role):
            await self._deny(
                tenant,
                user_id,
                "access.insufficient_role",
                {"role": membership.role.value, "min_role": min_role.value},
            )
            raise InsufficientRole(
                f"Role {membership.role.value} is below required {min_role.value}"
            )

        return membership

    async def require_plan(
        self,
        tenant: TenantRead,
        min_plan: PlanTier = PlanTier.STARTER,
        actor_id: str | None = None,
    ) -> None:
        """Raise PlanUpgradeRequired when the tenant's plan ranks below min_plan."""
        if plan_at_least(tenant.plan, min_plan):
            return
        await self._deny(
            tenant,
            actor_id,
            "access.plan_upgrade_required",
            {"plan": tenant.plan.value, "min_plan": min_plan.value},
        )
        raise PlanUpgradeRequired(
            f"Plan {tenant.plan.value} does not include this feature (requires {min_plan.value})"
        )

    async def require_feature(
        self,
        tenant: TenantRead,
        feature: str,
        actor_id: str | None = None,
    ) -> None:
        """Plan gate plus the tenant's settings toggle for the feature."""
        await self.require_plan(tenant, PlanTier.STARTER, actor_id=actor_id)
        toggle = FEATURE_TOGGLES.get(feature)
        if toggle is not None and not tenant.settings.get(toggle, True):
            await self._deny(
                tenant,
                actor_id,
                "access.feature_disabled",
                {"feature": feature},
            )
            raise PlanUpgradeRequired(f"Feature {feature} is disabled for this tenant")

    def allows_ai(self, tenant: TenantRead) -> bool:
        """Non-raising AI gate used by the pipeline to decide whether to enrich."""
        return get_plan_limits(tenant.plan).ai_enrichment and bool(
            tenant.settings.get("ai_summaries_enabled", True)
        )

    async def check_quota(
        self,
        tenant: TenantRead,
        resource: str,
        current_count: int,
        actor_id: str | None = None,
    ) -> None:
        """Raise PlanLimitExceeded when adding one more resource would exceed the plan."""
        limit = getattr(get_plan_limits(tenant.plan), _QUOTA_FIELDS[resource])
        if limit is None or current_count < limit:
            return
        await self._deny(
            tenant,
            actor_id,
            "access.plan_limit_exceeded",
            {"resource": resource, "limit": limit, "current": current_count},
        )
        raise PlanLimitExceeded(
            f"Plan {tenant.plan.value} allows {limit} {resource}; upgrade to add more"
        )

    async def _deny(
        self,
        tenant: TenantRead,
        actor_id: str | None,
        action: str,
        detail: dict[str, Any],
    ) -> None:
        logger.warning(action, tenant_id=tenant.id, actor_id=actor_id, **detail)
        await self._audit.record(
            tenant_id=tenant.id,
            actor_id=actor_id,
            action=action,
            entity="tenant",
            entity_id=tenant.id,
            detail=detail,
            severity=AuditSeverity.WARN,
        )


def _is_uuid(value: str | None) -> bool:
    try:
        uuid.UUID(str(value))
    except (TypeError, ValueError):
        return False
    return True
