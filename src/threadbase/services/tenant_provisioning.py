"""Tenant provisioning and membership management.

Handles creating new tenants together with their single OWNER membership,
adding members within the plan's user quota, changing member roles and
moving tenants between statuses.
This is the core of the multi-tenant onboarding flow.
"""

from __future__ import annotations

import re

import structlog
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.threadbase.core.access import AccessGate
from src.threadbase.core.database import SessionFactory, bound_session_factory
from src.threadbase.core.errors import InvalidInput, PersistenceError, TenantNotFound
from src.threadbase.core.scoped import TenantScopedAccessor, coerce_uuid
from src.threadbase.core.tenant import TenantResolver, model_to_tenant
from src.threadbase.models import Tenant, User
from src.threadbase.schemas.tenant import (
    MemberRole,
    MembershipRead,
    PlanTier,
    TenantRead,
    TenantStatus,
)
from src.threadbase.services.audit import AuditRecorder

logger = structlog.get_logger(__name__)

# Slug validation: lowercase alphanumeric + hyphens, 3-50 chars
SLUG_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{1,48}[a-z0-9]$")
RESERVED_SLUGS = frozenset({"www", "app", "api", "admin"})


async def get_or_create_user(session: AsyncSession, email: str, name: str | None = None) -> User:
    """Return the user with this email, creating it inside the given session."""
    email = email.strip().lower()
    user = (await session.execute(select(User).where(User.email == email))).scalar_one_or_none()
    if user is None:
        user = User(email=email, name=name)
        session.add(user)
        await session.flush()
    return user


async def provision_tenant(
    session_factory: SessionFactory,
    name: str,
    slug: str,
    owner_email: str,
    owner_name: str | None = None,
    plan: PlanTier = PlanTier.FREE,
    domain: str | None = None,
    audit: AuditRecorder | None = None,
) -> TenantRead:
    """Create an ACTIVE tenant and exactly one OWNER membership in one transaction.

    Steps:
    1. Validate slug format
    2. Check for duplicate slug, subdomain or custom domain
    3. Insert the tenant (subdomain = slug)
    4. Find or create the owner user
    5. Create the OWNER membership through the tenant-scoped accessor
    6. Commit, then audit tenant.provisioned

    Raises:
        InvalidInput: Invalid or reserved slug, duplicate slug or domain.
        PersistenceError: The transaction could not be committed.
    """
    if not SLUG_PATTERN.match(slug) or slug in RESERVED_SLUGS:
        raise InvalidInput(
            "Slug must be 3-50 chars, lowercase alphanumeric and hyphens only, "
            "must start and end with alphanumeric character and not be reserved."
        )
    domain = domain.strip().lower() if domain else None

    async with session_factory() as session:
        clauses = [Tenant.slug == slug, Tenant.subdomain == slug]
        if domain:
            clauses.append(Tenant.domain == domain)
        duplicate = await session.execute(select(Tenant.id).where(or_(*clauses)))
        if duplicate.first() is not None:
            raise InvalidInput(f"Tenant with slug '{slug}' or domain already exists")

        try:
            tenant = Tenant(
                name=name,
                slug=slug,
                subdomain=slug,
                domain=domain,
                plan=PlanTier(plan).value,
                status=TenantStatus.ACTIVE.value,
                settings={"ai_summaries_enabled": True},
            )
            session.add(tenant)
            await session.flush()

            owner = await get_or_create_user(session, owner_email, owner_name)
            accessor = TenantScopedAccessor(bound_session_factory(session), tenant.id)
            await accessor.create_membership(str(owner.id), MemberRole.OWNER)

            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            raise InvalidInput(f"Tenant with slug '{slug}' or domain already exists") from exc
        except SQLAlchemyError as exc:
            await session.rollback()
            raise PersistenceError("Tenant provisioning failed") from exc

        await session.refresh(tenant)
        result = model_to_tenant(tenant)
        owner_id = str(owner.id)

    logger.info("tenant.provisioned", tenant_id=result.id, slug=slug, plan=result.plan.value)
    if audit is not None:
        await audit.record(
            tenant_id=result.id,
            actor_id=owner_id,
            action="tenant.provisioned",
            entity="tenant",
            entity_id=result.id,
            detail={"slug": slug, "plan": result.plan.value, "owner_id": owner_id},
        )
    return result


async def add_member(
    session_factory: SessionFactory,
    gate: AccessGate,
    tenant: TenantRead,
    actor_id: str,
    email: str,
    role: MemberRole = MemberRole.MEMBER,
    name: str | None = None,
    audit: AuditRecorder | None = None,
) -> MembershipRead:
    """Add a user to the tenant within the plan's user quota. Never grants OWNER."""
    if role == MemberRole.OWNER:
        raise InvalidInput("A tenant has exactly one OWNER; it cannot be granted")

    accessor = TenantScopedAccessor(session_factory, tenant.id)
    await gate.check_quota(tenant, "users", await accessor.count_memberships(), actor_id=actor_id)

    async with session_factory() as session:
        user = await get_or_create_user(session, email, name)
        await session.commit()
        user_id = str(user.id)

    membership = await accessor.create_membership(user_id, role)
    if audit is not None:
        await audit.record(
            tenant_id=tenant.id,
            actor_id=actor_id,
            action="membership.created",
            entity="membership",
            entity_id=membership.id,
            detail={"user_id": user_id, "role": role.value},
        )
    return membership


async def change_member_role(
    session_factory: SessionFactory,
    tenant: TenantRead,
    actor_id: str,
    user_id: str,
    new_role: MemberRole,
    audit: AuditRecorder | None = None,
) -> MembershipRead:
    """Change a member's role. Roles never move to or from OWNER."""
    if new_role == MemberRole.OWNER:
        raise InvalidInput("Ownership cannot be granted through a role change")

    accessor = TenantScopedAccessor(session_factory, tenant.id)
    current = await accessor.get_membership(user_id)
    if current is None:
        raise InvalidInput(f"User {user_id} is not a member of this tenant")
    if current.role == MemberRole.OWNER:
        raise InvalidInput("The tenant OWNER's role cannot be changed")

    updated = await accessor.update_membership_role(user_id, new_role)
    if updated is None:
        raise InvalidInput(f"User {user_id} is not a member of this tenant")

    if audit is not None:
        await audit.record(
            tenant_id=tenant.id,
            actor_id=actor_id,
            action="membership.role_changed",
            entity="membership",
            entity_id=updated.id,
            detail={"user_id": user_id, "from": current.role.value, "to": new_role.value},
        )
    return updated


async def change_tenant_status(
    session_factory: SessionFactory,
    tenant_id: str,
    status: TenantStatus,
    actor_id: str | None = None,
    resolver: TenantResolver | None = None,
    audit: AuditRecorder | None = None,
) -> TenantRead:
    """Move a tenant to another status (billing and admin flows).

    The resolver's cached record is dropped so that a suspended or cancelled
    tenant stops resolving at once rather than when the cache entry expires.

    Raises:
        TenantNotFound: Unknown tenant id.
        InvalidInput: Malformed tenant id.
        PersistenceError: The update could not be committed.
    """
    status = TenantStatus(status)
    tenant_uuid = coerce_uuid(tenant_id, "tenant_id")
    async with session_factory() as session:
        tenant = await session.get(Tenant, tenant_uuid)
        if tenant is None:
            raise TenantNotFound(f"Tenant not found: {tenant_id}")
        previous = tenant.status
        tenant.status = status.value
        try:
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            raise PersistenceError("Tenant status change failed") from exc
        await session.refresh(tenant)
        result = model_to_tenant(tenant)

    if resolver is not None:
        await resolver.invalidate(result.id)
    logger.info("tenant.status_changed", tenant_id=result.id, previous=previous, status=status.value)
    if audit is not None:
        await audit.record(
            tenant_id=result.id,
            actor_id=actor_id,
            action="tenant.status_changed",
            entity="tenant",
            entity_id=result.id,
            detail={"from": previous, "to": status.value},
        )
    return result
