"""Tenant provisioning and membership API endpoints.

POST /api/v1/tenants skips tenant middleware (no tenant exists yet); the
member routes are tenant-scoped and require ADMIN for changes.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from src.threadbase.api.deps import (
    get_audit,
    get_gate,
    get_session_factory,
    get_tenant,
    require_role,
)
from src.threadbase.core.access import AccessGate
from src.threadbase.core.database import SessionFactory
from src.threadbase.core.scoped import TenantScopedAccessor
from src.threadbase.schemas.tenant import (
    MemberInvite,
    MemberRole,
    MembershipRead,
    RoleChange,
    TenantCreate,
    TenantRead,
)
from src.threadbase.services.audit import AuditRecorder
from src.threadbase.services.tenant_provisioning import (
    add_member,
    change_member_role,
    provision_tenant,
)

router = APIRouter(prefix="/api/v1", tags=["tenants"])


@router.post("/tenants", response_model=TenantRead, status_code=status.HTTP_201_CREATED)
async def create_tenant(
    body: TenantCreate,
    session_factory: SessionFactory = Depends(get_session_factory),
    audit: AuditRecorder = Depends(get_audit),
) -> TenantRead:
    """Provision a new tenant with its OWNER membership."""
    return await provision_tenant(
        session_factory,
        name=body.name,
        slug=body.slug,
        owner_email=body.owner_email,
        owner_name=body.owner_name,
        plan=body.plan,
        domain=body.domain,
        audit=audit,
    )


@router.get("/members", response_model=list[MembershipRead])
async def list_members(
    tenant: TenantRead = Depends(get_tenant),
    member: MembershipRead = Depends(require_role(MemberRole.VIEWER)),
    session_factory: SessionFactory = Depends(get_session_factory),
) -> list[MembershipRead]:
    return await TenantScopedAccessor(session_factory, tenant.id).list_memberships()


@router.post("/members", response_model=MembershipRead, status_code=status.HTTP_201_CREATED)
async def invite_member(
    body: MemberInvite,
    tenant: TenantRead = Depends(get_tenant),
    member: MembershipRead = Depends(require_role(MemberRole.ADMIN)),
    session_factory: SessionFactory = Depends(get_session_factory),
    gate: AccessGate = Depends(get_gate),
    audit: AuditRecorder = Depends(get_audit),
) -> MembershipRead:
    return await add_member(
        session_factory,
        gate,
        tenant,
        member.user_id,
        body.email,
        role=body.role,
        name=body.name,
        audit=audit,
    )


@router.post("/members/role", response_model=MembershipRead)
async def update_member_role(
    body: RoleChange,
    tenant: TenantRead = Depends(get_tenant),
    member: MembershipRead = Depends(require_role(MemberRole.ADMIN)),
    session_factory: SessionFactory = Depends(get_session_factory),
    audit: AuditRecorder = Depends(get_audit),
) -> MembershipRead:
    return await change_member_role(
        session_factory, tenant, member.user_id, body.user_id, body.role, audit=audit
    )
