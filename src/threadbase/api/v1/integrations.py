"""Integration configuration, listener control and audit trail endpoints (ADMIN)."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from src.threadbase.api.deps import (
    get_audit,
    get_knowledge_service,
    get_session_factory,
    get_tenant,
    require_role,
)
from src.threadbase.core.database import SessionFactory
from src.threadbase.core.errors import InvalidInput
from src.threadbase.core.scoped import MAX_PAGE_SIZE, TenantScopedAccessor
from src.threadbase.knowledge.service import KnowledgeService
from src.threadbase.schemas.integration import IntegrationRead, IntegrationType, IntegrationUpsert
from src.threadbase.schemas.tenant import AuditEventRead, MemberRole, MembershipRead, TenantRead
from src.threadbase.services.audit import AuditRecorder

router = APIRouter(prefix="/api/v1", tags=["integrations"])


def _integration_type(value: str) -> IntegrationType:
    try:
        return IntegrationType(value.lower())
    except ValueError as exc:
        raise InvalidInput(f"Unknown integration type: {value}") from exc


@router.get("/integrations", response_model=list[IntegrationRead])
async def list_integrations(
    tenant: TenantRead = Depends(get_tenant),
    member: MembershipRead = Depends(require_role(MemberRole.ADMIN)),
    session_factory: SessionFactory = Depends(get_session_factory),
) -> list[IntegrationRead]:
    return await TenantScopedAccessor(session_factory, tenant.id).list_integrations()


@router.put("/integrations/{integration_type}", response_model=IntegrationRead)
async def configure_integration(
    integration_type: str,
    body: IntegrationUpsert,
    tenant: TenantRead = Depends(get_tenant),
    member: MembershipRead = Depends(require_role(MemberRole.ADMIN)),
    session_factory: SessionFactory = Depends(get_session_factory),
    audit: AuditRecorder = Depends(get_audit),
) -> IntegrationRead:
    """Store credentials and settings for one platform. Credentials are never returned."""
    kind = _integration_type(integration_type)
    integration = await TenantScopedAccessor(session_factory, tenant.id).upsert_integration(
        kind.value, body.credentials, body.settings, body.is_active
    )
    await audit.record(
        tenant_id=tenant.id,
        actor_id=member.user_id,
        action="integration.configured",
        entity="integration",
        entity_id=integration.id,
        detail={"integration": kind.value, "is_active": body.is_active},
    )
    return integration


@router.post("/integrations/{integration_type}/listener")
async def start_listener(
    integration_type: str,
    tenant: TenantRead = Depends(get_tenant),
    member: MembershipRead = Depends(require_role(MemberRole.ADMIN)),
    service: KnowledgeService = Depends(get_knowledge_service),
) -> dict:
    kind = _integration_type(integration_type)
    started = await service.start_listener(tenant, member.user_id, kind.value)
    return {"integration": kind.value, "listening": True, "started": started}


@router.delete("/integrations/{integration_type}/listener")
async def stop_listener(
    integration_type: str,
    tenant: TenantRead = Depends(get_tenant),
    member: MembershipRead = Depends(require_role(MemberRole.ADMIN)),
    service: KnowledgeService = Depends(get_knowledge_service),
) -> dict:
    kind = _integration_type(integration_type)
    stopped = await service.stop_listener(tenant, member.user_id, kind.value)
    return {"integration": kind.value, "listening": False, "stopped": stopped}


@router.get("/audit", response_model=list[AuditEventRead])
async def list_audit_events(
    action: str | None = None,
    limit: int = Query(default=MAX_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    tenant: TenantRead = Depends(get_tenant),
    member: MembershipRead = Depends(require_role(MemberRole.ADMIN)),
    session_factory: SessionFactory = Depends(get_session_factory),
) -> list[AuditEventRead]:
    accessor = TenantScopedAccessor(session_factory, tenant.id)
    return await accessor.list_audit_events(action=action, limit=limit)
