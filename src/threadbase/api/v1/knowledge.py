"""Knowledge item API endpoints.

All routes are tenant-scoped: the tenant comes from TenantMiddleware and the
caller's membership from require_role(). Reads need VIEWER, writes MEMBER,
lifecycle changes MODERATOR.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from src.threadbase.api.deps import get_knowledge_service, get_tenant, require_role
from src.threadbase.core.scoped import MAX_PAGE_SIZE
from src.threadbase.knowledge.service import DEFAULT_PAGE_SIZE, KnowledgeService
from src.threadbase.schemas.integration import ExportResult
from src.threadbase.schemas.knowledge import (
    BookmarkRequest,
    CaptureRequest,
    ExportRequest,
    IngestRequest,
    KnowledgeItemRead,
    KnowledgeItemUpdate,
    KnowledgeListResponse,
    KnowledgeStatus,
    SourceType,
    TagItemRequest,
    TagRead,
    TagRequest,
)
from src.threadbase.schemas.tenant import MemberRole, MembershipRead, TenantRead

router = APIRouter(prefix="/api/v1", tags=["knowledge"])


@router.post(
    "/knowledge",
    response_model=KnowledgeItemRead,
    status_code=status.HTTP_201_CREATED,
)
async def ingest_knowledge(
    body: IngestRequest,
    tenant: TenantRead = Depends(get_tenant),
    member: MembershipRead = Depends(require_role(MemberRole.MEMBER)),
    service: KnowledgeService = Depends(get_knowledge_service),
) -> KnowledgeItemRead:
    """Ingest a conversation submitted directly through the API."""
    return await service.ingest(
        tenant,
        member.user_id,
        body.title,
        body.content,
        body.source_type,
        body.source_metadata,
        enrich=body.enrich,
    )


@router.get("/knowledge", response_model=KnowledgeListResponse)
async def list_knowledge(
    status_filter: KnowledgeStatus | None = Query(default=None, alias="status"),
    source_type: SourceType | None = None,
    bookmarked: bool | None = None,
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(default=0, ge=0),
    tenant: TenantRead = Depends(get_tenant),
    member: MembershipRead = Depends(require_role(MemberRole.VIEWER)),
    service: KnowledgeService = Depends(get_knowledge_service),
) -> KnowledgeListResponse:
    items, total = await service.list_items(
        tenant,
        status=status_filter,
        source_type=source_type,
        bookmarked=bookmarked,
        limit=limit,
        offset=offset,
    )
    return KnowledgeListResponse(items=items, total=total, limit=limit, offset=offset)


@router.post(
    "/knowledge/capture",
    response_model=KnowledgeItemRead,
    status_code=status.HTTP_201_CREATED,
)
async def capture_knowledge(
    body: CaptureRequest,
    tenant: TenantRead = Depends(get_tenant),
    member: MembershipRead = Depends(require_role(MemberRole.MEMBER)),
    service: KnowledgeService = Depends(get_knowledge_service),
) -> KnowledgeItemRead:
    """Capture a thread from a connected chat platform and ingest it."""
    return await service.capture_and_ingest(
        tenant, member.user_id, body.integration_type, body.thread_ref
    )


@router.get("/knowledge/{item_id}", response_model=KnowledgeItemRead)
async def get_knowledge(
    item_id: str,
    tenant: TenantRead = Depends(get_tenant),
    member: MembershipRead = Depends(require_role(MemberRole.VIEWER)),
    service: KnowledgeService = Depends(get_knowledge_service),
) -> KnowledgeItemRead:
    return await service.get_item(tenant, item_id)


@router.patch("/knowledge/{item_id}", response_model=KnowledgeItemRead)
async def update_knowledge(
    item_id: str,
    body: KnowledgeItemUpdate,
    tenant: TenantRead = Depends(get_tenant),
    member: MembershipRead = Depends(require_role(MemberRole.MEMBER)),
    service: KnowledgeService = Depends(get_knowledge_service),
) -> KnowledgeItemRead:
    return await service.update_item(
        tenant, member.user_id, item_id, body.model_dump(exclude_unset=True)
    )


@router.post("/knowledge/{item_id}/bookmark", response_model=KnowledgeItemRead)
async def bookmark_knowledge(
    item_id: str,
    body: BookmarkRequest,
    tenant: TenantRead = Depends(get_tenant),
    member: MembershipRead = Depends(require_role(MemberRole.MEMBER)),
    service: KnowledgeService = Depends(get_knowledge_service),
) -> KnowledgeItemRead:
    return await service.bookmark_item(tenant, member.user_id, item_id, body.bookmarked)


@router.post("/knowledge/{item_id}/export", response_model=ExportResult)
async def export_knowledge(
    item_id: str,
    body: ExportRequest,
    tenant: TenantRead = Depends(get_tenant),
    member: MembershipRead = Depends(require_role(MemberRole.MEMBER)),
    service: KnowledgeService = Depends(get_knowledge_service),
) -> ExportResult:
    """Publish an item to Notion or Confluence. Failures are reported in the body."""
    return await service.export_item(tenant, member.user_id, item_id, body.integration_type)


@router.post("/knowledge/{item_id}/enrich", response_model=KnowledgeItemRead)
async def enrich_knowledge(
    item_id: str,
    tenant: TenantRead = Depends(get_tenant),
    member: MembershipRead = Depends(require_role(MemberRole.MEMBER)),
    service: KnowledgeService = Depends(get_knowledge_service),
) -> KnowledgeItemRead:
    """Regenerate AI enrichment. Requires a plan with AI summaries."""
    return await service.re_enrich(tenant, member.user_id, item_id)


@router.post("/knowledge/{item_id}/archive", response_model=KnowledgeItemRead)
async def archive_knowledge(
    item_id: str,
    tenant: TenantRead = Depends(get_tenant),
    member: MembershipRead = Depends(require_role(MemberRole.MODERATOR)),
    service: KnowledgeService = Depends(get_knowledge_service),
) -> KnowledgeItemRead:
    return await service.archive_item(tenant, member.user_id, item_id)


@router.delete("/knowledge/{item_id}", response_model=KnowledgeItemRead)
async def delete_knowledge(
    item_id: str,
    tenant: TenantRead = Depends(get_tenant),
    member: MembershipRead = Depends(require_role(MemberRole.MODERATOR)),
    service: KnowledgeService = Depends(get_knowledge_service),
) -> KnowledgeItemRead:
    return await service.delete_item(tenant, member.user_id, item_id)


@router.post("/knowledge/{item_id}/tags", response_model=list[str])
async def tag_knowledge(
    item_id: str,
    body: TagItemRequest,
    tenant: TenantRead = Depends(get_tenant),
    member: MembershipRead = Depends(require_role(MemberRole.MEMBER)),
    service: KnowledgeService = Depends(get_knowledge_service),
) -> list[str]:
    return await service.tag_item(tenant, member.user_id, item_id, body.names)


# ── Tags ────────────────────────────────────────────────────────────────────


@router.get("/tags", response_model=list[TagRead])
async def list_tags(
    tenant: TenantRead = Depends(get_tenant),
    member: MembershipRead = Depends(require_role(MemberRole.VIEWER)),
    service: KnowledgeService = Depends(get_knowledge_service),
) -> list[TagRead]:
    return await service.list_tags(tenant)


@router.post("/tags", response_model=TagRead, status_code=status.HTTP_201_CREATED)
async def create_tag(
    body: TagRequest,
    tenant: TenantRead = Depends(get_tenant),
    member: MembershipRead = Depends(require_role(MemberRole.MEMBER)),
    service: KnowledgeService = Depends(get_knowledge_service),
) -> TagRead:
    return await service.create_tag(tenant, member.user_id, body.name, body.color)
