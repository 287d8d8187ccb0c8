"""Knowledge service -- the operations behind the knowledge API routes.

Wraps the ingestion pipeline, the tenant-scoped accessor and the adapter
registry. Every method receives an already resolved tenant; role checks
happen in the API dependencies, plan and feature gates happen here.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import structlog

from src.threadbase.config import Settings, get_settings
from src.threadbase.core.access import AccessGate
from src.threadbase.core.database import SessionFactory
from src.threadbase.core.errors import (
    AdapterConnectionError,
    EnrichmentNotConfigured,
    InvalidInput,
    KnowledgeItemNotFound,
)
from src.threadbase.core.monitoring import record_export
from src.threadbase.core.scoped import MAX_PAGE_SIZE, TenantScopedAccessor
from src.threadbase.integrations.base import CaptureAdapter, ExportAdapter
from src.threadbase.integrations.listener import ListenerRegistry
from src.threadbase.integrations.registry import build_capture_adapter, build_export_adapter
from src.threadbase.knowledge.pipeline import DERIVED_TITLE_LENGTH, IngestionPipeline
from src.threadbase.schemas.integration import ExportResult, IntegrationConfig
from src.threadbase.schemas.knowledge import (
    CapturedThread,
    KnowledgeItemRead,
    KnowledgeStatus,
    SourceType,
    TagRead,
)
from src.threadbase.schemas.tenant import AuditSeverity, TenantRead
from src.threadbase.services.audit import AuditRecorder

logger = structlog.get_logger(__name__)

DEFAULT_PAGE_SIZE = 20

CaptureFactory = Callable[..., CaptureAdapter]
ExportFactory = Callable[..., ExportAdapter]


class KnowledgeService:
    """Tenant-facing knowledge operations.

    Args:
        session_factory: Session factory for tenant-scoped accessors.
        pipeline: IngestionPipeline used for every new item.
        gate: AccessGate for plan, feature and quota checks.
        audit: AuditRecorder for capture, export and lifecycle events.
        settings: Timeouts and poll interval; defaults to get_settings().
        listeners: Registry of running capture listeners.
        capture_factory: Builds capture adapters (defaults to the registry).
        export_factory: Builds export adapters (defaults to the registry).
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        pipeline: IngestionPipeline,
        gate: AccessGate,
        audit: AuditRecorder,
        settings: Settings | None = None,
        listeners: ListenerRegistry | None = None,
        capture_factory: CaptureFactory = build_capture_adapter,
        export_factory: ExportFactory = build_export_adapter,
    ) -> None:
        self._session_factory = session_factory
        self._pipeline = pipeline
        self._gate = gate
        self._audit = audit
        self._settings = settings or get_settings()
        self._listeners = listeners or ListenerRegistry()
        self._capture_factory = capture_factory
        self._export_factory = export_factory

    @property
    def listeners(self) -> ListenerRegistry:
        return self._listeners

    def _accessor(self, tenant: TenantRead) -> TenantScopedAccessor:
        return TenantScopedAccessor(self._session_factory, tenant.id)

    async def _integration_config(
        self, tenant: TenantRead, integration_type: str
    ) -> IntegrationConfig:
        config = await self._accessor(tenant).get_integration(integration_type)
        if config is None:
            raise InvalidInput(f"Integration {integration_type!r} is not configured for this tenant")
        return config

    async def _require_item(self, tenant: TenantRead, item_id: str) -> KnowledgeItemRead:
        item = await self._accessor(tenant).get_knowledge_item(item_id)
        if item is None:
            raise KnowledgeItemNotFound(f"Knowledge item {item_id} not found")
        return item

    # ── Creation ────────────────────────────────────────────────────────────

    async def ingest(
        self,
        tenant: TenantRead,
        actor_id: str,
        title: str | None,
        content: list[Any],
        source_type: SourceType | str = SourceType.API,
        source_metadata: dict[str, Any] | None = None,
        enrich: bool = True,
    ) -> KnowledgeItemRead:
        return await self._pipeline.ingest(
            tenant.id,
            actor_id,
            title,
            content,
            source_type,
            source_metadata,
            enrich=enrich,
        )

    async def capture_and_ingest(
        self,
        tenant: TenantRead,
        actor_id: str,
        integration_type: str,
        thread_ref: str,
    ) -> KnowledgeItemRead:
        """Capture one thread from a chat platform and ingest it.

        Raises:
            InvalidInput: Integration not configured or malformed thread_ref.
            AdapterConnectionError: The platform call failed or timed out.
        """
        config = await self._integration_config(tenant, integration_type)
        adapter = self._capture_factory(
            integration_type,
            config,
            timeout=self._settings.INTEGRATION_TIMEOUT,
            poll_interval=self._settings.LISTENER_POLL_INTERVAL,
        )
        log = logger.bind(tenant_id=tenant.id, integration=integration_type, thread_ref=thread_ref)

        try:
            captured = await asyncio.wait_for(
                adapter.capture_thread(thread_ref),
                timeout=self._settings.INTEGRATION_TIMEOUT,
            )
        except asyncio.TimeoutError as exc:
            log.error("knowledge.capture_timeout")
            await self._record_capture_failure(tenant, actor_id, integration_type, thread_ref, "timeout")
            raise AdapterConnectionError(f"Capturing {thread_ref} timed out") from exc
        except AdapterConnectionError as exc:
            await self._record_capture_failure(tenant, actor_id, integration_type, thread_ref, exc.message)
            raise
        finally:
            await adapter.disconnect()

        log.info("knowledge.thread_captured", message_count=len(captured.messages))
        return await self._ingest_captured(tenant, actor_id, adapter.source_type, captured)

    async def _ingest_captured(
        self,
        tenant: TenantRead,
        actor_id: str,
        source_type: SourceType,
        captured: CapturedThread,
    ) -> KnowledgeItemRead:
        metadata = {
            **captured.metadata,
            "channel_id": captured.channel_id,
            "channel_name": captured.channel_name,
            "thread_id": captured.id,
            "root_author": captured.root_author,
            "original_timestamp": captured.timestamp.isoformat(),
        }
        return await self._pipeline.ingest(
            tenant.id,
            actor_id,
            captured.root_text[:DERIVED_TITLE_LENGTH],
            captured.messages,
            source_type,
            metadata,
            enrich=True,
        )

    async def _record_capture_failure(
        self,
        tenant: TenantRead,
        actor_id: str,
        integration_type: str,
        thread_ref: str,
        error: str,
    ) -> None:
        await self._audit.record(
            tenant_id=tenant.id,
            actor_id=actor_id,
            action="knowledge.capture_failed",
            entity="integration",
            detail={"integration": integration_type, "thread_ref": thread_ref, "error": error},
            severity=AuditSeverity.ERROR,
        )

    # ── Listening ───────────────────────────────────────────────────────────

    async def start_listener(
        self, tenant: TenantRead, actor_id: str, integration_type: str
    ) -> bool:
        """Start polling the platform; every new thread is ingested.

        Returns False when a listener was already running for the pair.
        """
        existing = self._listeners.get(tenant.id, integration_type)
        if existing is not None and existing.is_listening:
            return False

        config = await self._integration_config(tenant, integration_type)
        adapter = self._capture_factory(
            integration_type,
            config,
            timeout=self._settings.INTEGRATION_TIMEOUT,
            poll_interval=self._settings.LISTENER_POLL_INTERVAL,
        )

        async def on_thread(captured: CapturedThread) -> None:
            await self._ingest_captured(tenant, actor_id, adapter.source_type, captured)

        await self._listeners.start(tenant.id, adapter, on_thread)
        await self._audit.record(
            tenant_id=tenant.id,
            actor_id=actor_id,
            action="integration.listener_started",
            entity="integration",
            detail={"integration": integration_type},
        )
        return True

    async def stop_listener(
        self, tenant: TenantRead, actor_id: str, integration_type: str
    ) -> bool:
        stopped = await self._listeners.stop(tenant.id, integration_type)
        if stopped:
            await self._audit.record(
                tenant_id=tenant.id,
                actor_id=actor_id,
                action="integration.listener_stopped",
                entity="integration",
                detail={"integration": integration_type},
            )
        return stopped

    # ── Export ──────────────────────────────────────────────────────────────

    async def export_item(
        self,
        tenant: TenantRead,
        actor_id: str,
        item_id: str,
        integration_type: str,
    ) -> ExportResult:
        """Publish an item to a wiki. Export failures come back in the result."""
        item = await self._require_item(tenant, item_id)
        config = await self._integration_config(tenant, integration_type)
        adapter = self._export_factory(
            integration_type, config, timeout=self._settings.INTEGRATION_TIMEOUT
        )

        try:
            result = await asyncio.wait_for(
                adapter.export_knowledge(item.title, item.content, item.tags),
                timeout=self._settings.INTEGRATION_TIMEOUT,
            )
        except asyncio.TimeoutError:
            result = ExportResult(success=False, error=f"Export to {integration_type} timed out")
        finally:
            await adapter.disconnect()

        record_export(integration_type, result.success)
        if result.success:
            action, severity = "knowledge.exported", AuditSeverity.INFO
            detail = {
                "integration": integration_type,
                "external_id": result.external_id,
                "url": result.url,
            }
        else:
            action, severity = "knowledge.export_failed", AuditSeverity.ERROR
            detail = {"integration": integration_type, "error": result.error}
            logger.warning(
                "knowledge.export_failed",
                tenant_id=tenant.id,
                item_id=item.id,
                integration=integration_type,
                error=result.error,
            )

        await self._audit.record(
            tenant_id=tenant.id,
            actor_id=actor_id,
            action=action,
            entity="knowledge_item",
            entity_id=item.id,
            detail=detail,
            severity=severity,
        )
        return result

    # ── Enrichment ──────────────────────────────────────────────────────────

    async def re_enrich(
        self, tenant: TenantRead, actor_id: str, item_id: str
    ) -> KnowledgeItemRead:
        """Regenerate summary, action items, topics and embedding of an item.

        Plan and feature gates run before any provider call.

        Raises:
            PlanUpgradeRequired: Plan below STARTER or AI summaries disabled.
            EnrichmentNotConfigured: No enrichment provider is configured.
            KnowledgeItemNotFound: Unknown item.
        """
        await self._gate.require_feature(tenant, "ai_summaries", actor_id=actor_id)
        if self._pipeline.provider is None:
            raise EnrichmentNotConfigured("No enrichment provider is configured")

        item = await self._require_item(tenant, item_id)
        accessor = self._accessor(tenant)
        result = await self._pipeline.run_enrichment(item.title, item.content)

        await accessor.update_knowledge_item(
            item.id,
            {
                "summary": result.summary,
                "action_items": result.action_items,
                "topics": result.topics,
            },
        )
        if result.embedding is not None:
            try:
                await accessor.attach_embedding(item.id, result.embedding)
            except Exception as exc:
                logger.error(
                    "knowledge.embedding_write_failed",
                    tenant_id=tenant.id,
                    item_id=item.id,
                    error=str(exc),
                )

        await self._audit.record(
            tenant_id=tenant.id,
            actor_id=actor_id,
            action="knowledge.re_enriched",
            entity="knowledge_item",
            entity_id=item.id,
            detail={"has_embedding": result.embedding is not None},
        )
        return await self._require_item(tenant, item.id)

    # ── Reads ───────────────────────────────────────────────────────────────

    async def get_item(self, tenant: TenantRead, item_id: str) -> KnowledgeItemRead:
        """Return an item and count the view."""
        item = await self._require_item(tenant, item_id)
        await self._accessor(tenant).increment_view_count(item.id)
        return item.model_copy(update={"view_count": item.view_count + 1})

    async def list_items(
        self,
        tenant: TenantRead,
        status: KnowledgeStatus | None = None,
        source_type: SourceType | None = None,
        bookmarked: bool | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> tuple[list[KnowledgeItemRead], int]:
        """One page of items, newest first, plus the total matching count."""
        filters: dict[str, Any] = {}
        if status is not None:
            filters["status"] = status
        if source_type is not None:
            filters["source_type"] = source_type
        if bookmarked is not None:
            filters["bookmarked"] = bookmarked
        limit = max(1, min(limit, MAX_PAGE_SIZE))

        accessor = self._accessor(tenant)
        items = await accessor.find_knowledge_items(filters, limit=limit, offset=offset)
        total = await accessor.count_knowledge_items(filters)
        return items, total

    async def update_item(
        self, tenant: TenantRead, actor_id: str, item_id: str, changes: dict[str, Any]
    ) -> KnowledgeItemRead:
        """Edit title, summary, action items or topics of an item.

        Raises:
            InvalidInput: No changes, or a field that cannot be edited.
            KnowledgeItemNotFound: Unknown item.
        """
        editable = {"title", "summary", "action_items", "topics"}
        if not changes:
            raise InvalidInput("Nothing to update")
        if set(changes) - editable:
            raise InvalidInput(f"Fields cannot be edited: {sorted(set(changes) - editable)}")
        if "title" in changes and not changes["title"]:
            raise InvalidInput("title cannot be empty")

        item = await self._require_item(tenant, item_id)
        updated = await self._accessor(tenant).update_knowledge_item(item.id, changes)
        if updated is None:
            raise KnowledgeItemNotFound(f"Knowledge item {item_id} not found")
        await self._audit.record(
            tenant_id=tenant.id,
            actor_id=actor_id,
            action="knowledge.updated",
            entity="knowledge_item",
            entity_id=item.id,
            detail={"fields": sorted(changes)},
        )
        return updated

    async def bookmark_item(
        self, tenant: TenantRead, actor_id: str, item_id: str, bookmarked: bool = True
    ) -> KnowledgeItemRead:
        """Set or clear the bookmark flag. Setting the current value is a no-op."""
        item = await self._require_item(tenant, item_id)
        if item.bookmarked == bookmarked:
            return item
        updated = await self._accessor(tenant).update_knowledge_item(
            item.id, {"bookmarked": bookmarked}
        )
        if updated is None:
            raise KnowledgeItemNotFound(f"Knowledge item {item_id} not found")
        await self._audit.record(
            tenant_id=tenant.id,
            actor_id=actor_id,
            action="knowledge.bookmarked" if bookmarked else "knowledge.unbookmarked",
            entity="knowledge_item",
            entity_id=item.id,
        )
        return updated

    # ── Lifecycle ───────────────────────────────────────────────────────────

    async def archive_item(
        self, tenant: TenantRead, actor_id: str, item_id: str
    ) -> KnowledgeItemRead:
        return await self._set_status(
            tenant, actor_id, item_id, KnowledgeStatus.ARCHIVED, "knowledge.archived"
        )

    async def delete_item(
        self, tenant: TenantRead, actor_id: str, item_id: str
    ) -> KnowledgeItemRead:
        """Soft delete: the row stays, reads stop returning it."""
        return await self._set_status(
            tenant, actor_id, item_id, KnowledgeStatus.DELETED, "knowledge.deleted"
        )

    async def _set_status(
        self,
        tenant: TenantRead,
        actor_id: str,
        item_id: str,
        status: KnowledgeStatus,
        action: str,
    ) -> KnowledgeItemRead:
        item = await self._require_item(tenant, item_id)
        updated = await self._accessor(tenant).update_knowledge_item(item.id, {"status": status})
        if updated is None:
            raise KnowledgeItemNotFound(f"Knowledge item {item_id} not found")
        await self._audit.record(
            tenant_id=tenant.id,
            actor_id=actor_id,
            action=action,
            entity="knowledge_item",
            entity_id=item.id,
            detail={"from": item.status.value, "to": status.value},
        )
        return updated

    async def tag_item(
        self, tenant: TenantRead, actor_id: str, item_id: str, names: list[str]
    ) -> list[str]:
        """Attach tags by name within the plan's tag quota. Returns all tag names."""
        accessor = self._accessor(tenant)
        wanted = {n.strip() for n in names if n and n.strip()}
        if not wanted:
            raise InvalidInput("At least one tag name is required")

        existing = {t.name for t in await accessor.list_tags()}
        new_count = len(wanted - existing)
        if new_count:
            current = len(existing)
            await self._gate.check_quota(tenant, "tags", current + new_count - 1, actor_id=actor_id)

        tags = await accessor.tag_item(item_id, sorted(wanted))
        await self._audit.record(
            tenant_id=tenant.id,
            actor_id=actor_id,
            action="knowledge.tagged",
            entity="knowledge_item",
            entity_id=item_id,
            detail={"tags": sorted(wanted)},
        )
        return tags

    async def create_tag(
        self, tenant: TenantRead, actor_id: str, name: str, color: str | None = None
    ) -> TagRead:
        accessor = self._accessor(tenant)
        await self._gate.check_quota(tenant, "tags", await accessor.count_tags(), actor_id=actor_id)
        tag = await accessor.create_tag(name, color)
        await self._audit.record(
            tenant_id=tenant.id,
            actor_id=actor_id,
            action="tag.created",
            entity="tag",
            entity_id=tag.id,
            detail={"name": tag.name},
        )
        return tag

    async def list_tags(self, tenant: TenantRead) -> list[TagRead]:
        return await self._accessor(tenant).list_tags()
