"""Knowledge ingestion and enrichment pipeline.

ingest() turns a conversation into a persisted KnowledgeItem:

1. Validate messages and title, load the tenant, skip already captured
   threads and enforce the plan item quota.
2. Run summary, embedding, action items and topics concurrently, each
   bounded by the enrichment timeout. Any failure degrades to a fallback
   value and is logged; enrichment never fails an ingest.
3. Write the base record (without embedding) in one write.
4. Attach the embedding in a second, separate write. A failure here is
   logged and the item stays without a vector.
5. Record a knowledge.ingested audit event.

When enrichment is disabled, no provider is configured or the tenant's plan
does not include AI, step 2 is skipped and no provider call is made.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

import structlog
from pydantic import ValidationError

from src.threadbase.core.access import AccessGate
from src.threadbase.core.database import SessionFactory
from src.threadbase.core.errors import InvalidInput, TenantNotFound
from src.threadbase.core.monitoring import record_ingest, track_enrichment_step
from src.threadbase.core.scoped import TenantScopedAccessor
from src.threadbase.core.tenant import load_tenant
from src.threadbase.schemas.knowledge import (
    KnowledgeItemRead,
    KnowledgeStatus,
    SourceType,
    ThreadMessage,
)
from src.threadbase.schemas.tenant import TenantStatus
from src.threadbase.services.audit import AuditRecorder
from src.threadbase.services.enrichment import EnrichmentProvider

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SUMMARY_FALLBACK = "Summary unavailable."
MAX_TITLE_LENGTH = 300
DERIVED_TITLE_LENGTH = 250

_WHITESPACE = re.compile(r"\s+")


@dataclass
class EnrichmentResult:
    """Outcome of the enrichment step. Absent values mean skipped or failed."""

    summary: str | None = None
    embedding: list[float] | None = None
    action_items: list[str] = field(default_factory=list)
    topics: list[str] = field(default_factory=list)


# ── Content helpers ─────────────────────────────────────────────────────────


def validate_messages(content: Sequence[ThreadMessage | dict[str, Any]]) -> list[ThreadMessage]:
    """Coerce raw messages, dropping blank ones.

    A message with neither text nor attachments (an embed or sticker, or a
    message the bot may not read) carries nothing to keep. The conversation is
    rejected only when no message is left.
    """
    if not content:
        raise InvalidInput("Conversation content must contain at least one message")

    messages = []
    for index, raw in enumerate(content):
        try:
            message = raw if isinstance(raw, ThreadMessage) else ThreadMessage.model_validate(raw)
        except ValidationError as exc:
            raise InvalidInput(f"Message {index} is malformed: {exc.errors()[0]['msg']}") from exc
        if not message.content.strip() and not message.attachments:
            continue
        messages.append(message)
    if not messages:
        raise InvalidInput("Conversation has no message with text or attachments")
    return messages


def normalize_content(messages: Sequence[ThreadMessage]) -> str:
    """Render messages as "author: text" lines with whitespace collapsed."""
    lines = []
    for message in messages:
        text = _WHITESPACE.sub(" ", message.content).strip()
        if not text:
            text = f"[{len(message.attachments)} attachment(s)]"
        lines.append(f"{message.author}: {text}")
    return "\n".join(lines)


def derive_title(messages: Sequence[ThreadMessage]) -> str:
    """First non-blank message line, truncated."""
    for message in messages:
        text = _WHITESPACE.sub(" ", message.content).strip()
        if text:
            return text[:DERIVED_TITLE_LENGTH]
    return ""


# ── Pipeline ────────────────────────────────────────────────────────────────


class IngestionPipeline:
    """Validates, enriches and persists conversations for one deployment.

    Args:
        session_factory: Session factory handed to the tenant-scoped accessor.
        audit: AuditRecorder for the ingestion trail.
        provider: Optional enrichment provider; None disables enrichment.
        gate: AccessGate used for the AI gate and quotas.
        enrichment_timeout: Seconds allowed for each enrichment call.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        audit: AuditRecorder,
        provider: EnrichmentProvider | None = None,
        gate: AccessGate | None = None,
        enrichment_timeout: float = 30.0,
    ) -> None:
        self._session_factory = session_factory
        self._audit = audit
        self._provider = provider
        self._gate = gate or AccessGate(session_factory, audit)
        self._timeout = enrichment_timeout

    @property
    def provider(self) -> EnrichmentProvider | None:
        return self._provider

    async def ingest(
        self,
        tenant_id: str,
        actor_id: str,
        title: str | None,
        content: Sequence[ThreadMessage | dict[str, Any]],
        source_type: SourceType | str,
        source_metadata: dict[str, Any] | None = None,
        *,
        enrich: bool = True,
    ) -> KnowledgeItemRead:
        """Ingest one conversation and return the persisted item.

        Raises:
            InvalidInput: Empty content, blank messages or no usable title.
            TenantNotFound: Unknown or inactive tenant.
            PlanLimitExceeded: The tenant's item quota is used up.
            PersistenceError: The base record could not be written.
        """
        messages = validate_messages(content)
        try:
            source_type = SourceType(source_type)
        except ValueError as exc:
            raise InvalidInput(f"Unknown source type: {source_type}") from exc
        title = (title or "").strip() or derive_title(messages)
        if not title:
            raise InvalidInput("Title is blank and cannot be derived from the content")
        title = title[:MAX_TITLE_LENGTH]
        metadata = dict(source_metadata or {})

        tenant = await load_tenant(self._session_factory, tenant_id)
        if tenant is None or tenant.status != TenantStatus.ACTIVE:
            raise TenantNotFound(f"Tenant not found: {tenant_id}")

        log = logger.bind(tenant_id=tenant.id, actor_id=actor_id, source_type=source_type.value)
        accessor = TenantScopedAccessor(self._session_factory, tenant.id)

        channel_id = metadata.get("channel_id")
        thread_id = metadata.get("thread_id")
        deleted_copy = None
        if channel_id and thread_id:
            existing = await accessor.find_by_source_thread(str(channel_id), str(thread_id))
            if existing is not None and existing.status != KnowledgeStatus.DELETED:
                log.info("pipeline.duplicate_thread", item_id=existing.id, thread_id=thread_id)
                return existing
            deleted_copy = existing

        current = await accessor.count_knowledge_items()
        await self._gate.check_quota(tenant, "items", current, actor_id=actor_id)

        should_enrich = enrich and self._provider is not None and self._gate.allows_ai(tenant)
        if should_enrich:
            result = await self.run_enrichment(title, messages)
        else:
            result = EnrichmentResult()

        if deleted_copy is not None:
            # A deleted copy keeps its row but gives up the thread key.
            await accessor.update_knowledge_item(
                deleted_copy.id, {"channel_id": None, "thread_id": None}
            )
            log.info("pipeline.recapture_after_delete", previous_item_id=deleted_copy.id)

        item = await accessor.create_knowledge_item({
            "title": title,
            "content": [m.model_dump(mode="json") for m in messages],
            "summary": result.summary,
            "action_items": result.action_items,
            "topics": result.topics,
            "source_type": source_type,
            "source_metadata": metadata,
            "created_by": actor_id,
            "status": KnowledgeStatus.PUBLISHED,
        })

        if result.embedding is not None:
            try:
                await accessor.attach_embedding(item.id, result.embedding)
                item = item.model_copy(update={"has_embedding": True})
            except Exception as exc:
                log.error("pipeline.embedding_write_failed", item_id=item.id, error=str(exc))

        await self._audit.record(
            tenant_id=tenant.id,
            actor_id=actor_id,
            action="knowledge.ingested",
            entity="knowledge_item",
            entity_id=item.id,
            detail={
                "source_type": source_type.value,
                "enriched": should_enrich,
                "has_embedding": item.has_embedding,
                "message_count": len(messages),
            },
        )
        record_ingest(source_type.value, should_enrich)
        log.info("pipeline.ingested", item_id=item.id, enriched=should_enrich)
        return item

    async def run_enrichment(
        self, title: str, messages: Sequence[ThreadMessage]
    ) -> EnrichmentResult:
        """Run every enrichment step concurrently with per-step fallbacks."""
        if self._provider is None:
            return EnrichmentResult()

        text = normalize_content(messages)
        summary, embedding, action_items, topics = await asyncio.gather(
            self._best_effort("summary", self._provider.summarize(text), SUMMARY_FALLBACK),
            self._best_effort("embedding", self._provider.embed(f"{title}\n{text}"), None),
            self._best_effort("action_items", self._provider.extract_action_items(text), []),
            self._best_effort("topics", self._provider.detect_topics(text), []),
        )
        return EnrichmentResult(
            summary=summary,
            embedding=embedding,
            action_items=[str(a) for a in action_items],
            topics=[str(t) for t in topics],
        )

    async def _best_effort(self, step: str, call: Awaitable[T], fallback: T) -> T:
        try:
            async with track_enrichment_step(step):
                return await asyncio.wait_for(call, timeout=self._timeout)
        except Exception as exc:
            logger.warning(
                "pipeline.enrichment_step_failed",
                step=step,
                error=str(exc) or type(exc).__name__,
            )
            return fallback
