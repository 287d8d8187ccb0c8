"""Pydantic schemas for captured threads and knowledge items.

- Enums: SourceType, KnowledgeStatus
- Transient capture payloads: ThreadMessage, CapturedThread
- Persisted views: KnowledgeItemRead, TagRead
- API bodies: IngestRequest, KnowledgeItemUpdate, CaptureRequest, ExportRequest,
  TagRequest, TagItemRequest, KnowledgeListResponse
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class SourceType(str, Enum):
    """Where a knowledge item came from."""

    SLACK = "SLACK"
    TEAMS = "TEAMS"
    DISCORD = "DISCORD"
    MANUAL = "MANUAL"
    API = "API"
    IMPORT = "IMPORT"


class KnowledgeStatus(str, Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    ARCHIVED = "ARCHIVED"
    DELETED = "DELETED"


# ── Capture payloads ────────────────────────────────────────────────────────


class ThreadMessage(BaseModel):
    """One message of a conversation, platform-neutral."""

    id: str | None = None
    author: str = "unknown"
    content: str = Field(default="", validation_alias=AliasChoices("content", "text"))
    timestamp: datetime | None = None
    attachments: list[dict[str, Any]] = Field(default_factory=list)


class CapturedThread(BaseModel):
    """A conversation pulled from a chat platform, ready for ingestion."""

    id: str
    channel_id: str
    channel_name: str = "unknown"
    root_author: str = "unknown"
    messages: list[ThreadMessage] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def root_text(self) -> str:
        return self.messages[0].content if self.messages else ""


# ── Persisted views ─────────────────────────────────────────────────────────


class KnowledgeItemRead(BaseModel):
    """Knowledge item as returned to callers. The raw vector is never exposed."""

    id: str
    tenant_id: str
    title: str
    content: list[ThreadMessage] = Field(default_factory=list)
    summary: str | None = None
    has_embedding: bool = False
    action_items: list[str] = Field(default_factory=list)
    topics: list[str] = Field(default_factory=list)
    source_type: SourceType = SourceType.MANUAL
    source_metadata: dict[str, Any] = Field(default_factory=dict)
    created_by: str
    status: KnowledgeStatus = KnowledgeStatus.PUBLISHED
    view_count: int = 0
    search_count: int = 0
    bookmarked: bool = False
    tags: list[str] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TagRead(BaseModel):
    id: str
    tenant_id: str
    name: str
    color: str | None = None


# ── API request bodies ──────────────────────────────────────────────────────


class IngestRequest(BaseModel):
    """Manual or API ingestion of a conversation."""

    title: str = ""
    content: list[ThreadMessage]
    source_type: SourceType = SourceType.API
    source_metadata: dict[str, Any] = Field(default_factory=dict)
    enrich: bool = True


class KnowledgeItemUpdate(BaseModel):
    """Editable fields of an item. Only fields present in the body change."""

    title: str | None = Field(default=None, min_length=1, max_length=300)
    summary: str | None = None
    action_items: list[str] | None = None
    topics: list[str] | None = None


class BookmarkRequest(BaseModel):
    bookmarked: bool = True


class CaptureRequest(BaseModel):
    """Capture a thread from a connected chat platform and ingest it."""

    integration_type: str = Field(..., examples=["slack", "discord"])
    thread_ref: str = Field(..., description="Platform thread reference, e.g. '<ts>:<channel>'")


class ExportRequest(BaseModel):
    integration_type: str = Field(..., examples=["notion", "confluence"])


class TagRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    color: str | None = Field(default=None, pattern=r"^#[0-9a-fA-F]{6}$")


class TagItemRequest(BaseModel):
    names: list[str] = Field(..., min_length=1)


class KnowledgeListResponse(BaseModel):
    items: list[KnowledgeItemRead]
    total: int
    limit: int
    offset: int
