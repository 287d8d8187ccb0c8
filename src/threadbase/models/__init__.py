"""SQLAlchemy models. Importing this package registers every table on Base.metadata."""

from src.threadbase.models.audit import AuditEvent
from src.threadbase.models.integration import Integration
from src.threadbase.models.knowledge import (
    EMBEDDING_DIMENSIONS,
    KnowledgeItem,
    Tag,
    knowledge_item_tags,
)
from src.threadbase.models.tenant import Membership, Tenant, User

__all__ = [
    "AuditEvent",
    "EMBEDDING_DIMENSIONS",
    "Integration",
    "KnowledgeItem",
    "Membership",
    "Tag",
    "Tenant",
    "User",
    "knowledge_item_tags",
]
