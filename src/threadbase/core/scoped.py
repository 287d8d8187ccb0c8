"""Tenant-scoped data accessor -- the only query path to tenant-owned tables.

TenantScopedAccessor is constructed explicitly with a session factory and a
tenant id. Every method merges the bound tenant id into its WHERE clause or
insert payload. A tenant_id supplied by the caller in a filter or payload is
overwritten with the bound one, never honoured.

Covers KnowledgeItem, Tag, Membership, Integration and AuditEvent. Storage
failures on writes surface as PersistenceError.
"""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Any

import structlog
from cryptography.fernet import InvalidToken
from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.threadbase.core.database import SessionFactory
from src.threadbase.core.errors import (
    CredentialsUnreadable,
    InvalidInput,
    KnowledgeItemNotFound,
    PersistenceError,
)
from src.threadbase.core.security import decrypt_credentials, encrypt_credentials
from src.threadbase.models import (
    AuditEvent,
    Integration,
    KnowledgeItem,
    Membership,
    Tag,
    knowledge_item_tags,
)
from src.threadbase.schemas.integration import IntegrationConfig, IntegrationRead
from src.threadbase.schemas.knowledge import KnowledgeItemRead, KnowledgeStatus, TagRead
from src.threadbase.schemas.tenant import AuditEventRead, AuditSeverity, MemberRole, MembershipRead

logger = structlog.get_logger(__name__)

MAX_PAGE_SIZE = 100
_UUID_FIELDS = ("id", "tenant_id", "user_id")


# ── Value helpers ───────────────────────────────────────────────────────────


def coerce_uuid(value: str | uuid.UUID, field: str = "id") -> uuid.UUID:
    """Parse a UUID, raising InvalidInput for malformed values."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f"Invalid {field}: {value!r}") from exc


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_item(model: KnowledgeItem, tags: list[str] | None = None) -> KnowledgeItemRead:
    """Convert KnowledgeItem to KnowledgeItemRead schema."""
    return KnowledgeItemRead(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        title=model.title,
        content=model.content or [],
        summary=model.summary,
        has_embedding=model.embedding is not None,
        action_items=model.action_items or [],
        topics=model.topics or [],
        source_type=model.source_type,
        source_metadata=model.source_metadata or {},
        created_by=model.created_by,
        status=model.status,
        view_count=model.view_count or 0,
        search_count=model.search_count or 0,
        bookmarked=bool(model.bookmarked),
        tags=tags or [],
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_tag(model: Tag) -> TagRead:
    return TagRead(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        name=model.name,
        color=model.color,
    )


def _model_to_membership(model: Membership) -> MembershipRead:
    return MembershipRead(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        user_id=str(model.user_id),
        role=model.role,
        created_at=model.created_at,
    )


def _model_to_integration(model: Integration) -> IntegrationRead:
    return IntegrationRead(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        type=model.type,
        settings=model.settings or {},
        is_active=model.is_active,
    )


def _model_to_audit_event(model: AuditEvent) -> AuditEventRead:
    return AuditEventRead(
        id=str(model.id),
        tenant_id=str(model.tenant_id) if model.tenant_id else None,
        actor_id=model.actor_id,
        action=model.action,
        entity=model.entity,
        entity_id=model.entity_id,
        detail=model.detail or {},
        severity=model.severity,
        created_at=model.created_at,
    )


async def _commit(session: AsyncSession, operation: str) -> None:
    """Commit, converting storage errors to PersistenceError."""
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("scoped.write_failed", operation=operation, error=str(exc))
        raise PersistenceError(f"{operation} failed") from exc


# ── Accessor ────────────────────────────────────────────────────────────────


class TenantScopedAccessor:
    """Typed data access bound to exactly one tenant.

    Args:
        session_factory: Callable returning an async context manager that
            yields an AsyncSession (an async_sessionmaker in production).
        tenant_id: Tenant UUID (string or UUID) every query is scoped to.
    """

    def __init__(self, session_factory: SessionFactory, tenant_id: str | uuid.UUID) -> None:
        self._session_factory = session_factory
        self._tenant_uuid = coerce_uuid(tenant_id, "tenant_id")

    @property
    def tenant_id(self) -> str:
        return str(self._tenant_uuid)

    # ── Scoping ─────────────────────────────────────────────────────────────

    def _scope(self, values: dict[str, Any] | None) -> dict[str, Any]:
        """Copy values with tenant_id forced to the bound tenant."""
        scoped = {key: _plain(value) for key, value in (values or {}).items()}
        scoped["tenant_id"] = self._tenant_uuid
        return scoped

    def _where(self, model: type, filters: dict[str, Any] | None = None) -> list[Any]:
        """Build WHERE clauses for model from filters plus the tenant scope."""
        columns = model.__table__.columns
        clauses = []
        for key, value in self._scope(filters).items():
            if key not in columns:
                raise InvalidInput(f"Unknown filter field: {key}")
            column = columns[key]
            if isinstance(value, (list, tuple, set)):
                clauses.append(column.in_([_plain(v) for v in value]))
            elif key in _UUID_FIELDS and value is not None:
                clauses.append(column == coerce_uuid(value, key))
            else:
                clauses.append(column == value)
        return clauses

    # ── Knowledge items ─────────────────────────────────────────────────────

    async def create_knowledge_item(self, data: dict[str, Any]) -> KnowledgeItemRead:
        """Insert a knowledge item in a single write.

        The embedding is never part of this write; use attach_embedding.
        channel_id and thread_id are lifted from source_metadata so that
        captured threads are unique per tenant.
        """
        payload = self._scope(data)
        payload.pop("embedding", None)
        metadata = payload.get("source_metadata") or {}
        for key in ("channel_id", "thread_id"):
            if payload.get(key) is None and metadata.get(key) is not None:
                payload[key] = str(metadata[key])

        async with self._session_factory() as session:
            model = KnowledgeItem(**payload)
            session.add(model)
            await _commit(session, "create_knowledge_item")
            await session.refresh(model)
            return _model_to_item(model)

    async def attach_embedding(self, item_id: str, embedding: list[float]) -> None:
        """Write the embedding vector of an existing item (second phase write)."""
        async with self._session_factory() as session:
            stmt = (
                update(KnowledgeItem)
                .where(*self._where(KnowledgeItem, {"id": item_id}))
                .values(embedding=embedding)
            )
            result = await session.execute(stmt)
            if result.rowcount == 0:
                raise KnowledgeItemNotFound(f"Knowledge item {item_id} not found")
            await _commit(session, "attach_embedding")

    async def get_knowledge_item(
        self, item_id: str, include_deleted: bool = False
    ) -> KnowledgeItemRead | None:
        async with self._session_factory() as session:
            stmt = select(KnowledgeItem).where(*self._where(KnowledgeItem, {"id": item_id}))
            if not include_deleted:
                stmt = stmt.where(KnowledgeItem.status != KnowledgeStatus.DELETED.value)
            model = (await session.execute(stmt)).scalar_one_or_none()
            if model is None:
                return None
            tags = await self._tag_names_for(session, [model.id])
            return _model_to_item(model, tags.get(model.id, []))

    async def get_embedding(self, item_id: str) -> list[float] | None:
        async with self._session_factory() as session:
            stmt = select(KnowledgeItem.embedding).where(
                *self._where(KnowledgeItem, {"id": item_id})
            )
            value = (await session.execute(stmt)).scalar_one_or_none()
            if value is None:
                return None
            return [float(v) for v in value]

    async def find_knowledge_items(
        self,
        filters: dict[str, Any] | None = None,
        limit: int = 50,
        offset: int = 0,
        include_deleted: bool = False,
    ) -> list[KnowledgeItemRead]:
        """List items newest first. Deleted items are excluded unless asked for."""
        filters = dict(filters or {})
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        async with self._session_factory() as session:
            stmt = select(KnowledgeItem).where(*self._where(KnowledgeItem, filters))
            if "status" not in filters and not include_deleted:
                stmt = stmt.where(KnowledgeItem.status != KnowledgeStatus.DELETED.value)
            stmt = (
                stmt.order_by(KnowledgeItem.created_at.desc(), KnowledgeItem.id)
                .limit(limit)
                .offset(max(offset, 0))
            )
            models = list((await session.execute(stmt)).scalars().all())
            tags = await self._tag_names_for(session, [m.id for m in models])
            return [_model_to_item(m, tags.get(m.id, [])) for m in models]

    async def find_by_source_thread(
        self, channel_id: str, thread_id: str
    ) -> KnowledgeItemRead | None:
        """Find a previously captured thread, including deleted ones."""
        async with self._session_factory() as session:
            stmt = select(KnowledgeItem).where(
                *self._where(
                    KnowledgeItem,
                    {"channel_id": str(channel_id), "thread_id": str(thread_id)},
                )
            )
            model = (await session.execute(stmt)).scalar_one_or_none()
            if model is None:
                return None
            tags = await self._tag_names_for(session, [model.id])
            return _model_to_item(model, tags.get(model.id, []))

    async def count_knowledge_items(
        self, filters: dict[str, Any] | None = None, include_deleted: bool = False
    ) -> int:
        filters = dict(filters or {})
        async with self._session_factory() as session:
            stmt = (
                select(func.count())
                .select_from(KnowledgeItem)
                .where(*self._where(KnowledgeItem, filters))
            )
            if "status" not in filters and not include_deleted:
                stmt = stmt.where(KnowledgeItem.status != KnowledgeStatus.DELETED.value)
            return int((await session.execute(stmt)).scalar_one())

    async def count_by(self, field: str) -> dict[str, int]:
        """Aggregate item counts grouped by one column (e.g. status, source_type)."""
        columns = KnowledgeItem.__table__.columns
        if field not in columns or field in ("content", "embedding", "source_metadata"):
            raise InvalidInput(f"Cannot group by {field}")
        column = columns[field]
        async with self._session_factory() as session:
            stmt = (
                select(column, func.count())
                .where(*self._where(KnowledgeItem))
                .group_by(column)
            )
            rows = (await session.execute(stmt)).all()
            return {str(key): int(count) for key, count in rows}

    async def update_knowledge_item(
        self, item_id: str, values: dict[str, Any]
    ) -> KnowledgeItemRead | None:
        """Update columns of an item. Returns None when the item is not in this tenant."""
        payload = self._scope(values)
        payload.pop("id", None)
        payload.pop("embedding", None)
        unknown = set(payload) - set(KnowledgeItem.__table__.columns.keys())
        if unknown:
            raise InvalidInput(f"Unknown fields: {sorted(unknown)}")

        async with self._session_factory() as session:
            stmt = (
                update(KnowledgeItem)
                .where(*self._where(KnowledgeItem, {"id": item_id}))
                .values(**payload)
            )
            result = await session.execute(stmt)
            await _commit(session, "update_knowledge_item")
            if result.rowcount == 0:
                return None
        return await self.get_knowledge_item(item_id, include_deleted=True)

    async def increment_view_count(self, item_id: str) -> None:
        async with self._session_factory() as session:
            stmt = (
                update(KnowledgeItem)
                .where(*self._where(KnowledgeItem, {"id": item_id}))
                .values(view_count=KnowledgeItem.view_count + 1)
            )
            await session.execute(stmt)
            await _commit(session, "increment_view_count")

    # ── Tags ────────────────────────────────────────────────────────────────

    async def _tag_names_for(
        self, session: AsyncSession, item_ids: list[uuid.UUID]
    ) -> dict[uuid.UUID, list[str]]:
        if not item_ids:
            return {}
        stmt = (
            select(knowledge_item_tags.c.item_id, Tag.name)
            .join(Tag, Tag.id == knowledge_item_tags.c.tag_id)
            .where(
                knowledge_item_tags.c.item_id.in_(item_ids),
                Tag.tenant_id == self._tenant_uuid,
            )
            .order_by(Tag.name)
        )
        names: dict[uuid.UUID, list[str]] = {}
        for item_id, name in (await session.execute(stmt)).all():
            names.setdefault(item_id, []).append(name)
        return names

    async def create_tag(self, name: str, color: str | None = None) -> TagRead:
        async with self._session_factory() as session:
            model = Tag(**self._scope({"name": name.strip(), "color": color}))
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise InvalidInput(f"Tag already exists: {name}") from exc
            except SQLAlchemyError as exc:
                await session.rollback()
                raise PersistenceError("create_tag failed") from exc
            await session.refresh(model)
            return _model_to_tag(model)

    async def list_tags(self) -> list[TagRead]:
        async with self._session_factory() as session:
            stmt = select(Tag).where(*self._where(Tag)).order_by(Tag.name)
            return [_model_to_tag(m) for m in (await session.execute(stmt)).scalars().all()]

    async def count_tags(self) -> int:
        async with self._session_factory() as session:
            stmt = select(func.count()).select_from(Tag).where(*self._where(Tag))
            return int((await session.execute(stmt)).scalar_one())

    async def tag_item(self, item_id: str, names: list[str]) -> list[str]:
        """Attach tags by name, creating missing tags. Returns the item's tag names."""
        item_uuid = coerce_uuid(item_id, "item_id")
        cleaned = sorted({n.strip() for n in names if n and n.strip()})

        async with self._session_factory() as session:
            exists = await session.execute(
                select(KnowledgeItem.id).where(*self._where(KnowledgeItem, {"id": item_uuid}))
            )
            if exists.scalar_one_or_none() is None:
                raise KnowledgeItemNotFound(f"Knowledge item {item_id} not found")

            existing = {
                t.name: t
                for t in (
                    await session.execute(select(Tag).where(*self._where(Tag, {"name": cleaned})))
                ).scalars().all()
            }
            for name in cleaned:
                if name not in existing:
                    tag = Tag(**self._scope({"name": name}))
                    session.add(tag)
                    existing[name] = tag
            await session.flush()

            linked = set(
                (
                    await session.execute(
                        select(knowledge_item_tags.c.tag_id).where(
                            knowledge_item_tags.c.item_id == item_uuid
                        )
                    )
                ).scalars().all()
            )
            rows = [
                {"item_id": item_uuid, "tag_id": tag.id}
                for tag in existing.values()
                if tag.id not in linked
            ]
            if rows:
                await session.execute(insert(knowledge_item_tags), rows)
            await _commit(session, "tag_item")

            tags = await self._tag_names_for(session, [item_uuid])
            return tags.get(item_uuid, [])

    async def get_item_tag_names(self, item_id: str) -> list[str]:
        item_uuid = coerce_uuid(item_id, "item_id")
        async with self._session_factory() as session:
            tags = await self._tag_names_for(session, [item_uuid])
            return tags.get(item_uuid, [])

    async def delete_tag(self, tag_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(delete(Tag).where(*self._where(Tag, {"id": tag_id})))
            await _commit(session, "delete_tag")
            return result.rowcount > 0

    # ── Memberships ─────────────────────────────────────────────────────────

    async def get_membership(self, user_id: str) -> MembershipRead | None:
        async with self._session_factory() as session:
            stmt = select(Membership).where(*self._where(Membership, {"user_id": user_id}))
            model = (await session.execute(stmt)).scalar_one_or_none()
            return _model_to_membership(model) if model else None

    async def list_memberships(self) -> list[MembershipRead]:
        async with self._session_factory() as session:
            stmt = select(Membership).where(*self._where(Membership)).order_by(Membership.created_at)
            return [_model_to_membership(m) for m in (await session.execute(stmt)).scalars().all()]

    async def count_memberships(self, role: MemberRole | None = None) -> int:
        filters = {"role": role} if role else None
        async with self._session_factory() as session:
            stmt = select(func.count()).select_from(Membership).where(*self._where(Membership, filters))
            return int((await session.execute(stmt)).scalar_one())

    async def create_membership(self, user_id: str, role: MemberRole) -> MembershipRead:
        async with self._session_factory() as session:
            model = Membership(
                **self._scope({"user_id": coerce_uuid(user_id, "user_id"), "role": role})
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise InvalidInput("User is already a member of this tenant") from exc
            except SQLAlchemyError as exc:
                await session.rollback()
                raise PersistenceError("create_membership failed") from exc
            await session.refresh(model)
            return _model_to_membership(model)

    async def update_membership_role(self, user_id: str, role: MemberRole) -> MembershipRead | None:
        async with self._session_factory() as session:
            stmt = (
                update(Membership)
                .where(*self._where(Membership, {"user_id": user_id}))
                .values(role=_plain(role))
            )
            result = await session.execute(stmt)
            await _commit(session, "update_membership_role")
            if result.rowcount == 0:
                return None
        return await self.get_membership(user_id)

    # ── Integrations ────────────────────────────────────────────────────────

    async def get_integration(
        self, integration_type: str, active_only: bool = True
    ) -> IntegrationConfig | None:
        """Load adapter configuration for one platform, credentials decrypted.

        Raises:
            CredentialsUnreadable: Stored under a different encryption key.
        """
        filters: dict[str, Any] = {"type": integration_type}
        if active_only:
            filters["is_active"] = True
        async with self._session_factory() as session:
            stmt = select(Integration).where(*self._where(Integration, filters))
            model = (await session.execute(stmt)).scalar_one_or_none()
            if model is None:
                return None
            try:
                credentials = decrypt_credentials(model.credentials or {})
            except InvalidToken as exc:
                logger.error(
                    "scoped.credentials_unreadable", tenant_id=self.tenant_id, type=model.type
                )
                raise CredentialsUnreadable(
                    f"{model.type} credentials could not be decrypted"
                ) from exc
            return IntegrationConfig(
                type=model.type,
                credentials=credentials,
                settings=model.settings or {},
            )

    async def list_integrations(self) -> list[IntegrationRead]:
        async with self._session_factory() as session:
            stmt = select(Integration).where(*self._where(Integration)).order_by(Integration.type)
            return [_model_to_integration(m) for m in (await session.execute(stmt)).scalars().all()]

    async def upsert_integration(
        self,
        integration_type: str,
        credentials: dict[str, Any],
        settings: dict[str, Any] | None = None,
        is_active: bool = True,
    ) -> IntegrationRead:
        async with self._session_factory() as session:
            stmt = select(Integration).where(*self._where(Integration, {"type": integration_type}))
            model = (await session.execute(stmt)).scalar_one_or_none()
            if model is None:
                model = Integration(**self._scope({"type": integration_type}))
                session.add(model)
            model.credentials = encrypt_credentials(credentials)
            model.settings = settings or {}
            model.is_active = is_active
            await _commit(session, "upsert_integration")
            await session.refresh(model)
            return _model_to_integration(model)

    # ── Audit events ────────────────────────────────────────────────────────

    async def append_audit_event(
        self,
        actor_id: str | None,
        action: str,
        entity: str,
        entity_id: str | None = None,
        detail: dict[str, Any] | None = None,
        severity: AuditSeverity = AuditSeverity.INFO,
    ) -> AuditEventRead:
        """Append one audit event for the bound tenant. Events are never updated."""
        async with self._session_factory() as session:
            model = AuditEvent(
                **self._scope(
                    {
                        "actor_id": actor_id,
                        "action": action,
                        "entity": entity,
                        "entity_id": entity_id,
                        "detail": detail or {},
                        "severity": severity,
                    }
                )
            )
            session.add(model)
            await _commit(session, "append_audit_event")
            await session.refresh(model)
            return _model_to_audit_event(model)

    async def list_audit_events(
        self, action: str | None = None, limit: int = 100
    ) -> list[AuditEventRead]:
        filters = {"action": action} if action else None
        async with self._session_factory() as session:
            stmt = (
                select(AuditEvent)
                .where(*self._where(AuditEvent, filters))
                .order_by(AuditEvent.created_at.desc())
                .limit(max(1, min(limit, MAX_PAGE_SIZE)))
            )
            return [_model_to_audit_event(m) for m in (await session.execute(stmt)).scalars().all()]


# ── System-wide audit (no tenant) ───────────────────────────────────────────


async def append_system_audit_event(
    session_factory: SessionFactory,
    actor_id: str | None,
    action: str,
    entity: str,
    entity_id: str | None = None,
    detail: dict[str, Any] | None = None,
    severity: AuditSeverity = AuditSeverity.INFO,
) -> AuditEventRead:
    """Append an audit event that belongs to no tenant (e.g. failed resolution)."""
    async with session_factory() as session:
        model = AuditEvent(
            tenant_id=None,
            actor_id=actor_id,
            action=action,
            entity=entity,
            entity_id=entity_id,
            detail=detail or {},
            severity=_plain(severity),
        )
        session.add(model)
        await _commit(session, "append_system_audit_event")
        await session.refresh(model)
        return _model_to_audit_event(model)


async def list_system_audit_events(
    session_factory: SessionFactory, action: str | None = None, limit: int = 100
) -> list[AuditEventRead]:
    async with session_factory() as session:
        stmt = select(AuditEvent).where(AuditEvent.tenant_id.is_(None))
        if action:
            stmt = stmt.where(AuditEvent.action == action)
        stmt = stmt.order_by(AuditEvent.created_at.desc()).limit(max(1, min(limit, MAX_PAGE_SIZE)))
        return [_model_to_audit_event(m) for m in (await session.execute(stmt)).scalars().all()]
