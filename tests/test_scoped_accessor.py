"""Tests for TenantScopedAccessor -- tenant isolation of every query path.

Each test writes through one tenant's accessor and verifies that the other
tenant's accessor can neither see nor modify the data, and that a tenant_id
smuggled into filters or payloads is overridden by the bound tenant.
"""

from __future__ import annotations

import json

import pytest
from cryptography.fernet import Fernet
from sqlalchemy import select

from src.threadbase.config import get_settings
from src.threadbase.core.errors import CredentialsUnreadable, InvalidInput, KnowledgeItemNotFound
from src.threadbase.core.scoped import TenantScopedAccessor, coerce_uuid
from src.threadbase.models import Integration
from src.threadbase.schemas.knowledge import KnowledgeStatus, SourceType
from src.threadbase.schemas.tenant import AuditSeverity, MemberRole

EMBEDDING = [0.25] * 1536


def _item(title: str = "Checkout outage", **extra) -> dict:
    data = {
        "title": title,
        "content": [{"author": "alice", "content": "checkout is down"}],
        "source_type": SourceType.API,
        "created_by": "user-1",
        "status": KnowledgeStatus.PUBLISHED,
    }
    data.update(extra)
    return data


@pytest.fixture
def alpha(session_factory, tenant_alpha) -> TenantScopedAccessor:
    return TenantScopedAccessor(session_factory, tenant_alpha.id)


@pytest.fixture
def beta(session_factory, tenant_beta) -> TenantScopedAccessor:
    return TenantScopedAccessor(session_factory, tenant_beta.id)


class TestConstruction:
    def test_malformed_tenant_id(self, session_factory):
        with pytest.raises(InvalidInput):
            TenantScopedAccessor(session_factory, "alpha")

    def test_coerce_uuid_rejects_garbage(self):
        with pytest.raises(InvalidInput):
            coerce_uuid("1234", "item_id")


class TestKnowledgeIsolation:
    @pytest.mark.asyncio
    async def test_items_are_invisible_to_other_tenants(self, alpha, beta):
        item = await alpha.create_knowledge_item(_item())

        assert await beta.get_knowledge_item(item.id) is None
        assert await beta.find_knowledge_items() == []
        assert await beta.count_knowledge_items() == 0
        assert (await alpha.get_knowledge_item(item.id)).title == "Checkout outage"

    @pytest.mark.asyncio
    async def test_payload_tenant_id_is_overridden(self, alpha, beta, tenant_alpha, tenant_beta):
        item = await alpha.create_knowledge_item(_item(tenant_id=tenant_beta.id))

        assert item.tenant_id == tenant_alpha.id
        assert await beta.count_knowledge_items() == 0

    @pytest.mark.asyncio
    async def test_filter_tenant_id_is_overridden(self, alpha, beta, tenant_alpha):
        await alpha.create_knowledge_item(_item())

        found = await beta.find_knowledge_items({"tenant_id": tenant_alpha.id})
        assert found == []

    @pytest.mark.asyncio
    async def test_cross_tenant_update_touches_nothing(self, alpha, beta):
        item = await alpha.create_knowledge_item(_item())

        assert await beta.update_knowledge_item(item.id, {"title": "hijacked"}) is None
        assert (await alpha.get_knowledge_item(item.id)).title == "Checkout outage"

    @pytest.mark.asyncio
    async def test_cross_tenant_embedding_write_fails(self, alpha, beta):
        item = await alpha.create_knowledge_item(_item())

        with pytest.raises(KnowledgeItemNotFound):
            await beta.attach_embedding(item.id, EMBEDDING)
        assert await alpha.get_embedding(item.id) is None

    @pytest.mark.asyncio
    async def test_unknown_filter_field(self, alpha):
        with pytest.raises(InvalidInput):
            await alpha.find_knowledge_items({"no_such_column": 1})


class TestKnowledgeItems:
    @pytest.mark.asyncio
    async def test_create_never_writes_embedding(self, alpha):
        item = await alpha.create_knowledge_item(_item(embedding=EMBEDDING))
        assert item.has_embedding is False
        assert await alpha.get_embedding(item.id) is None

    @pytest.mark.asyncio
    async def test_attach_embedding(self, alpha):
        item = await alpha.create_knowledge_item(_item())
        await alpha.attach_embedding(item.id, EMBEDDING)

        stored = await alpha.get_embedding(item.id)
        assert stored is not None
        assert len(stored) == 1536
        assert (await alpha.get_knowledge_item(item.id)).has_embedding is True

    @pytest.mark.asyncio
    async def test_source_thread_lifted_from_metadata(self, alpha):
        await alpha.create_knowledge_item(
            _item(source_metadata={"channel_id": "C1", "thread_id": "1700000000.1"})
        )
        found = await alpha.find_by_source_thread("C1", "1700000000.1")
        assert found is not None
        assert found.source_metadata["channel_id"] == "C1"

    @pytest.mark.asyncio
    async def test_deleted_items_hidden_by_default(self, alpha):
        item = await alpha.create_knowledge_item(_item())
        await alpha.update_knowledge_item(item.id, {"status": KnowledgeStatus.DELETED})

        assert await alpha.get_knowledge_item(item.id) is None
        assert await alpha.count_knowledge_items() == 0
        assert (await alpha.get_knowledge_item(item.id, include_deleted=True)) is not None
        assert await alpha.count_knowledge_items({"status": KnowledgeStatus.DELETED}) == 1

    @pytest.mark.asyncio
    async def test_count_by_status(self, alpha):
        first = await alpha.create_knowledge_item(_item("one"))
        await alpha.create_knowledge_item(_item("two"))
        await alpha.update_knowledge_item(first.id, {"status": KnowledgeStatus.ARCHIVED})

        assert await alpha.count_by("status") == {"ARCHIVED": 1, "PUBLISHED": 1}
        with pytest.raises(InvalidInput):
            await alpha.count_by("embedding")

    @pytest.mark.asyncio
    async def test_increment_view_count(self, alpha):
        item = await alpha.create_knowledge_item(_item())
        await alpha.increment_view_count(item.id)
        await alpha.increment_view_count(item.id)
        assert (await alpha.get_knowledge_item(item.id)).view_count == 2

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, alpha):
        item = await alpha.create_knowledge_item(_item())
        with pytest.raises(InvalidInput):
            await alpha.update_knowledge_item(item.id, {"owner": "mallory"})


class TestTags:
    @pytest.mark.asyncio
    async def test_tag_item_creates_missing_tags(self, alpha):
        item = await alpha.create_knowledge_item(_item())
        names = await alpha.tag_item(item.id, ["incident", " deploys ", "incident"])

        assert names == ["deploys", "incident"]
        assert sorted(t.name for t in await alpha.list_tags()) == ["deploys", "incident"]
        assert (await alpha.get_knowledge_item(item.id)).tags == ["deploys", "incident"]

    @pytest.mark.asyncio
    async def test_tagging_is_idempotent(self, alpha):
        item = await alpha.create_knowledge_item(_item())
        await alpha.tag_item(item.id, ["incident"])
        assert await alpha.tag_item(item.id, ["incident"]) == ["incident"]
        assert await alpha.count_tags() == 1

    @pytest.mark.asyncio
    async def test_tags_are_tenant_local(self, alpha, beta):
        await alpha.create_tag("incident")
        await beta.create_tag("incident")

        assert [t.name for t in await alpha.list_tags()] == ["incident"]
        assert await beta.count_tags() == 1

    @pytest.mark.asyncio
    async def test_duplicate_tag_rejected(self, alpha):
        await alpha.create_tag("incident", "#ff0000")
        with pytest.raises(InvalidInput):
            await alpha.create_tag("incident")

    @pytest.mark.asyncio
    async def test_cannot_tag_other_tenants_item(self, alpha, beta):
        item = await alpha.create_knowledge_item(_item())
        with pytest.raises(KnowledgeItemNotFound):
            await beta.tag_item(item.id, ["stolen"])
        assert await beta.count_tags() == 0

    @pytest.mark.asyncio
    async def test_delete_tag(self, alpha, beta):
        tag = await alpha.create_tag("incident")
        assert await beta.delete_tag(tag.id) is False
        assert await alpha.delete_tag(tag.id) is True
        assert await alpha.list_tags() == []


class TestMembershipsAndIntegrations:
    @pytest.mark.asyncio
    async def test_memberships_are_scoped(self, alpha, beta, alpha_owner_id):
        assert [m.user_id for m in await alpha.list_memberships()] == [alpha_owner_id]
        assert await beta.get_membership(alpha_owner_id) is None
        assert await alpha.count_memberships(MemberRole.OWNER) == 1

    @pytest.mark.asyncio
    async def test_duplicate_membership_rejected(self, alpha, alpha_owner_id):
        with pytest.raises(InvalidInput):
            await alpha.create_membership(alpha_owner_id, MemberRole.MEMBER)

    @pytest.mark.asyncio
    async def test_integration_credentials_stay_private(self, alpha, beta):
        await alpha.upsert_integration("slack", {"bot_token": "xoxb-1"}, {"channels": ["C1"]})

        listed = await alpha.list_integrations()
        assert [i.type for i in listed] == ["slack"]
        assert not hasattr(listed[0], "credentials")

        config = await alpha.get_integration("slack")
        assert config.credentials == {"bot_token": "xoxb-1"}
        assert await beta.get_integration("slack") is None

    @pytest.mark.asyncio
    async def test_upsert_replaces_and_deactivates(self, alpha):
        await alpha.upsert_integration("notion", {"api_key": "old"})
        await alpha.upsert_integration("notion", {"api_key": "new"}, is_active=False)

        assert await alpha.get_integration("notion") is None
        inactive = await alpha.get_integration("notion", active_only=False)
        assert inactive.credentials == {"api_key": "new"}
        assert len(await alpha.list_integrations()) == 1

    @pytest.mark.asyncio
    async def test_credentials_are_encrypted_at_rest(self, alpha, session_factory):
        await alpha.upsert_integration("slack", {"bot_token": "xoxb-secret", "scopes": ["chat"]})

        async with session_factory() as session:
            stmt = select(Integration).where(Integration.type == "slack")
            row = (await session.execute(stmt)).scalar_one()
        assert set(row.credentials) == {"bot_token", "scopes"}
        assert "xoxb-secret" not in json.dumps(row.credentials)

        config = await alpha.get_integration("slack")
        assert config.credentials == {"bot_token": "xoxb-secret", "scopes": ["chat"]}

    @pytest.mark.asyncio
    async def test_credentials_under_another_key_are_unreadable(self, alpha, monkeypatch):
        await alpha.upsert_integration("notion", {"api_key": "secret_1"})
        monkeypatch.setattr(
            get_settings(), "CREDENTIALS_ENCRYPTION_KEY", Fernet.generate_key().decode()
        )

        with pytest.raises(CredentialsUnreadable):
            await alpha.get_integration("notion")


class TestAuditEvents:
    @pytest.mark.asyncio
    async def test_audit_events_are_scoped(self, alpha, beta):
        await alpha.append_audit_event(
            actor_id="u1",
            action="knowledge.ingested",
            entity="knowledge_item",
            severity=AuditSeverity.INFO,
        )
        assert await beta.list_audit_events(action="knowledge.ingested") == []
        events = await alpha.list_audit_events(action="knowledge.ingested")
        assert events[0].actor_id == "u1"
