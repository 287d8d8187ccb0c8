"""Tests for NotionExportAdapter with a mocked notion_client AsyncClient.

Covers:
- Page creation with title and tags properties
- The 100-children limit: remaining blocks appended in chunks
- Missing database id and API errors reported as ExportResult(success=False)
- connect() / disconnect()
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from src.threadbase.core.errors import InvalidInput
from src.threadbase.integrations.notion import NOTION_CHILDREN_LIMIT, NotionExportAdapter
from src.threadbase.schemas.integration import IntegrationConfig
from src.threadbase.schemas.knowledge import ThreadMessage


def _make_mock_client() -> MagicMock:
    client = MagicMock()
    client.pages = MagicMock()
    client.pages.create = AsyncMock(
        return_value={"id": "page-123", "url": "https://notion.so/page-123"}
    )
    client.blocks = MagicMock()
    client.blocks.children = MagicMock()
    client.blocks.children.append = AsyncMock(return_value={})
    client.users = MagicMock()
    client.users.me = AsyncMock(return_value={"object": "user"})
    client.aclose = AsyncMock()
    return client


def _adapter(client: MagicMock, settings: dict | None = None) -> NotionExportAdapter:
    config = IntegrationConfig(
        type="notion",
        credentials={"api_key": "secret_test"},
        settings={"database_id": "db-1"} if settings is None else settings,
    )
    return NotionExportAdapter(config, client=client)


def _messages(count: int) -> list[ThreadMessage]:
    return [ThreadMessage(author=f"user{i}", content=f"message {i}") for i in range(count)]


class TestNotionExport:
    def test_missing_api_key(self):
        with pytest.raises(InvalidInput):
            NotionExportAdapter(IntegrationConfig(type="notion", settings={"database_id": "db-1"}))

    @pytest.mark.asyncio
    async def test_export_creates_page(self):
        client = _make_mock_client()
        adapter = _adapter(client)

        result = await adapter.export_knowledge("Checkout outage", _messages(2), ["incident", "a,b"])

        assert result.success is True
        assert result.external_id == "page-123"
        assert result.url == "https://notion.so/page-123"

        kwargs = client.pages.create.call_args.kwargs
        assert kwargs["parent"] == {"database_id": "db-1"}
        assert kwargs["properties"]["Name"]["title"][0]["text"]["content"] == "Checkout outage"
        assert kwargs["properties"]["Tags"]["multi_select"] == [{"name": "incident"}, {"name": "a b"}]
        # heading + paragraph per message, one divider between them
        assert len(kwargs["children"]) == 5
        client.blocks.children.append.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_custom_property_names(self):
        client = _make_mock_client()
        adapter = _adapter(
            client,
            settings={"database_id": "db-1", "title_property": "Title", "tags_property": "Labels"},
        )
        await adapter.export_knowledge("t", _messages(1), ["x"])

        properties = client.pages.create.call_args.kwargs["properties"]
        assert set(properties) == {"Title", "Labels"}

    @pytest.mark.asyncio
    async def test_large_thread_is_appended_in_chunks(self):
        client = _make_mock_client()
        adapter = _adapter(client)

        # 60 messages -> 60 headings + 60 paragraphs + 59 dividers = 179 blocks
        result = await adapter.export_knowledge("Long thread", _messages(60))

        assert result.success is True
        assert len(client.pages.create.call_args.kwargs["children"]) == NOTION_CHILDREN_LIMIT
        appended = client.blocks.children.append.call_args_list
        assert len(appended) == 1
        assert appended[0].kwargs["block_id"] == "page-123"
        assert len(appended[0].kwargs["children"]) == 79

    @pytest.mark.asyncio
    async def test_missing_database_id(self):
        client = _make_mock_client()
        adapter = _adapter(client, settings={})

        result = await adapter.export_knowledge("t", _messages(1))

        assert result.success is False
        assert "database ID" in result.error
        client.pages.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_api_error_is_reported(self):
        client = _make_mock_client()
        client.pages.create = AsyncMock(side_effect=ValueError("validation_error: bad property"))
        adapter = _adapter(client)

        result = await adapter.export_knowledge("t", _messages(1))

        assert result.success is False
        assert "validation_error" in result.error
        # Non-transient errors are not retried
        assert client.pages.create.await_count == 1


class TestNotionConnection:
    @pytest.mark.asyncio
    async def test_connect(self):
        client = _make_mock_client()
        assert await _adapter(client).connect() is True

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        client = _make_mock_client()
        client.users.me = AsyncMock(side_effect=RuntimeError("unauthorized"))
        assert await _adapter(client).connect() is False

    @pytest.mark.asyncio
    async def test_disconnect_closes_client(self):
        client = _make_mock_client()
        await _adapter(client).disconnect()
        client.aclose.assert_awaited_once()
