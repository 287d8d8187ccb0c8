"""Notion export adapter -- publishes knowledge items as Notion database pages.

Key implementation details:
- notion-client AsyncClient, injectable for tests
- Notion accepts at most 100 children per request: the page is created with
  the first 100 blocks and the rest are appended in chunks
- Transient errors (timeouts, 429, 5xx) are retried with tenacity and
  exponential backoff; anything else fails immediately
- No exception escapes export_knowledge: failures are returned as
  ExportResult(success=False)
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import httpx
import structlog
from notion_client import AsyncClient
from notion_client.errors import HTTPResponseError, RequestTimeoutError
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from src.threadbase.core.errors import ExportFailure, InvalidInput
from src.threadbase.integrations.base import ExportAdapter
from src.threadbase.integrations.formatting import to_notion_blocks
from src.threadbase.schemas.integration import ExportResult, IntegrationConfig
from src.threadbase.schemas.knowledge import ThreadMessage

logger = structlog.get_logger(__name__)

NOTION_CHILDREN_LIMIT = 100


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (RequestTimeoutError, httpx.TransportError)):
        return True
    if isinstance(exc, HTTPResponseError):
        return exc.status == 429 or exc.status >= 500
    return False


_notion_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(_is_transient),
    reraise=True,
)


class NotionExportAdapter(ExportAdapter):
    """Notion implementation of ExportAdapter.

    Args:
        config: credentials["api_key"] (internal integration secret) and
            settings["database_id"]; optional settings["title_property"]
            (default "Name") and settings["tags_property"] (default "Tags").
        client: Pre-built notion_client.AsyncClient (tests inject a mock).
        timeout: Request timeout in seconds.
    """

    integration_type = "notion"

    def __init__(
        self,
        config: IntegrationConfig,
        client: AsyncClient | None = None,
        timeout: float = 20.0,
    ) -> None:
        super().__init__(config)
        if client is None:
            api_key = config.credentials.get("api_key")
            if not api_key:
                raise InvalidInput("Notion integration requires credentials.api_key")
            client = AsyncClient(auth=api_key, timeout_ms=int(timeout * 1000))
        self._client = client
        self._database_id: str | None = config.settings.get("database_id")
        self._title_property: str = config.settings.get("title_property", "Name")
        self._tags_property: str = config.settings.get("tags_property", "Tags")

    async def connect(self) -> bool:
        try:
            await self._client.users.me()
        except Exception as exc:
            logger.warning("notion.connect_failed", error=str(exc))
            return False
        return True

    async def disconnect(self) -> None:
        await self._client.aclose()

    async def test_connection(self) -> bool:
        return await self.connect()

    async def export_knowledge(
        self,
        title: str,
        content: Sequence[ThreadMessage],
        tags: Sequence[str] | None = None,
    ) -> ExportResult:
        log = logger.bind(database_id=self._database_id)
        try:
            if not self._database_id:
                raise ExportFailure("Notion database ID not configured")

            blocks = to_notion_blocks(content)
            page = await self._create_page(
                self._properties(title, tags or []), blocks[:NOTION_CHILDREN_LIMIT]
            )
            for start in range(NOTION_CHILDREN_LIMIT, len(blocks), NOTION_CHILDREN_LIMIT):
                await self._append_blocks(page["id"], blocks[start : start + NOTION_CHILDREN_LIMIT])
        except Exception as exc:
            log.error("notion.export_failed", error=str(exc))
            return ExportResult(success=False, error=str(exc) or type(exc).__name__)

        log.info("notion.page_created", page_id=page["id"], block_count=len(blocks))
        return ExportResult(success=True, external_id=page["id"], url=page.get("url"))

    def _properties(self, title: str, tags: Sequence[str]) -> dict[str, Any]:
        properties: dict[str, Any] = {
            self._title_property: {"title": [{"text": {"content": title[:2000]}}]},
        }
        if tags:
            properties[self._tags_property] = {
                "multi_select": [{"name": tag.replace(",", " ")[:100]} for tag in tags]
            }
        return properties

    @_notion_retry
    async def _create_page(
        self, properties: dict[str, Any], children: list[dict[str, Any]]
    ) -> dict[str, Any]:
        return await self._client.pages.create(
            parent={"database_id": self._database_id},
            properties=properties,
            children=children,
        )

    @_notion_retry
    async def _append_blocks(self, page_id: str, children: list[dict[str, Any]]) -> None:
        await self._client.blocks.children.append(block_id=page_id, children=children)
