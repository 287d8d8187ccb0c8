"""Confluence export adapter -- publishes knowledge items through the Confluence REST API.

Pages are created with POST /rest/api/content in storage format. Transport
errors and 5xx/429 responses are retried with tenacity; other errors fail
at once. export_knowledge never raises.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from src.threadbase.core.errors import ExportFailure, InvalidInput
from src.threadbase.integrations.base import ExportAdapter
from src.threadbase.integrations.formatting import to_confluence_storage
from src.threadbase.schemas.integration import ExportResult, IntegrationConfig
from src.threadbase.schemas.knowledge import ThreadMessage

logger = structlog.get_logger(__name__)


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False


_confluence_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(_is_transient),
    reraise=True,
)


class ConfluenceExportAdapter(ExportAdapter):
    """Confluence implementation of ExportAdapter over httpx.

    Args:
        config: credentials["base_url"], credentials["email"] and
            credentials["api_token"]; settings["space_key"] and optional
            settings["parent_page_id"].
        timeout: Request timeout in seconds.
    """

    integration_type = "confluence"

    def __init__(self, config: IntegrationConfig, timeout: float = 20.0) -> None:
        super().__init__(config)
        credentials = config.credentials
        missing = [k for k in ("base_url", "email", "api_token") if not credentials.get(k)]
        if missing:
            raise InvalidInput(f"Confluence integration is missing credentials: {', '.join(missing)}")
        self._base_url = str(credentials["base_url"]).rstrip("/")
        self._auth = httpx.BasicAuth(credentials["email"], credentials["api_token"])
        self._space_key: str | None = config.settings.get("space_key")
        self._parent_page_id: str | None = config.settings.get("parent_page_id")
        self._timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client with basic auth."""
        return httpx.AsyncClient(auth=self._auth, timeout=self._timeout)

    async def connect(self) -> bool:
        try:
            async with self._client() as client:
                response = await client.get(f"{self._base_url}/rest/api/user/current")
        except httpx.HTTPError as exc:
            logger.warning("confluence.connect_failed", error=str(exc))
            return False
        return response.is_success

    async def disconnect(self) -> None:
        return None

    async def test_connection(self) -> bool:
        return await self.connect()

    async def export_knowledge(
        self,
        title: str,
        content: Sequence[ThreadMessage],
        tags: Sequence[str] | None = None,
    ) -> ExportResult:
        log = logger.bind(space_key=self._space_key)
        try:
            if not self._space_key:
                raise ExportFailure("Confluence space key not configured")
            page = await self._create_page(self._page_payload(title, content, tags or []))
        except httpx.HTTPStatusError as exc:
            message = f"Confluence API error {exc.response.status_code}: {exc.response.text[:500]}"
            log.error("confluence.export_failed", error=message)
            return ExportResult(success=False, error=message)
        except Exception as exc:
            log.error("confluence.export_failed", error=str(exc))
            return ExportResult(success=False, error=str(exc) or type(exc).__name__)

        page_id = str(page["id"])
        log.info("confluence.page_created", page_id=page_id)
        return ExportResult(
            success=True,
            external_id=page_id,
            url=f"{self._base_url}/pages/viewpage.action?pageId={page_id}",
        )

    def _page_payload(
        self, title: str, content: Sequence[ThreadMessage], tags: Sequence[str]
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": "page",
            "title": title,
            "space": {"key": self._space_key},
            "body": {
                "storage": {
                    "value": to_confluence_storage(content, tags),
                    "representation": "storage",
                },
            },
        }
        if self._parent_page_id:
            payload["ancestors"] = [{"id": self._parent_page_id}]
        return payload

    @_confluence_retry
    async def _create_page(self, payload: dict[str, Any]) -> dict[str, Any]:
        async with self._client() as client:
            response = await client.post(f"{self._base_url}/rest/api/content", json=payload)
            response.raise_for_status()
            return response.json()
