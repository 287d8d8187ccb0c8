"""Discord capture adapter -- pulls a message and its thread via Discord REST v10.

Thread references have the form "<message_id>:<channel_id>". When the
root message started a thread, the thread channel's messages are paged in
with `after` and appended in chronological order. Rate limits, 5xx responses
and transport errors are retried with tenacity. Messages without text,
attachments, embeds or stickers are dropped.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from src.threadbase.core.errors import AdapterConnectionError, InvalidInput
from src.threadbase.integrations.base import CaptureAdapter
from src.threadbase.schemas.integration import IntegrationConfig
from src.threadbase.schemas.knowledge import CapturedThread, SourceType, ThreadMessage

logger = structlog.get_logger(__name__)

DISCORD_API_BASE = "https://discord.com/api/v10"
THREAD_PAGE_SIZE = 100


def parse_thread_ref(thread_ref: str) -> tuple[str, str]:
    """Split "<message_id>:<channel_id>" into (message_id, channel_id)."""
    message_id, sep, channel_id = (thread_ref or "").partition(":")
    if not sep or not message_id.strip() or not channel_id.strip():
        raise InvalidInput(
            f"Discord thread reference must be '<message_id>:<channel_id>', got {thread_ref!r}"
        )
    return message_id.strip(), channel_id.strip()


def _is_transient_status(status: int) -> bool:
    return status == 429 or status >= 500


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return _is_transient_status(exc.response.status_code)
    return False


_discord_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
    retry=retry_if_exception(_is_transient),
    reraise=True,
)


def _message_text(raw: dict[str, Any]) -> str:
    """Message content, or embed and sticker text when the content is empty."""
    content = raw.get("content") or ""
    if content.strip():
        return content
    parts = []
    for embed in raw.get("embeds") or []:
        text = " - ".join(p for p in (embed.get("title"), embed.get("description")) if p)
        if text:
            parts.append(text)
    for sticker in raw.get("sticker_items") or []:
        parts.append(f"[sticker: {sticker.get('name') or 'sticker'}]")
    return "\n".join(parts)


def _to_message(raw: dict[str, Any]) -> ThreadMessage:
    author = raw.get("author") or {}
    return ThreadMessage(
        id=raw.get("id"),
        author=author.get("global_name") or author.get("username") or "unknown",
        content=_message_text(raw),
        timestamp=raw.get("timestamp"),
        attachments=[
            {
                "name": a.get("filename") or "attachment",
                "url": a.get("url"),
                "mimetype": a.get("content_type"),
            }
            for a in raw.get("attachments") or []
        ],
    )


class DiscordCaptureAdapter(CaptureAdapter):
    """Discord implementation of CaptureAdapter over httpx.

    Args:
        config: credentials["bot_token"] is required.
        timeout: Per-request timeout in seconds.
        poll_interval: Seconds between listener polls.
    """

    integration_type = "discord"
    source_type = SourceType.DISCORD

    def __init__(
        self,
        config: IntegrationConfig,
        timeout: float = 20.0,
        poll_interval: float = 30.0,
    ) -> None:
        super().__init__(config, poll_interval=poll_interval, timeout=timeout)
        token = config.credentials.get("bot_token")
        if not token:
            raise InvalidInput("Discord integration requires credentials.bot_token")
        self._headers = {"Authorization": f"Bot {token}"}
        self._timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client with the bot token."""
        return httpx.AsyncClient(headers=self._headers, timeout=self._timeout)

    async def connect(self) -> bool:
        try:
            async with self._client() as client:
                response = await client.get(f"{DISCORD_API_BASE}/users/@me")
        except httpx.HTTPError as exc:
            logger.warning("discord.connect_failed", error=str(exc))
            return False
        return response.is_success

    async def disconnect(self) -> None:
        await self.stop_listening()

    async def test_connection(self) -> bool:
        return await self.connect()

    async def capture_thread(self, thread_ref: str) -> CapturedThread:
        message_id, channel_id = parse_thread_ref(thread_ref)
        log = logger.bind(channel_id=channel_id, message_id=message_id)

        try:
            async with self._client() as client:
                response = await self._get(
                    client, f"{DISCORD_API_BASE}/channels/{channel_id}/messages/{message_id}"
                )
                response.raise_for_status()
                root = response.json()

                replies: list[dict[str, Any]] = []
                thread = root.get("thread")
                if thread and thread.get("id"):
                    replies = await self._fetch_thread(client, thread["id"], log)

                channel_response = await self._get(client, f"{DISCORD_API_BASE}/channels/{channel_id}")
                channel = channel_response.json() if channel_response.is_success else {}
        except httpx.HTTPError as exc:
            log.error("discord.capture_failed", error=str(exc))
            raise AdapterConnectionError(f"Discord message {thread_ref} could not be fetched") from exc

        root_message = _to_message(root)
        ordered = sorted(
            (_to_message(m) for m in replies if m.get("id") != root.get("id")),
            key=lambda m: m.timestamp or datetime.min.replace(tzinfo=timezone.utc),
        )
        candidates = [root_message, *ordered]
        messages = [m for m in candidates if m.content.strip() or m.attachments]
        if not messages:
            raise AdapterConnectionError(f"Discord message {thread_ref} has no readable content")

        log.info(
            "discord.thread_captured",
            message_count=len(messages),
            skipped=len(candidates) - len(messages),
        )
        return CapturedThread(
            id=message_id,
            channel_id=channel_id,
            channel_name=channel.get("name") or "unknown",
            root_author=root_message.author,
            messages=messages,
            timestamp=root_message.timestamp or datetime.now(timezone.utc),
            metadata={
                "platform": "discord",
                "guild": channel.get("guild_id"),
                "thread_channel_id": (root.get("thread") or {}).get("id"),
            },
        )

    async def _fetch_thread(
        self, client: httpx.AsyncClient, thread_id: str, log: Any
    ) -> list[dict[str, Any]]:
        """All messages of a thread channel, paged forward from the oldest with `after`."""
        messages: list[dict[str, Any]] = []
        params: dict[str, Any] = {"limit": THREAD_PAGE_SIZE, "after": "0"}
        while True:
            response = await self._get(
                client, f"{DISCORD_API_BASE}/channels/{thread_id}/messages", params=dict(params)
            )
            if not response.is_success:
                log.warning("discord.thread_fetch_failed", status=response.status_code)
                break
            page = response.json()
            messages.extend(page)
            if len(page) < THREAD_PAGE_SIZE:
                break
            params["after"] = max((m["id"] for m in page), key=int)
        return messages

    @_discord_retry
    async def _get(
        self, client: httpx.AsyncClient, url: str, params: dict[str, Any] | None = None
    ) -> httpx.Response:
        """GET with retries on rate limits and server errors; other statuses are returned."""
        response = await client.get(url, params=params)
        if _is_transient_status(response.status_code):
            response.raise_for_status()
        return response
