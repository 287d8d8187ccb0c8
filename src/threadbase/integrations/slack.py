"""Slack capture adapter -- pulls threads via the Slack Web API.

Thread references have the form "<ts>:<channel_id>" where ts is the
timestamp of the thread's root message. Replies are paginated with
conversations.replies cursors, user ids are resolved to display names
(cached per adapter) and Slack mrkdwn is flattened to plain text.

Listening polls conversations.history of the channels listed in the
integration settings and yields every message that has replies.
"""

from __future__ import annotations

import html
import re
from datetime import datetime, timezone
from typing import Any

import structlog
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from src.threadbase.core.errors import AdapterConnectionError, InvalidInput
from src.threadbase.integrations.base import CaptureAdapter
from src.threadbase.schemas.integration import IntegrationConfig
from src.threadbase.schemas.knowledge import CapturedThread, SourceType, ThreadMessage

logger = structlog.get_logger(__name__)

REPLIES_PAGE_SIZE = 200
HISTORY_PAGE_SIZE = 50

_USER_MENTION = re.compile(r"<@([UW][A-Z0-9]+)(?:\|[^>]*)?>")
_CHANNEL_MENTION = re.compile(r"<#[A-Z0-9]+\|([^>]+)>")
_SPECIAL_MENTION = re.compile(r"<!(here|channel|everyone)(?:\|[^>]*)?>")
_LINK = re.compile(r"<(https?://[^|>]+)(?:\|([^>]+))?>")


def parse_thread_ref(thread_ref: str) -> tuple[str, str]:
    """Split "<ts>:<channel>" into (ts, channel)."""
    ts, sep, channel = (thread_ref or "").partition(":")
    if not sep or not ts.strip() or not channel.strip():
        raise InvalidInput(f"Slack thread reference must be '<ts>:<channel>', got {thread_ref!r}")
    return ts.strip(), channel.strip()


def _to_datetime(ts: str | None) -> datetime | None:
    try:
        return datetime.fromtimestamp(float(ts), tz=timezone.utc)
    except (TypeError, ValueError):
        return None


def _attachments(message: dict[str, Any]) -> list[dict[str, Any]]:
    attachments = []
    for file in message.get("files") or []:
        attachments.append({
            "name": file.get("name") or file.get("title") or "file",
            "url": file.get("url_private") or file.get("permalink"),
            "mimetype": file.get("mimetype"),
        })
    for legacy in message.get("attachments") or []:
        url = legacy.get("title_link") or legacy.get("from_url") or legacy.get("image_url")
        attachments.append({
            "name": legacy.get("title") or legacy.get("fallback") or "attachment",
            "url": url,
        })
    return attachments


def _element_text(element: dict[str, Any]) -> str:
    if isinstance(element.get("text"), str):
        return element["text"]
    if element.get("elements"):
        return "".join(_element_text(child) for child in element["elements"])
    if element.get("type") == "user" and element.get("user_id"):
        return f"<@{element['user_id']}>"
    return element.get("url") or ""


def _blocks_text(blocks: list[dict[str, Any]] | None) -> str:
    """Text of Block Kit blocks, for messages sent with an empty text field."""
    parts = []
    for block in blocks or []:
        text = block.get("text")
        if isinstance(text, dict) and text.get("text"):
            parts.append(text["text"])
        for element in block.get("elements") or []:
            parts.append(_element_text(element))
    return "\n".join(p for p in parts if p.strip())


class SlackCaptureAdapter(CaptureAdapter):
    """Slack implementation of CaptureAdapter.

    Args:
        config: credentials["bot_token"] is required; settings["channels"]
            lists channel ids polled while listening.
        client: Pre-built AsyncWebClient (tests inject a mock).
        timeout: Per-request timeout in seconds.
        poll_interval: Seconds between listener polls.
    """

    integration_type = "slack"
    source_type = SourceType.SLACK

    def __init__(
        self,
        config: IntegrationConfig,
        client: AsyncWebClient | None = None,
        timeout: float = 20.0,
        poll_interval: float = 30.0,
    ) -> None:
        super().__init__(config, poll_interval=poll_interval, timeout=timeout)
        token = config.credentials.get("bot_token")
        if client is None:
            if not token:
                raise InvalidInput("Slack integration requires credentials.bot_token")
            client = AsyncWebClient(token=token, timeout=int(timeout))
        self._client = client
        self._user_names: dict[str, str] = {}

    async def connect(self) -> bool:
        try:
            response = await self._client.auth_test()
        except SlackApiError as exc:
            logger.warning("slack.connect_failed", error=str(exc))
            return False
        return response.get("ok") is True

    async def disconnect(self) -> None:
        await self.stop_listening()

    async def test_connection(self) -> bool:
        return await self.connect()

    async def capture_thread(self, thread_ref: str) -> CapturedThread:
        ts, channel_id = parse_thread_ref(thread_ref)
        log = logger.bind(channel_id=channel_id, thread_ts=ts)

        try:
            raw_messages = await self._fetch_replies(channel_id, ts)
        except SlackApiError as exc:
            log.error("slack.capture_failed", error=exc.response.get("error") if exc.response else str(exc))
            raise AdapterConnectionError(f"Slack thread {thread_ref} could not be fetched") from exc

        if not raw_messages:
            raise AdapterConnectionError(f"Slack thread {thread_ref} has no messages")

        messages = []
        for raw in raw_messages:
            text = raw.get("text") or _blocks_text(raw.get("blocks"))
            message = ThreadMessage(
                id=raw.get("ts"),
                author=await self._author(raw),
                content=await self._plain_text(text),
                timestamp=_to_datetime(raw.get("ts")),
                attachments=_attachments(raw),
            )
            if message.content.strip() or message.attachments:
                messages.append(message)

        if not messages:
            raise AdapterConnectionError(f"Slack thread {thread_ref} has no readable messages")

        channel_name = await self._channel_name(channel_id)
        root = raw_messages[0]
        log.info(
            "slack.thread_captured",
            message_count=len(messages),
            skipped=len(raw_messages) - len(messages),
        )

        return CapturedThread(
            id=ts,
            channel_id=channel_id,
            channel_name=channel_name,
            root_author=await self._author(root),
            messages=messages,
            timestamp=messages[0].timestamp or datetime.now(timezone.utc),
            metadata={
                "platform": "slack",
                "team": root.get("team"),
                "reply_count": len(messages) - 1,
            },
        )

    async def poll_thread_refs(self) -> list[str]:
        refs = []
        for channel_id in self._config.settings.get("channels", []):
            try:
                response = await self._client.conversations_history(
                    channel=channel_id, limit=HISTORY_PAGE_SIZE
                )
            except SlackApiError as exc:
                logger.warning("slack.history_failed", channel_id=channel_id, error=str(exc))
                continue
            for message in response.get("messages", []):
                if message.get("reply_count", 0) > 0 and message.get("ts"):
                    refs.append(f"{message['ts']}:{channel_id}")
        return refs

    # ── Helpers ─────────────────────────────────────────────────────────────

    async def _fetch_replies(self, channel_id: str, ts: str) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            kwargs: dict[str, Any] = {"channel": channel_id, "ts": ts, "limit": REPLIES_PAGE_SIZE}
            if cursor:
                kwargs["cursor"] = cursor
            response = await self._client.conversations_replies(**kwargs)
            messages.extend(response.get("messages", []))
            cursor = (response.get("response_metadata") or {}).get("next_cursor")
            if not cursor or not response.get("has_more", True):
                break
        return messages

    async def _channel_name(self, channel_id: str) -> str:
        try:
            response = await self._client.conversations_info(channel=channel_id)
        except SlackApiError as exc:
            logger.warning("slack.channel_info_failed", channel_id=channel_id, error=str(exc))
            return "unknown"
        return (response.get("channel") or {}).get("name") or "unknown"

    async def _author(self, message: dict[str, Any]) -> str:
        user_id = message.get("user")
        if user_id:
            return await self._display_name(user_id)
        bot_profile = message.get("bot_profile") or {}
        return bot_profile.get("name") or message.get("username") or "unknown"

    async def _display_name(self, user_id: str) -> str:
        if user_id in self._user_names:
            return self._user_names[user_id]
        name = user_id
        try:
            response = await self._client.users_info(user=user_id)
            user = response.get("user") or {}
            profile = user.get("profile") or {}
            name = (
                profile.get("display_name")
                or profile.get("real_name")
                or user.get("real_name")
                or user.get("name")
                or user_id
            )
        except SlackApiError as exc:
            logger.warning("slack.user_lookup_failed", user_id=user_id, error=str(exc))
        self._user_names[user_id] = name
        return name

    async def _plain_text(self, text: str) -> str:
        """Flatten Slack mrkdwn: mentions, channel links and URLs."""
        for user_id in set(_USER_MENTION.findall(text)):
            name = await self._display_name(user_id)
            text = re.sub(rf"<@{user_id}(?:\|[^>]*)?>", f"@{name}", text)
        text = _CHANNEL_MENTION.sub(r"#\1", text)
        text = _SPECIAL_MENTION.sub(r"@\1", text)
        text = _LINK.sub(lambda m: f"{m.group(2)} ({m.group(1)})" if m.group(2) else m.group(1), text)
        return html.unescape(text)
