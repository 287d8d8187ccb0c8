"""Tests for SlackCaptureAdapter with a mocked slack_sdk AsyncWebClient.

Covers:
- Thread reference parsing
- Reply pagination, author resolution (cached) and mrkdwn flattening
- File attachments carried over as message attachments
- Slack API errors surfacing as AdapterConnectionError
- Polling channels for threads with replies
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from slack_sdk.errors import SlackApiError

from src.threadbase.core.errors import AdapterConnectionError, InvalidInput
from src.threadbase.integrations.slack import SlackCaptureAdapter, parse_thread_ref
from src.threadbase.schemas.integration import IntegrationConfig
from src.threadbase.schemas.knowledge import SourceType


def _make_mock_client() -> MagicMock:
    client = MagicMock()
    client.auth_test = AsyncMock(return_value={"ok": True})
    client.conversations_replies = AsyncMock(
        return_value={
            "ok": True,
            "messages": [
                {
                    "ts": "1700000000.000100",
                    "user": "U1",
                    "team": "T1",
                    "text": "Checkout is failing for <@U2> &amp; others, see <https://status.example.com|status>",
                },
                {
                    "ts": "1700000060.000200",
                    "user": "U2",
                    "text": "Rolling back in <#C9|deploys>",
                    "files": [
                        {"name": "trace.log", "url_private": "https://files.slack.com/trace.log"}
                    ],
                },
                {
                    "ts": "1700000120.000300",
                    "bot_profile": {"name": "deploybot"},
                    "text": "<!here> rollback complete",
                },
            ],
            "has_more": False,
        }
    )
    client.conversations_info = AsyncMock(return_value={"channel": {"name": "incidents"}})
    users = {
        "U1": {"user": {"profile": {"display_name": "alice"}}},
        "U2": {"user": {"profile": {"display_name": "", "real_name": "Bob Smith"}}},
    }
    client.users_info = AsyncMock(side_effect=lambda user: users[user])
    client.conversations_history = AsyncMock(
        return_value={
            "messages": [
                {"ts": "1700000000.000100", "reply_count": 2},
                {"ts": "1700000500.000000", "reply_count": 0},
            ]
        }
    )
    return client


def _adapter(client: MagicMock, settings: dict | None = None) -> SlackCaptureAdapter:
    config = IntegrationConfig(
        type="slack", credentials={"bot_token": "xoxb-test"}, settings=settings or {}
    )
    return SlackCaptureAdapter(config, client=client)


class TestThreadRef:
    def test_parse(self):
        assert parse_thread_ref("1700000000.000100:C123") == ("1700000000.000100", "C123")

    @pytest.mark.parametrize("ref", ["", "1700000000.000100", ":C123", "1700000000.000100:"])
    def test_malformed(self, ref):
        with pytest.raises(InvalidInput):
            parse_thread_ref(ref)

    def test_missing_token(self):
        with pytest.raises(InvalidInput):
            SlackCaptureAdapter(IntegrationConfig(type="slack"))


class TestCaptureThread:
    @pytest.mark.asyncio
    async def test_capture_thread(self):
        client = _make_mock_client()
        adapter = _adapter(client)

        thread = await adapter.capture_thread("1700000000.000100:C123")

        assert thread.id == "1700000000.000100"
        assert thread.channel_id == "C123"
        assert thread.channel_name == "incidents"
        assert thread.root_author == "alice"
        assert [m.author for m in thread.messages] == ["alice", "Bob Smith", "deploybot"]
        assert thread.metadata["platform"] == "slack"
        assert thread.metadata["reply_count"] == 2
        assert adapter.source_type == SourceType.SLACK

    @pytest.mark.asyncio
    async def test_mrkdwn_is_flattened(self):
        adapter = _adapter(_make_mock_client())
        thread = await adapter.capture_thread("1700000000.000100:C123")

        assert thread.messages[0].content == (
            "Checkout is failing for @Bob Smith & others, see status (https://status.example.com)"
        )
        assert thread.messages[1].content == "Rolling back in #deploys"
        assert thread.messages[2].content == "@here rollback complete"

    @pytest.mark.asyncio
    async def test_files_become_attachments(self):
        adapter = _adapter(_make_mock_client())
        thread = await adapter.capture_thread("1700000000.000100:C123")

        assert thread.messages[1].attachments[0]["url"] == "https://files.slack.com/trace.log"
        assert thread.messages[1].attachments[0]["name"] == "trace.log"

    @pytest.mark.asyncio
    async def test_user_names_are_cached(self):
        client = _make_mock_client()
        adapter = _adapter(client)
        await adapter.capture_thread("1700000000.000100:C123")

        looked_up = [c.kwargs["user"] for c in client.users_info.call_args_list]
        assert sorted(looked_up) == ["U1", "U2"]

    @pytest.mark.asyncio
    async def test_replies_are_paginated(self):
        client = _make_mock_client()
        client.conversations_replies = AsyncMock(
            side_effect=[
                {
                    "messages": [{"ts": "1.0", "user": "U1", "text": "first"}],
                    "has_more": True,
                    "response_metadata": {"next_cursor": "page-2"},
                },
                {
                    "messages": [{"ts": "2.0", "user": "U1", "text": "second"}],
                    "has_more": False,
                },
            ]
        )
        adapter = _adapter(client)

        thread = await adapter.capture_thread("1.0:C123")

        assert [m.content for m in thread.messages] == ["first", "second"]
        assert client.conversations_replies.call_args_list[1].kwargs["cursor"] == "page-2"

    @pytest.mark.asyncio
    async def test_api_error_raises_connection_error(self):
        client = _make_mock_client()
        client.conversations_replies = AsyncMock(
            side_effect=SlackApiError("channel_not_found", {"ok": False, "error": "channel_not_found"})
        )
        adapter = _adapter(client)

        with pytest.raises(AdapterConnectionError):
            await adapter.capture_thread("1700000000.000100:C404")

    @pytest.mark.asyncio
    async def test_blocks_only_message_uses_block_text(self):
        client = _make_mock_client()
        client.conversations_replies = AsyncMock(
            return_value={
                "messages": [
                    {"ts": "1700000000.000100", "user": "U1", "text": "Deploy broke checkout"},
                    {
                        "ts": "1700000060.000200",
                        "user": "U2",
                        "text": "",
                        "blocks": [
                            {"type": "section", "text": {"type": "mrkdwn", "text": "Rolling back"}},
                            {
                                "type": "rich_text",
                                "elements": [
                                    {
                                        "type": "rich_text_section",
                                        "elements": [
                                            {"type": "text", "text": "ping "},
                                            {"type": "user", "user_id": "U1"},
                                        ],
                                    }
                                ],
                            },
                        ],
                    },
                ],
                "has_more": False,
            }
        )
        thread = await _adapter(client).capture_thread("1700000000.000100:C123")

        assert thread.messages[1].content == "Rolling back\nping @alice"

    @pytest.mark.asyncio
    async def test_blank_messages_are_dropped(self):
        client = _make_mock_client()
        client.conversations_replies = AsyncMock(
            return_value={
                "messages": [
                    {"ts": "1700000000.000100", "user": "U1", "text": "Deploy broke checkout"},
                    {"ts": "1700000060.000200", "bot_profile": {"name": "deploybot"}, "text": ""},
                    {"ts": "1700000120.000300", "user": "U2", "text": "Rolling back"},
                ],
                "has_more": False,
            }
        )
        thread = await _adapter(client).capture_thread("1700000000.000100:C123")

        assert [m.author for m in thread.messages] == ["alice", "Bob Smith"]
        assert thread.metadata["reply_count"] == 1

    @pytest.mark.asyncio
    async def test_thread_of_blank_messages_raises(self):
        client = _make_mock_client()
        client.conversations_replies = AsyncMock(
            return_value={"messages": [{"ts": "1700000000.000100", "user": "U1", "text": " "}]}
        )
        with pytest.raises(AdapterConnectionError):
            await _adapter(client).capture_thread("1700000000.000100:C123")

    @pytest.mark.asyncio
    async def test_empty_thread_raises_connection_error(self):
        client = _make_mock_client()
        client.conversations_replies = AsyncMock(return_value={"messages": [], "has_more": False})
        adapter = _adapter(client)

        with pytest.raises(AdapterConnectionError):
            await adapter.capture_thread("1700000000.000100:C123")


class TestConnectionAndPolling:
    @pytest.mark.asyncio
    async def test_connect(self):
        adapter = _adapter(_make_mock_client())
        assert await adapter.connect() is True
        assert await adapter.test_connection() is True

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        client = _make_mock_client()
        client.auth_test = AsyncMock(
            side_effect=SlackApiError("invalid_auth", {"ok": False, "error": "invalid_auth"})
        )
        assert await _adapter(client).connect() is False

    @pytest.mark.asyncio
    async def test_poll_returns_threads_with_replies(self):
        adapter = _adapter(_make_mock_client(), settings={"channels": ["C123"]})
        assert await adapter.poll_thread_refs() == ["1700000000.000100:C123"]

    @pytest.mark.asyncio
    async def test_poll_without_channels(self):
        client = _make_mock_client()
        adapter = _adapter(client)
        assert await adapter.poll_thread_refs() == []
        client.conversations_history.assert_not_awaited()
