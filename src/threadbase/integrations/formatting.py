"""Render platform-neutral messages into wiki formats.

- to_notion_blocks: Notion block objects (heading per author, paragraph,
  embeds for attachment URLs, dividers between messages)
- to_confluence_storage: Confluence storage-format XHTML, every user value
  HTML-escaped
"""

from __future__ import annotations

import html
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

from src.threadbase.schemas.knowledge import ThreadMessage

# Notion rejects rich_text items longer than 2000 characters
NOTION_TEXT_LIMIT = 2000


def format_timestamp(value: datetime | None) -> str:
    if value is None:
        return ""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def _heading(message: ThreadMessage) -> str:
    stamp = format_timestamp(message.timestamp)
    return f"{message.author} - {stamp}" if stamp else message.author


def _rich_text(text: str) -> list[dict[str, Any]]:
    return [
        {"type": "text", "text": {"content": text[i : i + NOTION_TEXT_LIMIT]}}
        for i in range(0, len(text), NOTION_TEXT_LIMIT)
    ]


def to_notion_blocks(messages: Sequence[ThreadMessage]) -> list[dict[str, Any]]:
    blocks: list[dict[str, Any]] = []
    for index, message in enumerate(messages):
        if index > 0:
            blocks.append({"object": "block", "type": "divider", "divider": {}})

        blocks.append({
            "object": "block",
            "type": "heading_3",
            "heading_3": {"rich_text": _rich_text(_heading(message)[:NOTION_TEXT_LIMIT])},
        })

        if message.content:
            blocks.append({
                "object": "block",
                "type": "paragraph",
                "paragraph": {"rich_text": _rich_text(message.content)},
            })

        for attachment in message.attachments:
            url = attachment.get("url")
            if url:
                blocks.append({"object": "block", "type": "embed", "embed": {"url": url}})
    return blocks


def to_confluence_storage(
    messages: Sequence[ThreadMessage], tags: Sequence[str] | None = None
) -> str:
    parts = ['<div class="threadbase-import">']

    if tags:
        escaped = ", ".join(html.escape(tag) for tag in tags)
        parts.append(f"<p><strong>Tags:</strong> {escaped}</p><hr/>")

    for index, message in enumerate(messages):
        if index > 0:
            parts.append("<hr/>")
        parts.append(f"<h3>{html.escape(_heading(message))}</h3>")

        if message.content:
            body = html.escape(message.content).replace("\n", "<br/>")
            parts.append(f"<p>{body}</p>")

        links = [a for a in message.attachments if a.get("url")]
        if links:
            parts.append("<p><strong>Attachments:</strong></p><ul>")
            for attachment in links:
                url = html.escape(str(attachment["url"]), quote=True)
                name = html.escape(str(attachment.get("name") or "Attachment"))
                parts.append(f'<li><a href="{url}">{name}</a></li>')
            parts.append("</ul>")

    parts.append(
        f"<p><em>Imported from Threadbase on {format_timestamp(datetime.now(timezone.utc))}</em></p>"
    )
    parts.append("</div>")
    return "".join(parts)
