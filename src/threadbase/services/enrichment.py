"""Enrichment provider -- summaries, action items, topics and embeddings.

EnrichmentProvider is the contract the ingestion pipeline depends on.
LLMEnrichmentProvider implements it with:
- LiteLLM Router for completions (Claude Haiku primary, GPT-4o-mini fallback)
- OpenAI text-embedding-3-small for the dense vector

Every provider error (network, timeout, rate limit, malformed or empty
response) surfaces as EnrichmentFailure. Construction without any usable
credentials raises EnrichmentNotConfigured.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Any

import structlog
from litellm import Router
from openai import AsyncOpenAI

from src.threadbase.config import Settings, get_settings
from src.threadbase.core.errors import EnrichmentFailure, EnrichmentNotConfigured

logger = structlog.get_logger(__name__)

MAX_TOPICS = 5
MAX_EMBEDDING_INPUT_CHARS = 8000

SUMMARY_PROMPT = (
    "You summarize team conversations for a knowledge base. Write a concise, "
    "useful summary that covers the main points discussed, the decisions made "
    "and the next steps. Answer in the language of the conversation."
)

ACTION_ITEMS_PROMPT = (
    "Extract every action item that was assigned or proposed in the conversation. "
    'Return one action per line, each line starting with "- ". '
    'If there are no clear actions, return exactly "NONE".'
)

TOPICS_PROMPT = (
    f"List at most {MAX_TOPICS} short topics (one to three words each) that describe "
    "the conversation. Return them as a single comma-separated line and nothing else."
)

_BULLET = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+")


# ── Response parsing ────────────────────────────────────────────────────────


def parse_action_items(text: str) -> list[str]:
    """Keep bullet lines from a completion, without their markers."""
    items = []
    for line in text.splitlines():
        if _BULLET.match(line):
            item = _BULLET.sub("", line).strip()
            if item:
                items.append(item)
    return items


def parse_topics(text: str) -> list[str]:
    """Split a comma or newline separated topic list, de-duplicated, capped at five."""
    topics: list[str] = []
    seen: set[str] = set()
    for raw in re.split(r"[,\n]", text):
        topic = _BULLET.sub("", raw).strip().strip(".").strip()
        if not topic or topic.lower() in seen:
            continue
        seen.add(topic.lower())
        topics.append(topic)
        if len(topics) == MAX_TOPICS:
            break
    return topics


# ── Contract ────────────────────────────────────────────────────────────────


class EnrichmentProvider(ABC):
    """Abstract enrichment backend used by the ingestion pipeline.

    Implementations raise EnrichmentFailure for any failure. The pipeline
    converts failures into fallback values; callers never see them.
    """

    @abstractmethod
    async def summarize(self, text: str) -> str:
        """Return a short summary of the normalized conversation text."""
        ...

    @abstractmethod
    async def extract_action_items(self, text: str) -> list[str]:
        """Return the action items mentioned in the conversation."""
        ...

    @abstractmethod
    async def detect_topics(self, text: str) -> list[str]:
        """Return up to five topics describing the conversation."""
        ...

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Return the embedding vector for the text."""
        ...


# ── LLM implementation ──────────────────────────────────────────────────────


def build_enrichment_router(settings: Settings) -> Router | None:
    """Build the "enrichment" model group from the configured API keys."""
    model_list: list[dict[str, Any]] = []

    if settings.ANTHROPIC_API_KEY:
        model_list.append({
            "model_name": "enrichment",
            "litellm_params": {
                "model": settings.SUMMARY_MODEL,
                "api_key": settings.ANTHROPIC_API_KEY,
            },
        })

    if settings.OPENAI_API_KEY:
        model_list.append({
            "model_name": "enrichment",
            "litellm_params": {
                "model": settings.SUMMARY_FALLBACK_MODEL,
                "api_key": settings.OPENAI_API_KEY,
            },
        })

    if not model_list:
        return None

    return Router(
        model_list=model_list,
        num_retries=settings.LLM_MAX_RETRIES,
        timeout=settings.ENRICHMENT_TIMEOUT,
        allowed_fails=3,
        cooldown_time=30,
    )


class LLMEnrichmentProvider(EnrichmentProvider):
    """Enrichment through LiteLLM (completions) and OpenAI (embeddings).

    Args:
        settings: Application settings; defaults to get_settings().
        router: Pre-built LiteLLM Router exposing an "enrichment" model group.
        embeddings_client: Pre-built AsyncOpenAI client for embeddings.

    Raises:
        EnrichmentNotConfigured: No router could be built and none was given.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        router: Router | None = None,
        embeddings_client: AsyncOpenAI | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._router = router or build_enrichment_router(self._settings)
        if self._router is None:
            raise EnrichmentNotConfigured(
                "No LLM API keys configured (set ANTHROPIC_API_KEY or OPENAI_API_KEY)"
            )

        if embeddings_client is None and self._settings.OPENAI_API_KEY:
            embeddings_client = AsyncOpenAI(
                api_key=self._settings.OPENAI_API_KEY,
                timeout=self._settings.ENRICHMENT_TIMEOUT,
                max_retries=self._settings.LLM_MAX_RETRIES,
            )
        self._embeddings = embeddings_client
        self._embedding_model = self._settings.EMBEDDING_MODEL
        self._dimensions = self._settings.EMBEDDING_DIMENSIONS

    async def _complete(
        self, operation: str, system: str, user: str, max_tokens: int
    ) -> str:
        try:
            response = await self._router.acompletion(
                model="enrichment",
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                max_tokens=max_tokens,
                temperature=0.3,
                metadata={"operation": operation},
            )
            content = response.choices[0].message.content
        except Exception as exc:
            raise EnrichmentFailure(f"{operation} failed: {exc}") from exc

        if not content or not content.strip():
            raise EnrichmentFailure(f"{operation} returned an empty response")
        return content.strip()

    async def summarize(self, text: str) -> str:
        return await self._complete(
            "summary", SUMMARY_PROMPT, f"Summarize the following conversation:\n\n{text}", 500
        )

    async def extract_action_items(self, text: str) -> list[str]:
        content = await self._complete("action_items", ACTION_ITEMS_PROMPT, text, 300)
        if content.upper().startswith("NONE"):
            return []
        return parse_action_items(content)

    async def detect_topics(self, text: str) -> list[str]:
        content = await self._complete("topics", TOPICS_PROMPT, text, 100)
        return parse_topics(content)

    async def embed(self, text: str) -> list[float]:
        if self._embeddings is None:
            raise EnrichmentFailure("Embeddings require OPENAI_API_KEY")

        cleaned = text.replace("\n", " ")[:MAX_EMBEDDING_INPUT_CHARS]
        try:
            response = await self._embeddings.embeddings.create(
                input=cleaned,
                model=self._embedding_model,
                dimensions=self._dimensions,
            )
            vector = list(response.data[0].embedding)
        except Exception as exc:
            raise EnrichmentFailure(f"embedding failed: {exc}") from exc

        if len(vector) != self._dimensions:
            raise EnrichmentFailure(
                f"embedding has {len(vector)} dimensions, expected {self._dimensions}"
            )
        return vector


def get_enrichment_provider(settings: Settings | None = None) -> EnrichmentProvider | None:
    """Build the default provider, or None when no credentials are configured."""
    try:
        return LLMEnrichmentProvider(settings=settings)
    except EnrichmentNotConfigured:
        logger.warning("enrichment.not_configured")
        return None
