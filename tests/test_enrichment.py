"""Tests for the LLM enrichment provider.

The LiteLLM router and the OpenAI embeddings client are replaced with
mocks; every provider error must surface as EnrichmentFailure.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from src.threadbase.config import Settings
from src.threadbase.core.errors import EnrichmentFailure, EnrichmentNotConfigured
from src.threadbase.services.enrichment import (
    MAX_EMBEDDING_INPUT_CHARS,
    LLMEnrichmentProvider,
    build_enrichment_router,
    get_enrichment_provider,
    parse_action_items,
    parse_topics,
)


def _settings(**overrides) -> Settings:
    values = {"ANTHROPIC_API_KEY": "", "OPENAI_API_KEY": "", "EMBEDDING_DIMENSIONS": 1536}
    values.update(overrides)
    return Settings(**values)


def _completion(text: str | None) -> MagicMock:
    response = MagicMock()
    response.choices = [MagicMock(message=MagicMock(content=text))]
    return response


def _router(text: str | None = "ok") -> MagicMock:
    router = MagicMock()
    router.acompletion = AsyncMock(return_value=_completion(text))
    return router


def _embeddings_client(vector: list[float]) -> MagicMock:
    client = MagicMock()
    client.embeddings.create = AsyncMock(
        return_value=MagicMock(data=[MagicMock(embedding=vector)])
    )
    return client


class TestParsing:
    def test_action_items_keep_bullets_only(self):
        text = "Here you go:\n- Roll back the deploy\n* Page the on-call\n2. Write a postmortem\nThanks"
        assert parse_action_items(text) == [
            "Roll back the deploy",
            "Page the on-call",
            "Write a postmortem",
        ]

    def test_topics_split_and_deduplicate(self):
        assert parse_topics("Deploys, incidents, deploys.\n- Checkout") == [
            "Deploys",
            "incidents",
            "Checkout",
        ]

    def test_topics_capped_at_five(self):
        assert len(parse_topics("a, b, c, d, e, f, g")) == 5


class TestConstruction:
    def test_no_keys_raises_not_configured(self):
        with pytest.raises(EnrichmentNotConfigured):
            LLMEnrichmentProvider(settings=_settings())

    def test_no_keys_builds_no_router(self):
        assert build_enrichment_router(_settings()) is None

    def test_get_provider_returns_none_without_keys(self):
        assert get_enrichment_provider(_settings()) is None


class TestCompletions:
    @pytest.mark.asyncio
    async def test_summarize(self):
        router = _router("  The team rolled back.  ")
        provider = LLMEnrichmentProvider(settings=_settings(), router=router)

        assert await provider.summarize("alice: hi") == "The team rolled back."
        kwargs = router.acompletion.call_args.kwargs
        assert kwargs["model"] == "enrichment"
        assert kwargs["messages"][1]["content"].endswith("alice: hi")

    @pytest.mark.asyncio
    async def test_action_items_none(self):
        provider = LLMEnrichmentProvider(settings=_settings(), router=_router("NONE"))
        assert await provider.extract_action_items("text") == []

    @pytest.mark.asyncio
    async def test_action_items_parsed(self):
        provider = LLMEnrichmentProvider(
            settings=_settings(), router=_router("- Ship it\n- Tell support")
        )
        assert await provider.extract_action_items("text") == ["Ship it", "Tell support"]

    @pytest.mark.asyncio
    async def test_topics(self):
        provider = LLMEnrichmentProvider(settings=_settings(), router=_router("billing, refunds"))
        assert await provider.detect_topics("text") == ["billing", "refunds"]

    @pytest.mark.asyncio
    async def test_router_error_becomes_enrichment_failure(self):
        router = MagicMock()
        router.acompletion = AsyncMock(side_effect=TimeoutError("upstream timed out"))
        provider = LLMEnrichmentProvider(settings=_settings(), router=router)

        with pytest.raises(EnrichmentFailure):
            await provider.summarize("text")

    @pytest.mark.asyncio
    async def test_empty_response_is_a_failure(self):
        provider = LLMEnrichmentProvider(settings=_settings(), router=_router("   "))
        with pytest.raises(EnrichmentFailure):
            await provider.summarize("text")

    @pytest.mark.asyncio
    async def test_missing_content_is_a_failure(self):
        provider = LLMEnrichmentProvider(settings=_settings(), router=_router(None))
        with pytest.raises(EnrichmentFailure):
            await provider.detect_topics("text")


class TestEmbeddings:
    @pytest.mark.asyncio
    async def test_embed(self):
        client = _embeddings_client([0.5] * 1536)
        provider = LLMEnrichmentProvider(
            settings=_settings(), router=_router(), embeddings_client=client
        )

        vector = await provider.embed("line one\nline two" + "x" * 10_000)

        assert len(vector) == 1536
        sent = client.embeddings.create.call_args.kwargs
        assert "\n" not in sent["input"]
        assert len(sent["input"]) == MAX_EMBEDDING_INPUT_CHARS
        assert sent["dimensions"] == 1536

    @pytest.mark.asyncio
    async def test_wrong_dimension_is_a_failure(self):
        provider = LLMEnrichmentProvider(
            settings=_settings(),
            router=_router(),
            embeddings_client=_embeddings_client([0.5] * 10),
        )
        with pytest.raises(EnrichmentFailure):
            await provider.embed("text")

    @pytest.mark.asyncio
    async def test_embed_without_client(self):
        provider = LLMEnrichmentProvider(settings=_settings(), router=_router())
        with pytest.raises(EnrichmentFailure):
            await provider.embed("text")

    @pytest.mark.asyncio
    async def test_client_error_becomes_enrichment_failure(self):
        client = MagicMock()
        client.embeddings.create = AsyncMock(side_effect=ConnectionError("reset"))
        provider = LLMEnrichmentProvider(
            settings=_settings(), router=_router(), embeddings_client=client
        )
        with pytest.raises(EnrichmentFailure):
            await provider.embed("text")
