"""Tests for the embedding provider chain and the LiteLLM provider."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from contextlinc.domain.errors import ExternalProviderError
from contextlinc.infrastructure.config.settings import Settings
from contextlinc.infrastructure.providers.embeddings import (
    EmbeddingService, LiteLLMEmbeddingProvider, build_embedding_service, clean_text_for_embedding
)

from tests.conftest import FakeEmbeddingProvider


class StaticProvider(FakeEmbeddingProvider):
    """Returns the same vectors whatever the input"""

    def __init__(self, name, vectors):
        super().__init__(name=name, model=f"{name}-model")
        self.vectors = vectors

    async def embed(self, texts):
        self.calls += 1
        return self.vectors


class TestEmbeddingService:
    """Ordered fallback and validation."""

    async def test_primary_answers(self):
        primary, secondary = FakeEmbeddingProvider("primary"), FakeEmbeddingProvider("secondary")
        batch = await EmbeddingService([primary, secondary]).embed(["hello world"])

        assert batch.provider == "primary"
        assert len(batch.vectors) == 1
        assert secondary.calls == 0

    async def test_falls_back_on_failure(self):
        primary, secondary = FakeEmbeddingProvider("primary"), FakeEmbeddingProvider("secondary")
        primary.fail = True

        batch = await EmbeddingService([primary, secondary]).embed_one("hello")

        assert batch.provider == "secondary"
        assert primary.calls == 1

    @pytest.mark.parametrize("vectors", [
        [[float("nan"), 1.0]],
        [[1000.0, 0.0]],
        [[0.0, 0.0]],
        [[]],
        [],
    ])
    async def test_invalid_vectors_fall_back(self, vectors):
        bad = StaticProvider("bad", vectors)
        good = FakeEmbeddingProvider("good")

        batch = await EmbeddingService([bad, good]).embed(["text"])

        assert batch.provider == "good"

    async def test_inconsistent_dimensions_rejected(self):
        bad = StaticProvider("bad", [[1.0, 0.0], [1.0, 0.0, 0.0]])
        good = FakeEmbeddingProvider("good")

        batch = await EmbeddingService([bad, good]).embed(["a", "b"])

        assert batch.provider == "good"

    async def test_all_providers_fail(self):
        first, second = FakeEmbeddingProvider("first"), FakeEmbeddingProvider("second")
        first.fail = second.fail = True

        with pytest.raises(ExternalProviderError) as exc_info:
            await EmbeddingService([first, second]).embed(["text"])

        assert exc_info.value.provider == "embeddings"
        assert "first" in str(exc_info.value)
        assert "second" in str(exc_info.value)

    async def test_timeout_counts_as_failure(self):
        slow, fast = FakeEmbeddingProvider("slow"), FakeEmbeddingProvider("fast")
        slow.delay = 1.0

        batch = await EmbeddingService([slow, fast], timeout=0.05).embed(["text"])

        assert batch.provider == "fast"

    async def test_embed_one_deadline_covers_whole_chain(self):
        first, second = FakeEmbeddingProvider("first"), FakeEmbeddingProvider("second")
        first.delay = second.delay = 0.5

        with pytest.raises(ExternalProviderError) as exc_info:
            await EmbeddingService([first, second], timeout=1.0).embed_one("text", timeout=0.05)

        assert exc_info.value.provider == "embeddings"
        assert second.calls == 0

    def test_requires_a_provider(self):
        with pytest.raises(ValueError):
            EmbeddingService([])

    def test_clean_text(self):
        assert clean_text_for_embedding("  a\n\tb\x00 ") == "a b"
        assert len(clean_text_for_embedding("x" * 20000)) == 8000


class TestLiteLLMEmbeddingProvider:
    """Provider calling litellm.aembedding."""

    async def test_reads_response(self):
        response = MagicMock()
        response.data = [{"embedding": [0.1, 0.2]}, {"embedding": [0.3, 0.4]}]

        with patch("litellm.aembedding", new=AsyncMock(return_value=response)) as aembedding:
            provider = LiteLLMEmbeddingProvider("text-embedding-3-small", api_key="sk-test", name="openai")
            vectors = await provider.embed(["a", "b"])

        assert vectors == [[0.1, 0.2], [0.3, 0.4]]
        aembedding.assert_awaited_once_with(model="text-embedding-3-small", input=["a", "b"], api_key="sk-test")

    async def test_wraps_errors(self):
        with patch("litellm.aembedding", new=AsyncMock(side_effect=RuntimeError("rate limited"))):
            provider = LiteLLMEmbeddingProvider("voyage/voyage-multimodal-3")
            with pytest.raises(ExternalProviderError) as exc_info:
                await provider.embed(["a"])

        assert exc_info.value.provider == "voyage"

    def test_build_from_settings(self):
        service = build_embedding_service(Settings(_env_file=None))
        assert [p.name for p in service.providers] == ["voyage", "openai"]
