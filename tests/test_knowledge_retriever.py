"""Tests for document chunking, indexing and retrieval."""

from __future__ import annotations

import pytest

from contextlinc.domain.context.knowledge_retriever import KnowledgeRetriever, chunk_text
from contextlinc.domain.errors import ExternalProviderError

REVENUE = "Quarterly revenue grew twelve percent on strong subscription renewals in Europe."
HIKING = "Trail maps show the northern ridge path closes after heavy snowfall each winter."


class TestChunking:
    """Overlapping windows."""

    def test_short_text_single_chunk(self):
        assert chunk_text("one two three") == ["one two three"]

    def test_empty_text(self):
        assert chunk_text("   \n ") == []

    def test_overlap(self):
        chunks = chunk_text("a" * 2500, chunk_size=1000, overlap=200)
        assert [len(chunk) for chunk in chunks] == [1000, 1000, 900]


class TestKnowledgeRetriever:
    """Semantic retrieval per owner."""

    async def test_exact_match_retrieved(self, embeddings):
        retriever = KnowledgeRetriever(embeddings)
        await retriever.index_document("u1", "doc-1", "revenue.txt", REVENUE)
        await retriever.index_document("u1", "doc-2", "hiking.txt", HIKING)

        results = await retriever.retrieve(REVENUE, "u1")

        assert [r["document_id"] for r in results] == ["doc-1"]
        assert results[0]["similarity"] == pytest.approx(1.0, abs=1e-3)
        assert results[0]["filename"] == "revenue.txt"

    async def test_threshold_filters(self, embeddings):
        retriever = KnowledgeRetriever(embeddings)
        await retriever.index_document("u1", "doc-1", "revenue.txt", REVENUE)

        assert await retriever.retrieve("penguins", "u1") == []
        assert len(await retriever.retrieve("quarterly revenue", "u1", threshold=0.1)) == 1

    async def test_owner_isolation(self, embeddings):
        retriever = KnowledgeRetriever(embeddings)
        await retriever.index_document("u1", "doc-1", "revenue.txt", REVENUE)
        assert await retriever.retrieve(REVENUE, "u2") == []

    async def test_index_without_embeddings(self, embeddings, embedding_provider):
        embedding_provider.fail = True
        retriever = KnowledgeRetriever(embeddings)

        document = await retriever.index_document("u1", "doc-1", "revenue.txt", REVENUE)

        assert not document.is_embedded
        assert retriever.document_count("u1") == 1
        embedding_provider.fail = False
        assert await retriever.retrieve(REVENUE, "u1") == []

    async def test_query_embedding_failure_propagates(self, embeddings, embedding_provider):
        retriever = KnowledgeRetriever(embeddings)
        await retriever.index_document("u1", "doc-1", "revenue.txt", REVENUE)
        embedding_provider.fail = True

        with pytest.raises(ExternalProviderError):
            await retriever.retrieve(REVENUE, "u1")

    async def test_clear_owner(self, embeddings):
        retriever = KnowledgeRetriever(embeddings)
        await retriever.index_document("u1", "doc-1", "revenue.txt", REVENUE)
        assert await retriever.clear_owner("u1") == 1
        assert retriever.document_count("u1") == 0

    async def test_slow_query_embedding_times_out(self, embeddings, embedding_provider):
        retriever = KnowledgeRetriever(embeddings, search_timeout=0.05)
        await retriever.index_document("u1", "doc-1", "revenue.txt", REVENUE)
        embedding_provider.delay = 0.5

        with pytest.raises(ExternalProviderError) as exc_info:
            await retriever.retrieve(REVENUE, "u1")

        assert exc_info.value.provider == "embeddings"
