"""Tests for the tiered memory store.

Tests cover:
- Short-term ring buffer capacity and per-session isolation
- Medium-term significance policy
- Long-term semantic round trip, duplicates and near-duplicates
- Deferred long-term storage while embeddings are unavailable
- Background long-term writes, bounded retry queue and lookup timeouts
- LRU eviction and access bookkeeping
- Promotion, purge, clear and status
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import patch

import pytest

from contextlinc.domain.context.memory.memory_policy import MemoryPolicy
from contextlinc.domain.context.memory.memory_store import MemoryStore
from contextlinc.domain.errors import ExternalProviderError
from contextlinc.domain.models.context_state import MemoryTier, utcnow
from contextlinc.infrastructure.observability.logging import metrics
from contextlinc.infrastructure.providers.embeddings import EmbeddingService

from tests.conftest import FakeEmbeddingProvider

PROJECT_NOTE = (
    "The billing service migration moves invoices from the legacy database "
    "into the new ledger cluster before the March release."
)
TRAVEL_NOTE = (
    "Flights to Lisbon depart Thursday morning; hotel booking confirmed near "
    "the river with breakfast included for three nights."
)
GARDEN_NOTE = (
    "Tomatoes planted beside basil need watering every evening while summer "
    "heat keeps soil dry around fragile young roots."
)


class TestShortTerm:
    """Ring buffer of recent exchanges."""

    async def test_ring_buffer_keeps_most_recent(self, memory_store):
        for i in range(12):
            await memory_store.store(f"message {i}", MemoryTier.SHORT, "u1", "s1")

        status = memory_store.status("u1", "s1")
        assert status["short_term"]["count"] == 10

        items = await memory_store.retrieve("message", "u1", "s1", limit=20, tiers=[MemoryTier.SHORT])
        contents = {item.content for item in items}
        assert "message 0" not in contents
        assert "message 11" in contents

    async def test_sessions_are_isolated(self, memory_store):
        await memory_store.store("in session one", MemoryTier.SHORT, "u1", "s1")
        items = await memory_store.retrieve("session", "u1", "s2")
        assert items == []

    async def test_owners_are_isolated(self, memory_store):
        await memory_store.store(PROJECT_NOTE, MemoryTier.LONG, "u1")
        assert await memory_store.retrieve(PROJECT_NOTE, "u2") == []

    async def test_expired_items_not_returned(self, embeddings):
        store = MemoryStore(embeddings, short_ttl_seconds=60)
        await store.store("quick note", MemoryTier.SHORT, "u1", "s1")
        purged = await store.purge_expired(utcnow() + timedelta(seconds=61))
        assert purged == 1
        assert store.status("u1", "s1")["short_term"]["count"] == 0


class TestMediumTerm:
    """Session memory gated by significance."""

    async def test_short_content_declined(self, memory_store):
        assert await memory_store.store("ok thanks", MemoryTier.MEDIUM, "u1", "s1") is None

    async def test_long_content_kept(self, memory_store):
        item = await memory_store.store("x " * 150, MemoryTier.MEDIUM, "u1", "s1")
        assert item is not None
        assert item.tier == MemoryTier.MEDIUM
        assert item.expires_at is not None

    async def test_significant_event_kept(self, memory_store):
        item = await memory_store.store(
            "uploaded report", MemoryTier.MEDIUM, "u1", "s1", {"event": "file_processed"}
        )
        assert item is not None

    async def test_keyword_filtered_retrieval(self, memory_store):
        await memory_store.store("billing " + "x " * 120, MemoryTier.MEDIUM, "u1", "s1")
        await memory_store.store("garden " + "y " * 120, MemoryTier.MEDIUM, "u1", "s1")

        items = await memory_store.retrieve("billing status", "u1", "s1", tiers=[MemoryTier.MEDIUM])
        assert len(items) == 1
        assert items[0].content.startswith("billing")


class TestLongTerm:
    """Semantic store with persistence policy."""

    async def test_semantic_round_trip(self, memory_store):
        stored = await memory_store.store(PROJECT_NOTE, MemoryTier.LONG, "u1", "s1")
        assert stored is not None
        assert stored.embedding_model == "fake-embed"

        items = await memory_store.retrieve(PROJECT_NOTE, "u1", "s1")
        assert items[0].id == stored.id
        assert items[0].relevance_score == pytest.approx(1.0, abs=0.01)

    async def test_retrieved_items_are_copies(self, memory_store):
        stored = await memory_store.store(PROJECT_NOTE, MemoryTier.LONG, "u1")
        items = await memory_store.retrieve(PROJECT_NOTE, "u1")
        assert items[0] is not stored
        assert stored.relevance_score == 0.0

    async def test_trivial_content_declined(self, memory_store):
        assert await memory_store.store("too short to keep", MemoryTier.LONG, "u1") is None

    async def test_exact_duplicate_declined(self, memory_store):
        assert await memory_store.store(PROJECT_NOTE, MemoryTier.LONG, "u1") is not None
        assert await memory_store.store(PROJECT_NOTE.upper(), MemoryTier.LONG, "u1") is None

    async def test_near_duplicate_declined(self, memory_store):
        reordered = " ".join(reversed(PROJECT_NOTE.split()))
        assert await memory_store.store(PROJECT_NOTE, MemoryTier.LONG, "u1") is not None
        assert await memory_store.store(reordered, MemoryTier.LONG, "u1") is None
        assert memory_store.status("u1")["long_term"]["count"] == 1

    async def test_deferred_while_embeddings_unavailable(self, memory_store, embedding_provider):
        embedding_provider.fail = True
        assert await memory_store.store(PROJECT_NOTE, MemoryTier.LONG, "u1") is None
        assert memory_store.status("u1")["pending_long_term"] == 1

        embedding_provider.fail = False
        assert await memory_store.store(TRAVEL_NOTE, MemoryTier.LONG, "u1") is not None
        await memory_store.wait_for_background()

        status = memory_store.status("u1")
        assert status["pending_long_term"] == 0
        assert status["long_term"]["count"] == 2

    async def test_recency_only_when_query_embedding_fails(self, memory_store, embedding_provider):
        await memory_store.store(PROJECT_NOTE, MemoryTier.LONG, "u1")
        embedding_provider.fail = True

        items = await memory_store.retrieve("billing", "u1")
        assert len(items) == 1
        assert items[0].relevance_score == pytest.approx(0.5, abs=0.01)

    async def test_lru_eviction(self, embeddings):
        store = MemoryStore(embeddings, long_capacity=2)
        first = await store.store(PROJECT_NOTE, MemoryTier.LONG, "u1")
        second = await store.store(TRAVEL_NOTE, MemoryTier.LONG, "u1")

        await store.touch("u1", [first.id])
        await store.store(GARDEN_NOTE, MemoryTier.LONG, "u1")

        remaining = {item.id for item in await store.search(PROJECT_NOTE, "u1", tier=MemoryTier.LONG)}
        assert first.id in remaining
        assert second.id not in remaining
        assert store.status("u1")["long_term"]["count"] == 2

    async def test_touch_updates_access(self, memory_store):
        stored = await memory_store.store(PROJECT_NOTE, MemoryTier.LONG, "u1")
        later = utcnow() + timedelta(minutes=5)

        assert await memory_store.touch("u1", [stored.id, "missing"], now=later) == 1
        assert stored.access_count == 1
        assert stored.last_accessed_at == later


class TestDeferredLongTerm:
    """Background writes and the bounded retry queue."""

    async def test_queue_is_capped(self, embeddings, embedding_provider):
        store = MemoryStore(embeddings, pending_capacity=2)
        embedding_provider.fail = True

        for note in (PROJECT_NOTE, TRAVEL_NOTE, GARDEN_NOTE):
            assert await store.store(note, MemoryTier.LONG, "u1") is None

        assert store.status("u1")["pending_long_term"] == 2

    async def test_retry_stops_at_first_failure(self, memory_store, embedding_provider):
        embedding_provider.fail = True
        for note in (PROJECT_NOTE, TRAVEL_NOTE, GARDEN_NOTE):
            await memory_store.store(note, MemoryTier.LONG, "u1")
        calls = embedding_provider.calls

        assert await memory_store.retry_pending("u1") == 0

        assert embedding_provider.calls - calls == 1
        assert memory_store.status("u1")["pending_long_term"] == 3

    async def test_retry_after_recovery(self, memory_store, embedding_provider):
        embedding_provider.fail = True
        for note in (PROJECT_NOTE, TRAVEL_NOTE):
            await memory_store.store(note, MemoryTier.LONG, "u1")
        embedding_provider.fail = False

        assert await memory_store.retry_pending("u1") == 2

        status = memory_store.status("u1")
        assert status["pending_long_term"] == 0
        assert status["long_term"]["count"] == 2

    async def test_background_write_does_not_hold_owner(self):
        provider = FakeEmbeddingProvider()
        provider.delay = 10.0
        store = MemoryStore(EmbeddingService([provider], timeout=5.0))

        task = store.persist_in_background(PROJECT_NOTE, "u1", "s1")
        await asyncio.sleep(0.01)

        await asyncio.wait_for(store.store("hello", MemoryTier.SHORT, "u1", "s1"), timeout=0.5)
        assert not task.done()

        await store.clear_owner("u1")
        assert task.cancelled()
        assert store.status("u1")["total"] == 0

    async def test_background_failure_is_collected(self, memory_store):
        before = metrics.get_metrics_summary().get("memory.background_failure", 0)

        with patch.object(memory_store, "_insert_long", side_effect=RuntimeError("index corrupted")):
            task = memory_store.persist_in_background(PROJECT_NOTE, "u1")
            await memory_store.wait_for_background()

        assert isinstance(task.exception(), RuntimeError)
        assert metrics.get_metrics_summary()["memory.background_failure"] == before + 1

    async def test_scheduled_write_lands(self, memory_store):
        memory_store.persist_in_background(PROJECT_NOTE, "u1", "s1")
        await memory_store.wait_for_background("u1")
        assert memory_store.status("u1")["long_term"]["count"] == 1


class TestRetrievalLimits:
    """Result limits and lookup timeouts."""

    async def test_zero_limit(self, memory_store):
        await memory_store.store("hello", MemoryTier.SHORT, "u1", "s1")
        assert await memory_store.retrieve("hello", "u1", "s1", limit=0) == []
        assert await memory_store.search("hello", "u1", limit=0) == []

    async def test_slow_query_embedding_falls_back_to_recency(self):
        provider = FakeEmbeddingProvider()
        store = MemoryStore(EmbeddingService([provider], timeout=5.0), search_timeout=0.05)
        await store.store(PROJECT_NOTE, MemoryTier.LONG, "u1")
        await store.store("hello", MemoryTier.SHORT, "u1", "s1")
        provider.delay = 1.0

        items = await asyncio.wait_for(store.retrieve("billing", "u1", "s1"), timeout=0.5)

        assert {item.tier for item in items} == {MemoryTier.SHORT, MemoryTier.LONG}
        long_item = next(item for item in items if item.tier == MemoryTier.LONG)
        assert long_item.relevance_score == pytest.approx(0.5, abs=0.01)


class TestPromotion:
    """Medium to long promotion."""

    async def test_promote(self, memory_store):
        item = await memory_store.store(PROJECT_NOTE * 2, MemoryTier.MEDIUM, "u1", "s1")
        promoted = await memory_store.promote("u1", item.id)

        assert promoted.tier == MemoryTier.LONG
        assert promoted.metadata["promoted_from"] == item.id
        status = memory_store.status("u1", "s1")
        assert status["medium_term"]["count"] == 0
        assert status["long_term"]["count"] == 1

    async def test_promote_unknown_item(self, memory_store):
        with pytest.raises(KeyError):
            await memory_store.promote("u1", "nope")

    async def test_promote_propagates_embedding_failure(self, memory_store, embedding_provider):
        item = await memory_store.store(PROJECT_NOTE * 2, MemoryTier.MEDIUM, "u1", "s1")
        embedding_provider.fail = True
        with pytest.raises(ExternalProviderError):
            await memory_store.promote("u1", item.id)
        assert memory_store.status("u1", "s1")["medium_term"]["count"] == 1


class TestClearAndStatus:
    """Clearing scopes and status counts."""

    async def test_clear_session_keeps_long_term(self, memory_store):
        await memory_store.store("hello", MemoryTier.SHORT, "u1", "s1")
        await memory_store.store(PROJECT_NOTE, MemoryTier.LONG, "u1", "s1")

        assert await memory_store.clear_session("u1", "s1") == 1
        status = memory_store.status("u1", "s1")
        assert status["short_term"]["count"] == 0
        assert status["long_term"]["count"] == 1

    async def test_clear_owner_removes_everything(self, memory_store):
        await memory_store.store("hello", MemoryTier.SHORT, "u1", "s1")
        await memory_store.store(PROJECT_NOTE, MemoryTier.LONG, "u1", "s1")

        assert await memory_store.clear_owner("u1") == 2
        assert memory_store.status("u1", "s1")["total"] == 0

    def test_status_capacities(self, memory_store):
        status = memory_store.status("nobody")
        assert status["short_term"] == {"count": 0, "capacity": 10}
        assert status["medium_term"] == {"count": 0, "capacity": 100}
        assert status["long_term"] == {"count": 0, "capacity": 500}


class TestMemoryPolicy:
    """Policy gates in isolation."""

    def test_significance(self):
        policy = MemoryPolicy()
        assert not policy.is_significant("short")
        assert policy.is_significant("short", {"attachment_ids": ["doc-1"]})
        assert policy.is_significant("a" * 200)

    def test_persistence_requires_distinct_words(self):
        policy = MemoryPolicy()
        assert not policy.is_persistence_worthy("word " * 40)
        assert policy.is_persistence_worthy(PROJECT_NOTE)

    def test_redundancy(self):
        policy = MemoryPolicy()
        assert policy.is_redundant([1.0, 0.0], [[0.99, 0.01]])
        assert not policy.is_redundant([1.0, 0.0], [[0.0, 1.0], None])
