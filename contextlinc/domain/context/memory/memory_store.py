from typing import Dict, List, Any, Optional, Iterable, Set, Tuple
from collections import OrderedDict, defaultdict, deque
from datetime import datetime, timedelta
import asyncio
import functools

import structlog

from contextlinc.domain.context.context_ranker import RelevanceScorer, keywords
from contextlinc.domain.context.memory.memory_policy import MemoryPolicy
from contextlinc.domain.context.memory.similarity import cosine_similarity
from contextlinc.domain.errors import ExternalProviderError
from contextlinc.domain.models.context_state import MemoryItem, MemoryTier, content_hash, utcnow
from contextlinc.infrastructure.observability.logging import context_logger, metrics
from contextlinc.infrastructure.providers.embeddings import EmbeddingBatch, EmbeddingService

logger = structlog.get_logger(__name__)

NO_SESSION = "_"


class PendingMemory:
    """Long-term candidate waiting for an embedding"""

    def __init__(self, content: str, session_id: Optional[str], metadata: Dict[str, Any]):
        self.content = content
        self.session_id = session_id
        self.metadata = metadata


class MemoryStore:
    """Tiered memory: short ring buffer, medium session store, long semantic store"""

    def __init__(
        self,
        embeddings: EmbeddingService,
        scorer: Optional[RelevanceScorer] = None,
        policy: Optional[MemoryPolicy] = None,
        short_capacity: int = 10,
        short_ttl_seconds: int = 3600,
        medium_capacity: int = 100,
        medium_ttl_seconds: int = 86400,
        long_capacity: int = 500,
        pending_capacity: int = 50,
        search_timeout: Optional[float] = None
    ):
        self.embeddings = embeddings
        self.scorer = scorer or RelevanceScorer()
        self.policy = policy or MemoryPolicy()
        self.short_capacity = short_capacity
        self.short_ttl = timedelta(seconds=short_ttl_seconds)
        self.medium_capacity = medium_capacity
        self.medium_ttl = timedelta(seconds=medium_ttl_seconds)
        self.long_capacity = long_capacity
        self.pending_capacity = pending_capacity
        self.search_timeout = search_timeout

        self._short: Dict[Tuple[str, str], deque] = {}
        self._medium: Dict[Tuple[str, str], List[MemoryItem]] = {}
        # Insertion order doubles as LRU order
        self._long: Dict[str, "OrderedDict[str, MemoryItem]"] = {}
        self._pending: Dict[str, deque] = {}
        self._background: Dict[str, Set[asyncio.Task]] = {}
        self._retrying: Set[str] = set()
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _lock_for(self, owner_id: str) -> asyncio.Lock:
        return self._locks[owner_id]

    async def store(
        self,
        content: str,
        tier: MemoryTier,
        owner_id: str,
        session_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[MemoryItem]:
        """Store content in a tier; returns None when the tier's policy declines it"""

        metadata = dict(metadata or {})
        tier = MemoryTier(tier)

        if tier == MemoryTier.LONG:
            return await self._store_long(content, owner_id, session_id, metadata)

        async with self._lock_for(owner_id):
            if tier == MemoryTier.SHORT:
                return self._store_short(content, owner_id, session_id, metadata)
            return self._store_medium(content, owner_id, session_id, metadata)

    def _store_short(
        self,
        content: str,
        owner_id: str,
        session_id: Optional[str],
        metadata: Dict[str, Any]
    ) -> MemoryItem:
        now = utcnow()
        item = MemoryItem(
            owner_id=owner_id,
            session_id=session_id,
            tier=MemoryTier.SHORT,
            content=content,
            created_at=now,
            last_accessed_at=now,
            expires_at=now + self.short_ttl,
            metadata=metadata
        )

        key = (owner_id, session_id or NO_SESSION)
        buffer = self._short.get(key)
        if buffer is None:
            buffer = deque(maxlen=self.short_capacity)
            self._short[key] = buffer
        buffer.append(item)
        return item

    def _store_medium(
        self,
        content: str,
        owner_id: str,
        session_id: Optional[str],
        metadata: Dict[str, Any]
    ) -> Optional[MemoryItem]:
        if not self.policy.is_significant(content, metadata):
            return None

        now = utcnow()
        item = MemoryItem(
            owner_id=owner_id,
            session_id=session_id,
            tier=MemoryTier.MEDIUM,
            content=content,
            summary=metadata.get("summary"),
            created_at=now,
            last_accessed_at=now,
            expires_at=now + self.medium_ttl,
            metadata=metadata
        )

        items = self._medium.setdefault((owner_id, session_id or NO_SESSION), [])
        items.append(item)
        if len(items) > self.medium_capacity:
            del items[:len(items) - self.medium_capacity]
        return item

    async def _store_long(
        self,
        content: str,
        owner_id: str,
        session_id: Optional[str],
        metadata: Dict[str, Any]
    ) -> Optional[MemoryItem]:
        async with self._lock_for(owner_id):
            if not self.policy.is_persistence_worthy(content, self._long_hashes(owner_id)):
                return None

        # Embedding happens outside the owner lock so short and medium writes never wait on it
        try:
            batch = await self.embeddings.embed_one(content)
        except ExternalProviderError as exc:
            async with self._lock_for(owner_id):
                self._defer(owner_id, PendingMemory(content, session_id, metadata))
            logger.warning(
                "Long-term memory deferred; embedding unavailable",
                owner_id=owner_id,
                pending=len(self._pending.get(owner_id, ())),
                error=str(exc)
            )
            return None

        async with self._lock_for(owner_id):
            item = self._insert_long(content, batch, owner_id, session_id, metadata)

        if self._pending.get(owner_id):
            self._spawn(owner_id, self.retry_pending(owner_id))
        return item

    def persist_in_background(
        self,
        content: str,
        owner_id: str,
        session_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> asyncio.Task:
        """Schedule a long-term store without waiting for its embedding"""

        return self._spawn(owner_id, self.store(content, MemoryTier.LONG, owner_id, session_id, metadata))

    async def retry_pending(self, owner_id: str) -> int:
        """Persist deferred long-term candidates; a pass stops at the first embedding failure"""

        if owner_id in self._retrying:
            return 0
        self._retrying.add(owner_id)
        try:
            async with self._lock_for(owner_id):
                queue = self._pending.pop(owner_id, None)
            if not queue:
                return 0

            attempted = len(queue)
            persisted = 0
            while queue:
                entry = queue[0]
                if not self.policy.is_persistence_worthy(entry.content, self._long_hashes(owner_id)):
                    queue.popleft()
                    continue
                try:
                    batch = await self.embeddings.embed_one(entry.content)
                except ExternalProviderError:
                    break
                queue.popleft()
                async with self._lock_for(owner_id):
                    if self._insert_long(entry.content, batch, owner_id, entry.session_id, entry.metadata):
                        persisted += 1

            if queue:
                async with self._lock_for(owner_id):
                    # Entries deferred during this pass go after the ones still waiting
                    queue.extend(self._pending.pop(owner_id, ()))
                    while len(queue) > self.pending_capacity:
                        queue.popleft()
                    self._pending[owner_id] = queue

            logger.info(
                "Retried deferred long-term memories",
                owner_id=owner_id,
                attempted=attempted,
                persisted=persisted,
                remaining=len(self._pending.get(owner_id, ()))
            )
            return persisted
        finally:
            self._retrying.discard(owner_id)

    def _defer(self, owner_id: str, entry: PendingMemory):
        queue = self._pending.setdefault(owner_id, deque())
        if len(queue) >= self.pending_capacity:
            queue.popleft()
            metrics.increment_counter("memory.long_term_dropped")
            logger.warning("Deferred long-term queue full; oldest entry dropped", owner_id=owner_id)
        queue.append(entry)
        metrics.increment_counter("memory.long_term_deferred")

    def _spawn(self, owner_id: str, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.setdefault(owner_id, set()).add(task)
        task.add_done_callback(functools.partial(self._collect, owner_id))
        return task

    def _collect(self, owner_id: str, task: asyncio.Task):
        tasks = self._background.get(owner_id)
        if tasks is not None:
            tasks.discard(task)
            if not tasks:
                self._background.pop(owner_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            metrics.increment_counter("memory.background_failure")
            logger.error("Background memory write failed", owner_id=owner_id, error=str(exc), exc_info=exc)

    async def wait_for_background(self, owner_id: Optional[str] = None):
        """Wait until scheduled long-term writes (and the retries they start) are done"""

        while True:
            if owner_id is None:
                tasks = [task for tasks in self._background.values() for task in tasks]
            else:
                tasks = list(self._background.get(owner_id, ()))
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _cancel_background(self, owner_id: str):
        tasks = list(self._background.pop(owner_id, ()))
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _insert_long(
        self,
        content: str,
        batch: EmbeddingBatch,
        owner_id: str,
        session_id: Optional[str],
        metadata: Dict[str, Any],
        summary: Optional[str] = None
    ) -> Optional[MemoryItem]:
        embedding = batch.vectors[0]

        owned = self._long.setdefault(owner_id, OrderedDict())
        if content_hash(content) in self._long_hashes(owner_id):
            return None
        if self.policy.is_redundant(embedding, (item.embedding for item in owned.values())):
            logger.debug("Near-duplicate long-term memory rejected", owner_id=owner_id)
            return None

        now = utcnow()
        item = MemoryItem(
            owner_id=owner_id,
            session_id=session_id,
            tier=MemoryTier.LONG,
            content=content,
            summary=summary or metadata.get("summary"),
            embedding=embedding,
            embedding_model=batch.model,
            created_at=now,
            last_accessed_at=now,
            metadata=metadata
        )
        owned[item.id] = item

        while len(owned) > self.long_capacity:
            evicted_id, _ = owned.popitem(last=False)
            logger.debug("Evicted least recently used memory", owner_id=owner_id, item_id=evicted_id)

        return item

    def _long_hashes(self, owner_id: str) -> List[str]:
        return [item.content_hash for item in self._long.get(owner_id, {}).values()]

    def _session_items(
        self,
        tier_store: Dict[Tuple[str, str], Iterable[MemoryItem]],
        owner_id: str,
        session_id: Optional[str]
    ) -> List[MemoryItem]:
        if session_id is not None:
            return list(tier_store.get((owner_id, session_id), []))

        items = []
        for (owner, _), bucket in list(tier_store.items()):
            if owner == owner_id:
                items.extend(bucket)
        return items

    async def retrieve(
        self,
        query: str,
        owner_id: str,
        session_id: Optional[str] = None,
        limit: int = 10,
        tiers: Optional[Iterable[MemoryTier]] = None
    ) -> List[MemoryItem]:
        """Relevant, unexpired items across tiers, best first and deduplicated"""

        if limit <= 0:
            return []

        now = utcnow()
        wanted = set(MemoryTier(t) for t in tiers) if tiers else set(MemoryTier)
        candidates: List[Tuple[MemoryItem, float]] = []

        if MemoryTier.SHORT in wanted:
            for item in self._session_items(self._short, owner_id, session_id):
                if not item.is_expired(now):
                    candidates.append((item, 0.0))

        if MemoryTier.MEDIUM in wanted:
            query_words = keywords(query)
            for item in self._session_items(self._medium, owner_id, session_id):
                if item.is_expired(now):
                    continue
                if query_words and not query_words & keywords(item.content):
                    continue
                candidates.append((item, 0.0))

        if MemoryTier.LONG in wanted:
            candidates.extend(await self._semantic_candidates(query, owner_id))

        scored = [
            (item, self.scorer.score_memory_item(item, semantic, now))
            for item, semantic in candidates
        ]
        scored.sort(key=lambda pair: pair[1], reverse=True)

        results = []
        seen = set()
        for item, score in scored:
            if item.content_hash in seen:
                continue
            seen.add(item.content_hash)
            results.append(item.model_copy(update={"relevance_score": score}))
            if len(results) >= limit:
                break

        return results

    async def _semantic_candidates(self, query: str, owner_id: str) -> List[Tuple[MemoryItem, float]]:
        items = list(self._long.get(owner_id, {}).values())
        if not items:
            return []

        try:
            batch = await self.embeddings.embed_one(query, timeout=self.search_timeout)
        except ExternalProviderError as exc:
            context_logger.log_provider_failure(
                provider=exc.provider,
                operation="memory_search",
                error=str(exc),
                will_fallback=False
            )
            # Recency-only ranking
            return [(item, 0.0) for item in items]

        query_vector = batch.vectors[0]
        return [
            (item, max(cosine_similarity(query_vector, item.embedding or []), 0.0))
            for item in items
        ]

    async def search(
        self,
        query: str,
        owner_id: str,
        tier: Optional[MemoryTier] = None,
        limit: int = 10,
        session_id: Optional[str] = None
    ) -> List[MemoryItem]:
        """Search memory, optionally restricted to one tier"""

        tiers = [tier] if tier else None
        return await self.retrieve(query, owner_id, session_id=session_id, limit=limit, tiers=tiers)

    async def touch(self, owner_id: str, item_ids: Iterable[str], now: Optional[datetime] = None) -> int:
        """Record access to surfaced items; returns how many were found"""

        now = now or utcnow()
        wanted = set(item_ids)
        touched = 0

        async with self._lock_for(owner_id):
            for item in self._owned_items(owner_id):
                if item.id in wanted:
                    item.access_count += 1
                    item.last_accessed_at = now
                    touched += 1

            owned = self._long.get(owner_id)
            if owned:
                for item_id in wanted & owned.keys():
                    owned.move_to_end(item_id)

        return touched

    async def promote(self, owner_id: str, item_id: str) -> Optional[MemoryItem]:
        """Move a medium-term item into long-term memory.

        Unlike store, an embedding failure here propagates to the caller.
        """

        async with self._lock_for(owner_id):
            for key, items in self._medium.items():
                if key[0] != owner_id:
                    continue
                for item in items:
                    if item.id != item_id:
                        continue
                    if item.content_hash in self._long_hashes(owner_id):
                        items.remove(item)
                        return None

                    batch = await self.embeddings.embed_one(item.content)
                    promoted = self._insert_long(
                        item.content,
                        batch,
                        owner_id,
                        item.session_id,
                        dict(item.metadata, promoted_from=item.id),
                        summary=item.summary
                    )
                    items.remove(item)
                    logger.info("Memory promoted to long-term", owner_id=owner_id, item_id=item_id)
                    return promoted

        raise KeyError(f"No medium-term memory {item_id} for owner {owner_id}")

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Drop expired short and medium items for every owner"""

        now = now or utcnow()
        purged = 0

        for key, buffer in list(self._short.items()):
            async with self._lock_for(key[0]):
                kept = [item for item in buffer if not item.is_expired(now)]
                purged += len(buffer) - len(kept)
                if kept:
                    self._short[key] = deque(kept, maxlen=self.short_capacity)
                else:
                    self._short.pop(key, None)

        for key, items in list(self._medium.items()):
            async with self._lock_for(key[0]):
                kept = [item for item in items if not item.is_expired(now)]
                purged += len(items) - len(kept)
                if kept:
                    self._medium[key] = kept
                else:
                    self._medium.pop(key, None)

        if purged:
            logger.info("Purged expired memories", count=purged)
        return purged

    async def clear_session(self, owner_id: str, session_id: str) -> int:
        """Clear short and medium memory for one session"""

        key = (owner_id, session_id)
        async with self._lock_for(owner_id):
            cleared = len(self._short.pop(key, [])) + len(self._medium.pop(key, []))
        return cleared

    async def clear_owner(self, owner_id: str) -> int:
        """Clear every tier for an owner, pending long-term candidates included"""

        # Writes still in flight would otherwise land after the clear
        await self._cancel_background(owner_id)

        async with self._lock_for(owner_id):
            cleared = 0
            for tier_store in (self._short, self._medium):
                for key in [key for key in tier_store if key[0] == owner_id]:
                    cleared += len(tier_store.pop(key))
            cleared += len(self._long.pop(owner_id, {}))
            self._pending.pop(owner_id, None)
        return cleared

    def status(self, owner_id: str, session_id: Optional[str] = None) -> Dict[str, Any]:
        """Item counts and capacities per tier"""

        now = utcnow()
        short = [i for i in self._session_items(self._short, owner_id, session_id) if not i.is_expired(now)]
        medium = [i for i in self._session_items(self._medium, owner_id, session_id) if not i.is_expired(now)]
        long_count = len(self._long.get(owner_id, {}))

        return {
            "short_term": {"count": len(short), "capacity": self.short_capacity},
            "medium_term": {"count": len(medium), "capacity": self.medium_capacity},
            "long_term": {"count": long_count, "capacity": self.long_capacity},
            "pending_long_term": len(self._pending.get(owner_id, [])),
            "total": len(short) + len(medium) + long_count,
        }

    def _owned_items(self, owner_id: str) -> List[MemoryItem]:
        items = self._session_items(self._short, owner_id, None)
        items.extend(self._session_items(self._medium, owner_id, None))
        items.extend(self._long.get(owner_id, {}).values())
        return items
