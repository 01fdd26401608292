"""Layers backed by external lookups: knowledge retrieval and tiered memory."""

from typing import Dict, Any, List

import structlog

from contextlinc.domain.context.knowledge_retriever import KnowledgeRetriever
from contextlinc.domain.context.layers.base_layer import LayerBuilder
from contextlinc.domain.context.memory.memory_store import MemoryStore
from contextlinc.domain.errors import ExternalProviderError
from contextlinc.domain.models.context_state import (
    Attachment, ContextLayer, LayerId, MemoryTier, Session
)

logger = structlog.get_logger(__name__)

FILE_CONTEXT_CHARS = 4000


class KnowledgeLayer(LayerBuilder):
    """Retrieved documents and the content of attached files"""

    layer_id = LayerId.KNOWLEDGE
    external = True

    def __init__(self, retriever: KnowledgeRetriever, limit: int = 5, threshold: float = 0.7):
        self.retriever = retriever
        self.limit = limit
        self.threshold = threshold

    async def build(self, session: Session, query: str, attachments: List[Attachment]) -> ContextLayer:
        try:
            documents = await self.retriever.retrieve(
                query, session.user_id, limit=self.limit, threshold=self.threshold
            )
        except ExternalProviderError as exc:
            # Attached files are still usable without retrieval
            logger.warning("Knowledge retrieval unavailable", provider=exc.provider, error=str(exc))
            documents = []

        file_context = [
            {
                "id": attachment.id,
                "filename": attachment.filename,
                "file_type": attachment.file_type,
                "content": attachment.extracted_content[:FILE_CONTEXT_CHARS],
            }
            for attachment in attachments if attachment.has_content
        ]

        data = {
            "retrieved_documents": documents,
            "file_context": file_context,
            "embedding_matches": len(documents),
            "total_documents": self.retriever.document_count(session.user_id),
        }
        return self.finish(data, active=bool(documents) or bool(attachments))


class MemoryLayer(LayerBuilder):
    """Items from every memory tier relevant to the query"""

    layer_id = LayerId.MEMORY
    external = True

    def __init__(self, memory: MemoryStore, limit: int = 10):
        self.memory = memory
        self.limit = limit

    async def build(self, session: Session, query: str, attachments: List[Attachment]) -> ContextLayer:
        items = await self.memory.retrieve(
            query, session.user_id, session_id=session.session_id, limit=self.limit
        )
        by_tier: Dict[MemoryTier, List[Dict[str, Any]]] = {tier: [] for tier in MemoryTier}
        for item in items:
            by_tier[item.tier].append(item.to_context())

        data = {
            "short_term": {
                "items": by_tier[MemoryTier.SHORT],
                "capacity": self.memory.short_capacity,
                "retention": "1 hour",
            },
            "medium_term": {
                "items": by_tier[MemoryTier.MEDIUM],
                "capacity": self.memory.medium_capacity,
                "retention": "1 session",
            },
            "long_term": {
                "items": by_tier[MemoryTier.LONG],
                "capacity": self.memory.long_capacity,
                "retention": "persistent",
            },
            "total_items": len(items),
        }
        # Memory is always part of the window, even when empty
        return self.finish(data, active=True)
