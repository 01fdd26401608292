from typing import Dict, List, Any, Optional
from datetime import datetime
import asyncio

import structlog
from pydantic import BaseModel, Field

from contextlinc.domain.context.memory.similarity import cosine_similarity
from contextlinc.domain.errors import ExternalProviderError
from contextlinc.domain.models.context_state import utcnow
from contextlinc.infrastructure.providers.embeddings import EmbeddingService, clean_text_for_embedding

logger = structlog.get_logger(__name__)

CHUNK_SIZE = 1000
CHUNK_OVERLAP = 200


class DocumentChunk(BaseModel):
    index: int
    text: str
    embedding: Optional[List[float]] = None


class IndexedDocument(BaseModel):
    """A user document split into embedded chunks"""
    document_id: str
    owner_id: str
    filename: str
    file_type: str = "text/plain"
    chunks: List[DocumentChunk] = Field(default_factory=list)
    embedding_model: Optional[str] = None
    indexed_at: datetime = Field(default_factory=utcnow)

    @property
    def is_embedded(self) -> bool:
        return any(chunk.embedding for chunk in self.chunks)


def chunk_text(text: str, chunk_size: int = CHUNK_SIZE, overlap: int = CHUNK_OVERLAP) -> List[str]:
    """Split text into overlapping windows"""

    cleaned = " ".join(text.split())
    if not cleaned:
        return []

    step = max(chunk_size - overlap, 1)
    chunks = []
    for start in range(0, len(cleaned), step):
        chunks.append(cleaned[start:start + chunk_size])
        if start + chunk_size >= len(cleaned):
            break
    return chunks


class KnowledgeRetriever:
    """Indexes user documents and finds the chunks closest to a query"""

    def __init__(self, embeddings: EmbeddingService, search_timeout: Optional[float] = None):
        self.embeddings = embeddings
        self.search_timeout = search_timeout
        self.documents: Dict[str, Dict[str, IndexedDocument]] = {}
        self._lock = asyncio.Lock()

    async def index_document(
        self,
        owner_id: str,
        document_id: str,
        filename: str,
        content: str,
        file_type: str = "text/plain"
    ) -> IndexedDocument:
        """Chunk and embed a document; kept un-embedded if embedding fails"""

        chunks = [
            DocumentChunk(index=i, text=text)
            for i, text in enumerate(chunk_text(content))
        ]
        document = IndexedDocument(
            document_id=document_id,
            owner_id=owner_id,
            filename=filename,
            file_type=file_type,
            chunks=chunks
        )

        if chunks:
            try:
                batch = await self.embeddings.embed([chunk.text for chunk in chunks])
                for chunk, vector in zip(chunks, batch.vectors):
                    chunk.embedding = vector
                document.embedding_model = batch.model
            except ExternalProviderError as exc:
                logger.warning(
                    "Document indexed without embeddings",
                    document_id=document_id,
                    provider=exc.provider,
                    error=str(exc)
                )

        async with self._lock:
            self.documents.setdefault(owner_id, {})[document_id] = document

        logger.info(
            "Document indexed",
            owner_id=owner_id,
            document_id=document_id,
            chunks=len(chunks),
            embedded=document.is_embedded
        )
        return document

    async def retrieve(
        self,
        query: str,
        owner_id: str,
        limit: int = 5,
        threshold: float = 0.7
    ) -> List[Dict[str, Any]]:
        """Best-matching chunk per document, above the similarity threshold"""

        documents = [doc for doc in self.documents.get(owner_id, {}).values() if doc.is_embedded]
        if not documents or not clean_text_for_embedding(query):
            return []

        batch = await self.embeddings.embed_one(query, timeout=self.search_timeout)
        query_vector = batch.vectors[0]

        results = []
        for document in documents:
            best_score, best_chunk = 0.0, None
            for chunk in document.chunks:
                if not chunk.embedding:
                    continue
                score = cosine_similarity(query_vector, chunk.embedding)
                if score > best_score:
                    best_score, best_chunk = score, chunk

            if best_chunk is not None and best_score >= threshold:
                results.append({
                    "document_id": document.document_id,
                    "filename": document.filename,
                    "file_type": document.file_type,
                    "chunk_index": best_chunk.index,
                    "content": best_chunk.text,
                    "similarity": round(best_score, 4),
                })

        results.sort(key=lambda result: (-result["similarity"], result["document_id"]))
        return results[:limit]

    def document_count(self, owner_id: str) -> int:
        return len(self.documents.get(owner_id, {}))

    async def clear_owner(self, owner_id: str) -> int:
        async with self._lock:
            return len(self.documents.pop(owner_id, {}))
