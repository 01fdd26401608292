from typing import Dict, Any, List
import structlog

from contextlinc.domain.context.knowledge_retriever import KnowledgeRetriever
from contextlinc.domain.context.layers.query_layer import detect_intent
from contextlinc.domain.context.memory.cache_memory_store import LayerSnapshotStore
from contextlinc.domain.context.memory.memory_store import MemoryStore
from contextlinc.domain.models.context_state import (
    Attachment, ContextWindow, GenerationResult, LayerId, MemoryTier, Session, Turn
)
from contextlinc.infrastructure.observability.logging import context_logger

logger = structlog.get_logger(__name__)

SUMMARY_CHARS = 200


def surfaced_memory_ids(window: ContextWindow) -> List[str]:
    """Ids of memory items that made it into the window"""

    data = window.get_layer(LayerId.MEMORY).data
    ids = []
    for tier_key in ("short_term", "medium_term", "long_term"):
        for item in (data.get(tier_key) or {}).get("items") or []:
            if item.get("id"):
                ids.append(item["id"])
    return ids


class StateUpdater:
    """Folds a completed turn back into memory, knowledge and session state"""

    def __init__(
        self,
        memory: MemoryStore,
        retriever: KnowledgeRetriever,
        snapshots: LayerSnapshotStore
    ):
        self.memory = memory
        self.retriever = retriever
        self.snapshots = snapshots

    async def commit(
        self,
        session: Session,
        query: str,
        attachments: List[Attachment],
        window: ContextWindow,
        result: GenerationResult
    ) -> bool:
        """Commit one turn; returns whether any memory tier was written"""

        owner_id = session.user_id
        intent = window.get_layer(LayerId.USER_QUERY).data.get("intent") or detect_intent(query)
        attachment_ids = [attachment.id for attachment in attachments]

        stored = [
            await self.memory.store(
                f"user: {query}", MemoryTier.SHORT, owner_id, session.session_id, {"role": "user"}
            ),
            await self.memory.store(
                f"assistant: {result.content}", MemoryTier.SHORT, owner_id, session.session_id,
                {"role": "assistant", "model": result.model}
            ),
        ]

        interaction = f"User asked: {query}\nAssistant answered: {result.content}"
        metadata: Dict[str, Any] = {
            "intent": intent,
            "summary": f"{query[:SUMMARY_CHARS // 2]} -> {result.content[:SUMMARY_CHARS // 2]}",
        }
        if attachment_ids:
            metadata["attachment_ids"] = attachment_ids
            metadata["event"] = "file_processed"

        # Tier policies decide whether these are kept
        stored.append(await self.memory.store(interaction, MemoryTier.MEDIUM, owner_id, session.session_id, metadata))
        # Long-term writes wait on embeddings, so the turn does not
        self.memory.persist_in_background(interaction, owner_id, session.session_id, metadata)

        surfaced = surfaced_memory_ids(window)
        if surfaced:
            await self.memory.touch(owner_id, surfaced)

        for attachment in attachments:
            if attachment.has_content:
                await self.retriever.index_document(
                    owner_id,
                    attachment.id,
                    attachment.filename,
                    attachment.extracted_content,
                    attachment.file_type
                )

        session.record_turn(Turn(
            query=query,
            response=result.content,
            intent=intent,
            attachment_ids=attachment_ids
        ))
        await self.snapshots.save(session.key, window)

        tiers_written = sorted({item.tier.value for item in stored if item is not None})
        context_logger.log_context_update(
            session_id=session.session_id,
            context_type="turn",
            action="commit",
            details={
                "tiers_written": tiers_written,
                "touched": len(surfaced),
                "attachments_indexed": sum(1 for a in attachments if a.has_content),
                "turn_count": session.turn_count
            }
        )
        return bool(tiers_written)
