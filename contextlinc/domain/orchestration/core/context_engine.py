from typing import TypedDict, List, Dict, Any, Optional, Iterable, Literal, Sequence
from datetime import datetime
import uuid

from langgraph.graph import StateGraph, END
import structlog

from contextlinc.domain.catalog.example_registry import ExampleRegistry
from contextlinc.domain.catalog.tool_registry import ToolRegistry
from contextlinc.domain.context.budget_compressor import BudgetCompressor, ModelSummarizer, RuleBasedSummarizer
from contextlinc.domain.context.context_assembler import ContextAssembler
from contextlinc.domain.context.context_ranker import RelevanceScorer
from contextlinc.domain.context.knowledge_retriever import KnowledgeRetriever
from contextlinc.domain.context.layers import (
    ConstraintsLayer, ConversationContextLayer, ExamplesLayer, InstructionsLayer, KnowledgeLayer,
    MemoryLayer, OutputFormatLayer, TaskStateLayer, ToolsLayer, UserInfoLayer, UserQueryLayer
)
from contextlinc.domain.context.memory.cache_memory_store import LayerSnapshotStore
from contextlinc.domain.context.memory.memory_policy import MemoryPolicy
from contextlinc.domain.context.memory.memory_store import MemoryStore
from contextlinc.domain.context.memory.runtime_memory import SessionStore, session_key
from contextlinc.domain.context.state.state_manager import StateUpdater
from contextlinc.domain.errors import ExternalProviderError, GenerationUnavailableError
from contextlinc.domain.generation.gateway import GenerationGateway
from contextlinc.domain.generation.prompt_renderer import PromptRenderer
from contextlinc.domain.models.context_state import (
    Attachment, CompressionReport, ContextLayer, ContextWindow, GenerationResult, LayerId,
    MemoryItem, MemoryTier, Session, Task, TaskPriority, TaskStatus, TurnResult, format_timestamp, utcnow
)
from contextlinc.infrastructure.config.settings import Settings, get_settings
from contextlinc.infrastructure.observability.logging import bind_turn_context, clear_turn_context, setup_logging
from contextlinc.infrastructure.providers.embeddings import EmbeddingService, build_embedding_service
from contextlinc.infrastructure.providers.llm_backends import ModelBackend, build_model_backends

logger = structlog.get_logger(__name__)


class TurnState(TypedDict):
    """State for the turn graph"""
    session: Session
    query: str
    attachments: List[Attachment]
    model: Optional[str]
    generation_options: Dict[str, Any]
    budget: Optional[int]
    window: Optional[ContextWindow]
    result: Optional[GenerationResult]
    memory_updated: bool
    error: Optional[str]
    failure: Optional[ExternalProviderError]


class ContextEngine:
    """Callable surface of the context engine: assembly, turns, memory and reset"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        embeddings: Optional[EmbeddingService] = None,
        backends: Optional[Sequence[ModelBackend]] = None
    ):
        self.settings = settings or get_settings()
        s = self.settings

        self.embeddings = embeddings or build_embedding_service(s)
        self._check_timeouts()
        self.scorer = RelevanceScorer(
            layer_relevance=s.LAYER_RELEVANCE,
            inactive_weight=s.INACTIVE_LAYER_WEIGHT,
            recency_window_seconds=s.SHORT_TERM_TTL_SECONDS
        )
        self.memory = MemoryStore(
            self.embeddings,
            scorer=self.scorer,
            policy=MemoryPolicy(
                significance_min_chars=s.SIGNIFICANCE_MIN_CHARS,
                persistence_min_chars=s.PERSISTENCE_MIN_CHARS,
                redundancy_similarity=s.REDUNDANCY_SIMILARITY
            ),
            short_capacity=s.SHORT_TERM_CAPACITY,
            short_ttl_seconds=s.SHORT_TERM_TTL_SECONDS,
            medium_capacity=s.MEDIUM_TERM_CAPACITY,
            medium_ttl_seconds=s.MEDIUM_TERM_TTL_SECONDS,
            long_capacity=s.LONG_TERM_CAPACITY,
            pending_capacity=s.PENDING_LONG_TERM_CAPACITY,
            search_timeout=s.RETRIEVAL_TIMEOUT
        )
        self.retriever = KnowledgeRetriever(self.embeddings, search_timeout=s.RETRIEVAL_TIMEOUT)
        self.gateway = GenerationGateway(
            backends if backends is not None else build_model_backends(s),
            renderer=PromptRenderer(s.ASSISTANT_NAME),
            weights=s.CONFIDENCE,
            default_model=s.DEFAULT_MODEL,
            fallback_model=s.GENERATION_FALLBACK_MODEL,
            summary_model=s.SUMMARY_MODEL,
            max_tokens=s.MAX_TOKENS,
            temperature=s.TEMPERATURE,
            top_p=s.TOP_P,
            timeout=s.GENERATION_TIMEOUT
        )
        summarizer = ModelSummarizer(self.gateway) if s.USE_MODEL_SUMMARIZER else RuleBasedSummarizer()

        builders = (
            InstructionsLayer(s.ASSISTANT_NAME),
            UserInfoLayer(),
            KnowledgeLayer(self.retriever),
            TaskStateLayer(),
            MemoryLayer(self.memory, limit=s.MEMORY_RETRIEVAL_LIMIT),
            ToolsLayer(ToolRegistry(), self.scorer),
            ExamplesLayer(ExampleRegistry(), self.scorer),
            ConversationContextLayer(),
            ConstraintsLayer(max_tokens=s.MAX_TOKENS, response_time_limit=s.GENERATION_TIMEOUT),
            OutputFormatLayer(),
            UserQueryLayer(),
        )
        self.assembler = ContextAssembler(
            builders,
            self.scorer,
            BudgetCompressor(summarizer),
            default_budget=s.CONTEXT_TOKEN_BUDGET,
            builder_timeout=s.BUILDER_TIMEOUT
        )
        self.sessions = SessionStore(s.SESSION_TTL_SECONDS, s.RECENT_TURN_CAPACITY)
        self.snapshots = LayerSnapshotStore(s.SESSION_TTL_SECONDS)
        self.updater = StateUpdater(self.memory, self.retriever, self.snapshots)
        self.workflow = self._create_workflow()

    def _check_timeouts(self):
        """Lookups must be able to reach the last embedding provider before their builder is cut off"""

        s = self.settings
        chain = len(self.embeddings.providers) * self.embeddings.timeout
        if not chain <= s.RETRIEVAL_TIMEOUT < s.BUILDER_TIMEOUT:
            raise ValueError(
                f"Timeouts leave no room for embedding fallback: {len(self.embeddings.providers)} providers "
                f"x {self.embeddings.timeout}s must fit in RETRIEVAL_TIMEOUT={s.RETRIEVAL_TIMEOUT}s, "
                f"which must be below BUILDER_TIMEOUT={s.BUILDER_TIMEOUT}s"
            )

    def _create_workflow(self):
        """Turn graph: assemble, generate, commit; generation failures go to the error handler"""

        workflow = StateGraph(TurnState)

        workflow.add_node("assemble", self.assemble_node)
        workflow.add_node("generate", self.generate_node)
        workflow.add_node("commit", self.commit_node)
        workflow.add_node("error_handler", self.error_handler_node)

        workflow.set_entry_point("assemble")
        workflow.add_edge("assemble", "generate")
        workflow.add_conditional_edges(
            "generate",
            self.check_generation_result,
            {
                "success": "commit",
                "error": "error_handler"
            }
        )
        workflow.add_edge("commit", END)
        workflow.add_edge("error_handler", END)

        return workflow.compile()

    async def assemble_node(self, state: TurnState) -> Dict[str, Any]:
        window = await self.assembler.build_context_window(
            state["session"], state["query"], state["attachments"], budget=state.get("budget")
        )
        return {"window": window}

    async def generate_node(self, state: TurnState) -> Dict[str, Any]:
        try:
            result = await self.gateway.generate(
                state["window"], model=state.get("model"), **state.get("generation_options", {})
            )
        except ExternalProviderError as exc:
            return {"error": str(exc), "failure": exc}
        return {"result": result}

    async def commit_node(self, state: TurnState) -> Dict[str, Any]:
        updated = await self.updater.commit(
            state["session"], state["query"], state["attachments"], state["window"], state["result"]
        )
        return {"memory_updated": updated}

    async def error_handler_node(self, state: TurnState) -> Dict[str, Any]:
        logger.error(
            "Generation unavailable",
            session_id=state["session"].session_id,
            provider=state["failure"].provider if state.get("failure") else None,
            error=state.get("error")
        )
        # The assembled window is still useful to the next call
        await self.snapshots.save(state["session"].key, state["window"])
        return {}

    def check_generation_result(self, state: TurnState) -> Literal["success", "error"]:
        if state.get("error"):
            return "error"
        return "success"

    async def build_context_window(
        self,
        user_id: str,
        session_id: str,
        query: str,
        attachments: Optional[List[Attachment]] = None,
        budget: Optional[int] = None
    ) -> ContextWindow:
        """Assemble a window without generating; the snapshot is updated"""

        async with self.sessions.lock_for(user_id, session_id):
            session = await self.sessions.get_or_create(user_id, session_id)
            window = await self.assembler.build_context_window(session, query, attachments or [], budget=budget)
            await self.snapshots.save(session.key, window)
            return window

    async def process_turn(
        self,
        user_id: str,
        session_id: str,
        query: str,
        attachments: Optional[List[Attachment]] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        top_p: Optional[float] = None,
        budget: Optional[int] = None
    ) -> TurnResult:
        """Assemble, generate and commit one turn; turns of one session run one at a time"""

        turn_id = uuid.uuid4().hex
        bind_turn_context(turn_id, user_id, session_id)
        try:
            async with self.sessions.lock_for(user_id, session_id):
                session = await self.sessions.get_or_create(user_id, session_id)
                initial_state: TurnState = {
                    "session": session,
                    "query": query,
                    "attachments": attachments or [],
                    "model": model,
                    "generation_options": {
                        key: value for key, value in (
                            ("max_tokens", max_tokens),
                            ("temperature", temperature),
                            ("top_p", top_p),
                        ) if value is not None
                    },
                    "budget": budget,
                    "window": None,
                    "result": None,
                    "memory_updated": False,
                    "error": None,
                    "failure": None
                }
                final_state = await self.workflow.ainvoke(initial_state)
        finally:
            clear_turn_context()

        if final_state.get("error"):
            failure = final_state.get("failure")
            if isinstance(failure, GenerationUnavailableError):
                raise failure
            raise GenerationUnavailableError(getattr(failure, "provider", "generation"), final_state["error"])

        return TurnResult(
            window=final_state["window"],
            result=final_state["result"],
            memory_updated=final_state["memory_updated"]
        )

    async def get_layer(self, user_id: str, session_id: str, layer_id: int) -> Optional[ContextLayer]:
        """Layer from the last assembled window; ValueError for ids outside 1..11"""

        layer_id = LayerId(layer_id)
        window = await self.snapshots.get(session_key(user_id, session_id))
        if window is None:
            return None
        return window.get_layer(layer_id)

    async def search_memory(
        self,
        user_id: str,
        session_id: str,
        query: str,
        tier: Optional[MemoryTier] = None,
        limit: int = 10
    ) -> List[MemoryItem]:
        return await self.memory.search(query, user_id, tier=tier, limit=limit, session_id=session_id)

    async def optimize(
        self,
        user_id: str,
        session_id: str,
        target_tokens: int,
        preserve_layer_ids: Iterable[int] = ()
    ) -> CompressionReport:
        """Re-fit the last window to a new target and keep it as the snapshot"""

        preserve_layer_ids = [int(LayerId(layer_id)) for layer_id in preserve_layer_ids]
        async with self.sessions.lock_for(user_id, session_id):
            key = session_key(user_id, session_id)
            window = await self.snapshots.get(key)
            if window is None:
                raise LookupError(f"No context window assembled yet for session {session_id}")

            optimized = await self.assembler.optimize(window, target_tokens, preserve_layer_ids)
            await self.snapshots.save(key, optimized)

        if optimized.compression is not None:
            return optimized.compression
        return CompressionReport(
            budget=target_tokens,
            original_tokens=window.total_tokens,
            compressed_tokens=optimized.total_tokens,
            compression_ratio=1.0,
            preserved_layer_ids=sorted(set(preserve_layer_ids))
        )

    async def reset(self, user_id: str, session_id: str, preserve_memory: bool = False) -> None:
        """Clear session context; long-term memory survives only with preserve_memory"""

        async with self.sessions.lock_for(user_id, session_id):
            await self.snapshots.delete(session_key(user_id, session_id))
            if preserve_memory:
                await self.memory.clear_session(user_id, session_id)
                session = self.sessions.get(user_id, session_id)
                if session is not None:
                    session.clear_turns()
            else:
                await self.memory.clear_owner(user_id)
                await self.retriever.clear_owner(user_id)
                await self.sessions.end_session(user_id, session_id)

        logger.info("Context reset", user_id=user_id, session_id=session_id, preserve_memory=preserve_memory)

    def memory_status(self, user_id: str, session_id: str) -> Dict[str, Any]:
        status = self.memory.status(user_id, session_id)
        status["last_update"] = format_timestamp(utcnow())
        return status

    async def context_state(self, user_id: str, session_id: str) -> Dict[str, Any]:
        """Overview of the last window, memory and documents for a session"""

        window = await self.snapshots.get(session_key(user_id, session_id))
        session = self.sessions.get(user_id, session_id)

        layers = []
        if window is not None:
            layers = [
                {
                    "id": int(layer.id),
                    "name": layer.name,
                    "status": layer.status.value,
                    "token_count": layer.token_count,
                    "relevance_score": layer.relevance_score,
                    "compression": layer.compression,
                }
                for layer in window.layers
            ]

        return {
            "layers": layers,
            "total_tokens": window.total_tokens if window else 0,
            "relevance_score": window.relevance_score if window else 0.0,
            "built_at": format_timestamp(window.built_at) if window else None,
            "memory": self.memory.status(user_id, session_id),
            "documents": self.retriever.document_count(user_id),
            "stats": {
                "turn_count": session.turn_count if session else 0,
                "context_switches": session.context_switches if session else 0,
                "open_tasks": len(session.open_tasks()) if session else 0,
            },
        }

    async def add_task(
        self,
        user_id: str,
        session_id: str,
        title: str,
        description: Optional[str] = None,
        priority: TaskPriority = TaskPriority.MEDIUM
    ) -> Task:
        async with self.sessions.lock_for(user_id, session_id):
            session = await self.sessions.get_or_create(user_id, session_id)
            task = Task(title=title, description=description, priority=priority)
            session.add_task(task)
            return task

    async def update_task(self, user_id: str, session_id: str, task_id: str, status: TaskStatus) -> Task:
        async with self.sessions.lock_for(user_id, session_id):
            session = await self.sessions.get_or_create(user_id, session_id)
            for task in session.tasks:
                if task.id == task_id:
                    task.status = status
                    task.updated_at = utcnow()
                    return task
        raise KeyError(f"Unknown task {task_id}")

    async def update_preferences(self, user_id: str, session_id: str, **preferences: Any) -> Session:
        async with self.sessions.lock_for(user_id, session_id):
            session = await self.sessions.get_or_create(user_id, session_id)
            session.preferences = session.preferences.model_copy(update=preferences)
            return session

    async def expire_sessions(self, now: Optional[datetime] = None) -> int:
        """Tear down idle sessions and purge expired memory and snapshots"""

        now = now or utcnow()
        expired = 0
        for session in self.sessions.idle_sessions(now):
            async with self.sessions.lock_for(session.user_id, session.session_id):
                # A turn may have run or a reset happened while waiting for the lock
                current = self.sessions.get(session.user_id, session.session_id)
                if current is not session or not self.sessions.is_idle(session, now):
                    continue
                await self.sessions.end_session(session.user_id, session.session_id)
                await self.memory.clear_session(session.user_id, session.session_id)
                await self.snapshots.delete(session.key)
                expired += 1

        await self.memory.purge_expired(now)
        await self.snapshots.clear_expired(now)

        if expired:
            logger.info("Expired idle sessions", count=expired)
        return expired


def create_engine(settings: Optional[Settings] = None) -> ContextEngine:
    """Configure logging and build an engine from settings"""

    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT, settings.SERVICE_NAME)
    engine = ContextEngine(settings)
    logger.info("Context engine ready", default_model=settings.DEFAULT_MODEL, budget=settings.CONTEXT_TOKEN_BUDGET)
    return engine
