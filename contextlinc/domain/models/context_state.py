from typing import Dict, Any, List, Optional, FrozenSet
from pydantic import BaseModel, Field, computed_field, model_validator
from datetime import datetime, timezone
from enum import Enum, IntEnum
import hashlib
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC timestamp used inside layer payloads"""
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class LayerId(IntEnum):
    """Context layer identifiers; the order is semantic"""
    INSTRUCTIONS = 1
    USER_INFO = 2
    KNOWLEDGE = 3
    TASK_STATE = 4
    MEMORY = 5
    TOOLS = 6
    EXAMPLES = 7
    CONVERSATION_CONTEXT = 8
    CONSTRAINTS = 9
    OUTPUT_FORMAT = 10
    USER_QUERY = 11


LAYER_NAMES: Dict[LayerId, str] = {
    LayerId.INSTRUCTIONS: "Instructions",
    LayerId.USER_INFO: "User Info",
    LayerId.KNOWLEDGE: "Knowledge",
    LayerId.TASK_STATE: "Task/Goal State",
    LayerId.MEMORY: "Memory",
    LayerId.TOOLS: "Tools",
    LayerId.EXAMPLES: "Examples",
    LayerId.CONVERSATION_CONTEXT: "Context",
    LayerId.CONSTRAINTS: "Constraints",
    LayerId.OUTPUT_FORMAT: "Output Format",
    LayerId.USER_QUERY: "User Query",
}

LAYER_COUNT = len(LayerId)

# Summarized under budget pressure, never dropped
MANDATORY_LAYERS: FrozenSet[LayerId] = frozenset({
    LayerId.INSTRUCTIONS,
    LayerId.CONSTRAINTS,
    LayerId.USER_QUERY,
})


class LayerStatus(str, Enum):
    """Layer build state"""
    PROCESSING = "processing"
    ACTIVE = "active"
    INACTIVE = "inactive"


class ContextLayer(BaseModel):
    """One section of an assembled context window"""
    id: LayerId
    name: str
    status: LayerStatus = Field(default=LayerStatus.PROCESSING)
    data: Dict[str, Any] = Field(default_factory=dict)
    token_count: int = Field(default=0, ge=0)
    relevance_score: float = Field(default=0.0, ge=0.0, le=1.0)
    compression: Optional[str] = Field(None, description="trimmed, summarized or dropped")

    @classmethod
    def pending(cls, layer_id: LayerId) -> "ContextLayer":
        return cls(id=layer_id, name=LAYER_NAMES[layer_id])

    @property
    def is_active(self) -> bool:
        return self.status == LayerStatus.ACTIVE


class CompressionReport(BaseModel):
    """Outcome of fitting a window to a token budget"""
    budget: int
    original_tokens: int
    compressed_tokens: int
    compression_ratio: float
    affected_layer_ids: List[int] = Field(default_factory=list)
    dropped_layer_ids: List[int] = Field(default_factory=list)
    summarized_layer_ids: List[int] = Field(default_factory=list)
    preserved_layer_ids: List[int] = Field(default_factory=list)


class ContextWindow(BaseModel):
    """The assembled artifact for one generation call"""
    layers: List[ContextLayer]
    total_tokens: int = Field(ge=0)
    relevance_score: float = Field(ge=0.0, le=1.0)
    built_at: datetime = Field(default_factory=utcnow)
    budget: Optional[int] = None
    compression: Optional[CompressionReport] = None
    degraded_layer_ids: List[int] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_layers(self) -> "ContextWindow":
        ids = [int(layer.id) for layer in self.layers]
        if ids != list(range(1, LAYER_COUNT + 1)):
            raise ValueError(f"Context window must hold layers 1..{LAYER_COUNT} in order, got {ids}")
        if any(layer.status == LayerStatus.PROCESSING for layer in self.layers):
            raise ValueError("Context window contains a layer still processing")
        return self

    @computed_field
    @property
    def active_layer_ids(self) -> List[int]:
        return [int(layer.id) for layer in self.layers if layer.is_active]

    def get_layer(self, layer_id: int) -> ContextLayer:
        return self.layers[LayerId(layer_id) - 1]


class MemoryTier(str, Enum):
    """Memory retention classes"""
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"


class MemoryItem(BaseModel):
    """A durable observation owned by the memory store"""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    owner_id: str
    session_id: Optional[str] = None
    tier: MemoryTier
    content: str
    summary: Optional[str] = None
    embedding: Optional[List[float]] = None
    embedding_model: Optional[str] = None
    relevance_score: float = Field(default=0.0, ge=0.0, le=1.0)
    access_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    last_accessed_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_tier(self) -> "MemoryItem":
        if self.tier == MemoryTier.SHORT and self.expires_at is None:
            raise ValueError("Short-term memory items must carry expires_at")
        if self.tier == MemoryTier.LONG and self.expires_at is not None:
            raise ValueError("Long-term memory items never expire by time")
        return self

    @property
    def content_hash(self) -> str:
        return content_hash(self.content)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    def to_context(self) -> Dict[str, Any]:
        """Payload form used inside the memory layer"""
        return {
            "id": self.id,
            "tier": self.tier.value,
            "content": self.content,
            "summary": self.summary or self.content[:200],
            "created_at": format_timestamp(self.created_at),
        }


def content_hash(content: str) -> str:
    normalized = " ".join(content.lower().split())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


class TaskPriority(str, Enum):
    """Task priority levels"""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TaskStatus(str, Enum):
    """Task execution status"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


OPEN_TASK_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED})


class Task(BaseModel):
    """A task tracked on the session"""
    id: str = Field(default_factory=lambda: f"task_{uuid.uuid4().hex[:12]}")
    title: str = Field(description="Task title")
    description: Optional[str] = Field(None, description="Task description")
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM)
    status: TaskStatus = Field(default=TaskStatus.PENDING)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_TASK_STATUSES


class UserPreferences(BaseModel):
    """Per-user personalization"""
    response_style: str = "balanced"
    detail_level: str = "medium"
    preferred_formats: List[str] = Field(default_factory=lambda: ["text"])


class Turn(BaseModel):
    """One completed exchange"""
    query: str
    response: str
    intent: str = "general"
    attachment_ids: List[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)


class Attachment(BaseModel):
    """A file attached to the turn, with content already extracted"""
    id: str
    filename: str
    file_type: str = "text/plain"
    size: int = 0
    extracted_content: Optional[str] = None

    @property
    def has_content(self) -> bool:
        return bool(self.extracted_content and self.extracted_content.strip())


class Session(BaseModel):
    """Per-user conversational state"""
    user_id: str
    session_id: str
    preferences: UserPreferences = Field(default_factory=UserPreferences)
    tasks: List[Task] = Field(default_factory=list)
    recent_turns: List[Turn] = Field(default_factory=list)
    turn_capacity: int = 10
    turn_count: int = 0
    last_intent: Optional[str] = None
    context_switches: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    last_active_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> str:
        return f"{self.user_id}:{self.session_id}"

    def record_turn(self, turn: Turn):
        """Append a turn to the ring buffer and update session stats"""
        self.recent_turns.append(turn)
        if len(self.recent_turns) > self.turn_capacity:
            self.recent_turns = self.recent_turns[-self.turn_capacity:]

        if self.last_intent is not None and turn.intent != self.last_intent:
            self.context_switches += 1
        self.last_intent = turn.intent
        self.turn_count += 1
        self.last_active_at = turn.timestamp

    def open_tasks(self) -> List[Task]:
        return [task for task in self.tasks if task.is_open]

    def add_task(self, task: Task):
        self.tasks.append(task)

    def clear_turns(self):
        self.recent_turns = []
        self.last_intent = None
        self.context_switches = 0


class GenerationRequest(BaseModel):
    """Backend-agnostic generation request"""
    messages: List[Dict[str, str]]
    model: str
    max_tokens: int = 2048
    temperature: float = 0.7
    top_p: float = 1.0


class GenerationUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class GenerationResult(BaseModel):
    """Reply from a generation backend plus engine-computed metadata"""
    content: str
    model: str
    usage: GenerationUsage = Field(default_factory=GenerationUsage)
    confidence: float = Field(ge=0.0, le=1.0)
    latency_ms: float = 0.0
    context_relevance: float = 0.0
    active_layer_ids: List[int] = Field(default_factory=list)
    grounded: bool = False


class TurnResult(BaseModel):
    """What one processed turn hands back to the chat boundary"""
    window: ContextWindow
    result: GenerationResult
    memory_updated: bool = True
