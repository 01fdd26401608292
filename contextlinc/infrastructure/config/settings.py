"""Engine configuration via Pydantic BaseSettings."""

from typing import Dict, List, Tuple
from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfidenceWeights(BaseModel):
    """Additive terms of the generation confidence estimate"""
    base: float = 0.5
    relevance: float = 0.3
    active_layers: float = 0.2
    medium_response_bonus: float = 0.1
    long_response_bonus: float = 0.1
    medium_response_chars: int = 500
    long_response_chars: int = 1000
    premium_model_bonus: float = 0.1
    premium_model_markers: List[str] = Field(
        default_factory=lambda: ["gpt-4", "claude-3", "claude-sonnet", "claude-opus"]
    )


class Settings(BaseSettings):
    """Settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Logging
    SERVICE_NAME: str = "context-engine"
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"

    # Persona
    ASSISTANT_NAME: str = "ContextLinc"

    # Providers
    OPENAI_API_KEY: str = ""
    ANTHROPIC_API_KEY: str = ""
    VOYAGE_API_KEY: str = ""

    # Generation
    DEFAULT_MODEL: str = "gpt-4"
    GENERATION_FALLBACK_MODEL: str = ""
    SUMMARY_MODEL: str = "gpt-3.5-turbo"
    MAX_TOKENS: int = 2048
    TEMPERATURE: float = 0.7
    TOP_P: float = 1.0
    GENERATION_TIMEOUT: float = 30.0

    # Embeddings
    PRIMARY_EMBEDDING_MODEL: str = "voyage/voyage-multimodal-3"
    SECONDARY_EMBEDDING_MODEL: str = "text-embedding-3-small"
    # Per provider; the whole chain must fit inside RETRIEVAL_TIMEOUT
    EMBEDDING_TIMEOUT: float = 2.0
    EMBEDDING_MAX_MAGNITUDE: float = 100.0

    # Assembly
    CONTEXT_TOKEN_BUDGET: int = 8000
    USE_MODEL_SUMMARIZER: bool = False
    BUILDER_TIMEOUT: float = 5.0
    # Query embeddings for knowledge and long-term memory lookups
    RETRIEVAL_TIMEOUT: float = 4.5
    INACTIVE_LAYER_WEIGHT: float = 0.1
    LAYER_RELEVANCE: Dict[int, Tuple[float, float]] = Field(default_factory=dict)

    # Memory tiers
    SHORT_TERM_CAPACITY: int = 10
    SHORT_TERM_TTL_SECONDS: int = 3600
    MEDIUM_TERM_CAPACITY: int = 100
    MEDIUM_TERM_TTL_SECONDS: int = 86400
    LONG_TERM_CAPACITY: int = 500
    PENDING_LONG_TERM_CAPACITY: int = 50
    SIGNIFICANCE_MIN_CHARS: int = 200
    PERSISTENCE_MIN_CHARS: int = 80
    REDUNDANCY_SIMILARITY: float = 0.95
    MEMORY_RETRIEVAL_LIMIT: int = 10

    # Sessions
    SESSION_TTL_SECONDS: int = 86400
    RECENT_TURN_CAPACITY: int = 10

    CONFIDENCE: ConfidenceWeights = Field(default_factory=ConfidenceWeights)


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
