"""Embedding providers and the ordered fallback chain over them.

Providers are tried once each, in order. A provider's answer is accepted
only if every vector passes validation (finite, non-empty, consistent
dimension, magnitude within bounds); anything else counts as a provider
failure and the next provider is asked.
"""

from typing import List, Optional, Sequence
from abc import ABC, abstractmethod
import asyncio
import re

import litellm
import structlog
from pydantic import BaseModel

from contextlinc.domain.context.memory.similarity import validate_vector
from contextlinc.domain.errors import ExternalProviderError, InvalidEmbeddingError
from contextlinc.infrastructure.config.settings import Settings
from contextlinc.infrastructure.observability.logging import context_logger, metrics

logger = structlog.get_logger(__name__)

MAX_EMBEDDING_CHARS = 8000

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def clean_text_for_embedding(text: str) -> str:
    cleaned = " ".join(text.split())
    cleaned = _CONTROL_CHARS.sub("", cleaned)
    return cleaned[:MAX_EMBEDDING_CHARS]


class EmbeddingBatch(BaseModel):
    """Vectors for a batch of texts and the model that produced them"""
    vectors: List[List[float]]
    model: str
    provider: str


class EmbeddingProvider(ABC):
    """A single embedding backend"""

    def __init__(self, name: str, model: str):
        self.name = name
        self.model = model

    @abstractmethod
    async def embed(self, texts: List[str]) -> List[List[float]]:
        """Return one vector per text, in order"""
        pass


class LiteLLMEmbeddingProvider(EmbeddingProvider):
    """Embedding backend reached through LiteLLM"""

    def __init__(self, model: str, api_key: Optional[str] = None, name: Optional[str] = None):
        super().__init__(name or model.split("/")[0], model)
        self.api_key = api_key or None

    async def embed(self, texts: List[str]) -> List[List[float]]:
        try:
            response = await litellm.aembedding(
                model=self.model,
                input=texts,
                api_key=self.api_key
            )
        except Exception as exc:
            raise ExternalProviderError(self.name, f"embedding request failed: {exc}") from exc

        vectors = []
        for item in response.data:
            vector = item["embedding"] if isinstance(item, dict) else getattr(item, "embedding", None)
            vectors.append(vector)
        return vectors


class EmbeddingService:
    """Ordered provider chain; first valid answer wins"""

    def __init__(
        self,
        providers: Sequence[EmbeddingProvider],
        timeout: float = 10.0,
        max_magnitude: float = 100.0
    ):
        if not providers:
            raise ValueError("EmbeddingService needs at least one provider")
        self.providers = list(providers)
        self.timeout = timeout
        self.max_magnitude = max_magnitude

    async def embed(self, texts: List[str]) -> EmbeddingBatch:
        """Embed texts with the first provider that returns valid vectors"""

        cleaned = [clean_text_for_embedding(text) for text in texts]
        errors = []

        for position, provider in enumerate(self.providers):
            has_fallback = position < len(self.providers) - 1
            try:
                vectors = await asyncio.wait_for(provider.embed(cleaned), timeout=self.timeout)
                self._validate(provider, vectors, len(cleaned))
            except asyncio.TimeoutError:
                error = f"timed out after {self.timeout}s"
            except ExternalProviderError as exc:
                error = str(exc)
            else:
                return EmbeddingBatch(vectors=vectors, model=provider.model, provider=provider.name)

            errors.append(f"{provider.name}: {error}")
            metrics.increment_counter("embedding.provider_failure", tags={"provider": provider.name})
            context_logger.log_provider_failure(
                provider=provider.name,
                operation="embed",
                error=error,
                will_fallback=has_fallback
            )

        raise ExternalProviderError("embeddings", "all embedding providers failed: " + "; ".join(errors))

    async def embed_one(self, text: str, timeout: Optional[float] = None) -> EmbeddingBatch:
        """Embed one text; with a timeout the whole provider chain must answer within it"""

        if timeout is None:
            return await self.embed([text])
        try:
            return await asyncio.wait_for(self.embed([text]), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise ExternalProviderError("embeddings", f"no embedding within {timeout}s") from exc

    def _validate(self, provider: EmbeddingProvider, vectors: List[List[float]], expected: int):
        if vectors is None or len(vectors) != expected:
            raise InvalidEmbeddingError(provider.name, f"expected {expected} vectors")

        dimension = None
        for vector in vectors:
            if vector is None:
                raise InvalidEmbeddingError(provider.name, "missing vector in response")
            reason = validate_vector(vector, self.max_magnitude)
            if reason:
                raise InvalidEmbeddingError(provider.name, reason)
            if dimension is not None and len(vector) != dimension:
                raise InvalidEmbeddingError(provider.name, "inconsistent vector dimensions")
            dimension = len(vector)


def build_embedding_service(settings: Settings) -> EmbeddingService:
    """Primary then secondary provider, as configured"""

    providers = [
        LiteLLMEmbeddingProvider(settings.PRIMARY_EMBEDDING_MODEL, api_key=settings.VOYAGE_API_KEY),
    ]
    if settings.SECONDARY_EMBEDDING_MODEL:
        providers.append(
            LiteLLMEmbeddingProvider(
                settings.SECONDARY_EMBEDDING_MODEL,
                api_key=settings.OPENAI_API_KEY,
                name="openai"
            )
        )

    logger.info("Embedding chain configured", providers=[p.model for p in providers])
    return EmbeddingService(
        providers,
        timeout=settings.EMBEDDING_TIMEOUT,
        max_magnitude=settings.EMBEDDING_MAX_MAGNITUDE
    )
