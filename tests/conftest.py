"""Shared fixtures for context engine tests.

Provides:
- Settings isolated from any local .env file
- A deterministic bag-of-words embedding provider
- Fake generation backends for the OpenAI and Anthropic families
- Memory store, assembler and engine wired to the fakes
"""

from __future__ import annotations

import asyncio
import hashlib
import math
import re
from typing import List

import pytest

from contextlinc.domain.context.memory.memory_store import MemoryStore
from contextlinc.domain.errors import ExternalProviderError
from contextlinc.domain.models.context_state import GenerationRequest, GenerationUsage, Session
from contextlinc.domain.orchestration.core.context_engine import ContextEngine
from contextlinc.infrastructure.config.settings import Settings
from contextlinc.infrastructure.providers.embeddings import EmbeddingProvider, EmbeddingService
from contextlinc.infrastructure.providers.llm_backends import (
    ANTHROPIC_PREFIXES, OPENAI_PREFIXES, BackendResponse, ModelBackend
)

DEFAULT_REPLY = (
    "Context windows are assembled from eleven layers, each scored for relevance "
    "and fitted to the token budget before the model sees them."
)


def bag_of_words(text: str, dimension: int = 256) -> List[float]:
    """Unit vector of hashed word counts; identical word sets give identical vectors"""
    vector = [0.0] * dimension
    for word in re.findall(r"\w+", text.lower()):
        index = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % dimension
        vector[index] += 1.0
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0.0:
        vector[0] = 1.0
        return vector
    return [v / norm for v in vector]


class FakeEmbeddingProvider(EmbeddingProvider):
    """Deterministic provider; set `fail` to simulate an outage"""

    def __init__(self, name: str = "fake", model: str = "fake-embed", dimension: int = 256):
        super().__init__(name, model)
        self.dimension = dimension
        self.fail = False
        self.delay = 0.0
        self.calls = 0

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ExternalProviderError(self.name, "service unavailable")
        return [bag_of_words(text, self.dimension) for text in texts]


class FakeBackend(ModelBackend):
    """Records requests and answers with a canned reply"""

    def __init__(self, family: str, prefixes, reply: str = DEFAULT_REPLY):
        super().__init__(family, prefixes)
        self.reply = reply
        self.fail = False
        self.delay = 0.0
        self.requests: List[GenerationRequest] = []

    async def generate(self, request: GenerationRequest) -> BackendResponse:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ExternalProviderError(self.family, "backend unavailable")
        return BackendResponse(
            text=self.reply,
            usage=GenerationUsage(prompt_tokens=120, completion_tokens=30, total_tokens=150),
            model=request.model
        )


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, DEFAULT_MODEL="gpt-4", GENERATION_FALLBACK_MODEL="")


@pytest.fixture
def embedding_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def embeddings(embedding_provider) -> EmbeddingService:
    return EmbeddingService([embedding_provider], timeout=1.0)


@pytest.fixture
def openai_backend() -> FakeBackend:
    return FakeBackend("openai", OPENAI_PREFIXES)


@pytest.fixture
def anthropic_backend() -> FakeBackend:
    return FakeBackend("anthropic", ANTHROPIC_PREFIXES)


@pytest.fixture
def memory_store(embeddings) -> MemoryStore:
    return MemoryStore(embeddings)


@pytest.fixture
def engine(settings, embeddings, openai_backend, anthropic_backend) -> ContextEngine:
    return ContextEngine(settings, embeddings=embeddings, backends=[openai_backend, anthropic_backend])


@pytest.fixture
def session() -> Session:
    return Session(user_id="user-1", session_id="session-1")
