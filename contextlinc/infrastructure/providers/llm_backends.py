"""Generation backends, one per model family, reached through LiteLLM."""

from typing import Any, List, Optional, Sequence, Tuple
from abc import ABC, abstractmethod

import litellm
import structlog
from pydantic import BaseModel

from contextlinc.domain.errors import ExternalProviderError
from contextlinc.domain.models.context_state import GenerationRequest, GenerationUsage
from contextlinc.infrastructure.config.settings import Settings

logger = structlog.get_logger(__name__)

OPENAI_PREFIXES = ("gpt-", "o1", "o3", "o4")
ANTHROPIC_PREFIXES = ("claude-",)


class BackendResponse(BaseModel):
    """What a backend hands back: text, usage counters, model identifier"""
    text: str
    usage: GenerationUsage
    model: str


class ModelBackend(ABC):
    """A generation backend serving one model family"""

    def __init__(self, family: str, prefixes: Sequence[str]):
        self.family = family
        self.prefixes: Tuple[str, ...] = tuple(prefixes)

    def supports(self, model: str) -> bool:
        return model.startswith(self.prefixes)

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> BackendResponse:
        """Send one request; raise ExternalProviderError on failure"""
        pass


class LiteLLMBackend(ModelBackend):
    """Model family backend calling litellm.acompletion"""

    def __init__(self, family: str, prefixes: Sequence[str], api_key: Optional[str] = None):
        super().__init__(family, prefixes)
        self.api_key = api_key or None

    async def generate(self, request: GenerationRequest) -> BackendResponse:
        try:
            response = await litellm.acompletion(
                model=request.model,
                messages=request.messages,
                max_tokens=request.max_tokens,
                temperature=request.temperature,
                top_p=request.top_p,
                api_key=self.api_key
            )
        except Exception as exc:
            raise ExternalProviderError(self.family, f"completion failed for {request.model}: {exc}") from exc

        text = response.choices[0].message.content or ""
        return BackendResponse(
            text=text,
            usage=_usage(getattr(response, "usage", None)),
            model=getattr(response, "model", None) or request.model
        )


def _usage(usage: Any) -> GenerationUsage:
    if usage is None:
        return GenerationUsage()

    def read(name: str) -> int:
        value = usage.get(name) if isinstance(usage, dict) else getattr(usage, name, None)
        return int(value or 0)

    prompt_tokens = read("prompt_tokens")
    completion_tokens = read("completion_tokens")
    return GenerationUsage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=read("total_tokens") or prompt_tokens + completion_tokens
    )


def build_model_backends(settings: Settings) -> List[ModelBackend]:
    """OpenAI and Anthropic families, both always available"""

    backends: List[ModelBackend] = [
        LiteLLMBackend("openai", OPENAI_PREFIXES, api_key=settings.OPENAI_API_KEY),
        LiteLLMBackend("anthropic", ANTHROPIC_PREFIXES, api_key=settings.ANTHROPIC_API_KEY),
    ]
    logger.info("Model backends configured", families=[b.family for b in backends])
    return backends
