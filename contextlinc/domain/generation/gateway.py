from typing import Optional, Sequence
import asyncio
import time

import structlog

from contextlinc.domain.errors import (
    ExternalProviderError, GenerationUnavailableError, UnsupportedModelError
)
from contextlinc.domain.generation.prompt_renderer import PromptRenderer
from contextlinc.domain.models.context_state import (
    ContextWindow, GenerationRequest, GenerationResult, LayerId, LAYER_COUNT
)
from contextlinc.infrastructure.config.settings import ConfidenceWeights
from contextlinc.infrastructure.observability.logging import context_logger, metrics
from contextlinc.infrastructure.providers.llm_backends import BackendResponse, ModelBackend

logger = structlog.get_logger(__name__)

# Layers whose activity means the reply drew on user-specific context
GROUNDING_LAYERS = (LayerId.KNOWLEDGE, LayerId.TASK_STATE, LayerId.CONVERSATION_CONTEXT)

SUMMARY_PROMPT = "Summarize the following content concisely. Keep names, numbers and decisions."


class GenerationGateway:
    """Renders a window, picks a backend by model family and calls it"""

    def __init__(
        self,
        backends: Sequence[ModelBackend],
        renderer: Optional[PromptRenderer] = None,
        weights: Optional[ConfidenceWeights] = None,
        default_model: str = "gpt-4",
        fallback_model: str = "",
        summary_model: str = "gpt-3.5-turbo",
        max_tokens: int = 2048,
        temperature: float = 0.7,
        top_p: float = 1.0,
        timeout: float = 30.0
    ):
        self.backends = list(backends)
        self.renderer = renderer or PromptRenderer()
        self.weights = weights or ConfidenceWeights()
        self.default_model = default_model
        self.fallback_model = fallback_model
        self.summary_model = summary_model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.top_p = top_p
        self.timeout = timeout

    def select_backend(self, model: str) -> ModelBackend:
        for backend in self.backends:
            if backend.supports(model):
                return backend
        raise UnsupportedModelError(model)

    async def generate(
        self,
        window: ContextWindow,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        top_p: Optional[float] = None
    ) -> GenerationResult:
        """Generate a reply for the window.

        One attempt per model. The configured fallback model, if any, gets a
        single attempt after the requested model fails; otherwise the failure
        surfaces as GenerationUnavailableError.
        """

        model = model or self.default_model
        models = [model]
        if self.fallback_model and self.fallback_model != model:
            models.append(self.fallback_model)
        # Unknown families are a configuration error, raised before any call
        backends = [self.select_backend(m) for m in models]

        messages = self.renderer.render_request_messages(window)
        started = time.perf_counter()
        errors = []

        for position, (candidate, backend) in enumerate(zip(models, backends)):
            request = GenerationRequest(
                messages=messages,
                model=candidate,
                max_tokens=max_tokens or self.max_tokens,
                temperature=self.temperature if temperature is None else temperature,
                top_p=self.top_p if top_p is None else top_p
            )
            try:
                response = await self._call(backend, request)
            except ExternalProviderError as exc:
                errors.append(str(exc))
                metrics.increment_counter("generation.failure", tags={"provider": backend.family})
                context_logger.log_provider_failure(
                    provider=backend.family,
                    operation="generate",
                    error=str(exc),
                    will_fallback=position < len(models) - 1
                )
                continue

            latency_ms = (time.perf_counter() - started) * 1000
            metrics.record_latency("generation", latency_ms, tags={"provider": backend.family})
            return GenerationResult(
                content=response.text,
                model=response.model,
                usage=response.usage,
                confidence=self.confidence(window, response.text, response.model),
                latency_ms=round(latency_ms, 2),
                context_relevance=window.relevance_score,
                active_layer_ids=window.active_layer_ids,
                grounded=self.is_grounded(window)
            )

        raise GenerationUnavailableError(backends[-1].family, "; ".join(errors))

    async def _call(self, backend: ModelBackend, request: GenerationRequest) -> BackendResponse:
        try:
            return await asyncio.wait_for(backend.generate(request), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise ExternalProviderError(backend.family, f"{request.model} timed out after {self.timeout}s") from exc

    def confidence(self, window: ContextWindow, text: str, model: str) -> float:
        """Bounded additive estimate from context quality, reply length and model tier"""

        w = self.weights
        score = w.base
        score += w.relevance * window.relevance_score
        score += w.active_layers * (len(window.active_layer_ids) / LAYER_COUNT)
        if len(text) > w.medium_response_chars:
            score += w.medium_response_bonus
        if len(text) > w.long_response_chars:
            score += w.long_response_bonus
        if any(marker in model for marker in w.premium_model_markers):
            score += w.premium_model_bonus
        return max(0.0, min(1.0, score))

    @staticmethod
    def is_grounded(window: ContextWindow) -> bool:
        if any(window.get_layer(layer_id).is_active for layer_id in GROUNDING_LAYERS):
            return True
        # Trimmed memory layers keep only some tiers, so count what is present
        memory = window.get_layer(LayerId.MEMORY).data
        return any(
            (memory.get(tier) or {}).get("items")
            for tier in ("short_term", "medium_term", "long_term")
        )

    async def summarize(self, text: str, max_tokens: int) -> str:
        """Short summary from the cheap model"""

        backend = self.select_backend(self.summary_model)
        request = GenerationRequest(
            messages=[
                {"role": "system", "content": SUMMARY_PROMPT},
                {"role": "user", "content": text},
            ],
            model=self.summary_model,
            max_tokens=max(max_tokens, 1),
            temperature=0.3,
            top_p=1.0
        )
        try:
            response = await self._call(backend, request)
        except ExternalProviderError as exc:
            raise GenerationUnavailableError(backend.family, f"summary failed: {exc}") from exc
        return response.text.strip()
