"""Fits assembled layers under a token budget.

Order of operations when the window is over budget:

1. clear the payloads of inactive layers that are not protected;
2. walk active, unprotected layers from least to most relevant (earlier
   layer ids first on ties), trimming a layer when a useful remainder fits
   and dropping it otherwise;
3. summarize protected layers (Instructions, Constraints, UserQuery and any
   caller-preserved ids) proportionally to what is left.

Protected layers are never dropped. If even their minimal summaries do not
fit, BudgetInfeasibleError is raised rather than returning an over-budget
window.
"""

from abc import ABC, abstractmethod
from typing import Dict, Any, List, Iterable, Optional, Set, Tuple
import math

import structlog

from contextlinc.domain.context.tokens import estimate_tokens, serialize
from contextlinc.domain.errors import BudgetInfeasibleError, ContextEngineError
from contextlinc.domain.models.context_state import (
    CompressionReport, ContextLayer, LayerId, LayerStatus, MANDATORY_LAYERS
)
from contextlinc.infrastructure.observability.logging import context_logger, metrics

logger = structlog.get_logger(__name__)

# Size of {"summary": ""}; any summarized layer fits in this many tokens
MIN_SUMMARY_TOKENS = 4
# Below this a trimmed layer is not worth keeping
MIN_TRIM_TOKENS = 16

ESSENTIAL_KEYS: Dict[LayerId, List[str]] = {
    LayerId.INSTRUCTIONS: ["constitution", "ethical_boundaries"],
    LayerId.USER_INFO: ["user_id", "personalization"],
    LayerId.KNOWLEDGE: ["retrieved_documents", "file_context"],
    LayerId.TASK_STATE: ["current_task", "progress"],
    LayerId.MEMORY: ["long_term", "medium_term"],
    LayerId.TOOLS: ["relevant"],
    LayerId.EXAMPLES: ["few_shot"],
    LayerId.CONVERSATION_CONTEXT: ["recent_turns"],
    LayerId.CONSTRAINTS: ["safety"],
    LayerId.OUTPUT_FORMAT: ["preferred_format"],
    LayerId.USER_QUERY: ["original", "intent"],
}


class Summarizer(ABC):
    """Produces a smaller payload for a layer"""

    @abstractmethod
    async def summarize(self, layer: ContextLayer, max_tokens: int) -> Optional[Dict[str, Any]]:
        """Payload of at most max_tokens, or None if the layer cannot be reduced that far"""
        pass


class RuleBasedSummarizer(Summarizer):
    """Keeps each layer's essential keys, then truncates to a single summary string"""

    def __init__(self, essential_keys: Optional[Dict[LayerId, List[str]]] = None):
        self.essential_keys = essential_keys or ESSENTIAL_KEYS

    async def summarize(self, layer: ContextLayer, max_tokens: int) -> Optional[Dict[str, Any]]:
        return self.reduce(layer, max_tokens)

    def reduce(self, layer: ContextLayer, max_tokens: int) -> Optional[Dict[str, Any]]:
        if max_tokens < MIN_SUMMARY_TOKENS:
            return None

        keys = self.essential_keys.get(layer.id, [])
        subset = {key: layer.data[key] for key in keys if layer.data.get(key) not in (None, "", [], {})}
        if subset and estimate_tokens(subset) <= max_tokens:
            return subset

        source = subset or layer.data
        values = list(source.values())
        text = values[0] if len(values) == 1 and isinstance(values[0], str) else serialize(source)
        return truncate_summary(text, max_tokens)


def truncate_summary(text: str, max_tokens: int) -> Dict[str, Any]:
    """{"summary": prefix-of-text} fitting max_tokens (at least MIN_SUMMARY_TOKENS)"""

    overhead = len(serialize({"summary": ""}))
    allowed = max(max_tokens * 4 - overhead, 0)
    summary = text[:allowed]
    # Escaping can lengthen the serialized form
    while summary and estimate_tokens({"summary": summary}) > max_tokens:
        summary = summary[:max(len(summary) - max(len(summary) // 10, 1), 0)]
    return {"summary": summary}


class ModelSummarizer(Summarizer):
    """Asks a generation model for a summary; falls back to the rule-based one"""

    def __init__(self, gateway, fallback: Optional[RuleBasedSummarizer] = None):
        self.gateway = gateway
        self.fallback = fallback or RuleBasedSummarizer()

    async def summarize(self, layer: ContextLayer, max_tokens: int) -> Optional[Dict[str, Any]]:
        if max_tokens < MIN_TRIM_TOKENS:
            return self.fallback.reduce(layer, max_tokens)

        try:
            # Leave room for the JSON wrapper around the summary text
            summary = await self.gateway.summarize(serialize(layer.data), max_tokens - MIN_SUMMARY_TOKENS)
        except ContextEngineError as exc:
            logger.warning("Model summary failed, using rule-based summary", layer_id=int(layer.id), error=str(exc))
            return self.fallback.reduce(layer, max_tokens)

        payload = truncate_summary(summary, max_tokens)
        if not payload["summary"]:
            return self.fallback.reduce(layer, max_tokens)
        return payload


class BudgetCompressor:
    """Trims, drops and summarizes layers until the window fits its budget"""

    def __init__(self, summarizer: Optional[Summarizer] = None):
        self.summarizer = summarizer or RuleBasedSummarizer()

    async def compress(
        self,
        layers: List[ContextLayer],
        budget: int,
        preserve_ids: Iterable[int] = ()
    ) -> Tuple[List[ContextLayer], Optional[CompressionReport]]:
        """Return layers fitting the budget and a report, or the input and None if it already fits"""

        original_tokens = sum(layer.token_count for layer in layers)
        if original_tokens <= budget:
            return layers, None

        preserved = sorted({int(LayerId(layer_id)) for layer_id in preserve_ids})
        protected: Set[int] = {int(layer_id) for layer_id in MANDATORY_LAYERS} | set(preserved)
        working = list(layers)
        dropped: Set[int] = set()
        trimmed: Set[int] = set()
        summarized: Set[int] = set()

        def total() -> int:
            return sum(layer.token_count for layer in working)

        # Inactive payloads first: they cost tokens and contribute nothing
        for index, layer in enumerate(working):
            if not layer.is_active and int(layer.id) not in protected and layer.token_count:
                working[index] = _dropped(layer)
                dropped.add(int(layer.id))

        candidates = sorted(
            (layer for layer in working if layer.is_active and int(layer.id) not in protected),
            key=lambda layer: (layer.relevance_score, int(layer.id))
        )
        for candidate in candidates:
            excess = total() - budget
            if excess <= 0:
                break

            index = int(candidate.id) - 1
            allowance = candidate.token_count - excess
            if allowance >= MIN_TRIM_TOKENS:
                data = await self.summarizer.summarize(candidate, allowance)
                if data is not None and estimate_tokens(data) <= allowance:
                    working[index] = _reduced(candidate, data, "trimmed")
                    trimmed.add(int(candidate.id))
                    continue

            working[index] = _dropped(candidate)
            dropped.add(int(candidate.id))

        if total() > budget:
            await self._summarize_protected(working, budget, protected, summarized)

        compressed_tokens = total()
        affected = sorted(dropped | trimmed | summarized)
        report = CompressionReport(
            budget=budget,
            original_tokens=original_tokens,
            compressed_tokens=compressed_tokens,
            compression_ratio=round(compressed_tokens / original_tokens, 4) if original_tokens else 1.0,
            affected_layer_ids=affected,
            dropped_layer_ids=sorted(dropped),
            summarized_layer_ids=sorted(trimmed | summarized),
            preserved_layer_ids=preserved
        )

        metrics.increment_counter("context.compressions")
        context_logger.log_compression(
            budget=budget,
            original_tokens=original_tokens,
            compressed_tokens=compressed_tokens,
            affected_layer_ids=affected
        )
        return working, report

    async def _summarize_protected(
        self,
        working: List[ContextLayer],
        budget: int,
        protected: Set[int],
        summarized: Set[int]
    ):
        targets = [layer for layer in working if int(layer.id) in protected and layer.token_count]
        target_ids = {int(layer.id) for layer in targets}
        others = sum(layer.token_count for layer in working if int(layer.id) not in target_ids)
        available = budget - others
        floors = {int(layer.id): min(layer.token_count, MIN_SUMMARY_TOKENS) for layer in targets}
        required = others + sum(floors.values())

        if available < sum(floors.values()):
            raise BudgetInfeasibleError(budget, required)

        pool = available
        pending_tokens = sum(layer.token_count for layer in targets)
        pending_floor = sum(floors.values())

        # Smallest first so unused share flows to the larger layers
        for layer in sorted(targets, key=lambda l: (l.token_count, int(l.id))):
            floor = floors[int(layer.id)]
            pending_floor -= floor
            share = math.floor(pool * layer.token_count / pending_tokens) if pending_tokens else pool
            share = min(max(share, floor), pool - pending_floor)
            pending_tokens -= layer.token_count

            reduced = layer
            if layer.token_count > share:
                data = await self.summarizer.summarize(layer, share)
                if data is None or estimate_tokens(data) > share:
                    raise BudgetInfeasibleError(budget, required, f"layer {int(layer.id)} cannot be summarized")
                reduced = _reduced(layer, data, "summarized")
                working[int(layer.id) - 1] = reduced
                summarized.add(int(layer.id))

            pool -= reduced.token_count


def _reduced(layer: ContextLayer, data: Dict[str, Any], how: str) -> ContextLayer:
    return layer.model_copy(update={
        "data": data,
        "token_count": estimate_tokens(data),
        "compression": how,
    })


def _dropped(layer: ContextLayer) -> ContextLayer:
    return layer.model_copy(update={
        "status": LayerStatus.INACTIVE,
        "data": {},
        "token_count": 0,
        "compression": "dropped",
    })
