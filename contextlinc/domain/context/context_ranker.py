from typing import Dict, List, Any, Optional, Mapping, Set, Tuple
from datetime import datetime
import math
import re

from contextlinc.domain.models.context_state import (
    ContextLayer, LayerId, LayerStatus, MemoryItem, LAYER_COUNT, utcnow
)

# (active, inactive) relevance per layer
DEFAULT_LAYER_RELEVANCE: Dict[LayerId, Tuple[float, float]] = {
    LayerId.INSTRUCTIONS: (1.0, 1.0),
    LayerId.USER_INFO: (0.8, 0.3),
    LayerId.KNOWLEDGE: (0.9, 0.1),
    LayerId.TASK_STATE: (0.8, 0.2),
    LayerId.MEMORY: (0.7, 0.7),
    LayerId.TOOLS: (0.6, 0.3),
    LayerId.EXAMPLES: (0.6, 0.1),
    LayerId.CONVERSATION_CONTEXT: (0.9, 0.2),
    LayerId.CONSTRAINTS: (0.5, 0.5),
    LayerId.OUTPUT_FORMAT: (0.6, 0.6),
    LayerId.USER_QUERY: (1.0, 1.0),
}

STOP_WORDS = frozenset({
    "a", "an", "the", "and", "or", "of", "to", "in", "on", "for", "with", "is",
    "are", "be", "it", "this", "that", "me", "my", "i", "you", "your", "can",
    "please", "do", "does", "what", "at", "by", "from", "as",
})


def keywords(text: str) -> Set[str]:
    return set(re.findall(r'\w+', text.lower())) - STOP_WORDS


class RelevanceScorer:
    """Scores layers, memory items and catalog entries against a query"""

    def __init__(
        self,
        layer_relevance: Optional[Mapping[int, Tuple[float, float]]] = None,
        inactive_weight: float = 0.1,
        recency_window_seconds: float = 3600.0,
        semantic_weight: float = 0.5
    ):
        self.layer_relevance: Dict[LayerId, Tuple[float, float]] = dict(DEFAULT_LAYER_RELEVANCE)
        for layer_id, pair in (layer_relevance or {}).items():
            self.layer_relevance[LayerId(int(layer_id))] = (float(pair[0]), float(pair[1]))
        self.inactive_weight = inactive_weight
        self.recency_window_seconds = recency_window_seconds
        self.semantic_weight = semantic_weight

    def score_layer(self, layer: ContextLayer) -> ContextLayer:
        """Assign the configured relevance for the layer's terminal status"""

        active_score, inactive_score = self.layer_relevance[layer.id]
        score = active_score if layer.status == LayerStatus.ACTIVE else inactive_score
        return layer.model_copy(update={"relevance_score": _clamp(score)})

    def score_layers(self, layers: List[ContextLayer]) -> List[ContextLayer]:
        return [self.score_layer(layer) for layer in layers]

    def aggregate(self, layers: List[ContextLayer]) -> float:
        """Weighted mean over all layer slots; inactive layers count for little"""

        weighted = sum(
            layer.relevance_score * (1.0 if layer.status == LayerStatus.ACTIVE else self.inactive_weight)
            for layer in layers
        )
        return _clamp(weighted / LAYER_COUNT)

    def recency(self, item: MemoryItem, now: Optional[datetime] = None) -> float:
        age = max(((now or utcnow()) - item.created_at).total_seconds(), 0.0)
        return math.exp(-age / self.recency_window_seconds)

    def score_memory_item(
        self,
        item: MemoryItem,
        semantic_similarity: float = 0.0,
        now: Optional[datetime] = None
    ) -> float:
        """Blend recency and semantic similarity into one score"""

        semantic = _clamp(semantic_similarity)
        blended = (1.0 - self.semantic_weight) * self.recency(item, now) + self.semantic_weight * semantic
        return _clamp(blended)

    def rank_catalog(self, query: str, entries: List[Dict[str, Any]]) -> Dict[str, float]:
        """Rank catalog entries (tools, examples) by keyword overlap"""

        scores = {}
        query_words = keywords(query)

        for entry in entries:
            entry_id = entry.get("id", "")
            name_words = keywords(entry.get("name", ""))
            desc_words = keywords(
                " ".join([entry.get("description", "")] + list(entry.get("keywords", [])))
            )

            name_overlap = len(query_words & name_words)
            desc_overlap = len(query_words & desc_words)

            # Name matches weigh double
            score = (name_overlap * 2 + desc_overlap) / len(query_words) if query_words else 0.0
            scores[entry_id] = min(score, 1.0)

        return scores

    def calculate_relevance(self, query: str, content: str) -> float:
        """Keyword overlap between query and content"""

        query_words = keywords(query)
        if not query_words:
            return 0.0

        content_words = keywords(content)
        score = len(query_words & content_words) / len(query_words)

        if query.lower().strip() and query.lower().strip() in content.lower():
            score += 0.3

        return min(score, 1.0)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))
