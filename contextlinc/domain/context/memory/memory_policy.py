from typing import Dict, Any, Optional, Iterable, List
import re

from contextlinc.domain.context.memory.similarity import cosine_similarity
from contextlinc.domain.models.context_state import content_hash

SIGNIFICANT_EVENTS = frozenset({"file_processed", "task_event"})


class MemoryPolicy:
    """Decides which observations earn medium and long retention"""

    def __init__(
        self,
        significance_min_chars: int = 200,
        persistence_min_chars: int = 80,
        min_distinct_words: int = 8,
        redundancy_similarity: float = 0.95
    ):
        self.significance_min_chars = significance_min_chars
        self.persistence_min_chars = persistence_min_chars
        self.min_distinct_words = min_distinct_words
        self.redundancy_similarity = redundancy_similarity

    def is_significant(self, content: str, metadata: Optional[Dict[str, Any]] = None) -> bool:
        """Medium-tier gate"""

        metadata = metadata or {}
        if metadata.get("event") in SIGNIFICANT_EVENTS:
            return True
        if metadata.get("attachment_ids"):
            return True
        return len(content.strip()) >= self.significance_min_chars

    def is_persistence_worthy(self, content: str, known_hashes: Iterable[str] = ()) -> bool:
        """Long-tier gate, checked before an embedding is requested"""

        stripped = content.strip()
        if len(stripped) < self.persistence_min_chars:
            return False
        if content_hash(stripped) in set(known_hashes):
            return False

        distinct = set(re.findall(r'\w+', stripped.lower()))
        return len(distinct) >= self.min_distinct_words

    def is_redundant(self, embedding: List[float], existing: Iterable[List[float]]) -> bool:
        """Near-duplicate check against already stored long-term vectors"""

        return any(
            cosine_similarity(embedding, other) >= self.redundancy_similarity
            for other in existing if other
        )
