"""Layers filled from the static tool and example catalogs."""

from typing import Dict, Any, List

from contextlinc.domain.catalog.example_registry import EXAMPLE_CATEGORIES, ExampleRegistry
from contextlinc.domain.catalog.tool_registry import ToolRegistry
from contextlinc.domain.context.context_ranker import RelevanceScorer
from contextlinc.domain.context.layers.base_layer import LayerBuilder
from contextlinc.domain.models.context_state import Attachment, ContextLayer, LayerId, Session

MATCH_THRESHOLD = 0.5


def _matching(scorer: RelevanceScorer, query: str, entries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    scores = scorer.rank_catalog(query, entries)
    matched = [entry for entry in entries if scores.get(entry["id"], 0.0) >= MATCH_THRESHOLD]
    matched.sort(key=lambda entry: (-scores[entry["id"]], entry["id"]))
    return matched


class ToolsLayer(LayerBuilder):
    """Tools whose name or description matches the query"""

    layer_id = LayerId.TOOLS

    def __init__(self, registry: ToolRegistry, scorer: RelevanceScorer):
        self.registry = registry
        self.scorer = scorer

    async def build(self, session: Session, query: str, attachments: List[Attachment]) -> ContextLayer:
        available = self.registry.get_available_tools()
        matched = _matching(self.scorer, query, available)

        data = {
            "available": [
                {
                    "name": tool["name"],
                    "description": tool["description"],
                    "status": tool.get("status", "available"),
                    "capabilities": tool.get("capabilities", []),
                }
                for tool in available
            ],
            "relevant": [tool["name"] for tool in matched],
            "total_tools": len(available),
        }
        return self.finish(data, active=bool(matched))


class ExamplesLayer(LayerBuilder):
    """Few-shot examples matching the query"""

    layer_id = LayerId.EXAMPLES

    def __init__(self, registry: ExampleRegistry, scorer: RelevanceScorer, limit: int = 2):
        self.registry = registry
        self.scorer = scorer
        self.limit = limit

    async def build(self, session: Session, query: str, attachments: List[Attachment]) -> ContextLayer:
        matched = _matching(self.scorer, query, self.registry.get_examples())[:self.limit]

        data = {
            "few_shot": [
                {"input": example["input"], "output": example["output"], "category": example["category"]}
                for example in matched
            ],
            "total": len(matched),
            "categories": EXAMPLE_CATEGORIES,
        }
        return self.finish(data, active=bool(matched))
