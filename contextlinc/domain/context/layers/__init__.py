from typing import Dict, Sequence, Tuple

from contextlinc.domain.context.layers.base_layer import LayerBuilder
from contextlinc.domain.context.layers.catalog_layers import ExamplesLayer, ToolsLayer
from contextlinc.domain.context.layers.query_layer import OutputFormatLayer, UserQueryLayer
from contextlinc.domain.context.layers.retrieval_layers import KnowledgeLayer, MemoryLayer
from contextlinc.domain.context.layers.session_layers import (
    ConversationContextLayer, TaskStateLayer, UserInfoLayer
)
from contextlinc.domain.context.layers.static_layers import ConstraintsLayer, InstructionsLayer
from contextlinc.domain.models.context_state import LayerId


def builders_by_id(builders: Sequence[LayerBuilder]) -> Dict[LayerId, LayerBuilder]:
    """Index builders by layer id; exactly one builder per layer is required"""

    indexed = {builder.layer_id: builder for builder in builders}
    missing = set(LayerId) - indexed.keys()
    if missing or len(builders) != len(LayerId):
        raise ValueError(f"Expected one builder per layer, missing {sorted(int(m) for m in missing)}")
    return indexed


def ordered_builders(builders: Sequence[LayerBuilder]) -> Tuple[LayerBuilder, ...]:
    """Builders as a fixed tuple in layer-id order"""

    indexed = builders_by_id(builders)
    return tuple(indexed[layer_id] for layer_id in LayerId)


__all__ = [
    "LayerBuilder",
    "InstructionsLayer",
    "UserInfoLayer",
    "KnowledgeLayer",
    "TaskStateLayer",
    "MemoryLayer",
    "ToolsLayer",
    "ExamplesLayer",
    "ConversationContextLayer",
    "ConstraintsLayer",
    "OutputFormatLayer",
    "UserQueryLayer",
    "builders_by_id",
    "ordered_builders",
]
