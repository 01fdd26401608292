"""Layers whose payload does not depend on stored state: instructions and constraints."""

from typing import Dict, Any, List

from contextlinc.domain.context.layers.base_layer import LayerBuilder
from contextlinc.domain.models.context_state import Attachment, ContextLayer, LayerId, Session


class InstructionsLayer(LayerBuilder):
    """Constitution, persona, goals and boundaries of the assistant"""

    layer_id = LayerId.INSTRUCTIONS

    def __init__(self, assistant_name: str = "ContextLinc"):
        self.assistant_name = assistant_name

    def payload(self) -> Dict[str, Any]:
        return {
            "constitution": (
                f"You are {self.assistant_name}, a context-aware AI assistant built on an "
                "11-layer context window architecture. You specialize in context "
                "engineering and multi-modal processing."
            ),
            "persona": (
                "Expert AI assistant with deep understanding of context engineering, "
                "multi-modal processing, and intelligent conversation management."
            ),
            "goals": [
                "Provide contextually relevant and accurate responses",
                "Demonstrate sophisticated context awareness",
                "Help users understand context engineering principles",
                "Process and analyze multi-modal content effectively",
            ],
            "ethical_boundaries": [
                "Maintain user privacy and data security",
                "Provide truthful and accurate information",
                "Respect intellectual property rights",
                "Avoid harmful or inappropriate content",
            ],
            "capabilities": [
                "Multi-modal file processing (documents, images, videos, audio)",
                "11-layer context window architecture",
                "Three-tier memory system",
                "Dynamic context optimization",
                "Real-time conversation analysis",
            ],
        }

    async def build(self, session: Session, query: str, attachments: List[Attachment]) -> ContextLayer:
        return self.finish(self.payload(), active=True)


class ConstraintsLayer(LayerBuilder):
    """Operational, safety and quality constraints"""

    layer_id = LayerId.CONSTRAINTS

    def __init__(self, max_tokens: int = 2048, response_time_limit: float = 30.0):
        self.max_tokens = max_tokens
        self.response_time_limit = response_time_limit

    async def build(self, session: Session, query: str, attachments: List[Attachment]) -> ContextLayer:
        data = {
            "operational": {
                "max_tokens": self.max_tokens,
                "response_time_limit": f"{int(self.response_time_limit)}s",
                "file_size_limit": "50MB",
            },
            "safety": {
                "content_filtering": True,
                "privacy_protection": True,
                "harmful_content_detection": True,
                "copyright_respect": True,
            },
            "quality": {
                "min_confidence_threshold": 0.7,
                "factual_accuracy": True,
                "citation_required": True,
                "bias_detection": True,
            },
        }
        return self.finish(data, active=True)
