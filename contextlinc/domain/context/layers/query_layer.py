from typing import Dict, Any, List
import re

from contextlinc.domain.context.layers.base_layer import LayerBuilder
from contextlinc.domain.models.context_state import (
    Attachment, ContextLayer, LayerId, Session, format_timestamp, utcnow
)

SUPPORTED_FORMATS = ["text", "markdown", "json", "code", "structured"]

# First match wins
_FORMAT_CUES = [
    (re.compile(r"\b(code|example)"), "code"),
    (re.compile(r"\b(list|bullet)"), "structured"),
    (re.compile(r"\b(explain|how)\b"), "markdown"),
]

_INTENT_CUES = [
    (re.compile(r"\b(context|layer)"), "context-engineering"),
    (re.compile(r"\b(file|upload)"), "file-processing"),
    (re.compile(r"\b(explain|how)\b"), "explanation"),
    (re.compile(r"\bhelp\b"), "assistance"),
]

_ENTITY_TERMS = ["context", "memory", "file"]


def detect_preferred_format(query: str) -> str:
    lowered = query.lower()
    for pattern, fmt in _FORMAT_CUES:
        if pattern.search(lowered):
            return fmt
    return "text"


def detect_intent(query: str) -> str:
    lowered = query.lower()
    for pattern, intent in _INTENT_CUES:
        if pattern.search(lowered):
            return intent
    return "general"


def extract_entities(query: str) -> List[str]:
    lowered = query.lower()
    return [term for term in _ENTITY_TERMS if term in lowered]


def assess_complexity(query: str) -> str:
    word_count = len(query.split())
    if word_count < 5:
        return "simple"
    if word_count < 20:
        return "medium"
    return "complex"


def analyze_query(query: str) -> Dict[str, Any]:
    """Surface-cue analysis of the user query"""

    lowered = query.lower()
    return {
        "processed": lowered.strip(),
        "intent": detect_intent(query),
        "entities": extract_entities(query),
        "complexity": assess_complexity(query),
        "requires_files": "file" in lowered or "upload" in lowered,
        "expected_response_type": detect_preferred_format(query),
    }


class OutputFormatLayer(LayerBuilder):
    """Preferred response format and style"""

    layer_id = LayerId.OUTPUT_FORMAT

    async def build(self, session: Session, query: str, attachments: List[Attachment]) -> ContextLayer:
        preferences = session.preferences
        data = {
            "preferred_format": detect_preferred_format(query),
            "supported_formats": SUPPORTED_FORMATS,
            "structure": {
                "include_confidence": True,
                "include_sources": True,
                "include_timestamp": True,
                "include_context": False,
            },
            "style": {
                "tone": "professional",
                "response_style": preferences.response_style,
                "detail": preferences.detail_level,
                "examples": True,
            },
        }
        return self.finish(data, active=True)


class UserQueryLayer(LayerBuilder):
    """The query itself plus its analysis"""

    layer_id = LayerId.USER_QUERY

    async def build(self, session: Session, query: str, attachments: List[Attachment]) -> ContextLayer:
        data = {"original": query}
        data.update(analyze_query(query))
        if attachments:
            data["requires_files"] = True
        data["timestamp"] = format_timestamp(utcnow())
        return self.finish(data, active=True)
