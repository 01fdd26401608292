from typing import Any
import json
import math

# Rough characters-per-token ratio shared by every component
CHARS_PER_TOKEN = 4


def serialize(payload: Any) -> str:
    """Stable serialization used for token counting"""
    return json.dumps(payload, sort_keys=True, default=str, ensure_ascii=False)


def estimate_tokens(payload: Any) -> int:
    """Estimate tokens for a layer payload or a plain string"""

    if payload is None or payload == {} or payload == "" or payload == []:
        return 0
    text = payload if isinstance(payload, str) else serialize(payload)
    return math.ceil(len(text) / CHARS_PER_TOKEN)
