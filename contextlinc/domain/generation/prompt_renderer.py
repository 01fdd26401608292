from typing import Dict, Any, Callable, List
import json

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from contextlinc.domain.models.context_state import ContextWindow, LayerId

_ROLES = {"system": "system", "human": "user", "ai": "assistant"}

CLOSING_INSTRUCTION = (
    "Please provide a comprehensive response that uses the context above "
    "where it is relevant to the query."
)


def _join(values: Any) -> str:
    if isinstance(values, list):
        return ", ".join(str(value) for value in values)
    return str(values)


def _instructions(data: Dict[str, Any]) -> List[str]:
    lines = []
    if data.get("constitution"):
        lines.append(f"Constitution: {data['constitution']}")
    if data.get("persona"):
        lines.append(f"Persona: {data['persona']}")
    if data.get("capabilities"):
        lines.append(f"Capabilities: {_join(data['capabilities'])}")
    if data.get("ethical_boundaries"):
        lines.append(f"Boundaries: {_join(data['ethical_boundaries'])}")
    return lines


def _user_info(data: Dict[str, Any]) -> List[str]:
    lines = []
    if data.get("session_id"):
        lines.append(f"Session: {data['session_id']}")
    stats = data.get("session_stats") or {}
    lines.append(f"Interaction Count: {stats.get('turn_count', 0)}")
    if data.get("personalization"):
        lines.append(f"Preferences: {json.dumps(data['personalization'], sort_keys=True)}")
    return lines


def _knowledge(data: Dict[str, Any]) -> List[str]:
    return [
        f"Document {index} ({doc.get('filename', 'unknown')}): {doc.get('content', '')}"
        for index, doc in enumerate(data.get("retrieved_documents") or [], start=1)
    ]


def _file_context(data: Dict[str, Any]) -> List[str]:
    lines = []
    for file in data.get("file_context") or []:
        lines.append(f"File: {file.get('filename')} ({file.get('file_type')})")
        if file.get("content"):
            lines.append(f"Content: {file['content']}")
    return lines


def _task_state(data: Dict[str, Any]) -> List[str]:
    lines = []
    current = data.get("current_task")
    if current:
        lines.append(f"Current task: {current.get('title')} [{current.get('status')}]")
    for task in (data.get("active_tasks") or [])[1:]:
        lines.append(f"- {task.get('title')} [{task.get('status')}, {task.get('priority')}]")
    return lines


def _recent_memory(data: Dict[str, Any]) -> List[str]:
    items = (data.get("short_term") or {}).get("items") or []
    lines = []
    for item in items:
        lines.append(f"{item.get('created_at')}: {item.get('content')}")
    for item in (data.get("medium_term") or {}).get("items") or []:
        lines.append(f"- {item.get('summary')}")
    return lines


def _past_memory(data: Dict[str, Any]) -> List[str]:
    items = (data.get("long_term") or {}).get("items") or []
    return [f"- {item.get('summary')}" for item in items[:3]]


def _conversation(data: Dict[str, Any]) -> List[str]:
    lines = []
    for turn in data.get("recent_turns") or []:
        lines.append(f"User: {turn.get('query')}")
        lines.append(f"Assistant: {turn.get('response')}")
    return lines


def _tools(data: Dict[str, Any]) -> List[str]:
    relevant = set(data.get("relevant") or [])
    return [
        f"- {tool.get('name')}: {tool.get('description')}"
        for tool in data.get("available") or []
        if tool.get("name") in relevant
    ]


def _examples(data: Dict[str, Any]) -> List[str]:
    lines = []
    for index, example in enumerate(data.get("few_shot") or [], start=1):
        lines.append(f"Example {index}:")
        lines.append(f"User: {example.get('input')}")
        lines.append(f"Assistant: {example.get('output')}")
    return lines


def _constraints(data: Dict[str, Any]) -> List[str]:
    return [
        "- Maintain factual accuracy and cite sources when possible",
        "- Respect privacy and data security",
        "- Provide helpful, relevant responses",
        "- If uncertain, acknowledge limitations",
    ]


def _output_format(data: Dict[str, Any]) -> List[str]:
    lines = []
    if data.get("preferred_format"):
        lines.append(f"Preferred format: {data['preferred_format']}")
    style = data.get("style") or {}
    if style:
        lines.append(f"Style: {style.get('tone')}, {style.get('detail')}")
    return lines


def _user_query(data: Dict[str, Any]) -> List[str]:
    lines = [f"Original: {data.get('original', '')}"]
    for label, key in (
        ("Intent", "intent"),
        ("Complexity", "complexity"),
        ("Expected Response Type", "expected_response_type"),
    ):
        if data.get(key):
            lines.append(f"{label}: {data[key]}")
    return lines


# Sections in prompt order
SECTIONS: List[tuple] = [
    ("System Instructions", LayerId.INSTRUCTIONS, _instructions),
    ("User Context", LayerId.USER_INFO, _user_info),
    ("Relevant Knowledge", LayerId.KNOWLEDGE, _knowledge),
    ("File Context", LayerId.KNOWLEDGE, _file_context),
    ("Task State", LayerId.TASK_STATE, _task_state),
    ("Recent Conversation Context", LayerId.CONVERSATION_CONTEXT, _conversation),
    ("Recent Conversation Context", LayerId.MEMORY, _recent_memory),
    ("Relevant Past Context", LayerId.MEMORY, _past_memory),
    ("Available Tools", LayerId.TOOLS, _tools),
    ("Examples", LayerId.EXAMPLES, _examples),
    ("Constraints", LayerId.CONSTRAINTS, _constraints),
    ("Response Format", LayerId.OUTPUT_FORMAT, _output_format),
    ("User Query", LayerId.USER_QUERY, _user_query),
]


class PromptRenderer:
    """Renders the active layers of a window into chat messages"""

    def __init__(self, assistant_name: str = "ContextLinc"):
        self.assistant_name = assistant_name

    def render(self, window: ContextWindow) -> List[BaseMessage]:
        sections: Dict[str, List[str]] = {}
        summarized = set()

        for title, layer_id, formatter in SECTIONS:
            layer = window.get_layer(layer_id)
            if not layer.is_active or layer_id in summarized:
                continue
            if set(layer.data) == {"summary"}:
                summarized.add(layer_id)
            lines = self._section_lines(layer.data, formatter)
            if lines:
                sections.setdefault(title, []).extend(lines)

        body = "\n\n".join(
            f"# {title}\n" + "\n".join(lines) for title, lines in sections.items()
        )
        prompt = f"{body}\n\n{CLOSING_INSTRUCTION}" if body else CLOSING_INSTRUCTION

        return [
            SystemMessage(content=f"You are {self.assistant_name}, a context-aware AI assistant."),
            HumanMessage(content=prompt),
        ]

    def render_request_messages(self, window: ContextWindow) -> List[Dict[str, str]]:
        return to_role_messages(self.render(window))

    @staticmethod
    def _section_lines(data: Dict[str, Any], formatter: Callable[[Dict[str, Any]], List[str]]) -> List[str]:
        # Summarized layers carry only a summary string
        if set(data) == {"summary"}:
            return [str(data["summary"])] if data["summary"] else []
        return formatter(data)


def to_role_messages(messages: List[BaseMessage]) -> List[Dict[str, str]]:
    """Provider-neutral role/content dicts"""

    return [{"role": _ROLES.get(message.type, "user"), "content": str(message.content)} for message in messages]

