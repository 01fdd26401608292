"""Layers built from the session record: user info, task state and conversation."""

from typing import Dict, Any, List

from contextlinc.domain.context.layers.base_layer import LayerBuilder
from contextlinc.domain.models.context_state import (
    Attachment, ContextLayer, LayerId, Session, Task, TaskPriority, TaskStatus, Turn, format_timestamp
)

RECENT_INTERACTIONS = 5
PREVIEW_CHARS = 300

_PRIORITY_ORDER = {
    TaskPriority.CRITICAL: 0,
    TaskPriority.HIGH: 1,
    TaskPriority.MEDIUM: 2,
    TaskPriority.LOW: 3,
}


def _turn_summary(turn: Turn) -> Dict[str, Any]:
    return {
        "query": turn.query[:PREVIEW_CHARS],
        "response": turn.response[:PREVIEW_CHARS],
        "intent": turn.intent,
        "timestamp": format_timestamp(turn.timestamp),
    }


def _task_summary(task: Task) -> Dict[str, Any]:
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "status": task.status.value,
        "priority": task.priority.value,
    }


class UserInfoLayer(LayerBuilder):
    """Who the user is and how they like answers"""

    layer_id = LayerId.USER_INFO

    async def build(self, session: Session, query: str, attachments: List[Attachment]) -> ContextLayer:
        preferences = session.preferences
        data = {
            "user_id": session.user_id,
            "session_id": session.session_id,
            "preferences": preferences.model_dump(),
            "session_stats": {
                "turn_count": session.turn_count,
                "last_activity": format_timestamp(session.last_active_at) if session.turn_count else None,
            },
            "recent_interactions": [_turn_summary(t) for t in session.recent_turns[-RECENT_INTERACTIONS:]],
            "personalization": {
                "response_style": preferences.response_style,
                "detail_level": preferences.detail_level,
                "preferred_formats": preferences.preferred_formats,
            },
        }
        # A session always has an owner
        return self.finish(data, active=True)


class TaskStateLayer(LayerBuilder):
    """Open tasks and overall progress"""

    layer_id = LayerId.TASK_STATE

    async def build(self, session: Session, query: str, attachments: List[Attachment]) -> ContextLayer:
        open_tasks = sorted(session.open_tasks(), key=lambda t: (_PRIORITY_ORDER[t.priority], t.created_at))
        completed = sum(1 for task in session.tasks if task.status == TaskStatus.COMPLETED)

        data = {
            "current_task": _task_summary(open_tasks[0]) if open_tasks else None,
            "active_tasks": [_task_summary(task) for task in open_tasks],
            "workflow_state": {"state": "in_progress" if open_tasks else "idle"},
            "progress": {
                "completed": completed,
                "total": len(session.tasks),
                "ratio": round(completed / len(session.tasks), 2) if session.tasks else 0.0,
            },
        }
        return self.finish(data, active=bool(open_tasks))


class ConversationContextLayer(LayerBuilder):
    """Recent turns of this session"""

    layer_id = LayerId.CONVERSATION_CONTEXT

    async def build(self, session: Session, query: str, attachments: List[Attachment]) -> ContextLayer:
        turns = session.recent_turns
        data = {
            "recent_turns": [_turn_summary(turn) for turn in turns],
            "session_start": format_timestamp(session.created_at),
            "last_interaction": format_timestamp(turns[-1].timestamp) if turns else None,
            "context_switches": session.context_switches,
        }
        return self.finish(data, active=bool(turns))
