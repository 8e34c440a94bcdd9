"""
Chat session handling: message and event models, run state, and the
per-session event router.

``ChatTurnOrchestrator`` is imported from ``agent_space.session.orchestrator``.
"""

from agent_space.session.models import (
    AgentActivity,
    AgentRecord,
    AgentStatus,
    ChatMessage,
    ErrorData,
    InitData,
    MessageRole,
    ResultData,
    SessionEvent,
    SessionEventType,
    SessionStatus,
    TextData,
    ThinkingData,
    ToolResultData,
    ToolUseData,
)
from agent_space.session.router import EventRouter, NullCollaborators, SessionCollaborators
from agent_space.session.run import RunState

__all__ = [
    "AgentActivity",
    "AgentRecord",
    "AgentStatus",
    "ChatMessage",
    "ErrorData",
    "EventRouter",
    "InitData",
    "MessageRole",
    "NullCollaborators",
    "ResultData",
    "RunState",
    "SessionCollaborators",
    "SessionEvent",
    "SessionEventType",
    "SessionStatus",
    "TextData",
    "ThinkingData",
    "ToolResultData",
    "ToolUseData",
]
