"""Session data models: chat messages, agent events, agent records."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    THINKING = "thinking"
    ERROR = "error"


class SessionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


class AgentStatus(str, Enum):
    IDLE = "idle"
    THINKING = "thinking"
    STREAMING = "streaming"
    TOOL_CALLING = "tool_calling"
    DONE = "done"
    ERROR = "error"


@dataclass
class ChatMessage:
    """A single message in the chat timeline."""

    id: str
    role: MessageRole
    content: str
    timestamp: float = field(default_factory=time.time)
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None
    tool_use_id: str | None = None
    is_error: bool | None = None


# ---------------------------------------------------------------------------
# Agent session events
# ---------------------------------------------------------------------------


class SessionEventType(str, Enum):
    INIT = "init"
    TEXT = "text"
    THINKING = "thinking"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    RESULT = "result"
    ERROR = "error"


@dataclass
class InitData:
    session_id: str | None = None
    model: str | None = None
    cwd: str | None = None
    tools: list[str] = field(default_factory=list)


@dataclass
class TextData:
    text: str = ""


@dataclass
class ThinkingData:
    thinking: str | None = None


@dataclass
class ToolUseData:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResultData:
    tool_use_id: str
    content: str = ""
    is_error: bool = False


@dataclass
class ResultData:
    result: str = ""
    is_error: bool = False
    error: str | None = None
    session_id: str | None = None
    usage: dict[str, Any] | None = None


@dataclass
class ErrorData:
    message: str
    code: str | None = None


EventData = Union[
    InitData, TextData, ThinkingData, ToolUseData, ToolResultData, ResultData, ErrorData
]


def _tool_result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, dict) and isinstance(block.get("text"), str):
                parts.append(block["text"])
            elif isinstance(block, str):
                parts.append(block)
        return "\n".join(parts)
    return "" if content is None else str(content)


@dataclass
class SessionEvent:
    """
    A structured event emitted by a running agent session.

    The wire form is ``{"sessionId": ..., "type": ..., "data": {...}}``;
    use :meth:`from_dict` to parse it.
    """

    session_id: str
    type: SessionEventType
    data: EventData

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> SessionEvent:
        session_id = str(raw.get("sessionId") or raw.get("session_id") or "")
        event_type = SessionEventType(raw["type"])
        data = raw.get("data") or {}

        parsed: EventData
        if event_type is SessionEventType.INIT:
            parsed = InitData(
                session_id=data.get("session_id"),
                model=data.get("model"),
                cwd=data.get("cwd"),
                tools=list(data.get("tools") or []),
            )
        elif event_type is SessionEventType.TEXT:
            parsed = TextData(text=data.get("text") or "")
        elif event_type is SessionEventType.THINKING:
            parsed = ThinkingData(thinking=data.get("thinking"))
        elif event_type is SessionEventType.TOOL_USE:
            parsed = ToolUseData(
                id=str(data["id"]),
                name=str(data["name"]),
                input=dict(data.get("input") or {}),
            )
        elif event_type is SessionEventType.TOOL_RESULT:
            parsed = ToolResultData(
                tool_use_id=str(data["tool_use_id"]),
                content=_tool_result_text(data.get("content")),
                is_error=data.get("is_error") is True,
            )
        elif event_type is SessionEventType.RESULT:
            parsed = ResultData(
                result=data.get("result") or "",
                is_error=data.get("is_error") is True,
                error=data.get("error"),
                session_id=data.get("session_id"),
                usage=data.get("usage"),
            )
        else:
            parsed = ErrorData(message=str(data.get("message", "")), code=data.get("code"))
        return cls(session_id=session_id, type=event_type, data=parsed)


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


@dataclass
class AgentRecord:
    """An agent tracked by the application; subagents are ephemeral ones."""

    id: str
    name: str
    status: AgentStatus = AgentStatus.IDLE
    current_task: str = ""
    is_subagent: bool = False
    parent_agent_id: str | None = None
    meeting_seat: int | None = None
    is_running: bool = False
    files_modified: int = 0
    started_at: float = field(default_factory=time.time)


@dataclass
class AgentActivity:
    """A domain event describing what an agent just did (tool_call, spawn)."""

    agent_id: str
    agent_name: str
    type: str
    description: str
    timestamp: float = field(default_factory=time.time)
