"""
Hook event catalog.

Every lifecycle hook is a member of ``HookEvent`` and carries exactly one
payload dataclass, declared in ``HOOK_PAYLOAD_TYPES``.

Example:
    from agent_space.plugins.hooks import HookEvent, BeforeToolCallHook

    def register(api):
        def guard(payload: BeforeToolCallHook) -> None:
            api.log("info", "tool", {"name": payload.tool_name})

        api.on(HookEvent.BEFORE_TOOL_CALL, guard)
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

HOOK_PREVIEW_ELLIPSIS = "…"


class HookEvent(str, Enum):
    """Lifecycle points plugins can hook into."""

    BEFORE_AGENT_START = "before_agent_start"
    AGENT_END = "agent_end"
    SESSION_START = "session_start"
    SESSION_END = "session_end"
    MESSAGE_RECEIVED = "message_received"
    MESSAGE_SENDING = "message_sending"
    MESSAGE_SENT = "message_sent"
    BEFORE_TOOL_CALL = "before_tool_call"
    AFTER_TOOL_CALL = "after_tool_call"
    TOOL_RESULT_PERSIST = "tool_result_persist"


RunOutcome = Literal["success", "error", "stopped"]
ProfileSource = Literal["rule", "default", "fallback"]


@dataclass
class HookPayload:
    """Fields shared by every hook payload."""

    chat_session_id: str = ""
    workspace_directory: str | None = None
    agent_id: str | None = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class BeforeAgentStartHook(HookPayload):
    """Emitted right before the prompt is handed to the agent process."""

    prompt_preview: str = ""
    prompt_length: int = 0
    yolo_mode: bool = False
    profile_id: str = "default"
    profile_source: ProfileSource = "default"
    transformed: bool = False


@dataclass
class SessionStartHook(BeforeAgentStartHook):
    """Emitted when a run starts within a chat session."""


@dataclass
class AgentEndHook(HookPayload):
    """Emitted when a run finishes, after reward finalization."""

    status: RunOutcome = "success"
    duration_ms: int = 0
    reward_score: float | None = None


@dataclass
class SessionEndHook(AgentEndHook):
    """Emitted when a run within a chat session ends."""


@dataclass
class MessageReceivedHook(HookPayload):
    message: str = ""
    message_length: int = 0
    mention_count: int = 0
    attachment_count: int = 0


@dataclass
class MessageSendingHook(HookPayload):
    prompt_preview: str = ""
    prompt_length: int = 0
    mention_count: int = 0
    attachment_count: int = 0
    transformed: bool = False


@dataclass
class MessageSentHook(HookPayload):
    role: Literal["assistant", "error"] = "assistant"
    message: str = ""
    message_length: int = 0


@dataclass
class BeforeToolCallHook(HookPayload):
    tool_name: str = ""
    tool_use_id: str = ""
    tool_input: dict[str, Any] = field(default_factory=dict)


@dataclass
class AfterToolCallHook(HookPayload):
    tool_use_id: str = ""
    is_error: bool = False
    content_preview: str = ""


@dataclass
class ToolResultPersistHook(HookPayload):
    tool_name: str | None = None
    tool_use_id: str = ""
    is_error: bool = False
    content_preview: str = ""
    content_length: int = 0


HOOK_PAYLOAD_TYPES: dict[HookEvent, type[HookPayload]] = {
    HookEvent.BEFORE_AGENT_START: BeforeAgentStartHook,
    HookEvent.AGENT_END: AgentEndHook,
    HookEvent.SESSION_START: SessionStartHook,
    HookEvent.SESSION_END: SessionEndHook,
    HookEvent.MESSAGE_RECEIVED: MessageReceivedHook,
    HookEvent.MESSAGE_SENDING: MessageSendingHook,
    HookEvent.MESSAGE_SENT: MessageSentHook,
    HookEvent.BEFORE_TOOL_CALL: BeforeToolCallHook,
    HookEvent.AFTER_TOOL_CALL: AfterToolCallHook,
    HookEvent.TOOL_RESULT_PERSIST: ToolResultPersistHook,
}

# Handlers can be sync or async; return values are ignored.
HookHandler = Callable[[Any], Any]


def coerce_hook_event(event: HookEvent | str) -> HookEvent:
    """Map a hook name to its enum member, rejecting unknown names."""
    if isinstance(event, HookEvent):
        return event
    try:
        return HookEvent(event)
    except ValueError:
        raise ValueError(f"Unknown hook event: {event!r}") from None


def check_payload(event: HookEvent, payload: HookPayload) -> None:
    """Raise TypeError when a payload does not belong to its event."""
    expected = HOOK_PAYLOAD_TYPES[event]
    if not isinstance(payload, expected):
        raise TypeError(
            f"Hook {event.value} expects {expected.__name__}, got {type(payload).__name__}"
        )


def truncate_for_hook(value: str, max_chars: int = 500) -> str:
    """Shorten text for hook payloads, marking the cut with an ellipsis."""
    if len(value) <= max_chars:
        return value
    return f"{value[:max_chars]}{HOOK_PREVIEW_ELLIPSIS}"
