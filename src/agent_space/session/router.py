"""
Per-session event router.

``EventRouter`` consumes the structured events of one running agent session
in arrival order and turns them into chat-message updates, agent status
changes, subagent bookkeeping, and plugin hook emissions.

States: idle -> running (thinking | streaming | tool_calling) -> done | error.

Example:
    router = EventRouter("chat-1", runtime, collaborators)
    router.bind("agent-session-7")
    async for raw in stream:
        await router.dispatch(SessionEvent.from_dict(raw))
    await router.drain()
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
from collections.abc import Callable
from typing import Any, Protocol

from agent_space.config import RuntimeConfig
from agent_space.logging import get_logger, log_event
from agent_space.plugins.hooks import (
    AfterToolCallHook,
    AgentEndHook,
    BeforeToolCallHook,
    HookEvent,
    MessageSentHook,
    RunOutcome,
    SessionEndHook,
    ToolResultPersistHook,
    truncate_for_hook,
)
from agent_space.plugins.runtime import PluginRuntime
from agent_space.session.models import (
    AgentActivity,
    AgentRecord,
    AgentStatus,
    ChatMessage,
    ErrorData,
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
from agent_space.session.run import RunState

logger = get_logger("session")

THINKING_PLACEHOLDER = "Thinking..."
SUBAGENT_TASK_CHARS = 60
SUBAGENT_SPAWN_CHARS = 40
DEFAULT_AGENT_NAME = "Chat"


class SessionCollaborators(Protocol):
    """
    Application services the router drives. Any method may be a coroutine.

    ``update_agent`` receives keyword updates named after ``AgentRecord``
    fields (``status``, ``current_task``, ``is_running``).
    """

    def get_agent_id(self) -> str | None: ...

    def get_agent_name(self) -> str: ...

    def get_active_run_directory(self) -> str | None: ...

    def update_agent(self, agent_id: str, **updates: Any) -> Any: ...

    def add_agent(self, agent: AgentRecord) -> Any: ...

    def remove_agent(self, agent_id: str) -> Any: ...

    def clear_subagents_for_parent(self, parent_agent_id: str) -> Any: ...

    def increment_agent_file_count(self, agent_id: str) -> Any: ...

    def add_activity(self, activity: AgentActivity) -> Any: ...

    def persist_message(self, content: str, role: str, directory: str | None) -> Any: ...

    def finalize_run_reward(self, outcome: RunOutcome, run_state: RunState) -> Any: ...

    def reset_run_state(self) -> Any: ...

    def play_completion_signal(self) -> Any: ...


class NullCollaborators:
    """No-op collaborators; subclass and override what the application needs."""

    def get_agent_id(self) -> str | None:
        return None

    def get_agent_name(self) -> str:
        return DEFAULT_AGENT_NAME

    def get_active_run_directory(self) -> str | None:
        return None

    def update_agent(self, agent_id: str, **updates: Any) -> Any:
        return None

    def add_agent(self, agent: AgentRecord) -> Any:
        return None

    def remove_agent(self, agent_id: str) -> Any:
        return None

    def clear_subagents_for_parent(self, parent_agent_id: str) -> Any:
        return None

    def increment_agent_file_count(self, agent_id: str) -> Any:
        return None

    def add_activity(self, activity: AgentActivity) -> Any:
        return None

    def persist_message(self, content: str, role: str, directory: str | None) -> Any:
        return None

    def finalize_run_reward(self, outcome: RunOutcome, run_state: RunState) -> Any:
        """Return the run's reward score, or None when not scored."""
        return None

    def reset_run_state(self) -> Any:
        return None

    def play_completion_signal(self) -> Any:
        return None


async def invoke(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Call a collaborator method, awaiting its result when it is awaitable."""
    result = fn(*args, **kwargs)
    if inspect.isawaitable(result):
        return await result
    return result


def _text_field(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    return value if isinstance(value, str) else None


class EventRouter:
    """
    State machine for one chat session's agent events.

    Events must be dispatched one at a time, in arrival order: ``text``
    merges into the trailing assistant message, so reordering corrupts the
    transcript. Hook emissions are awaited in order; hook failures are
    absorbed by the runtime and never stop a transition.
    """

    def __init__(
        self,
        chat_session_id: str,
        runtime: PluginRuntime,
        collaborators: SessionCollaborators | None = None,
        config: RuntimeConfig | None = None,
        working_directory: str | None = None,
        run_state: RunState | None = None,
    ):
        self.chat_session_id = chat_session_id
        self.runtime = runtime
        self.collaborators = collaborators or NullCollaborators()
        self.config = config or runtime.config
        self.working_directory = working_directory
        self.run_state = run_state or RunState()

        self.messages: list[ChatMessage] = []
        self.status = SessionStatus.IDLE
        self.active_session_id: str | None = None

        self._message_ids = itertools.count(1)
        self._pending: set[asyncio.Task] = set()
        self._removal_timers: dict[str, asyncio.TimerHandle] = {}
        self._handlers: dict[SessionEventType, Callable[[Any], Any]] = {
            SessionEventType.INIT: self._on_init,
            SessionEventType.TEXT: self._on_text,
            SessionEventType.THINKING: self._on_thinking,
            SessionEventType.TOOL_USE: self._on_tool_use,
            SessionEventType.TOOL_RESULT: self._on_tool_result,
            SessionEventType.RESULT: self._on_result,
            SessionEventType.ERROR: self._on_error,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def bind(self, session_id: str | None) -> None:
        """Route only events of ``session_id``; None accepts any session."""
        self.active_session_id = session_id

    def next_message_id(self) -> str:
        return f"msg-{next(self._message_ids)}"

    def append_message(self, role: MessageRole, content: str, **fields: Any) -> ChatMessage:
        message = ChatMessage(id=self.next_message_id(), role=role, content=content, **fields)
        self.messages.append(message)
        return message

    def set_status(self, status: SessionStatus) -> None:
        if status is not self.status:
            logger.debug(
                "Session %s: %s -> %s", self.chat_session_id, self.status.value, status.value
            )
        self.status = status

    async def dispatch(self, event: SessionEvent) -> None:
        """Apply one event to the session state."""
        if self.active_session_id is not None and event.session_id != self.active_session_id:
            logger.debug(
                "Ignoring %s event for session %s (active: %s)",
                event.type.value,
                event.session_id,
                self.active_session_id,
            )
            return
        await self._handlers[event.type](event.data)

    async def drain(self) -> None:
        """Wait for deferred work scheduled by earlier transitions."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def close(self) -> None:
        """Cancel pending subagent removals."""
        for handle in self._removal_timers.values():
            handle.cancel()
        self._removal_timers.clear()

    @property
    def pending_removals(self) -> list[str]:
        return list(self._removal_timers)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _workspace_directory(self) -> str | None:
        return (
            self.collaborators.get_active_run_directory()
            or self.run_state.directory
            or self.working_directory
        )

    def _drop_thinking(self) -> None:
        self.messages = [m for m in self.messages if m.role is not MessageRole.THINKING]

    def _track(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _emit_message_sent(self, role: str, message: str, agent_id: str | None) -> None:
        await self.runtime.emit_hook(
            HookEvent.MESSAGE_SENT,
            MessageSentHook(
                chat_session_id=self.chat_session_id,
                workspace_directory=self._workspace_directory(),
                agent_id=agent_id,
                role=role,
                message=truncate_for_hook(message, self.config.hook_preview_chars),
                message_length=len(message),
            ),
        )

    def _schedule_removal(self, subagent_id: str) -> None:
        loop = asyncio.get_running_loop()
        previous = self._removal_timers.pop(subagent_id, None)
        if previous is not None:
            previous.cancel()
        self._removal_timers[subagent_id] = loop.call_later(
            self.config.subagent_removal_delay, self._remove_subagent, subagent_id
        )

    def _remove_subagent(self, subagent_id: str) -> None:
        self._removal_timers.pop(subagent_id, None)
        result = self.collaborators.remove_agent(subagent_id)
        if inspect.isawaitable(result):
            self._track(result)

    async def _clear_subagents(self, agent_id: str) -> None:
        tracked = list(self.run_state.active_subagents.values())
        self.run_state.active_subagents.clear()
        for subagent_id in tracked:
            await invoke(self.collaborators.remove_agent, subagent_id)
        await invoke(self.collaborators.clear_subagents_for_parent, agent_id)

    async def _finish_agent(self, agent_id: str | None, status: AgentStatus) -> None:
        if agent_id is None:
            return
        await invoke(self.collaborators.update_agent, agent_id, status=status, is_running=False)
        await self._clear_subagents(agent_id)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _on_init(self, data: Any) -> None:
        agent_id = self.collaborators.get_agent_id()
        if self.status is SessionStatus.IDLE:
            self.set_status(SessionStatus.RUNNING)
        if agent_id is None:
            return
        await invoke(self.collaborators.update_agent, agent_id, status=AgentStatus.THINKING)

    async def _on_text(self, data: TextData) -> None:
        if not data.text:
            return
        last = self.messages[-1] if self.messages else None
        if last is not None and last.role is MessageRole.ASSISTANT and not last.tool_name:
            last.content += data.text
        else:
            self.append_message(MessageRole.ASSISTANT, data.text)

        agent_id = self.collaborators.get_agent_id()
        if agent_id is None:
            return
        await invoke(self.collaborators.update_agent, agent_id, status=AgentStatus.STREAMING)

    async def _on_thinking(self, data: ThinkingData) -> None:
        self._drop_thinking()
        preview = (
            data.thinking[: self.config.thinking_preview_chars]
            if data.thinking is not None
            else THINKING_PLACEHOLDER
        )
        self.append_message(MessageRole.THINKING, preview)

        agent_id = self.collaborators.get_agent_id()
        if agent_id is None:
            return
        await invoke(self.collaborators.update_agent, agent_id, status=AgentStatus.THINKING)

    async def _on_tool_use(self, data: ToolUseData) -> None:
        agent_id = self.collaborators.get_agent_id()
        self.run_state.tool_call_count += 1
        self.run_state.active_tool_names[data.id] = data.name

        await self.runtime.emit_hook(
            HookEvent.BEFORE_TOOL_CALL,
            BeforeToolCallHook(
                chat_session_id=self.chat_session_id,
                workspace_directory=self._workspace_directory(),
                agent_id=agent_id,
                tool_name=data.name,
                tool_use_id=data.id,
                tool_input=data.input,
            ),
        )

        self._drop_thinking()
        self.append_message(
            MessageRole.ASSISTANT,
            "",
            tool_name=data.name,
            tool_input=data.input,
            tool_use_id=data.id,
        )

        if agent_id is None:
            return

        await invoke(
            self.collaborators.update_agent,
            agent_id,
            status=AgentStatus.TOOL_CALLING,
            current_task=data.name,
        )
        await invoke(
            self.collaborators.add_activity,
            AgentActivity(
                agent_id=agent_id,
                agent_name=self.collaborators.get_agent_name(),
                type="tool_call",
                description=data.name,
            ),
        )

        if data.name in self.config.file_write_tools:
            self.run_state.file_write_count += 1
            await invoke(self.collaborators.increment_agent_file_count, agent_id)

        if data.name in self.config.delegation_tools:
            await self._spawn_subagent(agent_id, data)

    async def _spawn_subagent(self, agent_id: str, data: ToolUseData) -> None:
        if data.id in self.run_state.active_subagents:
            return

        prompt = _text_field(data.input, "prompt")
        description = (
            _text_field(data.input, "description")
            or (prompt[:SUBAGENT_TASK_CHARS] if prompt else None)
            or "Subtask"
        )
        subagent_type = _text_field(data.input, "subagent_type") or "general"
        subagent_id = f"sub-{agent_id}-{data.id}"
        seat = self.run_state.next_seat()

        self.run_state.active_subagents[data.id] = subagent_id
        await invoke(
            self.collaborators.add_agent,
            AgentRecord(
                id=subagent_id,
                name=subagent_type[:1].upper() + subagent_type[1:],
                status=AgentStatus.THINKING,
                current_task=description[:SUBAGENT_TASK_CHARS],
                is_subagent=True,
                parent_agent_id=agent_id,
                meeting_seat=seat,
                is_running=True,
            ),
        )
        await invoke(
            self.collaborators.add_activity,
            AgentActivity(
                agent_id=subagent_id,
                agent_name=subagent_type,
                type="spawn",
                description=f"Subagent: {description[:SUBAGENT_SPAWN_CHARS]}",
            ),
        )

    async def _on_tool_result(self, data: ToolResultData) -> None:
        agent_id = self.collaborators.get_agent_id()
        tool_name = self.run_state.active_tool_names.pop(data.tool_use_id, None)
        preview = truncate_for_hook(data.content, self.config.tool_preview_chars)

        await self.runtime.emit_hook(
            HookEvent.AFTER_TOOL_CALL,
            AfterToolCallHook(
                chat_session_id=self.chat_session_id,
                workspace_directory=self._workspace_directory(),
                agent_id=agent_id,
                tool_use_id=data.tool_use_id,
                is_error=data.is_error,
                content_preview=preview,
            ),
        )
        await self.runtime.emit_hook(
            HookEvent.TOOL_RESULT_PERSIST,
            ToolResultPersistHook(
                chat_session_id=self.chat_session_id,
                workspace_directory=self._workspace_directory(),
                agent_id=agent_id,
                tool_name=tool_name,
                tool_use_id=data.tool_use_id,
                is_error=data.is_error,
                content_preview=preview,
                content_length=len(data.content),
            ),
        )

        self.append_message(
            MessageRole.TOOL,
            data.content,
            tool_use_id=data.tool_use_id,
            is_error=data.is_error,
        )

        subagent_id = self.run_state.active_subagents.pop(data.tool_use_id, None)
        if subagent_id is not None:
            await invoke(
                self.collaborators.update_agent,
                subagent_id,
                status=AgentStatus.ERROR if data.is_error else AgentStatus.DONE,
                is_running=False,
            )
            self._schedule_removal(subagent_id)

        if agent_id is None:
            return
        await invoke(self.collaborators.update_agent, agent_id, status=AgentStatus.STREAMING)

    async def _on_result(self, data: ResultData) -> None:
        agent_id = self.collaborators.get_agent_id()
        self._drop_thinking()

        last_assistant = next(
            (
                m
                for m in reversed(self.messages)
                if m.role is MessageRole.ASSISTANT and not m.tool_name
            ),
            None,
        )
        if last_assistant is not None and last_assistant.content:
            self._track(
                self._persist_assistant(
                    last_assistant.content, self._workspace_directory(), agent_id
                )
            )

        if data.is_error:
            error_text = data.error or "Unknown error"
            await self._emit_message_sent("error", error_text, agent_id)
            self.append_message(MessageRole.ERROR, error_text)
            self.set_status(SessionStatus.ERROR)
        else:
            self.set_status(SessionStatus.DONE)
            await invoke(self.collaborators.play_completion_signal)

        await self._finish_agent(agent_id, AgentStatus.ERROR if data.is_error else AgentStatus.DONE)
        await self.finalize_run("error" if data.is_error else "success")
        await self.reset_run()

    async def _persist_assistant(
        self, content: str, directory: str | None, agent_id: str | None
    ) -> None:
        try:
            await invoke(self.collaborators.persist_message, content, "assistant", directory)
        except Exception as e:
            logger.warning("Failed to persist message for %s: %s", self.chat_session_id, e)
        await self.runtime.emit_hook(
            HookEvent.MESSAGE_SENT,
            MessageSentHook(
                chat_session_id=self.chat_session_id,
                workspace_directory=directory,
                agent_id=agent_id,
                role="assistant",
                message=truncate_for_hook(content, self.config.hook_preview_chars),
                message_length=len(content),
            ),
        )

    async def _on_error(self, data: ErrorData) -> None:
        agent_id = self.collaborators.get_agent_id()
        await self._emit_message_sent("error", data.message, agent_id)

        self._drop_thinking()
        self.append_message(MessageRole.ERROR, data.message)
        self.set_status(SessionStatus.ERROR)

        await self._finish_agent(agent_id, AgentStatus.ERROR)
        await self.finalize_run("error")
        await self.reset_run()

    # ------------------------------------------------------------------
    # Run completion
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """End the current run on user request."""
        agent_id = self.collaborators.get_agent_id()
        self.set_status(SessionStatus.DONE)
        await self._finish_agent(agent_id, AgentStatus.DONE)
        await self.finalize_run("stopped")
        await self.reset_run()

    async def finalize_run(self, outcome: RunOutcome) -> float | None:
        """
        Record the run's outcome once and emit ``session_end``/``agent_end``.

        Later calls for the same run are no-ops and return None.
        """
        if self.run_state.reward_recorded:
            return None
        self.run_state.reward_recorded = True

        agent_id = self.collaborators.get_agent_id()
        directory = self._workspace_directory()
        duration_ms = self.run_state.duration_ms
        reward_score = await invoke(self.collaborators.finalize_run_reward, outcome, self.run_state)

        log_event(
            "info",
            "chat.run.finalized",
            {
                "chatSessionId": self.chat_session_id,
                "workspaceDirectory": directory,
                "status": outcome,
                "durationMs": duration_ms,
                "rewardScore": reward_score,
                "toolCalls": self.run_state.tool_call_count,
                "fileWrites": self.run_state.file_write_count,
            },
        )

        common = dict(
            chat_session_id=self.chat_session_id,
            workspace_directory=directory,
            agent_id=agent_id,
            status=outcome,
            duration_ms=duration_ms,
            reward_score=reward_score,
        )
        await self.runtime.emit_hook(HookEvent.SESSION_END, SessionEndHook(**common))
        await self.runtime.emit_hook(HookEvent.AGENT_END, AgentEndHook(**common))
        return reward_score

    async def reset_run(self) -> None:
        self.run_state.reset()
        await invoke(self.collaborators.reset_run_state)
