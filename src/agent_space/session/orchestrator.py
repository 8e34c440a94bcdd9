"""
Chat turn orchestration.

``ChatTurnOrchestrator`` handles a submitted user message end to end up to
the point where an agent process would be started: slash commands are run
against the plugin runtime; everything else goes through prompt assembly,
the prompt-transformer chain, and run start bookkeeping. The agent's event
stream is then fed to ``orchestrator.router``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from agent_space.config import ProfilesConfig, RuntimeConfig
from agent_space.logging import get_logger
from agent_space.plugins.hooks import (
    BeforeAgentStartHook,
    HookEvent,
    MessageReceivedHook,
    MessageSendingHook,
    MessageSentHook,
    ProfileSource,
    RunOutcome,
    SessionStartHook,
    truncate_for_hook,
)
from agent_space.plugins.models import CommandContext, PromptTransformContext
from agent_space.plugins.runtime import PluginRuntime
from agent_space.prompt.mentions import (
    SlashCommandInput,
    parse_slash_command_input,
    resolve_mention_tokens,
)
from agent_space.prompt.pipeline import (
    Attachment,
    OfficePromptContext,
    PrepareChatPromptInput,
    PromptAssemblyResult,
    PromptPipelineDeps,
    prepare_chat_prompt,
)
from agent_space.session.models import AgentStatus, ChatMessage, MessageRole, SessionStatus
from agent_space.session.router import EventRouter, SessionCollaborators, invoke

logger = get_logger("session.orchestrator")

MAX_COMMANDS_IN_HINT = 6
MAX_KEY_FILES_IN_CONTEXT = 6
AGENT_TASK_CHARS = 60


@dataclass
class TurnOutcome:
    """
    Result of submitting one user message.

    ``kind`` is ``"command"`` (a slash command ran, or was unknown),
    ``"blocked"`` (a prompt transformer cancelled), or ``"prompt"`` (the
    prompt is ready to hand to the agent).
    """

    kind: Literal["command", "blocked", "prompt"]
    prompt: str | None = None
    error: str | None = None
    handled: bool = True
    transformed: bool = False
    messages: list[ChatMessage] = field(default_factory=list)
    assembly: PromptAssemblyResult | None = None


def unknown_command_message(name: str, known: list[str]) -> str:
    if known:
        preview = ", ".join(f"/{entry}" for entry in known[:MAX_COMMANDS_IN_HINT])
        more = ", ..." if len(known) > MAX_COMMANDS_IN_HINT else ""
        hint = f"Available commands: {preview}{more}"
    else:
        hint = "No plugin commands are currently loaded."
    return f'Unknown command "/{name}". {hint}'


class ChatTurnOrchestrator:
    """Submits chat turns for one chat session and owns its event router."""

    def __init__(
        self,
        chat_session_id: str,
        runtime: PluginRuntime,
        deps: PromptPipelineDeps,
        collaborators: SessionCollaborators | None = None,
        config: RuntimeConfig | None = None,
        working_directory: str | None = None,
        profiles: ProfilesConfig | None = None,
        yolo_mode: bool = False,
    ):
        self.chat_session_id = chat_session_id
        self.runtime = runtime
        self.deps = deps
        self.config = config or runtime.config
        self.working_directory = working_directory
        self.profiles = profiles
        self.yolo_mode = yolo_mode
        self.router = EventRouter(
            chat_session_id,
            runtime,
            collaborators,
            config=self.config,
            working_directory=working_directory,
        )

    @property
    def collaborators(self) -> SessionCollaborators:
        return self.router.collaborators

    @property
    def run_state(self):
        return self.router.run_state

    def resolve_profile(self) -> tuple[str, ProfileSource]:
        if self.profiles is not None:
            for profile in self.profiles.profiles:
                if profile.id == self.profiles.default_profile_id:
                    return profile.id, "default"
        return "default", "fallback"

    async def submit(
        self,
        message: str,
        working_directory: str | None = None,
        mentions: list[str] | None = None,
        attachments: list[Attachment] | None = None,
        history: list[ChatMessage] | None = None,
        office_context: OfficePromptContext | None = None,
    ) -> TurnOutcome:
        """Handle one user message; see ``TurnOutcome`` for the three paths."""
        directory = working_directory or self.working_directory
        slash_command = parse_slash_command_input(message)
        if slash_command is not None:
            return await self._run_command(slash_command, message, directory, mentions, attachments)
        return await self._prepare_run(
            message, directory, mentions, attachments, history, office_context
        )

    # ------------------------------------------------------------------
    # Slash commands
    # ------------------------------------------------------------------

    async def _run_command(
        self,
        slash_command: SlashCommandInput,
        message: str,
        directory: str | None,
        mentions: list[str] | None,
        attachments: list[Attachment] | None,
    ) -> TurnOutcome:
        agent_id = self.collaborators.get_agent_id()
        mention_tokens = resolve_mention_tokens(message, mentions)
        attachment_names = [a.name for a in attachments or []]

        await self._emit_message_received(
            message, directory, agent_id, mention_tokens, attachment_names
        )
        self.router.append_message(MessageRole.USER, message)
        await invoke(self.collaborators.persist_message, message, "user", directory)

        result = await self.runtime.execute_command(
            slash_command.name,
            CommandContext(
                chat_session_id=self.chat_session_id,
                workspace_directory=directory,
                agent_id=agent_id,
                raw_message=message,
                args_raw=slash_command.args_raw,
                args=slash_command.args,
                attachment_names=attachment_names,
                mention_paths=mention_tokens,
            ),
        )

        if not result.handled:
            known = [command.name for command in self.runtime.get_commands()]
            text = unknown_command_message(slash_command.name, known)
            await self._emit_message_sent("error", text, directory, agent_id)
            reply = self.router.append_message(MessageRole.ERROR, text)
            return TurnOutcome(kind="command", handled=False, error=text, messages=[reply])

        if not result.message:
            return TurnOutcome(kind="command")

        role = "error" if result.is_error else "assistant"
        await self._emit_message_sent(role, result.message, directory, agent_id)
        reply = self.router.append_message(MessageRole(role), result.message)
        if not result.is_error:
            await invoke(self.collaborators.persist_message, result.message, "assistant", directory)
        return TurnOutcome(
            kind="command",
            error=result.message if result.is_error else None,
            messages=[reply],
        )

    # ------------------------------------------------------------------
    # Prompt path
    # ------------------------------------------------------------------

    async def _prepare_run(
        self,
        message: str,
        directory: str | None,
        mentions: list[str] | None,
        attachments: list[Attachment] | None,
        history: list[ChatMessage] | None,
        office_context: OfficePromptContext | None,
    ) -> TurnOutcome:
        agent_id = self.collaborators.get_agent_id()
        attachment_names = [a.name for a in attachments or []]
        if history is None:
            history = list(self.router.messages)

        assembly = await prepare_chat_prompt(
            PrepareChatPromptInput(
                message=message,
                working_directory=directory or "",
                mentions=mentions,
                attachments=attachments,
                history_messages=history,
                office_context=office_context,
            ),
            self.deps,
            max_history_messages=self.config.max_history_messages,
            max_history_chars=self.config.max_history_chars,
        )

        await self._emit_message_received(
            message, directory, agent_id, assembly.mention_tokens, attachment_names
        )
        self.router.append_message(MessageRole.USER, message)
        await invoke(self.collaborators.persist_message, message, "user", directory)

        transform = await self.runtime.apply_prompt_transformers(
            assembly.prompt,
            PromptTransformContext(
                chat_session_id=self.chat_session_id,
                workspace_directory=directory,
                agent_id=agent_id,
                raw_message=message,
                mention_paths=assembly.mention_tokens,
                attachment_names=attachment_names,
            ),
        )
        if transform.blocked:
            error = transform.error or "Prompt blocked by plugin"
            await self._emit_message_sent("error", error, directory, agent_id)
            reply = self.router.append_message(MessageRole.ERROR, error)
            return TurnOutcome(kind="blocked", error=error, messages=[reply], assembly=assembly)

        prompt = transform.prompt
        await self.runtime.emit_hook(
            HookEvent.MESSAGE_SENDING,
            MessageSendingHook(
                chat_session_id=self.chat_session_id,
                workspace_directory=directory,
                agent_id=agent_id,
                prompt_preview=truncate_for_hook(prompt, self.config.tool_preview_chars),
                prompt_length=len(prompt),
                mention_count=len(assembly.mention_tokens),
                attachment_count=len(attachment_names),
                transformed=transform.transformed,
            ),
        )

        key_files = len(assembly.workspace_snapshot.key_files) if assembly.workspace_snapshot else 0
        self.router.set_status(SessionStatus.RUNNING)
        self.run_state.start(
            directory,
            context_files=(
                assembly.resolved_mention_count
                + len(attachment_names)
                + min(key_files, MAX_KEY_FILES_IN_CONTEXT)
            ),
            unresolved_mentions=assembly.unresolved_mention_count,
            yolo_mode=self.yolo_mode,
        )
        if agent_id is not None:
            await invoke(
                self.collaborators.update_agent,
                agent_id,
                status=AgentStatus.THINKING,
                current_task=message[:AGENT_TASK_CHARS],
                is_running=True,
            )

        profile_id, profile_source = self.resolve_profile()
        start_fields = dict(
            chat_session_id=self.chat_session_id,
            workspace_directory=directory,
            agent_id=agent_id,
            prompt_preview=truncate_for_hook(message, self.config.tool_preview_chars),
            prompt_length=len(prompt),
            yolo_mode=self.yolo_mode,
            profile_id=profile_id,
            profile_source=profile_source,
            transformed=transform.transformed,
        )
        await self.runtime.emit_hook(
            HookEvent.BEFORE_AGENT_START, BeforeAgentStartHook(**start_fields)
        )
        await self.runtime.emit_hook(HookEvent.SESSION_START, SessionStartHook(**start_fields))

        return TurnOutcome(
            kind="prompt",
            prompt=prompt,
            transformed=transform.transformed,
            assembly=assembly,
        )

    # ------------------------------------------------------------------
    # Agent session lifecycle
    # ------------------------------------------------------------------

    def session_started(self, session_id: str) -> None:
        """Bind the router to the agent session that was just started."""
        self.router.bind(session_id)

    async def session_start_failed(self, error: Exception | str) -> None:
        """Record a failure to launch the agent and close the run as an error."""
        text = f"Failed to start agent: {error}"
        logger.error(text)
        self.router.append_message(MessageRole.ERROR, text)
        self.router.set_status(SessionStatus.ERROR)
        agent_id = self.collaborators.get_agent_id()
        if agent_id is not None:
            await invoke(
                self.collaborators.update_agent,
                agent_id,
                status=AgentStatus.ERROR,
                is_running=False,
            )
        await self.finalize_run("error")
        await self.router.reset_run()

    async def stop(self) -> None:
        await self.router.stop()

    async def finalize_run(self, outcome: RunOutcome) -> float | None:
        """Finalize the current run once; see ``EventRouter.finalize_run``."""
        return await self.router.finalize_run(outcome)

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    async def _emit_message_received(
        self,
        message: str,
        directory: str | None,
        agent_id: str | None,
        mention_tokens: list[str],
        attachment_names: list[str],
    ) -> None:
        await self.runtime.emit_hook(
            HookEvent.MESSAGE_RECEIVED,
            MessageReceivedHook(
                chat_session_id=self.chat_session_id,
                workspace_directory=directory,
                agent_id=agent_id,
                message=truncate_for_hook(message, self.config.hook_preview_chars),
                message_length=len(message),
                mention_count=len(mention_tokens),
                attachment_count=len(attachment_names),
            ),
        )

    async def _emit_message_sent(
        self, role: str, text: str, directory: str | None, agent_id: str | None
    ) -> None:
        await self.runtime.emit_hook(
            HookEvent.MESSAGE_SENT,
            MessageSentHook(
                chat_session_id=self.chat_session_id,
                workspace_directory=directory,
                agent_id=agent_id,
                role=role,
                message=truncate_for_hook(text, self.config.hook_preview_chars),
                message_length=len(text),
            ),
        )
