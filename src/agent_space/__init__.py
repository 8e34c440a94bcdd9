"""
Agent Space runtime - plugins, prompt assembly, and session event routing
for agent chat sessions.

Example:
    from agent_space import ChatTurnOrchestrator, PluginRuntime, RuntimeConfig
    from agent_space.prompt import local_pipeline_deps

    config = RuntimeConfig(plugin_dirs=["~/.agent-space/plugins"])
    runtime = PluginRuntime(config)
    runtime.initialize()
    await runtime.sync_plugin_catalog(config.plugin_dirs)

    chat = ChatTurnOrchestrator("chat-1", runtime, local_pipeline_deps(config))
    outcome = await chat.submit("Explain @README.md", working_directory=".")
    if outcome.kind == "prompt":
        session_id = start_agent(outcome.prompt)
        chat.session_started(session_id)
        for raw in agent_events(session_id):
            await chat.router.dispatch(SessionEvent.from_dict(raw))
"""

from agent_space.config import AgentProfile, ProfilesConfig, RuntimeConfig
from agent_space.logging import get_logger, log_event, setup_logging
from agent_space.plugins import (
    CommandContext,
    CommandResult,
    HookEvent,
    PluginAPI,
    PluginCatalogSnapshot,
    PluginRuntime,
    PromptCancel,
    PromptCancelled,
    PromptTransformContext,
    PromptTransformResult,
)
from agent_space.prompt import (
    Attachment,
    OfficePromptContext,
    PrepareChatPromptInput,
    PromptAssemblyResult,
    PromptPipelineDeps,
    prepare_chat_prompt,
)
from agent_space.session import (
    ChatMessage,
    EventRouter,
    NullCollaborators,
    RunState,
    SessionEvent,
    SessionStatus,
)
from agent_space.session.orchestrator import ChatTurnOrchestrator, TurnOutcome

__version__ = "0.1.0"

__all__ = [
    # Config
    "AgentProfile",
    "ProfilesConfig",
    "RuntimeConfig",
    # Logging
    "get_logger",
    "log_event",
    "setup_logging",
    # Plugins
    "CommandContext",
    "CommandResult",
    "HookEvent",
    "PluginAPI",
    "PluginCatalogSnapshot",
    "PluginRuntime",
    "PromptCancel",
    "PromptCancelled",
    "PromptTransformContext",
    "PromptTransformResult",
    # Prompt
    "Attachment",
    "OfficePromptContext",
    "PrepareChatPromptInput",
    "PromptAssemblyResult",
    "PromptPipelineDeps",
    "prepare_chat_prompt",
    # Session
    "ChatMessage",
    "ChatTurnOrchestrator",
    "EventRouter",
    "NullCollaborators",
    "RunState",
    "SessionEvent",
    "SessionStatus",
    "TurnOutcome",
]
