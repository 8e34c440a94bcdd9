"""
Plugin system for the agent-space runtime.

Discovers plugin manifests, loads plugin modules, and dispatches their
hooks, commands, and prompt transformers.
"""

from agent_space.plugins.api import PluginAPI
from agent_space.plugins.hooks import (
    HOOK_PAYLOAD_TYPES,
    AfterToolCallHook,
    AgentEndHook,
    BeforeAgentStartHook,
    BeforeToolCallHook,
    HookEvent,
    HookPayload,
    MessageReceivedHook,
    MessageSendingHook,
    MessageSentHook,
    SessionEndHook,
    SessionStartHook,
    ToolResultPersistHook,
    truncate_for_hook,
)
from agent_space.plugins.models import (
    CatalogCommand,
    CatalogPlugin,
    CommandContext,
    CommandResult,
    DiscoveredPlugin,
    ManifestSource,
    PluginCatalogSnapshot,
    PluginError,
    PluginLoadError,
    PluginLoadState,
    PluginMetadata,
    PromptCancel,
    PromptCancelled,
    PromptTransformContext,
    PromptTransformResult,
)
from agent_space.plugins.runtime import PluginRuntime, normalize_command_name

__all__ = [
    "PluginAPI",
    "PluginRuntime",
    "normalize_command_name",
    "HookEvent",
    "HookPayload",
    "HOOK_PAYLOAD_TYPES",
    "BeforeAgentStartHook",
    "AgentEndHook",
    "SessionStartHook",
    "SessionEndHook",
    "MessageReceivedHook",
    "MessageSendingHook",
    "MessageSentHook",
    "BeforeToolCallHook",
    "AfterToolCallHook",
    "ToolResultPersistHook",
    "truncate_for_hook",
    "CatalogCommand",
    "CatalogPlugin",
    "CommandContext",
    "CommandResult",
    "DiscoveredPlugin",
    "ManifestSource",
    "PluginCatalogSnapshot",
    "PluginError",
    "PluginLoadError",
    "PluginLoadState",
    "PluginMetadata",
    "PromptCancel",
    "PromptCancelled",
    "PromptTransformContext",
    "PromptTransformResult",
]
