"""
Data models for the plugin system.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from agent_space.plugins.hooks import HookEvent

DEFAULT_ORDER = 100


class PluginError(Exception):
    """Base class for plugin system errors."""


class PluginLoadError(PluginError):
    """A plugin entry could not be imported or registered."""


class PromptCancelled(PluginError):
    """Raised by a prompt transformer to block the prompt from being sent."""

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class ManifestSource(str, Enum):
    """Which file a plugin was discovered through."""

    AGENT_SPACE = "agent-space.plugin.json"
    OPENCLAW = "openclaw.plugin.json"
    PYPROJECT = "pyproject.toml"


class PluginLoadState(str, Enum):
    LOADED = "loaded"
    FAILED = "failed"
    SKIPPED = "skipped"  # no entry path declared
    PENDING = "pending"


@dataclass(frozen=True)
class DiscoveredPlugin:
    """A plugin found on disk by discovery. Immutable per scan."""

    id: str
    name: str
    version: str
    description: str | None
    root_dir: str
    manifest_path: str
    source: ManifestSource
    renderer_entry: str | None = None


@dataclass(frozen=True)
class PluginMetadata:
    """Read-only plugin identity exposed to plugin code via ``api.plugin``."""

    id: str
    name: str
    version: str
    description: str | None
    root_dir: str
    entry_path: str


@dataclass
class LoadedPluginInstance:
    """A plugin module that was imported and registered successfully."""

    plugin_id: str
    manifest_path: str
    entry_path: str
    dispose: Callable[[], Any]
    entry_mtime_ns: int | None = None
    loaded_at: float = field(default_factory=time.time)


@dataclass
class RegisteredHook:
    id: str
    event: HookEvent
    plugin_id: str
    order: int
    sequence: int
    handler: Callable[..., Any]


@dataclass
class RegisteredCommand:
    name: str  # normalized, e.g. "plugins-reload"
    plugin_id: str
    execute: Callable[..., Any]
    description: str = ""
    id: str = ""
    conflict_warning: str | None = None  # set when this replaced another plugin's command


@dataclass
class RegisteredPromptTransformer:
    id: str
    plugin_id: str
    order: int
    sequence: int
    transform: Callable[..., Any]


@dataclass(frozen=True)
class CatalogPlugin:
    """A discovered plugin together with its current load state."""

    plugin: DiscoveredPlugin
    load_state: PluginLoadState
    entry_path: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class CatalogCommand:
    name: str
    plugin_id: str
    description: str = ""


@dataclass(frozen=True)
class PluginCatalogSnapshot:
    """The published, immutable view of plugin/command/warning state."""

    directories: tuple[str, ...] = ()
    plugins: tuple[CatalogPlugin, ...] = ()
    commands: tuple[CatalogCommand, ...] = ()
    warnings: tuple[str, ...] = ()
    synced_at: float = 0.0

    @property
    def command_names(self) -> list[str]:
        return [command.name for command in self.commands]

    def to_dict(self) -> dict[str, Any]:
        return {
            "directories": list(self.directories),
            "plugins": [
                {
                    "id": entry.plugin.id,
                    "name": entry.plugin.name,
                    "version": entry.plugin.version,
                    "description": entry.plugin.description,
                    "rootDir": entry.plugin.root_dir,
                    "manifestPath": entry.plugin.manifest_path,
                    "source": entry.plugin.source.value,
                    "rendererEntry": entry.plugin.renderer_entry,
                    "loadState": entry.load_state.value,
                    "entryPath": entry.entry_path,
                    "error": entry.error,
                }
                for entry in self.plugins
            ],
            "commands": [
                {"name": c.name, "pluginId": c.plugin_id, "description": c.description}
                for c in self.commands
            ],
            "warnings": list(self.warnings),
            "syncedAt": self.synced_at,
        }


@dataclass
class CommandContext:
    """Context handed to a command's ``execute`` callable."""

    chat_session_id: str = ""
    workspace_directory: str | None = None
    agent_id: str | None = None
    raw_message: str = ""
    args_raw: str = ""
    args: list[str] = field(default_factory=list)
    attachment_names: list[str] = field(default_factory=list)
    mention_paths: list[str] = field(default_factory=list)


@dataclass
class CommandResult:
    """Normalized outcome of executing a command."""

    handled: bool = True  # False means no command holds the name
    message: str | None = None
    is_error: bool = False


@dataclass
class PromptTransformContext:
    """Context handed to prompt transformers alongside the running prompt."""

    chat_session_id: str = ""
    workspace_directory: str | None = None
    agent_id: str | None = None
    raw_message: str = ""
    mention_paths: list[str] = field(default_factory=list)
    attachment_names: list[str] = field(default_factory=list)


@dataclass
class PromptCancel:
    """Return value a transformer uses to cancel the prompt."""

    error: str | None = None


@dataclass
class PromptTransformResult:
    prompt: str
    transformed: bool = False
    blocked: bool = False
    error: str | None = None
