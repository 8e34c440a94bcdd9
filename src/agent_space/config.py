"""
Configuration models for the agent-space runtime.

Provides a configuration system that can be loaded from YAML files or
constructed programmatically.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

PLUGIN_DIRS_ENV = "AGENT_SPACE_PLUGIN_DIRS"

DEFAULT_DELEGATION_TOOLS = ("Task",)
DEFAULT_FILE_WRITE_TOOLS = ("Write", "Edit", "MultiEdit", "NotebookEdit")


def dedupe_preserve_order(values: list[str]) -> list[str]:
    """Trim values and drop blanks and repeats, keeping first-seen order."""
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        trimmed = value.strip()
        if not trimmed or trimmed in seen:
            continue
        seen.add(trimmed)
        result.append(trimmed)
    return result


@dataclass
class RuntimeConfig:
    """
    Main configuration for the runtime.

    Example YAML:
        plugin_dirs:
          - ~/.agent-space/plugins
          - ./plugins
        max_history_messages: 14
        max_history_chars: 12000
        subagent_removal_delay: 5
        delegation_tools:
          - Task
        hook_timeout_seconds: null
    """

    # Plugin discovery
    plugin_dirs: list[str] = field(default_factory=list)

    # Prompt assembly
    max_history_messages: int = 14
    max_history_chars: int = 12_000
    max_referenced_files: int = 12
    mention_search_limit: int = 25

    # Hook payload previews
    hook_preview_chars: int = 500
    tool_preview_chars: int = 240
    thinking_preview_chars: int = 200

    # Session routing
    subagent_removal_delay: float = 5.0
    delegation_tools: list[str] = field(default_factory=lambda: list(DEFAULT_DELEGATION_TOOLS))
    file_write_tools: list[str] = field(default_factory=lambda: list(DEFAULT_FILE_WRITE_TOOLS))

    # Hook dispatch; None means handlers may run unbounded
    hook_timeout_seconds: float | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RuntimeConfig:
        """Create config from a dictionary."""
        return cls(
            plugin_dirs=[str(p) for p in data.get("plugin_dirs", [])],
            max_history_messages=data.get("max_history_messages", 14),
            max_history_chars=data.get("max_history_chars", 12_000),
            max_referenced_files=data.get("max_referenced_files", 12),
            mention_search_limit=data.get("mention_search_limit", 25),
            hook_preview_chars=data.get("hook_preview_chars", 500),
            tool_preview_chars=data.get("tool_preview_chars", 240),
            thinking_preview_chars=data.get("thinking_preview_chars", 200),
            subagent_removal_delay=data.get("subagent_removal_delay", 5.0),
            delegation_tools=list(data.get("delegation_tools", DEFAULT_DELEGATION_TOOLS)),
            file_write_tools=list(data.get("file_write_tools", DEFAULT_FILE_WRITE_TOOLS)),
            hook_timeout_seconds=data.get("hook_timeout_seconds"),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> RuntimeConfig:
        """Load config from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.from_dict(data or {})

    @classmethod
    def from_yaml_string(cls, content: str) -> RuntimeConfig:
        """Load config from a YAML string."""
        data = yaml.safe_load(content)
        return cls.from_dict(data or {})

    @classmethod
    def from_env_and_file(cls, path: Path | None = None) -> RuntimeConfig:
        """Load an optional YAML file, then append plugin dirs from the environment."""
        config = cls.from_yaml(path) if path is not None else cls()
        extra = os.environ.get(PLUGIN_DIRS_ENV, "")
        if extra:
            config.plugin_dirs = dedupe_preserve_order(
                config.plugin_dirs + extra.split(os.pathsep)
            )
        return config

    def to_dict(self) -> dict[str, Any]:
        """Convert config to a dictionary."""
        return {
            "plugin_dirs": list(self.plugin_dirs),
            "max_history_messages": self.max_history_messages,
            "max_history_chars": self.max_history_chars,
            "max_referenced_files": self.max_referenced_files,
            "mention_search_limit": self.mention_search_limit,
            "hook_preview_chars": self.hook_preview_chars,
            "tool_preview_chars": self.tool_preview_chars,
            "thinking_preview_chars": self.thinking_preview_chars,
            "subagent_removal_delay": self.subagent_removal_delay,
            "delegation_tools": list(self.delegation_tools),
            "file_write_tools": list(self.file_write_tools),
            "hook_timeout_seconds": self.hook_timeout_seconds,
        }


@dataclass
class AgentProfile:
    """A named agent profile; only the plugin directories matter here."""

    id: str
    name: str = ""
    plugin_dirs: list[str] = field(default_factory=list)


@dataclass
class ProfilesConfig:
    """The set of configured agent profiles."""

    default_profile_id: str = "default"
    profiles: list[AgentProfile] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProfilesConfig:
        profiles = [
            AgentProfile(
                id=str(entry.get("id", "")),
                name=str(entry.get("name", "")),
                plugin_dirs=[str(p) for p in entry.get("plugin_dirs", [])],
            )
            for entry in data.get("profiles", [])
        ]
        return cls(
            default_profile_id=data.get("default_profile_id", "default"),
            profiles=profiles,
        )

    def collect_plugin_dirs(self) -> list[str]:
        """Union of every profile's plugin dirs, first-seen order."""
        return dedupe_preserve_order(
            [path for profile in self.profiles for path in profile.plugin_dirs]
        )
