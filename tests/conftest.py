"""Shared pytest fixtures for agent-space tests."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from textwrap import dedent
from typing import Any

import pytest

from agent_space.config import RuntimeConfig
from agent_space.plugins import PluginRuntime
from agent_space.session import AgentActivity, AgentRecord, NullCollaborators


@pytest.fixture
def config() -> RuntimeConfig:
    return RuntimeConfig()


@pytest.fixture
def runtime(tmp_path: Path, config: RuntimeConfig) -> PluginRuntime:
    """A runtime whose ``~`` points into the test's tmp dir."""
    home = tmp_path / "home"
    home.mkdir()
    return PluginRuntime(config, home_dir=str(home))


@pytest.fixture
def plugins_dir(tmp_path: Path) -> Path:
    path = tmp_path / "plugins"
    path.mkdir()
    return path


@pytest.fixture
def make_plugin(plugins_dir: Path) -> Callable[..., Path]:
    """
    Create ``plugins_dir/<name>`` with an agent-space manifest and an
    ``index.py`` entry holding ``source``.
    """

    def _make(
        name: str,
        source: str | None = None,
        entry: str | None = "index.py",
        manifest: dict[str, Any] | None = None,
    ) -> Path:
        root = plugins_dir / name
        root.mkdir()
        data: dict[str, Any] = {"id": name, "name": name, "version": "1.0.0"}
        if entry is not None:
            data["rendererEntry"] = entry
        data.update(manifest or {})
        (root / "agent-space.plugin.json").write_text(json.dumps(data))
        if source is not None and entry is not None:
            (root / entry).write_text(dedent(source))
        return root

    return _make


class RecordingCollaborators(NullCollaborators):
    """Collaborators that record every call for assertions."""

    def __init__(self, agent_id: str | None = "agent-1", reward: float | None = None) -> None:
        self.agent_id = agent_id
        self.reward = reward
        self.updates: list[tuple[str, dict[str, Any]]] = []
        self.added: list[AgentRecord] = []
        self.removed: list[str] = []
        self.cleared_parents: list[str] = []
        self.file_counts: list[str] = []
        self.activities: list[AgentActivity] = []
        self.persisted: list[tuple[str, str, str | None]] = []
        self.finalized: list[str] = []
        self.reset_calls = 0
        self.completion_signals = 0

    def get_agent_id(self) -> str | None:
        return self.agent_id

    def get_agent_name(self) -> str:
        return "Builder"

    def update_agent(self, agent_id: str, **updates: Any) -> None:
        self.updates.append((agent_id, updates))

    def add_agent(self, agent: AgentRecord) -> None:
        self.added.append(agent)

    def remove_agent(self, agent_id: str) -> None:
        self.removed.append(agent_id)

    def clear_subagents_for_parent(self, parent_agent_id: str) -> None:
        self.cleared_parents.append(parent_agent_id)

    def increment_agent_file_count(self, agent_id: str) -> None:
        self.file_counts.append(agent_id)

    def add_activity(self, activity: AgentActivity) -> None:
        self.activities.append(activity)

    async def persist_message(self, content: str, role: str, directory: str | None) -> None:
        self.persisted.append((content, role, directory))

    def finalize_run_reward(self, outcome, run_state) -> float | None:
        self.finalized.append(outcome)
        return self.reward

    def reset_run_state(self) -> None:
        self.reset_calls += 1

    def play_completion_signal(self) -> None:
        self.completion_signals += 1

    def statuses_for(self, agent_id: str) -> list[Any]:
        return [u["status"] for a, u in self.updates if a == agent_id and "status" in u]


@pytest.fixture
def collaborators() -> RecordingCollaborators:
    return RecordingCollaborators()


def record_hooks(runtime: PluginRuntime) -> list[tuple[str, Any]]:
    """Register a recorder on every hook event; returns the shared log."""
    from agent_space.plugins import HookEvent

    calls: list[tuple[str, Any]] = []
    for event in HookEvent:
        runtime.register_hook(
            event,
            lambda payload, name=event.value: calls.append((name, payload)),
            plugin_id="test.recorder",
        )
    return calls
