"""Tests for the plugin runtime."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

from agent_space.config import AgentProfile, ProfilesConfig, RuntimeConfig
from agent_space.plugins import (
    CommandContext,
    CommandResult,
    HookEvent,
    PluginLoadState,
    PluginRuntime,
    PromptCancel,
    PromptCancelled,
    PromptTransformContext,
    SessionEndHook,
    SessionStartHook,
    normalize_command_name,
)
from agent_space.plugins.loader import module_name_for
from agent_space.plugins.runtime import normalize_command_result

HELLO_PLUGIN = r"""
from pathlib import Path

LOG = Path(__file__).with_name("calls.log")


def note(line):
    with open(LOG, "a") as f:
        f.write(line + "\n")


def register(api):
    note("register")
    api.register_command("hello", lambda ctx: f"Hello {ctx.args_raw}".strip(), "Say hello")

    def cleanup():
        note("dispose")

    return cleanup
"""

FAILING_PLUGIN = """
def register(api):
    api.register_command("half", lambda ctx: "never")
    raise RuntimeError("bad plugin")
"""

ASYNC_PLUGIN = """
import asyncio


async def register(api):
    await asyncio.sleep(0)
    api.on("session_start", lambda payload: None)
    api.register_prompt_transformer(lambda prompt, ctx: prompt + " [async]")
    return {"dispose": lambda: None}
"""


def calls(root: Path) -> list[str]:
    log = root / "calls.log"
    return log.read_text().splitlines() if log.exists() else []


def bump_mtime(path: Path) -> None:
    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 5_000_000_000))


def plugin_entry(snapshot, name: str):
    return next(entry for entry in snapshot.plugins if entry.plugin.name == name)


def events_named(caplog: pytest.LogCaptureFixture, name: str) -> list[logging.LogRecord]:
    return [r for r in caplog.records if getattr(r, "event_name", "") == name]


class TestCatalogSync:
    @pytest.mark.asyncio
    async def test_empty_catalog_has_builtin_commands(self, runtime: PluginRuntime) -> None:
        runtime.initialize()

        snapshot = await runtime.sync_plugin_catalog([])

        assert snapshot.plugins == ()
        assert snapshot.warnings == ()
        assert "plugins" in snapshot.command_names
        assert "plugins-reload" in snapshot.command_names

    @pytest.mark.asyncio
    async def test_loads_plugin_and_its_command(
        self, runtime: PluginRuntime, plugins_dir: Path, make_plugin: Callable
    ) -> None:
        make_plugin("hello", HELLO_PLUGIN)

        snapshot = await runtime.sync_plugin_catalog([str(plugins_dir)])

        entry = plugin_entry(snapshot, "hello")
        assert entry.load_state is PluginLoadState.LOADED
        assert entry.error is None
        assert "hello" in snapshot.command_names
        result = await runtime.execute_command("/hello", CommandContext(args_raw="world"))
        assert result == CommandResult(handled=True, message="Hello world")

    @pytest.mark.asyncio
    async def test_unchanged_dirs_are_a_no_op(
        self, runtime: PluginRuntime, plugins_dir: Path, make_plugin: Callable
    ) -> None:
        root = make_plugin("hello", HELLO_PLUGIN)

        first = await runtime.sync_plugin_catalog([str(plugins_dir)])
        second = await runtime.sync_plugin_catalog([f" {plugins_dir} ", str(plugins_dir)])

        assert second is first
        assert calls(root) == ["register"]

    @pytest.mark.asyncio
    async def test_rescan_keeps_unmodified_plugins(
        self, runtime: PluginRuntime, plugins_dir: Path, make_plugin: Callable
    ) -> None:
        root = make_plugin("hello", HELLO_PLUGIN)
        await runtime.sync_plugin_catalog([str(plugins_dir)])
        instance = runtime.get_loaded_plugins()[0]

        await runtime.rescan()

        assert runtime.get_loaded_plugins()[0] is instance
        assert calls(root) == ["register"]

    @pytest.mark.asyncio
    async def test_modified_entry_is_reloaded(
        self, runtime: PluginRuntime, plugins_dir: Path, make_plugin: Callable
    ) -> None:
        root = make_plugin("hello", HELLO_PLUGIN)
        await runtime.sync_plugin_catalog([str(plugins_dir)])

        bump_mtime(root / "index.py")
        snapshot = await runtime.rescan()

        assert calls(root) == ["register", "dispose", "register"]
        assert plugin_entry(snapshot, "hello").load_state is PluginLoadState.LOADED
        assert "hello" in snapshot.command_names

    @pytest.mark.asyncio
    async def test_removed_plugin_is_disposed(
        self, runtime: PluginRuntime, plugins_dir: Path, make_plugin: Callable
    ) -> None:
        root = make_plugin("hello", HELLO_PLUGIN)
        await runtime.sync_plugin_catalog([str(plugins_dir)])

        (root / "agent-space.plugin.json").unlink()
        snapshot = await runtime.rescan()

        assert snapshot.plugins == ()
        assert "hello" not in snapshot.command_names
        assert calls(root) == ["register", "dispose"]
        assert runtime.get_loaded_plugins() == []

    @pytest.mark.asyncio
    async def test_failed_register_is_isolated(
        self,
        runtime: PluginRuntime,
        plugins_dir: Path,
        make_plugin: Callable,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        make_plugin("broken", FAILING_PLUGIN)
        make_plugin("hello", HELLO_PLUGIN)

        with caplog.at_level(logging.INFO, logger="agent_space.events"):
            snapshot = await runtime.sync_plugin_catalog([str(plugins_dir)])

        broken = plugin_entry(snapshot, "broken")
        assert broken.load_state is PluginLoadState.FAILED
        assert broken.error == "register() failed: bad plugin"
        assert "half" not in snapshot.command_names
        assert plugin_entry(snapshot, "hello").load_state is PluginLoadState.LOADED
        failures = events_named(caplog, "plugin.load.failed")
        assert failures[0].event_payload["pluginId"] == "broken"

    @pytest.mark.asyncio
    async def test_missing_entry_file_fails(
        self, runtime: PluginRuntime, plugins_dir: Path, make_plugin: Callable
    ) -> None:
        make_plugin("ghost")

        snapshot = await runtime.sync_plugin_catalog([str(plugins_dir)])

        ghost = plugin_entry(snapshot, "ghost")
        assert ghost.load_state is PluginLoadState.FAILED
        assert ghost.error is not None
        assert ghost.error.startswith("Plugin entry is not a file")

    @pytest.mark.asyncio
    async def test_plugin_without_entry_is_skipped(
        self, runtime: PluginRuntime, plugins_dir: Path, make_plugin: Callable
    ) -> None:
        make_plugin("metadata-only", entry=None)

        snapshot = await runtime.sync_plugin_catalog([str(plugins_dir)])

        entry = plugin_entry(snapshot, "metadata-only")
        assert entry.load_state is PluginLoadState.SKIPPED
        assert entry.entry_path is None

    @pytest.mark.asyncio
    async def test_module_without_register_is_unloaded(
        self, runtime: PluginRuntime, plugins_dir: Path, make_plugin: Callable
    ) -> None:
        make_plugin("inert", "VALUE = 1\n")

        snapshot = await runtime.sync_plugin_catalog([str(plugins_dir)])

        entry = plugin_entry(snapshot, "inert")
        assert entry.load_state is PluginLoadState.FAILED
        assert "register" in entry.error
        prefix = module_name_for(Path(entry.entry_path), 0)[:-1]
        assert not [name for name in sys.modules if name.startswith(prefix)]

    @pytest.mark.asyncio
    async def test_command_conflict_survives_rescan(
        self, runtime: PluginRuntime, plugins_dir: Path, make_plugin: Callable
    ) -> None:
        source = 'def register(api):\n    api.register_command("dup", lambda ctx: "hi")\n'
        make_plugin("a", source)
        second = make_plugin("b", source)
        warning = "Command /dup from a was replaced by b"

        first = await runtime.sync_plugin_catalog([str(plugins_dir)])
        rescanned = await runtime.rescan()

        assert first.warnings == (warning,)
        assert rescanned.warnings == (warning,)

        (second / "agent-space.plugin.json").unlink()
        after_removal = await runtime.rescan()

        assert after_removal.warnings == ()

    @pytest.mark.asyncio
    async def test_async_register(
        self, runtime: PluginRuntime, plugins_dir: Path, make_plugin: Callable
    ) -> None:
        make_plugin("async", ASYNC_PLUGIN)

        snapshot = await runtime.sync_plugin_catalog([str(plugins_dir)])

        assert plugin_entry(snapshot, "async").load_state is PluginLoadState.LOADED
        assert runtime.transformer_count == 1
        assert runtime.hook_count(HookEvent.SESSION_START) == 2

    @pytest.mark.asyncio
    async def test_missing_dir_warns(self, runtime: PluginRuntime, tmp_path: Path) -> None:
        missing = tmp_path / "nowhere"

        snapshot = await runtime.sync_plugin_catalog([str(missing)])

        assert snapshot.warnings == (f"Plugin dir not found: {missing}",)
        assert snapshot.directories == ()

    @pytest.mark.asyncio
    async def test_home_relative_dirs(self, runtime: PluginRuntime, tmp_path: Path) -> None:
        home_plugins = tmp_path / "home" / "plugins"
        home_plugins.mkdir()

        snapshot = await runtime.sync_plugin_catalog(["~/plugins"])

        assert snapshot.directories == (str(home_plugins),)
        assert snapshot.warnings == ()

    @pytest.mark.asyncio
    async def test_sync_from_profiles(
        self, runtime: PluginRuntime, plugins_dir: Path, make_plugin: Callable
    ) -> None:
        make_plugin("hello", HELLO_PLUGIN)
        profiles = ProfilesConfig(
            profiles=[
                AgentProfile(id="a", plugin_dirs=[str(plugins_dir)]),
                AgentProfile(id="b", plugin_dirs=[str(plugins_dir)]),
            ]
        )

        snapshot = await runtime.sync_from_profiles(profiles)

        assert snapshot.directories == (str(plugins_dir),)
        assert len(snapshot.plugins) == 1

    @pytest.mark.asyncio
    async def test_shutdown_disposes_plugins(
        self, runtime: PluginRuntime, plugins_dir: Path, make_plugin: Callable
    ) -> None:
        root = make_plugin("hello", HELLO_PLUGIN)
        await runtime.sync_plugin_catalog([str(plugins_dir)])

        await runtime.shutdown()

        assert calls(root) == ["register", "dispose"]
        assert plugin_entry(runtime.snapshot, "hello").load_state is PluginLoadState.PENDING
        assert "hello" not in runtime.snapshot.command_names

    @pytest.mark.asyncio
    async def test_snapshot_to_dict(
        self, runtime: PluginRuntime, plugins_dir: Path, make_plugin: Callable
    ) -> None:
        make_plugin("hello", HELLO_PLUGIN)

        data = (await runtime.sync_plugin_catalog([str(plugins_dir)])).to_dict()

        assert data["plugins"][0]["loadState"] == "loaded"
        assert data["plugins"][0]["source"] == "agent-space.plugin.json"
        assert {"name": "hello", "pluginId": "hello", "description": "Say hello"} in data[
            "commands"
        ]


class TestSubscribe:
    @pytest.mark.asyncio
    async def test_listener_receives_snapshots(self, runtime: PluginRuntime) -> None:
        seen = []
        unsubscribe = runtime.subscribe(seen.append)

        await runtime.sync_plugin_catalog([])
        assert seen[-1] is runtime.snapshot

        count = len(seen)
        unsubscribe()
        runtime.register_command("later", lambda ctx: None)

        assert len(seen) == count

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_publish(self, runtime: PluginRuntime) -> None:
        def broken(snapshot):
            raise RuntimeError("listener")

        runtime.subscribe(broken)

        snapshot = await runtime.sync_plugin_catalog([])

        assert "plugins" in snapshot.command_names


class TestHooks:
    @pytest.mark.asyncio
    async def test_ascending_order_then_registration_order(self, runtime: PluginRuntime) -> None:
        order = []
        runtime.register_hook("session_start", lambda p: order.append("b"), order=10)
        runtime.register_hook("session_start", lambda p: order.append("a1"), order=5)
        runtime.register_hook(HookEvent.SESSION_START, lambda p: order.append("c"))
        runtime.register_hook("session_start", lambda p: order.append("a2"), order=5)

        await runtime.emit_hook(HookEvent.SESSION_START, SessionStartHook())

        assert order == ["a1", "a2", "b", "c"]

    @pytest.mark.asyncio
    async def test_async_handlers_are_awaited_in_sequence(self, runtime: PluginRuntime) -> None:
        order = []

        async def slow(payload):
            await asyncio.sleep(0.01)
            order.append("slow")

        runtime.register_hook("session_end", slow, order=1)
        runtime.register_hook("session_end", lambda p: order.append("fast"), order=2)

        await runtime.emit_hook("session_end", SessionEndHook(status="error"))

        assert order == ["slow", "fast"]

    @pytest.mark.asyncio
    async def test_failing_handler_is_logged_and_skipped(
        self, runtime: PluginRuntime, caplog: pytest.LogCaptureFixture
    ) -> None:
        order = []

        def broken(payload):
            raise ValueError("nope")

        runtime.register_hook("session_start", broken, plugin_id="bad", order=1)
        runtime.register_hook("session_start", lambda p: order.append("ok"), order=2)

        with caplog.at_level(logging.INFO, logger="agent_space.events"):
            await runtime.emit_hook("session_start", SessionStartHook())

        assert order == ["ok"]
        failure = events_named(caplog, "plugin.hook.failed")[0]
        assert failure.event_payload["pluginId"] == "bad"
        assert failure.event_payload["error"] == "nope"

    @pytest.mark.asyncio
    async def test_timeout_cuts_off_slow_handler(
        self, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        runtime = PluginRuntime(RuntimeConfig(hook_timeout_seconds=0.05), home_dir=str(tmp_path))
        order = []

        async def hangs(payload):
            await asyncio.sleep(5)
            order.append("hung")

        runtime.register_hook("session_start", hangs, order=1)
        runtime.register_hook("session_start", lambda p: order.append("next"), order=2)

        with caplog.at_level(logging.INFO, logger="agent_space.events"):
            await runtime.emit_hook("session_start", SessionStartHook())

        assert order == ["next"]
        failure = events_named(caplog, "plugin.hook.failed")[0]
        assert failure.event_payload["error"] == "TimeoutError"

    @pytest.mark.asyncio
    async def test_dispose_removes_handler(self, runtime: PluginRuntime) -> None:
        order = []
        dispose = runtime.register_hook("session_start", lambda p: order.append("x"))

        dispose()
        dispose()
        await runtime.emit_hook("session_start", SessionStartHook())

        assert order == []
        assert runtime.hook_count("session_start") == 0

    @pytest.mark.asyncio
    async def test_payload_type_is_checked(self, runtime: PluginRuntime) -> None:
        runtime.register_hook("session_start", lambda p: None)

        with pytest.raises(TypeError, match="SessionStartHook"):
            await runtime.emit_hook("session_start", SessionEndHook())

    @pytest.mark.asyncio
    async def test_unknown_event(self, runtime: PluginRuntime) -> None:
        with pytest.raises(ValueError, match="Unknown hook event"):
            runtime.register_hook("on_everything", lambda p: None)
        with pytest.raises(ValueError, match="Unknown hook event"):
            await runtime.emit_hook("on_everything", SessionStartHook())

    def test_initialize_registers_diagnostics_once(self, runtime: PluginRuntime) -> None:
        runtime.initialize()
        runtime.initialize()

        assert runtime.hook_count() == len(HookEvent)
        assert runtime.hook_count(HookEvent.TOOL_RESULT_PERSIST) == 1


class TestCommands:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("plugins", "plugins"),
            (" /Plugins ", "plugins"),
            ("/plugins-reload", "plugins-reload"),
            ("my.cmd_2", "my.cmd_2"),
            ("", None),
            ("/", None),
            ("two words", None),
            ("emoji✨", None),
            ("//double", None),
        ],
    )
    def test_normalize_command_name(self, raw: str, expected: str | None) -> None:
        assert normalize_command_name(raw) == expected

    def test_register_rejects_invalid_name(self, runtime: PluginRuntime) -> None:
        with pytest.raises(ValueError, match="Invalid command name"):
            runtime.register_command("bad name", lambda ctx: None)

    @pytest.mark.asyncio
    async def test_unknown_command_is_not_handled(self, runtime: PluginRuntime) -> None:
        assert await runtime.execute_command("missing", CommandContext()) == CommandResult(
            handled=False
        )
        assert (await runtime.execute_command("bad name", CommandContext())).handled is False

    @pytest.mark.asyncio
    async def test_lookup_is_case_insensitive(self, runtime: PluginRuntime) -> None:
        runtime.register_command("echo", lambda ctx: ctx.args_raw)

        result = await runtime.execute_command("/ECHO", CommandContext(args_raw="hi"))

        assert result.message == "hi"

    @pytest.mark.asyncio
    async def test_async_command(self, runtime: PluginRuntime) -> None:
        async def run(ctx):
            return {"message": "done"}

        runtime.register_command("job", run)

        assert (await runtime.execute_command("job", CommandContext())).message == "done"

    @pytest.mark.asyncio
    async def test_exception_becomes_error_result(self, runtime: PluginRuntime) -> None:
        def boom(ctx):
            raise RuntimeError("kaput")

        runtime.register_command("boom", boom)

        result = await runtime.execute_command("boom", CommandContext())

        assert result == CommandResult(
            handled=True, message="Command /boom failed: kaput", is_error=True
        )

    @pytest.mark.asyncio
    async def test_conflict_later_registration_wins(self, runtime: PluginRuntime) -> None:
        dispose_first = runtime.register_command("dup", lambda ctx: "first", plugin_id="one")
        runtime.register_command("/DUP", lambda ctx: "second", plugin_id="two")

        assert runtime.snapshot.warnings == ("Command /dup from one was replaced by two",)
        assert (await runtime.execute_command("dup", CommandContext())).message == "second"

        dispose_first()

        assert (await runtime.execute_command("dup", CommandContext())).message == "second"

    def test_get_commands_sorted(self, runtime: PluginRuntime) -> None:
        runtime.register_command("zeta", lambda ctx: None)
        runtime.register_command("alpha", lambda ctx: None)

        assert [c.name for c in runtime.get_commands()] == ["alpha", "zeta"]


class TestNormalizeCommandResult:
    @pytest.mark.parametrize(
        "value,expected",
        [
            (None, CommandResult(handled=True)),
            ("", CommandResult(handled=True)),
            ("text", CommandResult(handled=True, message="text")),
            ({"message": "m"}, CommandResult(handled=True, message="m")),
            ({"error": "e"}, CommandResult(handled=True, message="e", is_error=True)),
            (
                {"message": "m", "isError": True},
                CommandResult(handled=True, message="m", is_error=True),
            ),
            (
                CommandResult(handled=True, message="x", is_error=True),
                CommandResult(handled=True, message="x", is_error=True),
            ),
        ],
    )
    def test_shapes(self, value, expected: CommandResult) -> None:
        assert normalize_command_result(value) == expected


class TestPromptTransformers:
    @pytest.mark.asyncio
    async def test_chain_in_order(self, runtime: PluginRuntime) -> None:
        runtime.register_prompt_transformer(lambda p, ctx: p + " B", order=20)
        runtime.register_prompt_transformer(lambda p, ctx: p + " A", order=10)
        runtime.register_prompt_transformer(lambda p, ctx: None, order=5)

        result = await runtime.apply_prompt_transformers("P", PromptTransformContext())

        assert result.prompt == "P A B"
        assert result.transformed is True
        assert result.blocked is False

    @pytest.mark.asyncio
    async def test_no_change_is_not_transformed(self, runtime: PluginRuntime) -> None:
        runtime.register_prompt_transformer(lambda p, ctx: p)
        runtime.register_prompt_transformer(lambda p, ctx: {"prompt": p})

        result = await runtime.apply_prompt_transformers("P", PromptTransformContext())

        assert result.prompt == "P"
        assert result.transformed is False

    @pytest.mark.asyncio
    async def test_mapping_prompt_and_context(self, runtime: PluginRuntime) -> None:
        async def tag(prompt, ctx):
            return {"prompt": f"{prompt} ({ctx.chat_session_id})"}

        runtime.register_prompt_transformer(tag)

        result = await runtime.apply_prompt_transformers(
            "P", PromptTransformContext(chat_session_id="chat-9")
        )

        assert result.prompt == "P (chat-9)"

    @pytest.mark.asyncio
    async def test_cancel_short_circuits(self, runtime: PluginRuntime) -> None:
        after = []
        runtime.register_prompt_transformer(lambda p, ctx: p + "!", order=1)
        runtime.register_prompt_transformer(lambda p, ctx: PromptCancel("no secrets"), order=2)
        runtime.register_prompt_transformer(lambda p, ctx: after.append(p), order=3)

        result = await runtime.apply_prompt_transformers("P", PromptTransformContext())

        assert result.blocked is True
        assert result.error == "no secrets"
        assert result.prompt == "P!"
        assert result.transformed is True
        assert after == []

    @pytest.mark.asyncio
    async def test_raised_cancel_uses_default_error(self, runtime: PluginRuntime) -> None:
        def guard(prompt, ctx):
            raise PromptCancelled()

        runtime.register_prompt_transformer(guard, plugin_id="guard")

        result = await runtime.apply_prompt_transformers("P", PromptTransformContext())

        assert result.blocked is True
        assert result.error == "Prompt blocked by plugin guard"

    @pytest.mark.asyncio
    async def test_mapping_cancel(self, runtime: PluginRuntime) -> None:
        runtime.register_prompt_transformer(lambda p, ctx: {"cancel": True, "error": "stop"})

        result = await runtime.apply_prompt_transformers("P", PromptTransformContext())

        assert result.blocked is True
        assert result.error == "stop"

    @pytest.mark.asyncio
    async def test_failing_transformer_is_skipped(self, runtime: PluginRuntime) -> None:
        def broken(prompt, ctx):
            raise RuntimeError("oops")

        runtime.register_prompt_transformer(broken, order=1)
        runtime.register_prompt_transformer(lambda p, ctx: p + " ok", order=2)

        result = await runtime.apply_prompt_transformers("P", PromptTransformContext())

        assert result.prompt == "P ok"
        assert result.blocked is False

    @pytest.mark.asyncio
    async def test_dispose(self, runtime: PluginRuntime) -> None:
        dispose = runtime.register_prompt_transformer(lambda p, ctx: "changed")

        dispose()

        assert runtime.transformer_count == 0
        result = await runtime.apply_prompt_transformers("P", PromptTransformContext())
        assert result.prompt == "P"
