"""
Built-in hooks and commands shipped with the runtime.

* Diagnostics hooks log every hook event (payload previews trimmed).
* ``/plugins [reload|rescan]`` lists loaded plugins, commands and transformers.
* ``/plugins-reload`` forces a rescan and reports load counts.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import TYPE_CHECKING, Any

from agent_space.logging import log_event
from agent_space.plugins.hooks import HookEvent, HookPayload
from agent_space.plugins.models import CommandContext, CommandResult, PluginLoadState

if TYPE_CHECKING:
    from agent_space.plugins.runtime import PluginRuntime

DIAGNOSTICS_PLUGIN_ID = "builtin.diagnostics"
DIAGNOSTICS_ORDER = 50

_PREVIEW_LIMITS = {"message": 500, "prompt_preview": 240, "content_preview": 240}


def sanitize_payload(payload: HookPayload) -> dict[str, Any]:
    """Copy a payload into a dict with long text fields clipped."""
    data = asdict(payload)
    for key, limit in _PREVIEW_LIMITS.items():
        value = data.get(key)
        if isinstance(value, str):
            data[key] = value[:limit]
    return data


def register_diagnostics_hooks(runtime: PluginRuntime) -> None:
    for event in HookEvent:
        runtime.register_hook(
            event,
            _make_diagnostics_handler(event),
            plugin_id=DIAGNOSTICS_PLUGIN_ID,
            order=DIAGNOSTICS_ORDER,
        )


def _make_diagnostics_handler(event: HookEvent):
    def handler(payload: HookPayload) -> None:
        log_event("info", f"plugin.hook.{event.value}", sanitize_payload(payload))

    return handler


def register_builtin_commands(runtime: PluginRuntime) -> None:
    from agent_space.plugins.runtime import BUILTIN_PLUGIN_ID

    async def plugins_command(context: CommandContext) -> CommandResult:
        action = context.args[0].lower() if context.args else ""
        header: list[str] = []
        if action in ("reload", "rescan"):
            await runtime.rescan()
            header.append("Plugin catalog rescanned.")
        elif action:
            return CommandResult(
                message=f"Unknown /plugins argument: {action}. Use /plugins [reload|rescan].",
                is_error=True,
            )
        return CommandResult(message="\n".join(header + describe_runtime(runtime)))

    async def plugins_reload_command(context: CommandContext) -> CommandResult:
        snapshot = await runtime.rescan()
        loaded = sum(1 for p in snapshot.plugins if p.load_state is PluginLoadState.LOADED)
        failed = sum(1 for p in snapshot.plugins if p.load_state is PluginLoadState.FAILED)
        skipped = sum(1 for p in snapshot.plugins if p.load_state is PluginLoadState.SKIPPED)
        lines = [
            f"Reloaded plugins: {loaded} loaded, {failed} failed, {skipped} skipped "
            f"({len(snapshot.plugins)} discovered)."
        ]
        for entry in snapshot.plugins:
            if entry.error:
                lines.append(f"- {entry.plugin.name}: {entry.error}")
        return CommandResult(message="\n".join(lines), is_error=failed > 0)

    runtime.register_command(
        "plugins",
        plugins_command,
        plugin_id=BUILTIN_PLUGIN_ID,
        description="List loaded plugins and commands (/plugins reload to rescan)",
    )
    runtime.register_command(
        "plugins-reload",
        plugins_reload_command,
        plugin_id=BUILTIN_PLUGIN_ID,
        description="Rescan plugin directories and reload plugins",
    )


def describe_runtime(runtime: PluginRuntime) -> list[str]:
    snapshot = runtime.snapshot
    loaded = [p for p in snapshot.plugins if p.load_state is PluginLoadState.LOADED]
    lines = [f"Loaded plugins ({len(loaded)}):"]
    if loaded:
        lines.extend(f"- {p.plugin.name} {p.plugin.version} ({p.plugin.id})" for p in loaded)
    else:
        lines.append("- none")

    commands = runtime.get_commands()
    lines.append(f"Commands ({len(commands)}):")
    for command in commands:
        suffix = f" - {command.description}" if command.description else ""
        lines.append(f"- /{command.name}{suffix}")

    lines.append(f"Prompt transformers: {runtime.transformer_count}")
    if snapshot.warnings:
        lines.append("Warnings:")
        lines.extend(f"- {w}" for w in snapshot.warnings)
    return lines
