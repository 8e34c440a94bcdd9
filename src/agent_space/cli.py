"""
Command-line interface for the agent-space runtime.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

import yaml
from rich.console import Console
from rich.table import Table

from agent_space.config import RuntimeConfig, dedupe_preserve_order
from agent_space.logging import setup_logging
from agent_space.plugins import CommandContext, PluginLoadState, PluginRuntime
from agent_space.prompt import Attachment, local_pipeline_deps
from agent_space.session.orchestrator import ChatTurnOrchestrator

console = Console()


def config_search_paths() -> list[Path]:
    return [
        Path.cwd() / "agent-space.yaml",
        Path.home() / ".config" / "agent-space" / "config.yaml",
    ]


STATE_STYLES = {
    PluginLoadState.LOADED: "green",
    PluginLoadState.FAILED: "red",
    PluginLoadState.SKIPPED: "yellow",
    PluginLoadState.PENDING: "dim",
}


def _add_dir_option(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-d",
        "--dir",
        action="append",
        dest="dirs",
        help="Plugin directories to scan (repeatable)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Agent Space runtime CLI",
        prog="agent-space",
    )

    # Global options
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose output (debug logging)",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        help="Path to a YAML config file",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # plugins
    plugins_parser = subparsers.add_parser("plugins", help="Show the plugin catalog")
    _add_dir_option(plugins_parser)
    plugins_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )

    # command
    command_parser = subparsers.add_parser("command", help="Run a plugin command")
    command_parser.add_argument("name", help="Command name, with or without a leading /")
    command_parser.add_argument("args", nargs="*", help="Command arguments")
    _add_dir_option(command_parser)

    # prompt
    prompt_parser = subparsers.add_parser("prompt", help="Assemble the prompt for a message")
    prompt_parser.add_argument("message", help="User message (may contain @mentions)")
    prompt_parser.add_argument(
        "--cwd",
        default=".",
        help="Working directory for mentions and workspace context",
    )
    prompt_parser.add_argument(
        "-a",
        "--attach",
        action="append",
        dest="attachments",
        help="Attach a file (repeatable)",
    )
    _add_dir_option(prompt_parser)

    # config
    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_subparsers.add_parser("show", help="Show current configuration")
    config_init_parser = config_subparsers.add_parser("init", help="Initialize a new config file")
    config_init_parser.add_argument(
        "-o",
        "--output",
        default="agent-space.yaml",
        help="Output file path",
    )

    return parser


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if getattr(args, "verbose", False):
        setup_logging("DEBUG")
    else:
        setup_logging("WARNING")

    if args.command == "plugins":
        asyncio.run(cmd_plugins(args))
    elif args.command == "command":
        asyncio.run(cmd_command(args))
    elif args.command == "prompt":
        asyncio.run(cmd_prompt(args))
    elif args.command == "config":
        cmd_config(args)
    else:
        parser.print_help()


def load_config(path: Path | None = None) -> RuntimeConfig:
    """Load the explicit config file, else the first one found on the search path."""
    if path is None:
        path = next((p for p in config_search_paths() if p.exists()), None)
    return RuntimeConfig.from_env_and_file(path)


async def _create_runtime(args: argparse.Namespace) -> PluginRuntime:
    """Create and sync a plugin runtime from CLI args."""
    config = load_config(args.config)
    config.plugin_dirs = dedupe_preserve_order(config.plugin_dirs + list(args.dirs or []))
    runtime = PluginRuntime(config)
    runtime.initialize()
    await runtime.sync_plugin_catalog(config.plugin_dirs)
    return runtime


async def cmd_plugins(args: argparse.Namespace) -> None:
    """Show the plugin catalog."""
    runtime = await _create_runtime(args)
    snapshot = runtime.snapshot
    await runtime.shutdown()

    if args.json:
        console.print_json(json.dumps(snapshot.to_dict(), indent=2))
        return

    table = Table(title="Plugins")
    table.add_column("Name", style="cyan")
    table.add_column("Version", style="dim")
    table.add_column("State")
    table.add_column("Manifest", style="dim")

    for entry in snapshot.plugins:
        style = STATE_STYLES[entry.load_state]
        table.add_row(
            entry.plugin.name,
            entry.plugin.version,
            f"[{style}]{entry.load_state.value}[/{style}]",
            entry.plugin.source.value,
        )

    console.print(table)
    console.print(f"\n[bold]Commands:[/bold] {', '.join('/' + n for n in snapshot.command_names)}")
    for entry in snapshot.plugins:
        if entry.error:
            console.print(f"  [red]✗[/red] {entry.plugin.name}: {entry.error}")
    for warning in snapshot.warnings:
        console.print(f"  [yellow]⚠[/yellow] {warning}")
    console.print(f"\n[dim]Total: {len(snapshot.plugins)} plugins[/dim]")


async def cmd_command(args: argparse.Namespace) -> None:
    """Run a plugin command."""
    runtime = await _create_runtime(args)
    args_raw = " ".join(args.args)
    try:
        result = await runtime.execute_command(
            args.name,
            CommandContext(
                chat_session_id="cli",
                workspace_directory=str(Path.cwd()),
                raw_message=f"/{args.name.lstrip('/')} {args_raw}".strip(),
                args_raw=args_raw,
                args=list(args.args),
            ),
        )
    finally:
        await runtime.shutdown()

    if not result.handled:
        console.print(f"[red]Unknown command: /{args.name.lstrip('/')}[/red]")
        sys.exit(1)
    if result.message:
        if result.is_error:
            console.print(f"[red]Error:[/red] {result.message}")
        else:
            console.print(result.message, markup=False, highlight=False)
    if result.is_error:
        sys.exit(1)


async def cmd_prompt(args: argparse.Namespace) -> None:
    """Assemble and print the prompt for a message."""
    runtime = await _create_runtime(args)
    working_directory = str(Path(args.cwd).resolve())
    chat = ChatTurnOrchestrator(
        "cli",
        runtime,
        local_pipeline_deps(runtime.config),
        working_directory=working_directory,
    )
    attachments = [Attachment.from_path(p) for p in args.attachments or []]
    try:
        outcome = await chat.submit(args.message, attachments=attachments)
        await chat.router.drain()
    finally:
        await runtime.shutdown()

    if outcome.kind == "prompt":
        console.print(outcome.prompt, markup=False, highlight=False)
        if outcome.assembly and outcome.assembly.unresolved_mention_count:
            console.print(
                f"\n[yellow]Unresolved mentions: {outcome.assembly.unresolved_mention_count}"
                "[/yellow]"
            )
        return

    if outcome.kind == "blocked":
        console.print(f"[red]Blocked:[/red] {outcome.error}")
        sys.exit(1)

    for message in outcome.messages:
        console.print(message.content, markup=False, highlight=False)
    if outcome.error:
        sys.exit(1)


def cmd_config(args: argparse.Namespace) -> None:
    """Configuration management commands."""
    if args.config_command == "show":
        _config_show(args.config)
    elif args.config_command == "init":
        _config_init(args.output)
    else:
        console.print("[yellow]Usage: agent-space config <show|init>[/yellow]")


def _config_show(path: Path | None) -> None:
    """Show current configuration."""
    loaded_from = path or next((p for p in config_search_paths() if p.exists()), None)
    if loaded_from is None:
        console.print("[dim]No config file found. Using defaults.[/dim]")
    else:
        console.print(f"[dim]Loaded from: {loaded_from}[/dim]\n")

    config = load_config(loaded_from)
    console.print("[bold]Current Configuration:[/bold]\n")
    console.print(yaml.dump(config.to_dict(), default_flow_style=False, sort_keys=False))


def _config_init(output: str) -> None:
    """Initialize a new config file."""
    output_path = Path(output)

    if output_path.exists():
        console.print(f"[red]File already exists: {output_path}[/red]")
        sys.exit(1)

    with open(output_path, "w") as f:
        yaml.dump(RuntimeConfig().to_dict(), f, default_flow_style=False, sort_keys=False)

    console.print(f"[green]Created config file: {output_path}[/green]")


if __name__ == "__main__":
    main()
