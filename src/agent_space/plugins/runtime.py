"""
Plugin runtime - discovery, loading, lifecycle, and dispatch.

A single ``PluginRuntime`` owns every registry (hooks, commands, prompt
transformers, loaded plugin instances) and the published catalog snapshot.
There is no module-level state; create one runtime per application.
"""

from __future__ import annotations

import asyncio
import bisect
import itertools
import re
import time
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from agent_space.config import ProfilesConfig, RuntimeConfig, dedupe_preserve_order
from agent_space.logging import get_logger, log_event
from agent_space.plugins.api import PluginAPI
from agent_space.plugins.discovery import discover_plugins, expand_home
from agent_space.plugins.hooks import (
    HookEvent,
    HookPayload,
    check_payload,
    coerce_hook_event,
)
from agent_space.plugins.loader import (
    call_maybe_async,
    load_plugin_module,
    normalize_dispose,
    resolve_entry_path,
    resolve_register,
    unload_plugin_module,
)
from agent_space.plugins.models import (
    DEFAULT_ORDER,
    CatalogCommand,
    CatalogPlugin,
    CommandContext,
    CommandResult,
    DiscoveredPlugin,
    LoadedPluginInstance,
    PluginCatalogSnapshot,
    PluginLoadError,
    PluginLoadState,
    PluginMetadata,
    PromptCancel,
    PromptCancelled,
    PromptTransformContext,
    PromptTransformResult,
    RegisteredCommand,
    RegisteredHook,
    RegisteredPromptTransformer,
)

logger = get_logger("plugins")

BUILTIN_PLUGIN_ID = "builtin"
ANONYMOUS_PLUGIN_ID = "anonymous"

_COMMAND_NAME_RE = re.compile(r"^[a-z0-9._-]+$")

CatalogListener = Callable[[PluginCatalogSnapshot], Any]


def normalize_command_name(raw: str) -> str | None:
    """
    Normalize a command name: trim, drop one leading ``/``, lowercase.

    Returns None when the result is empty or uses characters outside
    ``[a-z0-9._-]``.
    """
    name = raw.strip()
    if name.startswith("/"):
        name = name[1:]
    name = name.strip().lower()
    if not name or not _COMMAND_NAME_RE.match(name):
        return None
    return name


def normalize_command_result(result: Any) -> CommandResult:
    """Map whatever a command returned onto a CommandResult."""
    if isinstance(result, CommandResult):
        return result
    if result is None:
        return CommandResult(handled=True)
    if isinstance(result, str):
        return CommandResult(handled=True, message=result or None)

    if isinstance(result, Mapping):
        get = result.get
    else:
        def get(key: str, default: Any = None) -> Any:
            return getattr(result, key, default)

    message = get("message")
    error = get("error")
    flag = get("is_error", get("isError", False))
    message = message if isinstance(message, str) and message else None
    error = error if isinstance(error, str) and error else None
    return CommandResult(
        handled=True,
        message=message or error,
        is_error=bool(flag) or error is not None,
    )


class PluginRuntime:
    """
    Owns plugin discovery, module lifecycle, registries, and dispatch.

    Usage:
        runtime = PluginRuntime(RuntimeConfig(plugin_dirs=["~/.agent-space/plugins"]))
        snapshot = await runtime.sync_plugin_catalog(runtime.config.plugin_dirs)

        await runtime.emit_hook(HookEvent.SESSION_START, SessionStartHook(...))
        result = await runtime.execute_command("/plugins", CommandContext())
        transformed = await runtime.apply_prompt_transformers(prompt, context)
    """

    def __init__(
        self,
        config: RuntimeConfig | None = None,
        home_dir: str | None = None,
    ) -> None:
        self.config = config or RuntimeConfig()
        self._home_dir = home_dir if home_dir is not None else str(Path.home())

        self._hooks: dict[HookEvent, list[RegisteredHook]] = {e: [] for e in HookEvent}
        self._commands: dict[str, RegisteredCommand] = {}
        self._transformers: list[RegisteredPromptTransformer] = []

        self._hook_ids = itertools.count(1)
        self._command_ids = itertools.count(1)
        self._transformer_ids = itertools.count(1)
        self._sequence = itertools.count()

        self._discovered: list[DiscoveredPlugin] = []
        self._entry_paths: dict[str, str | None] = {}
        self._loaded: dict[str, LoadedPluginInstance] = {}
        self._load_errors: dict[str, str] = {}

        self._requested_dirs: list[str] = []
        self._scanned_dirs: list[str] = []
        self._discovery_warnings: list[str] = []

        self._signature: str | None = None
        self._snapshot = PluginCatalogSnapshot()
        self._listeners: list[CatalogListener] = []
        self._publish_suspended = 0
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Register built-in hooks and commands. Safe to call repeatedly."""
        if self._initialized:
            return
        self._initialized = True

        from agent_space.plugins.builtins import (
            register_builtin_commands,
            register_diagnostics_hooks,
        )

        register_diagnostics_hooks(self)
        register_builtin_commands(self)
        log_event(
            "info",
            "plugin.runtime.initialized",
            {"registeredEvents": [f"{e.value}:{len(h)}" for e, h in self._hooks.items()]},
        )

    async def shutdown(self) -> None:
        """Dispose every loaded plugin and forget the catalog signature."""
        for manifest_path in list(self._loaded):
            await self._dispose_instance(self._loaded.pop(manifest_path))
        self._signature = None
        self._publish()

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> PluginCatalogSnapshot:
        return self._snapshot

    def subscribe(self, listener: CatalogListener) -> Callable[[], None]:
        """Call ``listener(snapshot)`` whenever the catalog changes."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def normalize_plugin_dirs(self, plugin_dirs: list[str]) -> list[str]:
        return dedupe_preserve_order(
            [expand_home(d, self._home_dir) for d in dedupe_preserve_order(plugin_dirs)]
        )

    async def sync_plugin_catalog(
        self, plugin_dirs: list[str], force: bool = False
    ) -> PluginCatalogSnapshot:
        """
        Rescan plugin directories and reconcile loaded plugins.

        An unchanged normalized directory list is a no-op that returns the
        previous snapshot, unless ``force`` is set.
        """
        self.initialize()
        normalized = self.normalize_plugin_dirs(plugin_dirs)
        signature = "::".join(normalized)
        if not force and signature == self._signature:
            return self._snapshot

        plugins, scanned, warnings = discover_plugins(normalized)

        self._publish_suspended += 1
        try:
            self._requested_dirs = normalized
            self._scanned_dirs = scanned
            self._discovery_warnings = warnings
            self._discovered = plugins
            await self._reconcile(plugins)
            self._signature = signature
        finally:
            self._publish_suspended -= 1

        self._publish()
        log_event(
            "info",
            "plugin.catalog.synced",
            {
                "requestedDirectories": len(normalized),
                "scannedDirectories": len(scanned),
                "discoveredPlugins": len(plugins),
                "loadedPlugins": len(self._loaded),
                "failedPlugins": len(self._load_errors),
                "warnings": len(self._snapshot.warnings),
            },
        )
        return self._snapshot

    async def sync_from_profiles(self, profiles: ProfilesConfig | None) -> PluginCatalogSnapshot:
        dirs = profiles.collect_plugin_dirs() if profiles else []
        return await self.sync_plugin_catalog(dirs)

    async def rescan(self) -> PluginCatalogSnapshot:
        """Force a rescan of the last requested directories."""
        return await self.sync_plugin_catalog(self._requested_dirs, force=True)

    def _build_snapshot(self) -> PluginCatalogSnapshot:
        entries: list[CatalogPlugin] = []
        for plugin in self._discovered:
            entry_path = self._entry_paths.get(plugin.manifest_path)
            error = self._load_errors.get(plugin.manifest_path)
            if entry_path is None:
                state = PluginLoadState.SKIPPED
            elif plugin.manifest_path in self._loaded:
                state = PluginLoadState.LOADED
            elif error is not None:
                state = PluginLoadState.FAILED
            else:
                state = PluginLoadState.PENDING
            entries.append(
                CatalogPlugin(plugin=plugin, load_state=state, entry_path=entry_path, error=error)
            )

        registered = self.get_commands()
        commands = tuple(
            CatalogCommand(name=c.name, plugin_id=c.plugin_id, description=c.description)
            for c in registered
        )
        # Conflicts come from the live registry so they survive rescans.
        conflicts = tuple(c.conflict_warning for c in registered if c.conflict_warning)
        return PluginCatalogSnapshot(
            directories=tuple(self._scanned_dirs),
            plugins=tuple(entries),
            commands=commands,
            warnings=tuple(self._discovery_warnings) + conflicts,
            synced_at=time.time(),
        )

    def _publish(self) -> None:
        if self._publish_suspended:
            return
        self._snapshot = self._build_snapshot()
        for listener in list(self._listeners):
            try:
                listener(self._snapshot)
            except Exception as e:
                logger.error("Plugin catalog listener failed: %s", e)

    # ------------------------------------------------------------------
    # Load / unload reconciliation
    # ------------------------------------------------------------------

    async def _reconcile(self, plugins: list[DiscoveredPlugin]) -> None:
        self._entry_paths = {}
        desired: dict[str, str] = {}
        for plugin in plugins:
            entry_path = resolve_entry_path(plugin, self._home_dir)
            self._entry_paths[plugin.manifest_path] = entry_path
            if entry_path is not None:
                desired[plugin.manifest_path] = entry_path

        for manifest_path, instance in list(self._loaded.items()):
            wanted = desired.get(manifest_path)
            if wanted == instance.entry_path and not self._entry_modified(instance):
                continue
            del self._loaded[manifest_path]
            await self._dispose_instance(instance)

        for manifest_path in list(self._load_errors):
            if manifest_path not in desired:
                del self._load_errors[manifest_path]

        for plugin in plugins:
            entry_path = desired.get(plugin.manifest_path)
            if entry_path is None or plugin.manifest_path in self._loaded:
                continue
            try:
                instance = await self._load_plugin(plugin, entry_path)
            except Exception as e:
                self._load_errors[plugin.manifest_path] = str(e)
                log_event(
                    "error",
                    "plugin.load.failed",
                    {"pluginId": plugin.id, "entryPath": entry_path, "error": str(e)},
                )
                continue
            self._loaded[plugin.manifest_path] = instance
            self._load_errors.pop(plugin.manifest_path, None)
            log_event(
                "info", "plugin.load.succeeded", {"pluginId": plugin.id, "entryPath": entry_path}
            )

    @staticmethod
    def _entry_modified(instance: LoadedPluginInstance) -> bool:
        try:
            mtime_ns = Path(instance.entry_path).stat().st_mtime_ns
        except OSError:
            return True
        return instance.entry_mtime_ns is not None and mtime_ns != instance.entry_mtime_ns

    async def _load_plugin(self, plugin: DiscoveredPlugin, entry_path: str) -> LoadedPluginInstance:
        module = load_plugin_module(entry_path)
        try:
            register = resolve_register(module)
        except PluginLoadError:
            unload_plugin_module(entry_path)
            raise
        api = PluginAPI(
            self,
            PluginMetadata(
                id=plugin.id,
                name=plugin.name,
                version=plugin.version,
                description=plugin.description,
                root_dir=plugin.root_dir,
                entry_path=entry_path,
            ),
        )
        try:
            result = await call_maybe_async(register, api)
        except Exception as e:
            api.dispose_all()
            unload_plugin_module(entry_path)
            raise PluginLoadError(f"register() failed: {e}") from e

        cleanup = normalize_dispose(result)

        def dispose() -> Any:
            api.dispose_all()
            unload_plugin_module(entry_path)
            if cleanup is not None:
                return cleanup()
            return None

        return LoadedPluginInstance(
            plugin_id=plugin.id,
            manifest_path=plugin.manifest_path,
            entry_path=entry_path,
            dispose=dispose,
            entry_mtime_ns=Path(entry_path).stat().st_mtime_ns,
        )

    async def _dispose_instance(self, instance: LoadedPluginInstance) -> None:
        try:
            await call_maybe_async(instance.dispose)
        except Exception as e:
            log_event(
                "error",
                "plugin.dispose.failed",
                {"pluginId": instance.plugin_id, "entryPath": instance.entry_path, "error": str(e)},
            )
        else:
            log_event("info", "plugin.unloaded", {"pluginId": instance.plugin_id})

    def get_loaded_plugins(self) -> list[LoadedPluginInstance]:
        return list(self._loaded.values())

    @property
    def load_errors(self) -> dict[str, str]:
        return dict(self._load_errors)

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def register_hook(
        self,
        event: HookEvent | str,
        handler: Callable[..., Any],
        plugin_id: str = ANONYMOUS_PLUGIN_ID,
        order: int = DEFAULT_ORDER,
    ) -> Callable[[], None]:
        """Register a hook handler; returns its disposer."""
        hook_event = coerce_hook_event(event)
        hook = RegisteredHook(
            id=f"hook-{next(self._hook_ids)}",
            event=hook_event,
            plugin_id=plugin_id,
            order=order,
            sequence=next(self._sequence),
            handler=handler,
        )
        hooks = self._hooks[hook_event]
        bisect.insort(hooks, hook, key=lambda h: (h.order, h.sequence))

        def dispose() -> None:
            current = self._hooks[hook_event]
            for index, entry in enumerate(current):
                if entry.id == hook.id:
                    del current[index]
                    break

        return dispose

    def hook_count(self, event: HookEvent | str | None = None) -> int:
        if event is None:
            return sum(len(h) for h in self._hooks.values())
        return len(self._hooks[coerce_hook_event(event)])

    async def emit_hook(self, event: HookEvent | str, payload: HookPayload) -> None:
        """
        Dispatch ``payload`` to every handler of ``event``.

        Handlers run sequentially in ascending order and are awaited one at a
        time. A failing handler is logged and skipped; nothing propagates.
        """
        hook_event = coerce_hook_event(event)
        hooks = self._hooks[hook_event]
        if not hooks:
            return
        check_payload(hook_event, payload)

        for hook in list(hooks):
            try:
                await self._run_handler(hook.handler, payload)
            except Exception as e:
                log_event(
                    "error",
                    "plugin.hook.failed",
                    {
                        "event": hook_event.value,
                        "hookId": hook.id,
                        "pluginId": hook.plugin_id,
                        "error": str(e) or type(e).__name__,
                    },
                )

    async def _run_handler(self, handler: Callable[..., Any], payload: Any) -> None:
        result = handler(payload)
        if not asyncio.iscoroutine(result) and not asyncio.isfuture(result):
            return
        timeout = self.config.hook_timeout_seconds
        if timeout is None:
            await result
        else:
            await asyncio.wait_for(result, timeout)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def register_command(
        self,
        name: str,
        execute: Callable[..., Any],
        plugin_id: str = ANONYMOUS_PLUGIN_ID,
        description: str = "",
    ) -> Callable[[], None]:
        """Register a command under its normalized name; later wins on conflict."""
        normalized = normalize_command_name(name)
        if normalized is None:
            raise ValueError(f"Invalid command name: {name!r} (allowed: [a-z0-9._-]+)")

        existing = self._commands.get(normalized)
        warning = None
        if existing is not None:
            warning = (
                f"Command /{normalized} from {existing.plugin_id} "
                f"was replaced by {plugin_id}"
            )
            logger.warning(warning)

        command = RegisteredCommand(
            name=normalized,
            plugin_id=plugin_id,
            execute=execute,
            description=description,
            id=f"command-{next(self._command_ids)}",
            conflict_warning=warning,
        )
        self._commands[normalized] = command
        self._publish()

        def dispose() -> None:
            current = self._commands.get(normalized)
            if current is not None and current.id == command.id:
                del self._commands[normalized]
                self._publish()

        return dispose

    def get_commands(self) -> list[RegisteredCommand]:
        return sorted(self._commands.values(), key=lambda c: c.name)

    async def execute_command(self, name: str, context: CommandContext) -> CommandResult:
        """
        Run a registered command.

        Unknown or invalid names return ``CommandResult(handled=False)``.
        Exceptions become an error result; nothing is raised.
        """
        normalized = normalize_command_name(name)
        command = self._commands.get(normalized) if normalized else None
        if command is None:
            return CommandResult(handled=False)

        try:
            result = await call_maybe_async(command.execute, context)
        except Exception as e:
            log_event(
                "error",
                "plugin.command.failed",
                {"command": command.name, "pluginId": command.plugin_id, "error": str(e)},
            )
            return CommandResult(
                handled=True,
                message=f"Command /{command.name} failed: {e}",
                is_error=True,
            )
        return normalize_command_result(result)

    # ------------------------------------------------------------------
    # Prompt transformers
    # ------------------------------------------------------------------

    def register_prompt_transformer(
        self,
        transform: Callable[..., Any],
        plugin_id: str = ANONYMOUS_PLUGIN_ID,
        order: int = DEFAULT_ORDER,
    ) -> Callable[[], None]:
        transformer = RegisteredPromptTransformer(
            id=f"transformer-{next(self._transformer_ids)}",
            plugin_id=plugin_id,
            order=order,
            sequence=next(self._sequence),
            transform=transform,
        )
        bisect.insort(self._transformers, transformer, key=lambda t: (t.order, t.sequence))

        def dispose() -> None:
            for index, entry in enumerate(self._transformers):
                if entry.id == transformer.id:
                    del self._transformers[index]
                    break

        return dispose

    @property
    def transformer_count(self) -> int:
        return len(self._transformers)

    async def apply_prompt_transformers(
        self, prompt: str, context: PromptTransformContext
    ) -> PromptTransformResult:
        """
        Run the prompt through every transformer in ascending order.

        A cancellation short-circuits the chain with ``blocked=True``.
        A failing transformer is logged and treated as a no-op.
        """
        running = prompt
        transformed = False

        for transformer in list(self._transformers):
            try:
                result = await call_maybe_async(transformer.transform, running, context)
            except PromptCancelled as e:
                return self._blocked(running, transformed, e.message or None, transformer)
            except Exception as e:
                log_event(
                    "error",
                    "plugin.prompt_transform.failed",
                    {
                        "transformerId": transformer.id,
                        "pluginId": transformer.plugin_id,
                        "error": str(e),
                    },
                )
                continue

            if result is None:
                continue
            if isinstance(result, PromptCancel):
                return self._blocked(running, transformed, result.error, transformer)

            next_prompt: Any = result
            if isinstance(result, Mapping):
                if result.get("cancel"):
                    error = result.get("error")
                    return self._blocked(
                        running, transformed, error if isinstance(error, str) else None, transformer
                    )
                next_prompt = result.get("prompt")

            if isinstance(next_prompt, str) and next_prompt != running:
                running = next_prompt
                transformed = True

        return PromptTransformResult(prompt=running, transformed=transformed)

    @staticmethod
    def _blocked(
        prompt: str,
        transformed: bool,
        error: str | None,
        transformer: RegisteredPromptTransformer,
    ) -> PromptTransformResult:
        log_event(
            "info",
            "plugin.prompt_transform.cancelled",
            {"transformerId": transformer.id, "pluginId": transformer.plugin_id},
        )
        return PromptTransformResult(
            prompt=prompt,
            transformed=transformed,
            blocked=True,
            error=error or f"Prompt blocked by plugin {transformer.plugin_id}",
        )
