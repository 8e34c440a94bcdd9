"""
Plugin API - the registration surface passed to a plugin's ``register`` function.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from agent_space.logging import get_logger, log_event
from agent_space.plugins.hooks import HookEvent
from agent_space.plugins.models import DEFAULT_ORDER, PluginMetadata

if TYPE_CHECKING:
    from agent_space.plugins.runtime import PluginRuntime

logger = get_logger("plugins.api")


class PluginAPI:
    """
    API object passed to plugin ``register`` functions.

    Plugins use this to register hooks, commands, and prompt transformers.
    Everything registered through one API instance is tracked so that
    disposing the plugin disposes its registrations too.

    Example plugin:
        def register(api):
            api.on("session_start", lambda payload: api.log("info", "started"))
            api.register_command("hello", lambda ctx: "Hello!", "Say hello")
            return lambda: print("bye")
    """

    def __init__(self, runtime: PluginRuntime, plugin: PluginMetadata) -> None:
        self._runtime = runtime
        self._plugin = plugin
        self._disposers: list[Callable[[], None]] = []

    @property
    def plugin(self) -> PluginMetadata:
        """Read-only metadata of the plugin owning this API."""
        return self._plugin

    @property
    def registration_count(self) -> int:
        return len(self._disposers)

    def register_hook(
        self,
        event: HookEvent | str,
        handler: Callable[..., Any],
        order: int = DEFAULT_ORDER,
    ) -> Callable[[], None]:
        """Register a lifecycle hook. Lower ``order`` runs first."""
        dispose = self._runtime.register_hook(
            event, handler, plugin_id=self._plugin.id, order=order
        )
        return self._track(dispose)

    def on(
        self,
        event: HookEvent | str,
        handler: Callable[..., Any],
        order: int = DEFAULT_ORDER,
    ) -> Callable[[], None]:
        """Alias of :meth:`register_hook`."""
        return self.register_hook(event, handler, order=order)

    def register_command(
        self,
        name: str,
        execute: Callable[..., Any],
        description: str = "",
    ) -> Callable[[], None]:
        """Register a slash command; ``execute`` receives a CommandContext."""
        dispose = self._runtime.register_command(
            name, execute, plugin_id=self._plugin.id, description=description
        )
        return self._track(dispose)

    def register_prompt_transformer(
        self,
        transform: Callable[..., Any],
        order: int = DEFAULT_ORDER,
    ) -> Callable[[], None]:
        """
        Register a prompt transformer.

        ``transform(prompt, context)`` may return None (no change), a new
        prompt string, or a PromptCancel to block the prompt.
        """
        dispose = self._runtime.register_prompt_transformer(
            transform, plugin_id=self._plugin.id, order=order
        )
        return self._track(dispose)

    def log(self, level: str, event: str, payload: dict[str, Any] | None = None) -> None:
        """Write a diagnostic event under this plugin's namespace."""
        log_event(level, f"plugin.{self._plugin.id}.{event}", payload)

    def dispose_all(self) -> None:
        """Dispose every registration, most recent first."""
        while self._disposers:
            dispose = self._disposers.pop()
            try:
                dispose()
            except Exception as e:
                logger.warning("Dispose failed (plugin=%s): %s", self._plugin.id, e)

    def _track(self, dispose: Callable[[], None]) -> Callable[[], None]:
        self._disposers.append(dispose)

        def untracked_dispose() -> None:
            try:
                self._disposers.remove(dispose)
            except ValueError:
                pass
            dispose()

        return untracked_dispose
