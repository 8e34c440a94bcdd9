"""
Plugin module loading.

A plugin entry is a Python file exposing ``register(api)`` (or ``default``).
``register`` may be sync or async and may return nothing, a dispose callable,
or an object/mapping with a ``dispose`` callable.
"""

from __future__ import annotations

import hashlib
import importlib.util
import inspect
import sys
from collections.abc import Callable, Mapping
from pathlib import Path
from types import ModuleType
from typing import Any

from agent_space.logging import get_logger
from agent_space.plugins.discovery import expand_home
from agent_space.plugins.models import DiscoveredPlugin, PluginLoadError

logger = get_logger("plugins.loader")

REGISTER_EXPORTS = ("register", "default")


def resolve_entry_path(plugin: DiscoveredPlugin, home_dir: str | None = None) -> str | None:
    """Absolute path of the plugin's entry, or None when it declares none."""
    if not plugin.renderer_entry:
        return None
    raw = expand_home(plugin.renderer_entry, home_dir)
    path = Path(raw)
    if not path.is_absolute():
        path = Path(plugin.root_dir) / path
    return str(path.resolve())


def module_name_for(entry_path: Path, mtime_ns: int) -> str:
    """Cache-busting module name: changes whenever the file is modified."""
    digest = hashlib.sha1(str(entry_path).encode("utf-8")).hexdigest()[:12]
    return f"agent_space_plugin_{digest}_{mtime_ns}"


def load_plugin_module(entry_path: str) -> ModuleType:
    """Import a plugin entry file under a fresh, mtime-derived module name."""
    path = Path(entry_path)
    if not path.is_file():
        raise PluginLoadError(f"Plugin entry is not a file: {entry_path}")

    name = module_name_for(path, path.stat().st_mtime_ns)
    spec = importlib.util.spec_from_file_location(name, path)
    if spec is None or spec.loader is None:
        raise PluginLoadError(f"Cannot load module from {entry_path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        sys.modules.pop(name, None)
        raise PluginLoadError(f"Failed to import {entry_path}: {e}") from e
    return module


def unload_plugin_module(entry_path: str) -> None:
    """Drop every cached module generation for an entry path."""
    digest = hashlib.sha1(str(Path(entry_path)).encode("utf-8")).hexdigest()[:12]
    prefix = f"agent_space_plugin_{digest}_"
    for name in [n for n in sys.modules if n.startswith(prefix)]:
        sys.modules.pop(name, None)


def resolve_register(module: ModuleType) -> Callable[..., Any]:
    """Find the plugin's registration callable."""
    for export in REGISTER_EXPORTS:
        candidate = getattr(module, export, None)
        if callable(candidate):
            return candidate
    raise PluginLoadError("Plugin module must export a callable 'register' (or 'default')")


def normalize_dispose(result: Any) -> Callable[[], Any] | None:
    """Turn register()'s return value into a dispose callable (or None)."""
    if result is None:
        return None
    if isinstance(result, Mapping):
        dispose = result.get("dispose")
        return dispose if callable(dispose) else None
    dispose = getattr(result, "dispose", None)
    if callable(dispose):
        return dispose
    if callable(result):
        return result
    return None


async def call_maybe_async(fn: Callable[..., Any], *args: Any) -> Any:
    """Call ``fn`` and await the result when it is awaitable."""
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result
