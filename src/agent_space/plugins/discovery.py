"""
Plugin discovery: scan configured directories for plugin manifests.

Each configured directory is scanned as a candidate root itself, plus its
immediate non-hidden subdirectories. Per root, the first manifest found in
priority order wins:

1. ``agent-space.plugin.json``
2. ``openclaw.plugin.json``
3. ``pyproject.toml`` carrying plugin hints
"""

from __future__ import annotations

import json
import tomllib
from pathlib import Path
from typing import Any

from agent_space.logging import get_logger
from agent_space.plugins.models import DiscoveredPlugin, ManifestSource

logger = get_logger("plugins.discovery")

MAX_CANDIDATE_ROOTS = 80

IGNORED_CHILD_DIRS = frozenset(
    {
        "node_modules",
        ".git",
        ".next",
        "dist",
        "build",
        "out",
        ".turbo",
        ".pnpm-store",
        ".yarn",
        ".cache",
        "__pycache__",
        ".venv",
        "venv",
        ".mypy_cache",
        ".pytest_cache",
        ".tox",
    }
)

PLUGIN_KEYWORDS = frozenset({"agent-space-plugin", "openclaw-plugin"})


def _as_str(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def _as_str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [s for s in (_as_str(v) for v in value) if s]


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def expand_home(raw_path: str, home_dir: str | None = None) -> str:
    """Replace a leading ``~`` with the home directory."""
    home = home_dir if home_dir is not None else str(Path.home())
    if raw_path == "~":
        return home
    if raw_path.startswith("~/") or raw_path.startswith("~\\"):
        return f"{home}{raw_path[1:]}"
    return raw_path


def _read_json(path: Path) -> dict[str, Any] | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def _read_toml(path: Path) -> dict[str, Any] | None:
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        return None


def _metadata(raw: dict[str, Any], fallback_name: str) -> dict[str, Any]:
    name = _as_str(raw.get("name")) or fallback_name
    entry = (
        _as_str(raw.get("rendererEntry"))
        or _as_str(raw.get("renderer-entry"))
        or _as_str(raw.get("entry"))
        or _as_str(raw.get("main"))
    )
    return {
        "id": _as_str(raw.get("id")) or name,
        "name": name,
        "version": _as_str(raw.get("version")) or "0.0.0",
        "description": _as_str(raw.get("description")),
        "renderer_entry": entry,
    }


def _detect_pyproject(root: Path, fallback_name: str) -> DiscoveredPlugin | None:
    path = root / "pyproject.toml"
    data = _read_toml(path)
    if data is None:
        return None

    project = _as_dict(data.get("project"))
    tool = _as_dict(data.get("tool"))
    agent_space_cfg = _as_dict(tool.get("agent-space"))
    openclaw_cfg = _as_dict(tool.get("openclaw"))
    extensions = _as_str_list(openclaw_cfg.get("extensions"))
    keywords = _as_str_list(project.get("keywords"))
    has_keyword = any(k in PLUGIN_KEYWORDS for k in keywords)

    entry_from_config = (
        _as_str(agent_space_cfg.get("renderer-entry"))
        or _as_str(agent_space_cfg.get("entry"))
        or _as_str(openclaw_cfg.get("renderer-entry"))
        or (extensions[0] if extensions else None)
    )
    if not has_keyword and not extensions and not entry_from_config:
        return None

    merged = dict(project)
    if "id" in agent_space_cfg:
        merged["id"] = agent_space_cfg["id"]
    meta = _metadata(merged, fallback_name)
    meta["renderer_entry"] = entry_from_config or meta["renderer_entry"]
    return DiscoveredPlugin(
        root_dir=str(root),
        manifest_path=str(path),
        source=ManifestSource.PYPROJECT,
        **meta,
    )


def detect_plugin_at_root(root: Path) -> DiscoveredPlugin | None:
    """Return the plugin declared at ``root``, or None when there is none."""
    fallback_name = root.name or str(root)

    for source in (ManifestSource.AGENT_SPACE, ManifestSource.OPENCLAW):
        manifest_path = root / source.value
        manifest = _read_json(manifest_path)
        if manifest is not None:
            return DiscoveredPlugin(
                root_dir=str(root),
                manifest_path=str(manifest_path),
                source=source,
                **_metadata(manifest, fallback_name),
            )

    return _detect_pyproject(root, fallback_name)


def list_candidate_roots(directory: Path, cap: int = MAX_CANDIDATE_ROOTS) -> list[Path]:
    """The directory itself plus its visible, non-ignored child directories."""
    roots = [directory]
    try:
        children = sorted(directory.iterdir(), key=lambda p: p.name)
    except OSError as e:
        # Keep a root-only scan if the children can't be listed
        logger.debug("Could not list %s: %s", directory, e)
        return roots
    for child in children:
        if len(roots) >= cap:
            break
        if child.name.startswith(".") or child.name in IGNORED_CHILD_DIRS:
            continue
        if not child.is_dir():
            continue
        roots.append(child)
    return roots


def discover_plugins(
    directories: list[str],
) -> tuple[list[DiscoveredPlugin], list[str], list[str]]:
    """
    Scan normalized plugin directories.

    Returns:
        (plugins sorted by name, scanned directories, warnings)
    """
    warnings: list[str] = []
    scanned: list[str] = []
    by_manifest: dict[str, DiscoveredPlugin] = {}

    for directory in directories:
        path = Path(directory)
        if not path.exists():
            warnings.append(f"Plugin dir not found: {directory}")
            continue
        if not path.is_dir():
            warnings.append(f"Plugin dir is not a directory: {directory}")
            continue

        scanned.append(directory)
        for root in list_candidate_roots(path):
            discovered = detect_plugin_at_root(root)
            if discovered is None:
                continue
            if discovered.manifest_path not in by_manifest:
                by_manifest[discovered.manifest_path] = discovered
                logger.debug(
                    "Discovered plugin %s (%s)", discovered.id, discovered.manifest_path
                )

    plugins = sorted(by_manifest.values(), key=lambda p: p.name.casefold())
    return plugins, scanned, warnings
