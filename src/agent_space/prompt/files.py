"""Filesystem-backed mention search, file previews, and default pipeline deps."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

from agent_space.config import RuntimeConfig
from agent_space.logging import log_event
from agent_space.prompt.mentions import (
    MentionLookupHit,
    MentionResolutionResult,
    normalize_mention_path,
    resolve_mentioned_files_with_search,
)
from agent_space.prompt.pipeline import PromptPipelineDeps, ReferencedFileContent
from agent_space.prompt.workspace import collect_workspace_snapshot

MAX_PREVIEW_BYTES = 2 * 1024 * 1024
MAX_INDEXED_FILES = 50_000

IGNORED_DIRS = frozenset(
    {
        "node_modules", ".git", ".next", "dist", "build", "out", ".cache",
        ".turbo", "__pycache__", ".venv", "venv", ".tox", ".mypy_cache",
        ".pytest_cache", "target", ".idea", ".vscode", "coverage",
    }
)


def _iter_files(root: Path):
    count = 0
    for current, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in IGNORED_DIRS)
        for filename in sorted(filenames):
            if filename.startswith("."):
                continue
            count += 1
            if count > MAX_INDEXED_FILES:
                return
            yield Path(current) / filename


def local_search(root_dir: str, query: str, limit: int) -> list[MentionLookupHit]:
    """
    Case-insensitive substring search over file paths under ``root_dir``.

    Exact relative-path and file-name matches sort first, then shorter paths.
    """
    needle = normalize_mention_path(query).lower()
    if not needle or limit <= 0:
        return []
    root = Path(root_dir)

    ranked: list[tuple[int, int, str, Path]] = []
    for path in _iter_files(root):
        rel = path.relative_to(root).as_posix()
        rel_lower = rel.lower()
        if needle not in rel_lower:
            continue
        if rel_lower == needle:
            rank = 0
        elif path.name.lower() == needle or path.stem.lower() == needle:
            rank = 1
        else:
            rank = 2
        ranked.append((rank, len(rel), rel_lower, path))

    ranked.sort(key=lambda item: item[:3])
    return [
        MentionLookupHit(path=str(path), name=path.name)
        for _, _, _, path in ranked[:limit]
    ]


def read_text_preview(path: str, max_bytes: int = MAX_PREVIEW_BYTES) -> ReferencedFileContent:
    """Read up to ``max_bytes`` of a file as text, flagging truncation."""
    with open(path, "rb") as f:
        data = f.read(max_bytes + 1)
    return ReferencedFileContent(
        content=data[:max_bytes].decode("utf-8", errors="replace"),
        truncated=len(data) > max_bytes,
    )


def local_pipeline_deps(config: RuntimeConfig | None = None) -> PromptPipelineDeps:
    """Pipeline deps that search and read the local filesystem."""
    config = config or RuntimeConfig()

    async def search(root_dir: str, query: str, limit: int) -> list[MentionLookupHit]:
        return await asyncio.to_thread(local_search, root_dir, query, limit)

    def on_lookup_error(mention: str, error: Exception) -> None:
        log_event("warn", "chat.mention_lookup_failed", {"mention": mention, "error": str(error)})

    async def resolve(root_dir: str, mentions: list[str]) -> MentionResolutionResult:
        return await resolve_mentioned_files_with_search(
            root_dir,
            mentions,
            search,
            on_lookup_error=on_lookup_error,
            max_files=config.max_referenced_files,
            search_limit=config.mention_search_limit,
        )

    def on_snapshot_error(error: Exception) -> None:
        log_event("warn", "chat.workspace_snapshot_failed", {"error": str(error)})

    return PromptPipelineDeps(
        get_workspace_snapshot=collect_workspace_snapshot,
        resolve_mentioned_files=resolve,
        read_referenced_file=read_text_preview,
        on_workspace_snapshot_error=on_snapshot_error,
    )
