"""Workspace context snapshots and their prompt rendering."""

from __future__ import annotations

import asyncio
import json
import time
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from agent_space.logging import get_logger

logger = get_logger("prompt.workspace")

KEY_FILE_NAMES = (
    "README.md",
    "AGENTS.md",
    "CLAUDE.md",
    "pyproject.toml",
    "setup.cfg",
    "requirements.txt",
    "package.json",
    "tsconfig.json",
    "Cargo.toml",
    "go.mod",
    "Makefile",
    "Dockerfile",
    "docker-compose.yml",
)

TECH_HINTS = {
    "pyproject.toml": "python",
    "requirements.txt": "python",
    "setup.cfg": "python",
    "package.json": "node",
    "tsconfig.json": "typescript",
    "Cargo.toml": "rust",
    "go.mod": "go",
    "Dockerfile": "docker",
    "docker-compose.yml": "docker",
}

MAX_LISTED_ENTRIES = 20
README_SNIPPET_CHARS = 400


@dataclass
class WorkspaceContextSnapshot:
    directory: str
    generated_at: float = field(default_factory=time.time)
    git_branch: str | None = None
    git_dirty_files: int = 0
    top_level_directories: list[str] = field(default_factory=list)
    top_level_files: list[str] = field(default_factory=list)
    key_files: list[str] = field(default_factory=list)
    scripts: list[str] = field(default_factory=list)
    tech_hints: list[str] = field(default_factory=list)
    readme_snippet: str | None = None


def _join(values: list[str], empty: str = "(none)") -> str:
    return ", ".join(values) if values else empty


def build_workspace_context_prompt(snapshot: WorkspaceContextSnapshot) -> str:
    """Render a snapshot as the ``[Workspace context]`` prompt block."""
    lines = [
        "[Workspace context]",
        f"directory: {snapshot.directory}",
        f"git_branch: {snapshot.git_branch or '(unknown)'}",
        f"git_dirty_files: {snapshot.git_dirty_files}",
        f"top_level_directories: {_join(snapshot.top_level_directories[:MAX_LISTED_ENTRIES])}",
        f"top_level_files: {_join(snapshot.top_level_files[:MAX_LISTED_ENTRIES])}",
        f"key_files: {_join(snapshot.key_files)}",
        f"scripts: {_join(snapshot.scripts)}",
        f"tech_hints: {_join(snapshot.tech_hints)}",
    ]
    if snapshot.readme_snippet:
        lines.append("readme_snippet:")
        lines.append(snapshot.readme_snippet)
    return "\n".join(lines)


def _read_git_branch(directory: Path) -> str | None:
    head = directory / ".git" / "HEAD"
    try:
        content = head.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    if content.startswith("ref: refs/heads/"):
        return content[len("ref: refs/heads/") :]
    return content[:12] or None


async def _count_dirty_files(directory: Path) -> int:
    try:
        proc = await asyncio.create_subprocess_exec(
            "git",
            "status",
            "--porcelain",
            cwd=str(directory),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        stdout, _ = await proc.communicate()
    except OSError as e:
        logger.debug("git status unavailable in %s: %s", directory, e)
        return 0
    if proc.returncode != 0:
        return 0
    return sum(1 for line in stdout.decode("utf-8", "replace").splitlines() if line.strip())


def _collect_scripts(directory: Path) -> list[str]:
    scripts: list[str] = []
    pyproject = directory / "pyproject.toml"
    if pyproject.is_file():
        try:
            with open(pyproject, "rb") as f:
                data = tomllib.load(f)
            scripts.extend(sorted(data.get("project", {}).get("scripts", {})))
        except (OSError, tomllib.TOMLDecodeError):
            pass
    package_json = directory / "package.json"
    if package_json.is_file():
        try:
            data = json.loads(package_json.read_text(encoding="utf-8"))
            if isinstance(data.get("scripts"), dict):
                scripts.extend(sorted(data["scripts"]))
        except (OSError, ValueError):
            pass
    return scripts


async def collect_workspace_snapshot(working_directory: str) -> WorkspaceContextSnapshot:
    """Build a snapshot from the local filesystem (and git, when present)."""
    directory = Path(working_directory)
    if not directory.is_dir():
        raise NotADirectoryError(working_directory)

    dirs: list[str] = []
    files: list[str] = []
    for entry in sorted(directory.iterdir(), key=lambda p: p.name.lower()):
        if entry.name.startswith("."):
            continue
        (dirs if entry.is_dir() else files).append(entry.name)

    key_files = [name for name in KEY_FILE_NAMES if name in files]
    hints: list[str] = []
    for name in key_files:
        hint = TECH_HINTS.get(name)
        if hint and hint not in hints:
            hints.append(hint)

    readme_snippet = None
    if "README.md" in files:
        try:
            readme_snippet = (directory / "README.md").read_text(encoding="utf-8")[
                :README_SNIPPET_CHARS
            ].strip() or None
        except (OSError, UnicodeDecodeError):
            readme_snippet = None

    return WorkspaceContextSnapshot(
        directory=str(directory),
        git_branch=_read_git_branch(directory),
        git_dirty_files=await _count_dirty_files(directory) if (directory / ".git").exists() else 0,
        top_level_directories=dirs,
        top_level_files=files,
        key_files=key_files,
        scripts=_collect_scripts(directory),
        tech_hints=hints,
        readme_snippet=readme_snippet,
    )
