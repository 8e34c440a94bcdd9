"""
Mention tokens and slash commands in user input.

A mention is an ``@``-referenced path: ``@src/app.py`` or, for paths with
spaces, ``@{docs/My Notes.md}``. Mentions are resolved against a project
search and scored to pick the most likely file.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from agent_space.plugins.loader import call_maybe_async

MENTION_PATTERN = re.compile(r"(?:^|\s)@\{([^}\n]+)\}|(?:^|\s)@([^\s@]+)")

MAX_REFERENCED_FILES = 12
MENTION_SEARCH_LIMIT = 25

# Candidate scoring
SCORE_EXACT_PATH = 500
SCORE_PATH_SUFFIX = 320
SCORE_FILE_NAME = 220
SCORE_PATH_CONTAINS = 100
RECENCY_BONUS_BASE = 30


@dataclass
class SlashCommandInput:
    name: str
    args_raw: str = ""
    args: list[str] = field(default_factory=list)


@dataclass
class MentionLookupHit:
    path: str
    name: str
    is_directory: bool = False


@dataclass
class ResolvedMentionedFile:
    mention: str
    path: str
    rel_path: str


@dataclass
class MentionResolutionResult:
    resolved: list[ResolvedMentionedFile] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)


# search(root_dir, query, limit) -> list[MentionLookupHit], sync or async
MentionSearch = Callable[[str, str, int], Any]


def normalize_mention_path(value: str) -> str:
    """Trim, use forward slashes, and strip leading ``./`` and ``/``."""
    normalized = value.strip().replace("\\", "/")
    normalized = re.sub(r"^\./+", "", normalized)
    return normalized.lstrip("/")


def _to_relative_if_inside(root_dir: str, absolute_path: str) -> str | None:
    root = root_dir.replace("\\", "/").rstrip("/")
    path = absolute_path.replace("\\", "/")
    if path == root:
        return ""
    if path.startswith(f"{root}/"):
        return path[len(root) + 1 :]
    return None


def extract_mention_paths(message: str) -> list[str]:
    """All mentions in ``message``, normalized, first-seen order, no repeats."""
    mentions: list[str] = []
    seen: set[str] = set()
    for match in MENTION_PATTERN.finditer(message):
        raw = match.group(1) or match.group(2) or ""
        normalized = normalize_mention_path(raw)
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        mentions.append(normalized)
    return mentions


def resolve_mention_tokens(message: str, mentions: list[str] | None = None) -> list[str]:
    """Explicit mentions win verbatim; otherwise extract them from the text."""
    if mentions:
        return list(mentions)
    return extract_mention_paths(message)


def parse_slash_command_input(message: str) -> SlashCommandInput | None:
    """Parse ``/name args...``; ``//`` and bare ``/`` are not commands."""
    trimmed = message.strip()
    if not trimmed.startswith("/") or trimmed.startswith("//"):
        return None
    token, _, rest = trimmed[1:].partition(" ")
    name = token.strip()
    if not name:
        return None
    args_raw = rest.strip()
    return SlashCommandInput(name=name, args_raw=args_raw, args=args_raw.split())


def score_hit(mention: str, rel_path: str, name: str, index: int) -> int:
    """Score a search hit for a lowercased mention; higher is better."""
    rel_lower = rel_path.lower()
    name_lower = name.lower()
    score = 0
    if rel_lower == mention:
        score += SCORE_EXACT_PATH
    if rel_lower.endswith(f"/{mention}"):
        score += SCORE_PATH_SUFFIX
    if name_lower == mention:
        score += SCORE_FILE_NAME
    if mention in rel_lower:
        score += SCORE_PATH_CONTAINS
    score += max(0, RECENCY_BONUS_BASE - index)
    return score


def pick_best_hit(
    root_dir: str, mention: str, hits: list[MentionLookupHit]
) -> tuple[str, str] | None:
    """Return (path, rel_path) of the best-scoring file hit, if any."""
    best: tuple[int, str, str] | None = None
    for index, hit in enumerate(hits):
        if hit.is_directory:
            continue
        rel_raw = _to_relative_if_inside(root_dir, hit.path)
        rel_path = normalize_mention_path(rel_raw if rel_raw is not None else hit.name)
        if not rel_path:
            continue
        score = score_hit(mention, rel_path, hit.name, index)
        if score <= 0:
            continue
        if best is None or score > best[0]:
            best = (score, hit.path, rel_path)
    if best is None:
        return None
    return best[1], best[2]


async def resolve_mentioned_files_with_search(
    root_dir: str,
    mentions: list[str],
    search: MentionSearch,
    on_lookup_error: Callable[[str, Exception], Any] | None = None,
    max_files: int = MAX_REFERENCED_FILES,
    search_limit: int = MENTION_SEARCH_LIMIT,
) -> MentionResolutionResult:
    """
    Resolve mentions to files using ``search(root_dir, query, limit)``.

    Lookups run concurrently, one per distinct mention, and results are
    joined back in mention order. The first mention to claim a path keeps
    it; later mentions resolving to the same path are dropped.
    """
    normalized: list[str] = []
    for mention in mentions:
        value = normalize_mention_path(mention).lower()
        if value and value not in normalized:
            normalized.append(value)
    normalized = normalized[:max_files]
    if not normalized:
        return MentionResolutionResult()

    async def lookup(mention: str) -> list[MentionLookupHit]:
        try:
            return list(await call_maybe_async(search, root_dir, mention, search_limit))
        except Exception as e:
            if on_lookup_error is not None:
                await call_maybe_async(on_lookup_error, mention, e)
            return []

    all_hits = await asyncio.gather(*(lookup(m) for m in normalized))

    result = MentionResolutionResult()
    seen_paths: set[str] = set()
    for mention, hits in zip(normalized, all_hits):
        best = pick_best_hit(root_dir, mention, hits)
        if best is None:
            result.unresolved.append(mention)
            continue
        path, rel_path = best
        if path in seen_paths:
            continue
        seen_paths.add(path)
        result.resolved.append(ResolvedMentionedFile(mention=mention, path=path, rel_path=rel_path))
    return result
