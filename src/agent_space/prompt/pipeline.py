"""
Staged prompt assembly.

``prepare_chat_prompt`` turns a raw user message plus context (mentions,
attachments, history, workspace and office context) into the final prompt.
Each stage is a public function so callers can reuse or test it alone.

Stage order:
    1. mention tokens          5. attachments
    2. workspace snapshot      6. reference notes
    3. conversation history    7. workspace context
    4. mention references      8. office context
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agent_space.logging import get_logger
from agent_space.plugins.loader import call_maybe_async
from agent_space.prompt.mentions import MentionResolutionResult, resolve_mention_tokens
from agent_space.prompt.workspace import WorkspaceContextSnapshot, build_workspace_context_prompt
from agent_space.session.models import ChatMessage, MessageRole

logger = get_logger("prompt")

BINARY_EXTENSIONS = frozenset(
    {
        "png", "jpg", "jpeg", "gif", "webp", "bmp", "ico", "svg", "tiff", "psd",
        "pdf", "zip", "tar", "gz", "rar", "7z",
        "mp3", "mp4", "wav", "mov", "avi", "mkv", "flac",
        "exe", "dll", "so", "dylib", "wasm",
        "doc", "docx", "xls", "xlsx", "ppt", "pptx",
        "dmg", "iso", "bin",
    }
)

MAX_HISTORY_MESSAGES = 14
MAX_HISTORY_CHARS = 12_000
MIN_HISTORY_CHARS = 800
MAX_REWARD_NOTES = 3
MAX_FEEDBACK_ITEMS = 6

HISTORY_HEADER = "[Conversation context]"
HISTORY_INTRO = "Use this transcript as established context from earlier turns in this same chat."
HISTORY_OMITTED = "Earlier turns were omitted for brevity."
CURRENT_REQUEST_MARKER = "[Current user request]"

OFFICE_CONTEXT_LINES = (
    "[Office collaboration context]",
    "You are in the shared office with the user right now.",
    "The user can watch your activity live and can give direct in-office feedback.",
    "Treat office feedback as immediate coaching and adapt your behavior accordingly.",
)


@dataclass
class Attachment:
    """A user-attached file: a name plus a (sync or async) text reader."""

    name: str
    read: Callable[[], Any]

    @classmethod
    def from_path(cls, path: Path | str) -> Attachment:
        file_path = Path(path)
        return cls(
            name=file_path.name,
            read=lambda: file_path.read_text(encoding="utf-8", errors="replace"),
        )

    @property
    def extension(self) -> str:
        _, dot, ext = self.name.rpartition(".")
        return ext.lower() if dot else ""


@dataclass
class ReferencedFileContent:
    content: str
    truncated: bool = False


@dataclass
class OfficeRewardContext:
    reward_score: float
    status: str
    notes: list[str] = field(default_factory=list)


@dataclass
class OfficePromptContext:
    recent_feedback: list[str] = field(default_factory=list)
    latest_reward: OfficeRewardContext | None = None


@dataclass
class PrepareChatPromptInput:
    message: str
    working_directory: str
    mentions: list[str] | None = None
    attachments: list[Attachment] | None = None
    history_messages: list[ChatMessage] | None = None
    office_context: OfficePromptContext | None = None


@dataclass
class PromptPipelineDeps:
    """
    Collaborators of the pipeline. Every callable may be sync or async.

    * ``get_workspace_snapshot(working_directory) -> WorkspaceContextSnapshot``
    * ``upsert_workspace_snapshot(snapshot)`` caches a fresh snapshot
    * ``on_workspace_snapshot_error(exc)`` observes snapshot failures
    * ``resolve_mentioned_files(root_dir, mentions) -> MentionResolutionResult``
    * ``read_referenced_file(path) -> ReferencedFileContent``
    """

    get_workspace_snapshot: Callable[[str], Any]
    resolve_mentioned_files: Callable[[str, list[str]], Any]
    read_referenced_file: Callable[[str], Any]
    upsert_workspace_snapshot: Callable[[WorkspaceContextSnapshot], Any] | None = None
    on_workspace_snapshot_error: Callable[[Exception], Any] | None = None


@dataclass
class MentionReferencesStageResult:
    prompt: str
    reference_notes: list[str] = field(default_factory=list)
    resolved_mention_count: int = 0
    unresolved_mention_count: int = 0


@dataclass
class PromptAssemblyResult:
    prompt: str
    mention_tokens: list[str]
    resolved_mention_count: int = 0
    unresolved_mention_count: int = 0
    workspace_snapshot: WorkspaceContextSnapshot | None = None


def _strip_nul(text: str) -> str:
    return text.replace("\0", "")


def role_label(role: MessageRole, tool_name: str | None = None) -> str:
    if role is MessageRole.USER:
        return "User"
    if role is MessageRole.TOOL:
        return f"Tool ({tool_name})" if tool_name else "Tool"
    if role is MessageRole.ERROR:
        return "System"
    return "Assistant"


async def load_workspace_snapshot_stage(
    working_directory: str, deps: PromptPipelineDeps
) -> WorkspaceContextSnapshot | None:
    """Best-effort snapshot fetch; failures go to the error callback only."""
    try:
        snapshot = await call_maybe_async(deps.get_workspace_snapshot, working_directory)
        if deps.upsert_workspace_snapshot is not None:
            await call_maybe_async(deps.upsert_workspace_snapshot, snapshot)
    except Exception as e:
        logger.debug("Workspace snapshot failed for %s: %s", working_directory, e)
        if deps.on_workspace_snapshot_error is not None:
            await call_maybe_async(deps.on_workspace_snapshot_error, e)
        return None
    return snapshot


def apply_conversation_history_stage(
    prompt: str,
    history_messages: list[ChatMessage] | None = None,
    max_messages: int = MAX_HISTORY_MESSAGES,
    max_chars: int = MAX_HISTORY_CHARS,
) -> str:
    """
    Prefix the prompt with a bounded transcript of earlier turns.

    Thinking messages are dropped. Messages are taken newest first until
    either limit is hit, then restored to chronological order.
    """
    history = history_messages or []
    if not history:
        return prompt

    max_messages = max(1, max_messages)
    max_chars = max(MIN_HISTORY_CHARS, max_chars)
    candidates = [m for m in history if m.role is not MessageRole.THINKING]
    candidates = candidates[-max(max_messages * 3, max_messages) :]
    if not candidates:
        return prompt

    selected: list[str] = []
    consumed = 0
    omitted = False
    for message in reversed(candidates):
        if len(selected) >= max_messages:
            break
        content = _strip_nul(message.content).strip()
        if not content:
            continue
        serialized = f"[{role_label(message.role, message.tool_name)}] {content}"
        if consumed + len(serialized) > max_chars:
            omitted = True
            break
        selected.append(serialized)
        consumed += len(serialized) + 1

    if not selected:
        return prompt

    selected.reverse()
    if len(candidates) > len(selected):
        omitted = True

    header = [HISTORY_HEADER, HISTORY_INTRO]
    if omitted:
        header.append(HISTORY_OMITTED)
    transcript = "\n".join(header + selected)
    return f"{transcript}\n\n{CURRENT_REQUEST_MARKER}\n{prompt}"


async def apply_mention_references_stage(
    prompt: str,
    mention_tokens: list[str],
    working_directory: str,
    deps: PromptPipelineDeps,
) -> MentionReferencesStageResult:
    """Append resolved mentioned files; collect notes for the rest."""
    if not mention_tokens or not working_directory:
        return MentionReferencesStageResult(prompt=prompt)

    resolution: MentionResolutionResult = await call_maybe_async(
        deps.resolve_mentioned_files, working_directory, mention_tokens
    )
    notes: list[str] = []
    blocks: list[str] = []

    for ref in resolution.resolved:
        try:
            data = await call_maybe_async(deps.read_referenced_file, ref.path)
        except Exception as e:
            notes.append(f"{ref.rel_path} (failed to read: {e})")
            continue
        content = data.content if isinstance(data, ReferencedFileContent) else str(data)
        blocks.append(
            f"\n--- Referenced file: {ref.rel_path} ---\n"
            f"{_strip_nul(content)}\n--- End: {ref.rel_path} ---"
        )
        if isinstance(data, ReferencedFileContent) and data.truncated:
            notes.append(f"{ref.rel_path} (truncated to 2MB preview)")

    if blocks:
        prompt = f"{prompt}\n\nReferenced files via @:{chr(10).join(blocks)}"
    if resolution.unresolved:
        listed = ", ".join(f"@{entry}" for entry in resolution.unresolved)
        notes.append(f"Unresolved @ references: {listed}")

    return MentionReferencesStageResult(
        prompt=prompt,
        reference_notes=notes,
        resolved_mention_count=len(resolution.resolved),
        unresolved_mention_count=len(resolution.unresolved),
    )


async def apply_attachment_files_stage(
    prompt: str, attachments: list[Attachment] | None = None
) -> str:
    """Inline text attachments; list binary ones by name. Best effort."""
    if not attachments:
        return prompt

    blocks: list[str] = []
    binary: list[str] = []
    for attachment in attachments:
        if attachment.extension in BINARY_EXTENSIONS:
            binary.append(attachment.name)
            continue
        try:
            text = await call_maybe_async(attachment.read)
        except Exception as e:
            logger.warning("Failed to read attachment %s: %s", attachment.name, e)
            continue
        blocks.append(
            f"\n--- File: {attachment.name} ---\n"
            f"{_strip_nul(str(text))}\n--- End: {attachment.name} ---"
        )

    if blocks:
        prompt = f"{prompt}\n\nAttached files:{chr(10).join(blocks)}"
    if binary:
        prompt = (
            f"{prompt}\n\n[Attached binary files: {', '.join(binary)} - "
            "binary content cannot be sent via CLI]"
        )
    return prompt


def apply_reference_notes_stage(prompt: str, reference_notes: list[str]) -> str:
    if not reference_notes:
        return prompt
    return f"{prompt}\n\n[Reference notes: {' | '.join(reference_notes)}]"


def apply_workspace_context_stage(
    prompt: str, snapshot: WorkspaceContextSnapshot | None
) -> str:
    if snapshot is None:
        return prompt
    return f"{prompt}\n\n{build_workspace_context_prompt(snapshot)}"


def apply_office_context_stage(
    prompt: str, office_context: OfficePromptContext | None = None
) -> str:
    """Always append the office framing, plus reward and feedback when given."""
    lines = list(OFFICE_CONTEXT_LINES)
    if office_context is not None and office_context.latest_reward is not None:
        reward = office_context.latest_reward
        lines.append(f"latest_office_reward: {reward.reward_score} ({reward.status})")
        if reward.notes:
            lines.append(f"latest_reward_notes: {' | '.join(reward.notes[:MAX_REWARD_NOTES])}")
    if office_context is not None and office_context.recent_feedback:
        lines.append("recent_office_feedback:")
        lines.extend(f"- {item}" for item in office_context.recent_feedback[:MAX_FEEDBACK_ITEMS])
    return f"{prompt}\n\n" + "\n".join(lines)


async def prepare_chat_prompt(
    request: PrepareChatPromptInput,
    deps: PromptPipelineDeps,
    max_history_messages: int = MAX_HISTORY_MESSAGES,
    max_history_chars: int = MAX_HISTORY_CHARS,
) -> PromptAssemblyResult:
    """Run every stage in order and return the assembled prompt."""
    mention_tokens = resolve_mention_tokens(request.message, request.mentions)
    snapshot = await load_workspace_snapshot_stage(request.working_directory, deps)
    prompt = apply_conversation_history_stage(
        request.message,
        request.history_messages,
        max_messages=max_history_messages,
        max_chars=max_history_chars,
    )
    mention_stage = await apply_mention_references_stage(
        prompt, mention_tokens, request.working_directory, deps
    )
    prompt = await apply_attachment_files_stage(mention_stage.prompt, request.attachments)
    prompt = apply_reference_notes_stage(prompt, mention_stage.reference_notes)
    prompt = apply_workspace_context_stage(prompt, snapshot)
    prompt = apply_office_context_stage(prompt, request.office_context)

    return PromptAssemblyResult(
        prompt=prompt,
        mention_tokens=mention_tokens,
        resolved_mention_count=mention_stage.resolved_mention_count,
        unresolved_mention_count=mention_stage.unresolved_mention_count,
        workspace_snapshot=snapshot,
    )
