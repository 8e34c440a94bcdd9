"""Prompt assembly: mentions, workspace context, and the staged pipeline."""

from agent_space.prompt.files import local_pipeline_deps, local_search, read_text_preview
from agent_space.prompt.mentions import (
    MentionLookupHit,
    MentionResolutionResult,
    ResolvedMentionedFile,
    SlashCommandInput,
    extract_mention_paths,
    normalize_mention_path,
    parse_slash_command_input,
    resolve_mention_tokens,
    resolve_mentioned_files_with_search,
)
from agent_space.prompt.pipeline import (
    Attachment,
    OfficePromptContext,
    OfficeRewardContext,
    PrepareChatPromptInput,
    PromptAssemblyResult,
    PromptPipelineDeps,
    ReferencedFileContent,
    prepare_chat_prompt,
)
from agent_space.prompt.workspace import (
    WorkspaceContextSnapshot,
    build_workspace_context_prompt,
    collect_workspace_snapshot,
)

__all__ = [
    "Attachment",
    "MentionLookupHit",
    "MentionResolutionResult",
    "OfficePromptContext",
    "OfficeRewardContext",
    "PrepareChatPromptInput",
    "PromptAssemblyResult",
    "PromptPipelineDeps",
    "ReferencedFileContent",
    "ResolvedMentionedFile",
    "SlashCommandInput",
    "WorkspaceContextSnapshot",
    "build_workspace_context_prompt",
    "collect_workspace_snapshot",
    "extract_mention_paths",
    "local_pipeline_deps",
    "local_search",
    "normalize_mention_path",
    "parse_slash_command_input",
    "prepare_chat_prompt",
    "read_text_preview",
    "resolve_mention_tokens",
    "resolve_mentioned_files_with_search",
]
