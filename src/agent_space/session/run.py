"""Run-scoped state shared by the orchestrator and the event router."""

from __future__ import annotations

import time
from dataclasses import dataclass, field


@dataclass
class RunState:
    """
    Counters and maps that live for one agent run.

    ``active_tool_names`` maps tool-use id to tool name until its result
    arrives; ``active_subagents`` maps a delegation tool-use id to the
    subagent id it spawned.
    """

    tool_call_count: int = 0
    file_write_count: int = 0
    subagent_seat_counter: int = 0
    active_tool_names: dict[str, str] = field(default_factory=dict)
    active_subagents: dict[str, str] = field(default_factory=dict)
    directory: str | None = None
    started_at: float | None = None
    context_files: int = 0
    unresolved_mentions: int = 0
    yolo_mode: bool = False
    reward_recorded: bool = False

    def start(
        self,
        directory: str | None,
        context_files: int = 0,
        unresolved_mentions: int = 0,
        yolo_mode: bool = False,
    ) -> None:
        """Begin a run: counters reset, clock started."""
        self.reset()
        self.directory = directory
        self.started_at = time.time()
        self.context_files = context_files
        self.unresolved_mentions = unresolved_mentions
        self.yolo_mode = yolo_mode
        self.reward_recorded = False

    def next_seat(self) -> int:
        seat = self.subagent_seat_counter
        self.subagent_seat_counter += 1
        return seat

    @property
    def duration_ms(self) -> int:
        if self.started_at is None:
            return 0
        return max(0, int((time.time() - self.started_at) * 1000))

    def reset(self) -> None:
        # reward_recorded survives until the next start()
        self.tool_call_count = 0
        self.file_write_count = 0
        self.subagent_seat_counter = 0
        self.active_tool_names.clear()
        self.active_subagents.clear()
        self.directory = None
        self.started_at = None
        self.context_files = 0
        self.unresolved_mentions = 0
        self.yolo_mode = False
