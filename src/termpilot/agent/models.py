"""Data models shared by the agent loop, tools and approval gate."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from .checklist import ChecklistSnapshot
    from .diff import FileDiff

RunStatus = Literal["completed", "failed", "aborted"]


class OperationType(str, Enum):
    CREATE = "create"
    EDIT = "edit"
    INSERT = "insert"
    DELETE = "delete"
    OVERWRITE = "overwrite"
    DELETE_FILE = "delete_file"

    @property
    def is_destructive(self) -> bool:
        return self in {OperationType.DELETE, OperationType.DELETE_FILE}


class RunState(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    EXECUTING = "executing"
    REFLECTING = "reflecting"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class FileChange:
    """Proposed change to one file, captured before anything is written."""

    file_path: str
    operation_type: OperationType
    before_content: str | None
    after_content: str | None
    timestamp: datetime = field(default_factory=_utcnow)
    old_text: str | None = None
    new_text: str | None = None
    start_line: int | None = None
    end_line: int | None = None


@dataclass(frozen=True, slots=True)
class ToolCall:
    """A tool invocation requested by the model."""

    name: str
    args: dict[str, object]
    call_id: str | None = None


@dataclass(slots=True)
class ToolResult:
    """Structured result the model reads after every tool call."""

    tool: str
    success: bool
    output: str = ""
    error: str | None = None
    error_kind: str | None = None
    file_change: FileChange | None = None
    diff: FileDiff | None = None
    fatal: bool = False

    def render(self) -> str:
        if self.success:
            return self.output or "(no output)"
        text = f"[{self.error_kind or 'Error'}] {self.error or 'Tool failed.'}"
        if self.output:
            text = f"{text}\n{self.output}"
        return text


@dataclass(slots=True)
class RunResult:
    """Terminal state of one agent run."""

    status: RunStatus
    reason: str
    final_message: str
    steps: int = 0
    checklist: ChecklistSnapshot | None = None
    file_changes: list[FileChange] = field(default_factory=list)


@dataclass(slots=True)
class RollbackResult:
    """What a rollback restored; shell commands cannot be undone and are only listed."""

    restored: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    unrevertable_commands: list[str] = field(default_factory=list)
