"""Task checklist tracking and line range parsing."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, replace
from enum import Enum


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def marker(self) -> str:
        return _STATUS_MARKERS[self]


_STATUS_MARKERS = {
    TaskStatus.PENDING: "○",
    TaskStatus.IN_PROGRESS: "→",
    TaskStatus.COMPLETED: "✓",
    TaskStatus.FAILED: "✗",
    TaskStatus.SKIPPED: "⊘",
}

_DONE_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.SKIPPED})


@dataclass(frozen=True, slots=True)
class TaskChecklistItem:
    """One plan step."""

    id: int
    description: str
    status: TaskStatus = TaskStatus.PENDING
    verification_note: str | None = None

    def display(self) -> str:
        text = f"{self.status.marker} {self.id}. {self.description}"
        if self.verification_note:
            text = f"{text} [{self.verification_note}]"
        return text


@dataclass(frozen=True, slots=True)
class ChecklistSnapshot:
    """Immutable view of a checklist handed to progress UIs."""

    goal_description: str
    items: tuple[TaskChecklistItem, ...]
    completed_count: int
    progress_percent: int
    is_complete: bool


class TaskChecklist:
    """Ordered plan steps for one agent run.

    Items are never removed; they only change status. Any status can follow any
    other, the orchestrator is responsible for sensible sequencing.
    """

    def __init__(self, steps: Iterable[str], goal: str) -> None:
        self.goal_description = goal
        self._items: list[TaskChecklistItem] = [
            TaskChecklistItem(id=index, description=step)
            for index, step in enumerate(steps, start=1)
        ]

    @property
    def items(self) -> tuple[TaskChecklistItem, ...]:
        return tuple(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def get(self, item_id: int) -> TaskChecklistItem | None:
        for item in self._items:
            if item.id == item_id:
                return item
        return None

    def update_status(self, item_id: int, status: TaskStatus, note: str | None = None) -> None:
        for index, item in enumerate(self._items):
            if item.id != item_id:
                continue
            if note is not None:
                self._items[index] = replace(item, status=status, verification_note=note)
            else:
                self._items[index] = replace(item, status=status)
            return

    def mark_in_progress(self, item_id: int) -> None:
        self.update_status(item_id, TaskStatus.IN_PROGRESS)

    def mark_completed(self, item_id: int, note: str | None = None) -> None:
        self.update_status(item_id, TaskStatus.COMPLETED, note)

    def mark_failed(self, item_id: int, note: str | None = None) -> None:
        self.update_status(item_id, TaskStatus.FAILED, note)

    def mark_skipped(self, item_id: int, note: str | None = None) -> None:
        self.update_status(item_id, TaskStatus.SKIPPED, note)

    def append_steps(self, steps: Iterable[str]) -> list[int]:
        """Append new pending steps and return their ids."""
        next_id = max((item.id for item in self._items), default=0) + 1
        added: list[int] = []
        for step in steps:
            description = step.strip()
            if not description:
                continue
            self._items.append(TaskChecklistItem(id=next_id, description=description))
            added.append(next_id)
            next_id += 1
        return added

    def replace_pending(self, steps: Iterable[str]) -> list[int]:
        """Supersede every pending step with ``steps``; other items are untouched."""
        for item in list(self._items):
            if item.status is TaskStatus.PENDING:
                self.mark_skipped(item.id, "superseded by plan revision")
        return self.append_steps(steps)

    @property
    def completed_count(self) -> int:
        return sum(1 for item in self._items if item.status is TaskStatus.COMPLETED)

    @property
    def progress_percent(self) -> int:
        if not self._items:
            return 0
        # Half rounds up, unlike round() which rounds half to even.
        return int(100 * self.completed_count / len(self._items) + 0.5)

    @property
    def is_complete(self) -> bool:
        return all(item.status in _DONE_STATUSES for item in self._items)

    @property
    def current_item(self) -> TaskChecklistItem | None:
        for item in self._items:
            if item.status is TaskStatus.IN_PROGRESS:
                return item
        for item in self._items:
            if item.status is TaskStatus.PENDING:
                return item
        return None

    @property
    def remaining_items(self) -> list[TaskChecklistItem]:
        return [item for item in self._items if item.status not in _DONE_STATUSES]

    def snapshot(self) -> ChecklistSnapshot:
        return ChecklistSnapshot(
            goal_description=self.goal_description,
            items=tuple(self._items),
            completed_count=self.completed_count,
            progress_percent=self.progress_percent,
            is_complete=self.is_complete,
        )

    def display(self) -> str:
        header = (
            f"CHECKLIST ({self.completed_count}/{len(self._items)} completed"
            f" - {self.progress_percent}%):"
        )
        return "\n".join([header, *(item.display() for item in self._items)])


@dataclass(frozen=True, slots=True)
class LineRange:
    """Inclusive 1-based line range; ``start`` is always <= ``end``."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start > self.end:
            low, high = self.end, self.start
            object.__setattr__(self, "start", low)
            object.__setattr__(self, "end", high)

    @classmethod
    def single(cls, line: int) -> LineRange:
        return cls(line, line)

    @classmethod
    def parse(cls, text: str) -> LineRange | None:
        """Parse ``"100"`` or ``"10-50"``; return ``None`` when malformed."""
        value = text.strip()
        if "-" in value:
            parts = value.split("-")
            if len(parts) != 2:
                return None
            try:
                return cls(int(parts[0].strip()), int(parts[1].strip()))
            except ValueError:
                return None
        try:
            return cls.single(int(value))
        except ValueError:
            return None

    @classmethod
    def parse_multiple(cls, text: str) -> list[LineRange]:
        ranges = [cls.parse(part) for part in text.split(",") if part.strip()]
        return [line_range for line_range in ranges if line_range is not None]

    def contains(self, line: int) -> bool:
        return self.start <= line <= self.end

    def __str__(self) -> str:
        if self.start == self.end:
            return f"L{self.start}"
        return f"L{self.start}-{self.end}"
