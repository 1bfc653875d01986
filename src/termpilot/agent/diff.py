"""Line diffs with hunk-level partial acceptance."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from difflib import SequenceMatcher
from enum import Enum

from .models import FileChange


class DiffLineType(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    UNCHANGED = "unchanged"
    CONTEXT = "context"


@dataclass(frozen=True, slots=True)
class DiffLine:
    content: str
    type: DiffLineType
    line_number: int | None = None
    old_line_number: int | None = None
    hunk_id: int | None = None


@dataclass(frozen=True, slots=True)
class Hunk:
    """A maximal run of removed/added lines.

    ``old_start``/``old_end`` are 0-based slice bounds into the before lines.
    """

    id: int
    old_start: int
    old_end: int
    removed: tuple[str, ...]
    added: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class SideBySideRow:
    left_number: int | None
    left_text: str
    right_number: int | None
    right_text: str
    type: DiffLineType


@dataclass(frozen=True, slots=True)
class FileDiff:
    lines: tuple[DiffLine, ...]
    hunks: tuple[Hunk, ...]

    @property
    def added_count(self) -> int:
        return sum(1 for line in self.lines if line.type is DiffLineType.ADDED)

    @property
    def removed_count(self) -> int:
        return sum(1 for line in self.lines if line.type is DiffLineType.REMOVED)

    @property
    def unchanged_count(self) -> int:
        return sum(1 for line in self.lines if line.type is DiffLineType.UNCHANGED)

    @property
    def has_changes(self) -> bool:
        return bool(self.hunks)

    @property
    def summary(self) -> str:
        return f"+{self.added_count} -{self.removed_count}"

    def with_context(self, context: int = 3) -> tuple[DiffLine, ...]:
        """Changed lines plus up to ``context`` unchanged lines around each hunk.

        Kept unchanged lines are re-typed as context; the rest are dropped.
        """
        return tuple(line for block in self._context_blocks(context) for line in block)

    def _context_blocks(self, context: int) -> list[list[DiffLine]]:
        keep: set[int] = set()
        for index, line in enumerate(self.lines):
            if line.type is not DiffLineType.UNCHANGED:
                keep.update(
                    range(max(0, index - context), min(len(self.lines), index + context + 1))
                )
        blocks: list[list[DiffLine]] = []
        previous: int | None = None
        for index in sorted(keep):
            line = self.lines[index]
            if line.type is DiffLineType.UNCHANGED:
                line = DiffLine(
                    content=line.content,
                    type=DiffLineType.CONTEXT,
                    line_number=line.line_number,
                    old_line_number=line.old_line_number,
                )
            if previous is None or index != previous + 1:
                blocks.append([])
            blocks[-1].append(line)
            previous = index
        return blocks

    def side_by_side(self) -> list[SideBySideRow]:
        rows: list[SideBySideRow] = []
        for line in self.lines:
            if line.type is DiffLineType.REMOVED:
                rows.append(SideBySideRow(line.old_line_number, line.content, None, "", line.type))
            elif line.type is DiffLineType.ADDED:
                rows.append(SideBySideRow(None, "", line.line_number, line.content, line.type))
            else:
                rows.append(
                    SideBySideRow(
                        line.old_line_number, line.content, line.line_number, line.content, line.type
                    )
                )
        return rows

    def unified(self, path: str = "file", *, context: int = 3) -> str:
        if not self.hunks:
            return ""
        output = [f"--- a/{path}", f"+++ b/{path}"]
        for block in self._context_blocks(context):
            old_numbers = [line.old_line_number for line in block if line.old_line_number]
            new_numbers = [line.line_number for line in block if line.line_number]
            old_len = sum(1 for line in block if line.type is not DiffLineType.ADDED)
            new_len = sum(1 for line in block if line.type is not DiffLineType.REMOVED)
            old_start = old_numbers[0] if old_numbers else 0
            new_start = new_numbers[0] if new_numbers else 0
            output.append(f"@@ -{old_start},{old_len} +{new_start},{new_len} @@")
            for line in block:
                prefix = {DiffLineType.ADDED: "+", DiffLineType.REMOVED: "-"}.get(line.type, " ")
                output.append(f"{prefix}{line.content}")
        return "\n".join(output)


def split_lines(text: str | None) -> list[str]:
    """Split on newlines so that joining with ``"\\n"`` restores the text exactly."""
    if text is None:
        return []
    return text.split("\n")


def compute_diff(before: str | None, after: str | None) -> FileDiff:
    before_lines = split_lines(before)
    after_lines = split_lines(after)
    matcher = SequenceMatcher(a=before_lines, b=after_lines, autojunk=False)

    lines: list[DiffLine] = []
    hunks: list[Hunk] = []
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            for offset in range(i2 - i1):
                lines.append(
                    DiffLine(
                        content=before_lines[i1 + offset],
                        type=DiffLineType.UNCHANGED,
                        line_number=j1 + offset + 1,
                        old_line_number=i1 + offset + 1,
                    )
                )
            continue

        hunk_id = len(hunks) + 1
        hunks.append(
            Hunk(
                id=hunk_id,
                old_start=i1,
                old_end=i2,
                removed=tuple(before_lines[i1:i2]),
                added=tuple(after_lines[j1:j2]),
            )
        )
        for index in range(i1, i2):
            lines.append(
                DiffLine(
                    content=before_lines[index],
                    type=DiffLineType.REMOVED,
                    old_line_number=index + 1,
                    hunk_id=hunk_id,
                )
            )
        for index in range(j1, j2):
            lines.append(
                DiffLine(
                    content=after_lines[index],
                    type=DiffLineType.ADDED,
                    line_number=index + 1,
                    hunk_id=hunk_id,
                )
            )
    return FileDiff(lines=tuple(lines), hunks=tuple(hunks))


def diff_for_change(change: FileChange) -> FileDiff:
    return compute_diff(change.before_content, change.after_content)


def apply_hunks(before: str | None, diff: FileDiff, accepted: Iterable[int]) -> str:
    """Rebuild the file from ``before`` with only the ``accepted`` hunks applied."""
    accepted_ids = set(accepted)
    before_lines = split_lines(before)
    result: list[str] = []
    cursor = 0
    for hunk in diff.hunks:
        result.extend(before_lines[cursor : hunk.old_start])
        if hunk.id in accepted_ids:
            result.extend(hunk.added)
        else:
            result.extend(before_lines[hunk.old_start : hunk.old_end])
        cursor = hunk.old_end
    result.extend(before_lines[cursor:])
    return "\n".join(result)


