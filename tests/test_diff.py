from __future__ import annotations

from termpilot.agent.diff import (
    DiffLineType,
    apply_hunks,
    compute_diff,
    diff_for_change,
    split_lines,
)
from termpilot.agent.models import FileChange, OperationType


def test_single_line_edit_counts() -> None:
    diff = compute_diff("a\nb\nc", "a\nB\nc")

    assert (diff.added_count, diff.removed_count, diff.unchanged_count) == (1, 1, 2)
    assert diff.summary == "+1 -1"
    assert len(diff.hunks) == 1
    assert diff.has_changes is True


def test_line_numbers_follow_their_side() -> None:
    diff = compute_diff("a\nb\nc", "a\nB\nc")

    removed = [line for line in diff.lines if line.type is DiffLineType.REMOVED]
    added = [line for line in diff.lines if line.type is DiffLineType.ADDED]
    unchanged = [line for line in diff.lines if line.type is DiffLineType.UNCHANGED]

    assert removed[0].old_line_number == 2
    assert removed[0].line_number is None
    assert added[0].line_number == 2
    assert added[0].old_line_number is None
    assert removed[0].hunk_id == added[0].hunk_id == 1
    assert all(line.hunk_id is None for line in unchanged)
    assert [(line.old_line_number, line.line_number) for line in unchanged] == [(1, 1), (3, 3)]


def test_create_and_delete_file_diffs() -> None:
    created = diff_for_change(
        FileChange("new.txt", OperationType.CREATE, before_content=None, after_content="x\ny")
    )
    deleted = diff_for_change(
        FileChange("old.txt", OperationType.DELETE_FILE, before_content="x\ny", after_content=None)
    )

    assert created.summary == "+2 -0"
    assert deleted.summary == "+0 -2"


def test_identical_content_has_no_hunks() -> None:
    diff = compute_diff("same\n", "same\n")

    assert diff.has_changes is False
    assert diff.unified("f.txt") == ""


def test_split_lines_round_trips() -> None:
    text = "one\ntwo\n"

    assert "\n".join(split_lines(text)) == text
    assert split_lines(None) == []


def test_apply_hunks_with_subset() -> None:
    before = "\n".join(["1", "2", "3", "4", "5", "6", "7", "8"])
    after = "\n".join(["1", "TWO", "3", "4", "5", "6", "SEVEN", "8"])
    diff = compute_diff(before, after)

    assert [hunk.id for hunk in diff.hunks] == [1, 2]
    assert apply_hunks(before, diff, [1, 2]) == after
    assert apply_hunks(before, diff, []) == before
    assert apply_hunks(before, diff, [2]) == "\n".join(
        ["1", "2", "3", "4", "5", "6", "SEVEN", "8"]
    )


def test_with_context_keeps_neighbours_as_context_lines() -> None:
    before = "\n".join(str(n) for n in range(1, 11))
    after = before.replace("5", "five")
    diff = compute_diff(before, after)

    window = diff.with_context(1)

    assert [line.type for line in window] == [
        DiffLineType.CONTEXT,
        DiffLineType.REMOVED,
        DiffLineType.ADDED,
        DiffLineType.CONTEXT,
    ]
    assert [line.content for line in window] == ["4", "5", "five", "6"]


def test_unified_output() -> None:
    before = "\n".join(str(n) for n in range(1, 11))
    after = before.replace("5", "five")

    text = compute_diff(before, after).unified("src/app.py")

    lines = text.splitlines()
    assert lines[:3] == ["--- a/src/app.py", "+++ b/src/app.py", "@@ -2,7 +2,7 @@"]
    assert "-5" in lines
    assert "+five" in lines
    assert " 4" in lines


def test_side_by_side_rows() -> None:
    rows = compute_diff("a\nb", "a\nc").side_by_side()

    assert (rows[0].left_text, rows[0].right_text) == ("a", "a")
    assert (rows[1].left_number, rows[1].left_text, rows[1].right_number) == (2, "b", None)
    assert (rows[2].left_number, rows[2].right_text) == (None, "c")
