from __future__ import annotations

import pytest

from termpilot.agent.truncation import is_error_line, smart_truncate


def test_short_text_is_unchanged() -> None:
    assert smart_truncate("hello\nworld", 100) == "hello\nworld"


def test_keeps_head_tail_and_error_lines() -> None:
    lines = [f"line {n} ok" for n in range(1, 401)]
    lines[200] = "ERROR: database connection refused"
    text = "\n".join(lines)

    result = smart_truncate(text, 1_000)

    assert result.startswith("line 1 ok\n")
    assert result.endswith("line 400 ok")
    assert "  L201: ERROR: database connection refused" in result
    assert "error lines shown] ..." in result
    assert "... [end of omitted section] ..." in result
    assert len(result) < len(text)


def test_marker_without_error_lines() -> None:
    text = "\n".join(f"row {n}" for n in range(1, 500))

    result = smart_truncate(text, 500)

    assert "lines omitted] ..." in result
    assert "error lines shown" not in result


def test_single_huge_line_falls_back_to_characters() -> None:
    text = "x" * 5_000

    result = smart_truncate(text, 1_000)

    assert "characters omitted] ..." in result
    assert len(result) < 1_200


@pytest.mark.parametrize(
    ("line", "expected"),
    [
        ("Traceback (most recent call last):", True),
        ("npm ERR! FAIL src/app.test.js", True),
        ("permission denied", True),
        ("request timed out", True),
        ("compiled 12 files", False),
    ],
)
def test_is_error_line(line: str, expected: bool) -> None:
    assert is_error_line(line) is expected
