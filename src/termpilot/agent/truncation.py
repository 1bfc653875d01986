"""Output truncation that keeps the head, the tail and error lines in between."""

from __future__ import annotations

import re

HEAD_RATIO = 0.6
ERROR_RESERVE_RATIO = 0.2

_ERROR_PATTERN = re.compile(
    r"error|failed|failure|exception|fatal|warning|cannot|could not|unable to|"
    r"not found|undefined|segmentation fault|traceback|panic|assert|denied|"
    r"refused|timeout|timed out",
    re.IGNORECASE,
)
_ERROR_PATTERN_CASED = re.compile(r"\b(?:FAIL|ERROR|FATAL)\b")


def is_error_line(line: str) -> bool:
    return bool(_ERROR_PATTERN.search(line) or _ERROR_PATTERN_CASED.search(line))


def smart_truncate(text: str, max_chars: int, *, head_ratio: float = HEAD_RATIO) -> str:
    """Shrink ``text`` to roughly ``max_chars``.

    Whole lines are kept from the start and the end; lines from the omitted middle
    that look like errors are kept too, each prefixed with its line number.
    """
    if len(text) <= max_chars:
        return text

    lines = text.split("\n")
    reserve = int(max_chars * ERROR_RESERVE_RATIO)
    remaining = max_chars - reserve
    head_budget = int(remaining * head_ratio)
    tail_budget = remaining - head_budget

    head_count = _fit_lines(lines, head_budget)
    tail_count = _fit_lines(list(reversed(lines[head_count:])), tail_budget)
    if head_count == 0 and tail_count == 0:
        omitted = len(text) - head_budget - tail_budget
        return (
            f"{text[:head_budget]}\n... [{omitted} characters omitted] ...\n"
            f"{text[len(text) - tail_budget:]}"
        )

    middle_start = head_count
    middle_end = len(lines) - tail_count
    kept_errors: list[str] = []
    used = 0
    for number in range(middle_start, middle_end):
        line = lines[number]
        if not is_error_line(line):
            continue
        entry = f"  L{number + 1}: {line}"
        if used + len(entry) + 1 > reserve:
            break
        kept_errors.append(entry)
        used += len(entry) + 1

    omitted_lines = middle_end - middle_start
    parts = lines[:head_count]
    if kept_errors:
        parts.append(
            f"... [{omitted_lines} lines omitted, {len(kept_errors)} error lines shown] ..."
        )
        parts.extend(kept_errors)
        parts.append("... [end of omitted section] ...")
    else:
        parts.append(f"... [{omitted_lines} lines omitted] ...")
    parts.extend(lines[middle_end:])
    return "\n".join(parts)


def _fit_lines(lines: list[str], budget: int) -> int:
    used = 0
    count = 0
    for line in lines:
        cost = len(line) + 1
        if used + cost > budget:
            break
        used += cost
        count += 1
    return count
