"""Per-run working stores: model notes and recent command output."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

MAX_OUTPUT_ENTRIES = 50
DEFAULT_OUTPUT_BUFFER_CHARS = 100_000


class MemoryStore:
    """Key/value notes the model saves and recalls during a run."""

    def __init__(self) -> None:
        self._values: dict[str, str] = {}

    def save(self, key: str, value: str) -> None:
        self._values[key] = value

    def recall(self, key: str) -> str | None:
        return self._values.get(key)

    def list(self) -> list[str]:
        return sorted(self._values)

    def clear(self) -> None:
        self._values.clear()


@dataclass(frozen=True, slots=True)
class OutputEntry:
    command: str
    output: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True, slots=True)
class OutputMatch:
    command: str
    line_number: int
    matched_line: str
    context: str


class OutputBuffer:
    """Full, untruncated output of recent commands for later search."""

    def __init__(self, max_total_chars: int = DEFAULT_OUTPUT_BUFFER_CHARS) -> None:
        self.max_total_chars = max_total_chars
        self._entries: deque[OutputEntry] = deque(maxlen=MAX_OUTPUT_ENTRIES)

    def __len__(self) -> int:
        return len(self._entries)

    def store(self, output: str, command: str) -> None:
        self._entries.append(OutputEntry(command=command, output=output))
        total = sum(len(entry.output) for entry in self._entries)
        while total > self.max_total_chars and self._entries:
            total -= len(self._entries.popleft().output)

    def search(self, pattern: str, context_lines: int = 3) -> list[OutputMatch]:
        needle = pattern.lower()
        matches: list[OutputMatch] = []
        for entry in self._entries:
            lines = entry.output.splitlines()
            for index, line in enumerate(lines):
                if needle not in line.lower():
                    continue
                start = max(0, index - context_lines)
                end = min(len(lines), index + context_lines + 1)
                matches.append(
                    OutputMatch(
                        command=entry.command,
                        line_number=index + 1,
                        matched_line=line,
                        context="\n".join(lines[start:end]),
                    )
                )
        return matches

    def full_output(self, command: str) -> str | None:
        for entry in reversed(self._entries):
            if entry.command == command:
                return entry.output
        return None

    def clear(self) -> None:
        self._entries.clear()
