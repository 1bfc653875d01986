"""Terminal session that keeps a working directory across commands."""

from __future__ import annotations

import logging
from pathlib import Path

from .base import CommandResult, ShellAdapter

LOGGER = logging.getLogger(__name__)

_PWD_MARKER = "__TERMPILOT_PWD__"


class TerminalSession:
    """Runs commands through an adapter and follows ``cd`` between them."""

    def __init__(self, adapter: ShellAdapter, working_directory: str | None = None) -> None:
        self.adapter = adapter
        self._cwd = str(Path(working_directory or Path.cwd()).resolve())
        self._last_output = ""

    @property
    def name(self) -> str:
        return self.adapter.name

    def current_directory(self) -> str:
        return self._cwd

    def last_output(self) -> str:
        return self._last_output

    def run(self, command: str, timeout: float | None = None) -> CommandResult:
        wrapped = (
            f"{command}\n"
            "__termpilot_status=$?\n"
            f"printf '\\n{_PWD_MARKER}%s\\n' \"$PWD\"\n"
            "exit $__termpilot_status"
        )
        result = self.adapter.execute(wrapped, cwd=self._cwd, timeout=timeout)
        result.command = command
        stdout, marker, tail = result.stdout.rpartition(f"\n{_PWD_MARKER}")
        if marker:
            result.stdout = stdout
            new_cwd = tail.strip()
            if new_cwd and new_cwd != self._cwd:
                LOGGER.debug("terminal_cwd_changed", extra={"cwd": new_cwd})
                self._cwd = new_cwd
        self._last_output = result.output
        return result
