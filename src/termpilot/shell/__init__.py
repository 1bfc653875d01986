"""Shell execution, command classification and background processes."""

from .base import CommandResult, ShellAdapter, sanitize_command
from .bash_adapter import BashAdapter
from .processes import ProcessManager
from .session import TerminalSession


def create_shell_adapter(shell_name: str) -> ShellAdapter:
    normalized = shell_name.strip().lower()
    if normalized in {"bash", "sh", "shell"}:
        return BashAdapter(executable="sh" if normalized == "sh" else None)
    msg = f"Unsupported shell adapter: {shell_name}"
    raise ValueError(msg)


__all__ = [
    "BashAdapter",
    "CommandResult",
    "ProcessManager",
    "ShellAdapter",
    "TerminalSession",
    "create_shell_adapter",
    "sanitize_command",
]
