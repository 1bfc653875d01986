"""Command classification used to decide which shell commands need approval."""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field, replace

READ_ONLY_PREFIXES: tuple[str, ...] = (
    "ls", "cat", "head", "tail", "less", "more", "grep", "find", "which", "where",
    "pwd", "whoami", "hostname", "uname", "date", "cal", "echo", "printf", "wc",
    "file", "stat", "du", "df", "free", "top", "ps", "env", "printenv",
    "git status", "git log", "git diff", "git show", "git branch",
    "docker ps", "docker images", "docker logs",
    "brew list", "brew info", "brew search",
    "npm list", "npm info", "npm search",
    "pip list", "pip show",
    "cargo --version", "rustc --version", "python --version", "node --version",
    "swift --version",
)  # fmt: skip

DEFAULT_BLOCKED_PATTERNS: tuple[str, ...] = (
    # File deletion
    "rm", "rmdir", "unlink",
    # Privilege escalation
    "sudo", "su ", "doas",
    # Permissions
    "chmod", "chown", "chgrp",
    # Git history rewriting
    "git push --force", "git push -f", "git reset --hard", "git clean -fd",
    "git clean -f", "git checkout -- .",
    # Moves and raw device access
    "mv /", "cp /dev/", "dd ",
    # Disks
    "mkfs", "fdisk", "diskutil eraseDisk", "diskutil partitionDisk",
    # Processes and system state
    "kill ", "killall ", "pkill ", "shutdown", "reboot", "halt",
    # Package removal
    "brew uninstall", "brew remove", "pip uninstall", "npm uninstall -g",
    "apt remove", "apt purge",
    # Databases
    "DROP DATABASE", "DROP TABLE", "TRUNCATE", "DELETE FROM",
)  # fmt: skip

_CHAIN_SEPARATORS = re.compile(r"&&|\|\||[;|\n]")


@dataclass(frozen=True, slots=True)
class ApprovalPolicy:
    """Immutable command approval settings."""

    require_command_approval: bool = False
    auto_approve_read_only: bool = True
    blocked_patterns: tuple[str, ...] = field(default=DEFAULT_BLOCKED_PATTERNS)

    def add_blocked_pattern(self, pattern: str) -> ApprovalPolicy:
        cleaned = pattern.strip()
        if not cleaned or cleaned in self.blocked_patterns:
            return self
        return replace(self, blocked_patterns=(*self.blocked_patterns, cleaned))

    def remove_blocked_pattern(self, pattern: str) -> ApprovalPolicy:
        cleaned = pattern.strip()
        remaining = tuple(item for item in self.blocked_patterns if item != cleaned)
        return replace(self, blocked_patterns=remaining)

    def reset_blocked_patterns(self) -> ApprovalPolicy:
        return replace(self, blocked_patterns=DEFAULT_BLOCKED_PATTERNS)


def normalize_patterns(patterns: Iterable[str]) -> tuple[str, ...]:
    """Trim, drop empties and deduplicate while keeping order."""
    seen: dict[str, None] = {}
    for pattern in patterns:
        cleaned = pattern.strip()
        if cleaned:
            seen.setdefault(cleaned, None)
    return tuple(seen)


def _normalize(command: str) -> str:
    return command.strip().lower()


def is_read_only(command: str) -> bool:
    """Return true when the command starts with a known read-only prefix."""
    normalized = _normalize(command)
    return any(normalized.startswith(prefix) for prefix in READ_ONLY_PREFIXES)


def is_destructive(command: str, blocked_patterns: Iterable[str] = DEFAULT_BLOCKED_PATTERNS) -> bool:
    """Return true when the command or any part chained with ; && || | matches a blocked pattern.

    A pattern matches on exact equality, when the command starts with the pattern
    followed by a space or tab, when a multi-word pattern occurs anywhere in the
    command, or when a pattern ending in a space is a prefix of the command.
    """
    normalized = _normalize(command)
    segments = [normalized, *(part.strip() for part in _CHAIN_SEPARATORS.split(normalized))]
    patterns = list(blocked_patterns)
    return any(_matches_blocked(segment, patterns) for segment in segments if segment)


def _matches_blocked(normalized: str, blocked_patterns: Iterable[str]) -> bool:
    for raw in blocked_patterns:
        pattern = raw.lower()
        if not pattern.strip():
            continue
        if normalized == pattern:
            return True
        if normalized.startswith(pattern + " ") or normalized.startswith(pattern + "\t"):
            return True
        if " " in pattern and pattern in normalized:
            return True
        if pattern.endswith(" ") and normalized.startswith(pattern):
            return True
    return False


def should_auto_approve(command: str, policy: ApprovalPolicy) -> bool:
    if is_destructive(command, policy.blocked_patterns):
        return False
    if not policy.require_command_approval:
        return True
    return policy.auto_approve_read_only and is_read_only(command)
