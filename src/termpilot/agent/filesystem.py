"""Local filesystem access rooted at the terminal's working directory."""

from __future__ import annotations

import fnmatch
import os
from collections.abc import Callable
from pathlib import Path

from .errors import ToolExecutionError

MAX_LIST_ENTRIES = 500
MAX_SEARCH_MATCHES = 200


class LocalFileSystem:
    """Resolves relative paths against the current working directory.

    ``cwd`` is a callable so the filesystem follows ``cd`` in the terminal.
    """

    def __init__(self, cwd: Callable[[], str]) -> None:
        self._cwd = cwd

    def resolve(self, path: str) -> Path:
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = Path(self._cwd()) / candidate
        return candidate.resolve()

    def exists(self, path: str) -> bool:
        return self.resolve(path).exists()

    def is_file(self, path: str) -> bool:
        return self.resolve(path).is_file()

    def is_dir(self, path: str) -> bool:
        return self.resolve(path).is_dir()

    def read_text(self, path: str) -> str:
        target = self.resolve(path)
        if not target.is_file():
            raise ToolExecutionError(f"File not found: '{path}' (resolved to: '{target}')")
        try:
            return target.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            raise ToolExecutionError(f"Error reading file: {exc}") from exc

    def write_text(self, path: str, content: str) -> None:
        target = self.resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise ToolExecutionError(f"Error writing file: {exc}") from exc

    def delete(self, path: str) -> None:
        target = self.resolve(path)
        if not target.is_file():
            raise ToolExecutionError(f"File not found: '{path}' (resolved to: '{target}')")
        try:
            target.unlink()
        except OSError as exc:
            raise ToolExecutionError(f"Error deleting file: {exc}") from exc

    def list_dir(self, path: str, *, recursive: bool = False) -> list[str]:
        """Relative entry names, directories suffixed with ``/``, hidden entries skipped."""
        base = self._require_dir(path)
        entries: list[Path] = []
        try:
            if recursive:
                for root, dirs, files in os.walk(base):
                    dirs[:] = sorted(name for name in dirs if not name.startswith("."))
                    for name in [*dirs, *sorted(files)]:
                        if name.startswith("."):
                            continue
                        entries.append(Path(root) / name)
                        if len(entries) >= MAX_LIST_ENTRIES:
                            break
                    if len(entries) >= MAX_LIST_ENTRIES:
                        break
            else:
                entries = [item for item in base.iterdir() if not item.name.startswith(".")]
        except OSError as exc:
            raise ToolExecutionError(f"Error listing directory: {exc}") from exc

        rendered = []
        for item in sorted(entries):
            suffix = "/" if item.is_dir() else ""
            rendered.append(f"{item.relative_to(base).as_posix()}{suffix}")
        return rendered

    def search(self, path: str, pattern: str, *, recursive: bool = True) -> list[str]:
        """File names matching a glob ``pattern``, relative to ``path``."""
        base = self._require_dir(path)
        matches: list[str] = []
        try:
            for root, dirs, files in os.walk(base):
                dirs[:] = sorted(name for name in dirs if not name.startswith("."))
                for name in sorted(files):
                    if name.startswith(".") or not fnmatch.fnmatch(name, pattern):
                        continue
                    matches.append((Path(root) / name).relative_to(base).as_posix())
                    if len(matches) >= MAX_SEARCH_MATCHES:
                        return matches
                if not recursive:
                    break
        except OSError as exc:
            raise ToolExecutionError(f"Error searching files: {exc}") from exc
        return matches

    def _require_dir(self, path: str) -> Path:
        target = self.resolve(path)
        if not target.is_dir():
            raise ToolExecutionError(
                f"Directory not found: '{path}' (resolved to: '{target}'). "
                "Use an absolute path if the working directory is unknown."
            )
        return target
