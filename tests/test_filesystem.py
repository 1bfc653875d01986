from __future__ import annotations

from pathlib import Path

import pytest

from termpilot.agent.errors import ToolExecutionError
from termpilot.agent.filesystem import LocalFileSystem


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("print('hi')\n", encoding="utf-8")
    (tmp_path / "src" / "util.py").write_text("", encoding="utf-8")
    (tmp_path / "README.md").write_text("# demo\n", encoding="utf-8")
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "config").write_text("", encoding="utf-8")
    return tmp_path


def test_relative_paths_follow_the_cwd_callable(workspace: Path) -> None:
    cwd = {"path": str(workspace)}
    fs = LocalFileSystem(lambda: cwd["path"])

    assert fs.read_text("README.md") == "# demo\n"
    cwd["path"] = str(workspace / "src")
    assert fs.is_file("app.py")


def test_list_dir_skips_hidden_and_marks_directories(workspace: Path) -> None:
    fs = LocalFileSystem(lambda: str(workspace))

    assert fs.list_dir(".") == ["README.md", "src/"]
    assert fs.list_dir(".", recursive=True) == ["README.md", "src/", "src/app.py", "src/util.py"]


def test_search_matches_file_names(workspace: Path) -> None:
    fs = LocalFileSystem(lambda: str(workspace))

    assert fs.search(".", "*.py") == ["src/app.py", "src/util.py"]
    assert fs.search(".", "*.py", recursive=False) == []


def test_write_creates_parents_and_delete_removes(workspace: Path) -> None:
    fs = LocalFileSystem(lambda: str(workspace))

    fs.write_text("docs/new/guide.md", "text")
    assert (workspace / "docs" / "new" / "guide.md").read_text(encoding="utf-8") == "text"

    fs.delete("docs/new/guide.md")
    assert not (workspace / "docs" / "new" / "guide.md").exists()


def test_missing_paths_raise_tool_errors(workspace: Path) -> None:
    fs = LocalFileSystem(lambda: str(workspace))

    with pytest.raises(ToolExecutionError, match="File not found"):
        fs.read_text("missing.txt")
    with pytest.raises(ToolExecutionError, match="Directory not found"):
        fs.list_dir("nope")
    with pytest.raises(ToolExecutionError, match="File not found"):
        fs.delete("src")
