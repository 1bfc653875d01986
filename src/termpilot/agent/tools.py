"""Tool dispatch: maps model tool calls onto files, shell, HTTP and plan state."""

from __future__ import annotations

import asyncio
import http.client
import json
import logging
import os
import re
from collections.abc import Awaitable, Callable
from dataclasses import replace
from typing import Protocol
from urllib import request
from urllib.error import HTTPError, URLError

from termpilot.agent.approval import ApprovalGate
from termpilot.agent.budget import ContextBudget
from termpilot.agent.checklist import LineRange, TaskChecklist
from termpilot.agent.diff import FileDiff, apply_hunks, diff_for_change, split_lines
from termpilot.agent.errors import (
    AgentError,
    ApprovalRejected,
    CapabilityError,
    ToolExecutionError,
    ToolTimeoutError,
)
from termpilot.agent.filesystem import LocalFileSystem
from termpilot.agent.models import FileChange, OperationType, ToolResult
from termpilot.agent.modes import TOOL_CAPABILITIES, AgentMode, tools_for_mode
from termpilot.agent.stores import MemoryStore, OutputBuffer
from termpilot.agent.truncation import smart_truncate
from termpilot.config import AgentSettings
from termpilot.shell.base import CommandResult, sanitize_command
from termpilot.shell.processes import ProcessManager, pid_is_running, port_in_use

LOGGER = logging.getLogger(__name__)

HTTP_BODY_PREVIEW = 2000
MAX_OUTPUT_MATCHES_SHOWN = 20
EDIT_PREVIEW_LINES = 10

_CHECKBOX_PATTERN = re.compile(r"^\s*[-*]\s*\[([ xX])\]\s*(.+?)\s*$")

ToolHandler = Callable[[dict[str, object]], Awaitable[ToolResult]]


class Terminal(Protocol):
    def current_directory(self) -> str: ...

    def run(self, command: str, timeout: float | None = None) -> CommandResult: ...

    def last_output(self) -> str: ...


def _prop(type_: str = "string", description: str = "") -> dict[str, object]:
    schema: dict[str, object] = {"type": type_}
    if description:
        schema["description"] = description
    return schema


def _function(
    name: str, description: str, properties: dict[str, dict[str, object]], required: list[str]
) -> dict[str, object]:
    return {
        "type": "function",
        "name": name,
        "description": description,
        "parameters": {"type": "object", "properties": properties, "required": required},
    }


TOOL_SCHEMAS: dict[str, dict[str, object]] = {
    "read_file": _function(
        "read_file",
        "Read a file. Optional start_line/end_line, or lines like '10-50,80-100'.",
        {
            "path": _prop(),
            "start_line": _prop("integer"),
            "end_line": _prop("integer"),
            "lines": _prop(description="Comma separated line ranges"),
        },
        ["path"],
    ),
    "list_dir": _function(
        "list_dir",
        "List directory contents; directories end with '/'.",
        {"path": _prop(), "recursive": _prop("boolean")},
        ["path"],
    ),
    "search_files": _function(
        "search_files",
        "Find files whose name matches a glob pattern such as '*.py'.",
        {
            "path": _prop(),
            "pattern": _prop(),
            "recursive": _prop("boolean"),
        },
        ["path", "pattern"],
    ),
    "search_output": _function(
        "search_output",
        "Search the full output of previous shell commands.",
        {"pattern": _prop(), "context_lines": _prop("integer")},
        ["pattern"],
    ),
    "check_process": _function(
        "check_process",
        "Check a process by pid, a port on localhost, or list managed background processes.",
        {
            "pid": _prop("integer"),
            "port": _prop("integer"),
            "list": _prop("boolean"),
        },
        [],
    ),
    "http_request": _function(
        "http_request",
        "Make an HTTP request. Headers use 'Key: value, Key2: value2'.",
        {
            "url": _prop(),
            "method": _prop(),
            "body": _prop(),
            "headers": _prop(),
        },
        ["url"],
    ),
    "memory": _function(
        "memory",
        "Save, recall or list notes for this task.",
        {
            "action": {"type": "string", "enum": ["save", "recall", "list"]},
            "key": _prop(),
            "value": _prop(),
        },
        ["action"],
    ),
    "create_plan": _function(
        "create_plan",
        "Create an implementation plan in markdown with '- [ ]' checklist items.",
        {"title": _prop(), "content": _prop()},
        ["title", "content"],
    ),
    "plan_and_track": _function(
        "plan_and_track",
        "Set the goal and task list, or start/complete/skip a task by id.",
        {
            "goal": _prop(),
            "tasks": _prop(description="JSON array or newline separated list"),
            "start_task": _prop("integer"),
            "complete_task": _prop("integer"),
            "skip_task": _prop("integer"),
            "task_note": _prop(),
        },
        [],
    ),
    "write_file": _function(
        "write_file",
        "Write content to a file (mode 'overwrite' or 'append').",
        {"path": _prop(), "content": _prop(), "mode": _prop()},
        ["path", "content"],
    ),
    "edit_file": _function(
        "edit_file",
        "Replace exact text in a file.",
        {
            "path": _prop(),
            "old_text": _prop(),
            "new_text": _prop(),
            "replace_all": _prop("boolean"),
        },
        ["path", "old_text", "new_text"],
    ),
    "insert_lines": _function(
        "insert_lines",
        "Insert content before the given 1-based line number.",
        {
            "path": _prop(),
            "line_number": _prop("integer"),
            "content": _prop(),
        },
        ["path", "line_number", "content"],
    ),
    "delete_lines": _function(
        "delete_lines",
        "Delete an inclusive 1-based line range.",
        {
            "path": _prop(),
            "start_line": _prop("integer"),
            "end_line": _prop("integer"),
        },
        ["path", "start_line", "end_line"],
    ),
    "delete_file": _function(
        "delete_file", "Delete a file. Always needs approval.", {"path": _prop()}, ["path"]
    ),
    "shell": _function(
        "shell",
        "Run a shell command in the terminal and wait for it to finish.",
        {"command": _prop(), "timeout": _prop("number")},
        ["command"],
    ),
    "run_background": _function(
        "run_background",
        "Start a long-running process such as a server.",
        {
            "command": _prop(),
            "wait_for": _prop(description="Output text that confirms startup"),
            "timeout": _prop("number"),
        },
        ["command"],
    ),
    "stop_process": _function(
        "stop_process",
        "Stop a managed background process by pid, or all of them.",
        {"pid": _prop("integer"), "all": _prop("boolean")},
        [],
    ),
}


def tool_schema_for_mode(mode: AgentMode) -> list[dict[str, object]]:
    return [TOOL_SCHEMAS[name] for name in tools_for_mode(mode)]


class ToolDispatcher:
    """Executes one tool call at a time against the run's collaborators."""

    def __init__(
        self,
        *,
        terminal: Terminal,
        gate: ApprovalGate,
        settings: AgentSettings,
        budget: ContextBudget,
        filesystem: LocalFileSystem | None = None,
        processes: ProcessManager | None = None,
        memory: MemoryStore | None = None,
        output_buffer: OutputBuffer | None = None,
        is_cancelled: Callable[[], bool] | None = None,
    ) -> None:
        self.terminal = terminal
        self.gate = gate
        self.settings = settings
        self.budget = budget
        self.filesystem = (
            filesystem if filesystem is not None else LocalFileSystem(terminal.current_directory)
        )
        self.processes = processes if processes is not None else ProcessManager()
        self.memory = memory if memory is not None else MemoryStore()
        self.output_buffer = (
            output_buffer if output_buffer is not None else OutputBuffer(settings.output_buffer_chars)
        )
        self.is_cancelled = is_cancelled or (lambda: False)
        self.checklist: TaskChecklist | None = None
        self.plans: list[tuple[str, str]] = []
        self.file_changes: list[FileChange] = []
        self.commands_run: list[str] = []
        self._handlers: dict[str, ToolHandler] = {
            "read_file": self._read_file,
            "list_dir": self._list_dir,
            "search_files": self._search_files,
            "search_output": self._search_output,
            "check_process": self._check_process,
            "http_request": self._http_request,
            "memory": self._memory,
            "create_plan": self._create_plan,
            "plan_and_track": self._plan_and_track,
            "write_file": self._write_file,
            "edit_file": self._edit_file,
            "insert_lines": self._insert_lines,
            "delete_lines": self._delete_lines,
            "delete_file": self._delete_file,
            "shell": self._shell,
            "run_background": self._run_background,
            "stop_process": self._stop_process,
        }

    async def dispatch(self, tool_name: str, args: dict[str, object], mode: AgentMode) -> ToolResult:
        handler = self._handlers.get(tool_name)
        capability = TOOL_CAPABILITIES.get(tool_name)
        if handler is None or capability is None:
            return _failure(tool_name, ToolExecutionError(f"Unknown tool: {tool_name}"))
        if not mode.allows(capability):
            return _failure(tool_name, CapabilityError(tool_name, mode.value))

        LOGGER.info("tool_dispatched", extra={"tool": tool_name, "mode": mode.value})
        try:
            result = await handler(args)
        except AgentError as exc:
            LOGGER.info(
                "tool_failed",
                extra={"tool": tool_name, "error_kind": exc.kind, "error": str(exc)},
            )
            return _failure(tool_name, exc)
        return result

    # Read tools

    async def _read_file(self, args: dict[str, object]) -> ToolResult:
        path = _require_str(args, "path")
        content = self.filesystem.read_text(path)
        lines = content.splitlines()

        ranges_text = _optional_str(args, "lines")
        start_line = _optional_int(args, "start_line")
        if ranges_text:
            ranges = LineRange.parse_multiple(ranges_text)
            if not ranges:
                raise ToolExecutionError(f"Invalid line ranges: {ranges_text}")
            sections = [_numbered(lines, line_range.start, line_range.end) for line_range in ranges]
            output = "\n...\n".join(section for section in sections if section)
        elif start_line is not None:
            if start_line > len(lines):
                raise ToolExecutionError(
                    f"Start line {start_line} exceeds file length ({len(lines)} lines)"
                )
            end_line = _optional_int(args, "end_line") or len(lines)
            line_range = LineRange(max(start_line, 1), min(end_line, len(lines)))
            output = _numbered(lines, line_range.start, line_range.end)
        else:
            output = content

        limit = self.budget.effective_output_capture_limit
        if len(output) > limit:
            output = (
                f"File has {len(lines)} lines, {len(content)} chars. "
                "Use start_line/end_line for specific sections.\n\n"
                f"{smart_truncate(output, limit)}"
            )
        return ToolResult(tool="read_file", success=True, output=output)

    async def _list_dir(self, args: dict[str, object]) -> ToolResult:
        path = _optional_str(args, "path") or "."
        entries = self.filesystem.list_dir(path, recursive=_optional_bool(args, "recursive", False))
        output = "\n".join(entries) if entries else "(empty directory)"
        return ToolResult(tool="list_dir", success=True, output=output)

    async def _search_files(self, args: dict[str, object]) -> ToolResult:
        path = _optional_str(args, "path") or "."
        pattern = _require_str(args, "pattern")
        matches = self.filesystem.search(
            path, pattern, recursive=_optional_bool(args, "recursive", True)
        )
        if not matches:
            output = f"No files matching '{pattern}' found in {path}"
        else:
            output = f"Found {len(matches)} files:\n" + "\n".join(matches)
        return ToolResult(tool="search_files", success=True, output=output)

    async def _search_output(self, args: dict[str, object]) -> ToolResult:
        pattern = _require_str(args, "pattern")
        context_lines = _optional_int(args, "context_lines")
        matches = self.output_buffer.search(
            pattern, 3 if context_lines is None else max(0, context_lines)
        )
        if not matches:
            return ToolResult(
                tool="search_output", success=True, output=f"No matches found for '{pattern}'"
            )
        parts = [f"Found {len(matches)} matches for '{pattern}':\n"]
        for index, match in enumerate(matches[:MAX_OUTPUT_MATCHES_SHOWN], start=1):
            parts.append(f"--- Match {index} (from '{match.command}', line {match.line_number}) ---")
            parts.append(match.context)
            parts.append("")
        if len(matches) > MAX_OUTPUT_MATCHES_SHOWN:
            parts.append(f"... and {len(matches) - MAX_OUTPUT_MATCHES_SHOWN} more matches")
        return ToolResult(tool="search_output", success=True, output="\n".join(parts))

    async def _check_process(self, args: dict[str, object]) -> ToolResult:
        if _optional_bool(args, "list", False):
            managed = self.processes.list()
            if not managed:
                return ToolResult(
                    tool="check_process", success=True, output="No managed background processes"
                )
            lines = ["Managed background processes:"]
            for item in managed:
                state = "running" if item.running else f"exited ({item.process.returncode})"
                lines.append(f"  PID {item.pid}: {item.command} [{state}]")
            return ToolResult(tool="check_process", success=True, output="\n".join(lines))

        pid = _optional_int(args, "pid")
        if pid is not None:
            managed_process = self.processes.get(pid)
            running = managed_process.running if managed_process else pid_is_running(pid)
            output = f"Process {pid} is {'running' if running else 'not running'}"
            if managed_process is not None:
                recent = managed_process.output[-1500:]
                if recent:
                    output = f"{output}\n\nRecent output:\n{recent}"
            return ToolResult(tool="check_process", success=True, output=output)

        port = _optional_int(args, "port")
        if port is not None:
            in_use = await asyncio.to_thread(port_in_use, port)
            output = f"Port {port} is {'in use' if in_use else 'free'}"
            return ToolResult(tool="check_process", success=True, output=output)

        raise ToolExecutionError("Must provide either 'pid', 'port', or 'list=true'")

    async def _http_request(self, args: dict[str, object]) -> ToolResult:
        url = _require_str(args, "url")
        if not url.startswith(("http://", "https://")):
            raise ToolExecutionError(f"Invalid URL: {url}")
        method = (_optional_str(args, "method") or "GET").upper()
        body = _optional_str(args, "body")
        headers = _parse_headers(_optional_str(args, "headers"))
        data: bytes | None = None
        if body and method in {"POST", "PUT", "PATCH"}:
            headers.setdefault("Content-Type", "application/json")
            data = body.encode("utf-8")

        timeout = self.settings.http_request_timeout
        status, response_body = await asyncio.to_thread(
            _send_http_request, url, method, data, headers, timeout
        )
        preview = response_body[:HTTP_BODY_PREVIEW]
        if len(response_body) > HTTP_BODY_PREVIEW:
            preview = f"{preview}\n... (truncated, {len(response_body)} total chars)"
        output = f"HTTP {status} {method} {url}\n\n{preview}"
        return ToolResult(tool="http_request", success=True, output=output)

    async def _memory(self, args: dict[str, object]) -> ToolResult:
        action = _require_str(args, "action").lower()
        if action == "save":
            key = _require_str(args, "key")
            value = args.get("value")
            if value is None:
                raise ToolExecutionError("Missing required argument: value")
            self.memory.save(key, str(value))
            return ToolResult(tool="memory", success=True, output=f"Saved '{key}'")
        if action == "recall":
            key = _require_str(args, "key")
            stored = self.memory.recall(key)
            output = stored if stored is not None else f"No value stored for '{key}'"
            return ToolResult(tool="memory", success=True, output=output)
        if action == "list":
            keys = self.memory.list()
            output = f"Stored keys: {', '.join(keys)}" if keys else "No stored memories"
            return ToolResult(tool="memory", success=True, output=output)
        raise ToolExecutionError(f"Unknown action: {action}. Use save/recall/list")

    # Plan tools

    async def _create_plan(self, args: dict[str, object]) -> ToolResult:
        title = _require_str(args, "title")
        content = _require_str(args, "content")
        items = [
            (match.group(1).lower() == "x", match.group(2))
            for match in (_CHECKBOX_PATTERN.match(line) for line in content.splitlines())
            if match
        ]
        if not items:
            raise ToolExecutionError(
                "Plan content must include a checklist with '- [ ]' items. "
                "Please restructure the plan with actionable checklist items."
            )
        checklist = TaskChecklist([description for _, description in items], title)
        for item_id, (done, _) in enumerate(items, start=1):
            if done:
                checklist.mark_completed(item_id)
        self.checklist = checklist
        self.plans.append((title, content))
        output = f"Plan '{title}' created with {len(items)} items.\n\n{checklist.display()}"
        return ToolResult(tool="create_plan", success=True, output=output)

    async def _plan_and_track(self, args: dict[str, object]) -> ToolResult:
        note = _optional_str(args, "task_note")
        for key, verb, action in (
            ("start_task", "Started", "start"),
            ("complete_task", "Marked complete:", "complete"),
            ("skip_task", "Skipped", "skip"),
        ):
            task_id = _optional_int(args, key)
            if task_id is None:
                continue
            checklist = self._require_checklist()
            if checklist.get(task_id) is None:
                raise ToolExecutionError(f"Unknown task id: {task_id}")
            if action == "start":
                checklist.mark_in_progress(task_id)
            elif action == "complete":
                checklist.mark_completed(task_id, note)
            else:
                checklist.mark_skipped(task_id, note)
            output = f"{verb} task {task_id}.\n\nCurrent checklist:\n{checklist.display()}"
            return ToolResult(tool="plan_and_track", success=True, output=output)

        goal = _optional_str(args, "goal")
        if not goal:
            raise ToolExecutionError(
                "Missing required argument: goal. Provide a clear, actionable goal statement."
            )
        tasks = parse_task_list(args.get("tasks"))
        self.checklist = TaskChecklist(tasks, goal)
        output = f"Goal set: {goal}"
        if tasks:
            output = f"{output}\n\n{self.checklist.display()}"
        return ToolResult(tool="plan_and_track", success=True, output=output)

    def _require_checklist(self) -> TaskChecklist:
        if self.checklist is None:
            raise ToolExecutionError("No checklist yet. Call plan_and_track with a goal first.")
        return self.checklist

    # Mutating tools

    async def _write_file(self, args: dict[str, object]) -> ToolResult:
        path = _require_str(args, "path")
        content = _require_raw_str(args, "content")
        mode = (_optional_str(args, "mode") or "overwrite").lower()
        if mode not in {"overwrite", "append"}:
            raise ToolExecutionError(f"Unknown mode: {mode}. Use overwrite or append")

        exists = self.filesystem.is_file(path)
        before = self.filesystem.read_text(path) if exists else None
        if not exists:
            operation, after = OperationType.CREATE, content
        elif mode == "append":
            operation, after = OperationType.INSERT, f"{before}{content}"
        else:
            operation, after = OperationType.OVERWRITE, content

        change = FileChange(
            file_path=str(self.filesystem.resolve(path)),
            operation_type=operation,
            before_content=before,
            after_content=after,
        )
        committed, diff = await self._commit(change)
        verb = "Appended" if operation is OperationType.INSERT else "Wrote"
        output = f"{verb} {len(content)} chars to {path} ({diff.summary})"
        return ToolResult(
            tool="write_file", success=True, output=output, file_change=committed, diff=diff
        )

    async def _edit_file(self, args: dict[str, object]) -> ToolResult:
        path = _require_str(args, "path")
        old_text = _require_raw_str(args, "old_text")
        if not old_text:
            raise ToolExecutionError(
                "Missing required argument: old_text (the text to find and replace)"
            )
        new_text = _require_raw_str(args, "new_text")
        replace_all = _optional_bool(args, "replace_all", False)
        before = self.filesystem.read_text(path)

        occurrences = before.count(old_text)
        if occurrences == 0:
            preview = "\n".join(before.splitlines()[:EDIT_PREVIEW_LINES])
            raise ToolExecutionError(
                "Text not found in file. The old_text must match exactly "
                "(including whitespace/indentation).\n\n"
                f"File has {len(before.splitlines())} lines. First {EDIT_PREVIEW_LINES} lines:\n"
                f"{preview}"
            )
        replaced = occurrences if replace_all else 1
        after = before.replace(old_text, new_text, -1 if replace_all else 1)

        change = FileChange(
            file_path=str(self.filesystem.resolve(path)),
            operation_type=OperationType.EDIT,
            before_content=before,
            after_content=after,
            old_text=old_text,
            new_text=new_text,
        )
        committed, diff = await self._commit(change)
        output = f"Replaced {replaced} occurrence(s) in {path} ({diff.summary})"
        return ToolResult(
            tool="edit_file", success=True, output=output, file_change=committed, diff=diff
        )

    async def _insert_lines(self, args: dict[str, object]) -> ToolResult:
        path = _require_str(args, "path")
        line_number = _optional_int(args, "line_number")
        if line_number is None or line_number < 1:
            raise ToolExecutionError("Missing or invalid line_number (must be >= 1)")
        content = _require_raw_str(args, "content")
        before = self.filesystem.read_text(path)

        normalized = content.strip()
        if normalized and normalized in before:
            return ToolResult(
                tool="insert_lines",
                success=True,
                output=(
                    "ALREADY EXISTS: The content you're trying to insert already exists in "
                    "the file. No changes made. Use read_file to verify the current state."
                ),
            )

        lines = split_lines(before)
        index = min(line_number - 1, _logical_line_count(lines))
        new_lines = content.rstrip("\n").split("\n")
        after = "\n".join([*lines[:index], *new_lines, *lines[index:]])

        change = FileChange(
            file_path=str(self.filesystem.resolve(path)),
            operation_type=OperationType.INSERT,
            before_content=before,
            after_content=after,
            start_line=index + 1,
            end_line=index + len(new_lines),
        )
        committed, diff = await self._commit(change)
        output = f"Inserted {len(new_lines)} line(s) at line {index + 1} ({diff.summary})"
        return ToolResult(
            tool="insert_lines", success=True, output=output, file_change=committed, diff=diff
        )

    async def _delete_lines(self, args: dict[str, object]) -> ToolResult:
        path = _require_str(args, "path")
        start_line = _optional_int(args, "start_line")
        if start_line is None or start_line < 1:
            raise ToolExecutionError("Missing or invalid start_line (must be >= 1)")
        end_line = _optional_int(args, "end_line")
        if end_line is None or end_line < start_line:
            raise ToolExecutionError("Missing or invalid end_line (must be >= start_line)")
        before = self.filesystem.read_text(path)

        lines = split_lines(before)
        count = _logical_line_count(lines)
        if start_line > count:
            raise ToolExecutionError(f"start_line {start_line} exceeds file length ({count} lines)")
        end_line = min(end_line, count)
        after = "\n".join([*lines[: start_line - 1], *lines[end_line:]])

        change = FileChange(
            file_path=str(self.filesystem.resolve(path)),
            operation_type=OperationType.DELETE,
            before_content=before,
            after_content=after,
            start_line=start_line,
            end_line=end_line,
        )
        committed, diff = await self._commit(change)
        deleted = end_line - start_line + 1
        output = f"Deleted {deleted} line(s) from {path} ({diff.summary})"
        return ToolResult(
            tool="delete_lines", success=True, output=output, file_change=committed, diff=diff
        )

    async def _delete_file(self, args: dict[str, object]) -> ToolResult:
        path = _require_str(args, "path")
        before = self.filesystem.read_text(path)
        change = FileChange(
            file_path=str(self.filesystem.resolve(path)),
            operation_type=OperationType.DELETE_FILE,
            before_content=before,
            after_content=None,
        )
        committed, diff = await self._commit(change)
        return ToolResult(
            tool="delete_file",
            success=True,
            output=f"Deleted {path}",
            file_change=committed,
            diff=diff,
        )

    async def _commit(self, change: FileChange) -> tuple[FileChange, FileDiff]:
        """Diff, gate, then write. Nothing touches disk unless approved and not cancelled."""
        diff = diff_for_change(change)
        decision = await self.gate.request_file_edit(change, diff)
        if not decision.approved:
            raise ApprovalRejected(
                f"{change.operation_type.value} on {change.file_path} was not approved: "
                f"{decision.reason or 'rejected'}"
            )
        if self.is_cancelled():
            raise ApprovalRejected("Run cancelled before the change was applied.")

        if change.operation_type is OperationType.DELETE_FILE:
            self.filesystem.delete(change.file_path)
            committed = change
        else:
            content = change.after_content or ""
            if decision.hunk_ids is not None:
                content = apply_hunks(change.before_content, diff, decision.hunk_ids)
            self.filesystem.write_text(change.file_path, content)
            committed = change if content == change.after_content else replace(
                change, after_content=content
            )
        self.file_changes.append(committed)
        LOGGER.info(
            "file_change_committed",
            extra={
                "path": change.file_path,
                "operation": change.operation_type.value,
                "summary": diff.summary,
                "partial": decision.partial,
            },
        )
        return committed, diff

    # Shell tools

    async def _shell(self, args: dict[str, object]) -> ToolResult:
        command = _require_str(args, "command")
        timeout = _optional_float(args, "timeout") or self.settings.command_timeout
        await self._approve_command(command)

        try:
            result = await asyncio.to_thread(self.terminal.run, command, timeout)
        except OSError as exc:
            raise self._launch_error(exc) from exc
        self.commands_run.append(command)
        self.output_buffer.store(result.output, command)
        output = smart_truncate(result.output, self.budget.effective_output_capture_limit)
        if result.timed_out:
            raise ToolTimeoutError(f"Command timed out after {timeout:g}s: {command}", output=output)
        if result.returncode != 0:
            raise ToolExecutionError(
                f"Command exited with code {result.returncode}: {command}", output=output
            )
        return ToolResult(tool="shell", success=True, output=output or "(no output)")

    async def _run_background(self, args: dict[str, object]) -> ToolResult:
        command = _require_str(args, "command")
        wait_for = _optional_str(args, "wait_for")
        timeout = _optional_float(args, "timeout") or self.settings.background_process_timeout
        await self._approve_command(command)

        try:
            started = await asyncio.to_thread(
                self.processes.start,
                command,
                cwd=self.terminal.current_directory(),
                wait_for=wait_for,
                timeout=timeout,
            )
        except OSError as exc:
            raise self._launch_error(exc) from exc
        self.commands_run.append(command)
        if not started.running and started.returncode not in (None, 0):
            raise ToolExecutionError(
                f"Background process exited immediately with code {started.returncode}",
                output=started.initial_output,
            )

        lines = [f"Started background process with PID: {started.pid}"]
        if started.matched:
            lines.append(f"Startup confirmed: saw '{wait_for}' in output.")
        elif started.running:
            waited = f"; '{wait_for}' not seen yet" if wait_for else ""
            lines.append(f"Still running in the background after {timeout:g}s{waited}.")
        else:
            lines.append("Process finished.")
        if started.initial_output:
            lines.append(f"\nInitial output:\n{started.initial_output}")
        return ToolResult(tool="run_background", success=True, output="\n".join(lines))

    async def _stop_process(self, args: dict[str, object]) -> ToolResult:
        if _optional_bool(args, "all", False):
            pids = [str(item.pid) for item in self.processes.list()]
            if pids:
                await self._approve_command(f"kill {' '.join(pids)}")
            stopped = await asyncio.to_thread(self.processes.stop_all)
            return ToolResult(
                tool="stop_process",
                success=True,
                output=f"Stopped all managed background processes ({stopped})",
            )
        pid = _optional_int(args, "pid")
        if pid is None:
            raise ToolExecutionError("Missing required argument: pid")
        await self._approve_command(f"kill {pid}")
        if not await asyncio.to_thread(self.processes.stop, pid):
            raise ToolExecutionError(f"Process {pid} not found or already stopped")
        return ToolResult(tool="stop_process", success=True, output=f"Stopped process {pid}")

    async def _approve_command(self, command: str) -> None:
        decision = await self.gate.request_command(command)
        if not decision.approved:
            raise ApprovalRejected(
                f"Command was not approved: {sanitize_command(command)}. "
                f"{decision.reason or ''}".strip()
            )
        if self.is_cancelled():
            raise ApprovalRejected("Run cancelled before the command was executed.")

    def _launch_error(self, exc: OSError) -> ToolExecutionError:
        """A missing working directory or shell ends the run; other OS errors do not."""
        cwd = self.terminal.current_directory()
        if not os.path.isdir(cwd):
            return ToolExecutionError(f"Working directory no longer exists: {cwd}", fatal=True)
        if isinstance(exc, FileNotFoundError):
            return ToolExecutionError(f"Shell executable is unavailable: {exc}", fatal=True)
        return ToolExecutionError(f"Could not start command: {exc}")


def parse_task_list(value: object) -> list[str]:
    """Accept a list, a JSON array string, or a newline/comma separated string."""
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    if not isinstance(value, str) or not value.strip():
        return []
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, list):
        return [str(item).strip() for item in parsed if str(item).strip()]

    cleaned = value.strip().strip("[]")
    if "\n" in cleaned:
        parts = cleaned.split("\n")
    elif "," in cleaned:
        parts = cleaned.split(",")
    else:
        parts = [cleaned]
    return [part.strip().strip('"') for part in parts if part.strip().strip('"')]


def _failure(tool: str, exc: AgentError) -> ToolResult:
    return ToolResult(
        tool=tool,
        success=False,
        output=getattr(exc, "output", ""),
        error=str(exc),
        error_kind=exc.kind,
        fatal=getattr(exc, "fatal", False),
    )


def _numbered(lines: list[str], start: int, end: int) -> str:
    first, last = max(start, 1), min(end, len(lines))
    return "\n".join(f"{number}| {lines[number - 1]}" for number in range(first, last + 1))


def _logical_line_count(lines: list[str]) -> int:
    """Line count ignoring the empty element a trailing newline leaves behind."""
    if len(lines) > 1 and lines[-1] == "":
        return len(lines) - 1
    return len(lines)


def _parse_headers(value: str | None) -> dict[str, str]:
    headers: dict[str, str] = {}
    if not value:
        return headers
    for pair in value.split(","):
        key, sep, header_value = pair.partition(":")
        if sep and key.strip():
            headers[key.strip()] = header_value.strip()
    return headers


def _send_http_request(
    url: str, method: str, data: bytes | None, headers: dict[str, str], timeout: float
) -> tuple[int, str]:
    try:
        req = request.Request(url, data=data, headers=headers, method=method)
        with request.urlopen(req, timeout=timeout) as resp:  # noqa: S310
            return resp.status, resp.read().decode("utf-8", errors="replace")
    except HTTPError as exc:
        body = exc.read().decode("utf-8", errors="replace") if exc.fp is not None else ""
        return exc.code, body
    except URLError as exc:
        if isinstance(exc.reason, TimeoutError):
            raise ToolTimeoutError(f"Request timed out after {timeout:g}s") from exc
        raise ToolExecutionError(
            f"Cannot connect to host ({exc.reason}). Is the server running?"
        ) from exc
    except TimeoutError as exc:
        raise ToolTimeoutError(f"Request timed out after {timeout:g}s") from exc
    except (http.client.HTTPException, ValueError, OSError) as exc:
        raise ToolExecutionError(f"HTTP request failed: {exc}") from exc


def _require_str(args: dict[str, object], key: str) -> str:
    value = _optional_str(args, key)
    if not value:
        raise ToolExecutionError(f"Missing required argument: {key}")
    return value


def _require_raw_str(args: dict[str, object], key: str) -> str:
    """Like ``_require_str`` but keeps whitespace and allows empty strings."""
    value = args.get(key)
    if value is None:
        raise ToolExecutionError(f"Missing required argument: {key}")
    return value if isinstance(value, str) else str(value)


def _optional_str(args: dict[str, object], key: str) -> str | None:
    value = args.get(key)
    if value is None:
        return None
    text = value if isinstance(value, str) else str(value)
    return text.strip() or None


def _optional_int(args: dict[str, object], key: str) -> int | None:
    value = args.get(key)
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _optional_float(args: dict[str, object], key: str) -> float | None:
    value = args.get(key)
    if isinstance(value, bool) or value is None:
        return None
    try:
        parsed = float(str(value).strip())
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def _optional_bool(args: dict[str, object], key: str, default: bool) -> bool:
    value = args.get(key)
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return default
