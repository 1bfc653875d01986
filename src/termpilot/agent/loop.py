"""Orchestrator: plan, execute tool calls, reflect, until the goal is done."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from termpilot.agent.approval import ApprovalGate
from termpilot.agent.checklist import TaskChecklist, TaskStatus
from termpilot.agent.errors import BudgetExceeded, FatalConfigurationError
from termpilot.agent.filesystem import LocalFileSystem
from termpilot.agent.models import (
    OperationType,
    RollbackResult,
    RunResult,
    RunState,
    RunStatus,
    ToolCall,
    ToolResult,
)
from termpilot.agent.modes import AgentMode, AgentProfile, tools_for_mode
from termpilot.agent.stores import MemoryStore, OutputBuffer
from termpilot.agent.tools import Terminal, ToolDispatcher, tool_schema_for_mode
from termpilot.config import AgentSettings
from termpilot.llm.client import ModelDecision, Transcript
from termpilot.shell.processes import ProcessManager

LOGGER = logging.getLogger(__name__)

LOG_VERSION = 3
PROGRESS_TOOLS = frozenset(
    {
        "write_file",
        "edit_file",
        "insert_lines",
        "delete_lines",
        "delete_file",
        "shell",
        "run_background",
        "create_plan",
    }
)
FIX_ATTEMPT_ERRORS = frozenset({"ToolExecutionError", "TimeoutError"})
VERIFICATION_TOOLS = frozenset(
    {"read_file", "list_dir", "search_files", "search_output", "check_process", "http_request", "shell"}
)
MAX_VERIFICATION_CHECKS = 3
_ACTIVE_STATES = frozenset(
    {RunState.PLANNING, RunState.EXECUTING, RunState.REFLECTING, RunState.VERIFYING}
)
TRIM_MARKER = "[Earlier tool exchanges were trimmed to stay within the context budget.]"
STUCK_HINT = (
    "You appear stuck: the same tool call has repeated without checklist progress. "
    "Step back, re-read the last error, and try a different approach."
)
EventCallback = Callable[[dict[str, object]], None]


class ModelClient(Protocol):
    model: str

    def complete_or_tool_call(
        self,
        transcript: Transcript,
        tool_schema: list[dict[str, object]],
        profile_hint: str | None = None,
    ) -> ModelDecision: ...


class _RunEnded(Exception):
    """Internal signal carrying the terminal status of a run."""

    def __init__(self, state: RunState, reason: str, message: str) -> None:
        super().__init__(message)
        self.state = state
        self.reason = reason
        self.message = message


class Orchestrator:
    """Runs one goal at a time as a cooperative asyncio task.

    Blocking collaborators (model client, shell) are awaited through
    ``asyncio.to_thread`` so approvals and other runs on the same loop keep
    making progress.
    """

    def __init__(
        self,
        *,
        client: ModelClient,
        terminal: Terminal,
        settings: AgentSettings | None = None,
        gate: ApprovalGate | None = None,
        log_dir: str | Path | None = None,
        processes: ProcessManager | None = None,
        filesystem: LocalFileSystem | None = None,
        on_event: EventCallback | None = None,
    ) -> None:
        self.client = client
        self.terminal = terminal
        self.settings = settings or AgentSettings()
        self.gate = gate or ApprovalGate(
            self.settings.approval_policy(),
            require_file_edit_approval=self.settings.require_file_edit_approval,
        )
        self.log_dir = Path(log_dir) if log_dir is not None else None
        self.on_event = on_event
        self.budget = self.settings.context_budget(getattr(client, "model", "") or "")
        self.dispatcher = ToolDispatcher(
            terminal=terminal,
            gate=self.gate,
            settings=self.settings,
            budget=self.budget,
            filesystem=filesystem,
            processes=processes,
            memory=MemoryStore(),
            output_buffer=OutputBuffer(self.settings.output_buffer_chars),
            is_cancelled=lambda: self._cancelled,
        )
        self.state = RunState.IDLE
        self.state_history: list[RunState] = [RunState.IDLE]
        self._cancelled = False
        self._goal = ""
        self._mode = self.settings.default_mode
        self._step = 0

    @property
    def checklist(self) -> TaskChecklist | None:
        return self.dispatcher.checklist

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Stop the run at the next checkpoint and withdraw pending approvals."""
        self._cancelled = True
        withdrawn = self.gate.withdraw_all()
        LOGGER.info("run_cancel_requested", extra={"withdrawn_approvals": withdrawn})

    def rollback(self) -> RollbackResult:
        """Restore every file this run changed to its content before the run.

        Changes are undone newest first. Files the run created are removed.
        Shell commands cannot be undone and are listed in the result instead.
        """
        if self.state in _ACTIVE_STATES:
            raise RuntimeError(f"Cannot roll back while the run is {self.state.value}.")
        changes = list(self.dispatcher.file_changes)
        filesystem = self.dispatcher.filesystem
        for change in reversed(changes):
            if change.operation_type is OperationType.CREATE:
                if filesystem.is_file(change.file_path):
                    filesystem.delete(change.file_path)
            else:
                filesystem.write_text(change.file_path, change.before_content or "")

        earliest: dict[str, OperationType] = {}
        for change in changes:
            earliest.setdefault(change.file_path, change.operation_type)
        result = RollbackResult(
            restored=[path for path, op in earliest.items() if op is not OperationType.CREATE],
            removed=[path for path, op in earliest.items() if op is OperationType.CREATE],
            unrevertable_commands=list(self.dispatcher.commands_run),
        )
        self.dispatcher.file_changes.clear()
        self.dispatcher.commands_run.clear()
        self._emit(
            "run_rolled_back",
            restored=len(result.restored),
            removed=len(result.removed),
            unrevertable_commands=len(result.unrevertable_commands),
        )
        return result

    async def run(
        self,
        goal: str,
        *,
        mode: AgentMode | None = None,
        profile: AgentProfile | None = None,
        plan: bool = False,
    ) -> RunResult:
        self._goal = goal
        self._mode = mode or self.settings.default_mode
        self._step = 0
        requested_profile = profile or self.settings.default_profile
        self._emit(
            "run_started",
            profile=requested_profile.value,
            plan_requested=plan,
            budget=self.budget.describe(),
        )
        try:
            if not getattr(self.client, "model", None):
                raise FatalConfigurationError(
                    "No model configured. Set TERMPILOT_MODEL or default_model in the config file."
                )
            await self._run(goal, requested_profile, plan)
        except FatalConfigurationError as exc:
            return self._finish(RunState.FAILED, "configuration", str(exc))
        except _RunEnded as ended:
            return self._finish(ended.state, ended.reason, ended.message)
        raise AssertionError("run loop exited without a terminal state")

    async def _run(self, goal: str, requested_profile: AgentProfile, plan: bool) -> None:
        profile = requested_profile.resolve(goal)
        if self.settings.enable_planning and (self._mode is not AgentMode.SCOUT or plan):
            self._transition(RunState.PLANNING)
            self._check_cancelled()
            steps = await self._plan(goal, profile)
            if steps:
                self.dispatcher.checklist = TaskChecklist(steps, goal)
                self._emit("plan_created", steps=len(steps))

        self._transition(RunState.EXECUTING)
        transcript: Transcript = [{"role": "user", "content": self._goal_message(goal)}]
        tool_schema = tool_schema_for_mode(self._mode)
        signatures: list[tuple[str, int]] = []
        fix_attempts: dict[int, int] = {}
        stuck_count = 0
        active_item_id: int | None = None

        for step in range(1, self.settings.max_steps + 1):
            self._step = step
            self._check_cancelled()
            self._trim_transcript(transcript)
            step_profile = self._step_profile(requested_profile, profile)
            decision = await self._ask(
                [*transcript, {"role": "user", "content": self._status_message()}],
                tool_schema,
                step_profile.planning_hint,
            )
            self._check_cancelled()
            if decision.error:
                raise _RunEnded(RunState.FAILED, "llm_error", decision.error)

            if decision.tool_call is None:
                text = (decision.text or "").strip()
                checklist = self.checklist
                if checklist is None or checklist.is_complete:
                    if not self.settings.enable_verification_phase:
                        raise _RunEnded(RunState.COMPLETED, "completed", text)
                    transcript.append({"role": "assistant", "content": text})
                    failures = await self._verify(transcript)
                    if not failures:
                        raise _RunEnded(RunState.COMPLETED, "completed", text)
                    self._transition(RunState.EXECUTING)
                    transcript.append(
                        {
                            "role": "user",
                            "content": (
                                "Verification failed:\n" + "\n".join(failures) + "\n"
                                "Fix these problems before finishing."
                            ),
                        }
                    )
                    continue
                transcript.append({"role": "assistant", "content": text})
                remaining = "\n".join(item.display() for item in checklist.remaining_items)
                transcript.append(
                    {
                        "role": "user",
                        "content": (
                            "The checklist is not complete yet. Remaining items:\n"
                            f"{remaining}\nContinue working, or skip items that no longer apply."
                        ),
                    }
                )
                self._emit("final_answer_deferred", remaining=len(checklist.remaining_items))
                continue

            call = decision.tool_call
            checklist = self.checklist
            active_item_id = self._activate_item(checklist, active_item_id)
            result = await self._dispatch(call, step, transcript)
            self._check_cancelled()
            if result.fatal:
                raise _RunEnded(RunState.FAILED, "tool_error", result.error or "Fatal tool error.")

            if checklist is not None and checklist is self.checklist and active_item_id is not None:
                if result.success:
                    if call.name in PROGRESS_TOOLS:
                        checklist.mark_completed(active_item_id, _first_line(result.output))
                        active_item_id = None
                elif result.error_kind in FIX_ATTEMPT_ERRORS:
                    attempts = fix_attempts.get(active_item_id, 0) + 1
                    fix_attempts[active_item_id] = attempts
                    checklist.mark_failed(active_item_id, result.error)
                    if attempts >= self.settings.max_fix_attempts:
                        raise _RunEnded(
                            RunState.FAILED,
                            "max_fix_attempts",
                            f"Task {active_item_id} failed {attempts} times: {result.error}",
                        )
            elif checklist is not self.checklist:
                active_item_id = None
                fix_attempts.clear()

            completed = self.checklist.completed_count if self.checklist else 0
            signatures.append((_signature(call), completed))
            force_reflection = False
            if _is_stuck(signatures, self.settings.stuck_detection_threshold):
                stuck_count += 1
                signatures.clear()
                self._emit("stuck_detected", tool=call.name, stuck_count=stuck_count)
                if stuck_count > self.settings.max_stuck_count:
                    raise _RunEnded(
                        RunState.FAILED,
                        "stuck_loop",
                        f"Repeated '{call.name}' without progress {stuck_count} times.",
                    )
                transcript.append({"role": "user", "content": STUCK_HINT})
                force_reflection = True

            if self.settings.enable_reflection and (
                force_reflection or step % self.settings.reflection_interval == 0
            ):
                await self._reflect(transcript, self._step_profile(requested_profile, profile))

        raise _RunEnded(
            RunState.FAILED,
            "max_steps",
            f"Stopped after {self.settings.max_steps} steps without finishing the goal.",
        )

    async def _plan(self, goal: str, profile: AgentProfile) -> list[str]:
        prompt = (
            f"Goal: {goal}\n\n"
            f"{profile.planning_hint}\n\n"
            "Break the goal into a short ordered list of concrete, verifiable steps. "
            'Reply with only a JSON array of strings, e.g. ["Read the config", "Fix the bug"].'
        )
        decision = await self._ask([{"role": "user", "content": prompt}], [], profile.planning_hint)
        if decision.error:
            raise _RunEnded(RunState.FAILED, "llm_error", decision.error)
        steps = parse_step_list(decision.text or "")
        if not steps:
            LOGGER.info("plan_unparsable", extra={"response_chars": len(decision.text or "")})
        return steps

    async def _reflect(self, transcript: Transcript, profile: AgentProfile) -> None:
        self._transition(RunState.REFLECTING)
        self._check_cancelled()
        checklist = self.checklist
        recent = [
            str(item.get("output", ""))[:300]
            for item in transcript[-10:]
            if item.get("type") == "function_call_output"
        ]
        prompt = (
            f"Goal: {self._goal}\n"
            f"Step {self._step} of {self.settings.max_steps}.\n\n"
            f"{checklist.display() if checklist else 'No checklist.'}\n\n"
            "Recent tool results:\n" + ("\n---\n".join(recent) or "(none)") + "\n\n"
            f"{profile.reflection_questions}\n\n"
            "Reply with only a JSON object: "
            '{"progress": str, "should_adjust": bool, "new_approach": str | null, '
            '"revised_steps": [str] | null, "revision": "append" | "replace"}'
        )
        decision = await self._ask(
            [{"role": "user", "content": prompt}], [], profile.planning_hint
        )
        self._check_cancelled()
        if decision.error:
            LOGGER.warning("reflection_failed", extra={"error": decision.error})
            self._transition(RunState.EXECUTING)
            return

        reflection = parse_reflection(decision.text or "")
        if reflection is not None:
            self._apply_reflection(reflection, transcript)
        self._transition(RunState.EXECUTING)

    def _apply_reflection(self, reflection: dict[str, object], transcript: Transcript) -> None:
        progress = reflection.get("progress")
        new_approach = reflection.get("new_approach")
        should_adjust = reflection.get("should_adjust") is True
        revised = reflection.get("revised_steps")
        steps = [str(step).strip() for step in revised if str(step).strip()] if isinstance(
            revised, list
        ) else []
        revision = "replace" if reflection.get("revision") == "replace" else "append"

        if steps:
            if self.checklist is None:
                self.dispatcher.checklist = TaskChecklist(steps, self._goal)
            elif revision == "replace":
                self.checklist.replace_pending(steps)
            else:
                self.checklist.append_steps(steps)

        notes = []
        if isinstance(progress, str) and progress.strip():
            notes.append(f"Progress assessment: {progress.strip()}")
        if should_adjust and isinstance(new_approach, str) and new_approach.strip():
            notes.append(f"Adjust your approach: {new_approach.strip()}")
        if steps:
            notes.append(f"The checklist was revised ({revision}).")
        if notes:
            transcript.append({"role": "user", "content": "Reflection:\n" + "\n".join(notes)})
        self._emit(
            "reflection_applied",
            should_adjust=should_adjust,
            revised_steps=len(steps),
            revision=revision,
        )

    async def _verify(self, transcript: Transcript) -> list[str]:
        """Run up to three model-proposed checks; returns one line per failed check."""
        self._transition(RunState.VERIFYING)
        self._check_cancelled()
        allowed = [name for name in tools_for_mode(self._mode) if name in VERIFICATION_TOOLS]
        changed = sorted({change.file_path for change in self.dispatcher.file_changes})
        recent = [
            str(item.get("output", ""))[:200]
            for item in transcript[-10:]
            if item.get("type") == "function_call_output"
        ]
        prompt = (
            f"Goal: {self._goal}\n"
            f"Files changed: {', '.join(changed) or 'none'}\n"
            "Recent tool results:\n" + ("\n---\n".join(recent) or "(none)") + "\n\n"
            "The agent believes the goal is complete. Suggest 1-3 quick verification checks "
            f"using only these tools: {', '.join(allowed)}.\n"
            "Reply with only a JSON object: "
            '{"checks": [{"description": str, "tool": str, "args": object}]}'
        )
        decision = await self._ask([{"role": "user", "content": prompt}], [], None)
        self._check_cancelled()
        if decision.error:
            LOGGER.warning("verification_plan_failed", extra={"error": decision.error})
        checks = parse_verification_checks(decision.text or "")

        failures: list[str] = []
        ran = 0
        for description, name, args in checks:
            if ran >= MAX_VERIFICATION_CHECKS:
                break
            if name not in allowed:
                LOGGER.info("verification_check_skipped", extra={"tool": name})
                continue
            ran += 1
            call = ToolCall(name=name, args=args, call_id=f"verify_{self._step}_{ran}")
            result = await self._dispatch(call, self._step, transcript)
            self._check_cancelled()
            if result.fatal:
                raise _RunEnded(RunState.FAILED, "tool_error", result.error or "Fatal tool error.")
            if not result.success:
                failures.append(f"- {description}: {result.error or 'check failed'}")

        self._emit("verification_finished", checks=ran, failed=len(failures))
        return failures

    async def _dispatch(self, call: ToolCall, step: int, transcript: Transcript) -> ToolResult:
        call_id = call.call_id or f"call_{step}"
        transcript.append(
            {
                "type": "function_call",
                "call_id": call_id,
                "name": call.name,
                "arguments": json.dumps(call.args, ensure_ascii=False),
            }
        )
        self._check_cancelled()
        result = await self.dispatcher.dispatch(call.name, call.args, self._mode)
        transcript.append(
            {"type": "function_call_output", "call_id": call_id, "output": result.render()}
        )
        self._emit(
            "tool_result",
            tool=call.name,
            success=result.success,
            error_kind=result.error_kind,
            error=result.error,
            output_chars=len(result.output),
            diff_summary=result.diff.summary if result.diff else None,
        )
        return result

    async def _ask(
        self, transcript: Transcript, tool_schema: list[dict[str, object]], hint: str | None
    ) -> ModelDecision:
        return await asyncio.to_thread(
            self.client.complete_or_tool_call, transcript, tool_schema, hint
        )

    def _activate_item(self, checklist: TaskChecklist | None, active_item_id: int | None) -> int | None:
        if checklist is None:
            return None
        if active_item_id is not None:
            item = checklist.get(active_item_id)
            if item is not None and item.status in (TaskStatus.FAILED, TaskStatus.IN_PROGRESS):
                checklist.mark_in_progress(active_item_id)
                return active_item_id
        current = checklist.current_item
        if current is None:
            return None
        checklist.mark_in_progress(current.id)
        return current.id

    def _trim_transcript(self, transcript: Transcript) -> None:
        """Drop the oldest exchanges after the goal message until within budget."""
        while True:
            try:
                self.budget.ensure_within_memory(json.dumps(transcript, ensure_ascii=False))
                return
            except BudgetExceeded as exc:
                start = 2 if len(transcript) > 1 and transcript[1].get("content") == TRIM_MARKER else 1
                if len(transcript) <= start + 1:
                    LOGGER.warning("transcript_trim_exhausted", extra={"size": exc.size})
                    return
                if start == 1:
                    transcript.insert(1, {"role": "user", "content": TRIM_MARKER})
                    start = 2
                dropped = transcript.pop(start)
                if dropped.get("type") == "function_call":
                    call_id = dropped.get("call_id")
                    while (
                        len(transcript) > start
                        and transcript[start].get("type") == "function_call_output"
                        and transcript[start].get("call_id") == call_id
                    ):
                        transcript.pop(start)
                LOGGER.debug("transcript_trimmed", extra={"size": exc.size, "limit": exc.limit})

    def _step_profile(self, requested: AgentProfile, resolved: AgentProfile) -> AgentProfile:
        if not requested.is_auto or self.checklist is None:
            return resolved
        current = self.checklist.current_item
        if current is None:
            return resolved
        by_item = requested.resolve(current.description)
        return resolved if by_item is AgentProfile.GENERAL else by_item

    def _goal_message(self, goal: str) -> str:
        return (
            f"Goal: {goal}\n"
            f"Mode: {self._mode.value} ({self._mode.description})\n"
            f"Working directory: {self.terminal.current_directory()}"
        )

    def _status_message(self) -> str:
        lines = [f"Step {self._step} of {self.settings.max_steps}."]
        checklist = self.checklist
        if checklist is not None:
            lines.append(checklist.display())
            current = checklist.current_item
            if current is not None:
                lines.append(f"Current task: {current.id}. {current.description}")
        lines.append(self.budget.describe())
        return "\n".join(lines)

    def _check_cancelled(self) -> None:
        if self._cancelled:
            raise _RunEnded(RunState.ABORTED, "cancelled", "Run cancelled by user.")

    def _transition(self, state: RunState) -> None:
        if state is self.state:
            return
        previous = self.state
        self.state = state
        self.state_history.append(state)
        LOGGER.debug("run_state_changed", extra={"from": previous.value, "to": state.value})

    def _finish(self, state: RunState, reason: str, message: str) -> RunResult:
        self._transition(state)
        if state is RunState.ABORTED:
            self.gate.withdraw_all()
        status: RunStatus = state.value  # type: ignore[assignment]
        checklist = self.checklist
        result = RunResult(
            status=status,
            reason=reason,
            final_message=message,
            steps=self._step,
            checklist=checklist.snapshot() if checklist else None,
            file_changes=list(self.dispatcher.file_changes),
        )
        self._emit(
            "run_finished",
            status=status,
            reason=reason,
            final_message=message,
            file_changes=len(result.file_changes),
        )
        return result

    def _emit(self, event: str, **fields: object) -> None:
        entry: dict[str, object] = {
            "log_version": LOG_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "goal": self._goal,
            "model": getattr(self.client, "model", None),
            "mode": self._mode.value,
            "working_directory": self.terminal.current_directory(),
            "step_index": self._step,
            "state": self.state.value,
            "event": event,
            **fields,
        }
        LOGGER.info(event, extra={"step_index": self._step, "state": self.state.value})
        self._append_log(entry)
        if self.on_event is not None:
            self.on_event(entry)

    def _append_log(self, entry: dict[str, object]) -> None:
        if self.log_dir is None:
            return
        self.log_dir.mkdir(parents=True, exist_ok=True)
        day_file = self.log_dir / f"session-{datetime.now(timezone.utc).date().isoformat()}.log"
        with day_file.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry, default=str) + "\n")


def parse_step_list(text: str) -> list[str]:
    """Extract a JSON array of step strings from model text; [] if there is none."""
    start, end = text.find("["), text.rfind("]")
    if start == -1 or end <= start:
        return []
    try:
        parsed = json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, list):
        return []
    steps: list[str] = []
    for item in parsed:
        if isinstance(item, dict):
            item = item.get("description") or item.get("step") or ""
        description = str(item).strip()
        if description:
            steps.append(description)
    return steps


def parse_reflection(text: str) -> dict[str, object] | None:
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        parsed = json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _signature(call: ToolCall) -> str:
    return f"{call.name}:{json.dumps(call.args, sort_keys=True, ensure_ascii=False)}"


def _is_stuck(signatures: list[tuple[str, int]], threshold: int) -> bool:
    if threshold < 1 or len(signatures) < threshold:
        return False
    window = signatures[-threshold:]
    return len(set(window)) == 1


def _first_line(text: str, limit: int = 120) -> str | None:
    stripped = text.strip()
    if not stripped:
        return None
    return stripped.splitlines()[0][:limit]


def parse_verification_checks(text: str) -> list[tuple[str, str, dict[str, object]]]:
    """(description, tool, args) triples from a ``{"checks": [...]}`` reply; [] if unparsable."""
    parsed = parse_reflection(text)
    checks = parsed.get("checks") if parsed else None
    if not isinstance(checks, list):
        return []
    triples: list[tuple[str, str, dict[str, object]]] = []
    for check in checks:
        if not isinstance(check, dict) or not isinstance(check.get("tool"), str):
            continue
        args = check.get("args")
        description = str(check.get("description") or check["tool"]).strip()
        triples.append((description, check["tool"].strip(), args if isinstance(args, dict) else {}))
    return triples
