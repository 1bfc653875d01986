"""Command-line interface for termpilot."""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import cast

from .agent.approval import ApprovalGate, PendingApproval
from .agent.loop import Orchestrator
from .agent.models import FileChange, RollbackResult, RunResult
from .agent.modes import AgentMode, AgentProfile
from .config import AppConfig
from .llm.client import LLMClient
from .shell import ProcessManager, TerminalSession, create_shell_adapter

LOGGER = logging.getLogger(__name__)

_PROMPT_TASKS: set[asyncio.Task[None]] = set()


class CLIArgs(argparse.Namespace):
    goal: str | None
    working_directory: str | None
    mode: AgentMode | None
    profile: AgentProfile | None
    plan: bool
    rollback_on_failure: bool
    verbose: bool


def _mode_arg(value: str) -> AgentMode:
    try:
        return AgentMode.parse(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _profile_arg(value: str) -> AgentProfile:
    try:
        return AgentProfile.parse(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="termpilot", description="Terminal coding agent")
    parser.add_argument(
        "--cwd",
        dest="working_directory",
        help=(
            "Override the starting working directory for tools and commands. "
            "Takes precedence over config/env cwd values."
        ),
    )
    parser.add_argument(
        "--mode",
        type=_mode_arg,
        help="Capability tier: scout, navigator, copilot or pilot.",
    )
    parser.add_argument(
        "--profile",
        type=_profile_arg,
        help="Prompt style, e.g. auto, coding, debugging, review, devops.",
    )
    parser.add_argument(
        "--plan",
        action="store_true",
        help="Ask for an upfront plan even in scout mode.",
    )
    parser.add_argument(
        "--rollback-on-failure",
        action="store_true",
        help="Restore files changed by the agent when the run does not complete.",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    parser.add_argument("goal", nargs="?", help="Goal for the agent run")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = cast(CLIArgs, parser.parse_args(argv))
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = AppConfig.from_env()

    goal = args.goal or input("Goal: ").strip()
    if not goal:
        print("No goal provided.")
        return 1

    configured_working_directory = (
        args.working_directory if args.working_directory is not None else config.working_directory
    )
    working_directory: str | None = None
    if configured_working_directory is not None:
        resolved_working_directory = Path(configured_working_directory).expanduser().resolve()
        if not resolved_working_directory.exists() or not resolved_working_directory.is_dir():
            print(f"Invalid configured cwd directory: {configured_working_directory}")
            return 1
        working_directory = str(resolved_working_directory)

    adapter = create_shell_adapter(config.shell)
    LOGGER.debug("shell_adapter_selected", extra={"shell": adapter.name})
    terminal = TerminalSession(adapter, working_directory)
    client = LLMClient(
        api_key=config.api_key,
        model=config.model,
        reasoning_effort=config.reasoning_effort,
        api_url=config.api_url,
        timeout=config.request_timeout,
    )
    processes = ProcessManager()
    gate = ApprovalGate(
        config.agent.approval_policy(),
        require_file_edit_approval=config.agent.require_file_edit_approval,
        on_request=lambda pending: _schedule_console_prompt(gate, pending),
    )
    orchestrator = Orchestrator(
        client=client,
        terminal=terminal,
        settings=config.agent,
        gate=gate,
        log_dir=config.log_dir,
        processes=processes,
        on_event=_print_event,
    )

    try:
        result = asyncio.run(
            orchestrator.run(goal, mode=args.mode, profile=args.profile, plan=args.plan)
        )
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130
    finally:
        processes.stop_all()

    print(render_result(result))
    if result.status != "completed" and args.rollback_on_failure:
        print(render_rollback(orchestrator.rollback()))
    return 0 if result.status == "completed" else 1


def _schedule_console_prompt(gate: ApprovalGate, pending: PendingApproval) -> None:
    task = asyncio.get_running_loop().create_task(prompt_for_approval(gate, pending))
    _PROMPT_TASKS.add(task)
    task.add_done_callback(_PROMPT_TASKS.discard)


async def prompt_for_approval(gate: ApprovalGate, pending: PendingApproval) -> None:
    """Ask on the console and deliver the answer to ``gate``."""
    print(f"\n=== APPROVAL REQUIRED (#{pending.id}) ===")
    if isinstance(pending.payload, FileChange):
        print(f"File: {pending.payload.file_path} [{pending.payload.operation_type.value}]")
        if pending.diff is not None:
            print(pending.diff.unified(pending.payload.file_path))
            hunk_ids = ", ".join(str(hunk.id) for hunk in pending.diff.hunks)
            print(f"Hunks: {hunk_ids}")
        question = "Apply this change? [y]es / [n]o / [p]artial: "
    else:
        print(f"Command: {pending.payload}")
        question = "Run this command? [y/N]: "
    print("=" * 39)

    choice = (await asyncio.to_thread(input, question)).strip().lower()
    if choice in {"y", "yes"}:
        gate.approve(pending.id)
    elif choice in {"p", "partial"} and pending.diff is not None:
        raw = await asyncio.to_thread(input, "Hunk ids to apply (comma separated): ")
        selected = [int(part) for part in raw.replace(" ", "").split(",") if part.isdigit()]
        gate.approve_partial(pending.id, selected)
    else:
        reason = (await asyncio.to_thread(input, "Reason (optional): ")).strip()
        gate.reject(pending.id, reason or None)


def _print_event(event: dict[str, object]) -> None:
    rendered = render_event(event)
    if rendered:
        print(rendered)


def render_event(event: dict[str, object]) -> str | None:
    name = event.get("event")
    step = event.get("step_index")
    if name == "plan_created":
        return f"[plan] {event.get('steps')} steps"
    if name == "tool_result":
        status = "ok" if event.get("success") else f"failed ({event.get('error_kind')})"
        line = f"[{step}] {event.get('tool')}: {status}"
        if event.get("diff_summary"):
            line = f"{line} {event.get('diff_summary')}"
        if not event.get("success") and event.get("error"):
            line = f"{line}\n    {event.get('error')}"
        return line
    if name == "stuck_detected":
        return f"[{step}] agent appears stuck, reflecting"
    if name == "reflection_applied":
        return f"[{step}] reflection (adjust={event.get('should_adjust')})"
    if name == "verification_finished":
        return f"[{step}] verification: {event.get('failed')} of {event.get('checks')} checks failed"
    return None


def render_result(result: RunResult) -> str:
    lines = [f"=== Run {result.status} ({result.reason}) after {result.steps} steps ==="]
    if result.checklist is not None:
        snapshot = result.checklist
        lines.append(
            f"CHECKLIST ({snapshot.completed_count}/{len(snapshot.items)} completed"
            f" - {snapshot.progress_percent}%):"
        )
        lines.extend(item.display() for item in snapshot.items)
    if result.file_changes:
        lines.append("[files changed]")
        lines.extend(
            f"{change.operation_type.value} {change.file_path}" for change in result.file_changes
        )
    if result.final_message:
        lines.append("[summary]")
        lines.append(result.final_message)
    return "\n".join(lines)


def render_rollback(rollback: RollbackResult) -> str:
    lines = ["[rolled back]"]
    lines.extend(f"restored {path}" for path in rollback.restored)
    lines.extend(f"removed {path}" for path in rollback.removed)
    if rollback.unrevertable_commands:
        lines.append("[commands that cannot be undone]")
        lines.extend(rollback.unrevertable_commands)
    return "\n".join(lines)


if __name__ == "__main__":
    raise SystemExit(main())
