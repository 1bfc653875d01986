from __future__ import annotations

import asyncio
from collections.abc import Iterator
from pathlib import Path

import pytest

from termpilot import cli
from termpilot.agent.approval import ApprovalGate, ApprovalState
from termpilot.agent.checklist import TaskChecklist
from termpilot.agent.diff import diff_for_change
from termpilot.agent.models import FileChange, OperationType, RollbackResult, RunResult
from termpilot.agent.modes import AgentMode, AgentProfile
from termpilot.config import AgentSettings, AppConfig
from termpilot.shell.classifier import ApprovalPolicy


def _fake_config(working_directory: str | None = None) -> AppConfig:
    return AppConfig(
        api_key=None,
        model="gpt-5.2",
        reasoning_effort="medium",
        api_url="https://api.openai.com/v1/responses",
        request_timeout=60.0,
        log_dir="logs",
        shell="bash",
        working_directory=working_directory,
        agent=AgentSettings(),
    )


class FakeAdapter:
    name = "fake"


class FakeOrchestrator:
    instances: list[FakeOrchestrator] = []
    status = "completed"

    def __init__(self, **kwargs: object) -> None:
        self.kwargs = kwargs
        self.calls: list[tuple[str, dict[str, object]]] = []
        self.rolled_back = False
        FakeOrchestrator.instances.append(self)

    async def run(self, goal: str, **kwargs: object) -> RunResult:
        self.calls.append((goal, kwargs))
        return RunResult(status=self.status, reason="done", final_message="All set.", steps=2)

    def rollback(self) -> RollbackResult:
        self.rolled_back = True
        return RollbackResult(restored=["/work/app.py"], unrevertable_commands=["make build"])


@pytest.fixture
def patched_cli(monkeypatch: pytest.MonkeyPatch) -> Iterator[dict[str, AppConfig]]:
    holder = {"config": _fake_config()}
    FakeOrchestrator.instances = []
    FakeOrchestrator.status = "completed"
    monkeypatch.setattr(cli, "create_shell_adapter", lambda _name: FakeAdapter())
    monkeypatch.setattr(cli, "Orchestrator", FakeOrchestrator)
    monkeypatch.setattr(
        cli,
        "AppConfig",
        type("FakeConfig", (), {"from_env": staticmethod(lambda: holder["config"])}),
    )
    yield holder


def _answers(monkeypatch: pytest.MonkeyPatch, *values: str) -> None:
    replies = iter(values)
    monkeypatch.setattr("builtins.input", lambda _prompt="": next(replies))


def test_parser_defaults() -> None:
    args = cli.build_parser().parse_args([])

    assert args.goal is None
    assert args.working_directory is None
    assert args.mode is None
    assert args.profile is None
    assert args.plan is False
    assert args.rollback_on_failure is False


def test_parser_accepts_mode_profile_and_cwd() -> None:
    args = cli.build_parser().parse_args(
        ["--cwd", "./sandbox", "--mode", "pilot", "--profile", "debugging", "--plan", "fix it"]
    )

    assert args.working_directory == "./sandbox"
    assert args.mode is AgentMode.PILOT
    assert args.profile is AgentProfile.DEBUGGING
    assert args.plan is True
    assert args.goal == "fix it"


def test_parser_rejects_unknown_mode(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["--mode", "autopilot", "goal"])

    assert "Unknown agent mode" in capsys.readouterr().err


def test_main_rejects_invalid_cwd_from_config(
    patched_cli: dict[str, AppConfig],
    capsys: pytest.CaptureFixture[str],
) -> None:
    patched_cli["config"] = _fake_config("./definitely-missing-dir")

    assert cli.main(["list files"]) == 1
    assert "Invalid configured cwd directory" in capsys.readouterr().out
    assert FakeOrchestrator.instances == []


def test_main_requires_a_goal(
    patched_cli: dict[str, AppConfig],
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    _answers(monkeypatch, "   ")

    assert cli.main([]) == 1
    assert "No goal provided." in capsys.readouterr().out


def test_main_runs_orchestrator_in_configured_cwd(
    tmp_path: Path,
    patched_cli: dict[str, AppConfig],
    capsys: pytest.CaptureFixture[str],
) -> None:
    patched_cli["config"] = _fake_config(str(tmp_path))

    assert cli.main(["--mode", "copilot", "list files"]) == 0

    orchestrator = FakeOrchestrator.instances[0]
    assert orchestrator.kwargs["terminal"].current_directory() == str(tmp_path.resolve())
    assert orchestrator.kwargs["log_dir"] == "logs"
    assert orchestrator.calls == [
        ("list files", {"mode": AgentMode.COPILOT, "profile": None, "plan": False})
    ]
    out = capsys.readouterr().out
    assert "=== Run completed (done) after 2 steps ===" in out
    assert "All set." in out


def test_main_cwd_cli_override_takes_precedence(
    tmp_path: Path,
    patched_cli: dict[str, AppConfig],
) -> None:
    override_dir = tmp_path / "override"
    override_dir.mkdir()
    patched_cli["config"] = _fake_config("./ignored-from-config")

    assert cli.main(["--cwd", str(override_dir), "list files"]) == 0

    terminal = FakeOrchestrator.instances[0].kwargs["terminal"]
    assert terminal.current_directory() == str(override_dir.resolve())


def test_main_returns_failure_for_unfinished_run(
    tmp_path: Path,
    patched_cli: dict[str, AppConfig],
) -> None:
    patched_cli["config"] = _fake_config(str(tmp_path))
    FakeOrchestrator.status = "failed"

    assert cli.main(["goal"]) == 1
    assert FakeOrchestrator.instances[0].rolled_back is False


def test_main_rolls_back_failed_run_on_request(
    tmp_path: Path,
    patched_cli: dict[str, AppConfig],
    capsys: pytest.CaptureFixture[str],
) -> None:
    patched_cli["config"] = _fake_config(str(tmp_path))
    FakeOrchestrator.status = "failed"

    assert cli.main(["--rollback-on-failure", "goal"]) == 1

    assert FakeOrchestrator.instances[0].rolled_back is True
    out = capsys.readouterr().out
    assert "[rolled back]\nrestored /work/app.py\n[commands that cannot be undone]\nmake build" in out


def test_console_prompt_approves_command(monkeypatch: pytest.MonkeyPatch) -> None:
    _answers(monkeypatch, "y")
    gate = ApprovalGate(ApprovalPolicy(require_command_approval=True))
    gate.on_request = lambda pending: cli._schedule_console_prompt(gate, pending)

    decision = asyncio.run(gate.request_command("make deploy"))

    assert decision.approved is True
    assert gate.history[0].state is ApprovalState.APPROVED


def test_console_prompt_rejects_with_reason(monkeypatch: pytest.MonkeyPatch) -> None:
    _answers(monkeypatch, "n", "too risky")
    gate = ApprovalGate(ApprovalPolicy(require_command_approval=True))
    gate.on_request = lambda pending: cli._schedule_console_prompt(gate, pending)

    decision = asyncio.run(gate.request_command("make deploy"))

    assert decision.approved is False
    assert decision.reason == "too risky"


def test_console_prompt_supports_partial_file_approval(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    _answers(monkeypatch, "p", "1")
    change = FileChange(
        file_path="/work/app.py",
        operation_type=OperationType.EDIT,
        before_content="a\nb",
        after_content="a\nc",
    )
    gate = ApprovalGate(ApprovalPolicy(), require_file_edit_approval=True)
    gate.on_request = lambda pending: cli._schedule_console_prompt(gate, pending)

    decision = asyncio.run(gate.request_file_edit(change, diff_for_change(change)))

    assert decision.partial is True
    assert decision.hunk_ids == frozenset({1})
    out = capsys.readouterr().out
    assert "File: /work/app.py [edit]" in out
    assert "Hunks: 1" in out


def test_render_event_formats_tool_results() -> None:
    ok = cli.render_event(
        {"event": "tool_result", "step_index": 3, "tool": "edit_file", "success": True, "diff_summary": "(+1 -1)"}
    )
    failed = cli.render_event(
        {
            "event": "tool_result",
            "step_index": 4,
            "tool": "shell",
            "success": False,
            "error_kind": "execution",
            "error": "Command exited with code 1: pytest",
        }
    )

    assert ok == "[3] edit_file: ok (+1 -1)"
    assert failed == "[4] shell: failed (execution)\n    Command exited with code 1: pytest"
    assert cli.render_event({"event": "run_started"}) is None


def test_render_result_includes_checklist_and_changes() -> None:
    checklist = TaskChecklist(["Write code", "Run tests"], goal="ship")
    checklist.mark_completed(1)
    result = RunResult(
        status="failed",
        reason="max_steps",
        final_message="Stopped after the step limit.",
        steps=100,
        checklist=checklist.snapshot(),
        file_changes=[
            FileChange(
                file_path="app.py",
                operation_type=OperationType.CREATE,
                before_content=None,
                after_content="x",
            )
        ],
    )

    rendered = cli.render_result(result)

    assert rendered.splitlines()[0] == "=== Run failed (max_steps) after 100 steps ==="
    assert "CHECKLIST (1/2 completed - 50%):" in rendered
    assert "✓ 1. Write code" in rendered
    assert "create app.py" in rendered
    assert rendered.endswith("[summary]\nStopped after the step limit.")
