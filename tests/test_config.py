import json
import os

import pytest

from termpilot.agent.modes import AgentMode, AgentProfile
from termpilot.config import DEFAULT_MODEL, AgentSettings, AppConfig
from termpilot.shell.classifier import DEFAULT_BLOCKED_PATTERNS


@pytest.fixture(autouse=True)
def clean_env(tmp_path, monkeypatch):
    for key in list(os.environ):
        if key.startswith("TERMPILOT_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)


def _write_config(path, payload: dict) -> str:
    path.write_text(json.dumps(payload), encoding="utf-8")
    return str(path)


def test_app_config_loads_openai_and_model_reasoning_from_file(tmp_path, monkeypatch) -> None:
    config_path = _write_config(
        tmp_path / "custom.json",
        {
            "openai": {
                "api_key": "test-key",
                "api_url": "https://api.openai.com/v1/responses",
                "timeout": 30,
            },
            "default_model": "gpt-5.2-codex",
            "models": {"gpt-5.2-codex": {"reasoning_effort": "low"}},
            "log_dir": "test-logs",
            "cwd": "/srv/project",
        },
    )
    monkeypatch.setenv("TERMPILOT_CONFIG_FILE", config_path)

    config = AppConfig.from_env()

    assert config.api_key == "test-key"
    assert config.model == "gpt-5.2-codex"
    assert config.reasoning_effort == "low"
    assert config.request_timeout == 30.0
    assert config.log_dir == "test-logs"
    assert config.working_directory == "/srv/project"
    assert config.shell == "bash"


def test_defaults_without_any_config() -> None:
    config = AppConfig.from_env()

    assert config.api_key is None
    assert config.model == DEFAULT_MODEL
    assert config.reasoning_effort == "medium"
    assert config.log_dir == "logs"
    assert config.working_directory is None
    assert config.agent == AgentSettings()


def test_reasoning_defaults_to_none_for_non_reasoning_models(monkeypatch) -> None:
    monkeypatch.setenv("TERMPILOT_MODEL", "gpt-4.1-mini")

    assert AppConfig.from_env().reasoning_effort is None


def test_env_overrides_file_values(tmp_path, monkeypatch) -> None:
    config_path = _write_config(
        tmp_path / "custom.json",
        {
            "default_model": "gpt-5.2-codex",
            "models": {"gpt-5.2-codex": {"reasoning_effort": "low"}},
            "shell": "sh",
        },
    )
    monkeypatch.setenv("TERMPILOT_CONFIG_FILE", config_path)
    monkeypatch.setenv("TERMPILOT_REASONING_EFFORT", "high")
    monkeypatch.setenv("TERMPILOT_SHELL", "bash")
    monkeypatch.setenv("TERMPILOT_API_KEY", "env-key")

    config = AppConfig.from_env()

    assert config.reasoning_effort == "high"
    assert config.shell == "bash"
    assert config.api_key == "env-key"


def test_local_override_file_is_merged(tmp_path) -> None:
    _write_config(
        tmp_path / "termpilot.config.json",
        {"openai": {"api_key": "shared", "api_url": "https://shared.example/v1/responses"}},
    )
    _write_config(tmp_path / "termpilot.config.local.json", {"openai": {"api_key": "local"}})

    config = AppConfig.from_env()

    assert config.api_key == "local"
    assert config.api_url == "https://shared.example/v1/responses"


def test_invalid_config_file_is_ignored(tmp_path, monkeypatch) -> None:
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    monkeypatch.setenv("TERMPILOT_CONFIG_FILE", str(broken))

    assert AppConfig.from_env().model == DEFAULT_MODEL


def test_agent_section_builds_settings(tmp_path, monkeypatch) -> None:
    config_path = _write_config(
        tmp_path / "custom.json",
        {
            "agent": {
                "max_steps": 25,
                "max_fix_attempts": 5,
                "enable_reflection": False,
                "require_file_edit_approval": True,
                "blocked_patterns": [" terraform ", "", "terraform", "kubectl delete"],
                "default_mode": "pilot",
                "default_profile": "testing",
                "context_tokens": 64000,
            }
        },
    )
    monkeypatch.setenv("TERMPILOT_CONFIG_FILE", config_path)

    settings = AppConfig.from_env().agent

    assert settings.max_steps == 25
    assert settings.max_fix_attempts == 5
    assert settings.enable_reflection is False
    assert settings.require_file_edit_approval is True
    assert settings.blocked_patterns == ("terraform", "kubectl delete")
    assert settings.default_mode is AgentMode.PILOT
    assert settings.default_profile is AgentProfile.TESTING
    assert settings.context_tokens == 64000


def test_agent_settings_env_overrides_take_precedence() -> None:
    env = {
        "TERMPILOT_MAX_STEPS": "7",
        "TERMPILOT_ENABLE_PLANNING": "off",
        "TERMPILOT_MODE": "Copilot",
    }

    settings = AgentSettings.from_mapping({"max_steps": 40, "enable_planning": True}, env=env)

    assert settings.max_steps == 7
    assert settings.enable_planning is False
    assert settings.default_mode is AgentMode.COPILOT


@pytest.mark.parametrize(
    ("values", "field_name", "expected"),
    [
        ({"max_steps": 0}, "max_steps", 100),
        ({"max_steps": "abc"}, "max_steps", 100),
        ({"max_steps": True}, "max_steps", 100),
        ({"command_timeout": -1}, "command_timeout", 300.0),
        ({"output_capture_percent": 1.5}, "output_capture_percent", 0.15),
        ({"default_mode": "autopilot"}, "default_mode", AgentMode.SCOUT),
        ({"blocked_patterns": "rm"}, "blocked_patterns", DEFAULT_BLOCKED_PATTERNS),
    ],
)
def test_agent_settings_fall_back_on_invalid_values(values, field_name, expected) -> None:
    settings = AgentSettings.from_mapping(values, env={})

    assert getattr(settings, field_name) == expected


def test_agent_settings_derive_policy_and_budget() -> None:
    settings = AgentSettings(require_command_approval=True, context_tokens=64_000)

    policy = settings.approval_policy()
    budget = settings.context_budget("gpt-5.2")

    assert policy.require_command_approval is True
    assert policy.blocked_patterns == DEFAULT_BLOCKED_PATTERNS
    assert budget.context_tokens == 64_000
    assert AgentSettings().context_budget("gpt-5.2").context_tokens == 128_000


def test_verification_phase_is_on_by_default_and_env_can_disable_it() -> None:
    settings = AgentSettings.from_mapping(
        {"enable_verification_phase": True}, env={"TERMPILOT_ENABLE_VERIFICATION": "off"}
    )

    assert AgentSettings().enable_verification_phase is True
    assert settings.enable_verification_phase is False
