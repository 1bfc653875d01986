"""Environment-backed application configuration."""

from __future__ import annotations

import json
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TypeVar

from termpilot.agent.budget import ContextBudget, context_limit
from termpilot.agent.modes import AgentMode, AgentProfile
from termpilot.shell.classifier import DEFAULT_BLOCKED_PATTERNS, ApprovalPolicy, normalize_patterns

DEFAULT_MODEL = "gpt-5.2"

EnumT = TypeVar("EnumT")


def _to_bool(value: str | None, default: bool = False) -> bool:
    """Convert common env var truthy/falsy values into booleans."""
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


@dataclass(frozen=True, slots=True)
class AgentSettings:
    """Immutable agent policy passed explicitly to every run."""

    max_steps: int = 100
    max_fix_attempts: int = 3
    reflection_interval: int = 10
    stuck_detection_threshold: int = 3
    max_stuck_count: int = 2
    command_timeout: float = 300.0
    http_request_timeout: float = 10.0
    background_process_timeout: float = 5.0
    enable_planning: bool = True
    enable_reflection: bool = True
    enable_verification_phase: bool = True
    require_command_approval: bool = False
    auto_approve_read_only: bool = True
    require_file_edit_approval: bool = False
    blocked_patterns: tuple[str, ...] = field(default=DEFAULT_BLOCKED_PATTERNS)
    output_capture_percent: float = 0.15
    agent_memory_percent: float = 0.40
    min_output_capture: int = 8_000
    min_context_size: int = 16_000
    max_output_capture_cap: int = 50_000
    max_agent_memory_cap: int = 100_000
    output_buffer_chars: int = 100_000
    context_tokens: int | None = None
    default_mode: AgentMode = AgentMode.SCOUT
    default_profile: AgentProfile = AgentProfile.AUTO

    def approval_policy(self) -> ApprovalPolicy:
        return ApprovalPolicy(
            require_command_approval=self.require_command_approval,
            auto_approve_read_only=self.auto_approve_read_only,
            blocked_patterns=self.blocked_patterns,
        )

    def context_budget(self, model: str) -> ContextBudget:
        return ContextBudget(
            context_tokens=self.context_tokens or context_limit(model),
            output_capture_percent=self.output_capture_percent,
            agent_memory_percent=self.agent_memory_percent,
            min_output_capture=self.min_output_capture,
            min_context_size=self.min_context_size,
            max_output_capture_cap=self.max_output_capture_cap,
            max_agent_memory_cap=self.max_agent_memory_cap,
        )

    @classmethod
    def from_mapping(
        cls, values: Mapping[str, object], env: Mapping[str, str] | None = None
    ) -> AgentSettings:
        """Build settings from the ``agent`` config section plus env overrides."""
        env = os.environ if env is None else env
        defaults = cls()

        def positive_int(key: str, env_key: str | None = None) -> int:
            raw = (env.get(env_key) if env_key else None) or values.get(key)
            return _to_positive_int(raw, default=getattr(defaults, key))

        def positive_float(key: str, env_key: str | None = None) -> float:
            raw = (env.get(env_key) if env_key else None) or values.get(key)
            return _to_positive_float(raw, default=getattr(defaults, key))

        def flag(key: str, env_key: str) -> bool:
            file_value = values.get(key)
            default = file_value if isinstance(file_value, bool) else getattr(defaults, key)
            return _to_bool(env.get(env_key), default=default)

        patterns = values.get("blocked_patterns")
        blocked = (
            normalize_patterns(str(item) for item in patterns)
            if isinstance(patterns, list)
            else defaults.blocked_patterns
        )
        context_tokens = env.get("TERMPILOT_CONTEXT_TOKENS") or values.get("context_tokens")

        return cls(
            max_steps=positive_int("max_steps", "TERMPILOT_MAX_STEPS"),
            max_fix_attempts=positive_int("max_fix_attempts"),
            reflection_interval=positive_int("reflection_interval"),
            stuck_detection_threshold=positive_int("stuck_detection_threshold"),
            max_stuck_count=positive_int("max_stuck_count"),
            command_timeout=positive_float("command_timeout", "TERMPILOT_COMMAND_TIMEOUT"),
            http_request_timeout=positive_float("http_request_timeout"),
            background_process_timeout=positive_float("background_process_timeout"),
            enable_planning=flag("enable_planning", "TERMPILOT_ENABLE_PLANNING"),
            enable_reflection=flag("enable_reflection", "TERMPILOT_ENABLE_REFLECTION"),
            enable_verification_phase=flag(
                "enable_verification_phase", "TERMPILOT_ENABLE_VERIFICATION"
            ),
            require_command_approval=flag(
                "require_command_approval", "TERMPILOT_REQUIRE_COMMAND_APPROVAL"
            ),
            auto_approve_read_only=flag("auto_approve_read_only", "TERMPILOT_AUTO_APPROVE_READ_ONLY"),
            require_file_edit_approval=flag(
                "require_file_edit_approval", "TERMPILOT_REQUIRE_FILE_EDIT_APPROVAL"
            ),
            blocked_patterns=blocked,
            output_capture_percent=_to_fraction(
                values.get("output_capture_percent"), default=defaults.output_capture_percent
            ),
            agent_memory_percent=_to_fraction(
                values.get("agent_memory_percent"), default=defaults.agent_memory_percent
            ),
            min_output_capture=positive_int("min_output_capture"),
            min_context_size=positive_int("min_context_size"),
            max_output_capture_cap=positive_int("max_output_capture_cap"),
            max_agent_memory_cap=positive_int("max_agent_memory_cap"),
            output_buffer_chars=positive_int("output_buffer_chars"),
            context_tokens=(
                _to_positive_int(context_tokens, default=0) or None
                if context_tokens is not None
                else None
            ),
            default_mode=_parse_enum(
                AgentMode.parse,
                env.get("TERMPILOT_MODE") or values.get("default_mode"),
                defaults.default_mode,
            ),
            default_profile=_parse_enum(
                AgentProfile.parse,
                env.get("TERMPILOT_PROFILE") or values.get("default_profile"),
                defaults.default_profile,
            ),
        )


@dataclass(slots=True)
class AppConfig:
    """Runtime settings loaded from environment variables."""

    api_key: str | None
    model: str
    reasoning_effort: str | None
    api_url: str
    request_timeout: float
    log_dir: str
    shell: str
    working_directory: str | None
    agent: AgentSettings = field(default_factory=AgentSettings)

    @classmethod
    def from_env(cls) -> AppConfig:
        file_config = _load_preferred_file_config()
        openai_from_file = file_config.get("openai")
        openai_config = openai_from_file if isinstance(openai_from_file, dict) else {}
        models_from_file = file_config.get("models")
        model_config = models_from_file if isinstance(models_from_file, dict) else {}
        agent_from_file = file_config.get("agent")
        agent_config = agent_from_file if isinstance(agent_from_file, dict) else {}

        selected_model = os.getenv("TERMPILOT_MODEL") or str(
            file_config.get("default_model", DEFAULT_MODEL)
        )
        selected_model_entry = model_config.get(selected_model)
        selected_model_config = (
            selected_model_entry if isinstance(selected_model_entry, dict) else {}
        )

        return cls(
            api_key=(
                os.getenv("TERMPILOT_OPENAI_API_KEY")
                or os.getenv("TERMPILOT_API_KEY")
                or _to_optional_string(openai_config.get("api_key"))
                or _to_optional_string(file_config.get("api_key"))
            ),
            model=selected_model,
            reasoning_effort=(
                os.getenv("TERMPILOT_REASONING_EFFORT")
                or _to_optional_string(selected_model_config.get("reasoning_effort"))
                or _default_reasoning_effort(selected_model)
            ),
            api_url=(
                os.getenv("TERMPILOT_API_URL")
                or _to_optional_string(openai_config.get("api_url"))
                or "https://api.openai.com/v1/responses"
            ),
            request_timeout=_to_positive_float(
                os.getenv("TERMPILOT_REQUEST_TIMEOUT") or openai_config.get("timeout"),
                default=60.0,
            ),
            log_dir=(
                os.getenv("TERMPILOT_LOG_DIR")
                or _to_optional_string(file_config.get("log_dir"))
                or "logs"
            ),
            shell=(
                os.getenv("TERMPILOT_SHELL")
                or _to_optional_string(file_config.get("shell"))
                or "bash"
            ),
            working_directory=(
                os.getenv("TERMPILOT_CWD")
                or _to_optional_string(file_config.get("cwd"))
            ),
            agent=AgentSettings.from_mapping(agent_config),
        )


def _to_optional_string(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _load_file_config(path_value: str) -> dict[str, object]:
    path = Path(path_value)
    if not path.exists() or not path.is_file():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            parsed = json.load(fh)
    except (OSError, json.JSONDecodeError):
        return {}
    if isinstance(parsed, dict):
        return parsed
    return {}


def _load_preferred_file_config() -> dict[str, object]:
    explicit_path = os.getenv("TERMPILOT_CONFIG_FILE")
    if explicit_path:
        return _load_file_config(explicit_path)

    shared_config = _load_file_config("termpilot.config.json")
    local_override = _load_file_config("termpilot.config.local.json")
    return _merge_dicts(shared_config, local_override)


def _merge_dicts(base: dict[str, object], override: dict[str, object]) -> dict[str, object]:
    merged: dict[str, object] = dict(base)
    for key, value in override.items():
        base_value = merged.get(key)
        if isinstance(base_value, dict) and isinstance(value, dict):
            merged[key] = _merge_dicts(base_value, value)
        else:
            merged[key] = value
    return merged


def _default_reasoning_effort(model: str) -> str | None:
    """Provide practical defaults for reasoning-capable model families."""
    normalized = model.strip().lower()
    if normalized.startswith("gpt-5") or normalized.startswith("o"):
        return "medium"
    return None


def _to_positive_int(value: object, *, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value if value > 0 else default
    if isinstance(value, str):
        try:
            parsed = int(value.strip())
        except ValueError:
            return default
        return parsed if parsed > 0 else default
    return default


def _to_positive_float(value: object, *, default: float) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else default
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return default
        return parsed if parsed > 0 else default
    return default


def _to_fraction(value: object, *, default: float) -> float:
    parsed = _to_positive_float(value, default=default)
    return parsed if parsed <= 1 else default


def _parse_enum(parser: Callable[[str], EnumT], value: object, default: EnumT) -> EnumT:
    if not isinstance(value, str) or not value.strip():
        return default
    try:
        return parser(value)
    except ValueError:
        return default
