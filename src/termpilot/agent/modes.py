"""Agent modes, profiles and the capability tables that gate tools."""

from __future__ import annotations

import re
from enum import Enum


class Capability(str, Enum):
    READ = "read"
    PLAN = "plan"
    TRACK = "track"
    WRITE = "write"
    SHELL = "shell"


class AgentMode(str, Enum):
    """Ordered autonomy tiers, lowest first."""

    SCOUT = "Scout"
    NAVIGATOR = "Navigator"
    COPILOT = "Copilot"
    PILOT = "Pilot"

    @classmethod
    def parse(cls, value: str) -> AgentMode:
        normalized = value.strip().lower()
        for mode in cls:
            if mode.value.lower() == normalized:
                return mode
        msg = f"Unknown agent mode: {value}"
        raise ValueError(msg)

    @property
    def capabilities(self) -> frozenset[Capability]:
        return MODE_CAPABILITIES[self]

    @property
    def description(self) -> str:
        return MODE_DESCRIPTIONS[self]

    def allows(self, capability: Capability) -> bool:
        return capability in MODE_CAPABILITIES[self]

    @property
    def can_write_files(self) -> bool:
        return self.allows(Capability.WRITE)

    @property
    def can_execute_shell(self) -> bool:
        return self.allows(Capability.SHELL)

    @property
    def can_create_plans(self) -> bool:
        return self.allows(Capability.PLAN)


MODE_CAPABILITIES: dict[AgentMode, frozenset[Capability]] = {
    AgentMode.SCOUT: frozenset({Capability.READ}),
    AgentMode.NAVIGATOR: frozenset({Capability.READ, Capability.PLAN}),
    AgentMode.COPILOT: frozenset({Capability.READ, Capability.TRACK, Capability.WRITE}),
    AgentMode.PILOT: frozenset(
        {Capability.READ, Capability.TRACK, Capability.WRITE, Capability.SHELL}
    ),
}

MODE_DESCRIPTIONS: dict[AgentMode, str] = {
    AgentMode.SCOUT: "Read-only exploration",
    AgentMode.NAVIGATOR: "Create implementation plans",
    AgentMode.COPILOT: "File operations, no shell",
    AgentMode.PILOT: "Full autonomous agent",
}

TOOL_CAPABILITIES: dict[str, Capability] = {
    "read_file": Capability.READ,
    "list_dir": Capability.READ,
    "search_files": Capability.READ,
    "search_output": Capability.READ,
    "check_process": Capability.READ,
    "http_request": Capability.READ,
    "memory": Capability.READ,
    "create_plan": Capability.PLAN,
    "plan_and_track": Capability.TRACK,
    "write_file": Capability.WRITE,
    "edit_file": Capability.WRITE,
    "insert_lines": Capability.WRITE,
    "delete_lines": Capability.WRITE,
    "delete_file": Capability.WRITE,
    "shell": Capability.SHELL,
    "run_background": Capability.SHELL,
    "stop_process": Capability.SHELL,
}


def tools_for_mode(mode: AgentMode) -> list[str]:
    """Tool names available in ``mode``, in table order."""
    return [name for name, capability in TOOL_CAPABILITIES.items() if mode.allows(capability)]


class AgentProfile(str, Enum):
    """Prompt style for planning and reflection; never gates behavior."""

    AUTO = "Auto"
    GENERAL = "General"
    CODING = "Coding"
    CODE_REVIEW = "Code Review"
    TESTING = "Testing"
    DEBUGGING = "Debugging"
    SECURITY = "Security"
    REFACTORING = "Refactoring"
    DEVOPS = "DevOps"
    DOCUMENTATION = "Documentation"
    PRODUCT_MANAGEMENT = "Product Management"

    @classmethod
    def parse(cls, value: str) -> AgentProfile:
        normalized = value.strip().lower()
        profile = _PROFILE_ALIASES.get(normalized)
        if profile is None:
            msg = f"Unknown agent profile: {value}"
            raise ValueError(msg)
        return profile

    @property
    def is_auto(self) -> bool:
        return self is AgentProfile.AUTO

    def resolve(self, task: str) -> AgentProfile:
        """Return a concrete profile; ``Auto`` picks one from the task text."""
        if not self.is_auto:
            return self
        lowered = task.lower()
        best = AgentProfile.GENERAL
        best_hits = 0
        for profile, keywords in _PROFILE_KEYWORDS.items():
            hits = sum(1 for keyword in keywords if re.search(rf"\b{keyword}", lowered))
            if hits > best_hits:
                best, best_hits = profile, hits
        return best

    @property
    def planning_hint(self) -> str:
        return _PROFILE_PROMPTS[self.resolve("")][0]

    @property
    def reflection_questions(self) -> str:
        return _PROFILE_PROMPTS[self.resolve("")][1]


_PROFILE_ALIASES: dict[str, AgentProfile] = {
    "auto": AgentProfile.AUTO,
    "general": AgentProfile.GENERAL,
    "coding": AgentProfile.CODING,
    "codereview": AgentProfile.CODE_REVIEW,
    "code review": AgentProfile.CODE_REVIEW,
    "code_review": AgentProfile.CODE_REVIEW,
    "review": AgentProfile.CODE_REVIEW,
    "testing": AgentProfile.TESTING,
    "debugging": AgentProfile.DEBUGGING,
    "debug": AgentProfile.DEBUGGING,
    "security": AgentProfile.SECURITY,
    "sec": AgentProfile.SECURITY,
    "refactoring": AgentProfile.REFACTORING,
    "refactor": AgentProfile.REFACTORING,
    "devops": AgentProfile.DEVOPS,
    "documentation": AgentProfile.DOCUMENTATION,
    "docs": AgentProfile.DOCUMENTATION,
    "productmanagement": AgentProfile.PRODUCT_MANAGEMENT,
    "product management": AgentProfile.PRODUCT_MANAGEMENT,
    "product_management": AgentProfile.PRODUCT_MANAGEMENT,
    "pm": AgentProfile.PRODUCT_MANAGEMENT,
}

# Word prefixes matched at word boundaries, so "test" also covers "tests".
_PROFILE_KEYWORDS: dict[AgentProfile, tuple[str, ...]] = {
    AgentProfile.TESTING: ("test", "pytest", "coverage", "unit test", "spec"),
    AgentProfile.DEBUGGING: ("debug", "bug", "crash", "error", "traceback", "fix", "failing"),
    AgentProfile.SECURITY: ("security", "vulnerab", "secret", "cve", "auth", "injection"),
    AgentProfile.REFACTORING: ("refactor", "clean up", "restructure", "rename", "extract"),
    AgentProfile.CODE_REVIEW: ("review", "pull request", "feedback", "audit"),
    AgentProfile.DEVOPS: ("deploy", "docker", "ci/cd", "pipeline", "kubernetes", "terraform"),
    AgentProfile.DOCUMENTATION: ("document", "readme", "docstring", "changelog", "guide"),
    AgentProfile.PRODUCT_MANAGEMENT: ("roadmap", "requirement", "user stor", "prd", "prioriti"),
    AgentProfile.CODING: ("implement", "build", "feature", "function", "class", "endpoint"),
}

_PROFILE_PROMPTS: dict[AgentProfile, tuple[str, str]] = {
    AgentProfile.GENERAL: (
        "Break the goal into small, verifiable steps.",
        "What has been accomplished? What remains? Is the current approach working?",
    ),
    AgentProfile.CODING: (
        "Plan code changes module by module; keep each step buildable.",
        "Does the code follow the project's conventions? Are changes verified by a build or run?",
    ),
    AgentProfile.CODE_REVIEW: (
        "Plan to read the changed code first, then collect findings by severity.",
        "Have all changed files been inspected? Are findings concrete and actionable?",
    ),
    AgentProfile.TESTING: (
        "Plan to discover the test runner, write or fix tests, then run them.",
        "Which tests pass or fail now? Are edge cases covered?",
    ),
    AgentProfile.DEBUGGING: (
        "Plan to reproduce the failure, isolate the cause, fix it, then verify.",
        "Has the bug been reproduced? Is the root cause confirmed rather than guessed?",
    ),
    AgentProfile.SECURITY: (
        "Plan to map inputs and trust boundaries before changing anything.",
        "Which attack surfaces were checked? Were secrets or unsafe calls found?",
    ),
    AgentProfile.REFACTORING: (
        "Plan behavior-preserving steps with a verification after each one.",
        "Is behavior unchanged? Are tests still green after each step?",
    ),
    AgentProfile.DEVOPS: (
        "Plan to inspect current configuration, apply changes, then validate them.",
        "Are configuration changes validated? Is anything left half-applied?",
    ),
    AgentProfile.DOCUMENTATION: (
        "Plan to read the code being documented before writing prose.",
        "Is the documentation accurate against the code? Is anything missing?",
    ),
    AgentProfile.PRODUCT_MANAGEMENT: (
        "Plan to gather requirements, then structure them into prioritized items.",
        "Are requirements complete and prioritized? Are open questions listed?",
    ),
}
