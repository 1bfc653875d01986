"""Context window budgeting and token estimation."""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass

from .errors import BudgetExceeded

CHARS_PER_TOKEN_BUDGET = 4

_CONTEXT_LIMITS: tuple[tuple[str, int], ...] = (
    ("gpt-5", 128_000),
    ("gpt-4o", 128_000),
    ("gpt-4.1", 128_000),
    ("gpt-4-turbo", 128_000),
    ("claude-opus-4", 200_000),
    ("claude-sonnet-4", 200_000),
    ("claude-haiku-4", 200_000),
    ("claude-3-7", 200_000),
    ("claude-3-5", 200_000),
)
_O_SERIES_PREFIXES = ("o1", "o3", "o4")
DEFAULT_CONTEXT_LIMIT = 32_000


@dataclass(frozen=True, slots=True)
class ContextBudget:
    """Character budgets derived from the model context window size."""

    context_tokens: int
    output_capture_percent: float = 0.15
    agent_memory_percent: float = 0.40
    min_output_capture: int = 8_000
    min_context_size: int = 16_000
    max_output_capture_cap: int = 50_000
    max_agent_memory_cap: int = 100_000

    @property
    def context_chars(self) -> int:
        return self.context_tokens * CHARS_PER_TOKEN_BUDGET

    @property
    def effective_output_capture_limit(self) -> int:
        raw = int(self.context_chars * self.output_capture_percent)
        return min(max(raw, self.min_output_capture), self.max_output_capture_cap)

    @property
    def effective_agent_memory_limit(self) -> int:
        raw = int(self.context_chars * self.agent_memory_percent)
        return min(max(raw, self.min_context_size), self.max_agent_memory_cap)

    def ensure_within_memory(self, text: str) -> None:
        limit = self.effective_agent_memory_limit
        if len(text) > limit:
            raise BudgetExceeded(len(text), limit)

    def describe(self) -> str:
        return (
            f"Context: {self.context_tokens:,} tokens (~{self.context_chars:,} chars). "
            f"Output capture: {self.effective_output_capture_limit:,} chars. "
            f"Agent memory: {self.effective_agent_memory_limit:,} chars."
        )

    @classmethod
    def for_model(cls, model: str) -> ContextBudget:
        return cls(context_tokens=context_limit(model))


def chars_per_token(model: str) -> float:
    name = model.lower()
    if "claude" in name:
        return 3.5
    if "gpt-4" in name or "gpt-5" in name or name.startswith(_O_SERIES_PREFIXES):
        return 4.0
    if any(family in name for family in ("llama", "mistral", "qwen", "gemma")):
        return 4.0
    return 3.8


def estimate_tokens(text: str | Iterable[str], model: str) -> int:
    """Estimate tokens for a string, or the sum over several strings."""
    if isinstance(text, str):
        return math.ceil(len(text) / chars_per_token(model))
    return sum(estimate_tokens(item, model) for item in text)


def context_limit(model: str) -> int:
    name = model.lower()
    for prefix, limit in _CONTEXT_LIMITS:
        if prefix in name:
            return limit
    if name.startswith(_O_SERIES_PREFIXES):
        return 200_000
    return DEFAULT_CONTEXT_LIMIT


def max_context_usage(model: str) -> int:
    return int(context_limit(model) * 0.75)
