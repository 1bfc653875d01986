from __future__ import annotations

import pytest

from termpilot.agent.budget import (
    ContextBudget,
    context_limit,
    estimate_tokens,
    max_context_usage,
)
from termpilot.agent.errors import BudgetExceeded


@pytest.mark.parametrize(
    ("tokens", "output_limit", "memory_limit"),
    [
        (8_000, 8_000, 16_000),
        (32_000, 19_200, 51_200),
        (128_000, 50_000, 100_000),
    ],
)
def test_effective_limits_apply_floors_and_ceilings(
    tokens: int, output_limit: int, memory_limit: int
) -> None:
    budget = ContextBudget(context_tokens=tokens)

    assert budget.context_chars == tokens * 4
    assert budget.effective_output_capture_limit == output_limit
    assert budget.effective_agent_memory_limit == memory_limit


def test_ensure_within_memory_raises_over_limit() -> None:
    budget = ContextBudget(context_tokens=8_000)

    budget.ensure_within_memory("x" * 16_000)
    with pytest.raises(BudgetExceeded) as excinfo:
        budget.ensure_within_memory("x" * 16_001)

    assert excinfo.value.size == 16_001
    assert excinfo.value.limit == 16_000
    assert excinfo.value.kind == "BudgetExceeded"


def test_describe_mentions_all_limits() -> None:
    text = ContextBudget(context_tokens=32_000).describe()

    assert "32,000 tokens" in text
    assert "19,200 chars" in text
    assert "51,200 chars" in text


@pytest.mark.parametrize(
    ("model", "expected"),
    [
        ("gpt-5.2", 128_000),
        ("gpt-4o-mini", 128_000),
        ("claude-sonnet-4-5", 200_000),
        ("o3-mini", 200_000),
        ("llama3", 32_000),
    ],
)
def test_context_limit_by_model_family(model: str, expected: int) -> None:
    assert context_limit(model) == expected
    assert ContextBudget.for_model(model).context_tokens == expected


def test_max_context_usage_is_three_quarters() -> None:
    assert max_context_usage("gpt-5.2") == 96_000


def test_estimate_tokens_rounds_up_and_sums() -> None:
    assert estimate_tokens("abcde", "gpt-5") == 2
    assert estimate_tokens(["abcd", "abcd"], "gpt-5") == 2
    assert estimate_tokens("", "claude-opus-4") == 0
