"""Error taxonomy for the agent execution engine."""

from __future__ import annotations


class AgentError(Exception):
    """Base class for engine errors that carry a taxonomy kind."""

    kind = "AgentError"


class CapabilityError(AgentError):
    """Tool is not permitted in the current agent mode."""

    kind = "CapabilityError"

    def __init__(self, tool: str, mode: str) -> None:
        super().__init__(f"Tool '{tool}' is not available in {mode} mode.")
        self.tool = tool
        self.mode = mode


class ApprovalRejected(AgentError):
    """A gated action was rejected or withdrawn before execution."""

    kind = "ApprovalRejected"


class ToolExecutionError(AgentError):
    """A tool ran and failed; ``fatal`` marks errors the run cannot recover from."""

    kind = "ToolExecutionError"

    def __init__(self, message: str, *, output: str = "", fatal: bool = False) -> None:
        super().__init__(message)
        self.output = output
        self.fatal = fatal


class ToolTimeoutError(ToolExecutionError):
    """A command or request exceeded its timeout."""

    kind = "TimeoutError"


class BudgetExceeded(AgentError):
    """Captured output or working memory exceeded its character budget."""

    kind = "BudgetExceeded"

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"Content of {size} chars exceeds budget of {limit} chars.")
        self.size = size
        self.limit = limit


class StuckLoop(AgentError):
    """The same tool call keeps repeating without checklist progress."""

    kind = "StuckLoop"


class FatalConfigurationError(AgentError):
    """The engine cannot start, e.g. no model is configured."""

    kind = "FatalConfigurationError"


class LLMRequestError(AgentError):
    """The model provider could not produce a decision."""

    kind = "LLMRequestError"
