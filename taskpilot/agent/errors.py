"""Agent error hierarchy.

Tool handlers raise ``ToolFailure`` subclasses to report typed failures; the
executor turns every handler error into a failed result. The remaining errors
are raised by the loop and controller and end up as a task's failure reason.
"""

from __future__ import annotations

from enum import Enum


class TaskpilotError(Exception):
    """Base error for the agent runtime."""


class TaskStateError(TaskpilotError):
    """Operation not valid for the task's current status (or unknown task)."""


class ApprovalStateError(TaskpilotError):
    """Approval decision conflicts with the recorded one, or the call is unknown."""


class BudgetExceededError(TaskpilotError):
    """History does not fit the context budget even after summarization."""

    def __init__(self, tokens: int, budget: int) -> None:
        super().__init__(f"context requires ~{tokens} tokens, budget is {budget}")
        self.tokens = tokens
        self.budget = budget


class LoopCeilingExceeded(TaskpilotError):
    """The task used up its model round-trips without completing."""

    def __init__(self, iterations: int) -> None:
        super().__init__(f"task did not complete within {iterations} iterations")
        self.iterations = iterations


# ---------------------------------------------------------------------------
# Tool failures
# ---------------------------------------------------------------------------

class FailureKind(str, Enum):
    FILE_NOT_FOUND = "file_not_found"
    PERMISSION_DENIED = "permission_denied"
    NON_ZERO_EXIT = "non_zero_exit"
    TIMEOUT = "timeout"
    UNSUPPORTED = "unsupported"
    UNKNOWN_TOOL = "unknown_tool"
    CANCELLED = "cancelled"
    NO_MATCH = "no_match"
    ERROR = "error"


class ToolFailure(TaskpilotError):
    """Typed failure reported by a tool handler."""

    kind: FailureKind = FailureKind.ERROR

    def __init__(self, message: str, kind: FailureKind | None = None) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind


class CommandFailedError(ToolFailure):
    kind = FailureKind.NON_ZERO_EXIT

    def __init__(self, command: str, exit_code: int, output: str) -> None:
        super().__init__(f"Command exited with code {exit_code}\n{output}".rstrip())
        self.command = command
        self.exit_code = exit_code
        self.output = output


class ToolTimeoutError(ToolFailure):
    kind = FailureKind.TIMEOUT


class UnsupportedToolError(ToolFailure):
    kind = FailureKind.UNSUPPORTED


class EditFailedError(ToolFailure):
    """A search/replace edit could not be applied; the file is left unchanged."""

    kind = FailureKind.NO_MATCH
