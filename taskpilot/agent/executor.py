"""Tool executor: runs approved calls and records exactly one result each."""

from __future__ import annotations

import asyncio
import inspect
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from taskpilot.agent.approval import ApprovalDecision
from taskpilot.agent.environment import ExecutionEnvironment
from taskpilot.agent.errors import ApprovalStateError, FailureKind, ToolFailure
from taskpilot.agent.parser import ToolCallRequest
from taskpilot.agent.tools import ToolRegistry
from taskpilot.agent.truncation import limit_tool_output
from taskpilot.logging import get_logger

log = get_logger(__name__)


class ToolOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ToolError:
    kind: FailureKind
    message: str


@dataclass(frozen=True)
class ToolResult:
    call_id: str
    tool_name: str
    outcome: ToolOutcome
    output: str = ""
    error: ToolError | None = None
    completed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def success(self) -> bool:
        return self.outcome == ToolOutcome.SUCCESS

    def to_dict(self) -> dict:
        return {
            "call_id": self.call_id,
            "tool_name": self.tool_name,
            "outcome": self.outcome.value,
            "output": self.output,
            "error": {"kind": self.error.kind.value, "message": self.error.message} if self.error else None,
            "completed_at": self.completed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> ToolResult:
        error = data.get("error")
        return cls(
            call_id=data["call_id"],
            tool_name=data["tool_name"],
            outcome=ToolOutcome(data["outcome"]),
            output=data.get("output", ""),
            error=ToolError(kind=FailureKind(error["kind"]), message=error["message"]) if error else None,
            completed_at=datetime.fromisoformat(data["completed_at"]),
        )


def _as_text(output: object) -> str:
    """Handlers should return text; anything else is rendered as text."""
    if output is None:
        return ""
    if isinstance(output, str):
        return output
    if isinstance(output, (dict, list, tuple)):
        return json.dumps(output, indent=2, default=str)
    return str(output)


def classify_error(exc: BaseException) -> ToolError:
    """Map a handler exception onto a typed failure."""
    if isinstance(exc, ToolFailure):
        return ToolError(kind=exc.kind, message=exc.message)
    if isinstance(exc, FileNotFoundError):
        return ToolError(kind=FailureKind.FILE_NOT_FOUND, message=str(exc))
    if isinstance(exc, PermissionError):
        return ToolError(kind=FailureKind.PERMISSION_DENIED, message=str(exc))
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return ToolError(kind=FailureKind.TIMEOUT, message=str(exc) or "tool timed out")
    return ToolError(kind=FailureKind.ERROR, message=f"{type(exc).__name__}: {exc}")


class ToolExecutor:
    """Dispatches approved calls to their registered handlers.

    Handler errors never escape: they become failed results. A call id is
    executed at most once; asking again returns the recorded result.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        env: ExecutionEnvironment,
        timeout_seconds: float | None = None,
        output_limits: dict[str, int] | None = None,
    ) -> None:
        self.registry = registry
        self.env = env
        self.timeout_seconds = timeout_seconds
        self.output_limits = output_limits or {}
        self._results: dict[str, ToolResult] = {}
        self._inflight: dict[str, asyncio.Future[ToolResult]] = {}

    @property
    def results(self) -> dict[str, ToolResult]:
        return dict(self._results)

    def result(self, call_id: str) -> ToolResult | None:
        return self._results.get(call_id)

    def restore(self, results: list[ToolResult]) -> None:
        for r in results:
            self._results.setdefault(r.call_id, r)

    async def execute(self, call: ToolCallRequest, decision: ApprovalDecision) -> ToolResult:
        if not decision.allows_execution:
            raise ApprovalStateError(f"call {call.id} is {decision.value}; only approved calls may run")

        recorded = self._results.get(call.id)
        if recorded is not None:
            return recorded
        inflight = self._inflight.get(call.id)
        if inflight is not None:
            return await asyncio.shield(inflight)

        done: asyncio.Future[ToolResult] = asyncio.get_running_loop().create_future()
        self._inflight[call.id] = done
        try:
            result = await self._run(call)
        except asyncio.CancelledError:
            result = ToolResult(
                call_id=call.id,
                tool_name=call.name,
                outcome=ToolOutcome.CANCELLED,
                error=ToolError(kind=FailureKind.CANCELLED, message="cancelled before the tool finished"),
            )
            self._record(result, done)
            log.info("Tool cancelled", call_id=call.id, tool=call.name)
            raise
        self._record(result, done)
        return result

    def _record(self, result: ToolResult, done: asyncio.Future[ToolResult]) -> None:
        self._results[result.call_id] = result
        self._inflight.pop(result.call_id, None)
        if not done.done():
            done.set_result(result)

    async def _run(self, call: ToolCallRequest) -> ToolResult:
        registered = self.registry.get(call.name)
        if registered is None:
            return ToolResult(
                call_id=call.id,
                tool_name=call.name,
                outcome=ToolOutcome.FAILED,
                error=ToolError(kind=FailureKind.UNKNOWN_TOOL, message=f"Unknown tool: {call.name}"),
            )

        log.info("Executing tool", call_id=call.id, tool=call.name)
        try:
            output = _as_text(await self._invoke(registered.handler, dict(call.params)))
            limited = limit_tool_output(output, call.name, self.output_limits)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = classify_error(exc)
            message = limit_tool_output(error.message, call.name, self.output_limits)
            log.warning("Tool failed", call_id=call.id, tool=call.name, kind=error.kind.value)
            return ToolResult(
                call_id=call.id,
                tool_name=call.name,
                outcome=ToolOutcome.FAILED,
                error=ToolError(kind=error.kind, message=message),
            )

        log.info("Tool executed", call_id=call.id, tool=call.name, output_chars=len(output))
        return ToolResult(call_id=call.id, tool_name=call.name, outcome=ToolOutcome.SUCCESS, output=limited)

    async def _invoke(self, handler, params: dict) -> object:
        if inspect.iscoroutinefunction(handler):
            coro = handler(params, self.env)
        else:
            coro = asyncio.to_thread(handler, params, self.env)
        if self.timeout_seconds is None:
            return await coro
        return await asyncio.wait_for(coro, timeout=self.timeout_seconds)
