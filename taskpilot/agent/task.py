"""Task handle: status, configuration and the per-task components."""

from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from taskpilot.agent.approval import ApprovalGate, AutoApprovePolicy
from taskpilot.agent.context import ContextManager, Message
from taskpilot.agent.environment import ExecutionEnvironment, LocalExecutionEnvironment
from taskpilot.agent.errors import TaskStateError
from taskpilot.agent.events import EventEmitter, EventKind
from taskpilot.agent.executor import ToolExecutor, ToolResult
from taskpilot.agent.parser import MalformedToolCall, ToolCallParser, ToolCallRequest
from taskpilot.agent.store import TaskStore
from taskpilot.agent.tools import ToolRegistry, create_default_registry
from taskpilot.llm.types import Usage, get_model_info
from taskpilot.logging import get_logger

log = get_logger(__name__)

DEFAULT_CONTEXT_BUDGET = 100_000


class TaskStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.CANCELLED, TaskStatus.FAILED)


_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.IDLE: {TaskStatus.RUNNING, TaskStatus.CANCELLED, TaskStatus.FAILED},
    TaskStatus.RUNNING: {TaskStatus.AWAITING_APPROVAL, TaskStatus.COMPLETED, TaskStatus.CANCELLED, TaskStatus.FAILED},
    TaskStatus.AWAITING_APPROVAL: {TaskStatus.RUNNING, TaskStatus.CANCELLED, TaskStatus.FAILED},
}


@dataclass
class TaskConfig:
    max_iterations: int = 25
    max_tool_calls_per_turn: int = 1
    max_transport_retries: int = 2
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    retry_jitter: bool = True
    context_budget_tokens: int | None = None
    keep_recent_messages: int = 10
    tool_timeout_seconds: float | None = None
    command_timeout_ms: int = 600_000
    tool_output_limits: dict[str, int] = field(default_factory=dict)
    enable_loop_detection: bool = True
    loop_detection_window: int = 6
    include_file_details: bool = True
    custom_instructions: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None

    @classmethod
    def from_env(cls) -> TaskConfig:
        """Override defaults from ``TASKPILOT_*`` environment variables."""
        config = cls()
        for name, cast in (
            ("max_iterations", int),
            ("max_tool_calls_per_turn", int),
            ("max_transport_retries", int),
            ("context_budget_tokens", int),
            ("keep_recent_messages", int),
            ("tool_timeout_seconds", float),
            ("custom_instructions", str),
        ):
            raw = os.getenv(f"TASKPILOT_{name.upper()}")
            if raw:
                setattr(config, name, cast(raw))
        return config

    def context_budget_for(self, model: str) -> int:
        if self.context_budget_tokens is not None:
            return self.context_budget_tokens
        info = get_model_info(model)
        if info is None:
            return DEFAULT_CONTEXT_BUDGET
        return int(info.context_window * 0.8)


def _call_to_dict(call: ToolCallRequest | MalformedToolCall) -> dict:
    data = {"id": call.id, "name": call.name, "offset": call.offset, "raw": call.raw}
    if isinstance(call, MalformedToolCall):
        data["reason"] = call.reason
    else:
        data["params"] = dict(call.params)
    return data


def _call_from_dict(data: dict) -> ToolCallRequest | MalformedToolCall:
    if "reason" in data:
        return MalformedToolCall(id=data["id"], name=data["name"], offset=data["offset"], raw=data["raw"],
                                 reason=data["reason"])
    return ToolCallRequest(id=data["id"], name=data["name"], params=data["params"], offset=data["offset"],
                           raw=data["raw"])


class Task:
    """One user request and everything the loop needs to carry it out.

    The loop is the only writer of the task's history; UIs observe through
    ``events``.
    """

    def __init__(
        self,
        prompt: str,
        *,
        client: Any,
        model: str,
        provider: str | None = None,
        config: TaskConfig | None = None,
        registry: ToolRegistry | None = None,
        env: ExecutionEnvironment | None = None,
        policy: AutoApprovePolicy | None = None,
        store: TaskStore | None = None,
        task_id: str | None = None,
    ) -> None:
        self.id = task_id or str(uuid.uuid4())
        self.prompt = prompt
        self.client = client
        self.model = model
        self.provider = provider
        self.config = config or TaskConfig()
        self.env = env or LocalExecutionEnvironment()
        self.registry = registry or create_default_registry(self.config.command_timeout_ms)
        self.store = store
        self.events = EventEmitter()

        self.status = TaskStatus.IDLE
        self.created_at = datetime.now(timezone.utc)
        self.cancel_requested = False
        self.reason: str | None = None
        self.result: str | None = None
        self.iterations = 0
        self.total_usage = Usage()

        self.context = ContextManager(
            budget_tokens=self.config.context_budget_for(model),
            keep_recent=self.config.keep_recent_messages,
        )
        # Policy changes made after the task starts do not affect it.
        self.gate = ApprovalGate((policy or AutoApprovePolicy()).snapshot())
        self.executor = ToolExecutor(
            self.registry,
            self.env,
            timeout_seconds=self.config.tool_timeout_seconds,
            output_limits=self.config.tool_output_limits,
        )
        self.parser = ToolCallParser(self.registry.specs(), self.config.max_tool_calls_per_turn)
        # Actionable calls of the latest assistant turn not yet dispatched.
        self.queued_calls: list[ToolCallRequest | MalformedToolCall] = []
        self.call_signatures: list[str] = []

    # -- events & status --------------------------------------------------------

    def emit(self, kind: EventKind, **data: Any) -> None:
        self.events.emit(self.id, kind, **data)

    def set_status(self, status: TaskStatus, reason: str | None = None) -> None:
        if status == self.status:
            return
        if status not in _TRANSITIONS.get(self.status, set()):
            raise TaskStateError(f"task {self.id} cannot go from {self.status.value} to {status.value}")
        previous = self.status
        self.status = status
        if reason is not None:
            self.reason = reason
        log.info("Task status changed", task_id=self.id, previous=previous.value, status=status.value, reason=reason)
        self.emit(EventKind.TASK_STATUS_CHANGED, status=status.value, previous=previous.value, reason=reason)
        self.persist()

    # -- history ----------------------------------------------------------------

    def append(self, message: Message) -> Message:
        stored = self.context.append(message)
        self.persist()
        return stored

    # -- persistence ------------------------------------------------------------

    def persist(self) -> None:
        if self.store is None:
            return
        try:
            self.store.save(self.to_record())
        except OSError:
            log.exception("Failed to persist task", task_id=self.id)

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "prompt": self.prompt,
            "status": self.status.value,
            "reason": self.reason,
            "result": self.result,
            "created_at": self.created_at.isoformat(),
            "model": self.model,
            "provider": self.provider,
            "iterations": self.iterations,
            "messages": [m.to_dict() for m in self.context.messages],
            "queued_calls": [_call_to_dict(c) for c in self.queued_calls],
            "approvals": self.gate.snapshot(),
            "tool_results": [r.to_dict() for r in self.executor.results.values()],
        }

    @classmethod
    def from_record(cls, record: dict, **kwargs: Any) -> Task:
        """Rebuild a task from its stored record.

        ``kwargs`` supply the live collaborators (client, registry, env,
        policy, store, config). A task stored while awaiting approval comes
        back with that call pending again.
        """
        kwargs.setdefault("model", record["model"])
        kwargs.setdefault("provider", record.get("provider"))
        task = cls(record.get("prompt", ""), task_id=record["id"], **kwargs)
        task.status = TaskStatus(record["status"])
        task.reason = record.get("reason")
        task.result = record.get("result")
        task.created_at = datetime.fromisoformat(record["created_at"])
        task.iterations = record.get("iterations", 0)
        task.context.restore(Message.from_dict(m) for m in record.get("messages", []))
        task.executor.restore([ToolResult.from_dict(r) for r in record.get("tool_results", [])])
        task.queued_calls = [_call_from_dict(c) for c in record.get("queued_calls", [])]
        task.gate.restore(
            record.get("approvals", {}),
            [c for c in task.queued_calls if isinstance(c, ToolCallRequest)],
        )

        if task.status == TaskStatus.AWAITING_APPROVAL:
            first = task.queued_calls[0] if task.queued_calls else None
            if not isinstance(first, ToolCallRequest):
                raise TaskStateError(f"task {task.id} is awaiting approval but has no pending call")
            task.gate.restore_pending(first)
        return task
