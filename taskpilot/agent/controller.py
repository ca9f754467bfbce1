"""Agent controller: the inbound interface a host uses to drive tasks."""

from __future__ import annotations

import asyncio
from typing import Any, Callable

from taskpilot.agent.approval import ApprovalDecision, AutoApprovePolicy
from taskpilot.agent.environment import ExecutionEnvironment, LocalExecutionEnvironment
from taskpilot.agent.errors import TaskStateError
from taskpilot.agent.events import TaskEvent
from taskpilot.agent.loop import run_task
from taskpilot.agent.store import TaskStore
from taskpilot.agent.task import Task, TaskConfig, TaskStatus
from taskpilot.agent.tools import ToolRegistry, create_default_registry
from taskpilot.logging import get_logger

log = get_logger(__name__)


class AgentController:
    """Owns a table of tasks and the auto-approve policy they start from.

    Every task is independent; the only shared state is the policy, which
    each task copies when it is created.
    """

    def __init__(
        self,
        client: Any,
        *,
        model: str,
        provider: str | None = None,
        config: TaskConfig | None = None,
        policy: AutoApprovePolicy | None = None,
        env_factory: Callable[[], ExecutionEnvironment] | None = None,
        registry_factory: Callable[[TaskConfig], ToolRegistry] | None = None,
        store: TaskStore | None = None,
        listeners: list[Callable[[TaskEvent], None]] | None = None,
    ) -> None:
        self.client = client
        self.model = model
        self.provider = provider
        self.config = config or TaskConfig()
        self.policy = policy or AutoApprovePolicy()
        self.env_factory = env_factory or LocalExecutionEnvironment
        self.registry_factory = registry_factory or (lambda cfg: create_default_registry(cfg.command_timeout_ms))
        self.store = store
        self.listeners = list(listeners or [])
        self.tasks: dict[str, Task] = {}
        self._runners: dict[str, asyncio.Task[Task]] = {}

    # -- task construction ------------------------------------------------------

    def _collaborators(self) -> dict[str, Any]:
        return {
            "client": self.client,
            "config": self.config,
            "registry": self.registry_factory(self.config),
            "env": self.env_factory(),
            "policy": self.policy,
            "store": self.store,
        }

    def _register(self, task: Task) -> Task:
        for listener in self.listeners:
            task.events.on(listener)
        self.tasks[task.id] = task
        return task

    def create_task(self, prompt: str) -> Task:
        """Build an Idle task without starting it."""
        task = Task(prompt, model=self.model, provider=self.provider, **self._collaborators())
        return self._register(task)

    def get_task(self, task_id: str) -> Task:
        task = self.tasks.get(task_id)
        if task is None:
            raise TaskStateError(f"unknown task: {task_id}")
        return task

    # -- inbound operations -----------------------------------------------------

    def start_task(self, prompt: str) -> Task:
        """Create a task and start running it on the current event loop."""
        task = self.create_task(prompt)
        self._spawn(task)
        log.info("Task created", task_id=task.id, model=self.model)
        return task

    async def run(self, prompt: str) -> Task:
        task = self.start_task(prompt)
        return await self.wait(task.id)

    async def wait(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        runner = self._runners.get(task_id)
        if runner is not None:
            try:
                await asyncio.shield(runner)
            except asyncio.CancelledError:
                if not runner.done():
                    raise
        return task

    def submit_approval_decision(
        self,
        task_id: str,
        call_id: str,
        approved: bool,
        feedback: str | None = None,
    ) -> ApprovalDecision:
        task = self.get_task(task_id)
        return task.gate.decide(call_id, approved, feedback)

    def cancel_task(self, task_id: str) -> bool:
        """Request cancellation. False if the task had already finished."""
        task = self.get_task(task_id)
        if task.status.is_terminal:
            return False
        task.cancel_requested = True
        runner = self._runners.get(task_id)
        if runner is not None and not runner.done():
            runner.cancel()
        else:
            task.set_status(TaskStatus.CANCELLED, "cancelled by user")
        log.info("Task cancellation requested", task_id=task_id)
        return True

    def update_auto_approve_policy(self, tool_name: str, allowed: bool) -> None:
        """Change the policy for tasks started from now on."""
        self.policy.set(tool_name, allowed)
        log.info("Auto-approve policy updated", tool=tool_name, allowed=allowed)

    def resume_task(self, task_id: str) -> Task:
        """Reload a stored task and continue it where it stopped."""
        if self.store is None:
            raise TaskStateError("resuming requires a task store")
        existing = self.tasks.get(task_id)
        if existing is not None and task_id in self._runners and not self._runners[task_id].done():
            raise TaskStateError(f"task {task_id} is already running")

        record = self.store.load(task_id)
        task = Task.from_record(record, **self._collaborators())
        if task.status.is_terminal:
            raise TaskStateError(f"task {task_id} already {task.status.value}")
        self._register(task)
        self._spawn(task)
        log.info("Task resumed", task_id=task_id, status=task.status.value)
        return task

    def _spawn(self, task: Task) -> None:
        runner = asyncio.get_running_loop().create_task(run_task(task), name=f"task-{task.id}")
        runner.add_done_callback(lambda r: self._on_runner_done(task, r))
        self._runners[task.id] = runner

    @staticmethod
    def _on_runner_done(task: Task, runner: asyncio.Task) -> None:
        # A runner cancelled before its first step never reaches run_task's
        # own cancellation handling.
        if runner.cancelled() and not task.status.is_terminal:
            task.set_status(TaskStatus.CANCELLED, "cancelled by user" if task.cancel_requested else "task runner was cancelled")
