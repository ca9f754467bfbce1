"""taskpilot CLI – run a coding task with console approvals, or resume a stored one."""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
import threading
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from taskpilot.agent.approval import ApprovalDecision, AutoApprovePolicy
from taskpilot.agent.controller import AgentController
from taskpilot.agent.environment import LocalExecutionEnvironment
from taskpilot.agent.events import EventKind, TaskEvent
from taskpilot.agent.store import TaskStore
from taskpilot.agent.task import Task, TaskConfig, TaskStatus
from taskpilot.config import Settings
from taskpilot.llm.client import Client
from taskpilot.llm.errors import ConfigurationError
from taskpilot.logging import configure_logging

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Approvers
# ---------------------------------------------------------------------------

@dataclass
class Verdict:
    approved: bool
    feedback: str | None = None


class ConsoleApprover:
    """Asks on the terminal. Runs in a daemon thread so the loop keeps going."""

    def ask(self, tool_name: str, params: dict) -> Verdict:
        print(f"\n[?] The agent wants to use {tool_name}:")
        for key, value in params.items():
            text = str(value)
            if "\n" in text:
                text = "\n      " + text.replace("\n", "\n      ")
            print(f"    {key}: {text}")

        if tool_name == "ask_followup_question":
            answer = input("Answer (empty to decline): ").strip()
            return Verdict(approved=bool(answer), feedback=answer or None)

        response = input("Approve? [y/N, or type feedback to deny with it]: ").strip()
        if response.lower() in ("y", "yes"):
            return Verdict(approved=True)
        if response.lower() in ("", "n", "no"):
            return Verdict(approved=False)
        return Verdict(approved=False, feedback=response)


class AutoApprover:
    """Approves everything – for unattended runs."""

    def ask(self, tool_name: str, params: dict) -> Verdict:
        return Verdict(approved=True)


# ---------------------------------------------------------------------------
# Blocking prompts
# ---------------------------------------------------------------------------

async def run_in_daemon_thread(func: Callable[..., T], *args: Any) -> T:
    """Run a blocking call (a terminal prompt) without holding up shutdown.

    Default-executor threads are joined at exit, so a prompt blocked in
    ``input()`` there would keep the program alive after Ctrl-C. A daemon
    thread is abandoned instead.
    """
    loop = asyncio.get_running_loop()
    future: asyncio.Future = loop.create_future()

    def settle(result: Any, error: BaseException | None) -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)

    def target() -> None:
        try:
            outcome = (func(*args), None)
        except BaseException as exc:
            outcome = (None, exc)
        try:
            loop.call_soon_threadsafe(settle, *outcome)
        except RuntimeError:
            # Loop already closed; nobody is waiting for the answer.
            pass

    threading.Thread(target=target, name="taskpilot-prompt", daemon=True).start()
    return await future


# ---------------------------------------------------------------------------
# Console rendering
# ---------------------------------------------------------------------------

class ConsoleRenderer:
    def __init__(self, controller: AgentController, approver: ConsoleApprover | AutoApprover) -> None:
        self.controller = controller
        self.approver = approver
        self._pending: set[asyncio.Task] = set()

    def __call__(self, event: TaskEvent) -> None:
        kind = event.kind
        if kind == EventKind.STREAM_DELTA:
            print(event.data.get("delta", ""), end="", flush=True)
        elif kind == EventKind.ASSISTANT_TEXT_END:
            print()
            if event.data.get("partial"):
                print("  [!] response was cut off")
        elif kind == EventKind.TOOL_CALL_PROPOSED:
            if event.data.get("decision") == ApprovalDecision.PENDING.value:
                self._ask_later(event)
        elif kind == EventKind.TOOL_CALL_START:
            print(f"  -> {event.data.get('tool_name', '?')} ...", end="", flush=True)
        elif kind == EventKind.TOOL_CALL_END:
            if event.data.get("error"):
                print(f" error: {event.data['error'].splitlines()[0]}")
            else:
                print(" done.")
        elif kind == EventKind.TURN_RETRY:
            print(f"\n  [!] transport error, retrying (attempt {event.data.get('attempt')})")
        elif kind == EventKind.LOOP_DETECTION:
            print(f"\n  [!] {event.data.get('message', 'Loop detected')}")

    def _ask_later(self, event: TaskEvent) -> None:
        job = asyncio.get_running_loop().create_task(self._ask(event))
        self._pending.add(job)
        job.add_done_callback(self._pending.discard)

    async def _ask(self, event: TaskEvent) -> None:
        verdict = await run_in_daemon_thread(self.approver.ask, event.data["tool_name"], event.data.get("params", {}))
        task = self.controller.get_task(event.task_id)
        if task.status.is_terminal or task.gate.decision(event.data["call_id"]) != ApprovalDecision.PENDING:
            return
        self.controller.submit_approval_decision(event.task_id, event.data["call_id"], verdict.approved, verdict.feedback)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _build_controller(args: argparse.Namespace, settings: Settings) -> AgentController:
    client = Client.from_env(default_provider=args.provider or settings.provider)
    config = TaskConfig.from_env()
    if args.max_iterations:
        config.max_iterations = args.max_iterations
    if args.instructions:
        config.custom_instructions = args.instructions
    auto = list(settings.auto_approve)
    if args.auto_approve:
        auto += [name.strip() for name in args.auto_approve.split(",") if name.strip()]
    working_dir = args.cwd or settings.working_dir
    return AgentController(
        client,
        model=args.model or settings.model,
        provider=args.provider or settings.provider,
        config=config,
        policy=AutoApprovePolicy.from_names(auto),
        env_factory=lambda: LocalExecutionEnvironment(working_dir),
        store=TaskStore(args.store or settings.store_dir),
    )


async def _drive(controller: AgentController, approver, start) -> Task:
    renderer = ConsoleRenderer(controller, approver)
    controller.listeners.append(renderer)
    task = start()

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, controller.cancel_task, task.id)
    except (NotImplementedError, RuntimeError):
        pass
    try:
        return await controller.wait(task.id)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
        await controller.client.close()


def _report(task: Task) -> int:
    print(f"\nTask {task.id}: {task.status.value}")
    if task.reason:
        print(f"  reason: {task.reason}")
    if task.status == TaskStatus.COMPLETED and task.result:
        print(f"\n{task.result}")
    return 0 if task.status == TaskStatus.COMPLETED else 1


def _run(args: argparse.Namespace, settings: Settings) -> int:
    prompt = args.prompt or input("Task: ").strip()
    if not prompt:
        print("Error: empty task", file=sys.stderr)
        return 1
    controller = _build_controller(args, settings)
    approver = AutoApprover() if args.yes else ConsoleApprover()
    task = asyncio.run(_drive(controller, approver, lambda: controller.start_task(prompt)))
    return _report(task)


def _resume(args: argparse.Namespace, settings: Settings) -> int:
    controller = _build_controller(args, settings)
    approver = AutoApprover() if args.yes else ConsoleApprover()
    task = asyncio.run(_drive(controller, approver, lambda: controller.resume_task(args.task_id)))
    return _report(task)


def _list(args: argparse.Namespace, settings: Settings) -> int:
    store = TaskStore(args.store or settings.store_dir)
    for task_id in store.list_ids():
        record = store.load(task_id)
        reason = f" ({record['reason']})" if record.get("reason") else ""
        print(f"{task_id}  {record['status']}{reason}  {record.get('prompt', '')[:60]}")
    return 0


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--model", "-m", help="Model ID (default: TASKPILOT_MODEL or claude-sonnet-4-5-20250929)")
    p.add_argument("--provider", help="Provider: anthropic or openai")
    p.add_argument("--auto-approve", help="Comma-separated tool names to run without asking")
    p.add_argument("--yes", "-y", action="store_true", help="Approve every tool call")
    p.add_argument("--max-iterations", type=int, default=0, help="Max model round-trips (0 = default)")
    p.add_argument("--store", help="Directory for task records")
    p.add_argument("--cwd", help="Working directory for tools")
    p.add_argument("--instructions", help="Extra instructions added to the system prompt")


def main() -> None:
    parser = argparse.ArgumentParser(prog="taskpilot", description="Autonomous coding agent with human approval of every action")
    parser.add_argument("--log-level", help="Log level (default: TASKPILOT_LOG_LEVEL or info)")
    parser.add_argument("--log-format", choices=["console", "json"], help="Log format")
    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="Run a new task")
    run.add_argument("prompt", nargs="?", help="The task; asked interactively when omitted")
    _add_common(run)
    run.set_defaults(func=_run)

    resume = sub.add_parser("resume", help="Resume a stored task")
    resume.add_argument("task_id")
    _add_common(resume)
    resume.set_defaults(func=_resume)

    ls = sub.add_parser("list", aliases=["ls"], help="List stored tasks")
    ls.add_argument("--store", help="Directory for task records")
    ls.set_defaults(func=_list)

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(0)

    settings = Settings.from_env()
    configure_logging(args.log_level or settings.log_level, args.log_format or settings.log_format)

    try:
        sys.exit(args.func(args, settings))
    except ConfigurationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        print("Set ANTHROPIC_API_KEY or OPENAI_API_KEY in your environment.", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
