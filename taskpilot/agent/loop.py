"""Core agent loop: request, stream, parse, approve, execute, repeat."""

from __future__ import annotations

import asyncio
import json

import structlog

from taskpilot.agent import prompts
from taskpilot.agent.approval import ApprovalDecision
from taskpilot.agent.context import Message, Role
from taskpilot.agent.errors import BudgetExceededError, LoopCeilingExceeded, TaskStateError
from taskpilot.agent.events import EventKind
from taskpilot.agent.executor import ToolOutcome, ToolResult
from taskpilot.agent.parser import MalformedToolCall, Segment, ToolCallRequest, tool_calls
from taskpilot.agent.stream import StreamAssembler, StreamChunk
from taskpilot.agent.task import Task, TaskStatus
from taskpilot.llm.errors import ContextLengthError, SDKError, StreamError
from taskpilot.llm.retry import RetriesExhausted, RetryPolicy, retry_call
from taskpilot.llm.types import Message as LLMMessage
from taskpilot.llm.types import Request, StreamEventType
from taskpilot.logging import get_logger

log = get_logger(__name__)

COMPLETION_TOOL = "attempt_completion"

_LLM_ROLES = {
    Role.SYSTEM: LLMMessage.system,
    Role.USER: LLMMessage.user,
    Role.ASSISTANT: LLMMessage.assistant,
    # Tool results go back to the model as user text.
    Role.TOOL_RESULT: LLMMessage.user,
}


# ---------------------------------------------------------------------------
# Conversation setup
# ---------------------------------------------------------------------------

def open_conversation(task: Task) -> None:
    """Seed an empty history with the system prompt and the framed task."""
    if len(task.context):
        return
    system = prompts.build_system_prompt(
        task.registry.specs(), task.env, task.config.max_tool_calls_per_turn, task.config.custom_instructions
    )
    details = prompts.environment_details(task.env, include_files=task.config.include_file_details)
    task.append(Message(role=Role.SYSTEM, content=system))
    task.append(Message(role=Role.USER, content=prompts.format_task(task.prompt, details, task.env)))


def _to_llm_messages(view: list[Message]) -> list[LLMMessage]:
    return [_LLM_ROLES[m.role](m.content) for m in view]


def _context_view(task: Task, aggressive: bool = False) -> list[Message]:
    try:
        view = task.context.view(aggressive=aggressive)
    except BudgetExceededError as exc:
        if aggressive:
            raise
        log.warning("Context over budget, summarizing aggressively", task_id=task.id, tokens=exc.tokens)
        view = task.context.view(aggressive=True)
    if any(m.synthetic for m in view):
        task.emit(EventKind.CONTEXT_SUMMARIZED, kept=len(view), total=len(task.context))
    return view


# ---------------------------------------------------------------------------
# One model turn
# ---------------------------------------------------------------------------

def _build_request(task: Task, view: list[Message]) -> Request:
    return Request(
        model=task.model,
        messages=_to_llm_messages(view),
        provider=task.provider,
        temperature=task.config.temperature,
        max_tokens=task.config.max_tokens,
        metadata={"task_id": task.id},
    )


def _retry_policy(task: Task) -> RetryPolicy:
    def on_retry(exc: SDKError, attempt: int, delay: float) -> None:
        log.warning("Transport error, retrying turn", task_id=task.id, attempt=attempt + 1,
                    delay=round(delay, 2), error=str(exc))
        task.emit(EventKind.TURN_RETRY, attempt=attempt + 1, delay=delay, error=str(exc))

    return RetryPolicy(
        max_retries=task.config.max_transport_retries,
        base_delay=task.config.retry_base_delay,
        max_delay=task.config.retry_max_delay,
        jitter=task.config.retry_jitter,
        on_retry=on_retry,
    )


async def _stream_turn(task: Task, request: Request) -> tuple[str, list[Segment]]:
    """Stream one response, feeding the assembler and the parser as text arrives."""
    assembler = StreamAssembler(
        on_delta=lambda delta, text: task.emit(EventKind.STREAM_DELTA, delta=delta, text=text)
    )
    task.parser.reset()
    segments: list[Segment] = []
    task.emit(EventKind.ASSISTANT_TEXT_START)

    try:
        async for event in task.client.stream(request):
            if event.type == StreamEventType.TEXT_DELTA:
                delta = event.delta or ""
                index = event.sequence if event.sequence is not None else assembler.chunk_count
                assembler.push(StreamChunk(index=index, text=delta))
                segments.extend(task.parser.feed(delta))
            elif event.type == StreamEventType.FINISH:
                if event.usage is not None:
                    task.total_usage = task.total_usage + event.usage
                break
            elif event.type == StreamEventType.ERROR:
                raise StreamError(f"stream error: {event.error}")
        else:
            raise StreamError("stream ended without an end-of-turn marker")
    except SDKError:
        turn = assembler.finalize(partial=True)
        task.emit(EventKind.ASSISTANT_TEXT_END, text=turn.text, partial=True)
        raise
    except asyncio.CancelledError:
        turn = assembler.finalize(partial=True)
        task.emit(EventKind.ASSISTANT_TEXT_END, text=turn.text, partial=True)
        if task.cancel_requested:
            content = f"{turn.text}\n\n{prompts.INTERRUPTED_MARKER}" if turn.text else prompts.INTERRUPTED_MARKER
            task.append(Message(role=Role.ASSISTANT, content=content, partial=True))
        raise

    turn = assembler.finalize()
    segments.extend(task.parser.finish())
    task.emit(EventKind.ASSISTANT_TEXT_END, text=turn.text, partial=False)
    return turn.text, segments


async def _request_turn(task: Task) -> tuple[str, list[Segment]]:
    view = _context_view(task)
    policy = _retry_policy(task)
    request = _build_request(task, view)
    log.info("Requesting model turn", task_id=task.id, iteration=task.iterations, messages=len(view))
    try:
        return await retry_call(lambda: _stream_turn(task, request), policy)
    except ContextLengthError:
        log.warning("Provider rejected context length, summarizing", task_id=task.id)

    view = _context_view(task, aggressive=True)
    request = _build_request(task, view)
    try:
        return await retry_call(lambda: _stream_turn(task, request), policy)
    except ContextLengthError as exc:
        raise BudgetExceededError(task.context.tokens(view), task.context.budget_tokens) from exc


# ---------------------------------------------------------------------------
# Tool dispatch
# ---------------------------------------------------------------------------

def _append_tool_message(task: Task, call: ToolCallRequest | MalformedToolCall, body: str, success: bool) -> None:
    params = call.params if isinstance(call, ToolCallRequest) else {}
    content = f"{prompts.tool_result_header(call.name, params)}\n{body}"
    task.append(Message(role=Role.TOOL_RESULT, content=content, call_id=call.id, success=success))
    summary = body if len(body) <= 200 else body[:200] + "..."
    task.emit(EventKind.TOOL_RESULT_APPENDED, call_id=call.id, tool_name=call.name, success=success, summary=summary)


def _result_body(task: Task, call: ToolCallRequest, result: ToolResult) -> str:
    feedback = task.gate.feedback(call.id)
    spec = task.registry.get(call.name)
    if result.outcome == ToolOutcome.CANCELLED:
        body = prompts.tool_cancelled()
    elif not result.success:
        body = prompts.tool_error(result.error.message if result.error else None)
    elif spec is not None and spec.spec.interactive:
        return prompts.format_answer(feedback)
    else:
        body = result.output
    if feedback:
        body += "\n\n" + prompts.tool_approved_with_feedback(feedback)
    return body


async def _execute(task: Task, call: ToolCallRequest, decision: ApprovalDecision) -> None:
    task.emit(EventKind.TOOL_CALL_START, call_id=call.id, tool_name=call.name)
    try:
        result = await task.executor.execute(call, decision)
    except asyncio.CancelledError:
        result = task.executor.result(call.id)
        if result is not None:
            task.emit(EventKind.TOOL_CALL_END, call_id=call.id, outcome=result.outcome.value)
            _append_tool_message(task, call, _result_body(task, call, result), success=False)
        raise
    task.emit(
        EventKind.TOOL_CALL_END,
        call_id=call.id,
        outcome=result.outcome.value,
        error=result.error.message if result.error else None,
    )
    if any(m.role == Role.TOOL_RESULT and m.call_id == call.id for m in task.context.messages):
        # Already reported before the task was stored and resumed.
        return
    _append_tool_message(task, call, _result_body(task, call, result), success=result.success)


def _signature(call: ToolCallRequest) -> str:
    return f"{call.name}({json.dumps(call.params, sort_keys=True)})"


async def _dispatch_calls(task: Task) -> bool:
    """Work through the queued calls in order. True when the task has finished."""
    while task.queued_calls:
        call = task.queued_calls[0]

        if isinstance(call, MalformedToolCall):
            log.info("Malformed tool call", task_id=task.id, tool=call.name)
            _append_tool_message(task, call, prompts.tool_error(call.reason), success=False)
            task.queued_calls.pop(0)
            continue

        if call.name == COMPLETION_TOOL:
            task.result = str(call.params.get("result", ""))
            task.queued_calls = []
            task.emit(EventKind.TOOL_CALL_PROPOSED, call_id=call.id, tool_name=call.name,
                      params=dict(call.params), decision=ApprovalDecision.AUTO_APPROVED.value)
            task.set_status(TaskStatus.COMPLETED)
            return True

        decision = task.gate.propose(call)
        task.emit(EventKind.TOOL_CALL_PROPOSED, call_id=call.id, tool_name=call.name,
                  params=dict(call.params), decision=decision.value)
        if decision == ApprovalDecision.PENDING:
            task.set_status(TaskStatus.AWAITING_APPROVAL)
            decision = await task.gate.wait(call.id)
        if task.status == TaskStatus.AWAITING_APPROVAL:
            task.set_status(TaskStatus.RUNNING)

        task.call_signatures.append(_signature(call))

        if decision == ApprovalDecision.DENIED:
            feedback = task.gate.feedback(call.id)
            body = prompts.tool_denied_with_feedback(feedback) if feedback else prompts.tool_denied()
            skipped, task.queued_calls = task.queued_calls[1:], []
            _append_tool_message(task, call, body, success=False)
            for other in skipped:
                _append_tool_message(task, other, prompts.tool_skipped_after_denial(other.name), success=False)
            return False

        await _execute(task, call, decision)
        task.queued_calls.pop(0)
        task.persist()
    return False


# ---------------------------------------------------------------------------
# Loop detection
# ---------------------------------------------------------------------------

def _detect_loop(signatures: list[str], window: int) -> bool:
    if window < 2 or len(signatures) < window:
        return False
    sigs = signatures[-window:]
    for pattern_len in (1, 2, 3):
        if window % pattern_len != 0:
            continue
        pattern = sigs[:pattern_len]
        if all(sigs[i:i + pattern_len] == pattern for i in range(pattern_len, window, pattern_len)):
            return True
    return False


def _check_for_loop(task: Task) -> None:
    window = task.config.loop_detection_window
    if not task.config.enable_loop_detection or not _detect_loop(task.call_signatures, window):
        return
    warning = prompts.loop_detected_warning(window)
    task.append(Message(role=Role.USER, content=warning))
    task.call_signatures.clear()
    log.warning("Loop detected", task_id=task.id, window=window)
    task.emit(EventKind.LOOP_DETECTION, message=warning)


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------

async def _run(task: Task) -> None:
    while True:
        if task.queued_calls:
            if await _dispatch_calls(task):
                return
            _check_for_loop(task)

        if task.iterations >= task.config.max_iterations:
            raise LoopCeilingExceeded(task.iterations)
        task.iterations += 1

        text, segments = await _request_turn(task)
        task.append(Message(role=Role.ASSISTANT, content=text))

        calls = tool_calls(segments)
        if not calls:
            # Pure narration ends the task.
            task.result = text
            task.set_status(TaskStatus.COMPLETED)
            return
        task.queued_calls = calls
        task.persist()


def _fail(task: Task, reason: str) -> None:
    task.emit(EventKind.ERROR, reason=reason)
    task.set_status(TaskStatus.FAILED, reason)


async def run_task(task: Task) -> Task:
    """Drive a task until it completes, fails or is cancelled."""
    if task.status.is_terminal:
        raise TaskStateError(f"task {task.id} already {task.status.value}")

    with structlog.contextvars.bound_contextvars(task_id=task.id):
        if task.status == TaskStatus.IDLE:
            open_conversation(task)
            task.set_status(TaskStatus.RUNNING)
        task.emit(EventKind.TASK_START, prompt=task.prompt)
        log.info("Task started", model=task.model, status=task.status.value)

        try:
            await _run(task)
        except asyncio.CancelledError:
            pending = task.gate.pending_call_id
            if pending is not None:
                task.gate.force_deny(pending)
            task.queued_calls = []
            if not task.cancel_requested:
                task.set_status(TaskStatus.CANCELLED, "task runner was cancelled")
                raise
            task.set_status(TaskStatus.CANCELLED, "cancelled by user")
        except LoopCeilingExceeded as exc:
            _fail(task, f"loop ceiling exceeded: {exc}")
        except RetriesExhausted as exc:
            _fail(task, f"transport exhausted: {exc.last_error.message}")
        except BudgetExceededError as exc:
            _fail(task, f"context budget exceeded: {exc}")
        except SDKError as exc:
            _fail(task, f"transport failed: {exc.message}")
        except Exception as exc:
            log.exception("Task failed with an internal error")
            _fail(task, f"internal error: {type(exc).__name__}: {exc}")
        finally:
            log.info("Task finished", status=task.status.value, reason=task.reason,
                     iterations=task.iterations, output_tokens=task.total_usage.output_tokens)
            task.emit(EventKind.TASK_END, status=task.status.value, reason=task.reason, result=task.result)
    return task
