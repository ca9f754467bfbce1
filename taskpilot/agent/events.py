"""Task events: the outbound channel to whatever UI hosts the agent."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable

from taskpilot.logging import get_logger

log = get_logger(__name__)


class EventKind(str, Enum):
    TASK_START = "task_start"
    TASK_END = "task_end"
    TASK_STATUS_CHANGED = "task_status_changed"
    ASSISTANT_TEXT_START = "assistant_text_start"
    STREAM_DELTA = "stream_delta"
    ASSISTANT_TEXT_END = "assistant_text_end"
    TOOL_CALL_PROPOSED = "tool_call_proposed"
    TOOL_CALL_START = "tool_call_start"
    TOOL_CALL_END = "tool_call_end"
    TOOL_RESULT_APPENDED = "tool_result_appended"
    TURN_RETRY = "turn_retry"
    CONTEXT_SUMMARIZED = "context_summarized"
    LOOP_DETECTION = "loop_detection"
    ERROR = "error"


@dataclass
class TaskEvent:
    task_id: str
    kind: EventKind
    data: dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Listener = Callable[[TaskEvent], None]


class EventEmitter:
    """Fans task events out to sync listeners and async subscribers.

    A failing listener is logged and skipped; it never reaches the loop.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._subscribers: set[asyncio.Queue[TaskEvent]] = set()

    def on(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def off(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def emit(self, task_id: str, kind: EventKind, **data: Any) -> TaskEvent:
        event = TaskEvent(task_id, kind, data)
        for listener in tuple(self._listeners):
            try:
                listener(event)
            except Exception:
                log.exception("Event listener failed", task_id=task_id, event=kind.value)
        for queue in self._subscribers:
            queue.put_nowait(event)
        return event

    async def stream(self) -> AsyncIterator[TaskEvent]:
        """Events emitted from now on; ends after the task's TASK_END event."""
        queue: asyncio.Queue[TaskEvent] = asyncio.Queue()
        self._subscribers.add(queue)
        try:
            while True:
                event = await queue.get()
                yield event
                if event.kind == EventKind.TASK_END:
                    return
        finally:
            self._subscribers.discard(queue)
