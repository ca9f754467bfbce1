"""Test doubles shared by the agent tests."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from taskpilot.llm.types import StreamEvent, StreamEventType, Usage


@dataclass
class Broken:
    """Stream these chunks, then fail with ``error``."""

    chunks: list[str]
    error: Exception


@dataclass
class Hang:
    """Stream these chunks, then wait until cancelled."""

    chunks: list[str] = field(default_factory=list)


def chunked(text: str, size: int = 7) -> list[str]:
    return [text[i:i + size] for i in range(0, len(text), size)] or [""]


class ScriptedClient:
    """Plays back one scripted response per request.

    A response is a string (streamed in small chunks), a list of chunks, an
    exception (raised before any text), ``Broken`` or ``Hang``.
    """

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []
        self.streaming = asyncio.Event()
        self.closed = False

    async def stream(self, request):
        self.requests.append(request)
        if not self.responses:
            raise AssertionError("unexpected model request")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item

        if isinstance(item, Broken):
            chunks, tail = item.chunks, item.error
        elif isinstance(item, Hang):
            chunks, tail = item.chunks, None
        elif isinstance(item, str):
            chunks, tail = chunked(item), None
        else:
            chunks, tail = list(item), None

        yield StreamEvent(type=StreamEventType.STREAM_START)
        for i, chunk in enumerate(chunks):
            yield StreamEvent(type=StreamEventType.TEXT_DELTA, delta=chunk, sequence=i)

        if isinstance(item, Hang):
            self.streaming.set()
            await asyncio.Event().wait()
        if tail is not None:
            raise tail
        yield StreamEvent(type=StreamEventType.FINISH, usage=Usage(input_tokens=10, output_tokens=5, total_tokens=15))

    async def close(self):
        self.closed = True


def write_file_call(path: str, content: str) -> str:
    return f"<write_file>\n<path>{path}</path>\n<content>\n{content}\n</content>\n</write_file>"


def completion(result: str = "Done.") -> str:
    return f"All set.\n<attempt_completion>\n<result>\n{result}\n</result>\n</attempt_completion>"


async def eventually(predicate, timeout: float = 2.0) -> None:
    """Yield to the event loop until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)
