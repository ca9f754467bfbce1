"""Stream assembly: ordered text chunks in, one growing assistant buffer out."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from taskpilot.llm.errors import StreamError, StreamOrderError


@dataclass(frozen=True)
class StreamChunk:
    index: int
    text: str


@dataclass(frozen=True)
class AssembledTurn:
    text: str
    partial: bool
    chunk_count: int


class StreamAssembler:
    """Accumulates the chunks of one in-flight assistant turn.

    ``on_delta(delta, full_text)`` is called once per accepted chunk. Chunks
    must arrive with indices 0, 1, 2, ...; anything else is a protocol failure
    and raises ``StreamOrderError`` without touching the buffer.
    """

    def __init__(self, on_delta: Callable[[str, str], None] | None = None) -> None:
        self._on_delta = on_delta
        self._parts: list[str] = []
        self._text = ""
        self._finalized: AssembledTurn | None = None

    @property
    def text(self) -> str:
        return self._text

    @property
    def chunk_count(self) -> int:
        return len(self._parts)

    @property
    def finalized(self) -> bool:
        return self._finalized is not None

    def push(self, chunk: StreamChunk) -> str:
        if self._finalized is not None:
            raise StreamError("chunk received after the turn was finalized")
        expected = len(self._parts)
        if chunk.index != expected:
            raise StreamOrderError(f"expected chunk {expected}, got chunk {chunk.index}")
        self._parts.append(chunk.text)
        self._text += chunk.text
        if self._on_delta:
            self._on_delta(chunk.text, self._text)
        return self._text

    def finalize(self, partial: bool = False) -> AssembledTurn:
        """Freeze the buffer. Calling again returns the same turn."""
        if self._finalized is None:
            self._finalized = AssembledTurn(text=self._text, partial=partial, chunk_count=len(self._parts))
        return self._finalized
