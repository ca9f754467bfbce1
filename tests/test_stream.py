"""Tests for the stream assembler."""

import pytest

from taskpilot.agent.stream import StreamAssembler, StreamChunk
from taskpilot.llm.errors import StreamError, StreamOrderError


def test_chunks_concatenate_in_order():
    seen = []
    asm = StreamAssembler(on_delta=lambda delta, text: seen.append((delta, text)))
    asm.push(StreamChunk(0, "Hel"))
    asm.push(StreamChunk(1, "lo, "))
    asm.push(StreamChunk(2, "world"))
    assert asm.text == "Hello, world"
    assert asm.chunk_count == 3
    assert seen == [("Hel", "Hel"), ("lo, ", "Hello, "), ("world", "Hello, world")]


def test_out_of_order_chunk_rejected_without_touching_buffer():
    asm = StreamAssembler()
    asm.push(StreamChunk(0, "a"))
    with pytest.raises(StreamOrderError, match="expected chunk 1, got chunk 2"):
        asm.push(StreamChunk(2, "c"))
    assert asm.text == "a"
    assert asm.chunk_count == 1


def test_duplicate_chunk_rejected():
    asm = StreamAssembler()
    asm.push(StreamChunk(0, "a"))
    with pytest.raises(StreamOrderError):
        asm.push(StreamChunk(0, "a"))


def test_order_error_is_not_retryable():
    assert StreamError.retryable is True
    assert StreamOrderError.retryable is False


def test_empty_chunks_still_count():
    asm = StreamAssembler()
    asm.push(StreamChunk(0, ""))
    asm.push(StreamChunk(1, "x"))
    assert asm.text == "x"
    assert asm.chunk_count == 2


def test_finalize_is_idempotent():
    asm = StreamAssembler()
    asm.push(StreamChunk(0, "partial answ"))
    first = asm.finalize(partial=True)
    second = asm.finalize()
    assert first is second
    assert first.partial is True
    assert first.text == "partial answ"
    assert asm.finalized


def test_push_after_finalize_raises():
    asm = StreamAssembler()
    asm.finalize()
    with pytest.raises(StreamError):
        asm.push(StreamChunk(0, "late"))


def test_finalize_with_no_chunks():
    turn = StreamAssembler().finalize()
    assert turn.text == ""
    assert turn.chunk_count == 0
    assert turn.partial is False
