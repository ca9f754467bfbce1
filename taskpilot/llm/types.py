"""Transport-level LLM types: requests, streaming events, model catalog."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Messages and requests
# ---------------------------------------------------------------------------

class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class Message:
    """A single text message as the provider sees it.

    Tool calls travel inside assistant text as markup, and tool results travel
    back as user text, so a message is always plain text on the wire.
    """

    role: Role
    text: str

    @classmethod
    def system(cls, text: str) -> Message:
        return cls(Role.SYSTEM, text)

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(Role.USER, text)

    @classmethod
    def assistant(cls, text: str) -> Message:
        return cls(Role.ASSISTANT, text)


@dataclass
class Request:
    model: str
    messages: list[Message]
    # None lets the client pick by model catalog, then its default.
    provider: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    stop_sequences: list[str] | None = None
    metadata: dict[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

def _plus(a: int | None, b: int | None) -> int | None:
    return None if a is None and b is None else (a or 0) + (b or 0)


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    # Only reported by providers with prompt caching.
    cache_read_tokens: int | None = None
    cache_write_tokens: int | None = None

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            self.input_tokens + other.input_tokens,
            self.output_tokens + other.output_tokens,
            self.total_tokens + other.total_tokens,
            _plus(self.cache_read_tokens, other.cache_read_tokens),
            _plus(self.cache_write_tokens, other.cache_write_tokens),
        )


@dataclass
class FinishReason:
    reason: str  # stop, length, content_filter or other
    raw: str | None = None


class StreamEventType(str, Enum):
    STREAM_START = "stream_start"
    TEXT_DELTA = "text_delta"
    FINISH = "finish"
    ERROR = "error"


@dataclass
class StreamEvent:
    type: StreamEventType
    delta: str | None = None
    # Position of a TEXT_DELTA within its response, when the provider numbers
    # chunks. None means "in arrival order".
    sequence: int | None = None
    finish_reason: FinishReason | None = None
    usage: Usage | None = None
    error: Any | None = None


# ---------------------------------------------------------------------------
# Model catalog
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ModelInfo:
    id: str
    provider: str
    context_window: int
    aliases: tuple[str, ...] = ()

    def matches(self, model_id: str) -> bool:
        return model_id == self.id or model_id in self.aliases


MODELS: tuple[ModelInfo, ...] = (
    ModelInfo("claude-opus-4-6", "anthropic", 200_000),
    ModelInfo("claude-sonnet-4-5-20250929", "anthropic", 200_000, aliases=("claude-sonnet-4-5",)),
    ModelInfo("claude-3-5-haiku-20241022", "anthropic", 200_000, aliases=("claude-3-5-haiku",)),
    ModelInfo("gpt-4o", "openai", 128_000),
    ModelInfo("gpt-4o-mini", "openai", 128_000),
)


def get_model_info(model_id: str) -> ModelInfo | None:
    for info in MODELS:
        if info.matches(model_id):
            return info
    return None


def list_models(provider: str | None = None) -> list[ModelInfo]:
    return [info for info in MODELS if provider in (None, info.provider)]
