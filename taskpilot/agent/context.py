"""Conversation history and the budgeted view sent with each request."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterable

from taskpilot.agent.errors import BudgetExceededError
from taskpilot.logging import get_logger

log = get_logger(__name__)


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_RESULT = "tool_result"


@dataclass(frozen=True)
class Message:
    role: Role
    content: str
    seq: int = -1
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    call_id: str | None = None
    success: bool | None = None
    partial: bool = False
    synthetic: bool = False

    def to_dict(self) -> dict:
        return {
            "seq": self.seq,
            "role": self.role.value,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "call_id": self.call_id,
            "success": self.success,
            "partial": self.partial,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Message:
        return cls(
            role=Role(data["role"]),
            content=data["content"],
            seq=data["seq"],
            created_at=datetime.fromisoformat(data["created_at"]),
            call_id=data.get("call_id"),
            success=data.get("success"),
            partial=data.get("partial", False),
        )


def estimate_tokens(text: str) -> int:
    """Rough token count: four characters per token, at least one."""
    return max(1, len(text) // 4)


_SUMMARY_SNIPPET_CHARS = 200
_SUMMARY_MAX_LINES = 40


def default_summarizer(messages: list[Message]) -> str:
    """Bounded, deterministic digest of the collapsed messages."""
    lines = [
        f"[Context summary: {len(messages)} earlier messages were condensed to fit the context window.]",
    ]
    picked = messages if len(messages) <= _SUMMARY_MAX_LINES else messages[-_SUMMARY_MAX_LINES:]
    if len(picked) < len(messages):
        lines.append(f"(first {len(messages) - len(picked)} omitted)")
    for m in picked:
        snippet = " ".join(m.content.split())
        if len(snippet) > _SUMMARY_SNIPPET_CHARS:
            snippet = snippet[:_SUMMARY_SNIPPET_CHARS] + "..."
        status = ""
        if m.role == Role.TOOL_RESULT:
            status = " ok" if m.success else " failed"
        lines.append(f"- #{m.seq} {m.role.value}{status}: {snippet}")
    return "\n".join(lines)


class ContextManager:
    """Owns one task's append-only history.

    ``view()`` is what goes to the model: the whole history while it fits the
    token budget, otherwise the system message, one synthetic summary of the
    older messages, and the most recent ``keep_recent`` messages verbatim.
    """

    def __init__(
        self,
        budget_tokens: int,
        keep_recent: int = 10,
        summarizer: Callable[[list[Message]], str] = default_summarizer,
        estimator: Callable[[str], int] = estimate_tokens,
    ) -> None:
        if keep_recent < 1:
            raise ValueError("keep_recent must be at least 1")
        self.budget_tokens = budget_tokens
        self.keep_recent = keep_recent
        self.summarizer = summarizer
        self.estimator = estimator
        self._messages: list[Message] = []

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def next_seq(self) -> int:
        return len(self._messages)

    def append(self, message: Message) -> Message:
        stored = replace(message, seq=self.next_seq, synthetic=False)
        self._messages.append(stored)
        return stored

    def restore(self, messages: Iterable[Message]) -> None:
        """Load a persisted history; sequence numbers must be 0..n-1."""
        restored = sorted(messages, key=lambda m: m.seq)
        for expected, m in enumerate(restored):
            if m.seq != expected:
                raise ValueError(f"history has a gap: expected seq {expected}, found {m.seq}")
        self._messages = restored

    def last(self, role: Role | None = None) -> Message | None:
        for m in reversed(self._messages):
            if role is None or m.role == role:
                return m
        return None

    def tokens(self, messages: Iterable[Message]) -> int:
        return sum(self.estimator(m.content) for m in messages)

    def total_tokens(self) -> int:
        return self.tokens(self._messages)

    def view(self, aggressive: bool = False) -> list[Message]:
        history = list(self._messages)
        if not aggressive and self.tokens(history) <= self.budget_tokens:
            return history

        keep = self.keep_recent
        if aggressive:
            keep = max(1, keep // 2)

        head: list[Message] = []
        body = history
        if body and body[0].role == Role.SYSTEM:
            head, body = body[:1], body[1:]

        if len(body) <= keep:
            result = head + body
        else:
            collapsed, recent = body[:-keep], body[-keep:]
            summary = Message(
                role=Role.USER,
                content=self.summarizer(collapsed),
                seq=collapsed[-1].seq,
                created_at=collapsed[-1].created_at,
                synthetic=True,
            )
            result = head + [summary] + recent
            log.info("Context summarized", collapsed=len(collapsed), kept=len(recent), aggressive=aggressive)

        used = self.tokens(result)
        if used > self.budget_tokens:
            raise BudgetExceededError(used, self.budget_tokens)
        return result
