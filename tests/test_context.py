"""Tests for the context manager."""

from datetime import datetime, timezone

import pytest

from taskpilot.agent.context import ContextManager, Message, Role, default_summarizer, estimate_tokens
from taskpilot.agent.errors import BudgetExceededError


def _context(budget=50, keep_recent=3, turns=10):
    ctx = ContextManager(
        budget_tokens=budget,
        keep_recent=keep_recent,
        summarizer=lambda msgs: f"S{len(msgs)}",
        estimator=len,
    )
    ctx.append(Message(role=Role.SYSTEM, content="sys"))
    for i in range(turns):
        role = Role.ASSISTANT if i % 2 else Role.USER
        ctx.append(Message(role=role, content=f"{i}" * 10))
    return ctx


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

def test_append_assigns_sequence_numbers():
    ctx = _context(turns=3)
    assert [m.seq for m in ctx.messages] == [0, 1, 2, 3]
    assert ctx.next_seq == 4
    assert len(ctx) == 4


def test_append_ignores_caller_seq():
    ctx = ContextManager(budget_tokens=100)
    stored = ctx.append(Message(role=Role.USER, content="hi", seq=42))
    assert stored.seq == 0


def test_last_by_role():
    ctx = _context(turns=4)
    assert ctx.last().content == "3" * 10
    assert ctx.last(Role.USER).content == "2" * 10
    assert ctx.last(Role.TOOL_RESULT) is None


def test_restore_requires_contiguous_history():
    ctx = ContextManager(budget_tokens=100)
    now = datetime.now(timezone.utc)
    with pytest.raises(ValueError, match="gap"):
        ctx.restore([
            Message(role=Role.USER, content="a", seq=0, created_at=now),
            Message(role=Role.USER, content="b", seq=2, created_at=now),
        ])


def test_message_dict_round_trip():
    msg = Message(role=Role.TOOL_RESULT, content="ok", seq=3, call_id="call_1", success=True)
    assert Message.from_dict(msg.to_dict()) == msg


def test_keep_recent_must_be_positive():
    with pytest.raises(ValueError):
        ContextManager(budget_tokens=10, keep_recent=0)


def test_estimate_tokens():
    assert estimate_tokens("") == 1
    assert estimate_tokens("x" * 400) == 100


# ---------------------------------------------------------------------------
# Budgeted view
# ---------------------------------------------------------------------------

def test_view_is_whole_history_within_budget():
    ctx = _context(budget=1_000)
    assert ctx.view() == list(ctx.messages)


def test_view_summarizes_older_messages():
    ctx = _context()
    view = ctx.view()
    assert [m.content for m in view] == ["sys", "S7", "7" * 10, "8" * 10, "9" * 10]
    summary = view[1]
    assert summary.synthetic
    assert summary.role == Role.USER
    assert summary.seq == 7
    # The stored history is untouched.
    assert len(ctx) == 11
    assert not any(m.synthetic for m in ctx.messages)


def test_view_is_deterministic():
    ctx = _context()
    assert ctx.view() == ctx.view()


def test_aggressive_view_keeps_fewer_messages():
    ctx = _context()
    view = ctx.view(aggressive=True)
    assert [m.content for m in view] == ["sys", "S9", "9" * 10]


def test_budget_exceeded_after_summarizing():
    ctx = _context(budget=20)
    with pytest.raises(BudgetExceededError) as info:
        ctx.view()
    assert info.value.tokens == 35
    assert info.value.budget == 20
    assert len(ctx.view(aggressive=True)) == 3


def test_system_message_never_collapsed():
    ctx = _context(keep_recent=1)
    assert ctx.view()[0].content == "sys"


def test_default_summarizer_is_bounded():
    msgs = [Message(role=Role.USER, content="word " * 500, seq=i) for i in range(100)]
    summary = default_summarizer(msgs)
    assert summary.startswith("[Context summary: 100 earlier messages")
    assert len(summary.splitlines()) <= 42
    assert len(summary) < 42 * 260
    assert summary == default_summarizer(msgs)
