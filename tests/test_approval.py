"""Tests for the approval gate and auto-approve policy."""

import asyncio

import pytest

from taskpilot.agent.approval import ApprovalDecision, ApprovalGate, AutoApprovePolicy
from taskpilot.agent.errors import ApprovalStateError
from taskpilot.agent.parser import ToolCallRequest


def _call(name="write_file", call_id="call_1", **params):
    return ToolCallRequest(id=call_id, name=name, params=params, offset=0, raw="")


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

def test_policy_defaults_to_asking():
    policy = AutoApprovePolicy()
    assert not policy.allows("read_file")


def test_policy_from_names():
    policy = AutoApprovePolicy.from_names(["read_file", "list_files"])
    assert policy.allows("read_file")
    assert policy.allows("list_files")
    assert not policy.allows("execute_command")


def test_interactive_tools_never_auto_approved():
    policy = AutoApprovePolicy.from_names(["ask_followup_question"])
    assert not policy.allows("ask_followup_question")


def test_snapshot_is_independent():
    policy = AutoApprovePolicy.from_names(["read_file"])
    snap = policy.snapshot()
    policy.set("read_file", False)
    policy.set("write_file", True)
    assert snap.allows("read_file")
    assert not snap.allows("write_file")
    assert policy.as_dict() == {"read_file": False, "write_file": True}


# ---------------------------------------------------------------------------
# Proposals
# ---------------------------------------------------------------------------

def test_propose_pending_without_policy():
    gate = ApprovalGate()
    assert gate.propose(_call()) == ApprovalDecision.PENDING
    assert gate.pending_call_id == "call_1"


def test_propose_auto_approved():
    gate = ApprovalGate(AutoApprovePolicy.from_names(["read_file"]))
    assert gate.propose(_call("read_file")) == ApprovalDecision.AUTO_APPROVED
    assert gate.pending_call_id is None


def test_propose_same_call_twice_is_stable():
    gate = ApprovalGate()
    call = _call()
    gate.propose(call)
    assert gate.propose(call) == ApprovalDecision.PENDING
    assert gate.call("call_1") is call


def test_only_one_call_pending_at_a_time():
    gate = ApprovalGate()
    gate.propose(_call(call_id="call_1"))
    with pytest.raises(ApprovalStateError):
        gate.propose(_call(call_id="call_2"))


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------

def test_approve_then_repeat_is_noop():
    gate = ApprovalGate()
    gate.propose(_call())
    assert gate.decide("call_1", True, "go ahead") == ApprovalDecision.APPROVED
    assert gate.decide("call_1", True) == ApprovalDecision.APPROVED
    assert gate.feedback("call_1") == "go ahead"
    assert gate.pending_call_id is None


def test_contradicting_a_decision_raises():
    gate = ApprovalGate()
    gate.propose(_call())
    gate.decide("call_1", False)
    with pytest.raises(ApprovalStateError):
        gate.decide("call_1", True)
    assert gate.decision("call_1") == ApprovalDecision.DENIED


def test_decide_unknown_call_raises():
    with pytest.raises(ApprovalStateError):
        ApprovalGate().decide("nope", True)


def test_auto_approved_accepts_approve_rejects_deny():
    gate = ApprovalGate(AutoApprovePolicy.from_names(["read_file"]))
    gate.propose(_call("read_file"))
    assert gate.decide("call_1", True) == ApprovalDecision.AUTO_APPROVED
    with pytest.raises(ApprovalStateError):
        gate.decide("call_1", False)


def test_decision_properties():
    assert not ApprovalDecision.PENDING.is_final
    assert ApprovalDecision.DENIED.is_final
    assert ApprovalDecision.APPROVED.allows_execution
    assert ApprovalDecision.AUTO_APPROVED.allows_execution
    assert not ApprovalDecision.DENIED.allows_execution


def test_snapshot_records_feedback():
    gate = ApprovalGate()
    gate.propose(_call())
    gate.decide("call_1", False, "use a different name")
    assert gate.snapshot() == {
        "call_1": {"tool_name": "write_file", "params": {}, "decision": "denied", "feedback": "use a different name"},
    }


# ---------------------------------------------------------------------------
# Waiting
# ---------------------------------------------------------------------------

def test_wait_resumes_on_decision():
    async def scenario():
        gate = ApprovalGate()
        gate.propose(_call())
        waiter = asyncio.ensure_future(gate.wait("call_1"))
        await asyncio.sleep(0)
        assert not waiter.done()
        gate.decide("call_1", True)
        return await asyncio.wait_for(waiter, 1)

    assert asyncio.run(scenario()) == ApprovalDecision.APPROVED


def test_wait_returns_immediately_when_decided():
    async def scenario():
        gate = ApprovalGate()
        gate.propose(_call())
        gate.decide("call_1", False)
        return await gate.wait("call_1")

    assert asyncio.run(scenario()) == ApprovalDecision.DENIED


def test_force_deny_releases_waiter():
    async def scenario():
        gate = ApprovalGate()
        gate.propose(_call())
        waiter = asyncio.ensure_future(gate.wait("call_1"))
        await asyncio.sleep(0)
        gate.force_deny("call_1")
        return await asyncio.wait_for(waiter, 1), gate

    decision, gate = asyncio.run(scenario())
    assert decision == ApprovalDecision.DENIED
    assert gate.pending_call_id is None


def test_force_deny_after_approval_is_noop():
    gate = ApprovalGate()
    gate.propose(_call())
    gate.decide("call_1", True)
    gate.force_deny("call_1")
    assert gate.decision("call_1") == ApprovalDecision.APPROVED


def test_restore_pending():
    gate = ApprovalGate()
    gate.restore_pending(_call(call_id="call_9"))
    assert gate.pending_call_id == "call_9"
    assert gate.decision("call_9") == ApprovalDecision.PENDING
    assert gate.decide("call_9", True) == ApprovalDecision.APPROVED


def test_restore_final_decisions():
    gate = ApprovalGate()
    gate.propose(_call(path="LICENSE"))
    gate.decide("call_1", True, "keep the year current")
    gate.propose(_call(name="read_file", call_id="call_2"))
    gate.decide("call_2", False)
    gate.propose(_call(call_id="call_3"))

    queued = _call(call_id="call_2", path="notes.md")
    restored = ApprovalGate()
    restored.restore(gate.snapshot(), [queued])

    assert restored.decision("call_1") == ApprovalDecision.APPROVED
    assert restored.feedback("call_1") == "keep the year current"
    assert restored.call("call_1").params == {"path": "LICENSE"}
    assert restored.call("call_2") is queued
    assert restored.decision("call_2") == ApprovalDecision.DENIED
    assert restored.decision("call_3") is None
    assert restored.pending_call_id is None
    # Repeating a restored decision is a no-op; contradicting it is not.
    assert restored.decide("call_1", True) == ApprovalDecision.APPROVED
    with pytest.raises(ApprovalStateError):
        restored.decide("call_2", True)
