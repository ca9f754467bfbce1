"""Approval gate: decides whether a parsed tool call may run."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from taskpilot.agent.errors import ApprovalStateError
from taskpilot.agent.parser import ToolCallRequest
from taskpilot.logging import get_logger

log = get_logger(__name__)


class ApprovalDecision(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    AUTO_APPROVED = "auto_approved"

    @property
    def is_final(self) -> bool:
        return self is not ApprovalDecision.PENDING

    @property
    def allows_execution(self) -> bool:
        return self in (ApprovalDecision.APPROVED, ApprovalDecision.AUTO_APPROVED)


class AutoApprovePolicy:
    """Per-tool auto-approve switches. Anything not switched on needs a human."""

    def __init__(self, allowed: dict[str, bool] | None = None, interactive: Iterable[str] = ("ask_followup_question",)) -> None:
        self._allowed: dict[str, bool] = dict(allowed or {})
        self._interactive = frozenset(interactive)

    @classmethod
    def from_names(cls, names: Iterable[str]) -> AutoApprovePolicy:
        return cls({name: True for name in names})

    def set(self, tool_name: str, allowed: bool) -> None:
        self._allowed[tool_name] = allowed

    def allows(self, tool_name: str) -> bool:
        if tool_name in self._interactive:
            return False
        return self._allowed.get(tool_name, False)

    def snapshot(self) -> AutoApprovePolicy:
        return AutoApprovePolicy(self._allowed, self._interactive)

    def as_dict(self) -> dict[str, bool]:
        return dict(self._allowed)


@dataclass
class _Entry:
    call: ToolCallRequest
    decision: ApprovalDecision
    feedback: str | None = None


class ApprovalGate:
    """Per-task record of approval decisions, keyed by call id.

    Decisions only move forward: Pending -> Approved | Denied. Repeating the
    recorded decision is a no-op; contradicting it raises ApprovalStateError.
    At most one call may be pending at a time.
    """

    def __init__(self, policy: AutoApprovePolicy | None = None) -> None:
        self.policy = policy or AutoApprovePolicy()
        self._entries: dict[str, _Entry] = {}
        self._waiters: dict[str, asyncio.Future[ApprovalDecision]] = {}
        self._pending: str | None = None

    @property
    def pending_call_id(self) -> str | None:
        return self._pending

    def decision(self, call_id: str) -> ApprovalDecision | None:
        entry = self._entries.get(call_id)
        return entry.decision if entry else None

    def feedback(self, call_id: str) -> str | None:
        entry = self._entries.get(call_id)
        return entry.feedback if entry else None

    def call(self, call_id: str) -> ToolCallRequest | None:
        entry = self._entries.get(call_id)
        return entry.call if entry else None

    def propose(self, call: ToolCallRequest) -> ApprovalDecision:
        """Run the policy check for a freshly parsed call."""
        existing = self._entries.get(call.id)
        if existing is not None:
            return existing.decision
        if self._pending is not None:
            raise ApprovalStateError(f"call {self._pending} is still awaiting a decision")

        if self.policy.allows(call.name):
            decision = ApprovalDecision.AUTO_APPROVED
        else:
            decision = ApprovalDecision.PENDING
            self._pending = call.id
        self._entries[call.id] = _Entry(call=call, decision=decision)
        log.debug("Tool call proposed", call_id=call.id, tool=call.name, decision=decision.value)
        return decision

    def restore(self, snapshot: dict[str, dict], calls: Iterable[ToolCallRequest] = ()) -> None:
        """Reload the final decisions of a stored gate after a restart.

        ``calls`` supplies the full call for ids that are still queued; other
        entries get a call rebuilt from the snapshot. Pending entries are left
        to ``restore_pending``.
        """
        known = {call.id: call for call in calls}
        for call_id, saved in snapshot.items():
            decision = ApprovalDecision(saved["decision"])
            if not decision.is_final:
                continue
            call = known.get(call_id) or ToolCallRequest(
                id=call_id, name=saved.get("tool_name", ""), params=dict(saved.get("params") or {}), offset=0, raw="",
            )
            self._entries[call_id] = _Entry(call=call, decision=decision, feedback=saved.get("feedback"))

    def restore_pending(self, call: ToolCallRequest) -> None:
        """Re-register a call that was awaiting approval before a restart."""
        self._entries[call.id] = _Entry(call=call, decision=ApprovalDecision.PENDING)
        self._pending = call.id

    async def wait(self, call_id: str) -> ApprovalDecision:
        """Suspend until the call has a final decision."""
        entry = self._entries.get(call_id)
        if entry is None:
            raise ApprovalStateError(f"unknown call id: {call_id}")
        if entry.decision.is_final:
            return entry.decision
        waiter = self._waiters.get(call_id)
        if waiter is None:
            waiter = asyncio.get_running_loop().create_future()
            self._waiters[call_id] = waiter
        return await asyncio.shield(waiter)

    def decide(self, call_id: str, approved: bool, feedback: str | None = None) -> ApprovalDecision:
        entry = self._entries.get(call_id)
        if entry is None:
            raise ApprovalStateError(f"unknown call id: {call_id}")
        wanted = ApprovalDecision.APPROVED if approved else ApprovalDecision.DENIED

        if entry.decision.is_final:
            if entry.decision == wanted or (approved and entry.decision == ApprovalDecision.AUTO_APPROVED):
                return entry.decision
            raise ApprovalStateError(
                f"call {call_id} is already {entry.decision.value}; cannot change it to {wanted.value}"
            )

        entry.decision = wanted
        entry.feedback = feedback
        self._settle(call_id, wanted)
        log.info("Approval decision recorded", call_id=call_id, decision=wanted.value)
        return wanted

    def force_deny(self, call_id: str) -> None:
        """Deny a pending call (used on cancellation). No-op once decided."""
        entry = self._entries.get(call_id)
        if entry is None or entry.decision.is_final:
            return
        entry.decision = ApprovalDecision.DENIED
        self._settle(call_id, ApprovalDecision.DENIED)

    def _settle(self, call_id: str, decision: ApprovalDecision) -> None:
        if self._pending == call_id:
            self._pending = None
        waiter = self._waiters.pop(call_id, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(decision)

    def snapshot(self) -> dict[str, dict]:
        return {
            call_id: {
                "tool_name": e.call.name,
                "params": dict(e.call.params),
                "decision": e.decision.value,
                "feedback": e.feedback,
            }
            for call_id, e in self._entries.items()
        }
