"""Tests for the console front end."""

import asyncio
import threading

import pytest

from taskpilot.cli import AutoApprover, Verdict, run_in_daemon_thread


def test_blocking_call_result_is_returned():
    assert asyncio.run(run_in_daemon_thread(AutoApprover().ask, "write_file", {})) == Verdict(approved=True)


def test_blocking_call_error_is_raised():
    def ask():
        raise EOFError("stdin closed")

    with pytest.raises(EOFError, match="stdin closed"):
        asyncio.run(run_in_daemon_thread(ask))


def test_blocked_prompt_does_not_hold_shutdown():
    answered = threading.Event()

    async def scenario():
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(run_in_daemon_thread(answered.wait), 0.1)

    asyncio.run(scenario())
    prompts = [t for t in threading.enumerate() if t.name == "taskpilot-prompt"]
    assert prompts and all(t.daemon for t in prompts)

    # The late answer lands after the loop closed and is dropped.
    answered.set()
    for t in prompts:
        t.join(timeout=2)
    assert not any(t.is_alive() for t in prompts)
