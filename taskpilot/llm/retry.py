"""Backoff for model requests that fail in transit."""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from taskpilot.llm.errors import SDKError

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """How often, and how patiently, a failed turn is re-requested.

    ``max_retries`` counts re-requests, so a turn is attempted at most
    ``max_retries + 1`` times.
    """

    max_retries: int = 2
    base_delay: float = 1.0
    max_delay: float = 60.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    on_retry: Callable[[SDKError, int, float], None] | None = None

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, attempt: int, error: SDKError | None = None) -> float | None:
        """Seconds to wait after failed ``attempt`` (0-based), or None to give up.

        A provider's ``retry_after`` hint wins over the backoff curve, unless
        it asks for a longer wait than ``max_delay``.
        """
        hint = getattr(error, "retry_after", None)
        if hint:
            return hint if hint <= self.max_delay else None
        delay = min(self.base_delay * self.backoff_multiplier ** attempt, self.max_delay)
        if self.jitter:
            delay *= random.uniform(0.5, 1.5)
        return delay


class RetriesExhausted(SDKError):
    """A retryable error kept occurring until the policy gave up."""

    def __init__(self, last_error: SDKError, attempts: int) -> None:
        super().__init__(f"{last_error.message} (after {attempts} attempts)", cause=last_error)
        self.last_error = last_error
        self.attempts = attempts


async def retry_call(
    attempt_fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
) -> T:
    """Await ``attempt_fn()`` until it succeeds or the policy gives up.

    Non-retryable errors propagate unchanged; a retryable error that outlives
    the policy is wrapped in ``RetriesExhausted``.
    """
    pol = policy or RetryPolicy()
    attempt = 0
    while True:
        try:
            return await attempt_fn()
        except SDKError as exc:
            if not exc.retryable:
                raise
            delay = pol.delay_for(attempt, exc) if attempt + 1 < pol.max_attempts else None
            if delay is None:
                raise RetriesExhausted(exc, attempt + 1) from exc
            if pol.on_retry:
                pol.on_retry(exc, attempt, delay)
            await asyncio.sleep(delay)
            attempt += 1
