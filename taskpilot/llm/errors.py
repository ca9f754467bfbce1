"""LLM transport error hierarchy.

``retryable`` marks the failures worth re-requesting a turn for: rate
limits, provider outages and connections that broke mid-stream.
"""

from __future__ import annotations

# Phrases providers use when the prompt does not fit the model's window.
CONTEXT_LENGTH_MARKERS = (
    "prompt is too long",
    "context_length_exceeded",
    "maximum context length",
    "context window",
)


class SDKError(Exception):
    """Base error for the LLM transport layer."""

    retryable: bool = False

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        self.message = message
        self.cause = cause
        super().__init__(message)


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------

class ProviderError(SDKError):
    """The provider answered with an error status or error event."""

    def __init__(
        self,
        message: str,
        provider: str,
        status_code: int | None = None,
        error_code: str | None = None,
        retryable: bool | None = None,
        retry_after: float | None = None,
        raw: dict | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message, cause)
        self.provider = provider
        self.status_code = status_code
        self.error_code = error_code
        if retryable is not None:
            self.retryable = retryable
        self.retry_after = retry_after
        self.raw = raw


class AuthenticationError(ProviderError):
    pass


class AccessDeniedError(ProviderError):
    pass


class NotFoundError(ProviderError):
    """Unknown model or endpoint."""


class InvalidRequestError(ProviderError):
    pass


class RateLimitError(ProviderError):
    retryable = True


class ServerError(ProviderError):
    """Provider outage or overload."""

    retryable = True


class ContextLengthError(ProviderError):
    """The request does not fit the model's context window."""


_STATUS_ERRORS: dict[int, type[ProviderError]] = {
    401: AuthenticationError,
    403: AccessDeniedError,
    404: NotFoundError,
    429: RateLimitError,
}


def error_for_status(
    provider: str,
    status: int,
    message: str,
    raw: dict | None = None,
    retry_after: float | None = None,
) -> ProviderError:
    """Pick the error class for an HTTP status (or a status-like error event)."""
    if status in (400, 413, 422):
        lowered = message.lower()
        cls = ContextLengthError if any(m in lowered for m in CONTEXT_LENGTH_MARKERS) else InvalidRequestError
    elif 500 <= status < 600:
        cls = ServerError
    else:
        cls = _STATUS_ERRORS.get(status, ProviderError)
    return cls(message, provider=provider, status_code=status, retry_after=retry_after, raw=raw)


# ---------------------------------------------------------------------------
# Transport-level errors
# ---------------------------------------------------------------------------

class RequestTimeoutError(SDKError):
    retryable = True


class NetworkError(SDKError):
    retryable = True


class StreamError(SDKError):
    """The stream broke off or carried an error event."""

    retryable = True


class StreamOrderError(StreamError):
    """Chunks arrived out of order; the stream cannot be trusted."""

    retryable = False


class ConfigurationError(SDKError):
    """No usable provider for the request."""
