"""LLM transport – provider-agnostic streaming of assistant text."""

from taskpilot.llm.types import (
    FinishReason,
    Message,
    ModelInfo,
    Request,
    Role,
    StreamEvent,
    StreamEventType,
    Usage,
    get_model_info,
    list_models,
)
from taskpilot.llm.errors import (
    SDKError,
    ProviderError,
    AuthenticationError,
    AccessDeniedError,
    NotFoundError,
    InvalidRequestError,
    RateLimitError,
    ServerError,
    ContextLengthError,
    RequestTimeoutError,
    NetworkError,
    StreamError,
    StreamOrderError,
    ConfigurationError,
)
from taskpilot.llm.retry import RetriesExhausted, RetryPolicy, retry_call
from taskpilot.llm.adapter import AnthropicAdapter, OpenAIAdapter, ProviderAdapter
from taskpilot.llm.client import Client

__all__ = [
    "Role", "Message", "Request", "Usage", "FinishReason", "ModelInfo",
    "StreamEvent", "StreamEventType", "get_model_info", "list_models",
    "SDKError", "ProviderError", "AuthenticationError", "AccessDeniedError",
    "NotFoundError", "InvalidRequestError", "RateLimitError", "ServerError",
    "ContextLengthError", "RequestTimeoutError", "NetworkError", "StreamError",
    "StreamOrderError", "ConfigurationError",
    "RetryPolicy", "RetriesExhausted", "retry_call",
    "ProviderAdapter", "AnthropicAdapter", "OpenAIAdapter", "Client",
]
