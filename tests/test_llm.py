"""Tests for the LLM transport: types, errors, retry, adapters and client."""

import asyncio
import io
import json

import httpx
import pytest
import structlog

from taskpilot.config import Settings
from taskpilot.agent.task import DEFAULT_CONTEXT_BUDGET, TaskConfig
from taskpilot.llm.adapter import AnthropicAdapter, OpenAIAdapter, ProviderAdapter
from taskpilot.llm.client import Client
from taskpilot.llm.errors import (
    AuthenticationError,
    ConfigurationError,
    ContextLengthError,
    InvalidRequestError,
    NetworkError,
    ProviderError,
    RateLimitError,
    ServerError,
    StreamError,
    error_for_status,
)
from taskpilot.llm.retry import RetriesExhausted, RetryPolicy, retry_call
from taskpilot.llm.types import (
    Message,
    Request,
    Role,
    StreamEvent,
    StreamEventType,
    Usage,
    get_model_info,
    list_models,
)
from taskpilot.logging import configure_logging, get_logger


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

def test_message_constructors():
    assert Message.system("You are helpful.").role == Role.SYSTEM
    assert Message.user("Hello").text == "Hello"
    assert Message.assistant("Hi there").role == Role.ASSISTANT


def test_usage_addition():
    a = Usage(input_tokens=10, output_tokens=5, total_tokens=15, cache_read_tokens=2)
    b = Usage(input_tokens=20, output_tokens=10, total_tokens=30, cache_read_tokens=3)
    c = a + b
    assert c.input_tokens == 30
    assert c.output_tokens == 15
    assert c.total_tokens == 45
    assert c.cache_read_tokens == 5
    assert c.cache_write_tokens is None


def test_model_catalog():
    info = get_model_info("claude-sonnet-4-5")
    assert info is not None
    assert info.id == "claude-sonnet-4-5-20250929"
    assert get_model_info("no-such-model") is None
    assert all(m.provider == "openai" for m in list_models("openai"))


def test_context_budget_from_model():
    assert TaskConfig().context_budget_for("gpt-4o") == int(128_000 * 0.8)
    assert TaskConfig().context_budget_for("mystery") == DEFAULT_CONTEXT_BUDGET
    assert TaskConfig(context_budget_tokens=500).context_budget_for("gpt-4o") == 500


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

def test_error_retryability():
    assert RateLimitError("slow", provider="x").retryable
    assert ServerError("down", provider="x").retryable
    assert NetworkError("reset").retryable
    assert not AuthenticationError("bad key", provider="x").retryable
    assert not ContextLengthError("too long", provider="x").retryable
    assert InvalidRequestError("odd", provider="x", retryable=True).retryable


def test_error_for_status():
    assert isinstance(error_for_status("x", 401, "nope"), AuthenticationError)
    assert isinstance(error_for_status("x", 400, "Prompt is too long"), ContextLengthError)
    assert isinstance(error_for_status("x", 422, "bad field"), InvalidRequestError)
    assert isinstance(error_for_status("x", 529, "overloaded"), ServerError)
    err = error_for_status("x", 429, "slow", retry_after=2.0)
    assert isinstance(err, RateLimitError)
    assert err.retry_after == 2.0
    assert type(error_for_status("x", 418, "teapot")) is ProviderError


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

def _flaky(failures):
    attempts = []

    async def call():
        attempts.append(1)
        if failures:
            raise failures.pop(0)
        return "ok"

    return call, attempts


def test_retry_recovers():
    call, attempts = _flaky([NetworkError("reset"), ServerError("busy", provider="x")])
    seen = []
    policy = RetryPolicy(max_retries=2, base_delay=0, jitter=False, on_retry=lambda e, n, d: seen.append(n))
    assert asyncio.run(retry_call(call, policy)) == "ok"
    assert len(attempts) == 3
    assert seen == [0, 1]


def test_retry_exhausted():
    call, attempts = _flaky([NetworkError("reset")] * 5)
    with pytest.raises(RetriesExhausted) as info:
        asyncio.run(retry_call(call, RetryPolicy(max_retries=2, base_delay=0)))
    assert info.value.attempts == 3
    assert info.value.last_error.message == "reset"
    assert len(attempts) == 3


def test_non_retryable_propagates_unchanged():
    call, attempts = _flaky([AuthenticationError("bad key", provider="x")])
    with pytest.raises(AuthenticationError):
        asyncio.run(retry_call(call, RetryPolicy(base_delay=0)))
    assert len(attempts) == 1


def test_retry_after_beyond_max_delay_gives_up():
    call, attempts = _flaky([RateLimitError("wait", provider="x", retry_after=120)])
    with pytest.raises(RetriesExhausted):
        asyncio.run(retry_call(call, RetryPolicy(max_retries=3, max_delay=10)))
    assert len(attempts) == 1


def test_delay_grows_and_is_capped():
    policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=False)
    assert [policy.delay_for(n) for n in range(4)] == [1.0, 2.0, 4.0, 5.0]
    assert policy.delay_for(0, RateLimitError("wait", provider="x", retry_after=3)) == 3
    assert policy.delay_for(0, RateLimitError("wait", provider="x", retry_after=30)) is None


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------

def _sse(*payloads):
    lines = []
    for p in payloads:
        lines.append(f"data: {p if isinstance(p, str) else json.dumps(p)}")
        lines.append("")
    return "\n".join(lines).encode()


def _mock(adapter_cls, handler):
    return adapter_cls(api_key="k", transport=httpx.MockTransport(handler))


def _collect(adapter, request):
    async def run():
        try:
            return [e async for e in adapter.stream(request)]
        finally:
            await adapter.close()

    return asyncio.run(run())


def _request(*messages):
    return Request(model="m", messages=list(messages) or [Message.user("hi")])


def test_anthropic_stream():
    sent = {}

    def handler(request):
        sent.update(json.loads(request.content))
        body = _sse(
            {"type": "message_start", "message": {"usage": {"input_tokens": 12}}},
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi"}},
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": " there"}},
            {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 3}},
            {"type": "message_stop"},
        )
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    adapter = _mock(AnthropicAdapter, handler)
    events = _collect(adapter, _request(
        Message.system("be brief"), Message.user("one"), Message.user("two"), Message.assistant("ok"),
    ))

    deltas = [e for e in events if e.type == StreamEventType.TEXT_DELTA]
    assert [(e.delta, e.sequence) for e in deltas] == [("Hi", 0), (" there", 1)]
    finish = events[-1]
    assert finish.type == StreamEventType.FINISH
    assert finish.usage.input_tokens == 12
    assert finish.usage.output_tokens == 3
    assert finish.usage.total_tokens == 15
    assert finish.finish_reason.reason == "stop"

    assert sent["system"] == "be brief"
    assert sent["stream"] is True
    assert [m["role"] for m in sent["messages"]] == ["user", "assistant"]
    assert sent["messages"][0]["content"][0]["text"] == "one\n\ntwo"


def test_anthropic_stream_cut_short():
    def handler(request):
        body = _sse({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi"}})
        return httpx.Response(200, content=body)

    with pytest.raises(StreamError):
        _collect(_mock(AnthropicAdapter, handler), _request())


def test_anthropic_overloaded_event():
    def handler(request):
        body = _sse({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
        return httpx.Response(200, content=body)

    with pytest.raises(ServerError) as info:
        _collect(_mock(AnthropicAdapter, handler), _request())
    assert info.value.retryable


def test_rate_limit_status_with_retry_after():
    def handler(request):
        return httpx.Response(429, json={"error": {"message": "slow down"}}, headers={"retry-after": "3"})

    with pytest.raises(RateLimitError) as info:
        _collect(_mock(AnthropicAdapter, handler), _request())
    assert info.value.retry_after == 3.0
    assert info.value.status_code == 429


def test_context_length_status():
    def handler(request):
        return httpx.Response(400, json={"error": {"message": "prompt is too long: 250000 tokens"}})

    with pytest.raises(ContextLengthError):
        _collect(_mock(AnthropicAdapter, handler), _request())


def test_connection_failure_is_network_error():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    with pytest.raises(NetworkError):
        _collect(_mock(OpenAIAdapter, handler), _request())


def test_openai_stream():
    sent = {}

    def handler(request):
        sent.update(json.loads(request.content))
        body = _sse(
            {"choices": [{"delta": {"role": "assistant"}}]},
            {"choices": [{"delta": {"content": "Hel"}}]},
            {"choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]},
            {"choices": [], "usage": {"prompt_tokens": 7, "completion_tokens": 2, "total_tokens": 9}},
            "[DONE]",
        )
        return httpx.Response(200, content=body)

    events = _collect(_mock(OpenAIAdapter, handler), _request())
    assert events[0].type == StreamEventType.STREAM_START
    assert "".join(e.delta for e in events if e.type == StreamEventType.TEXT_DELTA) == "Hello"
    assert events[-1].usage.total_tokens == 9
    assert events[-1].finish_reason.reason == "stop"
    assert sent["stream_options"] == {"include_usage": True}


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class _EchoAdapter(ProviderAdapter):
    def __init__(self, name):
        self._name = name
        self.closed = False

    @property
    def name(self):
        return self._name

    async def stream(self, request):
        yield StreamEvent(type=StreamEventType.TEXT_DELTA, delta=self._name, sequence=0)

    async def close(self):
        self.closed = True


def test_client_routes_by_provider():
    a, b = _EchoAdapter("a"), _EchoAdapter("b")
    client = Client({"a": a, "b": b}, default_provider="a")

    async def run(provider):
        request = Request(model="m", messages=[Message.user("hi")], provider=provider)
        return [e.delta async for e in client.stream(request)]

    assert asyncio.run(run(None)) == ["a"]
    assert asyncio.run(run("b")) == ["b"]
    with pytest.raises(ConfigurationError):
        asyncio.run(run("c"))
    asyncio.run(client.close())
    assert a.closed and b.closed


def test_client_routes_by_model_catalog():
    client = Client({"anthropic": _EchoAdapter("anthropic"), "openai": _EchoAdapter("openai")}, "anthropic")
    assert client.resolve(Request(model="gpt-4o", messages=[])).name == "openai"
    assert client.resolve(Request(model="claude-sonnet-4-5", messages=[])).name == "anthropic"
    assert client.resolve(Request(model="local-llm", messages=[])).name == "anthropic"


def test_client_from_env(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(ConfigurationError):
        Client.from_env()

    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    client = Client.from_env()
    assert client.default_provider == "openai"
    with pytest.raises(ConfigurationError):
        Client.from_env(default_provider="anthropic")


# ---------------------------------------------------------------------------
# Configuration and logging
# ---------------------------------------------------------------------------

def test_settings_from_env(monkeypatch):
    monkeypatch.delenv("TASKPILOT_PROVIDER", raising=False)
    monkeypatch.setenv("TASKPILOT_MODEL", "gpt-4o")
    monkeypatch.setenv("TASKPILOT_AUTO_APPROVE", "read_file, list_files,")
    monkeypatch.setenv("TASKPILOT_LOG_FORMAT", "json")
    settings = Settings.from_env()
    assert settings.model == "gpt-4o"
    assert settings.auto_approve == ["read_file", "list_files"]
    assert settings.log_format == "json"
    assert settings.provider is None


def test_task_config_from_env(monkeypatch):
    monkeypatch.setenv("TASKPILOT_MAX_ITERATIONS", "7")
    monkeypatch.setenv("TASKPILOT_TOOL_TIMEOUT_SECONDS", "2.5")
    config = TaskConfig.from_env()
    assert config.max_iterations == 7
    assert config.tool_timeout_seconds == 2.5
    assert config.max_tool_calls_per_turn == 1


def test_json_logging():
    out = io.StringIO()
    try:
        configure_logging("info", "json", stream=out)
        log = get_logger("taskpilot.test")
        log.debug("hidden")
        log.info("Task started", task_id="t1")
        lines = out.getvalue().splitlines()
        assert len(lines) == 1
        entry = json.loads(lines[0])
        assert entry["event"] == "Task started"
        assert entry["task_id"] == "t1"
        assert entry["level"] == "info"
    finally:
        structlog.reset_defaults()
