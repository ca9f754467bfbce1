"""Streaming provider adapters over httpx server-sent events."""

from __future__ import annotations

import json
import os
from abc import ABC, abstractmethod
from contextlib import aclosing
from typing import AsyncIterator

import httpx

from taskpilot.llm.errors import NetworkError, RequestTimeoutError, StreamError, error_for_status
from taskpilot.llm.types import FinishReason, Request, Role, StreamEvent, StreamEventType, Usage


class ProviderAdapter(ABC):
    """One model provider behind a text-streaming interface.

    ``stream`` yields STREAM_START, numbered TEXT_DELTAs and exactly one
    FINISH, or raises an ``SDKError``.
    """

    name: str = ""

    @abstractmethod
    def stream(self, request: Request) -> AsyncIterator[StreamEvent]: ...

    async def close(self) -> None:
        pass


def _retry_after_seconds(value: str | None) -> float | None:
    try:
        return float(value) if value else None
    except ValueError:
        return None


class SSEAdapter(ProviderAdapter):
    """POSTs a JSON body and reads the ``data:`` lines of the response."""

    path = ""

    def __init__(self, base_url: str, *, timeout: float = 120.0,
                 transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout = httpx.Timeout(timeout, connect=10.0)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @abstractmethod
    def _headers(self) -> dict[str, str]: ...

    @abstractmethod
    def _body(self, request: Request) -> dict: ...

    @abstractmethod
    def _events(self, payloads: AsyncIterator[str]) -> AsyncIterator[StreamEvent]: ...

    def _http(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._client

    async def stream(self, request: Request) -> AsyncIterator[StreamEvent]:
        yield StreamEvent(type=StreamEventType.STREAM_START)
        async with aclosing(self._payloads(self._body(request))) as payloads:
            async for event in self._events(payloads):
                yield event

    async def _payloads(self, body: dict) -> AsyncIterator[str]:
        try:
            async with self._http().stream("POST", self.base_url + self.path, json=body,
                                           headers=self._headers()) as resp:
                if resp.status_code >= 400:
                    self._raise_for_body(resp.status_code, await resp.aread(), resp.headers.get("retry-after"))
                async for line in resp.aiter_lines():
                    if line.startswith("data:"):
                        yield line[5:].strip()
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError(f"{self.name} request timed out", cause=exc) from exc
        except httpx.RemoteProtocolError as exc:
            raise StreamError(f"{self.name} stream interrupted: {exc}", cause=exc) from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"{self.name} connection failed: {exc}", cause=exc) from exc

    def _raise_for_body(self, status: int, raw: bytes, retry_after: str | None) -> None:
        try:
            data = json.loads(raw)
        except ValueError:
            data = None
        detail = data.get("error") if isinstance(data, dict) else None
        message = detail.get("message") if isinstance(detail, dict) else None
        raise error_for_status(self.name, status, message or raw.decode(errors="replace"), data,
                               _retry_after_seconds(retry_after))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------

_ANTHROPIC_FINISH = {"end_turn": "stop", "stop_sequence": "stop", "max_tokens": "length"}
_ANTHROPIC_ERROR_STATUS = {
    "invalid_request_error": 400,
    "authentication_error": 401,
    "rate_limit_error": 429,
    "api_error": 500,
    "overloaded_error": 529,
}


class AnthropicAdapter(SSEAdapter):
    """Anthropic Messages API."""

    name = "anthropic"
    path = "/v1/messages"

    def __init__(self, api_key: str | None = None, base_url: str | None = None,
                 default_max_tokens: int = 8192, **kwargs) -> None:
        super().__init__(base_url or os.getenv("ANTHROPIC_BASE_URL", "https://api.anthropic.com"), **kwargs)
        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY", "")
        self.default_max_tokens = default_max_tokens

    def _headers(self) -> dict[str, str]:
        return {"x-api-key": self.api_key, "anthropic-version": "2023-06-01", "content-type": "application/json"}

    def _body(self, request: Request) -> dict:
        system = "\n".join(m.text for m in request.messages if m.role == Role.SYSTEM)
        # Roles must alternate; runs of one role are joined into one turn.
        turns: list[tuple[str, list[str]]] = []
        for m in request.messages:
            if m.role == Role.SYSTEM:
                continue
            role = "assistant" if m.role == Role.ASSISTANT else "user"
            if turns and turns[-1][0] == role:
                turns[-1][1].append(m.text)
            else:
                turns.append((role, [m.text]))

        body: dict = {
            "model": request.model,
            "max_tokens": request.max_tokens or self.default_max_tokens,
            "messages": [{"role": role, "content": [{"type": "text", "text": "\n\n".join(texts)}]}
                         for role, texts in turns],
            "stream": True,
        }
        if system:
            body["system"] = system
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.stop_sequences:
            body["stop_sequences"] = request.stop_sequences
        return body

    async def _events(self, payloads: AsyncIterator[str]) -> AsyncIterator[StreamEvent]:
        usage = Usage()
        finish: FinishReason | None = None
        sequence = 0
        async for raw in payloads:
            event = json.loads(raw)
            kind = event.get("type")
            if kind == "content_block_delta" and event["delta"].get("type") == "text_delta":
                yield StreamEvent(type=StreamEventType.TEXT_DELTA, delta=event["delta"].get("text", ""),
                                  sequence=sequence)
                sequence += 1
            elif kind == "message_start":
                counts = event.get("message", {}).get("usage", {})
                usage.input_tokens = counts.get("input_tokens", 0)
                usage.cache_read_tokens = counts.get("cache_read_input_tokens")
                usage.cache_write_tokens = counts.get("cache_creation_input_tokens")
            elif kind == "message_delta":
                usage.output_tokens = event.get("usage", {}).get("output_tokens", usage.output_tokens)
                stop = event.get("delta", {}).get("stop_reason")
                if stop:
                    finish = FinishReason(_ANTHROPIC_FINISH.get(stop, "other"), raw=stop)
            elif kind == "message_stop":
                usage.total_tokens = usage.input_tokens + usage.output_tokens
                yield StreamEvent(type=StreamEventType.FINISH, finish_reason=finish, usage=usage)
                return
            elif kind == "error":
                detail = event.get("error", {})
                status = _ANTHROPIC_ERROR_STATUS.get(detail.get("type", ""))
                message = detail.get("message") or detail.get("type") or "unknown stream error"
                if status is None:
                    raise StreamError(f"anthropic stream error: {message}")
                raise error_for_status(self.name, status, message, {"error": detail})
        raise StreamError("anthropic stream ended before message_stop")


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------

_OPENAI_FINISH = {"stop": "stop", "length": "length", "content_filter": "content_filter"}


class OpenAIAdapter(SSEAdapter):
    """OpenAI Chat Completions API."""

    name = "openai"
    path = "/v1/chat/completions"

    def __init__(self, api_key: str | None = None, base_url: str | None = None,
                 org_id: str | None = None, **kwargs) -> None:
        super().__init__(base_url or os.getenv("OPENAI_BASE_URL", "https://api.openai.com"), **kwargs)
        self.api_key = api_key or os.getenv("OPENAI_API_KEY", "")
        self.org_id = org_id or os.getenv("OPENAI_ORG_ID")

    def _headers(self) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        if self.org_id:
            headers["OpenAI-Organization"] = self.org_id
        return headers

    def _body(self, request: Request) -> dict:
        body: dict = {
            "model": request.model,
            "messages": [{"role": m.role.value, "content": m.text} for m in request.messages],
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        optional = {"max_tokens": request.max_tokens, "temperature": request.temperature,
                    "stop": request.stop_sequences}
        body.update({key: value for key, value in optional.items() if value is not None})
        return body

    async def _events(self, payloads: AsyncIterator[str]) -> AsyncIterator[StreamEvent]:
        usage: Usage | None = None
        finish: FinishReason | None = None
        sequence = 0
        async for raw in payloads:
            if raw == "[DONE]":
                yield StreamEvent(type=StreamEventType.FINISH, finish_reason=finish, usage=usage)
                return
            chunk = json.loads(raw)
            if chunk.get("error"):
                raise StreamError(f"openai stream error: {chunk['error'].get('message', chunk['error'])}")
            if chunk.get("usage"):
                counts = chunk["usage"]
                usage = Usage(counts.get("prompt_tokens", 0), counts.get("completion_tokens", 0),
                              counts.get("total_tokens", 0))
            for choice in chunk.get("choices", [])[:1]:
                if choice.get("finish_reason"):
                    finish = FinishReason(_OPENAI_FINISH.get(choice["finish_reason"], "other"),
                                          raw=choice["finish_reason"])
                text = choice.get("delta", {}).get("content")
                if text:
                    yield StreamEvent(type=StreamEventType.TEXT_DELTA, delta=text, sequence=sequence)
                    sequence += 1
        raise StreamError("openai stream ended before [DONE]")
