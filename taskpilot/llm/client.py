"""LLM client: picks a provider adapter for each streamed request."""

from __future__ import annotations

import os
from typing import AsyncIterator

from taskpilot.llm.adapter import AnthropicAdapter, OpenAIAdapter, ProviderAdapter
from taskpilot.llm.errors import ConfigurationError
from taskpilot.llm.types import Request, StreamEvent, get_model_info

# Provider name -> (API key variable, adapter class)
_ENV_PROVIDERS: dict[str, tuple[str, type[ProviderAdapter]]] = {
    "anthropic": ("ANTHROPIC_API_KEY", AnthropicAdapter),
    "openai": ("OPENAI_API_KEY", OpenAIAdapter),
}


class Client:
    """Routes streaming requests to the configured provider adapters.

    A request names its provider explicitly, or is routed by the model
    catalog, or falls back to ``default_provider``.
    """

    def __init__(
        self,
        providers: dict[str, ProviderAdapter] | None = None,
        default_provider: str | None = None,
    ) -> None:
        self.providers: dict[str, ProviderAdapter] = providers or {}
        self.default_provider = default_provider

    @classmethod
    def from_env(cls, default_provider: str | None = None) -> Client:
        """Build adapters for every provider whose API key is set."""
        providers = {
            name: adapter_cls()
            for name, (key_var, adapter_cls) in _ENV_PROVIDERS.items()
            if os.getenv(key_var)
        }
        if not providers:
            raise ConfigurationError("No provider API keys found in environment (set ANTHROPIC_API_KEY or OPENAI_API_KEY)")
        if default_provider and default_provider not in providers:
            key_var = _ENV_PROVIDERS.get(default_provider, ("an API key",))[0]
            raise ConfigurationError(f"Provider {default_provider!r} requested but {key_var} is not set")
        return cls(providers=providers, default_provider=default_provider or next(iter(providers)))

    def resolve(self, request: Request) -> ProviderAdapter:
        name = request.provider
        if name is None:
            info = get_model_info(request.model)
            if info is not None and info.provider in self.providers:
                name = info.provider
            else:
                name = self.default_provider
        if not name:
            raise ConfigurationError("No provider specified and no default set")
        adapter = self.providers.get(name)
        if adapter is None:
            raise ConfigurationError(f"Unknown provider: {name}")
        return adapter

    async def stream(self, request: Request) -> AsyncIterator[StreamEvent]:
        adapter = self.resolve(request)
        async for event in adapter.stream(request):
            yield event

    async def close(self) -> None:
        for adapter in self.providers.values():
            await adapter.close()
