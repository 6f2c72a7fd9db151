"""Type tag -> ProviderClient dispatch table."""

from __future__ import annotations

from typing import Dict, Optional

from websets.application.ports.provider_port import ProviderClient
from websets.domain.errors import PermanentProviderError
from websets.infrastructure.providers.llm_clients import ClaudeClient, GeminiClient, OpenAIChatClient
from websets.infrastructure.providers.search_clients import (
    BingClient,
    BraveClient,
    ExaClient,
    FirecrawlClient,
    GoogleClient,
    JinaClient,
    SearxngClient,
    SerperClient,
    TavilyClient,
)


class ProviderClientRegistry:
    def __init__(self, clients: Optional[Dict[str, ProviderClient]] = None):
        self._clients: Dict[str, ProviderClient] = dict(clients or {})

    def register(self, type_tag: str, client: ProviderClient) -> None:
        self._clients[type_tag.lower()] = client

    def get(self, type_tag: str) -> ProviderClient:
        client = self._clients.get((type_tag or "").lower())
        if client is None:
            raise PermanentProviderError(f"unsupported provider type: {type_tag}")
        return client

    def supported_types(self) -> list:
        return sorted(self._clients)

    async def close(self) -> None:
        seen = set()
        for client in self._clients.values():
            if id(client) in seen:
                continue
            seen.add(id(client))
            await client.close()


def default_registry() -> ProviderClientRegistry:
    # the OpenAI-format family shares one client (and one HTTP session)
    openai_chat = OpenAIChatClient()
    registry = ProviderClientRegistry()
    for tag in ("openai", "openai-compatible", "groq", "openrouter", "vercel-ai"):
        registry.register(tag, openai_chat)
    registry.register("claude", ClaudeClient())
    registry.register("gemini", GeminiClient())
    registry.register("exa", ExaClient())
    registry.register("brave", BraveClient())
    registry.register("bing", BingClient())
    registry.register("google", GoogleClient())
    registry.register("firecrawl", FirecrawlClient())
    registry.register("tavily", TavilyClient())
    registry.register("serper", SerperClient())
    registry.register("jina", JinaClient())
    registry.register("searxng", SearxngClient())
    return registry
