"""
Web search clients.

Each subclass knows one provider's request shape and result layout; the
shared ``call`` turns the parsed hits into ``SourceItem`` records.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional
from urllib.parse import quote

from websets.domain.errors import PermanentProviderError
from websets.domain.provider import ProviderConfig, ProviderRequest, ProviderResponse, SourceItem
from websets.infrastructure.providers.base import HttpProviderClient


def _source(url: Any, title: Any = "", snippet: Any = "", content: Any = None, score: Any = None) -> Optional[SourceItem]:
    if not url:
        return None
    return SourceItem(
        url=str(url),
        title=str(title or ""),
        snippet=str(snippet or ""),
        content=None if content is None else str(content),
        score=None if score is None else float(score),
    )


class SearchClient(HttpProviderClient):
    default_endpoint = ""

    def base_url(self, config: ProviderConfig) -> str:
        return (config.endpoint or self.default_endpoint).rstrip("/")

    async def fetch(self, config: ProviderConfig, request: ProviderRequest) -> Dict[str, Any]:
        raise NotImplementedError

    def parse(self, data: Dict[str, Any]) -> List[Optional[SourceItem]]:
        raise NotImplementedError

    async def call(self, config: ProviderConfig, request: ProviderRequest) -> ProviderResponse:
        if not (request.query or "").strip():
            raise PermanentProviderError(f"{config.name}: empty search query", provider_id=config.id)
        data = await self.fetch(config, request)
        if not isinstance(data, dict):
            raise PermanentProviderError(f"{config.name}: malformed search response", provider_id=config.id)
        sources = [s for s in self.parse(data) if s is not None][: max(1, request.num_results)]
        return ProviderResponse(
            content="\n".join(f"{s.title}: {s.snippet}" for s in sources),
            sources=sources,
            model=config.type,
            metadata={"results": len(sources)},
        )


class ExaClient(SearchClient):
    default_endpoint = "https://api.exa.ai"

    async def fetch(self, config, request):
        return await self.request_json(
            config,
            "POST",
            f"{self.base_url(config)}/search",
            headers={"x-api-key": config.api_key or "", "Content-Type": "application/json"},
            json_body={"query": request.query, "num_results": request.num_results, "text": request.include_text},
        )

    def parse(self, data):
        return [
            _source(r.get("url"), r.get("title"), r.get("snippet"), r.get("text"), r.get("score"))
            for r in data.get("results") or []
        ]


class BraveClient(SearchClient):
    default_endpoint = "https://api.search.brave.com/res/v1"

    async def fetch(self, config, request):
        return await self.request_json(
            config,
            "GET",
            f"{self.base_url(config)}/web/search",
            headers={"X-Subscription-Token": config.api_key or "", "Accept": "application/json"},
            params={"q": request.query, "count": request.num_results},
        )

    def parse(self, data):
        return [
            _source(r.get("url"), r.get("title"), r.get("description"))
            for r in (data.get("web") or {}).get("results") or []
        ]


class BingClient(SearchClient):
    default_endpoint = "https://api.bing.microsoft.com/v7.0"

    async def fetch(self, config, request):
        return await self.request_json(
            config,
            "GET",
            f"{self.base_url(config)}/search",
            headers={"Ocp-Apim-Subscription-Key": config.api_key or ""},
            params={"q": request.query, "count": request.num_results},
        )

    def parse(self, data):
        return [
            _source(r.get("url"), r.get("name"), r.get("snippet"))
            for r in (data.get("webPages") or {}).get("value") or []
        ]


class GoogleClient(SearchClient):
    default_endpoint = "https://www.googleapis.com/customsearch/v1"

    async def fetch(self, config, request):
        engine_id = config.options.get("search_engine_id")
        if not engine_id:
            raise PermanentProviderError(
                f"{config.name}: config.search_engine_id is required", provider_id=config.id
            )
        return await self.request_json(
            config,
            "GET",
            self.base_url(config),
            params={
                "key": config.api_key,
                "cx": engine_id,
                "q": request.query,
                "num": min(10, request.num_results),
            },
        )

    def parse(self, data):
        return [_source(r.get("link"), r.get("title"), r.get("snippet")) for r in data.get("items") or []]


class FirecrawlClient(SearchClient):
    default_endpoint = "https://api.firecrawl.dev/v1"

    async def fetch(self, config, request):
        return await self.request_json(
            config,
            "POST",
            f"{self.base_url(config)}/search",
            headers={"Authorization": f"Bearer {config.api_key or ''}", "Content-Type": "application/json"},
            json_body={"query": request.query, "limit": request.num_results},
        )

    def parse(self, data):
        items = []
        for r in data.get("data") or []:
            meta = r.get("metadata") or {}
            items.append(
                _source(
                    r.get("url"),
                    r.get("title") or meta.get("title"),
                    r.get("description") or meta.get("description"),
                    r.get("markdown"),
                )
            )
        return items


class TavilyClient(SearchClient):
    default_endpoint = "https://api.tavily.com"

    async def fetch(self, config, request):
        return await self.request_json(
            config,
            "POST",
            f"{self.base_url(config)}/search",
            json_body={
                "api_key": config.api_key,
                "query": request.query,
                "max_results": request.num_results,
                "include_raw_content": request.include_text,
            },
        )

    def parse(self, data):
        return [
            _source(r.get("url"), r.get("title"), r.get("content"), r.get("raw_content"), r.get("score"))
            for r in data.get("results") or []
        ]


class SerperClient(SearchClient):
    default_endpoint = "https://google.serper.dev"

    async def fetch(self, config, request):
        return await self.request_json(
            config,
            "POST",
            f"{self.base_url(config)}/search",
            headers={"X-API-KEY": config.api_key or "", "Content-Type": "application/json"},
            json_body={"q": request.query, "num": request.num_results},
        )

    def parse(self, data):
        return [_source(r.get("link"), r.get("title"), r.get("snippet")) for r in data.get("organic") or []]


class JinaClient(SearchClient):
    default_endpoint = "https://s.jina.ai"

    async def fetch(self, config, request):
        return await self.request_json(
            config,
            "GET",
            f"{self.base_url(config)}/{quote(request.query)}",
            headers={
                "Authorization": f"Bearer {config.api_key or ''}",
                "Accept": "application/json",
                "X-Return-Format": "json",
            },
        )

    def parse(self, data):
        return [
            _source(r.get("url"), r.get("title"), r.get("description"), r.get("content"))
            for r in data.get("data") or []
        ]


class SearxngClient(SearchClient):
    default_endpoint = "http://localhost:8080"

    async def fetch(self, config, request):
        return await self.request_json(
            config,
            "GET",
            f"{self.base_url(config)}/search",
            params={"q": request.query, "format": "json", "pageno": 1},
        )

    def parse(self, data):
        return [_source(r.get("url"), r.get("title"), r.get("content")) for r in data.get("results") or []]
