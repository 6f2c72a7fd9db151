from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Dict, List, Optional

from websets.application.ports.provider_port import ProviderClient
from websets.application.services.circuit_breaker import CircuitBreakers
from websets.application.services.rate_limiter import RateLimiter
from websets.domain.errors import NoProviderAvailable, RateLimited, TransientProviderError
from websets.domain.provider import (
    ProviderConfig,
    ProviderKind,
    ProviderRef,
    ProviderRequest,
    ProviderResponse,
    ProviderResult,
)
from websets.domain.rate_limit import DAY_MS, MINUTE_MS, RateLimitScope
from websets.domain.webset import Citation
from websets.infrastructure.providers.registry import ProviderClientRegistry, default_registry
from websets.infrastructure.stores.provider_store import ProviderStore
from websets.infrastructure.stores.provider_usage_store import ProviderUsageStore
from websets.utils.settings import EngineSettings

logger = logging.getLogger(__name__)

_CITATION_SNIPPET_CHARS = 1000


def budget_endpoints(config: ProviderConfig) -> List[tuple]:
    """(endpoint, max_requests, window_ms) rules a provider's own limits imply."""
    rules = []
    if config.rate_limit:
        rules.append((f"{config.kind.value}:{config.id}", int(config.rate_limit), MINUTE_MS))
    if config.daily_limit:
        rules.append((f"{config.kind.value}:{config.id}:daily", int(config.daily_limit), DAY_MS))
    return rules


class ProviderGateway:
    """Single entry point for every outbound LLM and search call.

    Picks the provider, spends its rate budget, bounds in-flight calls per
    provider, applies the request timeout and retries transient failures.
    ``RateLimited`` is never retried here: the caller decides when to come back.
    """

    def __init__(
        self,
        provider_store: ProviderStore,
        rate_limiter: RateLimiter,
        *,
        registry: Optional[ProviderClientRegistry] = None,
        usage_store: Optional[ProviderUsageStore] = None,
        settings: Optional[EngineSettings] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        breakers: Optional[CircuitBreakers] = None,
    ) -> None:
        self._providers = provider_store
        self._limiter = rate_limiter
        self._registry = registry or default_registry()
        self._usage = usage_store
        self._settings = settings or EngineSettings.from_env()
        self._sleep = sleep or asyncio.sleep
        self.breakers = breakers or CircuitBreakers(
            failure_threshold=self._settings.breaker_failure_threshold,
            reset_timeout=self._settings.breaker_reset_seconds,
        )
        self._semaphores: Dict[str, asyncio.Semaphore] = {}

    # ------------------------------------------------------------------
    # selection
    # ------------------------------------------------------------------

    def resolve(self, ref: ProviderRef) -> ProviderConfig:
        if ref.provider_id:
            record = self._providers.get_provider(ref.provider_id, include_secrets=True)
            if record is None:
                raise NoProviderAvailable(f"{ref.kind.value} provider not found: {ref.provider_id}")
            if record["kind"] != ref.kind.value:
                raise NoProviderAvailable(
                    f"provider {ref.provider_id} is a {record['kind']} provider, not {ref.kind.value}"
                )
            if not record["is_active"]:
                raise NoProviderAvailable(f"{ref.kind.value} provider is inactive: {ref.provider_id}")
            return ProviderConfig.from_record(record)

        records = self._providers.list_providers(kind=ref.kind.value, active_only=True, include_secrets=True)
        if not records:
            raise NoProviderAvailable(f"no active {ref.kind.value} provider configured")
        return self._first_available(records)

    def resolve_optional(self, ref: ProviderRef) -> Optional[ProviderConfig]:
        """Like ``resolve`` but an unspecified provider may be absent."""
        if ref.provider_id:
            return self.resolve(ref)
        records = self._providers.list_providers(kind=ref.kind.value, active_only=True, include_secrets=True)
        return self._first_available(records) if records else None

    def _first_available(self, records: List[Dict[str, Any]]) -> ProviderConfig:
        """Highest-priority record whose circuit is not open; the first one if all are open."""
        for record in records:
            if self.breakers.allow(record["id"]):
                return ProviderConfig.from_record(record)
        return ProviderConfig.from_record(records[0])

    # ------------------------------------------------------------------
    # invocation
    # ------------------------------------------------------------------

    async def invoke(self, ref: ProviderRef, request: ProviderRequest) -> ProviderResult:
        return await self.call(self.resolve(ref), request)

    async def call(self, config: ProviderConfig, request: ProviderRequest) -> ProviderResult:
        client = self._registry.get(config.type)
        if not self.breakers.allow(config.id):
            raise TransientProviderError(
                f"{config.name}: circuit open, retry in {self.breakers.retry_after(config.id):.0f}s",
                provider_id=config.id,
            )
        self._spend_budget(config, request.user_id)

        attempts = 0
        max_retries = max(0, int(self._settings.max_retries))
        while True:
            attempts += 1
            try:
                response = await self._call_once(client, config, request)
                break
            except TransientProviderError as exc:
                if attempts > max_retries:
                    logger.warning(
                        "provider %s failed after %s attempts: %s", config.name, attempts, exc
                    )
                    self.breakers.record_failure(config.id, str(exc))
                    raise
                delay = self._settings.retry_base_delay * (2 ** (attempts - 1))
                delay = max(0.0, delay * (1 + 0.25 * (2 * random.random() - 1)))
                logger.info(
                    "provider %s transient error, retry %s/%s in %.2fs: %s",
                    config.name,
                    attempts,
                    max_retries,
                    delay,
                    exc,
                )
                await self._sleep(delay)

        self.breakers.record_success(config.id)
        self._record_usage(config, request, response)
        return ProviderResult(
            provider_id=config.id,
            provider_type=config.type,
            kind=config.kind,
            response=response,
            citations=self._citations(config, response),
            attempts=attempts,
        )

    async def search(
        self,
        query: str,
        *,
        provider_id: Optional[str] = None,
        num_results: int = 5,
        include_text: bool = False,
        user_id: Optional[str] = None,
    ) -> ProviderResult:
        request = ProviderRequest(
            query=query, num_results=num_results, include_text=include_text, user_id=user_id
        )
        return await self.invoke(ProviderRef(ProviderKind.SEARCH, provider_id), request)

    async def complete(
        self,
        messages: List[Dict[str, str]],
        *,
        provider_id: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        user_id: Optional[str] = None,
    ) -> ProviderResult:
        request = ProviderRequest(
            messages=messages,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            user_id=user_id,
        )
        return await self.invoke(ProviderRef(ProviderKind.LLM, provider_id), request)

    async def close(self) -> None:
        await self._registry.close()

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _semaphore(self, provider_id: str) -> asyncio.Semaphore:
        sem = self._semaphores.get(provider_id)
        if sem is None:
            sem = asyncio.Semaphore(max(1, int(self._settings.max_inflight_per_provider)))
            self._semaphores[provider_id] = sem
        return sem

    async def _call_once(
        self, client: ProviderClient, config: ProviderConfig, request: ProviderRequest
    ) -> ProviderResponse:
        timeout = float(self._settings.request_timeout)
        async with self._semaphore(config.id):
            try:
                return await asyncio.wait_for(client.call(config, request), timeout=timeout)
            except asyncio.TimeoutError as exc:
                raise TransientProviderError(
                    f"{config.name}: no response within {timeout:.1f}s", provider_id=config.id
                ) from exc

    def _spend_budget(self, config: ProviderConfig, user_id: Optional[str]) -> None:
        checks = []
        overrides = budget_endpoints(config)
        for endpoint, max_requests, window_ms in overrides:
            self._limiter.ensure_rule(RateLimitScope.GLOBAL, endpoint, max_requests, window_ms)
            checks.append((RateLimitScope.GLOBAL, endpoint, None))
        if not overrides:
            checks.append((RateLimitScope.GLOBAL, config.kind.value, None))
        if user_id:
            checks.append((RateLimitScope.USER, config.kind.value, user_id))

        denied = self._limiter.try_acquire_all(checks)
        if denied is not None:
            scope, endpoint, uid = denied
            retry_after = self._limiter.retry_after(scope, endpoint, user_id=uid)
            raise RateLimited(f"rate limit reached for {scope.value}:{endpoint}", retry_after=retry_after)

    def _record_usage(
        self, config: ProviderConfig, request: ProviderRequest, response: ProviderResponse
    ) -> None:
        if self._usage is None:
            return
        try:
            self._usage.record_usage(
                provider_id=config.id,
                provider_type=config.type,
                kind=config.kind.value,
                user_id=request.user_id,
                model_name=response.model,
                tokens_used=response.tokens_used,
                metadata={"sources": len(response.sources)},
            )
        except Exception as exc:
            logger.warning("failed to record usage for provider %s: %s", config.id, exc)

    @staticmethod
    def _citations(config: ProviderConfig, response: ProviderResponse) -> List[Citation]:
        citations: List[Citation] = []
        seen = set()
        for source in response.sources:
            if not source.url or source.url in seen:
                continue
            seen.add(source.url)
            snippet = source.snippet or (source.content or "")[:_CITATION_SNIPPET_CHARS]
            citations.append(
                Citation(
                    url=source.url,
                    title=source.title,
                    content_snippet=snippet,
                    search_provider_id=config.id if config.kind == ProviderKind.SEARCH else None,
                )
            )
        return citations
