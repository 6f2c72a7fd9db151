from __future__ import annotations

import asyncio

import pytest

from conftest import FakeClock, FakeLLMClient, FakeSearchClient, make_settings, no_sleep
from websets.application.services.circuit_breaker import CircuitBreakers
from websets.application.services.provider_gateway import ProviderGateway, budget_endpoints
from websets.application.services.rate_limiter import RateLimiter
from websets.domain.errors import (
    NoProviderAvailable,
    PermanentProviderError,
    RateLimited,
    TransientProviderError,
)
from websets.domain.provider import ProviderConfig, ProviderKind, ProviderRef, ProviderRequest, SourceItem
from websets.infrastructure.providers.registry import ProviderClientRegistry
from websets.infrastructure.stores.provider_store import ProviderStore
from websets.infrastructure.stores.provider_usage_store import ProviderUsageStore
from websets.infrastructure.stores.rate_limit_store import RateLimitStore


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(now_ms=1_000)


@pytest.fixture
def providers(db_url: str) -> ProviderStore:
    return ProviderStore(db_url=db_url)


@pytest.fixture
def usage(db_url: str) -> ProviderUsageStore:
    return ProviderUsageStore(db_url=db_url)


@pytest.fixture
def limiter(db_url: str, clock: FakeClock) -> RateLimiter:
    return RateLimiter(RateLimitStore(db_url=db_url), clock=clock)


@pytest.fixture
def make_gateway(tmp_path, providers, limiter, usage, registry):
    def _make(breakers=None, **settings) -> ProviderGateway:
        return ProviderGateway(
            providers,
            limiter,
            registry=registry,
            usage_store=usage,
            settings=make_settings(tmp_path / "exports", **settings),
            sleep=no_sleep,
            breakers=breakers,
        )

    return _make


def _llm(providers: ProviderStore, **extra):
    payload = {"name": "primary", "kind": "llm", "type": "openai", "api_key": "sk-test-000111"}
    payload.update(extra)
    return providers.upsert_provider(payload=payload)


def test_budget_endpoints_follow_provider_limits():
    config = ProviderConfig(id="p1", name="x", kind=ProviderKind.LLM, type="openai", rate_limit=10, daily_limit=500)
    assert budget_endpoints(config) == [("llm:p1", 10, 60_000), ("llm:p1:daily", 500, 86_400_000)]

    bare = ProviderConfig(id="p2", name="y", kind=ProviderKind.SEARCH, type="exa")
    assert budget_endpoints(bare) == []


def test_resolve_prefers_lowest_priority_active(make_gateway, providers):
    _llm(providers, name="backup", priority=50)
    best = _llm(providers, name="best", priority=5)
    _llm(providers, name="disabled", priority=1, is_active=False)
    gateway = make_gateway()

    config = gateway.resolve(ProviderRef(ProviderKind.LLM))

    assert config.id == best["id"]
    assert config.api_key == "sk-test-000111"


def test_resolve_explicit_provider_checks_kind_and_state(make_gateway, providers):
    search = providers.upsert_provider(payload={"name": "exa", "kind": "search", "type": "exa"})
    off = _llm(providers, is_active=False)
    gateway = make_gateway()

    with pytest.raises(NoProviderAvailable):
        gateway.resolve(ProviderRef(ProviderKind.LLM, search["id"]))
    with pytest.raises(NoProviderAvailable):
        gateway.resolve(ProviderRef(ProviderKind.LLM, off["id"]))
    with pytest.raises(NoProviderAvailable):
        gateway.resolve(ProviderRef(ProviderKind.LLM, "missing"))
    with pytest.raises(NoProviderAvailable):
        gateway.resolve(ProviderRef(ProviderKind.LLM))

    assert gateway.resolve_optional(ProviderRef(ProviderKind.SEARCH)).id == search["id"]
    providers.upsert_provider(payload={"is_active": False}, provider_id=search["id"])
    assert gateway.resolve_optional(ProviderRef(ProviderKind.SEARCH)) is None


@pytest.mark.asyncio
async def test_complete_records_usage(make_gateway, providers, usage, fake_llm):
    _llm(providers)
    gateway = make_gateway()

    result = await gateway.complete([{"role": "user", "content": "hi"}], user_id="u1")

    assert result.kind == ProviderKind.LLM
    assert result.attempts == 1
    assert '"value"' in result.content
    assert len(fake_llm.calls) == 1
    summary = usage.summarize(days=1)
    assert summary["totals"] == {"calls": 1, "tokens_used": 42}


@pytest.mark.asyncio
async def test_transient_errors_are_retried(make_gateway, providers, fake_llm):
    _llm(providers)

    def flaky(n, request):
        if n < 3:
            raise TransientProviderError("502 from upstream")
        return None

    fake_llm.behaviour = flaky
    gateway = make_gateway(max_retries=2)

    result = await gateway.complete([{"role": "user", "content": "hi"}])

    assert result.attempts == 3
    assert len(fake_llm.calls) == 3


@pytest.mark.asyncio
async def test_transient_errors_exhaust_retry_budget(make_gateway, providers, fake_llm):
    _llm(providers)

    def broken(n, request):
        raise TransientProviderError("connection reset")

    fake_llm.behaviour = broken
    gateway = make_gateway(max_retries=1)

    with pytest.raises(TransientProviderError):
        await gateway.complete([{"role": "user", "content": "hi"}])
    assert len(fake_llm.calls) == 2


@pytest.mark.asyncio
async def test_permanent_and_rate_limit_errors_are_not_retried(make_gateway, providers, fake_llm):
    _llm(providers)
    gateway = make_gateway(max_retries=3)

    def rejected(n, request):
        raise PermanentProviderError("invalid API key")

    fake_llm.behaviour = rejected
    with pytest.raises(PermanentProviderError):
        await gateway.complete([{"role": "user", "content": "hi"}])
    assert len(fake_llm.calls) == 1

    def throttled(n, request):
        raise RateLimited("429", retry_after=2.0)

    fake_llm.behaviour = throttled
    with pytest.raises(RateLimited) as info:
        await gateway.complete([{"role": "user", "content": "hi"}])
    assert info.value.retry_after == 2.0
    assert len(fake_llm.calls) == 2


@pytest.mark.asyncio
async def test_slow_provider_times_out_as_transient(make_gateway, providers):
    class SlowClient(FakeLLMClient):
        async def call(self, config, request):
            await asyncio.sleep(1.0)
            return await super().call(config, request)

    record = _llm(providers, type="claude")
    gateway = make_gateway(request_timeout=0.05, max_retries=0)
    gateway._registry.register("claude", SlowClient())

    with pytest.raises(TransientProviderError):
        await gateway.call(
            ProviderConfig.from_record(record), ProviderRequest(messages=[{"role": "user", "content": "hi"}])
        )


@pytest.mark.asyncio
async def test_provider_rate_limit_override_denies_with_retry_after(make_gateway, providers, clock):
    _llm(providers, rate_limit=1)
    gateway = make_gateway()

    await gateway.complete([{"role": "user", "content": "one"}])
    with pytest.raises(RateLimited) as info:
        await gateway.complete([{"role": "user", "content": "two"}])
    assert info.value.retry_after == pytest.approx(60.0)

    clock.now_ms += 60_000
    await gateway.complete([{"role": "user", "content": "three"}])


@pytest.mark.asyncio
async def test_global_kind_budget_applies_without_overrides(make_gateway, providers, limiter):
    _llm(providers)
    limiter.configure("global", "llm", 1, 60_000)
    gateway = make_gateway()

    await gateway.complete([{"role": "user", "content": "one"}])
    with pytest.raises(RateLimited):
        await gateway.complete([{"role": "user", "content": "two"}])


@pytest.mark.asyncio
async def test_user_budget_is_separate_per_user(make_gateway, providers, limiter):
    _llm(providers)
    limiter.configure("user", "llm", 1, 60_000, user_id="alice")
    gateway = make_gateway()

    await gateway.complete([{"role": "user", "content": "a"}], user_id="alice")
    with pytest.raises(RateLimited):
        await gateway.complete([{"role": "user", "content": "b"}], user_id="alice")
    await gateway.complete([{"role": "user", "content": "c"}], user_id="bob")


@pytest.mark.asyncio
async def test_search_citations_are_deduplicated(make_gateway, providers, fake_search: FakeSearchClient):
    search = providers.upsert_provider(payload={"name": "exa", "kind": "search", "type": "exa"})
    fake_search.sources = [
        SourceItem(url="https://a.example", title="A", snippet="first"),
        SourceItem(url="https://a.example", title="A again", snippet="dup"),
        SourceItem(url="", title="no url"),
        SourceItem(url="https://b.example", title="B", content="long body text"),
    ]
    gateway = make_gateway()

    result = await gateway.search("acme contact email")

    assert [c.url for c in result.citations] == ["https://a.example", "https://b.example"]
    assert result.citations[1].content_snippet == "long body text"
    assert all(c.search_provider_id == search["id"] for c in result.citations)


@pytest.mark.asyncio
async def test_unsupported_provider_type_is_permanent(db_url, tmp_path, providers, limiter):
    _llm(providers, type="gemini")
    gateway = ProviderGateway(
        providers,
        limiter,
        registry=ProviderClientRegistry({"openai": FakeLLMClient()}),
        settings=make_settings(tmp_path),
        sleep=no_sleep,
    )

    with pytest.raises(PermanentProviderError):
        await gateway.complete([{"role": "user", "content": "hi"}])


@pytest.mark.asyncio
async def test_close_closes_clients(make_gateway, fake_llm):
    gateway = make_gateway()
    await gateway.close()
    assert fake_llm.closed is True


@pytest.mark.asyncio
async def test_denied_user_budget_keeps_global_permit(make_gateway, providers, limiter, fake_llm):
    _llm(providers)
    limiter.configure("global", "llm", 10, 60_000)
    limiter.configure("user", "llm", 0, 60_000, user_id="bob")
    gateway = make_gateway()

    for _ in range(4):
        with pytest.raises(RateLimited):
            await gateway.complete([{"role": "user", "content": "hi"}], user_id="bob")

    assert fake_llm.calls == []
    assert limiter.status("global", "llm")["current_count"] == 0


@pytest.mark.asyncio
async def test_open_circuit_blocks_calls_until_reset_timeout(make_gateway, providers, limiter, fake_llm):
    record = _llm(providers)
    limiter.configure("global", "llm", 10, 60_000)
    now = [0.0]
    breakers = CircuitBreakers(failure_threshold=2, reset_timeout=30.0, clock=lambda: now[0])
    gateway = make_gateway(breakers=breakers, max_retries=0)

    def broken(n, request):
        raise TransientProviderError("connection reset")

    fake_llm.behaviour = broken
    for _ in range(2):
        with pytest.raises(TransientProviderError):
            await gateway.complete([{"role": "user", "content": "hi"}])
    assert breakers.status(record["id"])["state"] == "open"

    with pytest.raises(TransientProviderError, match="circuit open"):
        await gateway.complete([{"role": "user", "content": "hi"}])
    assert len(fake_llm.calls) == 2
    assert limiter.status("global", "llm")["current_count"] == 2

    now[0] = 30.0
    assert breakers.status(record["id"])["state"] == "half_open"
    fake_llm.behaviour = None
    result = await gateway.complete([{"role": "user", "content": "hi"}])

    assert result.attempts == 1
    status = breakers.status(record["id"])
    assert status["state"] == "closed"
    assert status["consecutive_failures"] == 0
    assert status["total_failures"] == 2


@pytest.mark.asyncio
async def test_open_circuit_falls_back_to_next_provider(make_gateway, providers):
    best = _llm(providers, name="best", priority=1)
    backup = _llm(providers, name="backup", priority=2)
    gateway = make_gateway()

    for _ in range(5):
        gateway.breakers.record_failure(best["id"], "upstream 503")

    assert gateway.resolve(ProviderRef(ProviderKind.LLM)).id == backup["id"]
    assert gateway.resolve(ProviderRef(ProviderKind.LLM, best["id"])).id == best["id"]

    gateway.breakers.reset(best["id"])
    assert gateway.resolve(ProviderRef(ProviderKind.LLM)).id == best["id"]
