from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import FakeClock
from websets.application.services.rate_limiter import RateLimiter
from websets.domain.errors import ValidationError
from websets.domain.rate_limit import RateLimitScope, RateLimitState, advance, give_back, retry_after_ms
from websets.infrastructure.stores.rate_limit_store import RateLimitStore


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(now_ms=0)


@pytest.fixture
def limiter(db_url: str, clock: FakeClock) -> RateLimiter:
    return RateLimiter(RateLimitStore(db_url=db_url), clock=clock)


def test_advance_resets_window_once_elapsed():
    state = RateLimitState(scope=RateLimitScope.GLOBAL, endpoint="llm", max_requests=1, window_ms=100)

    granted, state = advance(state, 10)
    assert granted is True
    assert state.window_start_ms == 10
    assert state.current_count == 1

    granted, same = advance(state, 50)
    assert granted is False
    assert same == state
    assert retry_after_ms(state, 50) == 60

    granted, state = advance(state, 110)
    assert granted is True
    assert state.window_start_ms == 110
    assert state.current_count == 1


def test_three_rapid_acquisitions_grant_two(limiter: RateLimiter, clock: FakeClock):
    limiter.configure("global", "llm", 2, 1000)

    assert [limiter.try_acquire("global", "llm") for _ in range(3)] == [True, True, False]

    clock.now_ms = 999
    assert limiter.try_acquire("global", "llm") is False
    assert limiter.retry_after("global", "llm") == pytest.approx(0.001)

    clock.now_ms = 1000
    assert limiter.try_acquire("global", "llm") is True
    assert limiter.status("global", "llm")["remaining"] == 1


def test_counter_never_exceeds_max(limiter: RateLimiter, clock: FakeClock):
    limiter.configure("global", "search", 3, 500)
    for step in range(20):
        clock.now_ms = step * 10
        limiter.try_acquire("global", "search")
        state = limiter.status("global", "search")
        assert state["current_count"] <= 3


def test_missing_rule_is_unlimited(limiter: RateLimiter):
    assert all(limiter.try_acquire("global", "unconfigured") for _ in range(50))
    assert limiter.retry_after("global", "unconfigured") == 0.0
    assert limiter.status("global", "unconfigured")["limited"] is False


def test_global_scope_ignores_user_id(limiter: RateLimiter):
    limiter.configure("global", "llm", 1, 1000)

    assert limiter.try_acquire("global", "llm", user_id="alice") is True
    assert limiter.try_acquire("global", "llm", user_id="bob") is False


def test_user_scope_counts_per_user(limiter: RateLimiter):
    limiter.configure("user", "llm", 1, 1000, user_id="alice")
    limiter.configure("user", "llm", 1, 1000, user_id="bob")

    assert limiter.try_acquire("user", "llm", user_id="alice") is True
    assert limiter.try_acquire("user", "llm", user_id="alice") is False
    assert limiter.try_acquire("user", "llm", user_id="bob") is True


def test_user_scope_requires_user_id(limiter: RateLimiter):
    with pytest.raises(ValidationError):
        limiter.try_acquire("user", "llm")
    with pytest.raises(ValidationError):
        limiter.configure("user", "llm", 1, 1000)


def test_ensure_rule_keeps_live_counters(limiter: RateLimiter):
    limiter.configure("global", "llm:abc", 2, 60_000)
    limiter.try_acquire("global", "llm:abc")

    limiter.ensure_rule("global", "llm:abc", 2, 60_000)
    assert limiter.status("global", "llm:abc")["current_count"] == 1

    limiter.ensure_rule("global", "llm:abc", 5, 60_000)
    status = limiter.status("global", "llm:abc")
    assert status["max_requests"] == 5
    assert status["current_count"] == 1


@pytest.mark.asyncio
async def test_acquire_waits_for_next_window(db_url: str, clock: FakeClock):
    slept = []

    async def fake_sleep(delay: float) -> None:
        slept.append(delay)
        clock.now_ms += int(delay * 1000) + 1

    limiter = RateLimiter(RateLimitStore(db_url=db_url), clock=clock, sleep=fake_sleep)
    limiter.configure("global", "llm", 1, 200)
    assert limiter.try_acquire("global", "llm") is True

    assert await limiter.acquire("global", "llm", max_wait=5.0, base_delay=0.05) is True
    assert slept
    assert clock.now_ms >= 200


@pytest.mark.asyncio
async def test_acquire_gives_up_after_max_wait(db_url: str, clock: FakeClock):
    async def fake_sleep(delay: float) -> None:
        return None

    limiter = RateLimiter(RateLimitStore(db_url=db_url), clock=clock, sleep=fake_sleep)
    limiter.configure("global", "llm", 0, 60_000)

    assert await limiter.acquire("global", "llm", max_wait=0.2, base_delay=0.05) is False


def test_give_back_only_within_the_same_window():
    state = RateLimitState(
        scope=RateLimitScope.GLOBAL, endpoint="llm", max_requests=2, window_ms=100, current_count=2, window_start_ms=10
    )

    assert give_back(state, 10).current_count == 1
    assert give_back(state, 0) == state
    assert give_back(state, None) == state
    emptied = RateLimitState(
        scope=RateLimitScope.GLOBAL, endpoint="llm", max_requests=2, window_ms=100, window_start_ms=10
    )
    assert give_back(emptied, 10) == emptied


def test_parallel_acquisitions_never_overshoot(db_url: str, clock: FakeClock):
    # two limiters share one database, as two worker processes would
    limiters = [RateLimiter(RateLimitStore(db_url=db_url), clock=clock) for _ in range(2)]
    limiters[0].configure("global", "llm", 3, 60_000)
    barrier = threading.Barrier(8)

    def attempt(i: int) -> bool:
        barrier.wait()
        return limiters[i % 2].try_acquire("global", "llm")

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(attempt, range(8)))

    assert results.count(True) == 3
    assert limiters[0].status("global", "llm")["current_count"] == 3


def test_acquire_all_takes_every_permit_or_none(limiter: RateLimiter):
    limiter.configure("global", "llm", 10, 60_000)
    limiter.configure("user", "llm", 0, 60_000, user_id="bob")
    limiter.configure("user", "llm", 1, 60_000, user_id="alice")

    denied = limiter.try_acquire_all([("global", "llm", None), ("user", "llm", "bob")])

    assert denied == ("user", "llm", "bob")
    assert limiter.status("global", "llm")["current_count"] == 0

    assert limiter.try_acquire_all([("global", "llm", None), ("user", "llm", "alice")]) is None
    assert limiter.status("global", "llm")["current_count"] == 1
    assert limiter.status("user", "llm", user_id="alice")["remaining"] == 0
