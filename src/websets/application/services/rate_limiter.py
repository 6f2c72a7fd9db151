from __future__ import annotations

import asyncio
import logging
import random
import threading
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

from websets.domain.errors import ValidationError
from websets.domain.rate_limit import (
    RateLimitScope,
    RateLimitState,
    advance,
    give_back,
    make_key,
    retry_after_ms,
)
from websets.infrastructure.stores.rate_limit_store import RateLimitStore

logger = logging.getLogger(__name__)

ScopeLike = Union[RateLimitScope, str]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _scope(value: ScopeLike) -> RateLimitScope:
    try:
        return value if isinstance(value, RateLimitScope) else RateLimitScope(str(value).lower())
    except ValueError:
        raise ValidationError(f"unsupported rate limit scope: {value}")


class RateLimiter:
    """Fixed-window limiter over persisted RateLimit rules.

    Keys without a rule are unlimited. Each acquisition is a read, a pure
    window transition and a compare-and-swap write; a per-key lock keeps
    in-process callers from racing each other and the CAS covers other
    processes sharing the database.
    """

    def __init__(
        self,
        store: RateLimitStore,
        *,
        clock: Optional[Callable[[], int]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        max_cas_attempts: int = 8,
    ) -> None:
        self._store = store
        self._clock = clock or _now_ms
        self._sleep = sleep or asyncio.sleep
        self._max_cas_attempts = max(1, int(max_cas_attempts))
        self._guard = threading.Lock()
        self._key_locks: Dict[Tuple[str, str, str], threading.Lock] = {}

    def _lock_for(self, key: Tuple[str, str, str]) -> threading.Lock:
        with self._guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def _key(self, scope: ScopeLike, endpoint: str, user_id: Optional[str]) -> Tuple[str, str, str]:
        resolved = _scope(scope)
        if not endpoint:
            raise ValidationError("endpoint is required")
        if resolved == RateLimitScope.USER and not user_id:
            raise ValidationError("user scope requires a user id")
        return make_key(resolved, user_id, endpoint)

    def configure(
        self,
        scope: ScopeLike,
        endpoint: str,
        max_requests: int,
        window_ms: int,
        *,
        user_id: Optional[str] = None,
    ) -> RateLimitState:
        self._key(scope, endpoint, user_id)
        return self._store.upsert_rule(
            scope=_scope(scope),
            endpoint=endpoint,
            max_requests=max_requests,
            window_ms=window_ms,
            user_id=user_id,
        )

    def ensure_rule(
        self,
        scope: ScopeLike,
        endpoint: str,
        max_requests: int,
        window_ms: int,
        *,
        user_id: Optional[str] = None,
    ) -> RateLimitState:
        """Make sure a rule with these limits exists; counters of an existing rule are kept."""
        key = self._key(scope, endpoint, user_id)
        state = self._store.get_state(key)
        if state is not None and state.max_requests == int(max_requests) and state.window_ms == int(window_ms):
            return state
        return self.configure(scope, endpoint, max_requests, window_ms, user_id=user_id)

    def try_acquire(self, scope: ScopeLike, endpoint: str, *, user_id: Optional[str] = None) -> bool:
        granted, _ = self._take(self._key(scope, endpoint, user_id))
        return granted

    def try_acquire_all(
        self, checks: Sequence[Tuple[ScopeLike, str, Optional[str]]]
    ) -> Optional[Tuple[ScopeLike, str, Optional[str]]]:
        """Take one permit from every ``(scope, endpoint, user_id)`` key, or from none.

        Returns the first check that was denied, after giving back the
        permits already taken for the earlier ones; ``None`` when all were granted.
        """
        keys = [self._key(scope, endpoint, uid) for scope, endpoint, uid in checks]
        taken: List[Tuple[Tuple[str, str, str], Optional[int]]] = []
        for check, key in zip(checks, keys):
            granted, window_start = self._take(key)
            if not granted:
                for done_key, done_window in reversed(taken):
                    self._give_back(done_key, done_window)
                return check
            taken.append((key, window_start))
        return None

    def _take(self, key: Tuple[str, str, str]) -> Tuple[bool, Optional[int]]:
        """One acquisition: ``(granted, window_start_ms of the window it counted in)``."""
        with self._lock_for(key):
            for _ in range(self._max_cas_attempts):
                state = self._store.get_state(key)
                if state is None:
                    return True, None
                granted, nxt = advance(state, self._clock())
                if nxt == state:
                    return granted, nxt.window_start_ms
                if self._store.compare_and_swap(state, nxt):
                    return granted, nxt.window_start_ms
        logger.warning("rate limit CAS exhausted key=%s, denying", key)
        return False, None

    def _give_back(self, key: Tuple[str, str, str], window_start_ms: Optional[int]) -> None:
        if window_start_ms is None:
            return
        with self._lock_for(key):
            for _ in range(self._max_cas_attempts):
                state = self._store.get_state(key)
                if state is None:
                    return
                nxt = give_back(state, window_start_ms)
                if nxt == state or self._store.compare_and_swap(state, nxt):
                    return
        logger.warning("rate limit CAS exhausted giving back a permit key=%s", key)

    def retry_after(self, scope: ScopeLike, endpoint: str, *, user_id: Optional[str] = None) -> float:
        """Seconds until the key's current window ends (0 when unlimited)."""
        state = self._store.get_state(self._key(scope, endpoint, user_id))
        if state is None:
            return 0.0
        return retry_after_ms(state, self._clock()) / 1000.0

    async def acquire(
        self,
        scope: ScopeLike,
        endpoint: str,
        *,
        user_id: Optional[str] = None,
        max_wait: float = 10.0,
        base_delay: float = 0.1,
    ) -> bool:
        """Wait for a permit with jittered exponential backoff, at most ``max_wait`` seconds."""
        waited = 0.0
        attempt = 0
        while True:
            if self.try_acquire(scope, endpoint, user_id=user_id):
                return True
            if waited >= max_wait:
                return False
            delay = base_delay * (2 ** attempt)
            remaining = self.retry_after(scope, endpoint, user_id=user_id)
            if remaining > 0:
                delay = min(delay, remaining)
            delay = delay * (1 + 0.25 * (2 * random.random() - 1))
            delay = max(0.001, min(delay, max_wait - waited))
            await self._sleep(delay)
            waited += delay
            attempt += 1

    def status(self, scope: ScopeLike, endpoint: str, *, user_id: Optional[str] = None) -> Dict[str, Any]:
        key = self._key(scope, endpoint, user_id)
        state = self._store.get_state(key)
        if state is None:
            return {"scope": key[0], "user_id": key[1] or None, "endpoint": endpoint, "limited": False}
        now = self._clock()
        window_open = state.window_start_ms is not None and now - state.window_start_ms < state.window_ms
        used = state.current_count if window_open else 0
        return {
            "scope": key[0],
            "user_id": key[1] or None,
            "endpoint": endpoint,
            "limited": True,
            "max_requests": state.max_requests,
            "window_ms": state.window_ms,
            "current_count": used,
            "remaining": max(0, state.max_requests - used),
            "reset_in_ms": retry_after_ms(state, now) if window_open else 0,
        }
