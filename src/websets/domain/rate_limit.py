"""Fixed-window rate limit state machine."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Tuple

MINUTE_MS = 60_000
DAY_MS = 86_400_000


class RateLimitScope(str, Enum):
    USER = "user"
    GLOBAL = "global"


@dataclass(frozen=True)
class RateLimitState:
    scope: RateLimitScope
    endpoint: str
    max_requests: int
    window_ms: int
    current_count: int = 0
    window_start_ms: Optional[int] = None
    user_id: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.scope.value, self.user_id or "", self.endpoint)


def advance(state: RateLimitState, now_ms: int) -> Tuple[bool, RateLimitState]:
    """One acquisition attempt: roll the window if it elapsed, then count.

    Returns ``(granted, next_state)``; ``current_count`` never exceeds
    ``max_requests``.
    """
    current = state
    if current.window_start_ms is None or now_ms - current.window_start_ms >= current.window_ms:
        current = replace(current, current_count=0, window_start_ms=now_ms)
    if current.current_count < current.max_requests:
        return True, replace(current, current_count=current.current_count + 1)
    return False, current


def retry_after_ms(state: RateLimitState, now_ms: int) -> int:
    """Milliseconds until the current window ends."""
    if state.window_start_ms is None:
        return 0
    return max(0, state.window_start_ms + state.window_ms - now_ms)


def make_key(scope: RateLimitScope, user_id: Optional[str], endpoint: str) -> Tuple[str, str, str]:
    """Global scope ignores the user id: one counter per endpoint."""
    uid = (user_id or "") if scope == RateLimitScope.USER else ""
    return (scope.value, uid, endpoint)


def give_back(state: RateLimitState, window_start_ms: Optional[int]) -> RateLimitState:
    """Return one permit taken in the window that started at ``window_start_ms``.

    A permit from an earlier window is not returned; that window's counter
    is already gone.
    """
    if window_start_ms is None or state.window_start_ms != window_start_ms or state.current_count <= 0:
        return state
    return replace(state, current_count=state.current_count - 1)
