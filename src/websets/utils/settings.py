"""
Engine settings loaded from ``WEBSETS_*`` environment variables.

Entry points (API, CLI, worker) call ``load_dotenv`` first, so values from a
local ``.env`` file are visible here too.
"""

from __future__ import annotations

import os
from dataclasses import dataclass


def _env_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        return default


def _env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return max(minimum, float(raw))
    except ValueError:
        return default


@dataclass(frozen=True)
class EngineSettings:
    worker_concurrency: int = 4
    max_inflight_per_provider: int = 4
    request_timeout: float = 30.0
    max_retries: int = 2
    retry_base_delay: float = 1.0
    max_rate_limit_requeues: int = 5
    requeue_base_delay: float = 1.0
    max_commit_retries: int = 5
    breaker_failure_threshold: int = 5
    breaker_reset_seconds: float = 60.0
    export_dir: str = "exports"

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            worker_concurrency=_env_int("WEBSETS_WORKER_CONCURRENCY", 4, minimum=1),
            max_inflight_per_provider=_env_int("WEBSETS_MAX_INFLIGHT_PER_PROVIDER", 4, minimum=1),
            request_timeout=_env_float("WEBSETS_REQUEST_TIMEOUT", 30.0, minimum=0.1),
            max_retries=_env_int("WEBSETS_MAX_RETRIES", 2),
            retry_base_delay=_env_float("WEBSETS_RETRY_BASE_DELAY", 1.0),
            max_rate_limit_requeues=_env_int("WEBSETS_MAX_RATE_LIMIT_REQUEUES", 5),
            requeue_base_delay=_env_float("WEBSETS_REQUEUE_BASE_DELAY", 1.0),
            max_commit_retries=_env_int("WEBSETS_MAX_COMMIT_RETRIES", 5, minimum=1),
            breaker_failure_threshold=_env_int("WEBSETS_BREAKER_FAILURE_THRESHOLD", 5, minimum=1),
            breaker_reset_seconds=_env_float("WEBSETS_BREAKER_RESET_SECONDS", 60.0),
            export_dir=os.getenv("WEBSETS_EXPORT_DIR", "exports") or "exports",
        )
