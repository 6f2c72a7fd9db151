from __future__ import annotations

import os
from functools import lru_cache

from websets.application.engine import WebsetsEngine


@lru_cache(maxsize=1)
def get_engine() -> WebsetsEngine:
    """Process-wide engine built from ``WEBSETS_*`` settings.

    With ``WEBSETS_JOB_BACKEND=arq`` jobs are enqueued for the arq worker,
    otherwise they run as asyncio tasks inside the API process.
    """
    if os.getenv("WEBSETS_JOB_BACKEND", "inline").strip().lower() == "arq":
        from websets.infrastructure.queue.arq_worker import queued_engine

        return queued_engine()
    return WebsetsEngine()
