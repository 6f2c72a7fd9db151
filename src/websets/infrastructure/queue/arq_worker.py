from __future__ import annotations

import os
from typing import Any, Dict, Optional

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings

from websets.application.engine import WebsetsEngine
from websets.utils.logging_config import LogFiles, Logger


def _redis_settings() -> RedisSettings:
    return RedisSettings(
        host=os.getenv("WEBSETS_REDIS_HOST", "127.0.0.1"),
        port=int(os.getenv("WEBSETS_REDIS_PORT", "6379")),
        database=int(os.getenv("WEBSETS_REDIS_DB", "0")),
        password=os.getenv("WEBSETS_REDIS_PASSWORD") or None,
    )


class ArqLauncher:
    """Launcher that hands job ids to the arq worker instead of running them in-process."""

    def __init__(self, function_name: str, redis_settings: Optional[RedisSettings] = None):
        self.function_name = function_name
        self._redis_settings = redis_settings or _redis_settings()
        self._pool: Optional[ArqRedis] = None

    async def __call__(self, job_id: str) -> None:
        if self._pool is None:
            self._pool = await create_pool(self._redis_settings)
        job = await self._pool.enqueue_job(self.function_name, job_id, _job_id=f"{self.function_name}:{job_id}")
        Logger.info(
            f"enqueued {self.function_name} for {job_id} (arq job {job.job_id if job else 'duplicate'})",
            file=LogFiles.ENRICHMENT if self.function_name == "enrichment_job" else LogFiles.EXPORT,
        )

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None


def queued_engine(db_url: Optional[str] = None) -> WebsetsEngine:
    """Engine whose jobs are executed by the arq worker."""
    return WebsetsEngine(
        db_url,
        enrichment_launcher=ArqLauncher("enrichment_job"),
        export_launcher=ArqLauncher("export_job"),
    )


async def startup(ctx) -> None:
    Logger.init()
    ctx["engine"] = WebsetsEngine()


async def shutdown(ctx) -> None:
    engine: Optional[WebsetsEngine] = ctx.get("engine")
    if engine is not None:
        await engine.aclose()
    Logger.close()


async def enrichment_job(ctx, job_id: str) -> Dict[str, Any]:
    """Run every row of an enrichment job to a terminal state."""
    engine: WebsetsEngine = ctx["engine"]
    job = await engine.orchestrator.run_job(job_id)
    return {
        "job_id": job.id,
        "status": job.status.value,
        "completed_rows": job.completed_rows,
        "failed_rows": job.failed_rows,
    }


async def export_job(ctx, export_id: str) -> Dict[str, Any]:
    engine: WebsetsEngine = ctx["engine"]
    export = await engine.exporter.run_export(export_id)
    return {"id": export.id, **export.to_status()}


class WorkerSettings:
    functions = [enrichment_job, export_job]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = _redis_settings()
    max_jobs = int(os.getenv("WEBSETS_WORKER_MAX_JOBS", "10"))
    job_timeout = int(os.getenv("WEBSETS_WORKER_JOB_TIMEOUT", "3600"))
