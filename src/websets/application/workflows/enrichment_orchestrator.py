# src/websets/application/workflows/enrichment_orchestrator.py
"""
Enrichment Orchestrator.

Turns "fill column C for rows R of webset W" into per-row provider calls:

1. Validate the request and create a pending job
2. Resolve the LLM provider (and the optional search provider)
3. Dispatch rows through a bounded worker pool
4. Per row: search for sources, ask the LLM, write the cell as a new version
5. Count every row as done exactly once, successful or not

Rate-limited rows go back on the queue after a jittered delay; everything
else that goes wrong with a single row is recorded against that row. A
version conflict or an orchestration failure fails the whole job.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

from websets.application.services.prompt_builder import (
    build_messages,
    build_search_query,
    parse_extraction,
    row_context,
)
from websets.application.services.provider_gateway import ProviderGateway
from websets.domain.enrichment import EnrichmentJob, JobStatus, RowFailure, RowFailureKind
from websets.domain.errors import (
    ConflictError,
    NotFoundError,
    OrchestrationFailure,
    PermanentProviderError,
    RateLimited,
    TransientProviderError,
    ValidationError,
)
from websets.domain.provider import ProviderConfig, ProviderKind, ProviderRef, ProviderRequest
from websets.domain.webset import Citation, ColumnDefinition, Webset
from websets.infrastructure.stores.job_store import EnrichmentJobStore
from websets.infrastructure.stores.webset_store import WebsetStore
from websets.utils.logging_config import LogFiles, Logger, trace_context
from websets.utils.settings import EngineSettings

logger = logging.getLogger(__name__)

Launcher = Callable[[str], Any]

_MAX_REQUEUE_DELAY = 60.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_rows(rows: Sequence[Any], row_count: int) -> List[int]:
    """Validate target rows and collapse duplicates, keeping first-seen order."""
    if not rows:
        raise ValidationError("rows must not be empty")
    result: List[int] = []
    seen: Set[int] = set()
    for raw in rows:
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise ValidationError(f"row index must be an integer: {raw!r}")
        if raw < 0 or raw >= row_count:
            raise ValidationError(f"row {raw} is out of range [0, {row_count})")
        if raw not in seen:
            seen.add(raw)
            result.append(raw)
    return result


@dataclass
class _JobRun:
    job: EnrichmentJob
    webset: Webset
    column: ColumnDefinition
    llm: ProviderConfig
    search: Optional[ProviderConfig]
    queue: "asyncio.Queue[Tuple[int, int]]" = field(default_factory=asyncio.Queue)
    settled: Set[int] = field(default_factory=set)
    inflight: Set[int] = field(default_factory=set)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    timers: Set[asyncio.Task] = field(default_factory=set)
    citations: Dict[int, List[Citation]] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class EnrichmentOrchestrator:
    def __init__(
        self,
        webset_store: WebsetStore,
        job_store: EnrichmentJobStore,
        gateway: ProviderGateway,
        *,
        settings: Optional[EngineSettings] = None,
        launcher: Optional[Launcher] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ) -> None:
        self._websets = webset_store
        self._jobs = job_store
        self._gateway = gateway
        self._settings = settings or EngineSettings.from_env()
        self._launcher = launcher
        self._sleep = sleep or asyncio.sleep
        self._tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------

    async def submit(
        self,
        webset_id: str,
        column: str,
        rows: Sequence[int],
        *,
        prompt: Optional[str] = None,
        llm_provider_id: Optional[str] = None,
        search_provider_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> str:
        webset = self._websets.require_webset(webset_id)
        col = webset.find_column(column)
        if col is None:
            raise ValidationError(f"unknown column: {column}")
        target_rows = normalize_rows(rows, webset.row_count)

        job = self._jobs.create_job(
            webset_id=webset.id,
            column=col.id,
            rows=target_rows,
            prompt=(prompt or "").strip() or None,
            llm_provider_id=llm_provider_id,
            search_provider_id=search_provider_id,
            user_id=user_id,
        )
        Logger.info(
            f"job {job.id} submitted webset={webset.id} column={col.id} rows={len(target_rows)}",
            file=LogFiles.ENRICHMENT,
        )

        try:
            self._resolve_providers(job)
        except OrchestrationFailure as exc:
            self._fail_unstarted(job, str(exc))
            return job.id

        await self._launch(job.id)
        return job.id

    def get_status(self, job_id: str) -> EnrichmentJob:
        job = self._jobs.get_job(job_id)
        if job is None:
            raise NotFoundError(f"enrichment job not found: {job_id}")
        return job

    def cancel(self, job_id: str) -> EnrichmentJob:
        return self._jobs.request_cancel(job_id)

    def list_jobs(self, webset_id: Optional[str] = None, *, limit: int = 50) -> List[EnrichmentJob]:
        return self._jobs.list_jobs(webset_id=webset_id, limit=limit)

    async def join(self, job_id: str) -> EnrichmentJob:
        """Wait for an in-process job to finish and return its final record."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)
        return self.get_status(job_id)

    async def run_job(self, job_id: str) -> EnrichmentJob:
        with trace_context(job_id):
            job = self.get_status(job_id)
            if job.status.is_terminal:
                return job
            try:
                llm, search = self._resolve_providers(job)
                webset = self._websets.require_webset(job.webset_id)
                column = webset.find_column(job.column)
                if column is None:
                    raise OrchestrationFailure(f"column {job.column} no longer exists")
            except (OrchestrationFailure, NotFoundError) as exc:
                return self._fail_unstarted(job, str(exc))

            run = _JobRun(job=job, webset=webset, column=column, llm=llm, search=search)
            for row in job.rows:
                run.queue.put_nowait((row, 0))

            workers = [
                asyncio.create_task(self._worker(run))
                for _ in range(min(max(1, self._settings.worker_concurrency), len(job.rows)))
            ]
            try:
                await run.done.wait()
            finally:
                pending = workers + list(run.timers)
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

            final = self.get_status(job_id)
            if not final.status.is_terminal:
                final = self._jobs.finish(
                    job_id, status=JobStatus.FAILED, error=run.error or "job stopped before every row was counted"
                )
            Logger.info(
                f"job {job_id} {final.status.value} completed_rows={final.completed_rows}/{final.total_rows} "
                f"failed_rows={final.failed_rows}",
                file=LogFiles.ENRICHMENT,
            )
            return final

    # ------------------------------------------------------------------
    # dispatch
    # ------------------------------------------------------------------

    async def _launch(self, job_id: str) -> None:
        if self._launcher is not None:
            launched = self._launcher(job_id)
            if inspect.isawaitable(launched):
                await launched
            return
        task = asyncio.create_task(self.run_job(job_id))
        self._tasks[job_id] = task
        task.add_done_callback(lambda t: self._on_task_done(job_id, t))

    def _on_task_done(self, job_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(job_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("enrichment job %s crashed: %s", job_id, exc)
            Logger.error(f"job {job_id} crashed: {exc}", file=LogFiles.ERROR)

    def _resolve_providers(self, job: EnrichmentJob) -> Tuple[ProviderConfig, Optional[ProviderConfig]]:
        llm = self._gateway.resolve(ProviderRef(ProviderKind.LLM, job.llm_provider_id))
        search = self._gateway.resolve_optional(ProviderRef(ProviderKind.SEARCH, job.search_provider_id))
        return llm, search

    async def _worker(self, run: _JobRun) -> None:
        while True:
            row, requeues = await run.queue.get()
            try:
                await self._process(run, row, requeues)
            except Exception as exc:
                logger.exception("worker for job %s stopped at row %s", run.job.id, row)
                self._halt(run, f"unexpected error at row {row}: {exc}")
                return

    async def _process(self, run: _JobRun, row: int, requeues: int) -> None:
        if row in run.settled:
            return
        if run.failed:
            self._settle(run, [row], RowFailureKind.ABORTED, run.error or "job failed")
            return
        if self._jobs.get_job(run.job.id).cancel_requested:
            self._settle(run, [row], RowFailureKind.CANCELLED, "job cancelled")
            return

        self._jobs.mark_running(run.job.id)
        run.inflight.add(row)
        try:
            await self._enrich_row(run, row)
            self._settle(run, [row])
        except RateLimited as exc:
            self._requeue(run, row, requeues, exc)
        except TransientProviderError as exc:
            self._settle(run, [row], RowFailureKind.TRANSIENT_EXHAUSTED, str(exc))
        except (PermanentProviderError, ValidationError) as exc:
            self._settle(run, [row], RowFailureKind.PERMANENT, str(exc))
        except (ConflictError, OrchestrationFailure) as exc:
            self._abort(run, row, str(exc))
        except Exception as exc:
            logger.exception("unexpected error enriching row %s of job %s", row, run.job.id)
            self._settle(run, [row], RowFailureKind.PERMANENT, f"unexpected error: {exc}")
        finally:
            run.inflight.discard(row)

    def _requeue(self, run: _JobRun, row: int, requeues: int, exc: RateLimited) -> None:
        if requeues >= self._settings.max_rate_limit_requeues:
            self._settle(
                run,
                [row],
                RowFailureKind.RATE_LIMITED,
                f"still rate limited after {requeues} requeues: {exc}",
            )
            return
        delay = max(float(exc.retry_after or 0.0), self._settings.requeue_base_delay * (2 ** requeues))
        delay = min(_MAX_REQUEUE_DELAY, delay) * (1 + 0.25 * (2 * random.random() - 1))
        Logger.debug(f"row {row} rate limited, requeue {requeues + 1} in {delay:.2f}s", file=LogFiles.ENRICHMENT)
        timer = asyncio.create_task(self._put_later(run, row, requeues + 1, delay))
        run.timers.add(timer)
        timer.add_done_callback(run.timers.discard)

    async def _put_later(self, run: _JobRun, row: int, requeues: int, delay: float) -> None:
        await self._sleep(max(0.0, delay))
        run.queue.put_nowait((row, requeues))

    def _abort(self, run: _JobRun, row: int, message: str) -> None:
        """Fail the job: this row and every row not yet dispatched are done as aborted."""
        if run.error is None:
            run.error = message
            Logger.error(f"job {run.job.id} failed at row {row}: {message}", file=LogFiles.ERROR)
        pending = [r for r in run.job.rows if r not in run.settled and (r not in run.inflight or r == row)]
        self._settle(run, pending, RowFailureKind.ABORTED, message)

    def _settle(
        self,
        run: _JobRun,
        rows: Sequence[int],
        kind: Optional[RowFailureKind] = None,
        message: str = "",
    ) -> None:
        fresh = [r for r in rows if r not in run.settled]
        if not fresh:
            return
        run.settled.update(fresh)
        for r in fresh:
            run.citations.pop(r, None)
        failures = [RowFailure(row=r, kind=kind, message=message) for r in fresh] if kind else []
        last = len(run.settled) >= len(run.job.rows)
        terminal = None
        if last:
            terminal = JobStatus.FAILED if run.failed else JobStatus.COMPLETED
        try:
            self._jobs.record_rows(
                run.job.id, count=len(fresh), failures=failures, terminal_status=terminal, error=run.error
            )
        except Exception as exc:
            logger.exception("could not record rows %s of job %s", fresh, run.job.id)
            self._halt(run, f"could not record progress: {exc}")
            return
        if last:
            run.done.set()

    def _halt(self, run: _JobRun, message: str) -> None:
        """Stop dispatching; ``run_job`` then ends the job as failed."""
        if run.error is None:
            run.error = message
        Logger.error(f"job {run.job.id} halted: {message}", file=LogFiles.ERROR)
        run.done.set()

    # ------------------------------------------------------------------
    # one row
    # ------------------------------------------------------------------

    async def _enrich_row(self, run: _JobRun, row: int) -> None:
        job, webset, column = run.job, run.webset, run.column
        cells = self._websets.get_cells(webset.id)
        context = row_context(webset, cells, row, exclude=column.id)

        # kept across rate-limit requeues
        citations = run.citations.get(row)
        if citations is None:
            citations = []
            if run.search is not None:
                found = await self._gateway.call(
                    run.search,
                    ProviderRequest(
                        query=build_search_query(column, context, job.prompt),
                        num_results=5,
                        user_id=job.user_id,
                    ),
                )
                citations = found.citations
            run.citations[row] = citations

        answer = await self._gateway.call(
            run.llm,
            ProviderRequest(
                messages=build_messages(
                    webset=webset, column=column, context=context, citations=citations, prompt=job.prompt
                ),
                temperature=0.2,
                user_id=job.user_id,
            ),
        )
        extraction = parse_extraction(answer.content)

        version = self._websets.write_cell(
            webset.id,
            row=row,
            column=column.id,
            value=extraction.value,
            confidence=extraction.confidence,
            metadata={
                "job_id": job.id,
                "llm_provider_id": run.llm.id,
                "search_provider_id": run.search.id if run.search else None,
                "model": answer.response.model,
                "prompt": job.prompt,
                "explanation": extraction.explanation,
                "enriched_at": _utcnow().isoformat(),
            },
            citations=citations,
            changed_by=job.user_id or "enrichment",
            change_description=f"Enrichment job {job.id}: row {row}",
        )
        Logger.info(
            f"row {row} -> v{version.version} value={extraction.value!r} citations={len(citations)}",
            file=LogFiles.ENRICHMENT,
        )

    def _fail_unstarted(self, job: EnrichmentJob, message: str) -> EnrichmentJob:
        """Fail a job before dispatch; every row is counted as aborted."""
        remaining = max(0, job.total_rows - job.completed_rows)
        pending = job.rows if remaining and job.completed_rows == 0 else []
        Logger.error(f"job {job.id} failed before dispatch: {message}", file=LogFiles.ERROR)
        return self._jobs.record_rows(
            job.id,
            count=remaining,
            failures=[RowFailure(row=r, kind=RowFailureKind.ABORTED, message=message) for r in pending],
            terminal_status=JobStatus.FAILED,
            error=message,
        )
