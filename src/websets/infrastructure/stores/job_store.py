from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from loguru import logger
from sqlalchemy import desc, select

from websets.domain.enrichment import (
    EnrichmentJob,
    JobStatus,
    RowFailure,
    compute_progress,
)
from websets.domain.errors import NotFoundError
from websets.infrastructure.stores.models import Base, EnrichmentJobModel
from websets.infrastructure.stores.sqlalchemy_db import SessionProvider, get_db_url


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EnrichmentJobStore:
    """Enrichment job records and their row-level progress."""

    def __init__(self, db_url: Optional[str] = None, *, auto_create_schema: bool = True):
        self.db_url = db_url or get_db_url()
        self._provider = SessionProvider(self.db_url)
        if auto_create_schema:
            Base.metadata.create_all(self._provider.engine)

    def create_job(
        self,
        *,
        webset_id: str,
        column: str,
        rows: Sequence[int],
        prompt: Optional[str] = None,
        llm_provider_id: Optional[str] = None,
        search_provider_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> EnrichmentJob:
        now = _utcnow()
        row = EnrichmentJobModel(
            id=uuid.uuid4().hex,
            webset_id=webset_id,
            column_id=column,
            rows_json=json.dumps([int(r) for r in rows]),
            prompt=prompt,
            status=JobStatus.PENDING.value,
            progress=0,
            total_rows=len(rows),
            completed_rows=0,
            llm_provider_id=llm_provider_id,
            search_provider_id=search_provider_id,
            user_id=user_id,
            cancel_requested=False,
            failures_json="[]",
            created_at=now,
            updated_at=now,
        )
        with self._provider.session() as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_job(row)

    def get_job(self, job_id: str) -> Optional[EnrichmentJob]:
        with self._provider.session() as session:
            row = session.get(EnrichmentJobModel, str(job_id))
            return self._to_job(row) if row else None

    def list_jobs(self, *, webset_id: Optional[str] = None, limit: int = 50) -> List[EnrichmentJob]:
        with self._provider.session() as session:
            stmt = select(EnrichmentJobModel)
            if webset_id:
                stmt = stmt.where(EnrichmentJobModel.webset_id == webset_id)
            stmt = stmt.order_by(desc(EnrichmentJobModel.created_at)).limit(max(1, int(limit)))
            return [self._to_job(r) for r in session.execute(stmt).scalars().all()]

    def mark_running(self, job_id: str) -> EnrichmentJob:
        with self._provider.session() as session:
            row = self._require(session, job_id)
            if row.status == JobStatus.PENDING.value:
                now = _utcnow()
                row.status = JobStatus.RUNNING.value
                row.started_at = now
                row.updated_at = now
                session.commit()
                session.refresh(row)
            return self._to_job(row)

    def record_rows(
        self,
        job_id: str,
        *,
        count: int = 1,
        failures: Sequence[RowFailure] = (),
        terminal_status: Optional[JobStatus] = None,
        error: Optional[str] = None,
    ) -> EnrichmentJob:
        """Count rows as done (successful or not). ``completed_rows`` never passes ``total_rows``.

        When the count reaches ``total_rows`` and ``terminal_status`` is given,
        the job ends in the same commit, so no reader sees every row done on a
        job that is still running.
        """
        if terminal_status is not None and not terminal_status.is_terminal:
            raise ValueError(f"not a terminal status: {terminal_status.value}")
        with self._provider.session() as session:
            row = self._require(session, job_id)
            now = _utcnow()
            total = int(row.total_rows or 0)
            completed = min(total, int(row.completed_rows or 0) + max(0, int(count)))
            row.completed_rows = completed
            row.progress = compute_progress(completed, total)
            if failures:
                row.set_failures(row.get_failures() + [f.to_dict() for f in failures])
            if terminal_status is not None and completed >= total:
                self._end(row, terminal_status, error, now)
            row.updated_at = now
            session.commit()
            session.refresh(row)
            return self._to_job(row)

    def request_cancel(self, job_id: str) -> EnrichmentJob:
        with self._provider.session() as session:
            row = self._require(session, job_id)
            if not JobStatus(row.status).is_terminal and not row.cancel_requested:
                row.cancel_requested = True
                row.updated_at = _utcnow()
                session.commit()
                session.refresh(row)
                logger.info(f"cancellation requested for enrichment job {job_id}")
            return self._to_job(row)

    def finish(self, job_id: str, *, status: JobStatus, error: Optional[str] = None) -> EnrichmentJob:
        """End a job whose rows could not all be counted. A job already ended is left as is."""
        if not status.is_terminal:
            raise ValueError(f"not a terminal status: {status.value}")
        with self._provider.session() as session:
            row = self._require(session, job_id)
            if JobStatus(row.status).is_terminal:
                return self._to_job(row)
            now = _utcnow()
            self._end(row, status, error, now)
            row.updated_at = now
            session.commit()
            session.refresh(row)
            return self._to_job(row)

    @staticmethod
    def _end(row: EnrichmentJobModel, status: JobStatus, error: Optional[str], now: datetime) -> None:
        row.status = status.value
        if error:
            row.error = error
        if row.started_at is None:
            row.started_at = now
        row.finished_at = now

    @staticmethod
    def _require(session, job_id: str) -> EnrichmentJobModel:
        row = session.get(EnrichmentJobModel, str(job_id))
        if row is None:
            raise NotFoundError(f"enrichment job not found: {job_id}")
        return row

    @staticmethod
    def _to_job(row: EnrichmentJobModel) -> EnrichmentJob:
        return EnrichmentJob(
            id=row.id,
            webset_id=row.webset_id,
            column=row.column_id,
            rows=row.get_rows(),
            status=JobStatus(row.status),
            progress=int(row.progress or 0),
            total_rows=int(row.total_rows or 0),
            completed_rows=int(row.completed_rows or 0),
            prompt=row.prompt,
            llm_provider_id=row.llm_provider_id,
            search_provider_id=row.search_provider_id,
            user_id=row.user_id,
            cancel_requested=bool(row.cancel_requested),
            error=row.error,
            failures=[RowFailure.from_dict(f) for f in row.get_failures()],
            created_at=row.created_at,
            started_at=row.started_at,
            finished_at=row.finished_at,
        )

    def close(self) -> None:
        try:
            self._provider.engine.dispose()
        except Exception:
            pass
