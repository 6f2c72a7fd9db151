from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import desc, select

from websets.domain.enrichment import ExportJob, JobStatus
from websets.domain.errors import NotFoundError
from websets.infrastructure.stores.models import Base, ExportJobModel
from websets.infrastructure.stores.sqlalchemy_db import SessionProvider, get_db_url


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExportJobStore:
    def __init__(self, db_url: Optional[str] = None, *, auto_create_schema: bool = True):
        self.db_url = db_url or get_db_url()
        self._provider = SessionProvider(self.db_url)
        if auto_create_schema:
            Base.metadata.create_all(self._provider.engine)

    def create_export(
        self, *, webset_id: str, format: str, file_name: str, user_id: Optional[str] = None
    ) -> ExportJob:
        now = _utcnow()
        row = ExportJobModel(
            id=uuid.uuid4().hex,
            webset_id=webset_id,
            format=format,
            file_name=file_name,
            status=JobStatus.PENDING.value,
            user_id=user_id,
            created_at=now,
            updated_at=now,
        )
        with self._provider.session() as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_export(row)

    def get_export(self, export_id: str) -> Optional[ExportJob]:
        with self._provider.session() as session:
            row = session.get(ExportJobModel, str(export_id))
            return self._to_export(row) if row else None

    def list_exports(self, *, webset_id: Optional[str] = None, limit: int = 50) -> List[ExportJob]:
        with self._provider.session() as session:
            stmt = select(ExportJobModel)
            if webset_id:
                stmt = stmt.where(ExportJobModel.webset_id == webset_id)
            stmt = stmt.order_by(desc(ExportJobModel.created_at)).limit(max(1, int(limit)))
            return [self._to_export(r) for r in session.execute(stmt).scalars().all()]

    def update_status(
        self,
        export_id: str,
        *,
        status: JobStatus,
        export_url: Optional[str] = None,
        error: Optional[str] = None,
    ) -> ExportJob:
        with self._provider.session() as session:
            row = session.get(ExportJobModel, str(export_id))
            if row is None:
                raise NotFoundError(f"export job not found: {export_id}")
            row.status = status.value
            if export_url is not None:
                row.export_url = export_url
            if error is not None:
                row.error = error
            row.updated_at = _utcnow()
            session.commit()
            session.refresh(row)
            return self._to_export(row)

    @staticmethod
    def _to_export(row: ExportJobModel) -> ExportJob:
        return ExportJob(
            id=row.id,
            webset_id=row.webset_id,
            format=row.format,
            file_name=row.file_name,
            status=JobStatus(row.status),
            export_url=row.export_url,
            error=row.error,
            user_id=row.user_id,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def close(self) -> None:
        try:
            self._provider.engine.dispose()
        except Exception:
            pass
