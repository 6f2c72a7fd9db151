"""Enrichment and export job value objects."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class RowFailureKind(str, Enum):
    PERMANENT = "permanent"
    TRANSIENT_EXHAUSTED = "transient_exhausted"
    RATE_LIMITED = "rate_limited"
    CANCELLED = "cancelled"
    ABORTED = "aborted"


@dataclass(frozen=True)
class RowFailure:
    row: int
    kind: RowFailureKind
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"row": self.row, "kind": self.kind.value, "message": self.message}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RowFailure":
        return cls(
            row=int(data.get("row", -1)),
            kind=RowFailureKind(data.get("kind") or RowFailureKind.PERMANENT.value),
            message=str(data.get("message") or ""),
        )


@dataclass
class EnrichmentJob:
    id: str
    webset_id: str
    column: str
    rows: List[int]
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    total_rows: int = 0
    completed_rows: int = 0
    prompt: Optional[str] = None
    llm_provider_id: Optional[str] = None
    search_provider_id: Optional[str] = None
    user_id: Optional[str] = None
    cancel_requested: bool = False
    error: Optional[str] = None
    failures: List[RowFailure] = field(default_factory=list)
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def failed_rows(self) -> int:
        return len(self.failures)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "webset_id": self.webset_id,
            "column": self.column,
            "rows": list(self.rows),
            "status": self.status.value,
            "progress": self.progress,
            "total_rows": self.total_rows,
            "completed_rows": self.completed_rows,
            "failed_rows": self.failed_rows,
            "prompt": self.prompt,
            "llm_provider_id": self.llm_provider_id,
            "search_provider_id": self.search_provider_id,
            "user_id": self.user_id,
            "cancel_requested": self.cancel_requested,
            "error": self.error,
            "failures": [f.to_dict() for f in self.failures],
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


def compute_progress(completed_rows: int, total_rows: int) -> int:
    if total_rows <= 0:
        return 100
    return (100 * max(0, completed_rows)) // total_rows


@dataclass
class ExportJob:
    id: str
    webset_id: str
    format: str
    file_name: str
    status: JobStatus = JobStatus.PENDING
    export_url: Optional[str] = None
    error: Optional[str] = None
    user_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_status(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": self.status.value}
        if self.export_url:
            data["export_url"] = self.export_url
        if self.error:
            data["error"] = self.error
        return data

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "webset_id": self.webset_id,
            "format": self.format,
            "file_name": self.file_name,
            "status": self.status.value,
            "export_url": self.export_url,
            "error": self.error,
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
