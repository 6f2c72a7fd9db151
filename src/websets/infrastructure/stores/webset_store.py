from __future__ import annotations

import copy
import json
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from loguru import logger
from sqlalchemy import desc, select, update
from sqlalchemy.exc import IntegrityError

from websets.domain.errors import ConflictError, NotFoundError, ValidationError
from websets.domain.webset import (
    Citation,
    ColumnDefinition,
    Webset,
    WebsetCell,
    WebsetStatus,
    WebsetVersion,
    normalize_columns,
)
from websets.infrastructure.stores.models import (
    Base,
    CitationModel,
    WebsetCellModel,
    WebsetModel,
    WebsetVersionModel,
)
from websets.infrastructure.stores.sqlalchemy_db import SessionProvider, get_db_url

VersionRef = Union[str, int]
# mutates the snapshot state in place and returns the cell writes to apply
Mutation = Callable[[Dict[str, Any]], List[Dict[str, Any]]]

_locks_guard = threading.Lock()
_webset_locks: Dict[Tuple[str, str], threading.Lock] = {}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _webset_lock(db_url: str, webset_id: str) -> threading.Lock:
    with _locks_guard:
        lock = _webset_locks.get((db_url, webset_id))
        if lock is None:
            lock = threading.Lock()
            _webset_locks[(db_url, webset_id)] = lock
        return lock


def _check_confidence(confidence: Optional[float]) -> Optional[float]:
    if confidence is None:
        return None
    try:
        value = float(confidence)
    except (TypeError, ValueError):
        raise ValidationError("confidence must be a number")
    if not 0.0 <= value <= 1.0:
        raise ValidationError("confidence must be within [0, 1]")
    return value


def _resolve_column(state: Dict[str, Any], ref: str) -> str:
    columns = [ColumnDefinition.from_dict(c) for c in state["webset"].get("columns") or []]
    key = str(ref or "").strip()
    for col in columns:
        if col.id == key:
            return col.id
    for col in columns:
        if col.name.lower() == key.lower():
            return col.id
    raise ValidationError(f"unknown column: {ref}")


class WebsetStore:
    """Versioned dataset store.

    The head of a webset is the snapshot of its ``current_version``. Every
    change copies the head, applies the change and commits it as version
    ``current_version + 1``; the pointer only moves through a guarded UPDATE,
    so two writers racing on one webset cannot both commit the same number.
    Cell revisions and citations are insert-only.
    """

    def __init__(
        self,
        db_url: Optional[str] = None,
        *,
        auto_create_schema: bool = True,
        max_commit_retries: int = 5,
    ):
        self.db_url = db_url or get_db_url()
        self._provider = SessionProvider(self.db_url)
        self.max_commit_retries = max(1, int(max_commit_retries))
        if auto_create_schema:
            Base.metadata.create_all(self._provider.engine)

    # ------------------------------------------------------------------
    # websets
    # ------------------------------------------------------------------

    def create_webset(
        self,
        *,
        name: str,
        description: str = "",
        columns: Optional[Sequence[Any]] = None,
        created_by: str = "system",
        status: str = WebsetStatus.DRAFT.value,
        row_count: int = 0,
    ) -> Webset:
        name = str(name or "").strip()
        if not name:
            raise ValidationError("name is required")
        cols = normalize_columns(list(columns or []))
        try:
            ws_status = WebsetStatus(str(status))
        except ValueError:
            raise ValidationError(f"unsupported status: {status}")
        if int(row_count) < 0:
            raise ValidationError("row_count must be >= 0")

        now = _utcnow()
        webset_id = uuid.uuid4().hex
        snapshot = {
            "webset": {
                "name": name,
                "description": description or "",
                "status": ws_status.value,
                "columns": [c.to_dict() for c in cols],
                "row_count": int(row_count),
            },
            "cells": [],
        }
        with self._provider.session() as session:
            row = WebsetModel(
                id=webset_id,
                name=name,
                description=description or "",
                status=ws_status.value,
                current_version=1,
                row_count=int(row_count),
                created_by=created_by or "",
                created_at=now,
                updated_at=now,
            )
            row.set_columns(snapshot["webset"]["columns"])
            version = WebsetVersionModel(
                id=uuid.uuid4().hex,
                webset_id=webset_id,
                version=1,
                changed_by=created_by or "",
                change_description="Initial version",
                created_at=now,
            )
            version.set_snapshot(snapshot)
            session.add(row)
            session.add(version)
            session.commit()
            session.refresh(row)
            logger.info(f"created webset {webset_id} ({name}) with {len(cols)} columns")
            return self._to_webset(row)

    def get_webset(self, webset_id: str) -> Optional[Webset]:
        with self._provider.session() as session:
            row = session.get(WebsetModel, str(webset_id))
            return self._to_webset(row) if row else None

    def require_webset(self, webset_id: str) -> Webset:
        webset = self.get_webset(webset_id)
        if webset is None:
            raise NotFoundError(f"webset not found: {webset_id}")
        return webset

    def list_websets(
        self, *, created_by: Optional[str] = None, status: Optional[str] = None, limit: int = 100
    ) -> List[Webset]:
        with self._provider.session() as session:
            stmt = select(WebsetModel)
            if created_by:
                stmt = stmt.where(WebsetModel.created_by == created_by)
            if status:
                stmt = stmt.where(WebsetModel.status == status)
            stmt = stmt.order_by(desc(WebsetModel.updated_at)).limit(max(1, int(limit)))
            return [self._to_webset(row) for row in session.execute(stmt).scalars().all()]

    def update_webset(
        self,
        webset_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        columns: Optional[Sequence[Any]] = None,
        status: Optional[str] = None,
        row_count: Optional[int] = None,
        changed_by: str = "system",
        change_description: Optional[str] = None,
    ) -> WebsetVersion:
        """Commit a new version with changed webset fields. Cells are untouched."""
        patch: Dict[str, Any] = {}
        if name is not None:
            if not str(name).strip():
                raise ValidationError("name is required")
            patch["name"] = str(name).strip()
        if description is not None:
            patch["description"] = str(description)
        if columns is not None:
            patch["columns"] = [c.to_dict() for c in normalize_columns(list(columns))]
        if status is not None:
            try:
                patch["status"] = WebsetStatus(str(status)).value
            except ValueError:
                raise ValidationError(f"unsupported status: {status}")
        if row_count is not None:
            if int(row_count) < 0:
                raise ValidationError("row_count must be >= 0")
            patch["row_count"] = int(row_count)
        if not patch:
            raise ValidationError("nothing to update")

        def mutate(state: Dict[str, Any]) -> List[Dict[str, Any]]:
            state["webset"].update(patch)
            return []

        return self._commit(
            webset_id,
            mutate,
            changed_by=changed_by,
            change_description=change_description or f"Updated {', '.join(sorted(patch))}",
        )

    def delete_webset(self, webset_id: str) -> bool:
        with self._provider.session() as session:
            row = session.get(WebsetModel, str(webset_id))
            if row is None:
                return False
            session.delete(row)
            session.commit()
            logger.info(f"deleted webset {webset_id}")
            return True

    # ------------------------------------------------------------------
    # cells
    # ------------------------------------------------------------------

    def write_cell(
        self,
        webset_id: str,
        *,
        row: int,
        column: str,
        value: Optional[str],
        confidence: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
        citations: Optional[Sequence[Citation]] = None,
        changed_by: str = "system",
        change_description: Optional[str] = None,
    ) -> WebsetVersion:
        write = {
            "row": row,
            "column": column,
            "value": value,
            "confidence": confidence,
            "metadata": metadata,
            "citations": citations,
        }
        return self.write_cells(
            webset_id,
            [write],
            changed_by=changed_by,
            change_description=change_description or f"Updated cell ({row}, {column})",
        )

    def write_cells(
        self,
        webset_id: str,
        writes: Sequence[Dict[str, Any]],
        *,
        changed_by: str = "system",
        change_description: Optional[str] = None,
    ) -> WebsetVersion:
        """Apply several cell writes as one version."""
        if not writes:
            raise ValidationError("no cells to write")
        prepared: List[Dict[str, Any]] = []
        for item in writes:
            try:
                row = int(item.get("row"))
            except (TypeError, ValueError):
                raise ValidationError("row must be an integer")
            if row < 0:
                raise ValidationError("row must be >= 0")
            value = item.get("value")
            prepared.append(
                {
                    "row": row,
                    "column": str(item.get("column") or ""),
                    "value": None if value is None else str(value),
                    "confidence": _check_confidence(item.get("confidence")),
                    "metadata": dict(item.get("metadata") or {}),
                    "citations": [
                        c if isinstance(c, Citation) else Citation.from_dict(c)
                        for c in item.get("citations") or []
                    ],
                }
            )

        def mutate(state: Dict[str, Any]) -> List[Dict[str, Any]]:
            resolved = []
            for item in prepared:
                resolved.append({**item, "column": _resolve_column(state, item["column"])})
            return resolved

        return self._commit(
            webset_id,
            mutate,
            changed_by=changed_by,
            change_description=change_description or f"Updated {len(prepared)} cells",
        )

    def append_rows(
        self,
        webset_id: str,
        records: Sequence[Dict[str, Any]],
        *,
        changed_by: str = "system",
        change_description: Optional[str] = None,
    ) -> WebsetVersion:
        """Append records (column name or id -> value) after the last row."""
        if not records:
            raise ValidationError("no rows to append")

        def mutate(state: Dict[str, Any]) -> List[Dict[str, Any]]:
            start = int(state["webset"].get("row_count") or 0)
            writes = []
            for offset, record in enumerate(records):
                for key, value in record.items():
                    if value is None or str(value) == "":
                        continue
                    writes.append(
                        {
                            "row": start + offset,
                            "column": _resolve_column(state, key),
                            "value": str(value),
                            "confidence": None,
                            "metadata": {"source": "import"},
                            "citations": [],
                        }
                    )
            state["webset"]["row_count"] = start + len(records)
            return writes

        return self._commit(
            webset_id,
            mutate,
            changed_by=changed_by,
            change_description=change_description or f"Imported {len(records)} rows",
        )

    def get_cells(self, webset_id: str, *, version: Optional[VersionRef] = None) -> List[WebsetCell]:
        """Cells of the head (or of a given version), sorted by (row, column)."""
        target = self.get_version(webset_id, version) if version is not None else self._head(webset_id)
        entries = target.snapshot.get("cells") or []
        cell_ids = [e.get("cell_id") for e in entries if e.get("cell_id")]
        version_ids: Dict[str, Optional[str]] = {}
        if cell_ids:
            with self._provider.session() as session:
                rows = session.execute(
                    select(WebsetCellModel.id, WebsetCellModel.version_id).where(
                        WebsetCellModel.id.in_(cell_ids)
                    )
                ).all()
                version_ids = {r[0]: r[1] for r in rows}
        return [self._entry_to_cell(webset_id, e, version_ids.get(e.get("cell_id"))) for e in entries]

    def get_cell(self, webset_id: str, row: int, column: str) -> Optional[WebsetCell]:
        head = self._head(webset_id)
        column_id = _resolve_column(head.snapshot, column)
        for entry in head.snapshot.get("cells") or []:
            if entry.get("row") == int(row) and entry.get("column") == column_id:
                with self._provider.session() as session:
                    cell = session.get(WebsetCellModel, entry.get("cell_id"))
                    version_id = cell.version_id if cell else None
                return self._entry_to_cell(webset_id, entry, version_id)
        return None

    def get_cell_history(self, webset_id: str, row: int, column: str) -> List[WebsetCell]:
        """All revisions ever written at (row, column), oldest first."""
        column_id = _resolve_column(self._head(webset_id).snapshot, column)
        with self._provider.session() as session:
            rows = (
                session.execute(
                    select(WebsetCellModel)
                    .where(
                        WebsetCellModel.webset_id == str(webset_id),
                        WebsetCellModel.row_index == int(row),
                        WebsetCellModel.column_id == column_id,
                    )
                    .order_by(WebsetCellModel.created_at.asc())
                )
                .scalars()
                .all()
            )
            return [self._cell_model_to_cell(r) for r in rows]

    def get_citations(self, cell_id: str) -> List[Citation]:
        with self._provider.session() as session:
            rows = (
                session.execute(
                    select(CitationModel)
                    .where(CitationModel.cell_id == str(cell_id))
                    .order_by(CitationModel.created_at.asc())
                )
                .scalars()
                .all()
            )
            return [self._citation_to_domain(r) for r in rows]

    # ------------------------------------------------------------------
    # versions
    # ------------------------------------------------------------------

    def list_versions(self, webset_id: str, *, include_snapshot: bool = False) -> List[WebsetVersion]:
        self.require_webset(webset_id)
        with self._provider.session() as session:
            rows = (
                session.execute(
                    select(WebsetVersionModel)
                    .where(WebsetVersionModel.webset_id == str(webset_id))
                    .order_by(desc(WebsetVersionModel.version))
                )
                .scalars()
                .all()
            )
            return [self._to_version(r, include_snapshot=include_snapshot) for r in rows]

    def get_version(self, webset_id: str, version_ref: VersionRef) -> WebsetVersion:
        """Look a version up by id, or by number when given an int (or digits)."""
        with self._provider.session() as session:
            stmt = select(WebsetVersionModel).where(WebsetVersionModel.webset_id == str(webset_id))
            if isinstance(version_ref, int) or str(version_ref).isdigit():
                stmt = stmt.where(WebsetVersionModel.version == int(version_ref))
            else:
                stmt = stmt.where(WebsetVersionModel.id == str(version_ref))
            row = session.execute(stmt).scalar_one_or_none()
            if row is None:
                raise NotFoundError(f"version not found: {webset_id}@{version_ref}")
            return self._to_version(row)

    def restore(
        self,
        webset_id: str,
        version_ref: VersionRef,
        *,
        changed_by: str = "system",
    ) -> WebsetVersion:
        """Commit a new version whose state equals the target's. History is kept."""
        target = self.get_version(webset_id, version_ref)
        target_snapshot = copy.deepcopy(target.snapshot)

        def mutate(state: Dict[str, Any]) -> List[Dict[str, Any]]:
            state.clear()
            state.update(copy.deepcopy(target_snapshot))
            return []

        return self._commit(
            webset_id,
            mutate,
            changed_by=changed_by,
            change_description=f"Restored from version {target.version}",
        )

    def snapshot(
        self,
        webset_id: str,
        *,
        changed_by: str = "system",
        change_description: Optional[str] = None,
    ) -> WebsetVersion:
        """Checkpoint: a new version with the head's content unchanged."""
        return self._commit(
            webset_id,
            lambda state: [],
            changed_by=changed_by,
            change_description=change_description or "Snapshot",
        )

    # ------------------------------------------------------------------
    # commit
    # ------------------------------------------------------------------

    def _head(self, webset_id: str) -> WebsetVersion:
        with self._provider.session() as session:
            ws = session.get(WebsetModel, str(webset_id))
            if ws is None:
                raise NotFoundError(f"webset not found: {webset_id}")
            row = session.execute(
                select(WebsetVersionModel).where(
                    WebsetVersionModel.webset_id == ws.id,
                    WebsetVersionModel.version == ws.current_version,
                )
            ).scalar_one()
            return self._to_version(row)

    def _commit(
        self,
        webset_id: str,
        mutate: Mutation,
        *,
        changed_by: str,
        change_description: Optional[str],
    ) -> WebsetVersion:
        lock = _webset_lock(self.db_url, str(webset_id))
        for attempt in range(1, self.max_commit_retries + 1):
            with lock:
                committed = self._try_commit(str(webset_id), mutate, changed_by, change_description)
            if committed is not None:
                return committed
            logger.warning(f"version race on webset {webset_id}, attempt {attempt}/{self.max_commit_retries}")
        raise ConflictError(
            f"could not commit a new version of webset {webset_id} after {self.max_commit_retries} attempts"
        )

    def _try_commit(
        self,
        webset_id: str,
        mutate: Mutation,
        changed_by: str,
        change_description: Optional[str],
    ) -> Optional[WebsetVersion]:
        now = _utcnow()
        with self._provider.session() as session:
            ws = session.get(WebsetModel, webset_id)
            if ws is None:
                raise NotFoundError(f"webset not found: {webset_id}")
            head_number = int(ws.current_version)
            head = session.execute(
                select(WebsetVersionModel).where(
                    WebsetVersionModel.webset_id == webset_id,
                    WebsetVersionModel.version == head_number,
                )
            ).scalar_one()

            state = head.get_snapshot()
            state.setdefault("webset", {})
            state.setdefault("cells", [])
            writes = mutate(state)

            version_id = uuid.uuid4().hex
            cells_by_key = {(c["row"], c["column"]): c for c in state["cells"]}
            row_count = int(state["webset"].get("row_count") or 0)
            for write in writes:
                cell_id = uuid.uuid4().hex
                cell_row = WebsetCellModel(
                    id=cell_id,
                    webset_id=webset_id,
                    row_index=write["row"],
                    column_id=write["column"],
                    value=write["value"],
                    confidence=write["confidence"],
                    version_id=version_id,
                    created_at=now,
                )
                cell_row.set_metadata(write["metadata"])
                session.add(cell_row)
                citation_entries = []
                for citation in write["citations"]:
                    citation_id = uuid.uuid4().hex
                    session.add(
                        CitationModel(
                            id=citation_id,
                            cell_id=cell_id,
                            url=citation.url,
                            title=citation.title,
                            content_snippet=citation.content_snippet,
                            search_provider_id=citation.search_provider_id,
                            created_at=now,
                        )
                    )
                    citation_entries.append({**citation.to_dict(), "id": citation_id})
                cells_by_key[(write["row"], write["column"])] = {
                    "cell_id": cell_id,
                    "row": write["row"],
                    "column": write["column"],
                    "value": write["value"],
                    "confidence": write["confidence"],
                    "metadata": write["metadata"],
                    "citations": citation_entries,
                }
                row_count = max(row_count, write["row"] + 1)

            state["webset"]["row_count"] = row_count
            state["cells"] = [cells_by_key[k] for k in sorted(cells_by_key)]
            fields = state["webset"]

            version = WebsetVersionModel(
                id=version_id,
                webset_id=webset_id,
                version=head_number + 1,
                changed_by=changed_by or "",
                change_description=change_description,
                created_at=now,
            )
            version.set_snapshot(state)
            session.add(version)

            values = {
                "current_version": head_number + 1,
                "name": fields.get("name", ws.name),
                "description": fields.get("description", ws.description),
                "status": fields.get("status", ws.status),
                "row_count": row_count,
                "columns_json": json.dumps(fields.get("columns") or [], ensure_ascii=False),
                "updated_at": now,
            }

            try:
                result = session.execute(
                    update(WebsetModel)
                    .where(WebsetModel.id == webset_id, WebsetModel.current_version == head_number)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if int(result.rowcount or 0) != 1:
                    session.rollback()
                    return None
                session.commit()
            except IntegrityError:
                session.rollback()
                return None

            session.refresh(version)
            return self._to_version(version)

    # ------------------------------------------------------------------
    # mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _to_webset(row: WebsetModel) -> Webset:
        return Webset(
            id=row.id,
            name=row.name,
            description=row.description or "",
            columns=[ColumnDefinition.from_dict(c) for c in row.get_columns()],
            status=WebsetStatus(row.status),
            current_version=int(row.current_version),
            row_count=int(row.row_count or 0),
            created_by=row.created_by or "",
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _to_version(row: WebsetVersionModel, *, include_snapshot: bool = True) -> WebsetVersion:
        return WebsetVersion(
            id=row.id,
            webset_id=row.webset_id,
            version=int(row.version),
            snapshot=row.get_snapshot() if include_snapshot else {},
            changed_by=row.changed_by or "",
            change_description=row.change_description,
            created_at=row.created_at,
        )

    @staticmethod
    def _citation_to_domain(row: CitationModel) -> Citation:
        return Citation(
            id=row.id,
            url=row.url,
            title=row.title or "",
            content_snippet=row.content_snippet or "",
            search_provider_id=row.search_provider_id,
        )

    def _cell_model_to_cell(self, row: WebsetCellModel) -> WebsetCell:
        return WebsetCell(
            id=row.id,
            webset_id=row.webset_id,
            row=int(row.row_index),
            column=row.column_id,
            value=row.value,
            confidence=row.confidence,
            metadata=row.get_metadata(),
            citations=[self._citation_to_domain(c) for c in row.citations],
            version_id=row.version_id,
        )

    @staticmethod
    def _entry_to_cell(webset_id: str, entry: Dict[str, Any], version_id: Optional[str]) -> WebsetCell:
        return WebsetCell(
            id=entry.get("cell_id"),
            webset_id=webset_id,
            row=int(entry.get("row", 0)),
            column=str(entry.get("column") or ""),
            value=entry.get("value"),
            confidence=entry.get("confidence"),
            metadata=dict(entry.get("metadata") or {}),
            citations=[Citation.from_dict(c) for c in entry.get("citations") or []],
            version_id=version_id,
        )

    def close(self) -> None:
        try:
            self._provider.engine.dispose()
        except Exception:
            pass
