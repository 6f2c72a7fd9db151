"""
Webset CRUD, cell access and version history.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from websets.api.errors import to_http
from websets.api.routes._engine import get_engine
from websets.domain.errors import WebsetError
from websets.domain.webset import Citation

router = APIRouter()

_engine = get_engine()


class ColumnPayload(BaseModel):
    id: Optional[str] = None
    name: str = Field(..., min_length=1)
    type: str = "text"
    required: bool = False
    default_value: Optional[str] = None


class CreateWebsetRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=256)
    description: str = ""
    columns: List[ColumnPayload] = Field(default_factory=list)
    created_by: str = "system"
    status: str = "draft"


class UpdateWebsetRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    columns: Optional[List[ColumnPayload]] = None
    status: Optional[str] = None
    row_count: Optional[int] = None
    changed_by: str = "system"
    change_description: Optional[str] = None


class CitationPayload(BaseModel):
    url: str
    title: str = ""
    content_snippet: str = ""


class CellWriteRequest(BaseModel):
    row: int = Field(..., ge=0)
    column: str = Field(..., min_length=1)
    value: Optional[str] = None
    confidence: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    citations: List[CitationPayload] = Field(default_factory=list)
    changed_by: str = "system"


class ImportRowsRequest(BaseModel):
    rows: List[Dict[str, Any]] = Field(..., min_length=1)
    changed_by: str = "import"


class RestoreRequest(BaseModel):
    changed_by: str = "system"


class SnapshotRequest(BaseModel):
    changed_by: str = "system"
    change_description: Optional[str] = None


class ListResponse(BaseModel):
    items: List[Dict[str, Any]]


def _columns(payload: Optional[List[ColumnPayload]]) -> Optional[List[Dict[str, Any]]]:
    if payload is None:
        return None
    return [c.model_dump() for c in payload]


@router.get("/websets", response_model=ListResponse)
def list_websets(created_by: Optional[str] = None, status: Optional[str] = None, limit: int = 50):
    items = _engine.webset_store.list_websets(
        created_by=created_by, status=status, limit=max(1, min(int(limit), 500))
    )
    return ListResponse(items=[w.to_dict() for w in items])


@router.post("/websets")
def create_webset(req: CreateWebsetRequest):
    try:
        webset = _engine.webset_store.create_webset(
            name=req.name,
            description=req.description,
            columns=_columns(req.columns),
            created_by=req.created_by,
            status=req.status,
        )
    except WebsetError as exc:
        raise to_http(exc) from exc
    return webset.to_dict()


@router.get("/websets/{webset_id}")
def get_webset(webset_id: str):
    webset = _engine.webset_store.get_webset(webset_id)
    if webset is None:
        raise HTTPException(status_code=404, detail="webset not found")
    return webset.to_dict()


@router.patch("/websets/{webset_id}")
def update_webset(webset_id: str, req: UpdateWebsetRequest):
    try:
        version = _engine.webset_store.update_webset(
            webset_id,
            name=req.name,
            description=req.description,
            columns=_columns(req.columns),
            status=req.status,
            row_count=req.row_count,
            changed_by=req.changed_by,
            change_description=req.change_description,
        )
    except WebsetError as exc:
        raise to_http(exc) from exc
    return {"webset": _engine.webset_store.require_webset(webset_id).to_dict(), "version": version.version}


@router.delete("/websets/{webset_id}")
def delete_webset(webset_id: str):
    if not _engine.webset_store.delete_webset(webset_id):
        raise HTTPException(status_code=404, detail="webset not found")
    return {"deleted": True}


@router.get("/websets/{webset_id}/cells", response_model=ListResponse)
def get_cells(webset_id: str, version: Optional[str] = None):
    try:
        cells = _engine.webset_store.get_cells(webset_id, version=version)
    except WebsetError as exc:
        raise to_http(exc) from exc
    return ListResponse(items=[c.to_dict() for c in cells])


@router.put("/websets/{webset_id}/cells")
def write_cell(webset_id: str, req: CellWriteRequest):
    try:
        version = _engine.webset_store.write_cell(
            webset_id,
            row=req.row,
            column=req.column,
            value=req.value,
            confidence=req.confidence,
            metadata=req.metadata,
            citations=[Citation(url=c.url, title=c.title, content_snippet=c.content_snippet) for c in req.citations],
            changed_by=req.changed_by,
        )
    except WebsetError as exc:
        raise to_http(exc) from exc
    return version.to_dict(include_snapshot=False)


@router.get("/websets/{webset_id}/cells/{row}/{column}/history", response_model=ListResponse)
def get_cell_history(webset_id: str, row: int, column: str):
    try:
        cells = _engine.webset_store.get_cell_history(webset_id, row, column)
    except WebsetError as exc:
        raise to_http(exc) from exc
    return ListResponse(items=[c.to_dict() for c in cells])


@router.get("/cells/{cell_id}/citations", response_model=ListResponse)
def get_citations(cell_id: str):
    return ListResponse(items=[c.to_dict() for c in _engine.webset_store.get_citations(cell_id)])


@router.post("/websets/{webset_id}/rows")
def import_rows(webset_id: str, req: ImportRowsRequest):
    try:
        version = _engine.webset_store.append_rows(webset_id, req.rows, changed_by=req.changed_by)
    except WebsetError as exc:
        raise to_http(exc) from exc
    return version.to_dict(include_snapshot=False)


@router.get("/websets/{webset_id}/versions", response_model=ListResponse)
def list_versions(webset_id: str):
    try:
        versions = _engine.webset_store.list_versions(webset_id)
    except WebsetError as exc:
        raise to_http(exc) from exc
    return ListResponse(items=[v.to_dict(include_snapshot=False) for v in versions])


@router.get("/websets/{webset_id}/versions/{version_ref}")
def get_version(webset_id: str, version_ref: str):
    try:
        return _engine.webset_store.get_version(webset_id, version_ref).to_dict()
    except WebsetError as exc:
        raise to_http(exc) from exc


@router.post("/websets/{webset_id}/versions/{version_ref}/restore")
def restore_version(webset_id: str, version_ref: str, req: Optional[RestoreRequest] = None):
    changed_by = req.changed_by if req is not None else "system"
    try:
        version = _engine.webset_store.restore(webset_id, version_ref, changed_by=changed_by)
    except WebsetError as exc:
        raise to_http(exc) from exc
    return version.to_dict(include_snapshot=False)


@router.post("/websets/{webset_id}/snapshot")
def snapshot(webset_id: str, req: Optional[SnapshotRequest] = None):
    req = req or SnapshotRequest()
    try:
        version = _engine.webset_store.snapshot(
            webset_id, changed_by=req.changed_by, change_description=req.change_description
        )
    except WebsetError as exc:
        raise to_http(exc) from exc
    return version.to_dict(include_snapshot=False)


@router.get("/websets/{webset_id}/verify")
def verify_webset(webset_id: str):
    try:
        return _engine.integrity.verify_webset(webset_id).to_dict()
    except WebsetError as exc:
        raise to_http(exc) from exc
