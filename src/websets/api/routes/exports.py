from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from websets.api.errors import to_http
from websets.api.routes._engine import get_engine
from websets.domain.errors import WebsetError

router = APIRouter()

_engine = get_engine()


class ExportRequest(BaseModel):
    format: str = Field(..., min_length=1)
    file_name: Optional[str] = None
    user_id: Optional[str] = None


class ExportCreatedResponse(BaseModel):
    id: str


class ExportStatusResponse(BaseModel):
    status: str
    export_url: Optional[str] = None
    error: Optional[str] = None


class ExportListResponse(BaseModel):
    items: List[Dict[str, Any]]


@router.post("/export/websets/{webset_id}", response_model=ExportCreatedResponse)
async def start_export(webset_id: str, req: ExportRequest):
    try:
        export_id = await _engine.exporter.start_export(
            webset_id, req.format, req.file_name, user_id=req.user_id
        )
    except WebsetError as exc:
        raise to_http(exc) from exc
    return ExportCreatedResponse(id=export_id)


@router.get("/export/{export_id}", response_model=ExportStatusResponse, response_model_exclude_none=True)
def get_export_status(export_id: str):
    try:
        return ExportStatusResponse(**_engine.exporter.get_status(export_id))
    except WebsetError as exc:
        raise to_http(exc) from exc


@router.get("/websets/{webset_id}/exports", response_model=ExportListResponse)
def list_exports(webset_id: str):
    return ExportListResponse(items=[e.to_dict() for e in _engine.exporter.list_exports(webset_id)])
