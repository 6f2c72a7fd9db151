from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from websets.api.errors import to_http
from websets.api.routes._engine import get_engine
from websets.domain.errors import WebsetError

router = APIRouter()

_engine = get_engine()


class EnrichRequest(BaseModel):
    webset_id: str = Field(..., min_length=1)
    column: str = Field(..., min_length=1)
    rows: List[int] = Field(..., min_length=1)
    prompt: Optional[str] = None
    llm_provider_id: Optional[str] = None
    search_provider_id: Optional[str] = None
    user_id: Optional[str] = None


class EnrichResponse(BaseModel):
    job_id: str


class JobListResponse(BaseModel):
    items: List[Dict[str, Any]]


@router.post("/enrich", response_model=EnrichResponse)
async def enrich(req: EnrichRequest):
    try:
        job_id = await _engine.orchestrator.submit(
            req.webset_id,
            req.column,
            req.rows,
            prompt=req.prompt,
            llm_provider_id=req.llm_provider_id,
            search_provider_id=req.search_provider_id,
            user_id=req.user_id,
        )
    except WebsetError as exc:
        raise to_http(exc) from exc
    return EnrichResponse(job_id=job_id)


@router.get("/job/{job_id}")
def get_job(job_id: str):
    try:
        return _engine.orchestrator.get_status(job_id).to_dict()
    except WebsetError as exc:
        raise to_http(exc) from exc


@router.post("/job/{job_id}/cancel")
def cancel_job(job_id: str):
    try:
        return _engine.orchestrator.cancel(job_id).to_dict()
    except WebsetError as exc:
        raise to_http(exc) from exc


@router.get("/websets/{webset_id}/jobs", response_model=JobListResponse)
def list_jobs(webset_id: str, limit: int = 50):
    if _engine.webset_store.get_webset(webset_id) is None:
        raise HTTPException(status_code=404, detail="webset not found")
    jobs = _engine.orchestrator.list_jobs(webset_id, limit=max(1, min(int(limit), 200)))
    return JobListResponse(items=[j.to_dict() for j in jobs])
