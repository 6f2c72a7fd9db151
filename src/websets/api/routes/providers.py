from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from websets.api.errors import to_http
from websets.api.routes._engine import get_engine
from websets.domain.errors import WebsetError

router = APIRouter()

_engine = get_engine()


class ProviderListResponse(BaseModel):
    items: List[Dict[str, Any]]


class ProviderResponse(BaseModel):
    item: Dict[str, Any]


class UpsertProviderRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=128)
    kind: Optional[str] = None
    type: Optional[str] = None
    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    is_active: Optional[bool] = None
    priority: Optional[int] = None
    rate_limit: Optional[int] = None
    daily_limit: Optional[int] = None
    config: Optional[Dict[str, Any]] = None


class RateLimitRuleRequest(BaseModel):
    scope: str = Field(..., pattern="^(user|global)$")
    endpoint: str = Field(..., min_length=1)
    max_requests: int = Field(..., ge=1)
    window_ms: int = Field(..., ge=1)
    user_id: Optional[str] = None


@router.get("/providers", response_model=ProviderListResponse)
def list_providers(kind: Optional[str] = None, active_only: bool = False):
    return ProviderListResponse(items=_engine.provider_store.list_providers(kind=kind, active_only=active_only))


@router.get("/providers/usage")
def provider_usage(days: int = Query(7, ge=1, le=90)):
    return {"summary": _engine.usage_store.summarize(days=days)}


@router.get("/providers/health")
def provider_health():
    return {"items": _engine.gateway.breakers.snapshot()}


@router.post("/providers/{provider_id}/circuit/reset")
def reset_provider_circuit(provider_id: str):
    if _engine.provider_store.get_provider(provider_id) is None:
        raise HTTPException(status_code=404, detail="provider not found")
    _engine.gateway.breakers.reset(provider_id)
    return _engine.gateway.breakers.status(provider_id)


@router.get("/providers/{provider_id}", response_model=ProviderResponse)
def get_provider(provider_id: str):
    item = _engine.provider_store.get_provider(provider_id)
    if item is None:
        raise HTTPException(status_code=404, detail="provider not found")
    return ProviderResponse(item=item)


@router.post("/providers", response_model=ProviderResponse)
def create_provider(req: UpsertProviderRequest):
    try:
        item = _engine.provider_store.upsert_provider(payload=req.model_dump(exclude_unset=True))
    except WebsetError as exc:
        raise to_http(exc) from exc
    return ProviderResponse(item=item)


@router.patch("/providers/{provider_id}", response_model=ProviderResponse)
def update_provider(provider_id: str, req: UpsertProviderRequest):
    if _engine.provider_store.get_provider(provider_id) is None:
        raise HTTPException(status_code=404, detail="provider not found")
    try:
        item = _engine.provider_store.upsert_provider(
            payload=req.model_dump(exclude_unset=True), provider_id=provider_id
        )
    except WebsetError as exc:
        raise to_http(exc) from exc
    return ProviderResponse(item=item)


@router.delete("/providers/{provider_id}")
def delete_provider(provider_id: str):
    if not _engine.provider_store.delete_provider(provider_id):
        raise HTTPException(status_code=404, detail="provider not found")
    return {"deleted": True}


@router.put("/rate-limits")
def configure_rate_limit(req: RateLimitRuleRequest):
    try:
        _engine.rate_limiter.configure(
            req.scope, req.endpoint, req.max_requests, req.window_ms, user_id=req.user_id
        )
        return _engine.rate_limiter.status(req.scope, req.endpoint, user_id=req.user_id)
    except WebsetError as exc:
        raise to_http(exc) from exc


@router.get("/rate-limits")
def rate_limit_status(
    endpoint: Optional[str] = None,
    scope: str = Query("global", pattern="^(user|global)$"),
    user_id: Optional[str] = None,
):
    if not endpoint:
        return {"items": _engine.rate_limit_store.list_rules()}
    try:
        return _engine.rate_limiter.status(scope, endpoint, user_id=user_id)
    except WebsetError as exc:
        raise to_http(exc) from exc
