"""Map engine errors onto HTTP responses."""

from __future__ import annotations

from fastapi import HTTPException

from websets.domain.errors import (
    ConflictError,
    NotFoundError,
    OrchestrationFailure,
    RateLimited,
    ValidationError,
    WebsetError,
)


def to_http(exc: WebsetError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(int(exc.retry_after or 1))}
        return HTTPException(status_code=429, detail=str(exc), headers=headers)
    if isinstance(exc, OrchestrationFailure):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=502, detail=str(exc))
