from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger
from sqlalchemy import and_, delete, select, update
from sqlalchemy.exc import IntegrityError

from websets.domain.errors import ValidationError
from websets.domain.rate_limit import RateLimitScope, RateLimitState
from websets.infrastructure.stores.models import Base, RateLimitModel
from websets.infrastructure.stores.sqlalchemy_db import SessionProvider, get_db_url


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RateLimitStore:
    """Rate-limit rules and their live window counters."""

    def __init__(self, db_url: Optional[str] = None, *, auto_create_schema: bool = True):
        self.db_url = db_url or get_db_url()
        self._provider = SessionProvider(self.db_url)
        if auto_create_schema:
            Base.metadata.create_all(self._provider.engine)

    @staticmethod
    def _where(key: Tuple[str, str, str]):
        scope, user_id, endpoint = key
        return and_(
            RateLimitModel.scope == scope,
            RateLimitModel.user_id == user_id,
            RateLimitModel.endpoint == endpoint,
        )

    def get_state(self, key: Tuple[str, str, str]) -> Optional[RateLimitState]:
        with self._provider.session() as session:
            row = session.execute(select(RateLimitModel).where(self._where(key))).scalar_one_or_none()
            return self._to_state(row) if row else None

    def upsert_rule(
        self,
        *,
        scope: RateLimitScope,
        endpoint: str,
        max_requests: int,
        window_ms: int,
        user_id: Optional[str] = None,
        replace_existing: bool = True,
    ) -> RateLimitState:
        """Create the rule for a key, or update its limits keeping the live counters."""
        if int(max_requests) < 0:
            raise ValidationError("max_requests must be >= 0")
        if int(window_ms) <= 0:
            raise ValidationError("window_ms must be > 0")
        if scope == RateLimitScope.USER and not user_id:
            raise ValidationError("user scope requires a user id")
        uid = (user_id or "") if scope == RateLimitScope.USER else ""
        key = (scope.value, uid, endpoint)

        now = _utcnow()
        with self._provider.session() as session:
            row = session.execute(select(RateLimitModel).where(self._where(key))).scalar_one_or_none()
            if row is None:
                row = RateLimitModel(
                    id=uuid.uuid4().hex,
                    scope=scope.value,
                    user_id=uid,
                    endpoint=endpoint,
                    max_requests=int(max_requests),
                    window_ms=int(window_ms),
                    current_count=0,
                    window_start_ms=None,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
            elif replace_existing:
                row.max_requests = int(max_requests)
                row.window_ms = int(window_ms)
                row.updated_at = now
            try:
                session.commit()
            except IntegrityError:
                # another writer created the same key first
                session.rollback()
                row = session.execute(select(RateLimitModel).where(self._where(key))).scalar_one()
            session.refresh(row)
            return self._to_state(row)

    def compare_and_swap(self, previous: RateLimitState, nxt: RateLimitState) -> bool:
        """Persist ``nxt`` only if the stored counters still equal ``previous``."""
        guard = [
            self._where(previous.key),
            RateLimitModel.current_count == previous.current_count,
        ]
        if previous.window_start_ms is None:
            guard.append(RateLimitModel.window_start_ms.is_(None))
        else:
            guard.append(RateLimitModel.window_start_ms == previous.window_start_ms)

        with self._provider.session() as session:
            result = session.execute(
                update(RateLimitModel)
                .where(*guard)
                .values(
                    current_count=nxt.current_count,
                    window_start_ms=nxt.window_start_ms,
                    updated_at=_utcnow(),
                )
            )
            session.commit()
            swapped = int(result.rowcount or 0) == 1
        if not swapped:
            logger.debug(f"rate limit CAS lost for {previous.key}")
        return swapped

    def list_rules(self, *, endpoint_prefix: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._provider.session() as session:
            stmt = select(RateLimitModel).order_by(RateLimitModel.endpoint, RateLimitModel.scope)
            if endpoint_prefix:
                stmt = stmt.where(RateLimitModel.endpoint.like(f"{endpoint_prefix}%"))
            rows = session.execute(stmt).scalars().all()
            return [self._to_dict(row) for row in rows]

    def delete_rule(self, key: Tuple[str, str, str]) -> bool:
        with self._provider.session() as session:
            result = session.execute(delete(RateLimitModel).where(self._where(key)))
            session.commit()
            return int(result.rowcount or 0) > 0

    @staticmethod
    def _to_state(row: RateLimitModel) -> RateLimitState:
        return RateLimitState(
            scope=RateLimitScope(row.scope),
            endpoint=row.endpoint,
            max_requests=int(row.max_requests),
            window_ms=int(row.window_ms),
            current_count=int(row.current_count or 0),
            window_start_ms=None if row.window_start_ms is None else int(row.window_start_ms),
            user_id=row.user_id or None,
        )

    @staticmethod
    def _to_dict(row: RateLimitModel) -> Dict[str, Any]:
        return {
            "id": row.id,
            "scope": row.scope,
            "user_id": row.user_id or None,
            "endpoint": row.endpoint,
            "max_requests": int(row.max_requests),
            "window_ms": int(row.window_ms),
            "current_count": int(row.current_count or 0),
            "window_start_ms": row.window_start_ms,
            "updated_at": row.updated_at.isoformat() if row.updated_at else None,
        }

    def close(self) -> None:
        try:
            self._provider.engine.dispose()
        except Exception:
            pass
