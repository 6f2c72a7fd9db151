from __future__ import annotations

import json
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from websets.infrastructure.stores.models import Base, ProviderUsageModel
from websets.infrastructure.stores.sqlalchemy_db import SessionProvider, get_db_url


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProviderUsageStore:
    """Ledger of successful provider calls, aggregated for usage reports."""

    def __init__(self, db_url: Optional[str] = None, *, auto_create_schema: bool = True):
        self.db_url = db_url or get_db_url()
        self._provider = SessionProvider(self.db_url)
        if auto_create_schema:
            Base.metadata.create_all(self._provider.engine)

    def record_usage(
        self,
        *,
        provider_id: str,
        provider_type: str,
        kind: str,
        user_id: Optional[str] = None,
        model_name: str = "",
        tokens_used: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        row = ProviderUsageModel(
            id=uuid.uuid4().hex,
            ts=_utcnow(),
            provider_id=str(provider_id),
            provider_type=(provider_type or "")[:32],
            kind=(kind or "")[:16],
            user_id=user_id,
            model_name=(model_name or "")[:128],
            tokens_used=max(0, int(tokens_used or 0)),
            metadata_json=json.dumps(metadata or {}, ensure_ascii=False),
        )
        with self._provider.session() as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return {
                "id": row.id,
                "ts": row.ts.isoformat() if row.ts else None,
                "provider_id": row.provider_id,
                "provider_type": row.provider_type,
                "kind": row.kind,
                "user_id": row.user_id,
                "model_name": row.model_name,
                "tokens_used": int(row.tokens_used or 0),
            }

    def summarize(self, *, days: int = 7) -> Dict[str, Any]:
        window_days = max(1, min(int(days), 90))
        since = _utcnow() - timedelta(days=window_days)

        with self._provider.session() as session:
            rows = (
                session.execute(select(ProviderUsageModel).where(ProviderUsageModel.ts >= since))
                .scalars()
                .all()
            )

        daily: Dict[str, Dict[str, Any]] = {}
        providers: Dict[str, Dict[str, Any]] = {}
        for row in rows:
            date_key = (row.ts or _utcnow()).date().isoformat()
            day = daily.setdefault(
                date_key, {"date": date_key, "calls": 0, "tokens_used": 0, "providers": defaultdict(int)}
            )
            tokens = int(row.tokens_used or 0)
            day["calls"] += 1
            day["tokens_used"] += tokens
            day["providers"][row.provider_id] += 1

            bucket = providers.setdefault(
                row.provider_id,
                {
                    "provider_id": row.provider_id,
                    "provider_type": row.provider_type,
                    "kind": row.kind,
                    "calls": 0,
                    "tokens_used": 0,
                },
            )
            bucket["calls"] += 1
            bucket["tokens_used"] += tokens

        daily_rows: List[Dict[str, Any]] = [
            {**daily[key], "providers": dict(daily[key]["providers"])} for key in sorted(daily)
        ]
        provider_rows = sorted(providers.values(), key=lambda x: int(x["calls"]), reverse=True)
        return {
            "window_days": window_days,
            "daily": daily_rows,
            "providers": provider_rows,
            "totals": {
                "calls": sum(int(x["calls"]) for x in provider_rows),
                "tokens_used": sum(int(x["tokens_used"]) for x in provider_rows),
            },
        }

    def close(self) -> None:
        try:
            self._provider.engine.dispose()
        except Exception:
            pass
