from __future__ import annotations

import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from loguru import logger
from sqlalchemy import delete, select

from websets.domain.errors import ValidationError
from websets.domain.provider import PROVIDER_TYPES, ProviderKind
from websets.infrastructure.stores.models import Base, ProviderModel
from websets.infrastructure.stores.sqlalchemy_db import SessionProvider, get_db_url
from websets.utils.secret import mask, seal, unseal


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _optional_limit(value: Any, field_name: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        limit = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be an integer")
    if limit <= 0:
        raise ValidationError(f"{field_name} must be > 0")
    return limit


class ProviderStore:
    """Configured LLM and search providers, api keys sealed at rest."""

    def __init__(self, db_url: Optional[str] = None, *, auto_create_schema: bool = True):
        self.db_url = db_url or get_db_url()
        self._provider = SessionProvider(self.db_url)
        if auto_create_schema:
            Base.metadata.create_all(self._provider.engine)

    def list_providers(
        self,
        *,
        kind: Optional[str] = None,
        active_only: bool = False,
        include_secrets: bool = False,
    ) -> List[Dict[str, Any]]:
        with self._provider.session() as session:
            stmt = select(ProviderModel)
            if kind:
                stmt = stmt.where(ProviderModel.kind == str(kind))
            if active_only:
                stmt = stmt.where(ProviderModel.is_active.is_(True))
            stmt = stmt.order_by(ProviderModel.priority.asc(), ProviderModel.created_at.asc())
            rows = session.execute(stmt).scalars().all()
            return [self._to_dict(row, include_secrets=include_secrets) for row in rows]

    def get_provider(
        self, provider_id: str, *, include_secrets: bool = False
    ) -> Optional[Dict[str, Any]]:
        with self._provider.session() as session:
            row = session.get(ProviderModel, str(provider_id))
            return self._to_dict(row, include_secrets=include_secrets) if row else None

    def upsert_provider(
        self,
        *,
        payload: Dict[str, Any],
        provider_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        now = _utcnow()
        with self._provider.session() as session:
            row: Optional[ProviderModel] = None
            if provider_id is not None:
                row = session.get(ProviderModel, str(provider_id))
                if row is None:
                    raise ValidationError(f"provider not found: {provider_id}")

            creating = row is None
            if row is None:
                row = ProviderModel(
                    id=uuid.uuid4().hex,
                    name="",
                    kind=ProviderKind.LLM.value,
                    type="",
                    is_active=True,
                    priority=100,
                    config_json="{}",
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)

            name = str(payload.get("name") or row.name or "").strip()
            if not name:
                raise ValidationError("name is required")
            try:
                kind = ProviderKind(str(payload.get("kind") or row.kind).strip().lower())
            except ValueError:
                raise ValidationError(f"unsupported provider kind: {payload.get('kind')}")
            ptype = str(payload.get("type") or row.type or "").strip().lower()
            if ptype not in PROVIDER_TYPES[kind]:
                raise ValidationError(f"unsupported {kind.value} provider type: {ptype or '<empty>'}")

            config = payload.get("config")
            if config is None:
                config = row.get_config()
            if not isinstance(config, dict):
                raise ValidationError("config must be an object")

            row.name = name
            row.kind = kind.value
            row.type = ptype
            row.endpoint = str(payload.get("endpoint") or row.endpoint or "").strip() or None
            if "api_key" in payload:
                api_key_text = str(payload.get("api_key") or "").strip()
                if not api_key_text:
                    row.api_key_value = None
                elif not api_key_text.startswith("***"):
                    # masked values echoed back from a listing keep the stored key
                    row.api_key_value = seal(api_key_text)
            if "is_active" in payload:
                row.is_active = bool(payload.get("is_active"))
            if "priority" in payload:
                row.priority = int(payload.get("priority") or 0)
            if "rate_limit" in payload:
                row.rate_limit = _optional_limit(payload.get("rate_limit"), "rate_limit")
            if "daily_limit" in payload:
                row.daily_limit = _optional_limit(payload.get("daily_limit"), "daily_limit")
            row.set_config(config)
            row.updated_at = now
            if creating:
                row.created_at = now

            session.commit()
            session.refresh(row)
            logger.info(f"{'created' if creating else 'updated'} {row.kind} provider {row.name} ({row.type})")
            return self._to_dict(row)

    def delete_provider(self, provider_id: str) -> bool:
        with self._provider.session() as session:
            result = session.execute(delete(ProviderModel).where(ProviderModel.id == str(provider_id)))
            session.commit()
            return int(result.rowcount or 0) > 0

    def seed_from_yaml(self, path: Union[str, Path]) -> List[Dict[str, Any]]:
        """Upsert providers listed in a YAML file, matched by (kind, name).

        Each entry may give ``api_key`` directly or ``api_key_env`` naming
        the environment variable that holds it.
        """
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        entries = data.get("providers") if isinstance(data, dict) else data
        if not isinstance(entries, list):
            raise ValidationError("provider seed file must contain a 'providers' list")

        existing = {(p["kind"], p["name"]): p["id"] for p in self.list_providers()}
        seeded: List[Dict[str, Any]] = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            payload = dict(entry)
            env_name = payload.pop("api_key_env", None)
            if env_name and not payload.get("api_key"):
                payload["api_key"] = os.getenv(str(env_name), "")
            kind = str(payload.get("kind") or ProviderKind.LLM.value).lower()
            provider_id = existing.get((kind, str(payload.get("name") or "").strip()))
            seeded.append(self.upsert_provider(payload=payload, provider_id=provider_id))
        return seeded

    @staticmethod
    def _to_dict(row: ProviderModel, *, include_secrets: bool = False) -> Dict[str, Any]:
        key_raw = unseal(row.api_key_value)
        return {
            "id": row.id,
            "name": row.name,
            "kind": row.kind,
            "type": row.type,
            "endpoint": row.endpoint,
            "api_key": key_raw if include_secrets else mask(key_raw),
            "api_key_present": bool(key_raw),
            "is_active": bool(row.is_active),
            "priority": int(row.priority or 0),
            "rate_limit": row.rate_limit,
            "daily_limit": row.daily_limit,
            "config": row.get_config(),
            "created_at": row.created_at.isoformat() if row.created_at else None,
            "updated_at": row.updated_at.isoformat() if row.updated_at else None,
        }

    def close(self) -> None:
        try:
            self._provider.engine.dispose()
        except Exception:
            pass
