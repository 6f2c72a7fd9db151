from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


def _dump(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False)


def _load(raw: Optional[str], default: Any) -> Any:
    try:
        value = json.loads(raw or "null")
    except Exception:
        return default
    return default if value is None else value


class WebsetModel(Base):
    __tablename__ = "websets"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    columns_json: Mapped[str] = mapped_column(Text, default="[]")
    status: Mapped[str] = mapped_column(String(16), default="draft", index=True)

    # head pointer; advanced only by a compare-and-swap on its previous value
    current_version: Mapped[int] = mapped_column(Integer, default=1)
    row_count: Mapped[int] = mapped_column(Integer, default=0)

    created_by: Mapped[str] = mapped_column(String(64), default="", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    versions = relationship("WebsetVersionModel", back_populates="webset", cascade="all, delete-orphan")
    cells = relationship("WebsetCellModel", back_populates="webset", cascade="all, delete-orphan")

    def get_columns(self) -> List[Dict[str, Any]]:
        return list(_load(self.columns_json, []))

    def set_columns(self, columns: List[Dict[str, Any]]) -> None:
        self.columns_json = _dump(columns or [])


class WebsetVersionModel(Base):
    __tablename__ = "webset_versions"
    __table_args__ = (
        UniqueConstraint("webset_id", "version", name="uq_webset_versions_webset_version"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    webset_id: Mapped[str] = mapped_column(String(32), ForeignKey("websets.id"), index=True)
    version: Mapped[int] = mapped_column(Integer)
    snapshot_json: Mapped[str] = mapped_column(Text, default="{}")
    changed_by: Mapped[str] = mapped_column(String(64), default="")
    change_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)

    webset = relationship("WebsetModel", back_populates="versions")

    def get_snapshot(self) -> Dict[str, Any]:
        return dict(_load(self.snapshot_json, {}))

    def set_snapshot(self, snapshot: Dict[str, Any]) -> None:
        self.snapshot_json = _dump(snapshot or {})


class WebsetCellModel(Base):
    """One append-only revision of a cell; never updated after insert."""

    __tablename__ = "webset_cells"
    __table_args__ = (Index("ix_webset_cells_position", "webset_id", "row_index", "column_id"),)

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    webset_id: Mapped[str] = mapped_column(String(32), ForeignKey("websets.id"), index=True)
    row_index: Mapped[int] = mapped_column(Integer)
    column_id: Mapped[str] = mapped_column(String(128))
    value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    metadata_json: Mapped[str] = mapped_column(Text, default="{}")
    version_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    webset = relationship("WebsetModel", back_populates="cells")
    citations = relationship("CitationModel", back_populates="cell", cascade="all, delete-orphan")

    def get_metadata(self) -> Dict[str, Any]:
        return dict(_load(self.metadata_json, {}))

    def set_metadata(self, data: Dict[str, Any]) -> None:
        self.metadata_json = _dump(data or {})


class CitationModel(Base):
    __tablename__ = "citations"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    cell_id: Mapped[str] = mapped_column(String(32), ForeignKey("webset_cells.id"), index=True)
    url: Mapped[str] = mapped_column(String(2048), default="")
    title: Mapped[str] = mapped_column(String(512), default="")
    content_snippet: Mapped[str] = mapped_column(Text, default="")
    search_provider_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    cell = relationship("WebsetCellModel", back_populates="citations")


class EnrichmentJobModel(Base):
    __tablename__ = "enrichment_jobs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    webset_id: Mapped[str] = mapped_column(String(32), index=True)
    column_id: Mapped[str] = mapped_column(String(128))
    rows_json: Mapped[str] = mapped_column(Text, default="[]")
    prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)
    progress: Mapped[int] = mapped_column(Integer, default=0)
    total_rows: Mapped[int] = mapped_column(Integer, default=0)
    completed_rows: Mapped[int] = mapped_column(Integer, default=0)

    llm_provider_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    search_provider_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failures_json: Mapped[str] = mapped_column(Text, default="[]")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    def get_rows(self) -> List[int]:
        return [int(r) for r in _load(self.rows_json, [])]

    def get_failures(self) -> List[Dict[str, Any]]:
        return list(_load(self.failures_json, []))

    def set_failures(self, failures: List[Dict[str, Any]]) -> None:
        self.failures_json = _dump(failures or [])


class ExportJobModel(Base):
    __tablename__ = "export_jobs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    webset_id: Mapped[str] = mapped_column(String(32), index=True)
    format: Mapped[str] = mapped_column(String(16))
    file_name: Mapped[str] = mapped_column(String(256))
    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)
    export_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class RateLimitModel(Base):
    __tablename__ = "rate_limits"
    __table_args__ = (
        UniqueConstraint("scope", "user_id", "endpoint", name="uq_rate_limits_scope_user_endpoint"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    scope: Mapped[str] = mapped_column(String(16))
    # "" for global rules so the unique constraint holds across databases
    user_id: Mapped[str] = mapped_column(String(64), default="")
    endpoint: Mapped[str] = mapped_column(String(256))
    max_requests: Mapped[int] = mapped_column(Integer)
    window_ms: Mapped[int] = mapped_column(BigInteger)
    current_count: Mapped[int] = mapped_column(Integer, default=0)
    window_start_ms: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class ProviderModel(Base):
    __tablename__ = "providers"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), default="")
    kind: Mapped[str] = mapped_column(String(16), index=True)
    type: Mapped[str] = mapped_column(String(32))
    endpoint: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    api_key_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    priority: Mapped[int] = mapped_column(Integer, default=100)
    rate_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    daily_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    config_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    def get_config(self) -> Dict[str, Any]:
        return dict(_load(self.config_json, {}))

    def set_config(self, config: Dict[str, Any]) -> None:
        self.config_json = _dump(config or {})


class ProviderUsageModel(Base):
    __tablename__ = "provider_usage"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    provider_id: Mapped[str] = mapped_column(String(32), index=True)
    provider_type: Mapped[str] = mapped_column(String(32), default="")
    kind: Mapped[str] = mapped_column(String(16), default="")
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    model_name: Mapped[str] = mapped_column(String(128), default="")
    tokens_used: Mapped[int] = mapped_column(Integer, default=0)
    metadata_json: Mapped[str] = mapped_column(Text, default="{}")
