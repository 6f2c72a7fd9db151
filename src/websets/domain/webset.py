# src/websets/domain/webset.py
"""
Webset domain models.

- Webset: named, versioned table with typed columns
- ColumnDefinition: one typed column of a webset
- WebsetCell: one immutable revision of the value at (row, column)
- Citation: source material attached to a cell revision
- WebsetVersion: immutable numbered snapshot of the full webset state
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from websets.domain.errors import ValidationError


class WebsetStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


class ColumnType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    URL = "url"
    EMAIL = "email"
    DATE = "date"
    BOOLEAN = "boolean"


def slugify_column(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", (name or "").strip().lower()).strip("_")
    return slug or "column"


@dataclass(frozen=True)
class ColumnDefinition:
    id: str
    name: str
    type: ColumnType = ColumnType.TEXT
    required: bool = False
    default_value: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "required": self.required,
            "default_value": self.default_value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ColumnDefinition":
        name = str(data.get("name") or "").strip()
        if not name:
            raise ValidationError("column name is required")
        raw_type = str(data.get("type") or ColumnType.TEXT.value).strip().lower()
        # legacy imports used "string" for free text
        if raw_type == "string":
            raw_type = ColumnType.TEXT.value
        try:
            col_type = ColumnType(raw_type)
        except ValueError:
            raise ValidationError(f"unsupported column type: {raw_type}")
        default = data.get("default_value", data.get("defaultValue"))
        return cls(
            id=str(data.get("id") or slugify_column(name)),
            name=name,
            type=col_type,
            required=bool(data.get("required", False)),
            default_value=None if default is None else str(default),
        )


def normalize_columns(raw: Sequence[Any]) -> List[ColumnDefinition]:
    """Parse column payloads and enforce unique ids and names."""
    columns: List[ColumnDefinition] = []
    seen_ids = set()
    seen_names = set()
    for item in raw or []:
        col = item if isinstance(item, ColumnDefinition) else ColumnDefinition.from_dict(item)
        if col.id in seen_ids:
            raise ValidationError(f"duplicate column id: {col.id}")
        if col.name.lower() in seen_names:
            raise ValidationError(f"duplicate column name: {col.name}")
        seen_ids.add(col.id)
        seen_names.add(col.name.lower())
        columns.append(col)
    return columns


@dataclass(frozen=True)
class Citation:
    url: str
    title: str = ""
    content_snippet: str = ""
    search_provider_id: Optional[str] = None
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "title": self.title,
            "content_snippet": self.content_snippet,
            "search_provider_id": self.search_provider_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Citation":
        return cls(
            id=data.get("id"),
            url=str(data.get("url") or ""),
            title=str(data.get("title") or ""),
            content_snippet=str(data.get("content_snippet") or ""),
            search_provider_id=data.get("search_provider_id"),
        )


@dataclass(frozen=True)
class WebsetCell:
    webset_id: str
    row: int
    column: str
    value: Optional[str] = None
    confidence: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    citations: List[Citation] = field(default_factory=list)
    id: Optional[str] = None
    version_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "webset_id": self.webset_id,
            "row": self.row,
            "column": self.column,
            "value": self.value,
            "confidence": self.confidence,
            "metadata": dict(self.metadata),
            "citations": [c.to_dict() for c in self.citations],
            "version_id": self.version_id,
        }


@dataclass(frozen=True)
class WebsetVersion:
    id: str
    webset_id: str
    version: int
    snapshot: Dict[str, Any]
    changed_by: str
    change_description: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self, *, include_snapshot: bool = True) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "webset_id": self.webset_id,
            "version": self.version,
            "changed_by": self.changed_by,
            "change_description": self.change_description,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_snapshot:
            data["snapshot"] = self.snapshot
        return data


@dataclass
class Webset:
    id: str
    name: str
    description: str = ""
    columns: List[ColumnDefinition] = field(default_factory=list)
    status: WebsetStatus = WebsetStatus.DRAFT
    current_version: int = 1
    row_count: int = 0
    created_by: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def find_column(self, ref: str) -> Optional[ColumnDefinition]:
        """Resolve a column by id, falling back to a case-insensitive name match."""
        key = (ref or "").strip()
        for col in self.columns:
            if col.id == key:
                return col
        lowered = key.lower()
        for col in self.columns:
            if col.name.lower() == lowered:
                return col
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "columns": [c.to_dict() for c in self.columns],
            "status": self.status.value,
            "current_version": self.current_version,
            "row_count": self.row_count,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
