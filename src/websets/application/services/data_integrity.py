"""Consistency checks over the current state of a webset."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from websets.domain.webset import ColumnType
from websets.infrastructure.stores.webset_store import WebsetStore

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_BOOLEANS = {"true", "false", "yes", "no", "1", "0"}


def value_matches_type(value: Optional[str], column_type: ColumnType) -> bool:
    if value is None or value == "":
        return True
    text = str(value).strip()
    if column_type == ColumnType.NUMBER:
        try:
            float(text.replace(",", ""))
            return True
        except ValueError:
            return False
    if column_type == ColumnType.URL:
        parsed = urlparse(text)
        return parsed.scheme in ("http", "https") and bool(parsed.netloc)
    if column_type == ColumnType.EMAIL:
        return bool(_EMAIL_RE.match(text))
    if column_type == ColumnType.DATE:
        try:
            date.fromisoformat(text[:10])
            return True
        except ValueError:
            return False
    if column_type == ColumnType.BOOLEAN:
        return text.lower() in _BOOLEANS
    return True


@dataclass
class IntegrityReport:
    webset_id: str
    version: int
    orphaned_cells: List[Dict[str, Any]] = field(default_factory=list)
    type_mismatches: List[Dict[str, Any]] = field(default_factory=list)
    missing_required: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not (self.orphaned_cells or self.type_mismatches or self.missing_required)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "webset_id": self.webset_id,
            "version": self.version,
            "is_valid": self.is_valid,
            "orphaned_cells": self.orphaned_cells,
            "type_mismatches": self.type_mismatches,
            "missing_required": self.missing_required,
        }


class DataIntegrityChecker:
    def __init__(self, store: WebsetStore) -> None:
        self._store = store

    def verify_webset(self, webset_id: str) -> IntegrityReport:
        webset = self._store.require_webset(webset_id)
        cells = self._store.get_cells(webset_id)
        columns = {c.id: c for c in webset.columns}
        report = IntegrityReport(webset_id=webset.id, version=webset.current_version)

        filled = set()
        for cell in cells:
            col = columns.get(cell.column)
            if col is None:
                report.orphaned_cells.append({"cell_id": cell.id, "row": cell.row, "column": cell.column})
                continue
            if cell.value not in (None, ""):
                filled.add((cell.row, cell.column))
            if not value_matches_type(cell.value, col.type):
                report.type_mismatches.append(
                    {
                        "cell_id": cell.id,
                        "row": cell.row,
                        "column": col.id,
                        "expected": col.type.value,
                        "value": cell.value,
                    }
                )

        for col in webset.columns:
            if not col.required or col.default_value not in (None, ""):
                continue
            for row in range(webset.row_count):
                if (row, col.id) not in filled:
                    report.missing_required.append({"row": row, "column": col.id})

        if not report.is_valid:
            logger.info(
                "webset %s v%s integrity issues orphaned=%s mismatches=%s missing=%s",
                webset.id,
                webset.current_version,
                len(report.orphaned_cells),
                len(report.type_mismatches),
                len(report.missing_required),
            )
        return report
