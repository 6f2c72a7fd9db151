"""Artifact writers that drop export tables into a local directory."""

from __future__ import annotations

import csv
import json
import re
from pathlib import Path
from typing import List, Optional, Sequence, Union

from websets.domain.errors import ValidationError

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def safe_file_name(name: str, extension: str) -> str:
    stem = _UNSAFE.sub("-", (name or "").strip()).strip(".-") or "export"
    if not stem.lower().endswith(f".{extension}"):
        stem = f"{stem}.{extension}"
    return stem


class _DirectoryWriter:
    format = ""

    def __init__(self, export_dir: Union[str, Path], *, url_prefix: str = "/exports"):
        self.export_dir = Path(export_dir)
        self.url_prefix = url_prefix.rstrip("/")

    def _target(self, file_name: str) -> Path:
        name = safe_file_name(file_name, self.format)
        if Path(name).name != name:
            raise ValidationError(f"invalid export file name: {file_name}")
        self.export_dir.mkdir(parents=True, exist_ok=True)
        return self.export_dir / name

    def _url(self, path: Path) -> str:
        return f"{self.url_prefix}/{path.name}"


class CsvArtifactWriter(_DirectoryWriter):
    format = "csv"

    def write(self, file_name: str, table: Sequence[List[Optional[str]]]) -> str:
        path = self._target(file_name)
        with open(path, "w", encoding="utf-8", newline="") as f:
            writer = csv.writer(f)
            for row in table:
                writer.writerow(["" if v is None else v for v in row])
        return self._url(path)


class JsonArtifactWriter(_DirectoryWriter):
    """Writes a list of objects keyed by the header row."""

    format = "json"

    def write(self, file_name: str, table: Sequence[List[Optional[str]]]) -> str:
        path = self._target(file_name)
        header = list(table[0]) if table else []
        records = [dict(zip(header, row)) for row in table[1:]]
        with open(path, "w", encoding="utf-8") as f:
            json.dump(records, f, ensure_ascii=False, indent=2)
        return self._url(path)
