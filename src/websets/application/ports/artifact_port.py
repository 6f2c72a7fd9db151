# src/websets/application/ports/artifact_port.py
"""Export artifact writer port."""

from __future__ import annotations

from typing import List, Optional, Protocol, Sequence, runtime_checkable


@runtime_checkable
class ArtifactWriter(Protocol):
    """Writes an export table somewhere and returns where it can be fetched."""

    format: str

    def write(self, file_name: str, table: Sequence[List[Optional[str]]]) -> str:
        """Persist ``table`` (header row first) and return its export url."""
        ...
