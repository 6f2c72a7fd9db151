from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from websets.domain.errors import PermanentProviderError
from websets.domain.webset import Citation, ColumnDefinition, Webset

EXTRACTION_SYSTEM_PROMPT = """You are a data extraction specialist filling one cell of a table.

Instructions:
1. Read the row context and any sources before answering
2. Extract only the value requested for the target column
3. Give a confidence between 0.0 and 1.0
4. When sources disagree or are missing, answer with your best estimate and a lower confidence

Respond with JSON only:
{"value": "extracted value", "confidence": 0.85, "explanation": "one sentence"}
"""

_TYPE_HINTS = {
    "text": "free text",
    "number": "a plain number without units or thousands separators",
    "url": "a full URL starting with http:// or https://",
    "email": "a single email address",
    "date": "an ISO-8601 date (YYYY-MM-DD)",
    "boolean": "true or false",
}

_SNIPPET_CHARS = 500


@dataclass(frozen=True)
class Extraction:
    value: Optional[str]
    confidence: Optional[float]
    explanation: str = ""


def row_context(webset: Webset, cells: Sequence[Any], row: int, *, exclude: Optional[str] = None) -> Dict[str, str]:
    """Column name -> current value for one row, skipping empty cells."""
    names = {c.id: c.name for c in webset.columns}
    context: Dict[str, str] = {}
    for cell in cells:
        if cell.row != row or cell.column == exclude or cell.value in (None, ""):
            continue
        if cell.column in names:
            context[names[cell.column]] = str(cell.value)
    return context


def build_search_query(column: ColumnDefinition, context: Dict[str, str], prompt: Optional[str] = None) -> str:
    subject = " ".join(v for v in context.values() if v)
    if prompt:
        return f"{prompt} {subject}".strip()
    return f"{column.name} {subject}".strip()


def build_messages(
    *,
    webset: Webset,
    column: ColumnDefinition,
    context: Dict[str, str],
    citations: Sequence[Citation] = (),
    prompt: Optional[str] = None,
) -> List[Dict[str, str]]:
    lines = [f"Dataset: {webset.name}"]
    if webset.description:
        lines.append(f"Description: {webset.description}")
    lines.append(f"Target column: {column.name} ({_TYPE_HINTS.get(column.type.value, 'free text')})")
    if prompt:
        lines.append(f"Task: {prompt}")
    lines.append("")
    lines.append("Row context:")
    if context:
        lines.extend(f"- {name}: {value}" for name, value in context.items())
    else:
        lines.append("- (no other values in this row)")
    if citations:
        lines.append("")
        lines.append("Sources:")
        for idx, citation in enumerate(citations, start=1):
            snippet = (citation.content_snippet or "")[:_SNIPPET_CHARS]
            lines.append(f"[{idx}] {citation.title} ({citation.url})\n{snippet}")
    return [
        {"role": "system", "content": EXTRACTION_SYSTEM_PROMPT},
        {"role": "user", "content": "\n".join(lines)},
    ]


def _safe_parse_json(raw: str) -> Optional[Dict[str, Any]]:
    text = (raw or "").strip()
    if not text:
        return None
    try:
        obj = json.loads(text)
        return obj if isinstance(obj, dict) else None
    except Exception:
        pass

    # models like to wrap JSON in prose or code fences
    start = text.find("{")
    end = text.rfind("}")
    if start >= 0 and end > start:
        try:
            obj = json.loads(text[start : end + 1])
            return obj if isinstance(obj, dict) else None
        except Exception:
            return None
    return None


def parse_extraction(raw: str) -> Extraction:
    """Read ``{value, confidence}`` from a model answer; plain text is taken as the value."""
    parsed = _safe_parse_json(raw)
    if parsed is None:
        text = (raw or "").strip()
        if not text:
            raise PermanentProviderError("model returned an empty answer")
        return Extraction(value=text, confidence=None, explanation="unstructured answer")

    value = parsed.get("value")
    confidence: Optional[float] = None
    try:
        if parsed.get("confidence") is not None:
            confidence = max(0.0, min(1.0, float(parsed["confidence"])))
    except (TypeError, ValueError):
        confidence = None
    return Extraction(
        value=None if value is None else str(value).strip(),
        confidence=confidence,
        explanation=str(parsed.get("explanation") or ""),
    )
