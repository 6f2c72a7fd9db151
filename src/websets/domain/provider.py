"""Provider domain models: configuration records, requests and responses."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from websets.domain.webset import Citation


class ProviderKind(str, Enum):
    LLM = "llm"
    SEARCH = "search"


class LLMProviderType(str, Enum):
    OPENAI = "openai"
    OPENAI_COMPATIBLE = "openai-compatible"
    CLAUDE = "claude"
    GEMINI = "gemini"
    GROQ = "groq"
    OPENROUTER = "openrouter"
    VERCEL_AI = "vercel-ai"


class SearchProviderType(str, Enum):
    EXA = "exa"
    BRAVE = "brave"
    BING = "bing"
    GOOGLE = "google"
    FIRECRAWL = "firecrawl"
    TAVILY = "tavily"
    SERPER = "serper"
    JINA = "jina"
    SEARXNG = "searxng"


PROVIDER_TYPES: Dict[ProviderKind, set] = {
    ProviderKind.LLM: {t.value for t in LLMProviderType},
    ProviderKind.SEARCH: {t.value for t in SearchProviderType},
}


@dataclass(frozen=True)
class ProviderConfig:
    """Everything a ProviderClient needs to reach one configured provider."""

    id: str
    name: str
    kind: ProviderKind
    type: str
    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    rate_limit: Optional[int] = None
    daily_limit: Optional[int] = None
    options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "ProviderConfig":
        return cls(
            id=str(record["id"]),
            name=str(record.get("name") or ""),
            kind=ProviderKind(record.get("kind") or ProviderKind.LLM.value),
            type=str(record.get("type") or ""),
            endpoint=record.get("endpoint") or None,
            api_key=record.get("api_key") or None,
            rate_limit=record.get("rate_limit"),
            daily_limit=record.get("daily_limit"),
            options=dict(record.get("config") or {}),
        )


@dataclass(frozen=True)
class ProviderRef:
    kind: ProviderKind
    provider_id: Optional[str] = None


@dataclass
class ProviderRequest:
    """Uniform request: LLM providers read ``messages``, search providers ``query``."""

    messages: List[Dict[str, str]] = field(default_factory=list)
    query: str = ""
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    num_results: int = 5
    include_text: bool = False
    user_id: Optional[str] = None


@dataclass(frozen=True)
class SourceItem:
    url: str
    title: str = ""
    snippet: str = ""
    content: Optional[str] = None
    score: Optional[float] = None


@dataclass
class ProviderResponse:
    content: str = ""
    sources: List[SourceItem] = field(default_factory=list)
    model: str = ""
    tokens_used: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderResult:
    """Gateway output: the raw response plus the citation candidates it yields."""

    provider_id: str
    provider_type: str
    kind: ProviderKind
    response: ProviderResponse
    citations: List[Citation] = field(default_factory=list)
    attempts: int = 1

    @property
    def content(self) -> str:
        return self.response.content
