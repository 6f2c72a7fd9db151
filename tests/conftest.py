# tests/conftest.py
"""
Pytest configuration and fixtures.

Points the engine's database, log and export directories at a scratch
directory before any websets module is imported, and provides fake
provider clients so no test reaches the network.
"""

import asyncio
import json
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

project_root = Path(__file__).parent.parent
src_root = project_root / "src"
if str(src_root) not in sys.path:
    sys.path.insert(0, str(src_root))

_scratch = Path(tempfile.mkdtemp(prefix="websets-tests-"))
os.environ.setdefault("WEBSETS_DB_URL", f"sqlite:///{_scratch / 'default.db'}")
os.environ.setdefault("WEBSETS_LOG_DIR", str(_scratch / "logs"))
os.environ.setdefault("WEBSETS_EXPORT_DIR", str(_scratch / "exports"))
os.environ.setdefault("WEBSETS_SECRET_KEY", "websets-test-passphrase")

from websets.application.engine import WebsetsEngine  # noqa: E402
from websets.domain.provider import (  # noqa: E402
    ProviderConfig,
    ProviderRequest,
    ProviderResponse,
    SourceItem,
)
from websets.infrastructure.providers.registry import ProviderClientRegistry  # noqa: E402
from websets.utils.settings import EngineSettings  # noqa: E402


class FakeLLMClient:
    """Answers with a JSON extraction; ``behaviour`` may raise or override the answer."""

    def __init__(self, value: str = "info@example.com", confidence: float = 0.9):
        self.value = value
        self.confidence = confidence
        self.calls: List[ProviderRequest] = []
        self.behaviour: Optional[Callable[[int, ProviderRequest], Optional[str]]] = None
        self.closed = False

    async def call(self, config: ProviderConfig, request: ProviderRequest) -> ProviderResponse:
        self.calls.append(request)
        content = None
        if self.behaviour is not None:
            content = self.behaviour(len(self.calls), request)
        if content is None:
            content = json.dumps(
                {"value": self.value, "confidence": self.confidence, "explanation": "found on site"}
            )
        return ProviderResponse(content=content, model="fake-model", tokens_used=42)

    async def close(self) -> None:
        self.closed = True


class FakeSearchClient:
    def __init__(self, sources: Optional[List[SourceItem]] = None):
        self.sources = sources if sources is not None else [
            SourceItem(url="https://acme.example/contact", title="Contact", snippet="Write to us"),
            SourceItem(url="https://acme.example/about", title="About", snippet="Acme Corp"),
        ]
        self.calls: List[ProviderRequest] = []

    async def call(self, config: ProviderConfig, request: ProviderRequest) -> ProviderResponse:
        self.calls.append(request)
        return ProviderResponse(content="results", sources=list(self.sources), model=config.type)

    async def close(self) -> None:
        return None


async def no_sleep(_delay: float) -> None:
    await asyncio.sleep(0)


class FakeClock:
    def __init__(self, now_ms: int = 0):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms


def make_settings(export_dir: Path, **overrides: Any) -> EngineSettings:
    values: Dict[str, Any] = {
        "worker_concurrency": 2,
        "max_inflight_per_provider": 2,
        "request_timeout": 5.0,
        "max_retries": 2,
        "retry_base_delay": 0.0,
        "max_rate_limit_requeues": 3,
        "requeue_base_delay": 0.0,
        "max_commit_retries": 3,
        "export_dir": str(export_dir),
    }
    values.update(overrides)
    return EngineSettings(**values)


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'websets.db'}"


@pytest.fixture
def fake_llm() -> FakeLLMClient:
    return FakeLLMClient()


@pytest.fixture
def fake_search() -> FakeSearchClient:
    return FakeSearchClient()


@pytest.fixture
def registry(fake_llm: FakeLLMClient, fake_search: FakeSearchClient) -> ProviderClientRegistry:
    return ProviderClientRegistry({"openai": fake_llm, "exa": fake_search})


@pytest.fixture
def make_engine(tmp_path: Path, db_url: str, registry: ProviderClientRegistry):
    engines: List[WebsetsEngine] = []

    def _make(**overrides: Any) -> WebsetsEngine:
        kwargs: Dict[str, Any] = {
            "settings": make_settings(tmp_path / "exports", **overrides.pop("settings", {})),
            "registry": registry,
            "sleep": no_sleep,
        }
        kwargs.update(overrides)
        engine = WebsetsEngine(db_url, **kwargs)
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.close()


@pytest.fixture
def engine(make_engine) -> WebsetsEngine:
    return make_engine()


@pytest.fixture
def leads(engine: WebsetsEngine):
    """A ten-row webset with a filled Company column and an empty Email column."""
    webset = engine.webset_store.create_webset(
        name="Leads",
        columns=[{"name": "Company"}, {"name": "Email", "type": "email"}],
        created_by="tester",
    )
    engine.webset_store.append_rows(webset.id, [{"Company": f"Acme {i}"} for i in range(10)])
    return engine.webset_store.require_webset(webset.id)


@pytest.fixture
def llm_provider(engine: WebsetsEngine) -> Dict[str, Any]:
    return engine.provider_store.upsert_provider(
        payload={"name": "primary", "kind": "llm", "type": "openai", "api_key": "sk-test-1234567890"}
    )
