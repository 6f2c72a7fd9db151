from __future__ import annotations

from pathlib import Path

import pytest

from websets.domain.errors import ValidationError
from websets.infrastructure.stores.provider_store import ProviderStore
from websets.infrastructure.stores.provider_usage_store import ProviderUsageStore
from websets.utils import secret


@pytest.fixture
def store(db_url: str) -> ProviderStore:
    return ProviderStore(db_url=db_url)


def test_provider_keys_are_masked_unless_requested(store: ProviderStore):
    created = store.upsert_provider(
        payload={"name": "OpenAI", "kind": "llm", "type": "openai", "api_key": "sk-live-abcdef123456"}
    )
    assert created["api_key"] == "***3456"
    assert created["api_key_present"] is True

    secret_view = store.get_provider(created["id"], include_secrets=True)
    assert secret_view["api_key"] == "sk-live-abcdef123456"


def test_masked_key_echo_keeps_stored_key(store: ProviderStore):
    created = store.upsert_provider(
        payload={"name": "Exa", "kind": "search", "type": "exa", "api_key": "exa-key-987654321"}
    )
    store.upsert_provider(
        payload={"api_key": created["api_key"], "priority": 5}, provider_id=created["id"]
    )

    item = store.get_provider(created["id"], include_secrets=True)
    assert item["api_key"] == "exa-key-987654321"
    assert item["priority"] == 5


def test_provider_validation(store: ProviderStore):
    with pytest.raises(ValidationError):
        store.upsert_provider(payload={"name": "X", "kind": "llm", "type": "exa"})
    with pytest.raises(ValidationError):
        store.upsert_provider(payload={"name": "X", "kind": "video", "type": "openai"})
    with pytest.raises(ValidationError):
        store.upsert_provider(payload={"kind": "llm", "type": "openai"})
    with pytest.raises(ValidationError):
        store.upsert_provider(payload={"name": "X", "kind": "llm", "type": "openai", "rate_limit": 0})
    with pytest.raises(ValidationError):
        store.upsert_provider(payload={"name": "X"}, provider_id="missing")


def test_list_providers_orders_by_priority(store: ProviderStore):
    store.upsert_provider(payload={"name": "slow", "kind": "llm", "type": "claude", "priority": 50})
    store.upsert_provider(payload={"name": "fast", "kind": "llm", "type": "groq", "priority": 10})
    store.upsert_provider(
        payload={"name": "off", "kind": "llm", "type": "openai", "priority": 1, "is_active": False}
    )
    store.upsert_provider(payload={"name": "web", "kind": "search", "type": "brave"})

    active = store.list_providers(kind="llm", active_only=True)
    assert [p["name"] for p in active] == ["fast", "slow"]
    assert len(store.list_providers()) == 4


def test_seed_from_yaml_reads_env_keys_and_is_idempotent(store: ProviderStore, tmp_path: Path, monkeypatch):
    monkeypatch.setenv("TAVILY_TEST_KEY", "tvly-secret-0001")
    seed = tmp_path / "providers.yaml"
    seed.write_text(
        """
providers:
  - name: tavily
    kind: search
    type: tavily
    api_key_env: TAVILY_TEST_KEY
    priority: 10
  - name: claude
    kind: llm
    type: claude
    api_key: sk-ant-test-000
    rate_limit: 30
    config:
      model: claude-3-5-haiku-latest
""",
        encoding="utf-8",
    )

    first = store.seed_from_yaml(seed)
    second = store.seed_from_yaml(seed)

    assert len(first) == 2
    assert [p["id"] for p in first] == [p["id"] for p in second]
    assert len(store.list_providers()) == 2

    tavily = store.get_provider(first[0]["id"], include_secrets=True)
    assert tavily["api_key"] == "tvly-secret-0001"
    claude = store.get_provider(first[1]["id"])
    assert claude["rate_limit"] == 30
    assert claude["config"] == {"model": "claude-3-5-haiku-latest"}


def test_delete_provider(store: ProviderStore):
    created = store.upsert_provider(payload={"name": "tmp", "kind": "search", "type": "jina"})
    assert store.delete_provider(created["id"]) is True
    assert store.delete_provider(created["id"]) is False


def test_usage_store_records_and_summarizes(db_url: str):
    usage = ProviderUsageStore(db_url=db_url)
    usage.record_usage(provider_id="p1", provider_type="openai", kind="llm", model_name="gpt", tokens_used=120)
    usage.record_usage(provider_id="p1", provider_type="openai", kind="llm", model_name="gpt", tokens_used=80)
    usage.record_usage(provider_id="p2", provider_type="exa", kind="search")

    summary = usage.summarize(days=7)

    assert summary["totals"] == {"calls": 3, "tokens_used": 200}
    assert summary["providers"][0]["provider_id"] == "p1"
    assert summary["providers"][0]["calls"] == 2
    assert len(summary["daily"]) >= 1


def test_secret_round_trip(monkeypatch):
    monkeypatch.setenv("WEBSETS_SECRET_KEY", "another-passphrase")
    secret.reset_cipher()
    try:
        sealed = secret.seal("sk-abc")
        assert sealed and sealed != "sk-abc"
        assert secret.unseal(sealed) == "sk-abc"
        assert secret.unseal("plain-legacy-value") == "plain-legacy-value"
        assert secret.seal("  ") is None
        assert secret.mask("short") == "***"
        assert secret.mask("") == ""
    finally:
        secret.reset_cipher()
