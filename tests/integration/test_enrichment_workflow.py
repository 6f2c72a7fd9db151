"""
Enrichment orchestration integration tests.

Runs real jobs against a SQLite database with fake LLM and search clients.
"""

import asyncio

import pytest

from websets.domain.enrichment import JobStatus, RowFailureKind
from websets.domain.errors import (
    ConflictError,
    NotFoundError,
    PermanentProviderError,
    RateLimited,
    TransientProviderError,
    ValidationError,
)


def _kinds(job):
    return sorted((f.row, f.kind) for f in job.failures)


@pytest.mark.asyncio
async def test_email_column_enrichment(engine, leads, llm_provider, fake_llm):
    job_ids = []
    observed = []

    def observe(n, request):
        observed.append(engine.orchestrator.get_status(job_ids[0]).status)
        return None

    fake_llm.behaviour = observe

    job_id = await engine.orchestrator.submit(leads.id, "email", [0, 1, 2, 3, 4], user_id="alice")
    job_ids.append(job_id)
    pending = engine.orchestrator.get_status(job_id)
    assert pending.status == JobStatus.PENDING
    assert pending.total_rows == 5
    assert pending.progress == 0

    job = await engine.orchestrator.join(job_id)

    assert JobStatus.RUNNING in observed
    assert job.status == JobStatus.COMPLETED
    assert job.completed_rows == 5
    assert job.progress == 100
    assert job.failures == []
    assert job.started_at is not None and job.finished_at is not None

    versions = engine.webset_store.list_versions(leads.id)
    assert [v.version for v in versions] == [7, 6, 5, 4, 3, 2, 1]
    assert all(v.change_description.startswith(f"Enrichment job {job_id}") for v in versions[:5])
    assert all(v.changed_by == "alice" for v in versions[:5])

    for row in range(5):
        cell = engine.webset_store.get_cell(leads.id, row, "email")
        assert cell.value == "info@example.com"
        assert cell.confidence == 0.9
        assert cell.metadata["job_id"] == job_id
        assert cell.metadata["llm_provider_id"] == llm_provider["id"]
    assert engine.webset_store.get_cell(leads.id, 5, "email") is None

    prompt = fake_llm.calls[0].messages[1]["content"]
    assert "Target column: Email" in prompt
    assert "- Company: Acme" in prompt


@pytest.mark.asyncio
async def test_search_sources_become_citations(engine, leads, llm_provider, fake_search):
    search = engine.provider_store.upsert_provider(payload={"name": "exa", "kind": "search", "type": "exa"})

    job_id = await engine.orchestrator.submit(leads.id, "Email", [3], prompt="sales contact email")
    job = await engine.orchestrator.join(job_id)

    assert job.status == JobStatus.COMPLETED
    assert fake_search.calls[0].query == "sales contact email Acme 3"
    cell = engine.webset_store.get_cell(leads.id, 3, "email")
    assert cell.metadata["search_provider_id"] == search["id"]
    citations = engine.webset_store.get_citations(cell.id)
    assert [c.url for c in citations] == ["https://acme.example/contact", "https://acme.example/about"]
    assert all(c.search_provider_id == search["id"] for c in citations)


@pytest.mark.asyncio
async def test_rate_limited_row_is_requeued_then_succeeds(engine, leads, llm_provider, fake_llm):
    def throttle_first(n, request):
        if n == 1:
            raise RateLimited("429 too many requests", retry_after=0.5)
        return None

    fake_llm.behaviour = throttle_first

    job_id = await engine.orchestrator.submit(leads.id, "email", [0])
    job = await engine.orchestrator.join(job_id)

    assert job.status == JobStatus.COMPLETED
    assert job.failures == []
    assert len(fake_llm.calls) == 2
    assert engine.webset_store.get_cell(leads.id, 0, "email").value == "info@example.com"


@pytest.mark.asyncio
async def test_rate_limited_row_gives_up_after_requeues(make_engine, leads, llm_provider, fake_llm):
    engine = make_engine(settings={"max_rate_limit_requeues": 2})

    def always_throttled(n, request):
        raise RateLimited("429", retry_after=1.0)

    fake_llm.behaviour = always_throttled

    job_id = await engine.orchestrator.submit(leads.id, "email", [0, 1])
    job = await engine.orchestrator.join(job_id)

    assert job.status == JobStatus.COMPLETED
    assert job.completed_rows == 2
    assert _kinds(job) == [(0, RowFailureKind.RATE_LIMITED), (1, RowFailureKind.RATE_LIMITED)]
    assert len(fake_llm.calls) == 6
    assert engine.webset_store.require_webset(leads.id).current_version == 2


@pytest.mark.asyncio
async def test_local_budget_limits_llm_calls(engine, leads, llm_provider, fake_llm):
    engine.rate_limiter.configure("global", "llm", 1, 60_000)

    job_id = await engine.orchestrator.submit(leads.id, "email", [0, 1])
    job = await engine.orchestrator.join(job_id)

    assert job.status == JobStatus.COMPLETED
    assert job.completed_rows == 2
    assert len(fake_llm.calls) == 1
    assert [f.kind for f in job.failures] == [RowFailureKind.RATE_LIMITED]
    status = engine.rate_limiter.status("global", "llm")
    assert status["current_count"] == 1
    assert status["remaining"] == 0


@pytest.mark.asyncio
async def test_transient_and_permanent_failures_are_per_row(engine, leads, llm_provider, fake_llm):
    def flaky(n, request):
        content = request.messages[1]["content"]
        if "Acme 1" in content:
            raise TransientProviderError("upstream 503")
        if "Acme 2" in content:
            return "   "
        if "Acme 3" in content:
            raise PermanentProviderError("content policy")
        return None

    fake_llm.behaviour = flaky

    job_id = await engine.orchestrator.submit(leads.id, "email", [0, 1, 2, 3])
    job = await engine.orchestrator.join(job_id)

    assert job.status == JobStatus.COMPLETED
    assert job.completed_rows == 4
    assert _kinds(job) == [
        (1, RowFailureKind.TRANSIENT_EXHAUSTED),
        (2, RowFailureKind.PERMANENT),
        (3, RowFailureKind.PERMANENT),
    ]
    transient_calls = [c for c in fake_llm.calls if "Acme 1" in c.messages[1]["content"]]
    assert len(transient_calls) == 3
    assert engine.webset_store.require_webset(leads.id).current_version == 3


@pytest.mark.asyncio
async def test_inactive_explicit_provider_fails_job(engine, leads):
    off = engine.provider_store.upsert_provider(
        payload={"name": "off", "kind": "llm", "type": "openai", "is_active": False}
    )

    job_id = await engine.orchestrator.submit(leads.id, "email", [0, 1, 2], llm_provider_id=off["id"])
    job = engine.orchestrator.get_status(job_id)

    assert job.status == JobStatus.FAILED
    assert "inactive" in job.error
    assert job.completed_rows == job.total_rows == 3
    assert _kinds(job) == [(r, RowFailureKind.ABORTED) for r in range(3)]


@pytest.mark.asyncio
async def test_no_llm_provider_fails_job(engine, leads, fake_llm):
    job_id = await engine.orchestrator.submit(leads.id, "email", [0])
    job = await engine.orchestrator.join(job_id)

    assert job.status == JobStatus.FAILED
    assert job.progress == 100
    assert fake_llm.calls == []


@pytest.mark.asyncio
async def test_cancel_before_start(engine, leads, llm_provider, fake_llm):
    job_id = await engine.orchestrator.submit(leads.id, "email", [0, 1, 2])
    engine.orchestrator.cancel(job_id)

    job = await engine.orchestrator.join(job_id)

    assert job.status == JobStatus.COMPLETED
    assert job.cancel_requested is True
    assert _kinds(job) == [(r, RowFailureKind.CANCELLED) for r in range(3)]
    assert fake_llm.calls == []

    # cancelling a finished job changes nothing
    assert engine.orchestrator.cancel(job_id).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_version_conflict_aborts_job(engine, leads, llm_provider, monkeypatch):
    def conflicting(*args, **kwargs):
        raise ConflictError("head moved")

    monkeypatch.setattr(engine.webset_store, "write_cell", conflicting)

    job_id = await engine.orchestrator.submit(leads.id, "email", [0, 1, 2, 3, 4])
    job = await engine.orchestrator.join(job_id)

    assert job.status == JobStatus.FAILED
    assert job.error == "head moved"
    assert job.completed_rows == 5
    assert _kinds(job) == [(r, RowFailureKind.ABORTED) for r in range(5)]


@pytest.mark.asyncio
async def test_invalid_requests_create_no_job(engine, leads, llm_provider):
    with pytest.raises(ValidationError):
        await engine.orchestrator.submit(leads.id, "phone", [0])
    with pytest.raises(ValidationError):
        await engine.orchestrator.submit(leads.id, "email", [10])
    with pytest.raises(ValidationError):
        await engine.orchestrator.submit(leads.id, "email", [])
    with pytest.raises(ValidationError):
        await engine.orchestrator.submit(leads.id, "email", [True])
    with pytest.raises(NotFoundError):
        await engine.orchestrator.submit("missing", "email", [0])

    assert engine.orchestrator.list_jobs(leads.id) == []


@pytest.mark.asyncio
async def test_duplicate_rows_are_collapsed(engine, leads, llm_provider, fake_llm):
    job_id = await engine.orchestrator.submit(leads.id, "email", [2, 2, 0])
    job = await engine.orchestrator.join(job_id)

    assert job.rows == [2, 0]
    assert job.total_rows == 2
    assert len(fake_llm.calls) == 2


@pytest.mark.asyncio
async def test_job_is_terminal_once_every_row_is_counted(engine, leads, llm_provider, monkeypatch):
    record_rows = engine.job_store.record_rows
    snapshots = []

    def observed(job_id, **kwargs):
        job = record_rows(job_id, **kwargs)
        stored = engine.job_store.get_job(job_id)
        snapshots.append((stored.status, stored.completed_rows, stored.total_rows))
        return job

    monkeypatch.setattr(engine.job_store, "record_rows", observed)

    job_id = await engine.orchestrator.submit(leads.id, "email", [0, 1])
    job = await engine.orchestrator.join(job_id)

    assert job.status == JobStatus.COMPLETED
    assert len(snapshots) == 2
    for status, completed, total in snapshots:
        if completed == total:
            assert status in (JobStatus.COMPLETED, JobStatus.FAILED)
        else:
            assert status == JobStatus.RUNNING
    assert job_id not in engine.orchestrator._tasks


@pytest.mark.asyncio
async def test_cancel_mid_run_keeps_written_rows(make_engine, leads, llm_provider, fake_llm):
    engine = make_engine(settings={"worker_concurrency": 1})
    job_ids = []

    def cancel_on_second_row(n, request):
        if n == 2:
            engine.orchestrator.cancel(job_ids[0])
        return None

    fake_llm.behaviour = cancel_on_second_row

    job_id = await engine.orchestrator.submit(leads.id, "email", [0, 1, 2, 3])
    job_ids.append(job_id)
    job = await engine.orchestrator.join(job_id)

    assert job.status == JobStatus.COMPLETED
    assert job.cancel_requested is True
    assert job.completed_rows == 4
    assert _kinds(job) == [(2, RowFailureKind.CANCELLED), (3, RowFailureKind.CANCELLED)]
    assert len(fake_llm.calls) == 2
    assert engine.webset_store.get_cell(leads.id, 0, "email").value == "info@example.com"
    assert engine.webset_store.get_cell(leads.id, 1, "email").value == "info@example.com"
    assert engine.webset_store.get_cell(leads.id, 2, "email") is None
    assert engine.webset_store.require_webset(leads.id).current_version == 4


@pytest.mark.asyncio
async def test_requeued_row_reuses_its_search_results(engine, leads, llm_provider, fake_llm, fake_search):
    engine.provider_store.upsert_provider(payload={"name": "exa", "kind": "search", "type": "exa"})

    def throttle_first(n, request):
        if n == 1:
            raise RateLimited("429 too many requests", retry_after=0.5)
        return None

    fake_llm.behaviour = throttle_first

    job_id = await engine.orchestrator.submit(leads.id, "email", [4])
    job = await engine.orchestrator.join(job_id)

    assert job.status == JobStatus.COMPLETED
    assert len(fake_search.calls) == 1
    assert len(fake_llm.calls) == 2
    cell = engine.webset_store.get_cell(leads.id, 4, "email")
    assert len(engine.webset_store.get_citations(cell.id)) == 2


@pytest.mark.asyncio
async def test_exhausted_user_quota_leaves_global_budget_alone(engine, leads, llm_provider, fake_llm):
    engine.rate_limiter.configure("global", "llm", 10, 60_000)
    engine.rate_limiter.configure("user", "llm", 0, 60_000, user_id="bob")

    job_id = await engine.orchestrator.submit(leads.id, "email", [0], user_id="bob")
    job = await engine.orchestrator.join(job_id)

    assert job.status == JobStatus.COMPLETED
    assert [f.kind for f in job.failures] == [RowFailureKind.RATE_LIMITED]
    assert fake_llm.calls == []
    assert engine.rate_limiter.status("global", "llm")["current_count"] == 0


@pytest.mark.asyncio
async def test_progress_write_failure_ends_job_as_failed(engine, leads, llm_provider, monkeypatch):
    def unavailable(*args, **kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(engine.job_store, "record_rows", unavailable)

    job_id = await engine.orchestrator.submit(leads.id, "email", [0, 1, 2])
    job = await asyncio.wait_for(engine.orchestrator.join(job_id), timeout=5)

    assert job.status == JobStatus.FAILED
    assert "database is locked" in job.error
    assert job.finished_at is not None
