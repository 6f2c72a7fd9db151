from __future__ import annotations

import pytest

from websets.domain.enrichment import JobStatus, RowFailure, RowFailureKind, compute_progress
from websets.domain.errors import NotFoundError
from websets.infrastructure.stores.job_store import EnrichmentJobStore


@pytest.fixture
def store(db_url: str) -> EnrichmentJobStore:
    return EnrichmentJobStore(db_url=db_url)


def test_compute_progress():
    assert compute_progress(0, 5) == 0
    assert compute_progress(2, 3) == 66
    assert compute_progress(5, 5) == 100
    assert compute_progress(0, 0) == 100


def test_job_lifecycle_counts_rows_once(store: EnrichmentJobStore):
    job = store.create_job(webset_id="w1", column="email", rows=[0, 1, 2, 3])
    assert job.status == JobStatus.PENDING
    assert job.total_rows == 4
    assert job.progress == 0

    running = store.mark_running(job.id)
    assert running.status == JobStatus.RUNNING
    assert running.started_at is not None

    store.record_rows(job.id)
    after = store.record_rows(
        job.id, failures=[RowFailure(row=1, kind=RowFailureKind.PERMANENT, message="bad answer")]
    )
    assert after.completed_rows == 2
    assert after.progress == 50
    assert after.failed_rows == 1
    assert after.failures[0].kind == RowFailureKind.PERMANENT

    capped = store.record_rows(job.id, count=10)
    assert capped.completed_rows == 4
    assert capped.progress == 100

    done = store.finish(job.id, status=JobStatus.COMPLETED)
    assert done.status == JobStatus.COMPLETED
    assert done.finished_at is not None


def test_finish_requires_terminal_status(store: EnrichmentJobStore):
    job = store.create_job(webset_id="w1", column="email", rows=[0])
    with pytest.raises(ValueError):
        store.finish(job.id, status=JobStatus.RUNNING)


def test_cancel_is_ignored_once_terminal(store: EnrichmentJobStore):
    job = store.create_job(webset_id="w1", column="email", rows=[0])
    store.record_rows(job.id)
    store.finish(job.id, status=JobStatus.COMPLETED)

    assert store.request_cancel(job.id).cancel_requested is False

    other = store.create_job(webset_id="w1", column="email", rows=[0])
    assert store.request_cancel(other.id).cancel_requested is True


def test_unknown_job_raises(store: EnrichmentJobStore):
    assert store.get_job("missing") is None
    with pytest.raises(NotFoundError):
        store.record_rows("missing")


def test_list_jobs_filters_by_webset(store: EnrichmentJobStore):
    store.create_job(webset_id="w1", column="a", rows=[0])
    store.create_job(webset_id="w2", column="a", rows=[0])
    store.create_job(webset_id="w1", column="b", rows=[0, 1])

    assert len(store.list_jobs(webset_id="w1")) == 2
    assert len(store.list_jobs()) == 3


def test_last_row_and_terminal_status_commit_together(store: EnrichmentJobStore):
    job = store.create_job(webset_id="w1", column="email", rows=[0, 1])
    store.mark_running(job.id)

    partial = store.record_rows(job.id, terminal_status=JobStatus.COMPLETED)
    assert partial.completed_rows == 1
    assert partial.status == JobStatus.RUNNING
    assert partial.finished_at is None

    last = store.record_rows(job.id, terminal_status=JobStatus.COMPLETED)
    assert last.completed_rows == last.total_rows
    assert last.status == JobStatus.COMPLETED
    assert last.finished_at is not None


def test_terminal_status_carries_the_job_error(store: EnrichmentJobStore):
    job = store.create_job(webset_id="w1", column="email", rows=[0])

    failed = store.record_rows(
        job.id,
        failures=[RowFailure(row=0, kind=RowFailureKind.ABORTED, message="version conflict")],
        terminal_status=JobStatus.FAILED,
        error="version conflict",
    )

    assert failed.status == JobStatus.FAILED
    assert failed.error == "version conflict"
    assert failed.started_at is not None
    with pytest.raises(ValueError):
        store.record_rows(job.id, terminal_status=JobStatus.RUNNING)


def test_finish_leaves_an_ended_job_alone(store: EnrichmentJobStore):
    job = store.create_job(webset_id="w1", column="email", rows=[0])
    ended = store.record_rows(job.id, terminal_status=JobStatus.COMPLETED)

    again = store.finish(job.id, status=JobStatus.FAILED, error="late")

    assert again.status == JobStatus.COMPLETED
    assert again.error is None
    assert again.finished_at == ended.finished_at
