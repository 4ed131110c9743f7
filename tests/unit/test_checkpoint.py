from datetime import timedelta

import pytest

from apps.exporter.checkpoint import ERROR_MESSAGE_MAX_CHARS
from apps.exporter.errors import CheckpointError, StaleInvocationError
from utils.schemas import JobStatus, OutputFormat, RecordKind, UploadPart, utcnow


def _part(n: int) -> UploadPart:
    return UploadPart(part_number=n, checksum=f"etag-{n}", byte_size=10 * n)


def _processing(store, make_job, **overrides):
    job = store.mark_processing(make_job(**overrides))
    return store.save_upload(job, "upload-1", "exports/comp_1/loc_1/job_1.csv")


def test_create_and_load(store, make_job):
    make_job(
        record_kind=RecordKind.MESSAGES,
        output_format=OutputFormat.JSON,
        filters={"channel": "Email", "startDate": "2025-01-01"},
        notification_target="ops@example.com",
    )

    job = store.load("job_1")

    assert job.status is JobStatus.PENDING
    assert job.record_kind is RecordKind.MESSAGES
    assert job.output_format is OutputFormat.JSON
    assert job.filters == {"channel": "Email", "startDate": "2025-01-01"}
    assert job.notification_target == "ops@example.com"
    assert job.upload_state.parts == []
    assert not job.upload_state.is_open
    assert store.load("missing") is None


def test_mark_processing_sets_started_at(store, make_job):
    job = store.mark_processing(make_job())

    assert job.status is JobStatus.PROCESSING
    assert job.started_at is not None
    assert job.last_processed_at is not None


def test_mark_processing_rejects_moved_on_job(store, make_job):
    job = make_job()
    store.mark_processing(job)
    store.mark_failed(job.job_id, "boom")

    with pytest.raises(StaleInvocationError):
        store.mark_processing(job)


def test_save_upload_only_once(store, make_job):
    job = store.mark_processing(make_job())
    job = store.save_upload(job, "upload-1", "key")

    assert job.upload_state.provider_upload_id == "upload-1"
    with pytest.raises(StaleInvocationError):
        store.save_upload(job, "upload-2", "key")
    assert store.load("job_1").upload_state.provider_upload_id == "upload-1"


def test_record_progress_advances_batch_and_appends_parts(store, make_job):
    job = _processing(store, make_job)

    job = store.record_progress(job, cursor="100", processed_count=100, parts=[_part(1)])
    job = store.record_progress(job, cursor="200", processed_count=200, parts=[_part(1), _part(2)])

    reloaded = store.load("job_1")
    assert reloaded.batch_count == 2
    assert reloaded.cursor == "200"
    assert reloaded.processed_count == 200
    assert [p.part_number for p in reloaded.upload_state.parts] == [1, 2]
    assert reloaded.upload_state.parts[1].checksum == "etag-2"
    assert reloaded.data_exhausted is False


def test_record_progress_remembers_exhausted_data(store, make_job):
    job = _processing(store, make_job)

    job = store.record_progress(job, cursor="50", processed_count=50, parts=[_part(1)], exhausted=True)

    assert job.data_exhausted is True


def test_record_progress_rejects_duplicate_commit(store, make_job):
    job = _processing(store, make_job)
    store.record_progress(job, cursor="100", processed_count=100, parts=[_part(1)])

    with pytest.raises(StaleInvocationError):
        store.record_progress(job, cursor="100", processed_count=100, parts=[_part(1)])

    assert store.load("job_1").batch_count == 1


def test_record_progress_enforces_monotonic_count(store, make_job):
    job = _processing(store, make_job)
    job = store.record_progress(job, cursor="100", processed_count=100, parts=[_part(1)])

    with pytest.raises(CheckpointError):
        store.record_progress(job, cursor="50", processed_count=50, parts=[_part(1)])


def test_record_progress_parts_are_append_only(store, make_job):
    job = _processing(store, make_job)
    job = store.record_progress(job, cursor="100", processed_count=100, parts=[_part(1), _part(2)])

    with pytest.raises(CheckpointError):
        store.record_progress(job, cursor="200", processed_count=200, parts=[_part(1)])

    replaced = UploadPart(part_number=2, checksum="other", byte_size=1)
    with pytest.raises(CheckpointError):
        store.record_progress(job, cursor="200", processed_count=200, parts=[_part(1), replaced, _part(3)])


def test_record_progress_rejects_part_gap(store, make_job):
    job = _processing(store, make_job)

    with pytest.raises(ValueError):
        store.record_progress(job, cursor="100", processed_count=100, parts=[_part(1), _part(3)])


def test_record_retry_increments_once(store, make_job):
    job = _processing(store, make_job)

    retried = store.record_retry(job)

    assert retried.retry_count == 1
    with pytest.raises(StaleInvocationError):
        store.record_retry(job)


def test_mark_completed_sets_download_pair(store, make_job):
    job = _processing(store, make_job)
    expires = utcnow() + timedelta(days=7)

    done = store.mark_completed(job, "https://downloads.test/x", expires)

    assert done.status is JobStatus.COMPLETED
    assert done.download_ref == "https://downloads.test/x"
    assert done.download_expires_at is not None
    assert done.completed_at is not None
    assert store.mark_failed("job_1", "late failure") is False
    assert store.load("job_1").status is JobStatus.COMPLETED


def test_mark_failed_is_terminal_and_truncates(store, make_job):
    _processing(store, make_job)

    assert store.mark_failed("job_1", "x" * 5000) is True
    assert store.mark_failed("job_1", "again") is False

    job = store.load("job_1")
    assert job.status is JobStatus.FAILED
    assert len(job.error_message) == ERROR_MESSAGE_MAX_CHARS
    assert job.download_ref is None


def test_record_notification_only_for_completed(store, make_job):
    job = _processing(store, make_job)
    store.record_notification("job_1", True)
    assert store.load("job_1").notification_sent is False

    store.mark_completed(job, "ref", utcnow())
    store.record_notification("job_1", True)
    assert store.load("job_1").notification_sent is True


def test_find_stale_selects_inactive_jobs(store, conn, make_job):
    old = (utcnow() - timedelta(hours=2)).isoformat()
    _processing(store, make_job, job_id="job_1")
    make_job(job_id="job_2")
    make_job(job_id="job_3")
    _processing(store, make_job, job_id="job_4")
    store.mark_failed("job_4", "boom")

    with conn:
        conn.execute("UPDATE export_jobs SET last_processed_at = ? WHERE job_id IN ('job_1', 'job_4')", (old,))
        conn.execute("UPDATE export_jobs SET created_at = ? WHERE job_id = 'job_2'", (old,))

    stale = store.find_stale(utcnow() - timedelta(minutes=30))

    assert sorted(job.job_id for job in stale) == ["job_1", "job_2"]
