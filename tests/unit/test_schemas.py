import pytest
from pydantic import ValidationError

from utils.schemas import ExportJob, JobStatus, OutputFormat, RecordKind, UploadPart, UploadState, utcnow


def _job(**overrides) -> ExportJob:
    fields = {"job_id": "job_1", "tenant_id": "loc_1", "record_kind": RecordKind.MESSAGES}
    fields.update(overrides)
    return ExportJob(**fields)


def test_upload_parts_must_be_contiguous():
    parts = [UploadPart(part_number=1, checksum="a", byte_size=1), UploadPart(part_number=3, checksum="c", byte_size=1)]

    with pytest.raises(ValidationError):
        UploadState(provider_upload_id="u", object_key="k", parts=parts)


def test_upload_state_next_part_number():
    state = UploadState(provider_upload_id="u", parts=[UploadPart(part_number=1, checksum="a", byte_size=1)])

    assert state.is_open
    assert state.next_part_number == 2
    assert not UploadState().is_open


def test_download_ref_requires_expiry():
    with pytest.raises(ValidationError):
        _job(download_ref="https://x")

    assert _job(download_ref="https://x", download_expires_at=utcnow()).download_ref == "https://x"


def test_job_defaults():
    job = _job()

    assert job.status is JobStatus.PENDING
    assert job.output_format is OutputFormat.CSV
    assert job.max_retries == 3
    assert not job.retries_exhausted
    assert _job(retry_count=3).retries_exhausted


def test_export_filename_includes_channel():
    assert _job().export_filename == "messages_export.csv"
    assert _job(filters={"channel": "Email"}, output_format=OutputFormat.JSON).export_filename == "email_messages_export.json"


def test_progress_percent():
    assert _job(processed_count=50).progress_percent() == 0
    assert _job(processed_count=50, total_estimate=200).progress_percent() == 25
    assert _job(processed_count=300, total_estimate=200).progress_percent() == 100


def test_terminal_statuses():
    assert JobStatus.COMPLETED.is_terminal
    assert JobStatus.FAILED.is_terminal
    assert not JobStatus.PROCESSING.is_terminal
    assert OutputFormat.JSON.content_type == "application/json"
