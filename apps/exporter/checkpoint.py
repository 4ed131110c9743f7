"""
Checkpoint Store - Durable Export Job Progress

Persists the ExportJob record that drives the pipeline. Every write is a
partial-column UPDATE guarded by the state the caller loaded (status and
batch_count), so a stale or duplicate invocation can never overwrite progress
made by another one.

Usage:
    from apps.exporter.checkpoint import CheckpointStore

    store = CheckpointStore()
    job = store.load(job_id)
    job = store.record_progress(job, cursor="200", processed_count=200, parts=parts)
"""

import logging
import sqlite3
from datetime import datetime
from typing import Any, Optional

import orjson

from apps.exporter.errors import CheckpointError, StaleInvocationError
from utils.db import get_conn
from utils.schemas import ExportJob, JobStatus, UploadPart, UploadState, utcnow

logger = logging.getLogger(__name__)

ERROR_MESSAGE_MAX_CHARS = 2000

_ACTIVE_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _row_to_job(row: sqlite3.Row) -> ExportJob:
    return ExportJob(
        job_id=row["job_id"],
        tenant_id=row["tenant_id"],
        company_id=row["company_id"],
        record_kind=row["record_kind"],
        output_format=row["output_format"],
        filters=orjson.loads(row["filters"]),
        status=row["status"],
        cursor=row["cursor"],
        processed_count=row["processed_count"],
        data_exhausted=bool(row["data_exhausted"]),
        batch_count=row["batch_count"],
        total_estimate=row["total_estimate"],
        retry_count=row["retry_count"],
        max_retries=row["max_retries"],
        upload_state=UploadState(
            provider_upload_id=row["upload_id"],
            object_key=row["object_key"],
            parts=[UploadPart(**p) for p in orjson.loads(row["parts"])],
        ),
        download_ref=row["download_ref"],
        download_expires_at=row["download_expires_at"],
        notification_target=row["notification_target"],
        notification_sent=bool(row["notification_sent"]),
        error_message=row["error_message"],
        created_at=row["created_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        last_processed_at=row["last_processed_at"],
    )


def _dump_parts(parts: list[UploadPart]) -> str:
    return orjson.dumps([p.model_dump() for p in parts]).decode("utf-8")


class CheckpointStore:
    """SQLite-backed checkpoint store keyed by job_id."""

    def __init__(self, conn: sqlite3.Connection | None = None) -> None:
        """
        Initialize checkpoint store.

        Args:
            conn: Explicit connection; defaults to the process-wide connection
        """
        self._conn = conn

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn if self._conn is not None else get_conn()

    def _update(self, sql: str, params: tuple[Any, ...]) -> int:
        with self.conn as conn:
            cur = conn.execute(sql, params)
            return cur.rowcount

    def create(self, job: ExportJob) -> ExportJob:
        """Insert a new job row (normally done by the request handler)."""
        with self.conn as conn:
            conn.execute(
                """
                INSERT INTO export_jobs (
                    job_id, tenant_id, company_id, record_kind, output_format, filters,
                    status, cursor, processed_count, batch_count, total_estimate,
                    retry_count, max_retries, upload_id, object_key, parts,
                    notification_target, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.job_id,
                    job.tenant_id,
                    job.company_id,
                    job.record_kind.value,
                    job.output_format.value,
                    orjson.dumps(job.filters, default=str).decode("utf-8"),
                    job.status.value,
                    job.cursor,
                    job.processed_count,
                    job.batch_count,
                    job.total_estimate,
                    job.retry_count,
                    job.max_retries,
                    job.upload_state.provider_upload_id,
                    job.upload_state.object_key,
                    _dump_parts(job.upload_state.parts),
                    job.notification_target,
                    _ts(job.created_at),
                ),
            )
        logger.info("Created export job: job_id=%s, kind=%s", job.job_id, job.record_kind.value)
        return job

    def load(self, job_id: str) -> ExportJob | None:
        row = self.conn.execute(
            "SELECT * FROM export_jobs WHERE job_id = ?", (job_id,)
        ).fetchone()
        return _row_to_job(row) if row is not None else None

    def _reload(self, job_id: str) -> ExportJob:
        job = self.load(job_id)
        if job is None:
            raise CheckpointError(f"Export job disappeared: {job_id}")
        return job

    def mark_processing(self, job: ExportJob) -> ExportJob:
        """
        Transition Pending -> Processing (no-op when already Processing).

        Raises:
            StaleInvocationError: If the job moved on since it was loaded
        """
        now = utcnow()
        updated = self._update(
            """
            UPDATE export_jobs
            SET status = ?, started_at = COALESCE(started_at, ?), last_processed_at = ?
            WHERE job_id = ? AND batch_count = ? AND status IN (?, ?)
            """,
            (JobStatus.PROCESSING.value, _ts(now), _ts(now), job.job_id, job.batch_count, *_ACTIVE_STATUSES),
        )
        if updated == 0:
            raise StaleInvocationError(f"Job {job.job_id} changed before processing could start")
        return self._reload(job.job_id)

    def save_upload(self, job: ExportJob, upload_id: str, object_key: str) -> ExportJob:
        """
        Persist a freshly opened multipart upload before any part is sent.

        Raises:
            StaleInvocationError: If an upload was already recorded for this job
        """
        updated = self._update(
            """
            UPDATE export_jobs
            SET upload_id = ?, object_key = ?, parts = '[]', last_processed_at = ?
            WHERE job_id = ? AND batch_count = ? AND status = ? AND upload_id IS NULL
            """,
            (upload_id, object_key, _ts(utcnow()), job.job_id, job.batch_count, JobStatus.PROCESSING.value),
        )
        if updated == 0:
            raise StaleInvocationError(f"Job {job.job_id} already has an open upload")
        return self._reload(job.job_id)

    def record_progress(
        self,
        job: ExportJob,
        *,
        cursor: Optional[str],
        processed_count: int,
        parts: list[UploadPart],
        exhausted: bool = False,
    ) -> ExportJob:
        """
        Commit one invocation's progress and advance batch_count by one.

        The write only succeeds if batch_count still equals the value the
        caller loaded, which rejects duplicate continuations.

        Raises:
            CheckpointError: If the new state would break monotonicity
            StaleInvocationError: If another invocation committed first
        """
        if processed_count < job.processed_count:
            raise CheckpointError(
                f"processed_count would decrease ({job.processed_count} -> {processed_count})"
            )

        existing = job.upload_state.parts
        if len(parts) < len(existing) or parts[: len(existing)] != existing:
            raise CheckpointError("upload parts are append-only")

        # Re-validates contiguity of the combined list
        state = UploadState(
            provider_upload_id=job.upload_state.provider_upload_id,
            object_key=job.upload_state.object_key,
            parts=parts,
        )

        updated = self._update(
            """
            UPDATE export_jobs
            SET cursor = ?, processed_count = ?, data_exhausted = ?,
                batch_count = batch_count + 1, parts = ?, last_processed_at = ?
            WHERE job_id = ? AND batch_count = ? AND status = ?
            """,
            (
                cursor,
                processed_count,
                int(exhausted or job.data_exhausted),
                _dump_parts(state.parts),
                _ts(utcnow()),
                job.job_id,
                job.batch_count,
                JobStatus.PROCESSING.value,
            ),
        )
        if updated == 0:
            raise StaleInvocationError(
                f"Job {job.job_id} advanced past batch {job.batch_count} before this commit"
            )
        return self._reload(job.job_id)

    def record_retry(self, job: ExportJob) -> ExportJob:
        """
        Increment retry_count ahead of a backoff re-invocation.

        Raises:
            StaleInvocationError: If the job moved on since it was loaded
        """
        updated = self._update(
            """
            UPDATE export_jobs
            SET retry_count = retry_count + 1, last_processed_at = ?
            WHERE job_id = ? AND batch_count = ? AND retry_count = ? AND status IN (?, ?)
            """,
            (_ts(utcnow()), job.job_id, job.batch_count, job.retry_count, *_ACTIVE_STATUSES),
        )
        if updated == 0:
            raise StaleInvocationError(f"Job {job.job_id} changed before retry could be recorded")
        return self._reload(job.job_id)

    def mark_completed(self, job: ExportJob, download_ref: str, download_expires_at: datetime) -> ExportJob:
        """
        Transition Processing -> Completed with the download reference.

        Raises:
            StaleInvocationError: If the job is no longer Processing at this batch
        """
        now = utcnow()
        updated = self._update(
            """
            UPDATE export_jobs
            SET status = ?, download_ref = ?, download_expires_at = ?,
                completed_at = ?, last_processed_at = ?
            WHERE job_id = ? AND batch_count = ? AND status = ?
            """,
            (
                JobStatus.COMPLETED.value,
                download_ref,
                _ts(download_expires_at),
                _ts(now),
                _ts(now),
                job.job_id,
                job.batch_count,
                JobStatus.PROCESSING.value,
            ),
        )
        if updated == 0:
            raise StaleInvocationError(f"Job {job.job_id} could not be marked completed")
        return self._reload(job.job_id)

    def mark_failed(self, job_id: str, error_message: str) -> bool:
        """
        Transition a non-terminal job to Failed.

        Returns:
            True if this call set the terminal status, False if already terminal
        """
        now = utcnow()
        message = (error_message or "").strip()[:ERROR_MESSAGE_MAX_CHARS] or "failed"
        updated = self._update(
            """
            UPDATE export_jobs
            SET status = ?, error_message = ?, completed_at = ?, last_processed_at = ?
            WHERE job_id = ? AND status IN (?, ?)
            """,
            (JobStatus.FAILED.value, message, _ts(now), _ts(now), job_id, *_ACTIVE_STATUSES),
        )
        return updated > 0

    def record_notification(self, job_id: str, sent: bool) -> None:
        self._update(
            "UPDATE export_jobs SET notification_sent = ? WHERE job_id = ? AND status = ?",
            (int(sent), job_id, JobStatus.COMPLETED.value),
        )

    def find_stale(self, older_than: datetime) -> list[ExportJob]:
        """
        Find active jobs with no recorded progress since ``older_than``.

        Pending jobs are judged by created_at, Processing jobs by last_processed_at.
        """
        rows = self.conn.execute(
            """
            SELECT * FROM export_jobs
            WHERE (status = ? AND COALESCE(last_processed_at, created_at) < ?)
               OR (status = ? AND created_at < ?)
            ORDER BY created_at
            """,
            (JobStatus.PROCESSING.value, _ts(older_than), JobStatus.PENDING.value, _ts(older_than)),
        ).fetchall()
        return [_row_to_job(row) for row in rows]
