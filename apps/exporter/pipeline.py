"""
Export Pipeline - Batch Scheduler and Self-Continuation

Drives one invocation of an export job against its wall-clock budget:

    load checkpoint -> open upload (first run) -> fetch pages until quota,
    time guard or end of data -> encode fragment -> upload as next part ->
    commit checkpoint -> re-invoke (more data) or finalize (no more data)

Every invocation ends by returning an InvocationResult; failures are converted
into a retry continuation or a persisted terminal status and never propagate
out of ``ExportPipeline.run``.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from apps.exporter.assembler import MultipartAssembler, build_object_key
from apps.exporter.checkpoint import CheckpointStore
from apps.exporter.credentials import CredentialStore
from apps.exporter.encoder import encode
from apps.exporter.errors import (
    AuthExpiredError,
    PermanentError,
    ReconnectRequiredError,
    StaleInvocationError,
)
from apps.exporter.fetcher import Page, PaginatedFetcher, Position, regime_for
from apps.exporter.notifier import CompletionNotifier
from apps.exporter.publisher import Continuation
from apps.exporter.token_renewer import TokenRenewer
from utils.config import settings
from utils.logging import JobLogger
from utils.schemas import Credential, ExportJob, InvocationEvent, JobStatus, JobSummary, UploadPart

logger = logging.getLogger(__name__)

MISSING_CREDENTIAL_MESSAGE = "No valid OAuth token found. Please reconnect your account."


class TimeBudget:
    """Wall-clock allowance for one invocation."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.clock = clock
        self.deadline = clock() + seconds

    def remaining(self) -> float:
        return self.deadline - self.clock()


class Outcome(str, Enum):
    CONTINUED = "continued"
    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class InvocationResult:
    outcome: Outcome
    job_id: str
    processed_count: int = 0
    batch_count: int = 0
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "job_id": self.job_id,
            "processed_count": self.processed_count,
            "batch_count": self.batch_count,
            "message": self.message,
        }


@dataclass
class Batch:
    """Records accumulated by one invocation's fetch loop."""

    records: list[dict[str, Any]] = field(default_factory=list)
    position: Position = None
    has_more: bool = True
    timed_out: bool = False


@dataclass
class _Tokens:
    access: str
    refresh: str


class ExportPipeline:
    """State machine binding fetcher, encoder, assembler and checkpoint store."""

    def __init__(
        self,
        store: CheckpointStore,
        credentials: CredentialStore,
        fetcher: PaginatedFetcher,
        renewer: TokenRenewer,
        assembler: MultipartAssembler,
        notifier: CompletionNotifier,
        continuation: Continuation,
        *,
        record_quota: Optional[int] = None,
        safety_buffer_seconds: Optional[float] = None,
        page_delay_seconds: Optional[float] = None,
        retry_backoff_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.fetcher = fetcher
        self.renewer = renewer
        self.assembler = assembler
        self.notifier = notifier
        self.continuation = continuation
        self.record_quota = record_quota or settings.BATCH_RECORD_QUOTA
        self.safety_buffer = (
            safety_buffer_seconds if safety_buffer_seconds is not None else settings.TIME_SAFETY_BUFFER_SECONDS
        )
        self.page_delay = page_delay_seconds if page_delay_seconds is not None else settings.PAGE_DELAY_SECONDS
        self.retry_backoff = (
            retry_backoff_seconds if retry_backoff_seconds is not None else settings.RETRY_BACKOFF_SECONDS
        )
        self.sleep = sleep

    async def run(self, event: InvocationEvent, budget: TimeBudget) -> InvocationResult:
        """
        Execute one invocation of the job named by ``event``.

        Args:
            event: Invocation payload (job id and the batch_count it expects)
            budget: Remaining wall-clock allowance for this invocation

        Returns:
            InvocationResult describing how the invocation ended
        """
        log = JobLogger(logger, {"job_id": event.job_id})
        log.info("Invocation started (expected_batch=%s)", event.batch_count)

        job = self.store.load(event.job_id)
        if job is None:
            log.error("Job not found")
            return InvocationResult(Outcome.SKIPPED, event.job_id, message="Job not found")

        if job.status.is_terminal:
            log.info("Job already %s, skipping", job.status.value)
            return self._result(Outcome.SKIPPED, job, f"Job already {job.status.value}")

        if event.batch_count is not None and event.batch_count != job.batch_count:
            log.warning(
                "Stale invocation ignored (expected_batch=%s, checkpoint_batch=%d)",
                event.batch_count, job.batch_count,
            )
            return self._result(Outcome.SKIPPED, job, "Stale invocation")

        log.info(
            "Job loaded: status=%s, processed=%d, batch=%d, cursor=%s, parts=%d",
            job.status.value, job.processed_count, job.batch_count, job.cursor,
            len(job.upload_state.parts),
        )

        current = [job]
        try:
            return await self._process(current, budget, log)
        except StaleInvocationError as e:
            log.warning("Lost checkpoint race, stopping: %s", str(e))
            return self._result(Outcome.SKIPPED, current[0], "Stale invocation")
        except (AuthExpiredError, PermanentError) as e:
            log.error("Fatal export error: %s", str(e))
            return await self._fail(current[0], str(e), log)
        except Exception as e:
            log.error("Export batch failed: %s", str(e), exc_info=True)
            return await self._retry_or_fail(current[0], e, log)

    async def _process(self, current: list[ExportJob], budget: TimeBudget, log: JobLogger) -> InvocationResult:
        job = current[0]

        if job.status is JobStatus.PENDING:
            job = current[0] = self.store.mark_processing(job)

        if not job.upload_state.is_open:
            job = current[0] = await self._open_upload(job, log)

        if job.data_exhausted:
            log.info("Data already fully fetched, resuming finalization")
            return await self._finalize(job, log)

        credential = self.credentials.load(job.tenant_id)
        if credential is None or not credential.refresh_token:
            raise ReconnectRequiredError(MISSING_CREDENTIAL_MESSAGE)

        batch = await self._fetch_batch(job, credential, budget, log)

        is_first = not job.upload_state.parts
        is_last = not batch.has_more
        total = job.processed_count + len(batch.records)
        parts = list(job.upload_state.parts)

        if batch.records or is_last:
            data = encode(
                batch.records,
                job.record_kind,
                job.output_format,
                is_first,
                is_last,
                total_count=total,
                channel=job.channel,
            )
            if data:
                part_number = job.upload_state.next_part_number
                checksum = await asyncio.to_thread(
                    self.assembler.upload_part,
                    job.upload_state.provider_upload_id,
                    job.upload_state.object_key,
                    part_number,
                    data,
                )
                parts.append(UploadPart(part_number=part_number, checksum=checksum, byte_size=len(data)))
                log.info("Uploaded part %d (%d bytes, %d records)", part_number, len(data), len(batch.records))
                if not is_last and len(data) < self.assembler.min_part_bytes:
                    log.warning(
                        "Part %d is below the storage backend's %d byte minimum for non-final parts; "
                        "completion will be rejected unless BATCH_RECORD_QUOTA is raised",
                        part_number, self.assembler.min_part_bytes,
                    )
        elif batch.timed_out:
            log.info("Time guard hit before any record was fetched; no part uploaded")

        cursor = regime_for(job.record_kind).encode_position(batch.position)
        job = current[0] = self.store.record_progress(
            job,
            cursor=cursor,
            processed_count=total,
            parts=parts,
            exhausted=is_last,
        )
        log.info(
            "Progress saved: processed=%d (%d%%), batch=%d, cursor=%s, has_more=%s",
            job.processed_count, job.progress_percent(), job.batch_count, job.cursor, batch.has_more,
        )

        if batch.has_more:
            dispatched = await self._dispatch(job, log)
            message = "Batch complete, next invocation dispatched" if dispatched else "Batch complete, dispatch failed"
            return self._result(Outcome.CONTINUED, job, message)

        return await self._finalize(job, log)

    async def _open_upload(self, job: ExportJob, log: JobLogger) -> ExportJob:
        object_key = build_object_key(job.company_id, job.tenant_id, job.job_id, job.output_format.value)
        upload_id = await asyncio.to_thread(
            self.assembler.open,
            object_key,
            job.output_format.content_type,
            job.export_filename,
        )
        try:
            job = self.store.save_upload(job, upload_id, object_key)
        except StaleInvocationError:
            await asyncio.to_thread(self.assembler.abort, upload_id, object_key)
            raise
        log.info("Multipart upload opened: key=%s", object_key)
        return job

    async def _fetch_batch(self, job: ExportJob, credential: Credential, budget: TimeBudget, log: JobLogger) -> Batch:
        regime = regime_for(job.record_kind)
        batch = Batch(position=regime.decode_position(job.cursor))
        tokens = _Tokens(access=credential.access_token, refresh=credential.refresh_token)

        while batch.has_more and len(batch.records) < self.record_quota:
            if self._out_of_time(budget, "next page", log):
                batch.timed_out = True
                break

            page = await self._fetch_page(job, batch.position, tokens, budget, log)
            if page is None:
                batch.timed_out = True
                break
            batch.records.extend(page.records)
            batch.position = page.next_position
            batch.has_more = page.has_more

            log.debug(
                "Fetched page: records=%d, batch_total=%d, has_more=%s",
                len(page.records), len(batch.records), page.has_more,
            )

            if batch.has_more and len(batch.records) < self.record_quota:
                await self.sleep(self.page_delay)

        return batch

    async def _fetch_page(
        self, job: ExportJob, position: Position, tokens: _Tokens, budget: TimeBudget, log: JobLogger
    ) -> Optional[Page]:
        """
        Fetch one page, renewing the access token once on a 401.

        Returns None when the budget runs out before the renewal or the retried fetch.
        """
        try:
            return await self.fetcher.fetch_page(
                job.tenant_id, job.record_kind, job.filters, position, tokens.access
            )
        except AuthExpiredError:
            log.info("Got 401, refreshing token and retrying page")

        if self._out_of_time(budget, "token renewal", log):
            return None
        tokens.access, tokens.refresh = await self.renewer.renew(job.tenant_id, tokens.refresh)

        # renew() has already persisted the new pair.
        if self._out_of_time(budget, "page retry", log):
            return None
        try:
            return await self.fetcher.fetch_page(
                job.tenant_id, job.record_kind, job.filters, position, tokens.access
            )
        except AuthExpiredError as e:
            raise AuthExpiredError(f"Authorization rejected again after token renewal: {e}") from e

    def _out_of_time(self, budget: TimeBudget, stage: str, log: JobLogger) -> bool:
        remaining = budget.remaining()
        if remaining < self.safety_buffer:
            log.info("Approaching time budget before %s, saving progress (remaining=%.1fs)", stage, remaining)
            return True
        return False

    async def _finalize(self, job: ExportJob, log: JobLogger) -> InvocationResult:
        upload = job.upload_state
        log.info("All data fetched, finalizing (parts=%d)", len(upload.parts))

        if upload.parts:
            await asyncio.to_thread(self.assembler.complete, upload.provider_upload_id, upload.object_key, upload.parts)

        download_ref, expires_at = self.notifier.generate_download_ref(upload.object_key)
        job = self.store.mark_completed(job, download_ref, expires_at)

        sent = False
        if job.notification_target:
            summary = JobSummary(
                record_kind=job.record_kind,
                output_format=job.output_format,
                total_items=job.processed_count,
            )
            sent = await self.notifier.notify(job.notification_target, download_ref, summary)
            self.store.record_notification(job.job_id, sent)

        log.info(
            "Export completed: processed=%d, batches=%d, notification_sent=%s",
            job.processed_count, job.batch_count, sent,
        )
        return self._result(Outcome.COMPLETED, job, "Export completed")

    async def _retry_or_fail(self, job: ExportJob, error: Exception, log: JobLogger) -> InvocationResult:
        if job.retries_exhausted:
            log.error("Max retries exceeded (%d), failing job", job.max_retries)
            return await self._fail(job, str(error) or type(error).__name__, log)

        try:
            job = self.store.record_retry(job)
        except StaleInvocationError as e:
            log.warning("Retry not recorded, job moved on: %s", str(e))
            return self._result(Outcome.SKIPPED, job, "Stale invocation")

        log.info("Retrying in %.1fs (attempt %d of %d)", self.retry_backoff, job.retry_count + 1, job.max_retries + 1)
        await self.sleep(self.retry_backoff)
        await self._dispatch(job, log)
        return self._result(Outcome.RETRYING, job, f"Error occurred, retrying: {error}")

    async def _fail(self, job: ExportJob, message: str, log: JobLogger) -> InvocationResult:
        upload = job.upload_state
        if upload.is_open:
            await asyncio.to_thread(self.assembler.abort, upload.provider_upload_id, upload.object_key)

        if self.store.mark_failed(job.job_id, message):
            log.error("Job marked failed: %s", message)
        else:
            log.warning("Job already terminal, failure not recorded")
        return self._result(Outcome.FAILED, job, message)

    async def _dispatch(self, job: ExportJob, log: JobLogger) -> bool:
        try:
            await self.continuation.dispatch(job.job_id, job.batch_count)
        except Exception as e:
            log.error("Continuation dispatch failed, job left for stale sweeper: %s", str(e))
            return False
        return True

    @staticmethod
    def _result(outcome: Outcome, job: ExportJob, message: str) -> InvocationResult:
        return InvocationResult(
            outcome=outcome,
            job_id=job.job_id,
            processed_count=job.processed_count,
            batch_count=job.batch_count,
            message=message,
        )
