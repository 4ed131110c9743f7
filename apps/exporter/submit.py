"""
Export Submission - Create a Job and Kick Off Its First Invocation

Operator entry point standing in for the HTTP front door: inserts a pending
export job and publishes its first invocation (no batch_count).

Usage:
    python -m apps.exporter.submit --tenant loc_123 --kind messages --format json \
        --filter channel=Email --filter startDate=2025-01-01 --email ops@example.com
"""

import argparse
import asyncio
import logging
import sys
import uuid
from typing import Any, Optional, Sequence

from apps.exporter.checkpoint import CheckpointStore
from apps.exporter.publisher import publish_invocation
from utils.config import settings
from utils.db import init_schema
from utils.logging import setup_logging
from utils.schemas import ExportJob, OutputFormat, RecordKind

logger = logging.getLogger(__name__)


def parse_filters(pairs: Sequence[str]) -> dict[str, Any]:
    """Turn ``key=value`` arguments into the job's filter dict."""
    filters: dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Filter must look like key=value: {pair!r}")
        filters[key.strip()] = value.strip()
    return filters


def build_job(
    tenant_id: str,
    record_kind: RecordKind,
    output_format: OutputFormat,
    *,
    company_id: str = "",
    filters: Optional[dict[str, Any]] = None,
    notification_target: Optional[str] = None,
    total_estimate: int = 0,
    job_id: Optional[str] = None,
) -> ExportJob:
    return ExportJob(
        job_id=job_id or uuid.uuid4().hex,
        tenant_id=tenant_id,
        company_id=company_id,
        record_kind=record_kind,
        output_format=output_format,
        filters=filters or {},
        total_estimate=total_estimate,
        max_retries=settings.EXPORT_MAX_RETRIES,
        notification_target=notification_target,
    )


async def submit(job: ExportJob, store: Optional[CheckpointStore] = None) -> ExportJob:
    """
    Persist a new pending job and publish its first invocation.

    Args:
        job: Job to create
        store: Checkpoint store, defaults to the process-wide database

    Returns:
        The created job
    """
    store = store or CheckpointStore()
    store.create(job)
    await publish_invocation(job.job_id)
    logger.info("Export submitted: job_id=%s, tenant_id=%s", job.job_id, job.tenant_id)
    return job


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Submit a resumable export job")
    parser.add_argument("--tenant", required=True, help="Location id whose records are exported")
    parser.add_argument("--company", default="", help="Company id (object key scope)")
    parser.add_argument("--kind", required=True, choices=[k.value for k in RecordKind])
    parser.add_argument("--format", default=OutputFormat.CSV.value, choices=[f.value for f in OutputFormat])
    parser.add_argument("--filter", action="append", default=[], help="key=value, repeatable")
    parser.add_argument("--email", default=None, help="Notify this address when the export is ready")
    parser.add_argument("--estimate", type=int, default=0, help="Expected record count for progress reporting")
    return parser


async def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point for export submission."""
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
    args = _parser().parse_args(argv)

    try:
        job = build_job(
            args.tenant,
            RecordKind(args.kind),
            OutputFormat(args.format),
            company_id=args.company,
            filters=parse_filters(args.filter),
            notification_target=args.email,
            total_estimate=args.estimate,
        )
        init_schema()
        await submit(job)
    except Exception as e:
        logger.error("Submission failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)

    print(job.job_id)


if __name__ == "__main__":
    asyncio.run(main())
