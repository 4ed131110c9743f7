"""
Stale Job Sweeper - Cron Recovery of Stalled Exports

Re-dispatches export jobs whose continuation was lost: a Processing job that
has not recorded progress for STALE_JOB_MINUTES, or a Pending job that was
never picked up. Re-dispatched invocations carry no batch_count, so they
resume from whatever the checkpoint holds.

Features:
- Cron-based scheduling (configurable via SWEEP_SCHEDULE_CRON)
- RUN_ONCE mode for immediate execution
- Graceful shutdown handling

Usage:
    # Scheduled mode (default)
    python -m apps.exporter.scheduler

    # Run once and exit
    RUN_ONCE=true python -m apps.exporter.scheduler
"""

import asyncio
import logging
import os
import signal
import sys
from datetime import timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from apps.exporter.checkpoint import CheckpointStore
from apps.exporter.publisher import Continuation, RedisContinuation
from utils.config import settings
from utils.db import init_schema
from utils.logging import setup_logging
from utils.schemas import utcnow

logger = logging.getLogger(__name__)


class StaleJobSweeper:
    """
    Scheduler for periodic stale-job recovery.

    Handles:
    - APScheduler setup and management
    - Cron-based scheduling
    - RUN_ONCE immediate execution
    - Signal handling for graceful shutdown
    """

    def __init__(
        self,
        run_once: bool = False,
        store: Optional[CheckpointStore] = None,
        continuation: Optional[Continuation] = None,
        stale_minutes: Optional[int] = None,
    ) -> None:
        """
        Initialize sweeper.

        Args:
            run_once: If True, sweep once and exit
            store: Checkpoint store to scan
            continuation: Transport used to re-dispatch jobs
            stale_minutes: Inactivity threshold, defaults to STALE_JOB_MINUTES
        """
        self.run_once = run_once
        self.store = store or CheckpointStore()
        self.continuation = continuation
        self.stale_minutes = stale_minutes or settings.STALE_JOB_MINUTES
        self.scheduler: AsyncIOScheduler | None = None
        self.shutdown_event = asyncio.Event()

        logger.info(
            "StaleJobSweeper initialized",
            extra={
                "run_once": run_once,
                "cron_schedule": settings.SWEEP_SCHEDULE_CRON,
                "stale_minutes": self.stale_minutes,
            },
        )

    async def sweep(self) -> list[str]:
        """
        Re-dispatch every stale job once.

        Returns:
            Ids of the jobs that were re-dispatched
        """
        cutoff = utcnow() - timedelta(minutes=self.stale_minutes)
        stale = self.store.find_stale(cutoff)
        logger.info("Sweep found %d stale job(s) older than %s", len(stale), cutoff.isoformat())

        if self.continuation is None:
            self.continuation = RedisContinuation()

        dispatched: list[str] = []
        for job in stale:
            try:
                await self.continuation.dispatch(job.job_id, None)
            except Exception as e:
                logger.error(
                    "Failed to re-dispatch stale job",
                    extra={"job_id": job.job_id, "error": str(e)},
                )
                continue
            dispatched.append(job.job_id)
            logger.info(
                "Re-dispatched stale job: job_id=%s, status=%s, batch=%d",
                job.job_id, job.status.value, job.batch_count,
            )

        return dispatched

    async def execute_sweep(self) -> None:
        """Scheduled entry point; failures are logged and the next run retries."""
        try:
            await self.sweep()
        except Exception as e:
            logger.error("Sweep failed", extra={"error": str(e)}, exc_info=True)
        finally:
            if self.run_once:
                logger.info("RUN_ONCE mode: signaling shutdown")
                self.shutdown_event.set()

    def setup_signal_handlers(self) -> None:
        """Setup handlers for graceful shutdown on SIGINT/SIGTERM."""

        def signal_handler(signum: int, frame: object) -> None:
            logger.info(f"Received signal {signum}, initiating graceful shutdown")
            self.shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    async def start(self) -> None:
        """
        Start scheduler or sweep once.

        In scheduled mode, runs continuously until shutdown signal.
        In RUN_ONCE mode, sweeps immediately and exits.
        """
        self.setup_signal_handlers()
        init_schema()

        try:
            if self.run_once:
                logger.info("Running in RUN_ONCE mode")
                await self.execute_sweep()
                return

            logger.info("Running in scheduled mode")

            self.scheduler = AsyncIOScheduler()

            trigger = CronTrigger.from_crontab(settings.SWEEP_SCHEDULE_CRON)
            self.scheduler.add_job(
                self.execute_sweep,
                trigger=trigger,
                id="stale_job_sweep",
                name="Stale Export Job Sweep",
                replace_existing=True,
                max_instances=1,
            )

            self.scheduler.start()
            logger.info("Scheduler started")

            job = self.scheduler.get_job("stale_job_sweep")
            next_run = getattr(job, "next_run_time", None)

            logger.info(
                "Scheduled stale job sweep",
                extra={
                    "schedule": settings.SWEEP_SCHEDULE_CRON,
                    "next_run": str(next_run) if next_run is not None else None,
                },
            )

            await self.shutdown_event.wait()

            logger.info("Shutting down scheduler")
            self.scheduler.shutdown(wait=True)
            logger.info("Scheduler shutdown complete")

        finally:
            if isinstance(self.continuation, RedisContinuation):
                await self.continuation.close()


async def main() -> None:
    """Main entry point for the stale job sweeper."""
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)

    run_once = os.getenv("RUN_ONCE", "false").lower() in ("true", "1", "yes")

    sweeper = StaleJobSweeper(run_once=run_once)

    try:
        await sweeper.start()
    except Exception as e:
        logger.error("Sweeper failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
