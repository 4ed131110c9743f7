"""
Export Consumer - Redis Pub/Sub Invocation Handler

Consumes batch invocation events from Redis Pub/Sub and runs one pipeline
invocation per event. Each invocation is bounded twice: the pipeline stops
fetching when its TimeBudget runs low, and the whole invocation is cancelled
if it overruns INVOCATION_TIME_BUDGET_SECONDS (the stale-job sweeper picks up
anything killed that way).

Features:
- Redis Pub/Sub subscription via production wrapper
- Invocation payload validation
- Hard per-invocation time limit
- Graceful shutdown handling
- Structured logging

Usage:
    # Consumer mode (default)
    python -m apps.exporter.consumer

    # For development/testing
    RUN_ONCE=true python -m apps.exporter.consumer
"""

import asyncio
import logging
import os
import signal
import sys
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from apps.exporter.assembler import build_assembler
from apps.exporter.checkpoint import CheckpointStore
from apps.exporter.credentials import CredentialStore
from apps.exporter.fetcher import PaginatedFetcher
from apps.exporter.notifier import CompletionNotifier
from apps.exporter.pipeline import ExportPipeline, TimeBudget
from apps.exporter.publisher import Continuation, RedisContinuation
from apps.exporter.token_renewer import TokenRenewer
from utils.config import settings
from utils.db import init_schema
from utils.logging import setup_logging
from utils.mq import RedisSubscriber
from utils.schemas import InvocationEvent

logger = logging.getLogger(__name__)


def build_pipeline(client: httpx.AsyncClient, continuation: Continuation) -> ExportPipeline:
    """
    Wire an ExportPipeline from process-scoped resources.

    Args:
        client: Shared HTTP client (record API, OAuth, notification sink)
        continuation: Transport used for self-continuation

    Returns:
        Ready-to-run pipeline
    """
    credentials = CredentialStore()
    assembler = build_assembler()
    return ExportPipeline(
        store=CheckpointStore(),
        credentials=credentials,
        fetcher=PaginatedFetcher(client),
        renewer=TokenRenewer(client, credentials),
        assembler=assembler,
        notifier=CompletionNotifier(assembler, client),
        continuation=continuation,
    )


class ExportConsumer:
    """
    Consumer for export invocation events from Redis Pub/Sub.

    Handles:
    - Redis subscription management
    - Invocation validation
    - Signal handling for graceful shutdown
    """

    def __init__(self, run_once: bool = False, pipeline: Optional[ExportPipeline] = None) -> None:
        """
        Initialize export consumer.

        Args:
            run_once: If True, process one invocation and exit (for testing)
            pipeline: Pre-built pipeline; built in start() when omitted
        """
        self.run_once = run_once
        self.pipeline = pipeline
        self.subscriber: RedisSubscriber | None = None
        self.shutdown_event = asyncio.Event()
        self._processed_count = 0

        logger.info(
            "ExportConsumer initialized",
            extra={
                "run_once": run_once,
                "target_channel": settings.REDIS_CHANNEL_INVOCATIONS,
            },
        )

    async def handle_message(self, channel: str, message: Dict[str, Any]) -> None:
        """
        Handle incoming Redis Pub/Sub message.

        Args:
            channel: Redis channel name
            message: Decoded message payload
        """
        try:
            event = InvocationEvent(**message)
        except ValidationError as e:
            logger.warning(
                "Invalid invocation payload",
                extra={"channel": channel, "payload": message, "error": str(e)},
            )
            return

        await self.handle_invocation(event)

        self._processed_count += 1

        if self.run_once:
            logger.info("RUN_ONCE mode: signaling shutdown after processing invocation")
            self.shutdown_event.set()

    async def handle_invocation(self, event: InvocationEvent) -> None:
        """
        Run one pipeline invocation under the hard time limit.

        Args:
            event: Validated invocation event
        """
        limit = settings.INVOCATION_TIME_BUDGET_SECONDS
        budget = TimeBudget(limit)

        try:
            result = await asyncio.wait_for(self.pipeline.run(event, budget), timeout=limit)
        except asyncio.TimeoutError:
            logger.error(
                "Invocation exceeded hard time limit and was cancelled; left for stale sweeper",
                extra={"job_id": event.job_id, "limit_seconds": limit},
            )
            return

        logger.info(
            "Invocation finished: job_id=%s, outcome=%s, processed=%d, batch=%d",
            result.job_id, result.outcome.value, result.processed_count, result.batch_count,
        )

    def setup_signal_handlers(self) -> None:
        """Setup handlers for graceful shutdown on SIGINT/SIGTERM."""

        def signal_handler(signum: int, frame: object) -> None:
            logger.info(f"Received signal {signum}, initiating graceful shutdown")
            self.shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    async def start(self) -> None:
        """
        Start consumer and process invocations until shutdown signal.

        Connects to Redis, subscribes to the invocations channel, and processes
        messages one at a time until graceful shutdown is requested.
        """
        self.setup_signal_handlers()

        logger.info(
            "Starting export consumer: app=%s, version=%s, environment=%s",
            settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        )

        init_schema()

        client = httpx.AsyncClient(timeout=settings.API_TIMEOUT)
        continuation = RedisContinuation()
        if self.pipeline is None:
            self.pipeline = build_pipeline(client, continuation)

        self.subscriber = RedisSubscriber(channels=[settings.REDIS_CHANNEL_INVOCATIONS])

        try:
            await self.subscriber.connect()
            logger.info(
                "Connected to Redis and subscribed to channel",
                extra={"channel": settings.REDIS_CHANNEL_INVOCATIONS},
            )

            subscription_task = asyncio.create_task(
                self.subscriber.subscribe(self.handle_message)
            )

            logger.info("Consumer started, waiting for invocations...")

            done, pending = await asyncio.wait(
                [
                    asyncio.create_task(self.shutdown_event.wait()),
                    subscription_task,
                ],
                return_when=asyncio.FIRST_COMPLETED,
            )

            for task in pending:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

            logger.info(
                "Consumer shutdown complete",
                extra={"processed_invocations": self._processed_count},
            )

        except Exception as e:
            logger.error("Consumer failed", extra={"error": str(e)}, exc_info=True)
            raise

        finally:
            if self.subscriber:
                self.subscriber.stop()
                await self.subscriber.close()
                logger.info("Redis subscriber connection closed")
            await continuation.close()
            await client.aclose()


async def main() -> None:
    """Main entry point for export consumer."""
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)

    run_once = os.getenv("RUN_ONCE", "false").lower() in ("true", "1", "yes")

    consumer = ExportConsumer(run_once=run_once)

    try:
        await consumer.start()
    except Exception as e:
        logger.error("Consumer failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
