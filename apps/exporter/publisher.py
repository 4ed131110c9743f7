"""
Invocation Publisher for the Export Worker

Publishes batch invocation events to Redis Pub/Sub. This is how an export job
re-invokes itself (self-continuation), how the stale-job sweeper revives
stalled jobs, and how the request handler kicks off a new job.

Usage:
    from apps.exporter.publisher import publish_invocation

    await publish_invocation("65f0c1...", batch_count=3)
"""

import logging
from typing import Optional, Protocol

from utils.config import settings
from utils.mq import RedisPublisher
from utils.schemas import InvocationEvent

logger = logging.getLogger(__name__)


class Continuation(Protocol):
    """Asynchronously schedules the next invocation of a job."""

    async def dispatch(self, job_id: str, batch_count: Optional[int]) -> None:
        ...


class RedisContinuation:
    """Continuation transport over the Redis invocations channel."""

    def __init__(self, publisher: Optional[RedisPublisher] = None, channel: Optional[str] = None) -> None:
        self.publisher = publisher or RedisPublisher()
        self.channel = channel or settings.REDIS_CHANNEL_INVOCATIONS

    async def dispatch(self, job_id: str, batch_count: Optional[int]) -> None:
        """
        Publish an invocation event for ``job_id``.

        Args:
            job_id: Export job to invoke
            batch_count: Checkpoint batch_count the next invocation must observe

        Raises:
            redis.RedisError: If publishing fails after retries
        """
        event = InvocationEvent(job_id=job_id, batch_count=batch_count)
        message = event.model_dump(mode="json")

        try:
            receivers = await self.publisher.publish(self.channel, message)
        except Exception as e:
            logger.error(
                "Failed to publish invocation",
                extra={"channel": self.channel, "job_id": job_id, "error": str(e)},
            )
            raise

        if not receivers:
            logger.warning(
                "Invocation published with no active workers; stale-job sweeper will retry",
                extra={"channel": self.channel, "job_id": job_id},
            )
        else:
            logger.info(
                "Published invocation",
                extra={"channel": self.channel, "job_id": job_id, "batch_count": batch_count},
            )

    async def close(self) -> None:
        await self.publisher.close()


async def publish_invocation(job_id: str, batch_count: Optional[int] = None) -> None:
    """One-shot publish with its own connection (request handler, CLI)."""
    continuation = RedisContinuation()
    try:
        await continuation.dispatch(job_id, batch_count)
    finally:
        await continuation.close()
