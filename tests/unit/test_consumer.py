import asyncio
from unittest.mock import AsyncMock

from apps.exporter.consumer import ExportConsumer
from apps.exporter.pipeline import InvocationResult, Outcome
from utils.config import settings


def _pipeline(result: InvocationResult | None = None) -> AsyncMock:
    pipeline = AsyncMock()
    pipeline.run.return_value = result or InvocationResult(Outcome.CONTINUED, "job_1", 100, 1)
    return pipeline


async def test_valid_invocation_runs_pipeline():
    pipeline = _pipeline()
    consumer = ExportConsumer(pipeline=pipeline)

    await consumer.handle_message(settings.REDIS_CHANNEL_INVOCATIONS, {"job_id": "job_1", "batch_count": 1})

    event, budget = pipeline.run.await_args.args
    assert event.job_id == "job_1"
    assert event.batch_count == 1
    assert 0 < budget.remaining() <= settings.INVOCATION_TIME_BUDGET_SECONDS


async def test_invalid_payload_is_ignored():
    pipeline = _pipeline()
    consumer = ExportConsumer(pipeline=pipeline)

    await consumer.handle_message(settings.REDIS_CHANNEL_INVOCATIONS, {"batch_count": "many"})

    pipeline.run.assert_not_awaited()


async def test_run_once_signals_shutdown():
    consumer = ExportConsumer(run_once=True, pipeline=_pipeline())

    await consumer.handle_message(settings.REDIS_CHANNEL_INVOCATIONS, {"exportJobId": "job_1"})

    assert consumer.shutdown_event.is_set()


async def test_overrunning_invocation_is_cancelled(monkeypatch):
    monkeypatch.setattr(settings, "INVOCATION_TIME_BUDGET_SECONDS", 0.05)
    cancelled = asyncio.Event()

    async def slow_run(event, budget):
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    pipeline = AsyncMock()
    pipeline.run.side_effect = slow_run
    consumer = ExportConsumer(pipeline=pipeline)

    await consumer.handle_message(settings.REDIS_CHANNEL_INVOCATIONS, {"job_id": "job_1"})

    assert cancelled.is_set()
