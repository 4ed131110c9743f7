from datetime import timedelta

from apps.exporter.scheduler import StaleJobSweeper
from utils.schemas import utcnow


def _age(conn, job_id: str, column: str, hours: int = 2) -> None:
    with conn:
        conn.execute(
            f"UPDATE export_jobs SET {column} = ? WHERE job_id = ?",
            ((utcnow() - timedelta(hours=hours)).isoformat(), job_id),
        )


async def test_sweep_redispatches_stale_jobs_without_batch_count(store, conn, make_job, continuation):
    store.mark_processing(make_job(job_id="stalled"))
    make_job(job_id="never_started")
    store.mark_processing(make_job(job_id="active"))
    store.mark_processing(make_job(job_id="done"))
    store.mark_failed("done", "boom")
    _age(conn, "stalled", "last_processed_at")
    _age(conn, "never_started", "created_at")
    _age(conn, "done", "last_processed_at")

    sweeper = StaleJobSweeper(store=store, continuation=continuation, stale_minutes=30)
    dispatched = await sweeper.sweep()

    assert sorted(dispatched) == ["never_started", "stalled"]
    assert sorted(continuation.dispatched) == [("never_started", None), ("stalled", None)]


async def test_sweep_continues_past_dispatch_failure(store, conn, make_job, continuation):
    store.mark_processing(make_job(job_id="stalled"))
    _age(conn, "stalled", "last_processed_at")
    continuation.fail = True

    sweeper = StaleJobSweeper(store=store, continuation=continuation, stale_minutes=30)

    assert await sweeper.sweep() == []


async def test_run_once_sweep_signals_shutdown(store, continuation):
    sweeper = StaleJobSweeper(run_once=True, store=store, continuation=continuation)

    await sweeper.execute_sweep()

    assert sweeper.shutdown_event.is_set()
