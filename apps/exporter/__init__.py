"""
Exporter App - Resumable Batch Export Pipeline

Responsibilities:
- Resumable pagination from the record API (offset or cursor, checkpointed per batch)
- OAuth token renewal on authorization failure
- Incremental CSV / JSON encoding into multipart upload parts (S3 or SFTP)
- Self-continuation over Redis Pub/Sub with optimistic single-flight guard
- Bounded job-level retry with upload cleanup
- Completion notification with a time-limited download link
- Cron sweep of stalled jobs (APScheduler)

Output:
- exports/{company_id}/{tenant_id}/{job_id}.{csv|json}
- Redis event: channel=exports.invocations, payload={job_id, batch_count, ts}
"""
