"""
Database utilities for SQLite operations.

Provides connection management and schema initialization for the checkpoint
and credential stores.

The connection is a process-scoped singleton: it is opened lazily on first use,
reused by every invocation handled by the same warm worker process, and simply
re-created in a fresh process. Nothing assumes it survives a process boundary.
"""

import logging
import sqlite3
import threading
from pathlib import Path

from utils.config import settings

logger = logging.getLogger(__name__)

_conn: sqlite3.Connection | None = None
_conn_lock = threading.Lock()


def connect(path: str) -> sqlite3.Connection:
    """
    Open a SQLite connection with dict-friendly row factory.

    Args:
        path: Database file path (or ":memory:")

    Returns:
        SQLite connection with row_factory set to sqlite3.Row

    Raises:
        sqlite3.Error: If connection fails
    """
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def get_conn() -> sqlite3.Connection:
    """
    Get the process-wide SQLite connection, opening it on first use.

    Returns:
        Shared SQLite connection
    """
    global _conn
    if _conn is None:
        with _conn_lock:
            if _conn is None:
                _conn = connect(settings.SQLITE_PATH)
                logger.info("Opened checkpoint database: path=%s", settings.SQLITE_PATH)
    return _conn


def reset_conn() -> None:
    """Close and forget the process-wide connection (cold start / tests)."""
    global _conn
    with _conn_lock:
        if _conn is not None:
            _conn.close()
            _conn = None


def init_schema(conn: sqlite3.Connection | None = None) -> None:
    """
    Initialize database schema by creating required tables if they don't exist.

    Creates:
    - export_jobs: one checkpoint row per export job
    - oauth_credentials: current access/refresh token pair per tenant

    Raises:
        sqlite3.Error: If schema creation fails
    """
    conn = conn or get_conn()
    with conn:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS export_jobs (
                job_id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                company_id TEXT NOT NULL DEFAULT '',
                record_kind TEXT NOT NULL,
                output_format TEXT NOT NULL,
                filters TEXT NOT NULL DEFAULT '{}',
                status TEXT NOT NULL,
                cursor TEXT,
                processed_count INTEGER NOT NULL DEFAULT 0,
                data_exhausted INTEGER NOT NULL DEFAULT 0,
                batch_count INTEGER NOT NULL DEFAULT 0,
                total_estimate INTEGER NOT NULL DEFAULT 0,
                retry_count INTEGER NOT NULL DEFAULT 0,
                max_retries INTEGER NOT NULL DEFAULT 3,
                upload_id TEXT,
                object_key TEXT,
                parts TEXT NOT NULL DEFAULT '[]',
                download_ref TEXT,
                download_expires_at TEXT,
                notification_target TEXT,
                notification_sent INTEGER NOT NULL DEFAULT 0,
                error_message TEXT,
                created_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                last_processed_at TEXT
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_export_jobs_status_progress
            ON export_jobs (status, last_processed_at)
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS oauth_credentials (
                tenant_id TEXT PRIMARY KEY,
                access_token TEXT NOT NULL,
                refresh_token TEXT NOT NULL,
                expires_at TEXT,
                is_active INTEGER NOT NULL DEFAULT 1
            )
        """)

    logger.info("DB schema ready")
