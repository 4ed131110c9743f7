"""
Credential store - per-tenant OAuth token pair.

The persisted row is the only source of truth for a tenant's tokens: each
invocation reads it fresh, and the token renewer writes renewed pairs straight
back here.
"""

import logging
import sqlite3
from datetime import datetime

from utils.db import get_conn
from utils.schemas import Credential

logger = logging.getLogger(__name__)


class CredentialStore:
    """SQLite-backed tenant credential store."""

    def __init__(self, conn: sqlite3.Connection | None = None) -> None:
        self._conn = conn

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn if self._conn is not None else get_conn()

    def load(self, tenant_id: str) -> Credential | None:
        """Return the active credential for a tenant, or None."""
        row = self.conn.execute(
            "SELECT * FROM oauth_credentials WHERE tenant_id = ? AND is_active = 1",
            (tenant_id,),
        ).fetchone()
        if row is None:
            return None
        return Credential(
            tenant_id=row["tenant_id"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
            is_active=bool(row["is_active"]),
        )

    def save(self, credential: Credential) -> None:
        """Insert or replace the tenant's credential pair."""
        with self.conn as conn:
            conn.execute(
                """
                INSERT INTO oauth_credentials (tenant_id, access_token, refresh_token, expires_at, is_active)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(tenant_id) DO UPDATE SET
                    access_token = excluded.access_token,
                    refresh_token = excluded.refresh_token,
                    expires_at = excluded.expires_at,
                    is_active = excluded.is_active
                """,
                (
                    credential.tenant_id,
                    credential.access_token,
                    credential.refresh_token,
                    credential.expires_at.isoformat() if credential.expires_at else None,
                    int(credential.is_active),
                ),
            )

    def update_tokens(self, tenant_id: str, access_token: str, refresh_token: str, expires_at: datetime) -> None:
        with self.conn as conn:
            conn.execute(
                """
                UPDATE oauth_credentials
                SET access_token = ?, refresh_token = ?, expires_at = ?
                WHERE tenant_id = ?
                """,
                (access_token, refresh_token, expires_at.isoformat(), tenant_id),
            )
        logger.info("Persisted renewed credentials: tenant_id=%s", tenant_id)
