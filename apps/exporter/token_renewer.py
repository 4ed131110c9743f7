"""
Token Renewer - OAuth refresh-token exchange.

Exchanges a refresh token for a new access/refresh pair and writes both to the
credential store before returning them. Callers never keep a renewed token
beyond the current invocation; the next invocation re-reads the store.
"""

import logging
from datetime import timedelta

import httpx

from apps.exporter.credentials import CredentialStore
from apps.exporter.errors import ReconnectRequiredError, TransientError
from utils.config import settings
from utils.schemas import utcnow

logger = logging.getLogger(__name__)


class TokenRenewer:
    """Refreshes expired bearer credentials against the OAuth token endpoint."""

    def __init__(self, client: httpx.AsyncClient, credentials: CredentialStore) -> None:
        self.client = client
        self.credentials = credentials

    async def renew(self, tenant_id: str, refresh_token: str) -> tuple[str, str]:
        """
        Renew the tenant's credential pair and persist it.

        Args:
            tenant_id: Tenant whose credential record is updated
            refresh_token: Current refresh token

        Returns:
            Tuple of (access_token, refresh_token)

        Raises:
            ReconnectRequiredError: If the token endpoint rejects the refresh
            TransientError: On network failure or a 5xx response
        """
        form = {
            "client_id": settings.OAUTH_CLIENT_ID,
            "client_secret": settings.OAUTH_CLIENT_SECRET,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }

        try:
            response = await self.client.post(
                settings.OAUTH_TOKEN_URL,
                data=form,
                timeout=settings.API_TIMEOUT,
            )
        except httpx.TransportError as e:
            raise TransientError(f"Token refresh request failed: {e}") from e

        if response.status_code >= 500:
            raise TransientError(f"Token endpoint error: HTTP {response.status_code}")
        if response.status_code >= 400:
            logger.warning(
                "Refresh token rejected: tenant_id=%s, status=%d", tenant_id, response.status_code
            )
            raise ReconnectRequiredError(
                "OAuth refresh was rejected. Please reconnect your account."
            )

        body = response.json()
        access_token = body.get("access_token")
        new_refresh_token = body.get("refresh_token") or refresh_token
        if not access_token:
            raise ReconnectRequiredError("OAuth refresh returned no access token. Please reconnect your account.")

        expires_in = int(body.get("expires_in") or settings.OAUTH_DEFAULT_TTL_SECONDS)
        expires_at = utcnow() + timedelta(seconds=expires_in)

        self.credentials.update_tokens(tenant_id, access_token, new_refresh_token, expires_at)
        return access_token, new_refresh_token
