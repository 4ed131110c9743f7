"""
Completion Notifier - Download Links and Ready Emails

Produces the time-limited download reference for a finished export and sends
the one-shot "export ready" email through the transactional email API.
A failed notification is reported as ``False`` and never fails the job.
"""

import logging
from datetime import datetime, timedelta

import httpx
from pydantic import ValidationError

from apps.exporter.assembler import MultipartAssembler
from utils.config import settings
from utils.schemas import JobSummary, NotificationRequest, RecordKind, utcnow

logger = logging.getLogger(__name__)


def render_email(download_ref: str, summary: JobSummary, ttl_days: int) -> tuple[str, str]:
    """Return (subject, html) for the export-ready email."""
    kind_title = "Conversations" if summary.record_kind is RecordKind.CONVERSATIONS else "Messages"
    subject = f"Your {kind_title} Export is Ready"
    html = (
        "<div style=\"font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;\">"
        "<h2>Your Export is Ready!</h2>"
        f"<p>Your {summary.record_kind.value} export has been completed successfully.</p>"
        "<ul>"
        f"<li>Type: {summary.record_kind.value}</li>"
        f"<li>Format: {summary.output_format.value.upper()}</li>"
        f"<li>Total Items: {summary.total_items:,}</li>"
        "</ul>"
        f"<p><a href=\"{download_ref}\">Download Export</a></p>"
        f"<p>This download link will expire in {ttl_days} days.</p>"
        "</div>"
    )
    return subject, html


class CompletionNotifier:
    """Download reference generation and export-ready notification."""

    def __init__(self, assembler: MultipartAssembler, client: httpx.AsyncClient) -> None:
        self.assembler = assembler
        self.client = client

    def generate_download_ref(self, object_key: str, ttl_seconds: int | None = None) -> tuple[str, datetime]:
        """
        Create a time-limited read reference for the finished object.

        Returns:
            Tuple of (download_ref, expires_at)
        """
        ttl = ttl_seconds if ttl_seconds is not None else settings.DOWNLOAD_TTL_SECONDS
        expires_at = utcnow() + timedelta(seconds=ttl)
        return self.assembler.presign(object_key, ttl), expires_at

    async def notify(self, target: str, download_ref: str, summary: JobSummary) -> bool:
        """
        Send the export-ready email.

        Args:
            target: Recipient email address
            download_ref: Link included in the email
            summary: Export facts included in the email

        Returns:
            True if the email API accepted the message
        """
        if not settings.NOTIFY_API_KEY:
            logger.info("NOTIFY_API_KEY not configured, skipping email notification")
            return False

        try:
            request = NotificationRequest(target=target, download_ref=download_ref, summary=summary)
        except ValidationError as e:
            logger.warning("Invalid notification payload: target=%s, error=%s", target, str(e))
            return False

        ttl_days = max(1, settings.DOWNLOAD_TTL_SECONDS // 86400)
        subject, html = render_email(request.download_ref, request.summary, ttl_days)
        payload = {
            "sender": {"name": settings.NOTIFY_FROM_NAME, "email": settings.NOTIFY_FROM_ADDRESS},
            "to": [{"email": str(request.target)}],
            "subject": subject,
            "htmlContent": html,
        }

        try:
            response = await self.client.post(
                settings.NOTIFY_API_URL,
                json=payload,
                headers={
                    "accept": "application/json",
                    "api-key": settings.NOTIFY_API_KEY,
                    "content-type": "application/json",
                },
                timeout=settings.API_TIMEOUT,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Failed to send export notification: target=%s, error=%s", target, str(e))
            return False

        logger.info("Export notification sent: target=%s", target)
        return True
