from datetime import timedelta

import pytest

from apps.exporter.notifier import CompletionNotifier, render_email
from utils.config import settings
from utils.schemas import JobSummary, OutputFormat, RecordKind, utcnow

SUMMARY = JobSummary(record_kind=RecordKind.MESSAGES, output_format=OutputFormat.CSV, total_items=1234)


@pytest.fixture
def notifier(assembler, http_client):
    return CompletionNotifier(assembler, http_client)


@pytest.fixture
def api_key(monkeypatch):
    monkeypatch.setattr(settings, "NOTIFY_API_KEY", "test-key")


def test_render_email_mentions_link_and_totals():
    subject, html = render_email("https://downloads.test/x", SUMMARY, 7)

    assert subject == "Your Messages Export is Ready"
    assert 'href="https://downloads.test/x"' in html
    assert "1,234" in html
    assert "CSV" in html
    assert "7 days" in html


def test_generate_download_ref_uses_ttl(notifier):
    before = utcnow()

    ref, expires_at = notifier.generate_download_ref("exports/a.csv", ttl_seconds=3600)

    assert ref == "https://downloads.test/exports/a.csv?ttl=3600"
    assert before + timedelta(seconds=3600) <= expires_at <= utcnow() + timedelta(seconds=3600)


def test_generate_download_ref_defaults_to_configured_ttl(notifier):
    ref, _ = notifier.generate_download_ref("exports/a.csv")

    assert ref.endswith(f"ttl={settings.DOWNLOAD_TTL_SECONDS}")


async def test_notify_without_api_key_is_skipped(notifier, remote):
    assert await notifier.notify("ops@example.com", "https://x", SUMMARY) is False
    assert remote.emails == []


async def test_notify_sends_email(notifier, remote, api_key):
    assert await notifier.notify("ops@example.com", "https://downloads.test/x", SUMMARY) is True

    sent = remote.emails[0]
    assert sent["headers"]["api-key"] == "test-key"
    assert sent["json"]["to"] == [{"email": "ops@example.com"}]
    assert sent["json"]["sender"]["email"] == settings.NOTIFY_FROM_ADDRESS
    assert "https://downloads.test/x" in sent["json"]["htmlContent"]


async def test_notify_rejects_invalid_target(notifier, remote, api_key):
    assert await notifier.notify("not-an-email", "https://x", SUMMARY) is False
    assert remote.emails == []


async def test_notify_failure_returns_false(notifier, remote, api_key):
    remote.email_status = 500

    assert await notifier.notify("ops@example.com", "https://x", SUMMARY) is False
    assert len(remote.emails) == 1
