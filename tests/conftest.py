"""Pytest configuration.

Settings are loaded at import time by utils.config, so the environment
defaults below must be in place before any application module is imported.
Remote collaborators (record API, OAuth endpoint, email API) are served by a
single in-process fake behind httpx.MockTransport; storage and continuation
are in-memory doubles.
"""

import io
import os

os.environ.setdefault("SQLITE_PATH", ":memory:")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("RECORD_API_BASE", "https://records.test")
os.environ.setdefault("OAUTH_TOKEN_URL", "https://auth.test/oauth/token")
os.environ.setdefault("OAUTH_CLIENT_ID", "client-id")
os.environ.setdefault("OAUTH_CLIENT_SECRET", "client-secret")
os.environ.setdefault("NOTIFY_API_URL", "https://mail.test/v3/smtp/email")
os.environ.setdefault("NOTIFY_API_KEY", "")
os.environ.setdefault("STORAGE_BACKEND", "s3")
os.environ.setdefault("S3_BUCKET", "test-exports")
os.environ.setdefault("S3_REGION", "us-east-1")
os.environ.setdefault("DOWNLOAD_BASE_URL", "https://downloads.test")
os.environ.setdefault("DOWNLOAD_SIGNING_SECRET", "test-signing-secret")
os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")

from contextlib import contextmanager
from typing import Any, Optional
from urllib.parse import parse_qs

import httpx
import orjson
import pytest
import pytest_asyncio

from apps.exporter.assembler import MultipartAssembler, SftpMultipartAssembler
from apps.exporter.checkpoint import CheckpointStore
from apps.exporter.credentials import CredentialStore
from apps.exporter.errors import TransientError
from apps.exporter.fetcher import PaginatedFetcher
from apps.exporter.notifier import CompletionNotifier
from apps.exporter.pipeline import ExportPipeline, InvocationResult, TimeBudget
from apps.exporter.token_renewer import TokenRenewer
from utils.config import settings
from utils.db import connect, init_schema
from utils.schemas import Credential, ExportJob, InvocationEvent, OutputFormat, RecordKind, UploadPart

TENANT_ID = "loc_1"


def make_conversations(n: int) -> list[dict[str, Any]]:
    return [
        {
            "id": f"conv_{i}",
            "contactId": f"contact_{i}",
            "contactName": f"Contact {i}",
            "email": f"c{i}@example.com",
            "phone": "+15550000",
            "type": "TYPE_PHONE",
            "lastMessageType": "TYPE_SMS",
            "lastMessageDate": 1700000000000 + i,
            "unreadCount": i % 3,
            "dateAdded": 1700000000000,
        }
        for i in range(n)
    ]


def make_messages(n: int) -> list[dict[str, Any]]:
    return [
        {
            "id": f"msg_{i}",
            "conversationId": f"conv_{i // 10}",
            "contactId": f"contact_{i // 10}",
            "messageType": "TYPE_SMS",
            "direction": "inbound",
            "status": "delivered",
            "body": f"hello {i}",
            "dateAdded": 1700000000000 + i,
        }
        for i in range(n)
    ]


class FakeRemote:
    """
    In-process stand-in for the record API, the OAuth token endpoint and the
    transactional email API.
    """

    def __init__(self, conversations: int = 0, messages: int = 0) -> None:
        self.conversations = make_conversations(conversations)
        self.messages = make_messages(messages)
        self.valid_tokens = {"access-0"}
        self.failures: list[int] = []
        self.reject_refresh = False
        self.renewals = 0
        self.record_requests: list[httpx.Request] = []
        self.emails: list[dict[str, Any]] = []
        self.email_status = 201

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "auth.test":
            return self._token(request)
        if request.url.host == "mail.test":
            self.emails.append({"headers": dict(request.headers), "json": orjson.loads(request.content)})
            return httpx.Response(self.email_status, json={"messageId": "m-1"})
        return self._records(request)

    def _token(self, request: httpx.Request) -> httpx.Response:
        if self.reject_refresh:
            return httpx.Response(400, json={"error": "invalid_grant"})
        form = parse_qs(request.content.decode("utf-8"))
        assert form["grant_type"] == ["refresh_token"]
        self.renewals += 1
        access = f"access-{self.renewals}"
        self.valid_tokens = {access}
        return httpx.Response(
            200,
            json={"access_token": access, "refresh_token": f"refresh-{self.renewals}", "expires_in": 3600},
        )

    def _records(self, request: httpx.Request) -> httpx.Response:
        self.record_requests.append(request)
        if self.failures:
            return httpx.Response(self.failures.pop(0), json={"message": "injected"})

        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if token not in self.valid_tokens:
            return httpx.Response(401, json={"message": "Invalid JWT"})

        params = request.url.params
        limit = int(params["limit"])
        if request.url.path == "/conversations/search":
            skip = int(params.get("skip", "0"))
            return httpx.Response(200, json={"conversations": self.conversations[skip:skip + limit]})

        start = int(params.get("cursor", "0"))
        end = start + limit
        body: dict[str, Any] = {"messages": self.messages[start:end]}
        if end < len(self.messages):
            body["nextCursor"] = str(end)
        return httpx.Response(200, json=body)


class FakeAssembler(MultipartAssembler):
    """In-memory multipart object store."""

    def __init__(self) -> None:
        self.uploads: dict[str, dict[int, bytes]] = {}
        self.objects: dict[str, bytes] = {}
        self.opened: list[str] = []
        self.aborted: list[str] = []
        self.upload_failures = 0
        self.complete_failures = 0
        self.upload_calls = 0

    def open(self, object_key: str, content_type: str, filename: str) -> str:
        upload_id = f"upload-{len(self.opened) + 1}"
        self.opened.append(upload_id)
        self.uploads[upload_id] = {}
        return upload_id

    def upload_part(self, upload_id: str, object_key: str, part_number: int, data: bytes) -> str:
        self.upload_calls += 1
        if self.upload_failures:
            self.upload_failures -= 1
            raise TransientError("injected upload failure")
        self.uploads[upload_id][part_number] = data
        return f"etag-{part_number}"

    def complete(self, upload_id: str, object_key: str, parts: list[UploadPart]) -> None:
        if self.complete_failures:
            self.complete_failures -= 1
            raise TransientError("injected complete failure")
        staged = self.uploads.pop(upload_id)
        self.objects[object_key] = b"".join(staged[p.part_number] for p in parts)

    def abort(self, upload_id: str, object_key: str) -> None:
        self.aborted.append(upload_id)
        self.uploads.pop(upload_id, None)

    def presign(self, object_key: str, ttl_seconds: int) -> str:
        return f"https://downloads.test/{object_key}?ttl={ttl_seconds}"

    def part_count(self, upload_id: str) -> int:
        return len(self.uploads.get(upload_id, {}))


class FakeContinuation:
    """Records dispatched invocations instead of publishing them."""

    def __init__(self) -> None:
        self.dispatched: list[tuple[str, Optional[int]]] = []
        self.fail = False

    async def dispatch(self, job_id: str, batch_count: Optional[int]) -> None:
        if self.fail:
            raise ConnectionError("redis unavailable")
        self.dispatched.append((job_id, batch_count))


class _Stat:
    def __init__(self, size: int) -> None:
        self.st_size = size


class _RemoteFile(io.BytesIO):
    def __init__(self, fs: "FakeSftp", path: str, mode: str) -> None:
        super().__init__(fs.files.get(path, b"") if "r" in mode else b"")
        self.fs = fs
        self.path = path
        self.mode = mode

    def close(self) -> None:
        if "w" in self.mode and not self.closed:
            self.fs.files[self.path] = self.getvalue()
        super().close()


class FakeSftp:
    """Flat in-memory filesystem exposing the SFTPClient calls the helpers use."""

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.dirs: set[str] = {"/", "/upload"}

    def stat(self, path):
        if path in self.dirs:
            return _Stat(0)
        if path in self.files:
            return _Stat(len(self.files[path]))
        raise FileNotFoundError(path)

    def mkdir(self, path):
        self.dirs.add(path)

    def open(self, path, mode="rb"):
        if "r" in mode and path not in self.files:
            raise FileNotFoundError(path)
        return _RemoteFile(self, path, mode)

    def listdir(self, path):
        prefix = path.rstrip("/") + "/"
        return [p[len(prefix):] for p in self.files if p.startswith(prefix) and "/" not in p[len(prefix):]]

    def remove(self, path):
        if path not in self.files:
            raise FileNotFoundError(path)
        del self.files[path]

    def rmdir(self, path):
        self.dirs.discard(path)

    def posix_rename(self, old, new):
        self.files[new] = self.files.pop(old)


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def conn():
    conn = connect(":memory:")
    init_schema(conn)
    yield conn
    conn.close()


@pytest.fixture
def store(conn):
    return CheckpointStore(conn)


@pytest.fixture
def credentials(conn):
    creds = CredentialStore(conn)
    creds.save(Credential(tenant_id=TENANT_ID, access_token="access-0", refresh_token="refresh-0"))
    return creds


@pytest.fixture
def make_job(store):
    def _make(**overrides: Any) -> ExportJob:
        fields: dict[str, Any] = {
            "job_id": "job_1",
            "tenant_id": TENANT_ID,
            "company_id": "comp_1",
            "record_kind": RecordKind.CONVERSATIONS,
            "output_format": OutputFormat.CSV,
        }
        fields.update(overrides)
        return store.create(ExportJob(**fields))

    return _make


@pytest.fixture
def remote():
    return FakeRemote()


@pytest_asyncio.fixture
async def http_client(remote):
    client = httpx.AsyncClient(transport=httpx.MockTransport(remote.handler))
    yield client
    await client.aclose()


@pytest.fixture
def assembler():
    return FakeAssembler()


@pytest.fixture
def sftp():
    return FakeSftp()


@pytest.fixture
def sftp_assembler(sftp):
    @contextmanager
    def session():
        yield sftp

    return SftpMultipartAssembler(session_factory=session, remote_base="/upload")


@pytest.fixture
def continuation():
    return FakeContinuation()


@pytest.fixture
def build_pipeline(store, credentials, http_client, assembler, continuation):
    def _build(**overrides: Any) -> ExportPipeline:
        storage = overrides.pop("assembler", assembler)
        options: dict[str, Any] = {
            "record_quota": 100,
            "safety_buffer_seconds": 0,
            "page_delay_seconds": 0,
            "retry_backoff_seconds": 0,
            "sleep": no_sleep,
        }
        options.update(overrides)
        return ExportPipeline(
            store=store,
            credentials=credentials,
            fetcher=PaginatedFetcher(http_client, base_url=settings.RECORD_API_BASE),
            renewer=TokenRenewer(http_client, credentials),
            assembler=storage,
            notifier=CompletionNotifier(storage, http_client),
            continuation=continuation,
            **options,
        )

    return _build


async def drive(pipeline: ExportPipeline, continuation: FakeContinuation, job_id: str, limit: int = 50) -> list[InvocationResult]:
    """Run the first invocation and then every dispatched continuation, in order."""
    results = [await pipeline.run(InvocationEvent(job_id=job_id), TimeBudget(900))]
    while continuation.dispatched and len(results) < limit:
        dispatched_job, batch_count = continuation.dispatched.pop(0)
        results.append(await pipeline.run(InvocationEvent(job_id=dispatched_job, batch_count=batch_count), TimeBudget(900)))
    return results
