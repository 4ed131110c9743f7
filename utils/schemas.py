"""
Pydantic Schemas - Data Validation Models

Defines all Pydantic schemas used throughout the export pipeline:
- Export job checkpoint (the single persisted entity driving the pipeline)
- Multipart upload state
- Tenant OAuth credentials
- Redis Pub/Sub invocation messages
- Notification payloads

Usage:
    from utils.schemas import ExportJob, InvocationEvent

    event = InvocationEvent(**message)
    job = store.load(event.job_id)
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, EmailStr, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordKind(str, Enum):
    """Domain category being exported; fixes the pagination regime."""

    CONVERSATIONS = "conversations"
    MESSAGES = "messages"


class OutputFormat(str, Enum):
    CSV = "csv"
    JSON = "json"

    @property
    def content_type(self) -> str:
        return "application/json" if self is OutputFormat.JSON else "text/csv"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class UploadPart(BaseModel):
    """One acknowledged part of a multipart upload."""

    part_number: int = Field(..., ge=1, description="1-based part number")
    checksum: str = Field(..., description="Provider checksum (ETag / MD5)")
    byte_size: int = Field(..., ge=0, description="Part size in bytes")


class UploadState(BaseModel):
    """Multipart upload progress for a job.

    Parts are append-only and contiguous starting at 1.
    """

    provider_upload_id: Optional[str] = Field(default=None)
    object_key: Optional[str] = Field(default=None)
    parts: list[UploadPart] = Field(default_factory=list)

    @field_validator("parts")
    @classmethod
    def validate_contiguous(cls, v: list[UploadPart]) -> list[UploadPart]:
        """Parts must be numbered 1..n in order."""
        for expected, part in enumerate(v, 1):
            if part.part_number != expected:
                raise ValueError(
                    f"upload parts must be contiguous from 1 (expected {expected}, got {part.part_number})"
                )
        return v

    @property
    def is_open(self) -> bool:
        return self.provider_upload_id is not None

    @property
    def next_part_number(self) -> int:
        return len(self.parts) + 1


class ExportJob(BaseModel):
    """Export job checkpoint - single source of truth for resume."""

    job_id: str = Field(..., min_length=1, description="Stable external identifier")
    tenant_id: str = Field(..., min_length=1, description="Location scope")
    company_id: str = Field(default="", description="Company scope")
    record_kind: RecordKind
    output_format: OutputFormat = Field(default=OutputFormat.CSV)
    filters: dict[str, Any] = Field(default_factory=dict)

    status: JobStatus = Field(default=JobStatus.PENDING)
    cursor: Optional[str] = Field(default=None, description="Offset (conversations) or opaque cursor (messages)")
    processed_count: int = Field(default=0, ge=0)
    data_exhausted: bool = Field(default=False, description="Fetch loop has seen the end of the data")
    batch_count: int = Field(default=0, ge=0)
    total_estimate: int = Field(default=0, ge=0)
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)

    upload_state: UploadState = Field(default_factory=UploadState)
    download_ref: Optional[str] = Field(default=None)
    download_expires_at: Optional[datetime] = Field(default=None)

    notification_target: Optional[str] = Field(default=None)
    notification_sent: bool = Field(default=False)
    error_message: Optional[str] = Field(default=None)

    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
    last_processed_at: Optional[datetime] = Field(default=None)

    @model_validator(mode="after")
    def validate_download_ref(self) -> "ExportJob":
        """A download reference always travels with its expiry."""
        if (self.download_ref is None) != (self.download_expires_at is None):
            raise ValueError("download_ref and download_expires_at must be set together")
        return self

    @property
    def retries_exhausted(self) -> bool:
        return self.retry_count >= self.max_retries

    @property
    def channel(self) -> str:
        return str(self.filters.get("channel") or "")

    @property
    def export_filename(self) -> str:
        """Filename offered to the downloader, e.g. ``email_messages_export.csv``."""
        prefix = f"{self.channel.lower()}_" if self.channel else ""
        return f"{prefix}{self.record_kind.value}_export.{self.output_format.value}"

    def progress_percent(self) -> int:
        if self.total_estimate <= 0:
            return 0
        return min(100, round(self.processed_count * 100 / self.total_estimate))


class Credential(BaseModel):
    """Tenant OAuth credential pair as persisted in the credential store."""

    tenant_id: str
    access_token: str
    refresh_token: str
    expires_at: Optional[datetime] = None
    is_active: bool = True


class InvocationEvent(BaseModel):
    """Redis Pub/Sub invocation payload.

    Standard format for batch invocations:
    {
        "job_id": "65f0c1...",
        "batch_count": 3,
        "ts": "2025-01-15T03:15:02Z"
    }

    ``batch_count`` is the value the sender observed after its own commit; it
    is absent on the very first invocation and on sweeper re-dispatches.
    """

    job_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("job_id", "jobId", "exportJobId"),
        description="Export job id",
    )
    batch_count: Optional[int] = Field(default=None, ge=0)
    ts: datetime = Field(default_factory=utcnow, description="Timestamp")


class JobSummary(BaseModel):
    """Facts about a finished export included in the notification."""

    record_kind: RecordKind
    output_format: OutputFormat
    total_items: int = Field(..., ge=0)


class NotificationRequest(BaseModel):
    """Validated notification sink payload."""

    target: EmailStr
    download_ref: str = Field(..., min_length=1)
    summary: JobSummary
