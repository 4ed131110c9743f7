"""
Multipart Upload Assembler - Incremental Export File Assembly

Accumulates encoded fragments as ordered parts of one remote object, then
finalizes or aborts it. Two backends share the same contract:

- S3MultipartAssembler: native S3 multipart upload primitives (boto3)
- SftpMultipartAssembler: parts staged as files on an SFTP server and
  concatenated on completion (paramiko)

The assembler does not enforce part ordering; callers derive the next part
number from the checkpointed part list.
"""

import base64
import hashlib
import hmac
import logging
import time
import uuid
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional
from urllib.parse import quote, urlencode

from botocore.exceptions import BotoCoreError, ClientError

from apps.exporter.errors import PermanentError, TransientError
from utils import sftp as sftp_utils
from utils.config import settings
from utils.s3 import get_s3_client
from utils.schemas import UploadPart

logger = logging.getLogger(__name__)

S3_MIN_PART_BYTES = 5 * 1024 * 1024


class MultipartAssembler(ABC):
    """Contract for multipart object assembly plus time-limited read references."""

    # Smallest size the backend accepts for any part but the last.
    min_part_bytes = 0

    @abstractmethod
    def open(self, object_key: str, content_type: str, filename: str) -> str:
        """Start a multipart object; returns the provider upload id."""

    @abstractmethod
    def upload_part(self, upload_id: str, object_key: str, part_number: int, data: bytes) -> str:
        """Upload one part; returns its checksum."""

    @abstractmethod
    def complete(self, upload_id: str, object_key: str, parts: list[UploadPart]) -> None:
        """Make the object durable from the full ordered part list."""

    @abstractmethod
    def abort(self, upload_id: str, object_key: str) -> None:
        """Release an unfinished upload. Best effort: never raises."""

    @abstractmethod
    def presign(self, object_key: str, ttl_seconds: int) -> str:
        """Return a read reference valid for ``ttl_seconds``."""


def build_object_key(company_id: str, tenant_id: str, job_id: str, extension: str) -> str:
    return f"{settings.EXPORT_KEY_PREFIX}/{company_id or '_'}/{tenant_id}/{job_id}.{extension}"


class S3MultipartAssembler(MultipartAssembler):
    """S3 multipart upload via boto3."""

    min_part_bytes = S3_MIN_PART_BYTES

    def __init__(self, client: Any = None, bucket: Optional[str] = None) -> None:
        self._client = client
        self.bucket = bucket or settings.S3_BUCKET

    @property
    def client(self) -> Any:
        return self._client if self._client is not None else get_s3_client()

    def _call(self, operation: str, fn: Callable[..., Any], **kwargs: Any) -> Any:
        try:
            return fn(Bucket=self.bucket, **kwargs)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "EntityTooSmall":
                raise PermanentError(
                    f"S3 {operation} rejected undersized parts (minimum {S3_MIN_PART_BYTES} bytes "
                    f"except the last); raise BATCH_RECORD_QUOTA: {e}"
                ) from e
            raise TransientError(f"S3 {operation} failed: {e}") from e
        except BotoCoreError as e:
            raise TransientError(f"S3 {operation} failed: {e}") from e

    def open(self, object_key: str, content_type: str, filename: str) -> str:
        response = self._call(
            "create_multipart_upload",
            self.client.create_multipart_upload,
            Key=object_key,
            ContentType=content_type,
            ContentDisposition=f'attachment; filename="{filename}"',
        )
        logger.info("Multipart upload started: bucket=%s, key=%s", self.bucket, object_key)
        return response["UploadId"]

    def upload_part(self, upload_id: str, object_key: str, part_number: int, data: bytes) -> str:
        response = self._call(
            "upload_part",
            self.client.upload_part,
            Key=object_key,
            UploadId=upload_id,
            PartNumber=part_number,
            Body=data,
        )
        return response["ETag"]

    def complete(self, upload_id: str, object_key: str, parts: list[UploadPart]) -> None:
        self._call(
            "complete_multipart_upload",
            self.client.complete_multipart_upload,
            Key=object_key,
            UploadId=upload_id,
            MultipartUpload={
                "Parts": [{"PartNumber": p.part_number, "ETag": p.checksum} for p in parts]
            },
        )
        logger.info("Multipart upload completed: key=%s, parts=%d", object_key, len(parts))

    def abort(self, upload_id: str, object_key: str) -> None:
        try:
            self.client.abort_multipart_upload(Bucket=self.bucket, Key=object_key, UploadId=upload_id)
            logger.info("Multipart upload aborted: key=%s", object_key)
        except (BotoCoreError, ClientError) as e:
            logger.error("Failed to abort multipart upload: key=%s, error=%s", object_key, str(e))

    def presign(self, object_key: str, ttl_seconds: int) -> str:
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": object_key},
            ExpiresIn=ttl_seconds,
        )


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def sign_download(object_key: str, expires: int, secret: str) -> str:
    body = f"{object_key}\n{expires}".encode("utf-8")
    return _b64url(hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest())


def verify_download(object_key: str, expires: int, signature: str, secret: str, now: Optional[float] = None) -> bool:
    """Check a signed download reference produced by ``SftpMultipartAssembler.presign``."""
    if not secret or (now if now is not None else time.time()) > expires:
        return False
    expected = sign_download(object_key, expires, secret)
    return hmac.compare_digest(expected, signature)


class SftpMultipartAssembler(MultipartAssembler):
    """
    Multipart assembly on an SFTP server.

    Parts are written under ``<base>/<key>.parts/<upload_id>/NNNNN.part``;
    completion streams them in order into ``<base>/<key>``, verifying each
    part's MD5 against the checksum recorded at upload time.
    """

    def __init__(self, session_factory: Callable[[], Any] = sftp_utils.sftp_session, remote_base: Optional[str] = None) -> None:
        self.session_factory = session_factory
        self.remote_base = (remote_base or settings.SFTP_REMOTE_BASE).rstrip("/")

    def _object_path(self, object_key: str) -> str:
        return f"{self.remote_base}/{object_key}"

    def _staging_dir(self, upload_id: str, object_key: str) -> str:
        return f"{self._object_path(object_key)}.parts/{upload_id}"

    def open(self, object_key: str, content_type: str, filename: str) -> str:
        upload_id = uuid.uuid4().hex
        staging = self._staging_dir(upload_id, object_key)
        try:
            with self.session_factory() as sftp:
                sftp_utils.ensure_remote_dir(sftp, staging)
        except (IOError, OSError) as e:
            raise TransientError(f"SFTP open failed: {e}") from e
        logger.info("SFTP multipart upload started: staging=%s", staging)
        return upload_id

    def upload_part(self, upload_id: str, object_key: str, part_number: int, data: bytes) -> str:
        path = f"{self._staging_dir(upload_id, object_key)}/{part_number:05d}.part"
        try:
            with self.session_factory() as sftp:
                sftp_utils.write_bytes(sftp, path, data)
        except (IOError, OSError) as e:
            raise TransientError(f"SFTP upload_part failed: {e}") from e
        return hashlib.md5(data).hexdigest()

    def complete(self, upload_id: str, object_key: str, parts: list[UploadPart]) -> None:
        """
        Concatenate the staged parts into the final object.

        Safe to call again after a successful completion: an object already in
        place with the expected total size is accepted as is.
        """
        staging = self._staging_dir(upload_id, object_key)
        final_path = self._object_path(object_key)
        tmp_path = f"{final_path}.{upload_id}.tmp"
        expected_size = sum(p.byte_size for p in parts)

        try:
            with self.session_factory() as sftp:
                if sftp_utils.remote_size(sftp, final_path) == expected_size:
                    logger.info("SFTP object already assembled: path=%s", final_path)
                    self._discard(sftp, staging)
                    return

                sftp_utils.ensure_remote_dir(sftp, final_path.rsplit("/", 1)[0])
                try:
                    self._concatenate(sftp, staging, tmp_path, parts)
                    sftp.posix_rename(tmp_path, final_path)
                except (IOError, OSError):
                    self._remove_tmp(sftp, tmp_path)
                    raise
                self._discard(sftp, staging)
        except (IOError, OSError) as e:
            raise TransientError(f"SFTP complete failed: {e}") from e

        logger.info("SFTP multipart upload completed: path=%s, parts=%d", final_path, len(parts))

    @staticmethod
    def _concatenate(sftp: Any, staging: str, tmp_path: str, parts: list[UploadPart]) -> None:
        with sftp.open(tmp_path, "wb") as out:
            for part in parts:
                digest = hashlib.md5()
                for chunk in sftp_utils.iter_chunks(sftp, f"{staging}/{part.part_number:05d}.part"):
                    digest.update(chunk)
                    out.write(chunk)
                if digest.hexdigest() != part.checksum:
                    raise IOError(f"Checksum mismatch for part {part.part_number}")

    @staticmethod
    def _remove_tmp(sftp: Any, tmp_path: str) -> None:
        try:
            sftp.remove(tmp_path)
        except (IOError, OSError) as e:
            logger.warning("Failed to remove temporary object: path=%s, error=%s", tmp_path, str(e))

    @staticmethod
    def _discard(sftp: Any, staging: str) -> None:
        if sftp_utils.remote_size(sftp, staging) is not None:
            sftp_utils.remove_tree(sftp, staging)

    def abort(self, upload_id: str, object_key: str) -> None:
        staging = self._staging_dir(upload_id, object_key)
        try:
            with self.session_factory() as sftp:
                sftp_utils.remove_tree(sftp, staging)
            logger.info("SFTP multipart upload aborted: staging=%s", staging)
        except Exception as e:
            logger.error("Failed to abort SFTP upload: staging=%s, error=%s", staging, str(e))

    def presign(self, object_key: str, ttl_seconds: int) -> str:
        if not settings.DOWNLOAD_SIGNING_SECRET:
            raise RuntimeError("DOWNLOAD_SIGNING_SECRET must be set to issue download links")
        expires = int(time.time()) + int(ttl_seconds)
        query = urlencode({
            "expires": expires,
            "signature": sign_download(object_key, expires, settings.DOWNLOAD_SIGNING_SECRET),
        })
        return f"{settings.DOWNLOAD_BASE_URL.rstrip('/')}/{quote(object_key)}?{query}"


def build_assembler(backend: Optional[str] = None) -> MultipartAssembler:
    backend = (backend or settings.STORAGE_BACKEND).lower()
    if backend == "s3":
        return S3MultipartAssembler()
    if backend == "sftp":
        return SftpMultipartAssembler()
    raise ValueError(f"Unknown STORAGE_BACKEND: {backend}")
