from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC
from typing import Any, Callable, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from common.errors import FatalIOError, TransientIOError
from common.settings import S3Credentials, Settings


logger = logging.getLogger(__name__)

DEFAULT_OBJECT_KEY = "cloud-backup.json"
CONTENT_TYPE = "application/json"
SERVER_SIDE_ENCRYPTION = "AES256"
MULTIPART_THRESHOLD = 100 * 1024 * 1024
PART_SIZE = 50 * 1024 * 1024
STALE_UPLOAD_AGE = timedelta(minutes=5)

_RETRYABLE_CODES = frozenset(
    {"SlowDown", "Throttling", "ThrottlingException", "RequestTimeout", "InternalError", "ServiceUnavailable"}
)
_NOT_FOUND_CODES = frozenset({"NoSuchKey", "404", "NotFound"})


def _error_code(exc: ClientError) -> Optional[str]:
    return exc.response.get("Error", {}).get("Code")


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, BotoCoreError):
        return True
    if isinstance(exc, ClientError):
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        return _error_code(exc) in _RETRYABLE_CODES or (isinstance(status, int) and status >= 500)
    return False


@dataclass
class MultipartSession:
    """
    One multipart upload: created, filled part by part, then completed or aborted once.

    Parts are recorded in upload order; part numbers start at 1 with no gaps.
    """

    upload_id: str
    key: str
    parts: List[Dict[str, Any]] = field(default_factory=list)
    closed: bool = False

    @property
    def next_part_number(self) -> int:
        return len(self.parts) + 1

    def record(self, part_number: int, etag: str) -> None:
        if self.closed:
            raise RuntimeError(f"multipart session {self.upload_id} is already closed")
        if part_number != self.next_part_number:
            raise ValueError(f"expected part {self.next_part_number}, got {part_number}")
        self.parts.append({"PartNumber": part_number, "ETag": etag})

    def close(self) -> None:
        if self.closed:
            raise RuntimeError(f"multipart session {self.upload_id} is already closed")
        self.closed = True


class S3BackupStore:
    """
    Ships encrypted backup blobs to one S3 object and fetches them back.

    Usage
    - `upload(blob)` uses a single PutObject up to `multipart_threshold` bytes
      and a sequential multipart upload (`part_size` parts) above it. A failed
      part leaves the session open; `reap_stale_multipart_sessions()` aborts it later.
    - `download()` returns the object bytes, or None if there is no backup yet.
    - Every S3 call runs in the default executor and is retried with backoff on
      throttling, 5xx and connection errors. Exhausted retries raise FatalIOError.
    """

    def __init__(
        self,
        *,
        s3: Optional[object] = None,
        bucket: str,
        key: str = DEFAULT_OBJECT_KEY,
        region_name: Optional[str] = None,
        multipart_threshold: int = MULTIPART_THRESHOLD,
        part_size: int = PART_SIZE,
        max_attempts: int = 3,
        backoff: float = 0.5,
        sleep: Callable[[float], Any] = asyncio.sleep,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        if part_size <= 0:
            raise ValueError("part_size must be > 0")
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        self._s3 = s3 or boto3.client("s3", region_name=region_name)
        self._bucket = bucket
        self._key = key
        self._multipart_threshold = multipart_threshold
        self._part_size = part_size
        self._max_attempts = max_attempts
        self._backoff = backoff
        self._sleep = sleep
        self._now = now

    # -------- Construction helpers --------
    @classmethod
    def from_credentials(cls, creds: S3Credentials, **kwargs: Any) -> "S3BackupStore":
        s3 = boto3.client(
            "s3",
            region_name=creds.region,
            aws_access_key_id=creds.access_key,
            aws_secret_access_key=creds.secret_key,
            endpoint_url=creds.endpoint_url,
        )
        return cls(s3=s3, bucket=creds.bucket, **kwargs)

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "S3BackupStore":
        return cls.from_credentials(settings.s3_credentials(), **kwargs)

    @property
    def bucket(self) -> str:
        return self._bucket

    @property
    def key(self) -> str:
        return self._key

    # -------- Core operations --------
    async def upload(self, blob: bytes, *, key: Optional[str] = None) -> None:
        """Upload `blob` to `key` (default: the backup object key)."""
        key = key or self._key
        size = len(blob)
        if size > self._multipart_threshold:
            logger.info("Using multipart upload for %s: %.2f MB", key, size / 1024 / 1024)
            await self._upload_multipart(blob, key)
            return
        await self._call(
            "PutObject",
            self._s3.put_object,
            Bucket=self._bucket,
            Key=key,
            Body=blob,
            ContentType=CONTENT_TYPE,
            ServerSideEncryption=SERVER_SIDE_ENCRYPTION,
        )
        logger.info("Uploaded %s (%d bytes)", key, size)

    async def _upload_multipart(self, blob: bytes, key: str) -> MultipartSession:
        resp = await self._call(
            "CreateMultipartUpload",
            self._s3.create_multipart_upload,
            Bucket=self._bucket,
            Key=key,
            ContentType=CONTENT_TYPE,
            ServerSideEncryption=SERVER_SIDE_ENCRYPTION,
        )
        session = MultipartSession(upload_id=resp["UploadId"], key=key)
        size = len(blob)

        for start in range(0, size, self._part_size):
            end = min(start + self._part_size, size)
            part_number = session.next_part_number
            part = await self._call(
                "UploadPart",
                self._s3.upload_part,
                Bucket=self._bucket,
                Key=key,
                PartNumber=part_number,
                UploadId=session.upload_id,
                Body=blob[start:end],
            )
            session.record(part_number, part["ETag"])
            logger.debug("Upload progress: %d%%", round(end / size * 100))

        await self._call(
            "CompleteMultipartUpload",
            self._s3.complete_multipart_upload,
            Bucket=self._bucket,
            Key=key,
            UploadId=session.upload_id,
            MultipartUpload={"Parts": list(session.parts)},
        )
        session.close()
        logger.info("Completed multipart upload for %s (%d parts)", key, len(session.parts))
        return session

    async def download(self, *, key: Optional[str] = None) -> Optional[bytes]:
        """Fetch the backup object; None when it does not exist."""
        key = key or self._key
        try:
            resp = await self._call("GetObject", self._s3.get_object, Bucket=self._bucket, Key=key)
        except FatalIOError as exc:
            cause = exc.__cause__
            if isinstance(cause, ClientError) and _error_code(cause) in _NOT_FOUND_CODES:
                return None
            raise
        loop = asyncio.get_running_loop()
        try:
            body = await loop.run_in_executor(None, resp["Body"].read)
        except (BotoCoreError, OSError) as exc:
            raise FatalIOError(f"Failed to read s3://{self._bucket}/{key}") from exc
        logger.info("Downloaded %s (%d bytes)", key, len(body))
        return body

    async def reap_stale_multipart_sessions(self, *, max_age: timedelta = STALE_UPLOAD_AGE) -> List[str]:
        """Abort incomplete multipart uploads older than `max_age`.

        Younger sessions may still be in progress elsewhere and are left alone.
        Listing or abort failures are logged. Returns the aborted upload ids.
        """
        try:
            uploads = await self._list_multipart_uploads()
        except FatalIOError as exc:
            logger.error("Error listing multipart uploads: %s", exc)
            return []
        if not uploads:
            logger.debug("No incomplete multipart uploads found")
            return []

        logger.info("Found %d incomplete multipart uploads", len(uploads))
        now = self._now()
        aborted: List[str] = []
        for upload in uploads:
            age = now - upload["Initiated"]
            if age <= max_age:
                logger.info("Skipping recent upload for %s (%ds old)", upload["Key"], age.total_seconds())
                continue
            try:
                await self._call(
                    "AbortMultipartUpload",
                    self._s3.abort_multipart_upload,
                    Bucket=self._bucket,
                    Key=upload["Key"],
                    UploadId=upload["UploadId"],
                )
            except FatalIOError as exc:
                logger.error("Failed to abort upload %s: %s", upload["UploadId"], exc)
                continue
            aborted.append(upload["UploadId"])
            logger.info("Aborted incomplete upload for %s (%dmin old)", upload["Key"], age.total_seconds() // 60)
        return aborted

    async def _list_multipart_uploads(self) -> List[Dict[str, Any]]:
        uploads: List[Dict[str, Any]] = []
        params: Dict[str, Any] = {"Bucket": self._bucket}
        while True:
            resp = await self._call("ListMultipartUploads", self._s3.list_multipart_uploads, **params)
            uploads.extend(resp.get("Uploads") or [])
            if not resp.get("IsTruncated"):
                return uploads
            params["KeyMarker"] = resp.get("NextKeyMarker")
            params["UploadIdMarker"] = resp.get("NextUploadIdMarker")

    # -------- Internal --------
    async def _attempt(self, op: str, fn: Callable[..., Any], kwargs: Dict[str, Any]) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(fn, **kwargs))
        except (ClientError, BotoCoreError) as exc:
            if _is_retryable(exc):
                raise TransientIOError(f"{op} failed: {exc}") from exc
            raise FatalIOError(f"{op} failed for s3://{self._bucket}: {exc}") from exc

    async def _call(self, op: str, fn: Callable[..., Any], **kwargs: Any) -> Any:
        backoff = self._backoff
        last_exc: Optional[TransientIOError] = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                return await self._attempt(op, fn, kwargs)
            except TransientIOError as exc:
                last_exc = exc
                logger.warning("%s (attempt %d/%d)", exc, attempt, self._max_attempts)
                if attempt < self._max_attempts:
                    await self._sleep(backoff)
                    backoff = min(backoff * 2, 8.0)
        cause = last_exc.__cause__ if last_exc is not None else None
        raise FatalIOError(f"{op} failed for s3://{self._bucket} after {self._max_attempts} attempts") from cause


__all__ = [
    "DEFAULT_OBJECT_KEY",
    "MULTIPART_THRESHOLD",
    "PART_SIZE",
    "STALE_UPLOAD_AGE",
    "MultipartSession",
    "S3BackupStore",
]
