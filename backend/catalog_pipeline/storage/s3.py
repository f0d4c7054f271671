"""
S3 Storage Service — uploaded artifacts + bronze-layer audit copies

Key layout (one bucket, two prefixes):

    s3://<BUCKET>/<uploads_prefix>/<vendor_key>/<BASE>-<MM>-<YY>.pdf
        The uploaded artifact. Written once by the upload handler, read back
        by the OCR stage and deleted when its lineage is purged.

    s3://<BUCKET>/<audit_prefix>/<kind>/<attempt_id>-v<attempt_index>.<ext>
        Immutable audit copies, written by the pipeline and never read back:
            raw/         the artifact bytes the OCR pass saw         (.pdf)
            ocr/         the OCR payload                             (.json)
            ai-mapping/  column mapping + products                   (.json)
            prompts/     the exact prompt sent to the LLM            (.txt)
        attempt_index is the version suffix, so a reprocessed attempt never
        overwrites an earlier attempt's audit objects.

Every call is bounded by storage_timeout_seconds. Timeouts and S3 errors
surface as ExternalServiceError("storage", ...).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, TypeVar
from uuid import UUID

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from catalog_pipeline.core.config import Settings
from catalog_pipeline.core.errors import ExternalServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Audit kinds: used to partition the bronze-layer prefix
# ---------------------------------------------------------------------------

class AuditKind(str, Enum):
    RAW     = "raw"
    OCR     = "ocr"
    MAPPING = "ai-mapping"
    PROMPT  = "prompts"


_AUDIT_FORMATS: dict[AuditKind, tuple[str, str]] = {
    AuditKind.RAW:     ("pdf",  "application/pdf"),
    AuditKind.OCR:     ("json", "application/json"),
    AuditKind.MAPPING: ("json", "application/json"),
    AuditKind.PROMPT:  ("txt",  "text/plain; charset=utf-8"),
}


def audit_key(kind: AuditKind, attempt_id: UUID, attempt_index: int) -> str:
    """Relative audit key: <kind>/<attempt_id>-v<attempt_index>.<ext>"""
    ext, _ = _AUDIT_FORMATS[kind]
    return f"{kind.value}/{attempt_id}-v{attempt_index}.{ext}"


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StoredObject:
    """Returned by put operations."""
    key:          str
    bucket:       str
    size_bytes:   int
    content_type: str
    etag:         str
    version_id:   str | None = None


# ---------------------------------------------------------------------------
# Storage service
# ---------------------------------------------------------------------------

class ArtifactStorage:
    """
    Async S3 operations for one bucket.

    One instance per process; aioboto3 clients are opened per call so the
    object is safe to share across concurrent tasks.
    """

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        uploads_prefix: str = "uploads",
        audit_prefix: str = "bronze-layer",
        timeout_seconds: float = 30.0,
        session: aioboto3.Session | None = None,
    ) -> None:
        self.bucket = bucket
        self._region = region
        self._uploads_prefix = uploads_prefix.strip("/")
        self._audit_prefix = audit_prefix.strip("/")
        self._timeout = timeout_seconds
        self._session = session or aioboto3.Session()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ArtifactStorage":
        return cls(
            bucket=settings.s3_bucket,
            region=settings.aws_region,
            uploads_prefix=settings.s3_uploads_prefix,
            audit_prefix=settings.s3_audit_prefix,
            timeout_seconds=settings.storage_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client("s3", region_name=self._region)

    async def _bounded(self, op: str, key: str, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            logger.error("S3 %s timed out | key=%s timeout=%.0fs", op, key, self._timeout)
            raise ExternalServiceError("storage", f"{op} {key} timed out") from exc
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "Unknown")
            logger.error("S3 %s failed | key=%s code=%s", op, key, code)
            raise ExternalServiceError("storage", f"{op} {key} failed: {code}") from exc
        except BotoCoreError as exc:
            logger.error("S3 %s failed | key=%s error=%s", op, key, exc)
            raise ExternalServiceError("storage", f"{op} {key} failed: {exc}") from exc

    async def _put(self, key: str, body: bytes, content_type: str, metadata: dict[str, str]) -> dict:
        async with self._client() as s3:
            return await s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
                Metadata=metadata,
            )

    async def _get(self, key: str) -> bytes:
        async with self._client() as s3:
            resp = await s3.get_object(Bucket=self.bucket, Key=key)
            return await resp["Body"].read()

    async def _delete(self, key: str) -> dict:
        async with self._client() as s3:
            return await s3.delete_object(Bucket=self.bucket, Key=key)

    # ------------------------------------------------------------------
    # Uploaded artifacts
    # ------------------------------------------------------------------

    def upload_key(self, vendor_key: str, file_name: str) -> str:
        """uploads/<vendor_key>/<file_name>; both parts are server-built."""
        safe_name = file_name.replace("/", "_").replace("..", "_")
        return f"{self._uploads_prefix}/{vendor_key}/{safe_name}"

    async def put_upload(
        self,
        vendor_key: str,
        file_name: str,
        body: bytes,
        content_type: str = "application/pdf",
    ) -> StoredObject:
        key = self.upload_key(vendor_key, file_name)
        resp = await self._bounded(
            "put", key,
            self._put(key, body, content_type, {"vendor_key": vendor_key}),
        )
        logger.info("S3 upload ok | vendor=%s key=%s size=%d", vendor_key, key, len(body))
        return StoredObject(
            key=key,
            bucket=self.bucket,
            size_bytes=len(body),
            content_type=content_type,
            etag=resp.get("ETag", "").strip('"'),
            version_id=resp.get("VersionId"),
        )

    async def get_object(self, key: str) -> bytes:
        """Download an object by its full key (used to read uploads for OCR)."""
        return await self._bounded("get", key, self._get(key))

    async def delete_object(self, key: str) -> None:
        """Delete an uploaded artifact (lineage purge). Missing keys are not an error in S3."""
        await self._bounded("delete", key, self._delete(key))
        logger.info("S3 delete ok | key=%s", key)

    # ------------------------------------------------------------------
    # Bronze-layer audit sink (write-only)
    # ------------------------------------------------------------------

    async def put_audit(
        self,
        kind: AuditKind,
        attempt_id: UUID,
        attempt_index: int,
        body: bytes | str,
    ) -> str:
        """Write one audit object; returns its full key."""
        _, content_type = _AUDIT_FORMATS[kind]
        key = f"{self._audit_prefix}/{audit_key(kind, attempt_id, attempt_index)}"
        raw = body.encode("utf-8") if isinstance(body, str) else body
        metadata: dict[str, Any] = {
            "attempt_id":    str(attempt_id),
            "attempt_index": str(attempt_index),
            "kind":          kind.value,
        }
        await self._bounded("put", key, self._put(key, raw, content_type, metadata))
        logger.info("Audit write ok | kind=%s key=%s size=%d", kind.value, key, len(raw))
        return key
