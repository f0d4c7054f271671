"""
Catalog Ingestion Service

Orchestrates the upload pipeline and the OCR stage:

  submit_upload
    1. Validate the vendor key (VENDOR_NAME_MM_YY) and derive the
       standardized file name <BASE>-<MM>-<YY>.pdf
    2. Validate the file: non-empty, size ceiling, %PDF magic bytes
    3. Check the daily and per-IP hourly upload quotas
    4. Insert the original attempt (status=pending). A partial unique index
       allows one original per vendor key, so a second upload for a vendor
       with a lineage is refused here, before its bytes can overwrite the
       deterministic storage path
    5. Upload to S3 under uploads/<vendor_key>/<file name>; on failure the
       reserved attempt is discarded
    6. Count the upload against the quotas, publish the OCR task

  OcrStage.run  (one invocation per uploaded artifact)
    1. Skip unless the attempt is still pending
    2. Read the artifact from S3, write the raw/ audit copy
    3. Textract table OCR (multi-page documents via an async job over the
       stored object), write the ocr/ audit copy
    4. record_ocr_result → ocr_complete, then enqueue the mapping job
    Any OCR / storage failure is recorded on the attempt (status=failed).

Invariants enforced here:
  - S3 keys are constructed server-side from the validated vendor key.
  - The file type is detected from magic bytes, never the client's Content-Type.
  - An enqueue failure never loses an attempt: it is already durable and the
    stale-attempt scanner re-publishes it.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from catalog_pipeline.core.errors import (
    ExternalServiceError,
    PreconditionFailedError,
    ValidationError,
)
from catalog_pipeline.models.attempts import AttemptStatus, ProcessingAttempt
from catalog_pipeline.processing.ocr import TextractOcrClient
from catalog_pipeline.schemas.attempts import AttemptMetadata
from catalog_pipeline.schemas.extraction import OcrPayload
from catalog_pipeline.services.attempt_store import AttemptStore
from catalog_pipeline.services.dispatch import JobPublisher
from catalog_pipeline.services.quota import UploadQuota
from catalog_pipeline.storage.s3 import ArtifactStorage, AuditKind

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"
_PDF_MAGIC = b"%PDF"

# BETTER_LIVING_11_25 → base BETTER_LIVING, month 11, year 25
_VENDOR_KEY_RE = re.compile(r"^(?P<base>[A-Z0-9]+(?:_[A-Z0-9]+)*)_(?P<month>\d{2})_(?P<year>\d{2})$")


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VendorKey:
    value: str
    base:  str
    month: str
    year:  str

    @property
    def file_name(self) -> str:
        return f"{self.base}-{self.month}-{self.year}.pdf"


def parse_vendor_key(raw: Optional[str]) -> VendorKey:
    value = (raw or "").strip()
    if not value:
        raise ValidationError("vendor_key is required.", field="vendor_key")

    match = _VENDOR_KEY_RE.match(value)
    if match is None:
        raise ValidationError(
            "vendor_key must look like VENDOR_NAME_MM_YY (uppercase letters, digits, underscores), "
            "e.g. BETTER_LIVING_11_25.",
            field="vendor_key",
        )
    if not 1 <= int(match["month"]) <= 12:
        raise ValidationError(f"vendor_key month must be 01-12, got {match['month']}.", field="vendor_key")

    return VendorKey(value=value, base=match["base"], month=match["month"], year=match["year"])


def validate_pdf(data: bytes, max_bytes: int) -> None:
    if not data:
        raise ValidationError("The uploaded file is empty.", field="file")
    if len(data) > max_bytes:
        raise ValidationError(
            f"File size {len(data):,} bytes exceeds the maximum of {max_bytes:,} bytes.",
            field="file",
        )
    if not data.startswith(_PDF_MAGIC):
        raise ValidationError("Only PDF documents are accepted.", field="file")


def _sanitize_document_name(name: str) -> str:
    """Strip path components and replace unsafe characters."""
    basename = name.replace("\\", "/").rsplit("/", 1)[-1]
    safe = re.sub(r"[^a-zA-Z0-9._\- ]", "_", basename).strip()
    return safe[:200]


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------

class IngestionService:
    def __init__(
        self,
        store: AttemptStore,
        storage: ArtifactStorage,
        publisher: JobPublisher,
        max_upload_bytes: int = 50 * 1024 * 1024,
        quota: Optional[UploadQuota] = None,
    ) -> None:
        self._store = store
        self._storage = storage
        self._publisher = publisher
        self._max_upload_bytes = max_upload_bytes
        self.quota = quota

    async def submit_upload(
        self,
        vendor_key: str,
        data: bytes,
        document_name: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> ProcessingAttempt:
        """
        Reserve the original attempt, store the artifact and publish OCR.

        Raises:
            ValidationError:         bad vendor key or file.
            QuotaExceededError:      daily or per-IP hourly upload limit reached.
            PreconditionFailedError: the vendor key already has a lineage.
            ExternalServiceError:    the S3 upload failed.
        """
        key = parse_vendor_key(vendor_key)
        validate_pdf(data, self._max_upload_bytes)
        if self.quota is not None:
            await self.quota.check(client_ip)

        # The INSERT claims the vendor before anything touches S3: the loser
        # of a concurrent upload fails here and never overwrites the object.
        storage_path = self._storage.upload_key(key.value, key.file_name)
        attempt_id = await self._store.create(AttemptMetadata(
            document_name=_sanitize_document_name(document_name or "") or key.file_name,
            storage_path=storage_path,
            size_bytes=len(data),
            content_type=PDF_CONTENT_TYPE,
            vendor_key=key.value,
        ))

        try:
            await self._storage.put_upload(key.value, key.file_name, data, PDF_CONTENT_TYPE)
        except ExternalServiceError:
            await self._store.discard(attempt_id)
            raise

        if self.quota is not None:
            await self.quota.record(client_ip)

        try:
            await self._publisher.enqueue_ocr(attempt_id)
        except ExternalServiceError as exc:
            logger.error("OCR enqueue failed | attempt=%s error=%s", attempt_id, exc)

        logger.info("Upload accepted | attempt=%s vendor=%s key=%s", attempt_id, key.value, storage_path)
        return await self._store.get(attempt_id)


# ---------------------------------------------------------------------------
# OCR stage
# ---------------------------------------------------------------------------

class OcrStage:
    def __init__(
        self,
        store: AttemptStore,
        storage: ArtifactStorage,
        ocr: TextractOcrClient,
        publisher: JobPublisher,
    ) -> None:
        self._store = store
        self._storage = storage
        self._ocr = ocr
        self._publisher = publisher

    async def run(self, attempt_id: UUID) -> bool:
        """Run OCR for a pending attempt. Returns True when a result was recorded."""
        attempt = await self._store.get(attempt_id)
        if attempt.status != AttemptStatus.PENDING.value:
            logger.info("OCR skipped | attempt=%s status=%s", attempt_id, attempt.status)
            return False

        try:
            document = await self._storage.get_object(attempt.storage_path)
            await self._storage.put_audit(AuditKind.RAW, attempt.id, attempt.attempt_index, document)
            payload = await self._ocr.analyze(
                document, s3_bucket=self._storage.bucket, s3_key=attempt.storage_path,
            )
            await self._storage.put_audit(
                AuditKind.OCR, attempt.id, attempt.attempt_index,
                payload.model_dump_json(indent=2),
            )
        except ExternalServiceError as exc:
            await self._record_failure(attempt_id, exc.message)
            return False

        await self.complete(attempt_id, payload)
        return True

    async def complete(self, attempt_id: UUID, payload: OcrPayload) -> None:
        """Record the OCR result and hand the attempt to the mapping queue."""
        await self._store.record_ocr_result(attempt_id, payload)
        try:
            await self._publisher.enqueue_mapping(attempt_id)
        except ExternalServiceError as exc:
            logger.error("Mapping enqueue failed | attempt=%s error=%s", attempt_id, exc)

    async def _record_failure(self, attempt_id: UUID, reason: str) -> None:
        try:
            await self._store.record_failure(attempt_id, reason)
        except PreconditionFailedError:
            current = await self._store.get(attempt_id)
            if not AttemptStatus(current.status).is_terminal:
                raise
            logger.warning("OCR failure discarded, attempt already %s | attempt=%s", current.status, attempt_id)
