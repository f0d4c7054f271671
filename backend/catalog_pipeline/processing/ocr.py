"""
OCR Adapter  —  Table Extraction via AWS Textract
═════════════════════════════════════════════════

Runs Textract table analysis (TABLES feature) and converts the block graph
into an OcrPayload:

    PAGE blocks   → page_count
    LINE blocks   → text (newline-joined, reading order)
    TABLE blocks  → one OcrTable each
      └─ CELL     → TableCell(row, column, kind, content)
           RowIndex / ColumnIndex are 1-based in Textract → stored 0-based
           EntityTypes containing COLUMN_HEADER           → kind = header
           content = child WORD texts joined by spaces
    WORD confidence (0–100) → averaged and normalized to 0–1

Two Textract APIs:
    AnalyzeDocument           single-page PDF up to 10 MB, sent as bytes
    StartDocumentAnalysis     multi-page catalogs, read from the uploaded S3
      + GetDocumentAnalysis   object; polled, then paginated via NextToken
    The merged block list of either path goes through parse_textract_blocks.

The boto3 client is synchronous, so each call runs in the default thread
executor under asyncio.wait_for. Timeout and every client error surface as
ExternalServiceError("ocr", ...); the OCR stage records that on the attempt.

Cost model:
    Textract table analysis is billed per page:
        cost_usd = page_count × ocr_cost_per_page_usd
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from decimal import Decimal
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from catalog_pipeline.core.config import Settings
from catalog_pipeline.core.errors import ExternalServiceError
from catalog_pipeline.schemas.extraction import CellKind, OcrPayload, OcrTable, TableCell

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Block parsing (pure)
# ---------------------------------------------------------------------------

def _child_ids(block: dict) -> list[str]:
    ids: list[str] = []
    for rel in block.get("Relationships", []) or []:
        if rel.get("Type") == "CHILD":
            ids.extend(rel.get("Ids", []))
    return ids


def _cell_text(cell: dict, by_id: dict[str, dict]) -> str:
    words = []
    for child_id in _child_ids(cell):
        child = by_id.get(child_id)
        if child and child.get("BlockType") == "WORD":
            words.append(child.get("Text", ""))
    return " ".join(w for w in words if w)


def parse_textract_blocks(
    blocks: list[dict[str, Any]],
    cost_per_page_usd: float = 0.0,
) -> OcrPayload:
    """Convert a Textract AnalyzeDocument block list into an OcrPayload."""
    by_id = {b["Id"]: b for b in blocks if "Id" in b}

    page_count = sum(1 for b in blocks if b.get("BlockType") == "PAGE")
    lines = [b.get("Text", "") for b in blocks if b.get("BlockType") == "LINE"]
    confidences = [
        float(b["Confidence"]) / 100.0
        for b in blocks
        if b.get("BlockType") == "WORD" and "Confidence" in b
    ]

    tables: list[OcrTable] = []
    for block in blocks:
        if block.get("BlockType") != "TABLE":
            continue
        cells: list[TableCell] = []
        for child_id in _child_ids(block):
            cell = by_id.get(child_id)
            if not cell or cell.get("BlockType") != "CELL":
                continue
            is_header = "COLUMN_HEADER" in (cell.get("EntityTypes") or [])
            cells.append(TableCell(
                row=max(int(cell.get("RowIndex", 1)) - 1, 0),
                column=max(int(cell.get("ColumnIndex", 1)) - 1, 0),
                kind=CellKind.HEADER if is_header else CellKind.CONTENT,
                content=_cell_text(cell, by_id),
            ))
        tables.append(OcrTable(cells=cells))

    confidence = round(sum(confidences) / len(confidences), 4) if confidences else None
    cost = Decimal(str(round(page_count * cost_per_page_usd, 6)))

    return OcrPayload(
        text="\n".join(lines),
        tables=tables,
        page_count=page_count,
        cost_usd=cost,
        confidence=confidence,
    )


# ---------------------------------------------------------------------------
# Sync vs async Textract
# ---------------------------------------------------------------------------

# AnalyzeDocument only accepts single-page PDFs up to 10 MB; anything else
# goes through StartDocumentAnalysis over the stored S3 object.
_SYNC_PAGE_THRESHOLD = 1
_SYNC_MAX_BYTES = 10 * 1024 * 1024
_MAX_POLL_DELAY_SECONDS = 30.0

_PAGE_OBJECT_RE = re.compile(rb"/Type\s*/Page(?![a-zA-Z])")


def estimate_page_count(document: bytes) -> int:
    """
    Count /Type /Page objects in the raw PDF. 0 means unknown: page objects
    packed into compressed object streams are not visible to a byte scan.
    """
    return len(_PAGE_OBJECT_RE.findall(document))


def needs_async_job(document: bytes) -> bool:
    if len(document) > _SYNC_MAX_BYTES:
        return True
    pages = estimate_page_count(document)
    return pages == 0 or pages > _SYNC_PAGE_THRESHOLD


# ---------------------------------------------------------------------------
# Textract client
# ---------------------------------------------------------------------------

class TextractOcrClient:
    """
    IAM permissions required on the worker task role:
      textract:AnalyzeDocument
      textract:StartDocumentAnalysis, textract:GetDocumentAnalysis
      s3:GetObject on the uploads prefix (Textract reads the object itself)
    """

    def __init__(
        self,
        region: str = "us-east-1",
        timeout_seconds: float = 120.0,
        cost_per_page_usd: float = 0.015,
        job_timeout_seconds: float = 240.0,
        poll_interval_seconds: float = 2.0,
    ) -> None:
        self._region = region
        self._timeout = timeout_seconds
        self._cost_per_page = cost_per_page_usd
        self._job_timeout = job_timeout_seconds
        self._poll_interval = poll_interval_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "TextractOcrClient":
        return cls(
            region=settings.textract_region,
            timeout_seconds=settings.ocr_timeout_seconds,
            cost_per_page_usd=settings.ocr_cost_per_page_usd,
            job_timeout_seconds=settings.ocr_job_timeout_seconds,
            poll_interval_seconds=settings.ocr_poll_interval_seconds,
        )

    async def analyze(
        self,
        document: bytes,
        s3_bucket: str | None = None,
        s3_key: str | None = None,
    ) -> OcrPayload:
        """
        Run table OCR over a document.

        Single-page documents under the sync limit are sent as bytes. When
        the document is stored in S3 and is (or may be) multi-page, an async
        Textract job reads it from there and every result page is merged.

        Raises:
            ExternalServiceError: Textract failure, failed job or timeout.
        """
        if s3_bucket and s3_key and needs_async_job(document):
            call, args, timeout = self._analyze_job_sync, (s3_bucket, s3_key), self._job_timeout
        else:
            call, args, timeout = self._analyze_sync, (document,), self._timeout

        loop = asyncio.get_running_loop()
        t0 = time.monotonic()
        try:
            blocks = await asyncio.wait_for(
                loop.run_in_executor(None, call, *args),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.error("Textract timed out after %.0fs", timeout)
            raise ExternalServiceError("ocr", f"timed out after {timeout:.0f}s") from exc
        except (ClientError, BotoCoreError) as exc:
            logger.error("Textract failed: %s", exc)
            raise ExternalServiceError("ocr", str(exc)) from exc

        payload = parse_textract_blocks(blocks, self._cost_per_page)
        logger.info(
            "Textract | pages=%d tables=%d chars=%d confidence=%s elapsed_ms=%.0f",
            payload.page_count, payload.table_count, len(payload.text),
            payload.confidence, (time.monotonic() - t0) * 1000,
        )
        return payload

    def _client(self):
        import boto3

        return boto3.client("textract", region_name=self._region)

    def _analyze_sync(self, document: bytes) -> list[dict]:
        """Blocking AnalyzeDocument call — runs in thread executor."""
        response = self._client().analyze_document(
            Document={"Bytes": document},
            FeatureTypes=["TABLES"],
        )
        return response.get("Blocks", [])

    def _analyze_job_sync(self, s3_bucket: str, s3_key: str) -> list[dict]:
        """
        StartDocumentAnalysis + GetDocumentAnalysis polling — runs in thread
        executor. Polls with exponential back-off (2s → 4s → … max 30s), then
        follows NextToken until every result page has been read.
        """
        client = self._client()
        job = client.start_document_analysis(
            DocumentLocation={"S3Object": {"Bucket": s3_bucket, "Name": s3_key}},
            FeatureTypes=["TABLES"],
        )
        job_id = job["JobId"]
        logger.info("Textract job started | job=%s key=s3://%s/%s", job_id, s3_bucket, s3_key)

        delay = self._poll_interval
        deadline = time.monotonic() + self._job_timeout
        while True:
            result = client.get_document_analysis(JobId=job_id)
            status = result["JobStatus"]
            if status in ("SUCCEEDED", "PARTIAL_SUCCESS"):
                break
            if status == "FAILED":
                raise ExternalServiceError(
                    "ocr", f"job {job_id} failed: {result.get('StatusMessage', 'unknown error')}"
                )
            if time.monotonic() >= deadline:
                raise ExternalServiceError("ocr", f"job {job_id} timed out after {self._job_timeout:.0f}s")
            time.sleep(min(delay, _MAX_POLL_DELAY_SECONDS))
            delay *= 2

        if status == "PARTIAL_SUCCESS":
            logger.warning(
                "Textract job partially succeeded | job=%s message=%s",
                job_id, result.get("StatusMessage"),
            )

        blocks = list(result.get("Blocks", []))
        next_token = result.get("NextToken")
        while next_token:
            result = client.get_document_analysis(JobId=job_id, NextToken=next_token)
            blocks.extend(result.get("Blocks", []))
            next_token = result.get("NextToken")

        logger.info("Textract job finished | job=%s blocks=%d", job_id, len(blocks))
        return blocks
