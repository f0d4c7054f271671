"""
Processing Attempts — Pydantic Request/Response Schemas

Covers:
  - AttemptMetadata: what an upload hands to the store at creation
  - POST /api/v1/attempts/upload           → 202 AttemptSummary
  - GET  /api/v1/attempts/{id}             → AttemptDetail
  - GET  /api/v1/attempts/{id}/lineage     → LineageResponse
  - POST /api/v1/attempts/{id}/reprocess   → 202 ReprocessResponse
  - POST /api/v1/attempts/{id}/promote     → PromoteResponse
  - POST /api/v1/attempts/{id}/reject      → AttemptSummary
  - POST /api/v1/attempts/{id}/review      → AttemptSummary
  - DELETE endpoints                       → DeleteResponse
  - Structured error bodies shared by every endpoint

Design decisions:
  - attempt ids are always server-generated (UUID4); never client-supplied.
  - status / export_status are exposed as their stored string values.
  - All timestamps are timezone-aware UTC.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from catalog_pipeline.models.attempts import AttemptStatus, ExportStatus
from catalog_pipeline.schemas.extraction import Product


# ---------------------------------------------------------------------------
# Store input
# ---------------------------------------------------------------------------

class AttemptMetadata(BaseModel):
    """Source metadata recorded on an original attempt."""
    document_name: str = Field(..., min_length=1)
    storage_path:  str = Field(..., min_length=1)
    size_bytes:    int = Field(..., ge=0)
    content_type:  str
    vendor_key:    str = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class RejectRequest(BaseModel):
    reviewer: str = Field(..., min_length=1)
    reason:   str = Field(..., min_length=1)


class ReviewRequest(BaseModel):
    reviewer: str = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class AttemptSummary(BaseModel):
    """Compact view — one row of a version history."""
    model_config = ConfigDict(from_attributes=True)

    id:                     UUID
    root_id:                UUID
    parent_id:              Optional[UUID] = None
    attempt_index:          int
    document_name:          str
    vendor_key:             str
    status:                 AttemptStatus
    export_status:          ExportStatus
    product_count:          Optional[int] = None
    requires_manual_review: bool = False
    error_message:          Optional[str] = None
    uploaded_at:            Optional[datetime] = None
    mapping_completed_at:   Optional[datetime] = None


class AttemptDetail(AttemptSummary):
    """Full view of one attempt, products included."""
    storage_path:      str
    size_bytes:        int
    content_type:      str
    mapping_started_at: Optional[datetime] = None
    duration_ms:       Optional[int] = None
    mapping_deliveries: int = 0

    ocr_page_count:    Optional[int] = None
    ocr_table_count:   Optional[int] = None
    ocr_cost_usd:      Optional[Decimal] = None
    ocr_confidence:    Optional[Decimal] = None

    products:          Optional[list[Product]] = None
    column_mapping:    Optional[dict] = None
    vendor_label:      Optional[str] = None
    ai_model:          Optional[str] = None
    prompt_tokens:     Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens:      Optional[int] = None
    mapping_cost_usd:  Optional[Decimal] = None

    review_reason:     Optional[str] = None
    reviewed_by:       Optional[str] = None
    reviewed_at:       Optional[datetime] = None

    exported_at:       Optional[datetime] = None
    exported_count:    Optional[int] = None


class LineageResponse(BaseModel):
    root_id:  UUID
    attempts: list[AttemptSummary]


class ReprocessResponse(BaseModel):
    attempt_id:    UUID
    root_id:       UUID
    parent_id:     UUID
    attempt_index: int
    status:        AttemptStatus = AttemptStatus.OCR_COMPLETE


class PromoteResponse(BaseModel):
    attempt_id:     UUID
    exported_count: int
    export_status:  ExportStatus = ExportStatus.CONFIRMED


class DeleteResponse(BaseModel):
    deleted: list[UUID]


class UsageStatsResponse(BaseModel):
    """Upload-quota counters; a limit of 0 means unlimited."""
    daily_limit:         int
    ip_hourly_limit:     int
    today_uploads:       int
    total_daily_records: int
    total_ip_records:    int
    oldest_record:       Optional[date] = None


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   Optional[str] = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: Optional[str]     = Field(None, description="Trace ID for log correlation")
