"""
Processing Attempts API Router
/api/v1/attempts

  POST   /upload                  multipart upload → original attempt (202)
  GET    /{attempt_id}            attempt detail, products included
  GET    /{attempt_id}/lineage    version history of the attempt's lineage
  POST   /{attempt_id}/reprocess  new attempt in the same lineage (202)
  POST   /{attempt_id}/promote    exactly-once export into the catalog
  POST   /{attempt_id}/reject     decline export of this attempt
  POST   /{attempt_id}/review     record a manual review
  DELETE /{attempt_id}            delete one non-root attempt
  DELETE /{attempt_id}/lineage    purge the whole lineage

Domain errors propagate to the exception handlers in catalog_pipeline.main,
which turn them into ErrorResponse bodies; routes never build error bodies.
"""

from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile, status

from catalog_pipeline.dependencies import get_pipeline
from catalog_pipeline.schemas.attempts import (
    AttemptDetail,
    AttemptSummary,
    DeleteResponse,
    ErrorResponse,
    LineageResponse,
    PromoteResponse,
    RejectRequest,
    ReprocessResponse,
    ReviewRequest,
)
from catalog_pipeline.services.pipeline import CatalogPipeline

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/attempts",
    tags=["Processing Attempts"],
)

_ERRORS = {
    400: {"model": ErrorResponse, "description": "Invalid input"},
    404: {"model": ErrorResponse, "description": "Attempt not found"},
    409: {"model": ErrorResponse, "description": "Attempt is not in a state that allows this operation"},
}


def _client_ip(request: Request) -> Optional[str]:
    """Real client IP from X-Forwarded-For, falling back to the direct connection."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        # comma-separated chain; the first entry is the client
        ip = forwarded.split(",")[0].strip()
        return ip or None
    return request.client.host if request.client else None


@router.post(
    "/upload",
    response_model=AttemptSummary,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a vendor catalog PDF",
    responses={
        400: _ERRORS[400],
        409: {"model": ErrorResponse, "description": "Vendor key already has a lineage"},
        429: {"model": ErrorResponse, "description": "Daily or hourly upload limit reached"},
        502: {"model": ErrorResponse, "description": "Object storage unavailable"},
    },
)
async def upload_catalog(
    request: Request,
    file: UploadFile = File(..., description="Catalog PDF"),
    vendor_key: str = Form(..., description="VENDOR_NAME_MM_YY, e.g. BETTER_LIVING_11_25"),
    document_name: Optional[str] = Form(None),
    pipeline: CatalogPipeline = Depends(get_pipeline),
) -> AttemptSummary:
    data = await file.read()
    attempt = await pipeline.submit_upload(
        vendor_key, data,
        document_name=document_name or file.filename,
        client_ip=_client_ip(request),
    )
    return AttemptSummary.model_validate(attempt)


@router.get(
    "/{attempt_id}",
    response_model=AttemptDetail,
    summary="Get one processing attempt",
    responses={404: _ERRORS[404]},
)
async def get_attempt(
    attempt_id: UUID,
    pipeline: CatalogPipeline = Depends(get_pipeline),
) -> AttemptDetail:
    return AttemptDetail.model_validate(await pipeline.get_attempt(attempt_id))


@router.get(
    "/{attempt_id}/lineage",
    response_model=LineageResponse,
    summary="Version history of the attempt's lineage",
    responses={404: _ERRORS[404]},
)
async def get_lineage(
    attempt_id: UUID,
    pipeline: CatalogPipeline = Depends(get_pipeline),
) -> LineageResponse:
    attempts = await pipeline.list_lineage(attempt_id)
    return LineageResponse(
        root_id=attempts[0].root_id,
        attempts=[AttemptSummary.model_validate(a) for a in attempts],
    )


@router.post(
    "/{attempt_id}/reprocess",
    response_model=ReprocessResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Re-run column mapping as a new attempt",
    responses={404: _ERRORS[404], 409: _ERRORS[409]},
)
async def reprocess_attempt(
    attempt_id: UUID,
    pipeline: CatalogPipeline = Depends(get_pipeline),
) -> ReprocessResponse:
    new_attempt = await pipeline.reprocess(attempt_id)
    return ReprocessResponse(
        attempt_id=new_attempt.id,
        root_id=new_attempt.root_id,
        parent_id=attempt_id,
        attempt_index=new_attempt.attempt_index,
    )


@router.post(
    "/{attempt_id}/promote",
    response_model=PromoteResponse,
    summary="Promote the attempt's products into the catalog",
    responses={
        404: _ERRORS[404],
        409: _ERRORS[409],
        422: {"model": ErrorResponse, "description": "Attempt has no valid products"},
    },
)
async def promote_attempt(
    attempt_id: UUID,
    pipeline: CatalogPipeline = Depends(get_pipeline),
) -> PromoteResponse:
    exported = await pipeline.promote(attempt_id)
    return PromoteResponse(attempt_id=attempt_id, exported_count=exported)


@router.post(
    "/{attempt_id}/reject",
    response_model=AttemptSummary,
    summary="Reject the attempt's products",
    responses=_ERRORS,
)
async def reject_attempt(
    attempt_id: UUID,
    body: RejectRequest,
    pipeline: CatalogPipeline = Depends(get_pipeline),
) -> AttemptSummary:
    attempt = await pipeline.reject(attempt_id, body.reviewer, body.reason)
    return AttemptSummary.model_validate(attempt)


@router.post(
    "/{attempt_id}/review",
    response_model=AttemptSummary,
    summary="Mark the attempt as manually reviewed",
    responses=_ERRORS,
)
async def review_attempt(
    attempt_id: UUID,
    body: ReviewRequest,
    pipeline: CatalogPipeline = Depends(get_pipeline),
) -> AttemptSummary:
    attempt = await pipeline.mark_reviewed(attempt_id, body.reviewer)
    return AttemptSummary.model_validate(attempt)


@router.delete(
    "/{attempt_id}",
    response_model=DeleteResponse,
    summary="Delete one non-root attempt",
    responses={404: _ERRORS[404], 409: _ERRORS[409]},
)
async def delete_attempt(
    attempt_id: UUID,
    pipeline: CatalogPipeline = Depends(get_pipeline),
) -> DeleteResponse:
    return DeleteResponse(deleted=await pipeline.delete_attempt(attempt_id))


@router.delete(
    "/{attempt_id}/lineage",
    response_model=DeleteResponse,
    summary="Purge every attempt of the lineage",
    responses={404: _ERRORS[404], 409: _ERRORS[409]},
)
async def purge_lineage(
    attempt_id: UUID,
    pipeline: CatalogPipeline = Depends(get_pipeline),
) -> DeleteResponse:
    return DeleteResponse(deleted=await pipeline.purge_lineage(attempt_id))
