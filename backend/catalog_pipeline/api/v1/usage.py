"""
Upload Usage API Router
/api/v1/usage

  GET    /                        upload-quota limits and counters
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from catalog_pipeline.dependencies import get_pipeline
from catalog_pipeline.schemas.attempts import ErrorResponse, UsageStatsResponse
from catalog_pipeline.services.pipeline import CatalogPipeline

router = APIRouter(
    prefix="/usage",
    tags=["Usage"],
)


@router.get(
    "",
    response_model=UsageStatsResponse,
    summary="Upload quota usage",
    responses={502: {"model": ErrorResponse, "description": "Quota store unavailable"}},
)
async def get_usage(
    pipeline: CatalogPipeline = Depends(get_pipeline),
) -> UsageStatsResponse:
    stats = await pipeline.usage_stats()
    return UsageStatsResponse(
        daily_limit=stats.daily_limit,
        ip_hourly_limit=stats.ip_hourly_limit,
        today_uploads=stats.today_uploads,
        total_daily_records=stats.total_daily_records,
        total_ip_records=stats.total_ip_records,
        oldest_record=stats.oldest_record,
    )
