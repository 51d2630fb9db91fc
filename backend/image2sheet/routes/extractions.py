"""
Image2Sheet Backend — Extraction Routes
========================================

What:  Table extraction (guest and signed-in) and extraction history.
How:   Thin handlers: resolve the caller (IP or bearer token), delegate to
       ExtractionService, shape the response.

Endpoints:
    POST   /api/extractions/extract-guest  → guest extraction (quota per IP)
    POST   /api/extractions/extract        → signed-in extraction (quota per account)
    GET    /api/extractions/history        → paginated history, newest first
    GET    /api/extractions/stats/summary  → aggregate stats
    GET    /api/extractions/{id}           → one history row
    DELETE /api/extractions/{id}           → delete one row
    DELETE /api/extractions                → delete the whole history

Quota denials are 429 responses with Retry-After and a details block
{reason, current, limit, remaining, hours_until_reset}.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from image2sheet.database import get_db_session
from image2sheet.middleware.auth import CurrentUser, get_current_user
from image2sheet.schemas.common import ErrorResponse, MessageResponse
from image2sheet.schemas.extraction import (
    DeleteAllResponse,
    ExtractionDetail,
    ExtractionDetailResponse,
    ExtractionPayload,
    ExtractionRecord,
    ExtractionStats,
    ExtractionUsage,
    ExtractRequest,
    ExtractResponse,
    HistoryResponse,
    Pagination,
    StatsResponse,
    TablePayload,
    TableQuality,
)
from image2sheet.services.extraction_service import (
    ExtractionResult,
    extraction_service,
    guest_upgrade_message,
)
from image2sheet.services.guest_quota import resolve_client_ip

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/extractions", tags=["Extractions"])

EXTRACT_ERRORS = {
    400: {"description": "Invalid image", "model": ErrorResponse},
    429: {"description": "Extraction quota exhausted", "model": ErrorResponse},
    502: {"description": "AI returned no usable table", "model": ErrorResponse},
    503: {"description": "Upstream unavailable", "model": ErrorResponse},
}


def extraction_payload(result: ExtractionResult) -> ExtractionPayload:
    return ExtractionPayload(
        id=result.id,
        table_data=TablePayload(
            headers=result.table["headers"],
            rows=result.table["rows"],
            markdown=result.markdown,
            csv=result.csv,
            row_count=len(result.table["rows"]),
            column_count=len(result.table["headers"]),
        ),
        quality=TableQuality(**result.quality),
        processing_time_ms=result.processing_time_ms,
        created_at=result.created_at,
    )


@router.post(
    "/extract-guest",
    response_model=ExtractResponse,
    responses=EXTRACT_ERRORS,
    summary="Extract a table without signing in",
    description="Guests get a small daily allowance per IP address.",
)
async def extract_guest(body: ExtractRequest, request: Request) -> ExtractResponse:
    ip = resolve_client_ip(request)
    result = await extraction_service.extract_for_guest(ip, body.image, body.mime_type)
    return ExtractResponse(
        message="Table extracted successfully (guest mode)",
        extraction=extraction_payload(result),
        usage=ExtractionUsage(**result.usage),
        guest_mode=True,
        upgrade_message=guest_upgrade_message(result.usage["remaining"]),
    )


@router.post(
    "/extract",
    response_model=ExtractResponse,
    responses=EXTRACT_ERRORS,
    summary="Extract a table and save it to history",
)
async def extract(
    body: ExtractRequest,
    current: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> ExtractResponse:
    result = await extraction_service.extract_for_user(db, current.id, body.image, body.mime_type)
    return ExtractResponse(
        message="Table extracted successfully",
        extraction=extraction_payload(result),
        usage=ExtractionUsage(**result.usage),
    )


@router.get(
    "/history",
    response_model=HistoryResponse,
    summary="Extraction history",
    description="Newest first. Free accounts only see the last 7 days.",
)
async def get_history(
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    module_type: Optional[str] = Query(default=None, max_length=100),
    current: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> HistoryResponse:
    items, total = await extraction_service.list_history(
        db, current.id, limit=limit, offset=offset, module_type=module_type
    )
    return HistoryResponse(
        extractions=[ExtractionRecord.model_validate(item) for item in items],
        pagination=Pagination(
            total=total,
            limit=limit,
            offset=offset,
            has_more=total > offset + limit,
        ),
    )


@router.get("/stats/summary", response_model=StatsResponse, summary="Extraction statistics")
async def get_stats(
    current: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> StatsResponse:
    stats = await extraction_service.get_stats(db, current.id)
    return StatsResponse(stats=ExtractionStats(**stats))


@router.get(
    "/{extraction_id}",
    response_model=ExtractionDetailResponse,
    responses={404: {"description": "Extraction not found", "model": ErrorResponse}},
    summary="Get one extraction",
)
async def get_extraction(
    extraction_id: int,
    current: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> ExtractionDetailResponse:
    extraction = await extraction_service.get_extraction(db, current.id, extraction_id)
    return ExtractionDetailResponse(extraction=ExtractionDetail.model_validate(extraction))


@router.delete(
    "/{extraction_id}",
    response_model=MessageResponse,
    responses={404: {"description": "Extraction not found", "model": ErrorResponse}},
    summary="Delete one extraction",
)
async def delete_extraction(
    extraction_id: int,
    current: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> MessageResponse:
    await extraction_service.delete_extraction(db, current.id, extraction_id)
    return MessageResponse(message="Extraction deleted")


@router.delete("", response_model=DeleteAllResponse, summary="Delete the whole history")
async def delete_history(
    current: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> DeleteAllResponse:
    deleted = await extraction_service.delete_all(db, current.id)
    return DeleteAllResponse(message="History deleted", deleted_count=deleted)
