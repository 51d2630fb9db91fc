"""
Image2Sheet Backend — Extraction Schemas
=========================================

What:  Request/response models for /api/extractions.

Table payload:
    headers / rows are what the AI extracted; markdown and csv are
    server-side renderings; row_count / column_count are conveniences.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


class ExtractRequest(BaseModel):
    image: str = Field(
        min_length=1,
        description="Base64 image, optionally prefixed with data:image/<type>;base64,",
    )
    mime_type: str = Field(default="image/png", pattern=r"^image/[\w.+-]+$")


class TableQuality(BaseModel):
    total_rows: int
    total_columns: int
    total_cells: int
    empty_cells: int
    completeness: float = Field(description="Percentage of non-empty cells (2 decimals)")
    consistent_columns: bool
    quality: str = Field(description="high (>90%), medium (>70%) or low")


class TablePayload(BaseModel):
    headers: List[Any]
    rows: List[List[Any]]
    markdown: str
    csv: str
    row_count: int
    column_count: int


class ExtractionPayload(BaseModel):
    id: Union[int, str] = Field(description="History id, or guest-<ms> for guest extractions")
    table_data: TablePayload
    quality: TableQuality
    processing_time_ms: int
    created_at: datetime


class ExtractionUsage(BaseModel):
    current: int
    limit: Union[int, str]
    remaining: Union[int, str]
    hours_until_reset: Optional[int] = None


class ExtractResponse(BaseModel):
    success: bool = True
    message: str
    extraction: ExtractionPayload
    usage: ExtractionUsage
    guest_mode: bool = False
    upgrade_message: Optional[str] = None


class ExtractionRecord(BaseModel):
    """A stored history row."""
    id: int
    module_type: str
    extracted_data: Dict[str, Any]
    processing_time_ms: Optional[int] = None
    success: bool
    error_message: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class ExtractionDetail(ExtractionRecord):
    image_data: Optional[str] = Field(default=None, description="First 1000 base64 characters")


class Pagination(BaseModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class HistoryResponse(BaseModel):
    success: bool = True
    extractions: List[ExtractionRecord]
    pagination: Pagination


class ExtractionDetailResponse(BaseModel):
    success: bool = True
    extraction: ExtractionDetail


class DeleteAllResponse(BaseModel):
    success: bool = True
    message: str
    deleted_count: int


class ExtractionStats(BaseModel):
    total_extractions: int
    successful_extractions: int
    failed_extractions: int
    avg_processing_time_ms: int
    first_extraction: Optional[datetime] = None
    last_extraction: Optional[datetime] = None


class StatsResponse(BaseModel):
    success: bool = True
    stats: ExtractionStats
