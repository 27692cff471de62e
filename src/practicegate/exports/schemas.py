"""Pydantic schemas for the export API."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from practicegate.exports.models import ExportFormat, ExportStatus, ExportType


class ExportRequest(BaseModel):
    """Schema for requesting an export.

    Type and format are validated by the pipeline so unknown values are
    reported with the accepted set.
    """

    export_type: str = Field(..., max_length=50)
    format: str = Field(..., max_length=50)
    filters: dict[str, Any] = Field(default_factory=dict)
    custom_fields: list[str] | None = Field(None, max_length=200)
    subject_user_id: UUID | None = None


class ExportJobResponse(BaseModel):
    """Schema for export job response."""

    id: UUID
    user_id: UUID
    subject_user_id: UUID
    export_type: ExportType
    format: ExportFormat
    status: ExportStatus
    requested_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    expires_at: datetime | None = None
    result_size: int | None = None
    error_reason: str | None = None
    download_count: int = 0

    model_config = {"from_attributes": True}


class ExportDownloadResponse(ExportJobResponse):
    result_location: str | None = None


class ExportSummaryResponse(BaseModel):
    total_exports: int
    by_status: dict[str, int]
    by_format: dict[str, int]
    by_type: dict[str, int]
    total_downloads: int
    success_rate: float
    average_size: int
