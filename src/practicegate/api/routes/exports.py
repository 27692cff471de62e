"""Compliance export API routes."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from practicegate.api.dependencies.auth import CurrentUserId
from practicegate.api.dependencies.services import get_export_pipeline
from practicegate.exports.pipeline import ExportPipeline
from practicegate.exports.schemas import (
    ExportDownloadResponse,
    ExportJobResponse,
    ExportRequest,
    ExportSummaryResponse,
)

router = APIRouter()

Pipeline = Annotated[ExportPipeline, Depends(get_export_pipeline)]


@router.post("", response_model=ExportJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def request_export(
    request: ExportRequest,
    user_id: CurrentUserId,
    pipeline: Pipeline,
) -> ExportJobResponse:
    """Queue an export; the artifact is produced asynchronously."""
    job = await pipeline.request_export(
        user_id,
        request.export_type,
        request.format,
        filters=request.filters,
        custom_fields=request.custom_fields,
        subject_user_id=request.subject_user_id,
    )
    return ExportJobResponse.model_validate(job)


@router.get("", response_model=list[ExportJobResponse])
async def list_exports(
    user_id: CurrentUserId,
    pipeline: Pipeline,
    limit: Annotated[int, Query()] = 50,
) -> list[ExportJobResponse]:
    jobs = await pipeline.get_exports(user_id, limit=limit)
    return [ExportJobResponse.model_validate(job) for job in jobs]


@router.get("/summary", response_model=ExportSummaryResponse)
async def export_summary(user_id: CurrentUserId, pipeline: Pipeline) -> ExportSummaryResponse:
    """Counts of the caller's exports by status, format and type."""
    return ExportSummaryResponse(**await pipeline.get_export_summary(user_id))


@router.get("/{export_id}", response_model=ExportJobResponse)
async def get_export(
    export_id: UUID,
    user_id: CurrentUserId,
    pipeline: Pipeline,
) -> ExportJobResponse:
    return ExportJobResponse.model_validate(await pipeline.get_export(user_id, export_id))


@router.post("/{export_id}/download", response_model=ExportDownloadResponse)
async def download_export(
    export_id: UUID,
    user_id: CurrentUserId,
    pipeline: Pipeline,
) -> ExportDownloadResponse:
    """Resolve the artifact location of a completed export and count the download."""
    job = await pipeline.record_download(user_id, export_id)
    return ExportDownloadResponse.model_validate(job)
