"""API endpoints for submitting and processing idea scans."""

from __future__ import annotations

import asyncio
import logging
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, status
from pydantic import BaseModel, Field

from app.models.scan import Scan, ScanReport, ScanResult
from app.services.scan.errors import InvalidRequestError, ScanNotFoundError, ScanPipelineError
from app.services.scan.pipeline import ScanPipeline, get_scan_pipeline

router = APIRouter()
logger = logging.getLogger(__name__)

_SCAN_RESPONSE_EXCLUDE = {"text_embedding"}


class ScanCreateRequest(BaseModel):
    """Request payload for a new submission."""

    text_input: str = Field(..., description="Free-text description of the idea.")
    image_url: str | None = None
    user_id: UUID | None = None


class ProcessScanRequest(BaseModel):
    """Trigger payload for one pipeline run."""

    scan_id: str | None = None


@router.post(
    "/scans",
    response_model=Scan,
    response_model_exclude=_SCAN_RESPONSE_EXCLUDE,
    status_code=status.HTTP_202_ACCEPTED,
)
async def create_scan(
    payload: ScanCreateRequest,
    background_tasks: BackgroundTasks,
    pipeline: ScanPipeline = Depends(get_scan_pipeline),
) -> Scan:
    """Create a scan in ``processing`` state and schedule the pipeline for it."""
    text_input = payload.text_input.strip()
    if not text_input:
        raise InvalidRequestError("text_input must be non-empty.")
    scan = Scan(text_input=text_input, image_url=payload.image_url, user_id=payload.user_id)
    created = await asyncio.to_thread(pipeline.repository.create_scan, scan)
    background_tasks.add_task(_process_in_background, pipeline, created.id)
    logger.info("scan.api.created", extra={"scan_id": str(created.id)})
    return created


@router.post("/scans/process", response_model=ScanReport)
async def process_scan(
    payload: ProcessScanRequest,
    pipeline: ScanPipeline = Depends(get_scan_pipeline),
) -> ScanReport:
    """Run the pipeline for an existing scan and report the persisted result count."""
    return await pipeline.process(payload.scan_id)


@router.get(
    "/scans/{scan_id}",
    response_model=Scan,
    response_model_exclude=_SCAN_RESPONSE_EXCLUDE,
)
async def get_scan(scan_id: UUID, pipeline: ScanPipeline = Depends(get_scan_pipeline)) -> Scan:
    """Fetch a scan's lifecycle state."""
    scan = await asyncio.to_thread(pipeline.repository.get_scan, scan_id)
    if scan is None:
        raise ScanNotFoundError(f"Scan {scan_id} not found.")
    return scan


@router.get("/scans/{scan_id}/results", response_model=list[ScanResult])
async def list_scan_results(
    scan_id: UUID, pipeline: ScanPipeline = Depends(get_scan_pipeline)
) -> list[ScanResult]:
    """Persisted results for a scan in ranked order."""
    scan = await asyncio.to_thread(pipeline.repository.get_scan, scan_id)
    if scan is None:
        raise ScanNotFoundError(f"Scan {scan_id} not found.")
    return await asyncio.to_thread(pipeline.repository.list_results, scan_id)


async def _process_in_background(pipeline: ScanPipeline, scan_id: UUID) -> None:
    try:
        await pipeline.process(scan_id)
    except ScanPipelineError as exc:
        logger.error(
            "scan.api.background_failed",
            extra={"scan_id": str(scan_id), "code": exc.code, "error": str(exc)},
        )
    except Exception:
        logger.exception(
            "scan.api.background_failed",
            extra={"scan_id": str(scan_id), "code": "500_INTERNAL"},
        )


def map_error_code(code: str) -> int:
    if code == "422_INVALID_REQUEST":
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if code == "404_SCAN_NOT_FOUND":
        return status.HTTP_404_NOT_FOUND
    if code in {"409_SCAN_ALREADY_PROCESSED", "409_RESULTS_ALREADY_PERSISTED"}:
        return status.HTTP_409_CONFLICT
    if code == "502_EXTRACTION_UNAVAILABLE":
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR
