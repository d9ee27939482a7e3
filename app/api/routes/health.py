from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from app.config import settings
from app.services.scan.pipeline import get_scan_repository
from app.services.scan.repositories import ScanRepository

logger = logging.getLogger(__name__)
router = APIRouter()


def _status(state: str, **extra: Any) -> dict[str, Any]:
    return {
        "status": state,
        "version": settings.app_version,
        "environment": settings.environment,
        **extra,
    }


@router.get("")
async def health_check():
    """Liveness: the process is up and serving requests."""
    return _status("healthy")


@router.get("/ready")
async def readiness_check(repository: ScanRepository = Depends(get_scan_repository)):
    """Readiness: the scan repository answers a trivial query."""
    if not await asyncio.to_thread(repository.ping):
        logger.warning("health.repository_unavailable", extra={"backend": type(repository).__name__})
        raise HTTPException(status_code=503, detail="Scan repository is not available")
    return _status("ready", repository=type(repository).__name__)
