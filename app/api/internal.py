"""
Mio Backend — Internal scheduler hooks

Called by Cloud Scheduler with a shared secret; not exposed to clients.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends

from app.api.deps import get_archive_service, require_scheduler
from app.schemas.archive import SweepSummary
from app.services.archive_service import ArchiveService

logger = structlog.get_logger("mio.api.internal")

router = APIRouter(dependencies=[Depends(require_scheduler)])


@router.post("/archive/sweep", response_model=SweepSummary, summary="Run the archive sweep")
async def run_archive_sweep(
    service: ArchiveService = Depends(get_archive_service),
) -> SweepSummary:
    """Archive every conversation over the threshold.

    Per-conversation failures are reported in the summary, never raised.
    """
    logger.info("scheduled_archive_sweep_triggered")
    return await service.sweep()
