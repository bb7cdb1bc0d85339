"""
Mio Backend — Matching API

Match search and cooldown status for the calling user.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends

from app.api.deps import get_caller_id, get_matching_service
from app.schemas.match import CooldownStatus, SearchRequest, SearchResponse
from app.services.matching_service import MatchingService

logger = structlog.get_logger("mio.api.matching")

router = APIRouter()


# ──────────────────────────────────────────────────────────────────────────────
# POST /search — Run a match search
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/search",
    response_model=SearchResponse,
    summary="Search for new matches",
)
async def search_matches(
    body: SearchRequest,
    caller_id: str = Depends(get_caller_id),
    service: MatchingService = Depends(get_matching_service),
) -> SearchResponse:
    """Find users sharing enough favorite items with the caller.

    Rejected with **429** and a ``Retry-After`` header while the caller's
    search cooldown is active.
    """
    logger.info("search_requested", user_id=caller_id, favorites=len(body.favorite_item_ids))
    return await service.search(caller_id, body.favorite_item_ids)


# ──────────────────────────────────────────────────────────────────────────────
# GET /cooldown — Current search cooldown
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/cooldown",
    response_model=CooldownStatus,
    summary="Get the caller's search cooldown",
)
async def get_cooldown(
    caller_id: str = Depends(get_caller_id),
    service: MatchingService = Depends(get_matching_service),
) -> CooldownStatus:
    return await service.get_cooldown_status(caller_id)
