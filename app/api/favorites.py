"""
Mio Backend — Favorites API
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from app.api.deps import get_caller_id, get_favorites_service
from app.schemas.favorites import FavoritesResponse
from app.services.favorites_service import FavoritesService

router = APIRouter()


@router.get("", response_model=FavoritesResponse, summary="List the caller's favorites")
async def list_favorites(
    caller_id: str = Depends(get_caller_id),
    service: FavoritesService = Depends(get_favorites_service),
) -> FavoritesResponse:
    return await service.list_favorites(caller_id)


@router.put("/{item_id}", response_model=FavoritesResponse, summary="Add a favorite item")
async def add_favorite(
    item_id: str,
    caller_id: str = Depends(get_caller_id),
    service: FavoritesService = Depends(get_favorites_service),
) -> FavoritesResponse:
    return await service.add(caller_id, item_id)


@router.delete("/{item_id}", response_model=FavoritesResponse, summary="Remove a favorite item")
async def remove_favorite(
    item_id: str,
    caller_id: str = Depends(get_caller_id),
    service: FavoritesService = Depends(get_favorites_service),
) -> FavoritesResponse:
    """Removals are rate limited; see ``remaining_removals`` in the response."""
    return await service.remove(caller_id, item_id)
