"""
Mio Backend — Main API Router

Aggregates all sub-routers under a single prefix so that ``app.main``
can mount the entire API surface with one ``include_router`` call.
"""

from fastapi import APIRouter

from app.api import conversations, favorites, internal, matching

router = APIRouter()

router.include_router(matching.router, prefix="/match", tags=["Matching"])
router.include_router(favorites.router, prefix="/favorites", tags=["Favorites"])
router.include_router(conversations.router, prefix="/conversations", tags=["Conversations"])
router.include_router(internal.router, prefix="/internal", tags=["Internal"])
