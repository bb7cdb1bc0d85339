"""
Mio Backend — Shared API dependencies

Caller identity, the scheduler secret and service construction.  Routers
depend on these through ``Depends`` so tests can override any of them.
"""

from __future__ import annotations

import secrets

from fastapi import Depends, Request

from app.config import get_settings
from app.errors import InternalError, PermissionDeniedError, UnauthenticatedError
from app.redis_client import get_redis
from app.services.archive_lease import ArchiveLease
from app.services.archive_service import ArchiveService
from app.services.favorites_service import FavoritesService
from app.services.matching_service import MatchingService
from app.services.notification_service import NotificationService
from app.store import DocumentStore, get_store
from app.utils.storage import ArchiveStorage

SCHEDULER_TOKEN_HEADER = "X-Scheduler-Token"


def get_caller_id(request: Request) -> str:
    """Caller identity as established by the platform's auth layer."""
    caller = (request.headers.get(get_settings().CALLER_ID_HEADER) or "").strip()
    if not caller:
        raise UnauthenticatedError("The function must be called while authenticated.")
    return caller


def require_scheduler(request: Request) -> None:
    expected = get_settings().SCHEDULER_TOKEN
    supplied = request.headers.get(SCHEDULER_TOKEN_HEADER) or ""
    if not expected or not secrets.compare_digest(supplied, expected):
        raise PermissionDeniedError("Scheduler token missing or invalid.")


def get_document_store() -> DocumentStore:
    return get_store()


def get_matching_service(
    store: DocumentStore = Depends(get_document_store),
) -> MatchingService:
    return MatchingService(store, notifier=NotificationService(store))


def get_favorites_service(
    store: DocumentStore = Depends(get_document_store),
) -> FavoritesService:
    return FavoritesService(store)


def get_archive_service(
    store: DocumentStore = Depends(get_document_store),
) -> ArchiveService:
    redis = get_redis()
    if redis is None:
        raise InternalError("Archive lease backend is not available.")
    lease = ArchiveLease(redis, get_settings().ARCHIVE_LEASE_SECONDS)
    return ArchiveService(store, ArchiveStorage(), lease)
