"""
Mio Backend — Conversation archive API

Manual archival by a participant, plus reading archives back.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query

from app.api.deps import get_archive_service, get_caller_id
from app.schemas.archive import ArchivedMessages, ArchiveManifest, ArchiveResult
from app.services.archive_service import ArchiveService

logger = structlog.get_logger("mio.api.conversations")

router = APIRouter()


@router.post(
    "/{conversation_id}/archive",
    response_model=ArchiveResult,
    summary="Archive old messages of a conversation",
)
async def archive_conversation(
    conversation_id: str,
    caller_id: str = Depends(get_caller_id),
    service: ArchiveService = Depends(get_archive_service),
) -> ArchiveResult:
    """Move all but the most recent messages to cold storage.

    Returns ``success: false`` with a message when there is nothing to
    archive or another archival run holds the conversation.
    """
    logger.info("manual_archive_requested", conversation_id=conversation_id, user_id=caller_id)
    return await service.archive_conversation(conversation_id, caller_id=caller_id)


@router.get(
    "/{conversation_id}/archives",
    response_model=list[ArchiveManifest],
    summary="List archive manifests, newest first",
)
async def list_archives(
    conversation_id: str,
    older_than: Optional[datetime] = Query(default=None),
    caller_id: str = Depends(get_caller_id),
    service: ArchiveService = Depends(get_archive_service),
) -> list[ArchiveManifest]:
    return await service.list_archives(conversation_id, caller_id, older_than=older_than)


@router.get(
    "/{conversation_id}/archives/messages",
    response_model=ArchivedMessages,
    summary="Load the messages of one archive",
)
async def load_archive(
    conversation_id: str,
    path: str = Query(..., min_length=1),
    caller_id: str = Depends(get_caller_id),
    service: ArchiveService = Depends(get_archive_service),
) -> ArchivedMessages:
    return await service.load_archive(conversation_id, caller_id, path)
