from pydantic import BaseModel
from datetime import datetime
from typing import Any, Optional


class ArchiveResult(BaseModel):
    success: bool
    archived_count: int = 0
    archive_path: Optional[str] = None
    message: Optional[str] = None


class ArchiveManifest(BaseModel):
    path: str
    count: int
    oldest_timestamp: datetime
    newest_timestamp: datetime
    created_at: datetime


class ArchivedMessage(BaseModel):
    model_config = {"extra": "allow"}

    id: str
    timestamp: datetime
    text: str = ""
    sender_id: Optional[str] = None
    sender_name: Optional[str] = None
    read: bool = False


class ArchivedMessages(BaseModel):
    path: str
    messages: list[ArchivedMessage]


class SweepSummary(BaseModel):
    scanned: int
    archived: int
    skipped: int
    failed: int
    details: list[dict[str, Any]] = []
