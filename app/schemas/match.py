from pydantic import BaseModel, Field
from datetime import datetime
from typing import Literal, Optional

MatchLevel = Literal["match", "superMatch"]


class SearchRequest(BaseModel):
    favorite_item_ids: list[str] = Field(default_factory=list)


class NewMatch(BaseModel):
    user_id: str
    match_level: MatchLevel


class SearchResponse(BaseModel):
    new_matches: list[NewMatch]
    next_allowed_search_time: datetime


class CooldownStatus(BaseModel):
    can_search: bool
    next_allowed_search_time: Optional[datetime] = None
    retry_after_seconds: int = 0
    search_count: int = 0
