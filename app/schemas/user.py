from pydantic import BaseModel, Field, field_validator
from typing import Optional

from app.store import DocumentSnapshot


class UserProfile(BaseModel):
    """A user document as read by the matching engine.

    Validation doubles as the completeness check: a profile without a
    display name or gender cannot be matched.
    """

    model_config = {"extra": "ignore"}

    id: str
    display_name: str = Field(min_length=1)
    gender: str = Field(min_length=1)
    age: Optional[int] = None
    location: Optional[str] = None
    match_with: str = "everyone"
    match_location: str = "worldwide"
    favorite_item_ids: list[str] = []
    blocked_user_ids: list[str] = []
    matched_user_ids: list[str] = []
    push_token: Optional[str] = None

    @field_validator("match_with", "match_location", mode="before")
    @classmethod
    def _default_when_missing(cls, v, info):
        if v is None or v == "":
            return "everyone" if info.field_name == "match_with" else "worldwide"
        return v

    @classmethod
    def from_snapshot(cls, snapshot: DocumentSnapshot) -> "UserProfile":
        return cls.model_validate({**snapshot.data, "id": snapshot.id})
