"""
Mio Backend — Preference Matcher

Stage two of a search.  Loads candidate profiles and keeps those whose
preferences are compatible with the requester's in BOTH directions:

  gender    requester.match_with is "everyone" or the candidate's gender,
            and candidate.match_with is "everyone" or the requester's gender
  location  if either side wants "local" matches, both locations must agree
  blocks    the candidate has not blocked the requester

Profiles are fetched in fixed-size chunks issued concurrently and
reassembled in candidate order, so output order never depends on which
chunk returned first.  The stage fails soft: a failed chunk, a missing
document or an incomplete profile drops that candidate with a warning.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import structlog
from pydantic import ValidationError

from app.config import get_settings
from app.schemas.match import MatchLevel
from app.schemas.user import UserProfile
from app.store import USERS, DocumentSnapshot, DocumentStore

logger = structlog.get_logger("mio.preference_matcher")

EVERYONE = "everyone"
LOCAL = "local"


@dataclass
class AcceptedCandidate:
    user_id: str
    shared_count: int
    level: MatchLevel
    display_name: str
    common_item_ids: list[str] = field(default_factory=list)


# ──────────────────────────────────────────────────────────────────────────────
# Predicates
# ──────────────────────────────────────────────────────────────────────────────

def _wants(seeker: UserProfile, other: UserProfile) -> bool:
    pref = seeker.match_with.strip().lower()
    return pref == EVERYONE or pref == other.gender.strip().lower()


def gender_compatible(a: UserProfile, b: UserProfile) -> bool:
    return _wants(a, b) and _wants(b, a)


def _norm_location(value: str | None) -> str:
    return (value or "").strip().lower()


def _wants_local(profile: UserProfile) -> bool:
    return profile.match_location.strip().lower() == LOCAL


def location_compatible(a: UserProfile, b: UserProfile) -> bool:
    if not _wants_local(a) and not _wants_local(b):
        return True
    loc_a, loc_b = _norm_location(a.location), _norm_location(b.location)
    return bool(loc_a) and loc_a == loc_b


def is_compatible(requester: UserProfile, candidate: UserProfile) -> bool:
    if requester.id in candidate.blocked_user_ids:
        return False
    return gender_compatible(requester, candidate) and location_compatible(requester, candidate)


def match_level(shared_count: int, super_threshold: int) -> MatchLevel:
    return "superMatch" if shared_count >= super_threshold else "match"


# ──────────────────────────────────────────────────────────────────────────────
# Matcher
# ──────────────────────────────────────────────────────────────────────────────

class PreferenceMatcher:
    def __init__(
        self,
        store: DocumentStore,
        chunk_size: int | None = None,
        super_threshold: int | None = None,
    ) -> None:
        settings = get_settings()
        self.store = store
        self.chunk_size = chunk_size or settings.PROFILE_FETCH_CHUNK_SIZE
        self.super_threshold = (
            super_threshold if super_threshold is not None else settings.SUPER_MATCH_THRESHOLD
        )

    async def _fetch_profiles(self, user_ids: list[str]) -> dict[str, DocumentSnapshot]:
        chunks = [
            user_ids[i:i + self.chunk_size]
            for i in range(0, len(user_ids), self.chunk_size)
        ]
        results = await asyncio.gather(
            *(self.store.get_many(USERS, chunk) for chunk in chunks),
            return_exceptions=True,
        )
        profiles: dict[str, DocumentSnapshot] = {}
        for chunk, result in zip(chunks, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "profile_chunk_fetch_failed",
                    chunk_size=len(chunk),
                    error=str(result),
                )
                continue
            profiles.update(result)
        return profiles

    async def filter_candidates(
        self,
        requester: UserProfile,
        candidates: dict[str, int],
    ) -> list[AcceptedCandidate]:
        """Return the compatible subset of ``candidates`` in their given order."""
        if not candidates:
            return []

        log = logger.bind(requester=requester.id)
        order = list(candidates)
        profiles = await self._fetch_profiles(order)
        requester_items = set(requester.favorite_item_ids)

        accepted: list[AcceptedCandidate] = []
        for user_id in order:
            snapshot = profiles.get(user_id)
            if snapshot is None:
                log.warning("candidate_profile_missing", candidate=user_id)
                continue
            try:
                profile = UserProfile.from_snapshot(snapshot)
            except ValidationError:
                log.warning("candidate_profile_incomplete", candidate=user_id)
                continue
            if not is_compatible(requester, profile):
                continue

            shared = candidates[user_id]
            accepted.append(
                AcceptedCandidate(
                    user_id=user_id,
                    shared_count=shared,
                    level=match_level(shared, self.super_threshold),
                    display_name=profile.display_name,
                    common_item_ids=[
                        i for i in profile.favorite_item_ids if i in requester_items
                    ],
                )
            )

        log.info(
            "preference_filter_complete",
            candidates=len(order),
            accepted=len(accepted),
        )
        return accepted
