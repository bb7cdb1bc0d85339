"""
Mio Backend — Matching orchestrator

Runs one match search end to end:

  1. validate the request (at least one favorite item)
  2. load the requester; unknown users are Not-Found, incomplete
     profiles are Invalid-Input
  3. cooldown gate; a search inside the window is rejected before any
     index or candidate work
  4. refresh the ShowUsers index for the submitted favorites; the stored
     favorite set belongs to the favorites API and is not written here
  5. Candidate Filter -> Preference Matcher -> Match Writer

The Match Writer's commit is guarded by the version of the requester
document read in step 2.  If another search for the same user committed in
between, the commit fails with a conflict and the whole search is re-run
from a fresh read, where the cooldown gate rejects it.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Callable, Iterable

import structlog
from pydantic import ValidationError

from app.config import get_settings
from app.errors import (
    CooldownActiveError,
    InternalError,
    InvalidInputError,
    NotFoundError,
)
from app.schemas.match import CooldownStatus, NewMatch, SearchResponse
from app.schemas.user import UserProfile
from app.services.candidate_filter import CandidateFilter
from app.services.cooldown import CooldownState, evaluate, schedule_from_minutes
from app.services.match_writer import MatchWriter
from app.services.notification_service import NotificationService
from app.services.preference_matcher import PreferenceMatcher
from app.services.show_index import ShowUsersIndex
from app.store import USERS, ConflictError, DocumentStore, StoreError
from app.utils.timestamps import utcnow

logger = structlog.get_logger("mio.matching_service")


def _clean_favorites(item_ids: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(i.strip() for i in item_ids if i and i.strip()))


class MatchingService:
    """Match search pipeline.

    Collaborators are built from ``store`` unless injected, so tests can swap
    any single stage.
    """

    def __init__(
        self,
        store: DocumentStore,
        index: ShowUsersIndex | None = None,
        candidate_filter: CandidateFilter | None = None,
        matcher: PreferenceMatcher | None = None,
        writer: MatchWriter | None = None,
        notifier: NotificationService | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        settings = get_settings()
        self.store = store
        self.index = index or ShowUsersIndex(store)
        self.candidate_filter = candidate_filter or CandidateFilter(self.index)
        self.matcher = matcher or PreferenceMatcher(store)
        self.writer = writer or MatchWriter(store, notifier)
        self.clock = clock

        self.threshold = settings.MATCH_THRESHOLD
        self.schedule = schedule_from_minutes(settings.COOLDOWN_SCHEDULE_MINUTES)
        self.conflict_retries = settings.SEARCH_CONFLICT_RETRIES
        # requester update + (record, candidate update) per match
        self.max_matches_per_search = (store.max_batch_ops - 1) // 2

    # ── Public API ────────────────────────────────────────────────────────

    async def search(self, user_id: str, favorite_item_ids: Iterable[str]) -> SearchResponse:
        favorites = _clean_favorites(favorite_item_ids)
        if not favorites:
            raise InvalidInputError("At least one favorite item is required to search.")

        log = logger.bind(user_id=user_id, favorites=len(favorites))
        attempts = 1 + self.conflict_retries
        for attempt in range(1, attempts + 1):
            try:
                return await self._search_once(user_id, favorites, log)
            except ConflictError as exc:
                log.warning("match_search_conflict", attempt=attempt, error=str(exc))
            except StoreError as exc:
                log.error("match_search_store_failure", error=str(exc))
                raise InternalError("Match search failed; no changes were made.") from exc

        raise InternalError("Match search could not be committed; please retry.")

    async def get_cooldown_status(self, user_id: str) -> CooldownStatus:
        snapshot = await self._load_user(user_id)
        state = CooldownState.from_document(snapshot.data)
        next_allowed = state.next_allowed(self.schedule)
        now = self.clock()
        if next_allowed is None or now >= next_allowed:
            return CooldownStatus(
                can_search=True,
                next_allowed_search_time=next_allowed,
                search_count=state.search_count,
            )
        return CooldownStatus(
            can_search=False,
            next_allowed_search_time=next_allowed,
            retry_after_seconds=math.ceil((next_allowed - now).total_seconds()),
            search_count=state.search_count,
        )

    # ── Internals ─────────────────────────────────────────────────────────

    async def _load_user(self, user_id: str):
        try:
            snapshot = await self.store.get(USERS, user_id)
        except StoreError as exc:
            raise InternalError("Could not load user profile.") from exc
        if snapshot is None:
            raise NotFoundError("User profile not found.")
        return snapshot

    async def _search_once(self, user_id: str, favorites: list[str], log) -> SearchResponse:
        snapshot = await self._load_user(user_id)
        try:
            requester = UserProfile.from_snapshot(snapshot)
        except ValidationError as exc:
            raise InvalidInputError("Complete your profile before searching for matches.") from exc

        now = self.clock()
        decision = evaluate(CooldownState.from_document(snapshot.data), now, self.schedule)
        if not decision.allowed:
            log.info("match_search_cooling_down", retry_after=decision.retry_after.total_seconds())
            raise CooldownActiveError(
                decision.retry_after,
                "Please wait before searching for matches again.",
            )

        await self.index.add_user(user_id, favorites)

        excluded = set(requester.blocked_user_ids) | set(requester.matched_user_ids) | {user_id}
        candidates = await self.candidate_filter.find_candidates(favorites, excluded, self.threshold)

        all_favorites = list(dict.fromkeys([*requester.favorite_item_ids, *favorites]))
        requester = requester.model_copy(update={"favorite_item_ids": all_favorites})
        accepted = await self.matcher.filter_candidates(requester, candidates)
        if len(accepted) > self.max_matches_per_search:
            log.warning(
                "match_search_truncated",
                accepted=len(accepted),
                kept=self.max_matches_per_search,
            )
            accepted = accepted[:self.max_matches_per_search]

        await self.writer.write(
            requester_id=user_id,
            requester_name=requester.display_name,
            matches=accepted,
            cooldown=decision.state,
            requester_version=snapshot.version,
            now=now,
        )

        log.info(
            "match_search_complete",
            candidates=len(candidates),
            new_matches=len(accepted),
            search_count=decision.state.search_count,
        )
        return SearchResponse(
            new_matches=[NewMatch(user_id=m.user_id, match_level=m.level) for m in accepted],
            next_allowed_search_time=decision.next_allowed_at,
        )
