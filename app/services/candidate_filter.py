"""
Mio Backend — Candidate Filter

Stage one of a search.  Walks the ShowUsers reverse index for each of the
requester's favorite items and counts, per other user, how many favorites
they share.  Excluded users (blocked, already matched, the requester) are
dropped as they are encountered, so they never reach the count table.

Cost is proportional to the total number of index entries touched, never to
the size of the user base.
"""

from __future__ import annotations

from typing import Iterable

import structlog

from app.services.show_index import ShowUsersIndex

logger = structlog.get_logger("mio.candidate_filter")


class CandidateFilter:
    def __init__(self, index: ShowUsersIndex) -> None:
        self.index = index

    async def find_candidates(
        self,
        favorite_item_ids: Iterable[str],
        excluded_user_ids: Iterable[str],
        threshold: int,
    ) -> dict[str, int]:
        """Return ``{user_id: shared_count}`` for users at or above ``threshold``.

        Users appear in the order their first shared item was encountered.
        """
        favorites = list(dict.fromkeys(favorite_item_ids))
        excluded = set(excluded_user_ids)
        entries = await self.index.lookup_many(favorites)

        counts: dict[str, int] = {}
        for item_id in favorites:
            for user_id in dict.fromkeys(entries.get(item_id, [])):
                if user_id in excluded:
                    continue
                counts[user_id] = counts.get(user_id, 0) + 1

        candidates = {uid: n for uid, n in counts.items() if n >= threshold}
        logger.info(
            "candidate_filter_complete",
            favorites=len(favorites),
            index_entries=len(entries),
            users_seen=len(counts),
            candidates=len(candidates),
            threshold=threshold,
        )
        return candidates
