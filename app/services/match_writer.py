"""
Mio Backend — Match Writer

Persists the outcome of one accepted search as a single atomic commit:

  * one match record per new pair, keyed ``{min_id}_{max_id}`` and written
    create-if-absent, so a pair can never get two records;
  * each matched user array-unioned into the other's ``matched_user_ids``;
  * the requester's new cooldown state, guarded by the version of the
    requester document that the cooldown gate read.

Either everything is visible afterwards or nothing is.  Notifications go out
only after the commit succeeds and never affect its outcome.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Sequence

import structlog

from app.services.cooldown import CooldownState
from app.services.notification_service import NotificationService
from app.services.preference_matcher import AcceptedCandidate
from app.store import MATCHES, USERS, ArrayUnion, DocumentStore
from app.utils.timestamps import isoformat

logger = structlog.get_logger("mio.match_writer")


def match_id(user_a: str, user_b: str) -> str:
    low, high = sorted((user_a, user_b))
    return f"{low}_{high}"


class MatchWriter:
    def __init__(
        self,
        store: DocumentStore,
        notifier: NotificationService | None = None,
    ) -> None:
        self.store = store
        self.notifier = notifier

    def ops_required(self, match_count: int) -> int:
        # record + candidate update per match, plus the requester update
        return 2 * match_count + 1

    async def write(
        self,
        requester_id: str,
        requester_name: str,
        matches: Sequence[AcceptedCandidate],
        cooldown: CooldownState,
        requester_version: int,
        now: datetime,
    ) -> None:
        """Commit ``matches`` and ``cooldown`` atomically, then notify.

        Raises ``ConflictError`` if the requester document changed since it
        was read or a match record for one of the pairs already exists.
        """
        log = logger.bind(requester=requester_id, matches=len(matches))
        batch = self.store.batch(max_ops=self.ops_required(len(matches)))
        created_at = isoformat(now)

        for match in matches:
            batch.create(
                MATCHES,
                match_id(requester_id, match.user_id),
                {
                    "user_ids": sorted((requester_id, match.user_id)),
                    "level": match.level,
                    "common_item_ids": list(match.common_item_ids),
                    "created_at": created_at,
                },
            )
            batch.update(
                USERS,
                match.user_id,
                {"matched_user_ids": ArrayUnion(requester_id)},
            )

        requester_fields = cooldown.to_fields()
        if matches:
            requester_fields["matched_user_ids"] = ArrayUnion(*(m.user_id for m in matches))
        batch.update(USERS, requester_id, requester_fields, expected_version=requester_version)

        await batch.commit()
        log.info("match_commit_complete", search_count=cooldown.search_count)

        if self.notifier is not None and matches:
            await self._notify(requester_id, requester_name, matches)

    async def _notify(
        self,
        requester_id: str,
        requester_name: str,
        matches: Sequence[AcceptedCandidate],
    ) -> None:
        results = await asyncio.gather(
            *(
                self.notifier.notify_match(m.user_id, requester_id, requester_name, m.level)
                for m in matches
            ),
            return_exceptions=True,
        )
        for match, result in zip(matches, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "match_notification_error",
                    recipient=match.user_id,
                    error=str(result),
                )
