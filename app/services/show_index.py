"""
Mio Backend — ShowUsers reverse index

Maps a favorite item to the set of users who favorite it.  One document per
item in ``show_users``; an entry exists only while at least one user
favorites the item.  Additions are idempotent array-unions and need no read;
removals read the entry and delete it when the last user leaves, guarded by
the entry's version.
"""

from __future__ import annotations

from typing import Iterable

import structlog

from app.store import (
    SHOW_USERS,
    ArrayRemove,
    ArrayUnion,
    ConflictError,
    DocumentStore,
    WriteBatch,
)

logger = structlog.get_logger("mio.show_index")

_REMOVE_ATTEMPTS = 3


class ShowUsersIndex:
    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def lookup_many(self, item_ids: Iterable[str]) -> dict[str, list[str]]:
        """Return ``{item_id: [user_id, ...]}`` for the items that have an entry."""
        ids = list(dict.fromkeys(item_ids))
        snapshots = await self.store.get_many(SHOW_USERS, ids)
        return {
            item_id: list(snapshots[item_id].get("user_ids", []))
            for item_id in ids
            if item_id in snapshots
        }

    def stage_addition(self, batch: WriteBatch, user_id: str, item_id: str) -> None:
        batch.set(
            SHOW_USERS,
            item_id,
            {"item_id": item_id, "user_ids": ArrayUnion(user_id)},
            merge=True,
        )

    async def stage_removal(self, batch: WriteBatch, user_id: str, item_id: str) -> None:
        """Add the removal of ``user_id`` to ``batch``, guarded by the entry's version."""
        snapshot = await self.store.get(SHOW_USERS, item_id)
        if snapshot is None:
            return
        remaining = [u for u in snapshot.get("user_ids", []) if u != user_id]
        if remaining:
            batch.update(
                SHOW_USERS,
                item_id,
                {"user_ids": ArrayRemove(user_id)},
                expected_version=snapshot.version,
            )
        else:
            batch.delete(SHOW_USERS, item_id, expected_version=snapshot.version)

    async def add_user(self, user_id: str, item_ids: Iterable[str]) -> int:
        """Add ``user_id`` under every item; safe to repeat.  Returns entries touched."""
        ids = list(dict.fromkeys(item_ids))
        batch = self.store.batch()
        for item_id in ids:
            if batch.remaining == 0:
                await batch.commit()
            self.stage_addition(batch, user_id, item_id)
        await batch.commit()
        return len(ids)

    async def remove_user(self, user_id: str, item_id: str) -> None:
        """Remove ``user_id`` from an item's entry, deleting the entry if emptied."""
        for attempt in range(1, _REMOVE_ATTEMPTS + 1):
            batch = self.store.batch()
            await self.stage_removal(batch, user_id, item_id)
            try:
                await batch.commit()
                return
            except ConflictError:
                logger.info(
                    "show_index_remove_conflict",
                    item_id=item_id,
                    attempt=attempt,
                )
        raise ConflictError(f"could not update show_users/{item_id} after {_REMOVE_ATTEMPTS} attempts")
