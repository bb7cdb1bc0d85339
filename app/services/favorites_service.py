"""
Mio Backend — Favorites

Keeps a user's favorite items and the ShowUsers reverse index in step: every
add or remove writes the user document and the index entry in one commit.

Limits: at most ``MAX_FAVORITES`` items.  Every ``MAX_FAVORITE_REMOVALS``
removals start a removal cooldown of ``FAVORITE_REMOVAL_COOLDOWN_MINUTES``
during which further removals are rejected.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

import structlog

from app.config import get_settings
from app.errors import (
    CooldownActiveError,
    InternalError,
    InvalidInputError,
    NotFoundError,
)
from app.schemas.favorites import FavoritesResponse
from app.services.show_index import ShowUsersIndex
from app.store import (
    USERS,
    ArrayRemove,
    ArrayUnion,
    ConflictError,
    DocumentSnapshot,
    DocumentStore,
    StoreError,
)
from app.utils.timestamps import TimestampError, isoformat, to_datetime, utcnow

logger = structlog.get_logger("mio.favorites_service")

_WRITE_ATTEMPTS = 3


class FavoritesService:
    def __init__(
        self,
        store: DocumentStore,
        index: ShowUsersIndex | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        settings = get_settings()
        self.store = store
        self.index = index or ShowUsersIndex(store)
        self.clock = clock
        self.max_favorites = settings.MAX_FAVORITES
        self.max_removals = settings.MAX_FAVORITE_REMOVALS
        self.removal_cooldown = timedelta(minutes=settings.FAVORITE_REMOVAL_COOLDOWN_MINUTES)

    async def _load(self, user_id: str) -> DocumentSnapshot:
        try:
            snapshot = await self.store.get(USERS, user_id)
        except StoreError as exc:
            raise InternalError("Could not load user profile.") from exc
        if snapshot is None:
            raise NotFoundError("User profile not found.")
        return snapshot

    def _cooldown_until(self, snapshot: DocumentSnapshot) -> datetime | None:
        raw = snapshot.get("favorite_removal_cooldown_until")
        if raw is None:
            return None
        try:
            return to_datetime(raw)
        except TimestampError:
            return None

    def _response(self, snapshot: DocumentSnapshot, favorites: list[str] | None = None) -> FavoritesResponse:
        until = self._cooldown_until(snapshot)
        if until is not None and self.clock() < until:
            remaining = 0
        else:
            remaining = max(0, self.max_removals - int(snapshot.get("favorite_removals", 0)))
        return FavoritesResponse(
            favorite_item_ids=favorites if favorites is not None else list(snapshot.get("favorite_item_ids", [])),
            remaining_removals=remaining,
        )

    async def list_favorites(self, user_id: str) -> FavoritesResponse:
        return self._response(await self._load(user_id))

    async def add(self, user_id: str, item_id: str) -> FavoritesResponse:
        item_id = (item_id or "").strip()
        if not item_id:
            raise InvalidInputError("An item id is required.")

        for attempt in range(1, _WRITE_ATTEMPTS + 1):
            snapshot = await self._load(user_id)
            favorites = list(snapshot.get("favorite_item_ids", []))
            if item_id in favorites:
                return self._response(snapshot)
            if len(favorites) >= self.max_favorites:
                raise InvalidInputError(
                    f"You can have at most {self.max_favorites} favorites."
                )

            batch = self.store.batch()
            batch.update(
                USERS,
                user_id,
                {"favorite_item_ids": ArrayUnion(item_id)},
                expected_version=snapshot.version,
            )
            self.index.stage_addition(batch, user_id, item_id)
            try:
                await batch.commit()
            except ConflictError:
                logger.info("favorite_add_conflict", user_id=user_id, attempt=attempt)
                continue
            except StoreError as exc:
                raise InternalError("Could not update favorites.") from exc

            logger.info("favorite_added", user_id=user_id, item_id=item_id)
            return self._response(snapshot, favorites + [item_id])

        raise InternalError("Favorites changed concurrently; please retry.")

    async def remove(self, user_id: str, item_id: str) -> FavoritesResponse:
        for attempt in range(1, _WRITE_ATTEMPTS + 1):
            snapshot = await self._load(user_id)
            favorites = list(snapshot.get("favorite_item_ids", []))
            if item_id not in favorites:
                raise NotFoundError("Item is not in your favorites.")

            now = self.clock()
            until = self._cooldown_until(snapshot)
            if until is not None and now < until:
                raise CooldownActiveError(
                    until - now,
                    "You have removed too many favorites; please wait.",
                )

            removals = int(snapshot.get("favorite_removals", 0)) + 1
            fields: dict = {
                "favorite_item_ids": ArrayRemove(item_id),
                "last_favorite_removal_at": isoformat(now),
            }
            if removals >= self.max_removals:
                fields["favorite_removals"] = 0
                fields["favorite_removal_cooldown_until"] = isoformat(now + self.removal_cooldown)
            else:
                fields["favorite_removals"] = removals

            batch = self.store.batch()
            batch.update(USERS, user_id, fields, expected_version=snapshot.version)
            try:
                await self.index.stage_removal(batch, user_id, item_id)
                await batch.commit()
            except ConflictError:
                logger.info("favorite_remove_conflict", user_id=user_id, attempt=attempt)
                continue
            except StoreError as exc:
                raise InternalError("Could not update favorites.") from exc

            logger.info(
                "favorite_removed",
                user_id=user_id,
                item_id=item_id,
                removals=removals,
                cooldown_started=removals >= self.max_removals,
            )
            updated = await self._load(user_id)
            return self._response(updated)

        raise InternalError("Favorites changed concurrently; please retry.")
