"""Unit tests for the match search orchestrator."""
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock

from app.errors import (
    CooldownActiveError,
    InternalError,
    InvalidInputError,
    NotFoundError,
)
from app.services.favorites_service import FavoritesService
from app.services.matching_service import MatchingService
from app.services.preference_matcher import PreferenceMatcher
from app.services.show_index import ShowUsersIndex
from app.store import MATCHES, SHOW_USERS, USERS, ConflictError, StoreError

from conftest import T0

FAVORITES = [f"s{i}" for i in range(12)]


@pytest.fixture
def seed_fan(store, seed_user):
    """Seed a user whose favorites are already in the ShowUsers index."""

    async def _seed(user_id, item_ids, **fields):
        await seed_user(user_id, favorite_item_ids=list(item_ids), **fields)
        await ShowUsersIndex(store).add_user(user_id, item_ids)

    return _seed


class TestSearch:
    """End-to-end search over the in-memory store."""

    @pytest.mark.asyncio
    async def test_ordinary_and_super_matches(self, store, clock, seed_user, seed_fan):
        await seed_user("me")
        await seed_fan("bob", FAVORITES[:4])
        await seed_fan("carol", FAVORITES[:7])
        await seed_fan("dave", FAVORITES[:2])

        response = await MatchingService(store, clock=clock).search("me", FAVORITES)

        levels = {m.user_id: m.match_level for m in response.new_matches}
        assert levels == {"bob": "match", "carol": "superMatch"}
        assert response.next_allowed_search_time == T0 + timedelta(minutes=1)

        record = await store.get(MATCHES, "bob_me")
        assert record.data["common_item_ids"] == FAVORITES[:4]
        me = await store.get(USERS, "me")
        assert set(me.data["matched_user_ids"]) == {"bob", "carol"}
        assert me.data["favorite_item_ids"] == []
        assert "me" in (await store.get(SHOW_USERS, "s11")).data["user_ids"]

    @pytest.mark.asyncio
    async def test_no_candidates_still_starts_cooldown(self, store, clock, seed_user):
        await seed_user("me")
        response = await MatchingService(store, clock=clock).search("me", ["s1"])
        assert response.new_matches == []
        assert (await store.get(USERS, "me")).data["search_count"] == 0

    @pytest.mark.asyncio
    async def test_search_inside_window_rejected_before_index_work(
        self, store, clock, seed_user
    ):
        await seed_user("me")
        service = MatchingService(store, clock=clock)
        await service.search("me", ["s1"])
        clock.advance(seconds=30)

        with pytest.raises(CooldownActiveError) as exc_info:
            await service.search("me", ["brand-new"])

        assert exc_info.value.retry_after == timedelta(seconds=30)
        assert await store.get(SHOW_USERS, "brand-new") is None

    @pytest.mark.asyncio
    async def test_second_search_advances_schedule(self, store, clock, seed_user):
        await seed_user("me")
        service = MatchingService(store, clock=clock)
        await service.search("me", ["s1"])
        clock.advance(minutes=1)
        response = await service.search("me", ["s1"])
        assert response.next_allowed_search_time == clock.now + timedelta(minutes=2)

    @pytest.mark.asyncio
    async def test_search_leaves_stored_favorites_to_favorites_api(
        self, store, clock, seed_user
    ):
        await seed_user("me", favorite_item_ids=["s0"])
        many = [f"x{i}" for i in range(25)]

        await MatchingService(store, clock=clock).search("me", many)

        assert (await store.get(USERS, "me")).data["favorite_item_ids"] == ["s0"]
        response = await FavoritesService(store, clock=clock).add("me", "s1")
        assert response.favorite_item_ids == ["s0", "s1"]

    @pytest.mark.asyncio
    async def test_empty_favorites_rejected(self, store, clock, seed_user):
        await seed_user("me")
        with pytest.raises(InvalidInputError):
            await MatchingService(store, clock=clock).search("me", ["", "  "])

    @pytest.mark.asyncio
    async def test_unknown_user(self, store, clock):
        with pytest.raises(NotFoundError):
            await MatchingService(store, clock=clock).search("ghost", ["s1"])

    @pytest.mark.asyncio
    async def test_incomplete_profile(self, store, clock, seed_user):
        await seed_user("me", gender="")
        with pytest.raises(InvalidInputError):
            await MatchingService(store, clock=clock).search("me", ["s1"])

    @pytest.mark.asyncio
    async def test_blocked_matched_and_blocking_users_excluded(
        self, store, clock, seed_user, seed_fan
    ):
        await seed_user("me", blocked_user_ids=["bob"], matched_user_ids=["carol"])
        await seed_fan("bob", FAVORITES[:5])
        await seed_fan("carol", FAVORITES[:5])
        await seed_fan("erin", FAVORITES[:5], blocked_user_ids=["me"])
        await seed_fan("dave", FAVORITES[:5])

        response = await MatchingService(store, clock=clock).search("me", FAVORITES)

        assert [m.user_id for m in response.new_matches] == ["dave"]
        assert await store.get(MATCHES, "bob_me") is None
        assert await store.get(MATCHES, "erin_me") is None

    @pytest.mark.asyncio
    async def test_matches_capped_to_one_commit(self, store, clock, seed_user, seed_fan):
        store.max_batch_ops = 5
        await seed_user("me")
        for uid in ["a1", "a2", "a3"]:
            await seed_fan(uid, FAVORITES[:3])

        service = MatchingService(store, clock=clock)
        response = await service.search("me", FAVORITES[:3])

        assert service.max_matches_per_search == 2
        assert [m.user_id for m in response.new_matches] == ["a1", "a2"]


class TestConcurrency:
    """Racing searches for the same requester."""

    @pytest.mark.asyncio
    async def test_losing_search_is_rejected_by_cooldown(
        self, store, clock, seed_user, seed_fan
    ):
        await seed_user("me")
        await seed_fan("bob", FAVORITES[:4])
        rival = MatchingService(store, clock=clock)

        class RacingMatcher(PreferenceMatcher):
            raced = False

            async def filter_candidates(self, requester, candidates):
                if not RacingMatcher.raced:
                    RacingMatcher.raced = True
                    await rival.search("me", FAVORITES)
                return await super().filter_candidates(requester, candidates)

        loser = MatchingService(store, matcher=RacingMatcher(store), clock=clock)
        with pytest.raises(CooldownActiveError):
            await loser.search("me", FAVORITES)

        me = await store.get(USERS, "me")
        assert me.data["search_count"] == 0
        assert me.data["matched_user_ids"] == ["bob"]
        assert (await store.get(USERS, "bob")).data["matched_user_ids"] == ["me"]

    @pytest.mark.asyncio
    async def test_repeated_conflicts_become_internal_error(self, store, clock, seed_user):
        await seed_user("me")
        writer = AsyncMock()
        writer.write.side_effect = ConflictError("version moved")
        service = MatchingService(store, writer=writer, clock=clock)

        with pytest.raises(InternalError):
            await service.search("me", ["s1"])
        assert writer.write.await_count == 2

    @pytest.mark.asyncio
    async def test_store_failure_becomes_internal_error(self, store, clock, seed_user):
        await seed_user("me")
        writer = AsyncMock()
        writer.write.side_effect = StoreError("connection reset")
        with pytest.raises(InternalError):
            await MatchingService(store, writer=writer, clock=clock).search("me", ["s1"])
        assert writer.write.await_count == 1


class TestCooldownStatus:
    @pytest.mark.asyncio
    async def test_fresh_user_can_search(self, store, clock, seed_user):
        await seed_user("me")
        status = await MatchingService(store, clock=clock).get_cooldown_status("me")
        assert status.can_search
        assert status.next_allowed_search_time is None

    @pytest.mark.asyncio
    async def test_reports_remaining_wait(self, store, clock, seed_user):
        await seed_user("me")
        service = MatchingService(store, clock=clock)
        await service.search("me", ["s1"])
        clock.advance(seconds=20)

        status = await service.get_cooldown_status("me")
        assert not status.can_search
        assert status.retry_after_seconds == 40
        assert status.next_allowed_search_time == T0 + timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_unknown_user(self, store, clock):
        with pytest.raises(NotFoundError):
            await MatchingService(store, clock=clock).get_cooldown_status("ghost")
