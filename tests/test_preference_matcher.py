"""Unit tests for the symmetric preference predicates and the matcher."""
import pytest
from unittest.mock import patch

from app.schemas.user import UserProfile
from app.services.preference_matcher import (
    PreferenceMatcher,
    gender_compatible,
    is_compatible,
    location_compatible,
    match_level,
)
from app.store import USERS


def profile(uid, **fields):
    data = {"id": uid, "display_name": uid.title(), "gender": "female"}
    data.update(fields)
    return UserProfile.model_validate(data)


class TestPredicates:
    def test_everyone_accepts_everyone(self):
        assert gender_compatible(profile("a"), profile("b", gender="male"))

    def test_gender_preference_must_hold_both_ways(self):
        a = profile("a", gender="female", match_with="male")
        b = profile("b", gender="male", match_with="male")
        assert not gender_compatible(a, b)
        assert not gender_compatible(b, a)

    def test_gender_comparison_ignores_case(self):
        a = profile("a", gender="Female", match_with="Male")
        b = profile("b", gender="male", match_with="FEMALE")
        assert gender_compatible(a, b)

    def test_local_requires_same_location_either_side(self):
        a = profile("a", location="London", match_location="local")
        b = profile("b", location="Paris")
        assert not location_compatible(a, b)
        assert not location_compatible(b, a)
        assert location_compatible(a, profile("c", location=" london "))

    def test_local_preference_ignores_case(self):
        a = profile("a", location="London", match_location=" Local ")
        assert not location_compatible(a, profile("b", location="Paris"))
        assert location_compatible(a, profile("c", location="LONDON"))

    def test_local_with_unknown_location_rejected(self):
        a = profile("a", location=None, match_location="local")
        assert not location_compatible(a, profile("b", location=None))

    def test_worldwide_both_sides_ignores_location(self):
        assert location_compatible(profile("a", location="Tokyo"), profile("b", location="Lima"))

    def test_candidate_who_blocked_requester_rejected(self):
        assert not is_compatible(profile("me"), profile("c", blocked_user_ids=["me"]))

    def test_match_level(self):
        assert match_level(6, 7) == "match"
        assert match_level(7, 7) == "superMatch"

    def test_missing_preferences_default(self):
        p = profile("a", match_with=None, match_location="")
        assert p.match_with == "everyone"
        assert p.match_location == "worldwide"


class TestPreferenceMatcher:
    """Profile fetching, fail-soft skipping and ordering."""

    @pytest.mark.asyncio
    async def test_accepts_in_candidate_order_with_levels(self, store, seed_user):
        for uid in ["c1", "c2", "c3"]:
            await seed_user(uid, favorite_item_ids=["s1", "s2", "s9"])
        requester = profile("me", favorite_item_ids=["s1", "s2", "s3"])
        matcher = PreferenceMatcher(store, chunk_size=2, super_threshold=7)

        result = await matcher.filter_candidates(requester, {"c3": 8, "c1": 3, "c2": 4})

        assert [c.user_id for c in result] == ["c3", "c1", "c2"]
        assert [c.level for c in result] == ["superMatch", "match", "match"]
        assert result[0].common_item_ids == ["s1", "s2"]
        assert result[0].display_name == "C3"

    @pytest.mark.asyncio
    async def test_missing_and_incomplete_profiles_skipped(self, store, seed_user):
        await seed_user("ok")
        await seed_user("nameless", display_name="")
        requester = profile("me")
        result = await PreferenceMatcher(store).filter_candidates(
            requester, {"ghost": 5, "nameless": 5, "ok": 5}
        )
        assert [c.user_id for c in result] == ["ok"]

    @pytest.mark.asyncio
    async def test_failed_chunk_skips_only_its_candidates(self, store, seed_user):
        for uid in ["c1", "c2", "c3", "c4"]:
            await seed_user(uid)
        original = store.get_many

        async def flaky_get_many(collection, ids):
            if "c1" in ids:
                raise RuntimeError("deadline exceeded")
            return await original(collection, ids)

        matcher = PreferenceMatcher(store, chunk_size=2)
        with patch.object(store, "get_many", side_effect=flaky_get_many):
            result = await matcher.filter_candidates(
                profile("me"), {"c1": 3, "c2": 3, "c3": 3, "c4": 3}
            )
        assert [c.user_id for c in result] == ["c3", "c4"]

    @pytest.mark.asyncio
    async def test_profiles_fetched_in_bounded_chunks(self, store, seed_user):
        ids = [f"u{i:02d}" for i in range(23)]
        for uid in ids:
            await seed_user(uid)
        calls = []
        original = store.get_many

        async def recording_get_many(collection, chunk):
            calls.append((collection, list(chunk)))
            return await original(collection, chunk)

        with patch.object(store, "get_many", side_effect=recording_get_many):
            result = await PreferenceMatcher(store, chunk_size=10).filter_candidates(
                profile("me"), {uid: 3 for uid in ids}
            )
        assert [len(c) for _, c in calls] == [10, 10, 3]
        assert all(collection == USERS for collection, _ in calls)
        assert len(result) == 23

    @pytest.mark.asyncio
    async def test_every_accepted_candidate_is_mutually_compatible(self, store, seed_user):
        await seed_user("m1", gender="male", match_with="female")
        await seed_user("m2", gender="male", match_with="male")
        await seed_user("f1", gender="female", match_with="female")
        await seed_user("f2", gender="female", match_with="everyone", match_location="local", location="Leeds")
        requester = profile("me", gender="female", match_with="everyone", location="London")

        result = await PreferenceMatcher(store).filter_candidates(
            requester, {"m1": 3, "m2": 3, "f1": 3, "f2": 3}
        )
        accepted = {c.user_id for c in result}
        assert accepted == {"m1", "f1"}
        for uid in accepted:
            candidate = UserProfile.from_snapshot(await store.get(USERS, uid))
            assert is_compatible(requester, candidate)
            assert gender_compatible(candidate, requester)
