"""Unit tests for the Redis-backed archive lease."""
import pytest
import pytest_asyncio
from fakeredis import aioredis as fake_aioredis

from app.services.archive_lease import ArchiveLease


@pytest_asyncio.fixture
async def redis():
    client = fake_aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


class TestArchiveLease:
    @pytest.mark.asyncio
    async def test_second_acquire_blocked_until_release(self, redis):
        lease = ArchiveLease(redis, ttl_seconds=60)
        token = await lease.acquire("c1")
        assert token
        assert await lease.acquire("c1") is None
        assert await lease.acquire("c2") is not None

        assert await lease.release("c1", token)
        assert await lease.acquire("c1") is not None

    @pytest.mark.asyncio
    async def test_key_carries_ttl(self, redis):
        lease = ArchiveLease(redis, ttl_seconds=60)
        await lease.acquire("c1")
        ttl = await redis.pttl(ArchiveLease.key("c1"))
        assert 0 < ttl <= 60_000

    @pytest.mark.asyncio
    async def test_stale_token_does_not_release_new_holder(self, redis):
        lease = ArchiveLease(redis, ttl_seconds=60)
        old = await lease.acquire("c1")
        # the old holder's lease expires and another run takes it
        await redis.delete(ArchiveLease.key("c1"))
        new = await lease.acquire("c1")

        assert not await lease.release("c1", old)
        assert await redis.get(ArchiveLease.key("c1")) == new

    @pytest.mark.asyncio
    async def test_release_of_missing_lease(self, redis):
        assert not await ArchiveLease(redis, ttl_seconds=60).release("c1", "whatever")
