"""
Mio Backend — Per-conversation archive lease

Archival rewrites a conversation's batch documents over several commits, so
two runs on the same conversation must never overlap.  The lease is a Redis
key set with NX and a TTL; the holder's random token is checked on release
so an expired-then-reacquired lease is never released by the old holder.
"""

from __future__ import annotations

import secrets

import redis.asyncio as aioredis
import structlog
from redis.exceptions import WatchError

logger = structlog.get_logger("mio.archive_lease")

KEY_PREFIX = "mio:archive-lease:"


class ArchiveLease:
    def __init__(self, redis: aioredis.Redis, ttl_seconds: int) -> None:
        self.redis = redis
        self.ttl_ms = ttl_seconds * 1000

    @staticmethod
    def key(conversation_id: str) -> str:
        return f"{KEY_PREFIX}{conversation_id}"

    async def acquire(self, conversation_id: str) -> str | None:
        """Return a holder token, or None if another run holds the lease."""
        token = secrets.token_hex(16)
        acquired = await self.redis.set(self.key(conversation_id), token, nx=True, px=self.ttl_ms)
        if not acquired:
            logger.info("archive_lease_busy", conversation_id=conversation_id)
            return None
        return token

    async def release(self, conversation_id: str, token: str) -> bool:
        key = self.key(conversation_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                current = await pipe.get(key)
                if isinstance(current, bytes):
                    current = current.decode()
                if current != token:
                    await pipe.unwatch()
                    logger.warning("archive_lease_lost", conversation_id=conversation_id)
                    return False
                pipe.multi()
                pipe.delete(key)
                await pipe.execute()
                return True
            except WatchError:
                logger.warning("archive_lease_release_raced", conversation_id=conversation_id)
                return False
