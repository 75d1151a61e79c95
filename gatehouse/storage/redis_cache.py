from __future__ import annotations

import hashlib
import time
from datetime import datetime, timezone
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

_PREFIX = "gatehouse"


class RedisCache:
    """Session lookups and rate-limit buckets kept in Redis.

    Session entries map a session token hash to its user id and expire with
    the session. A per-user set indexes a user's cached sessions so a
    password change can drop all of them at once.
    """

    # KEYS[1] bucket; ARGV: now, refill per second, capacity, cost.
    # Returns {allowed, level, seconds until the cost is affordable}.
    _BUCKET_SCRIPT = """
local state = redis.call('HMGET', KEYS[1], 'level', 'at')
local now = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local level = tonumber(state[1]) or capacity
local at = tonumber(state[2]) or now

level = math.min(capacity, level + math.max(0, now - at) * rate)
local allowed = 0
local wait = 0
if level >= cost then
  level = level - cost
  allowed = 1
else
  wait = math.ceil((cost - level) / rate)
end
redis.call('HSET', KEYS[1], 'level', level, 'at', now)
redis.call('EXPIRE', KEYS[1], math.max(1, math.ceil(capacity / rate), wait))
return {allowed, tostring(level), wait}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._bucket = self.client.register_script(self._BUCKET_SCRIPT)

    @staticmethod
    def _session_key(session_id: str) -> str:
        return f"{_PREFIX}:session:{session_id}"

    @staticmethod
    def _user_index_key(user_id: str) -> str:
        return f"{_PREFIX}:user-sessions:{user_id}"

    @staticmethod
    def _rate_key(key: str) -> str:
        # rate keys embed emails; only a digest reaches Redis
        return "rate:" + hashlib.sha256(key.encode()).hexdigest()

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Whole seconds left before ``expires_at``; never less than one."""
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        remaining = expires_at - datetime.now(timezone.utc)
        return max(1, int(remaining.total_seconds()))

    def verify_connection(self) -> None:
        """Ping Redis once at startup with a throwaway sync client."""
        client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            client.ping()
        finally:
            client.close()

    async def cache_session(
        self, session_id: str, user_id: str, expires_at: datetime
    ) -> None:
        ttl = self._ttl_seconds(expires_at)
        index_key = self._user_index_key(user_id)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.set(self._session_key(session_id), user_id, ex=ttl)
            pipe.sadd(index_key, session_id)
            pipe.expire(index_key, ttl)
            await pipe.execute()

    async def get_session_user(self, session_id: str) -> Optional[str]:
        return await self.client.get(self._session_key(session_id))

    async def revoke_session(self, session_id: str) -> None:
        await self.client.delete(self._session_key(session_id))

    async def revoke_user_sessions(self, user_id: str) -> int:
        """Drop every cached session of ``user_id``; returns how many were cached."""
        index_key = self._user_index_key(user_id)
        members = await self.client.smembers(index_key)
        keys = [self._session_key(session_id) for session_id in members]
        await self.client.delete(index_key, *keys)
        return len(keys)

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        allowed, level, wait = await self._bucket(
            keys=[self._rate_key(key)],
            args=[time.time(), limit / window_seconds, limit, max(1, cost)],
        )
        result = (bool(int(allowed)), max(0, int(float(level))), int(wait or 0))
        return result if return_remaining else result[0]

    async def close(self) -> None:
        await self.client.aclose()
