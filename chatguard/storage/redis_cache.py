from __future__ import annotations

import hashlib
import json
import time
from datetime import datetime, timezone
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis


def _to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def _from_ms(value) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


class RedisCache:
    """Thin Redis wrapper for challenges, address lockouts and rate limits.

    Timestamps are passed in from the caller's clock as epoch milliseconds so
    the decision logic never depends on the Redis server's time. Native key
    TTLs only bound how long stale records linger.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic refill + consume, shared with the in-memory fallback semantics
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    # KEYS: failure hash, block hash
    # ARGV: now_ms, window_ms, threshold, lockout_ms
    # Returns {state, count, blocked_at_ms, unblock_at_ms}
    #   state 0 = counted, 1 = already blocked (no bookkeeping), 2 = newly blocked
    _RECORD_FAILURE_SCRIPT = """
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local threshold = tonumber(ARGV[3])
local lockout = tonumber(ARGV[4])

local block = redis.call('HMGET', KEYS[2], 'blocked_at', 'unblock_at', 'attempts')
local unblock_at = tonumber(block[2])
if unblock_at ~= nil then
  if now < unblock_at then
    return {1, tonumber(block[3]) or threshold, tonumber(block[1]) or now, unblock_at}
  end
  redis.call('DEL', KEYS[1], KEYS[2])
end

local data = redis.call('HMGET', KEYS[1], 'count', 'window_start')
local count = tonumber(data[1])
local window_start = tonumber(data[2])
-- a full count with no live block is left over from an elapsed lockout
if count == nil or window_start == nil or (now - window_start) > window or count >= threshold then
  count = 0
  window_start = now
end
count = count + 1
redis.call('HSET', KEYS[1], 'count', count, 'window_start', window_start, 'last_attempt', now)
redis.call('PEXPIRE', KEYS[1], window)

if count >= threshold then
  local unblock = now + lockout
  redis.call('HSET', KEYS[2], 'blocked_at', now, 'unblock_at', unblock, 'attempts', count)
  redis.call('PEXPIRE', KEYS[2], lockout)
  redis.call('PEXPIRE', KEYS[1], lockout)
  return {2, count, now, unblock}
end
return {0, count, 0, 0}
"""

    # KEYS: failure hash, block hash; ARGV: now_ms
    # Returns {blocked, blocked_at_ms, unblock_at_ms}; an elapsed block is
    # removed together with the failure record.
    _CHECK_BLOCK_SCRIPT = """
local now = tonumber(ARGV[1])
local block = redis.call('HMGET', KEYS[2], 'blocked_at', 'unblock_at')
local unblock_at = tonumber(block[2])
if unblock_at == nil then
  return {0, 0, 0}
end
if now < unblock_at then
  return {1, tonumber(block[1]) or 0, unblock_at}
end
redis.call('DEL', KEYS[1], KEYS[2])
return {0, 0, 0}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url
        # An injected client must be created with decode_responses=True
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._record_failure = self.client.register_script(self._RECORD_FAILURE_SCRIPT)
        self._check_block = self.client.register_script(self._CHECK_BLOCK_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime, now: datetime) -> int:
        """Clamp to at least one second; Redis rejects zero or negative TTLs."""

        return max(1, int((expires_at - now).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a
        # temporary startup event loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Token-bucket rate limit; keys are hashed to avoid delimiter collisions."""

        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(tokens))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    # human challenges
    async def set_challenge(
        self, session_id: str, answer: str, expires_at: datetime, now: datetime
    ) -> None:
        payload = {"answer": answer, "expires_at": _to_ms(expires_at)}
        await self.client.set(
            f"captcha:{session_id}",
            json.dumps(payload),
            ex=self._ttl_seconds(expires_at, now),
        )

    async def pop_challenge(self, session_id: str) -> Optional[tuple[str, datetime]]:
        """Atomically fetch and delete a challenge so an answer is judged once."""

        cached = await self.client.getdel(f"captcha:{session_id}")
        if cached is None:
            return None
        try:
            data = json.loads(cached)
            return str(data["answer"]), _from_ms(data["expires_at"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            # Corrupt entry is already gone; treat it as missing
            return None

    # address lockouts
    @staticmethod
    def _failure_keys(address: str) -> list[str]:
        return [f"ipblock:failures:{address}", f"ipblock:block:{address}"]

    async def record_address_failure(
        self,
        address: str,
        now: datetime,
        *,
        window_seconds: int,
        threshold: int,
        lockout_seconds: int,
    ) -> tuple[int, int, Optional[datetime], Optional[datetime]]:
        state, count, blocked_at, unblock_at = await self._record_failure(
            keys=self._failure_keys(address),
            args=[_to_ms(now), window_seconds * 1000, threshold, lockout_seconds * 1000],
        )
        state = int(state)
        if state == 0:
            return state, int(count), None, None
        return state, int(count), _from_ms(blocked_at), _from_ms(unblock_at)

    async def check_address_block(
        self, address: str, now: datetime
    ) -> Optional[tuple[datetime, datetime]]:
        blocked, blocked_at, unblock_at = await self._check_block(
            keys=self._failure_keys(address), args=[_to_ms(now)]
        )
        if not int(blocked):
            return None
        return _from_ms(blocked_at), _from_ms(unblock_at)

    async def clear_address_failures(self, address: str) -> None:
        await self.client.delete(self._failure_keys(address)[0])

    async def get_address_state(self, address: str) -> tuple[dict, dict]:
        failures_key, block_key = self._failure_keys(address)
        pipe = self.client.pipeline()
        pipe.hgetall(failures_key)
        pipe.hgetall(block_key)
        failures, block = await pipe.execute()
        return failures or {}, block or {}

    async def clear_address(self, address: str) -> bool:
        removed = await self.client.delete(*self._failure_keys(address))
        return bool(removed)

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


__all__ = ["RedisCache"]
