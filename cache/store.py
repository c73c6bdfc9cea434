"""
cache/store.py -- Session cache for refresh-token liveness, 2FA challenges
and OAuth state.

Refresh tokens are stateless JWTs; this cache is what makes them revocable.
A refresh token is accepted only while a live, non-revoked record keyed by
its jti exists here. Records expire with the token (TTL = refresh lifetime).

Two backends share one async interface:
  RedisSessionCache  -- production. redis.asyncio with Lua scripts so the
                        check-and-revoke used by rotation and the 2FA attempt
                        counter are atomic across processes.
  MemorySessionCache -- single-process fallback for development and tests,
                        selected when REDIS_URL is empty. An asyncio.Lock
                        gives the same atomicity within one event loop.

Key layout (Redis):
  refresh:{jti}           hash  user_id, issued_at, revoked
  user_refresh:{user_id}  set   of jti -- secondary index for revoke-all
  challenge:{user_id}     hash  code_hash, attempts
  oauth_state:{nonce}     str   JSON payload

Usage:
    cache = build_session_cache(settings)
    await cache.put_refresh_record(jti, user_id, ttl)
    if await cache.consume_refresh_record(jti): ...
    await cache.close()
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Optional

import bcrypt
import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from starlette.concurrency import run_in_threadpool
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from auth.models import ChallengeOutcome
from core.config import Settings

logger = logging.getLogger("tokengate.cache")

_read_retry = retry(
    retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
    reraise=True,
)


def _check_code(code: str, code_hash: str) -> bool:
    try:
        return bcrypt.checkpw(code.encode("utf-8"), code_hash.encode("utf-8"))
    except ValueError:
        return False


class SessionCache:
    """Async interface implemented by both backends."""

    async def put_refresh_record(self, token_id: str, user_id: int, ttl: int) -> None:
        raise NotImplementedError

    async def is_refresh_valid(self, token_id: str) -> bool:
        raise NotImplementedError

    async def consume_refresh_record(self, token_id: str) -> bool:
        """Atomically check a record is live and mark it revoked.

        Returns True for exactly one caller per record. Two concurrent
        rotations of the same refresh token cannot both succeed.
        """
        raise NotImplementedError

    async def revoke(self, token_id: str) -> None:
        raise NotImplementedError

    async def revoke_all_for_user(self, user_id: int) -> int:
        raise NotImplementedError

    async def put_challenge(self, user_id: int, code_hash: str, ttl: int) -> None:
        raise NotImplementedError

    async def check_challenge(self, user_id: int, code: str, max_attempts: int) -> ChallengeOutcome:
        raise NotImplementedError

    async def delete_challenge(self, user_id: int) -> None:
        raise NotImplementedError

    async def put_oauth_state(self, nonce: str, payload: dict, ttl: int) -> None:
        raise NotImplementedError

    async def pop_oauth_state(self, nonce: str) -> Optional[dict]:
        raise NotImplementedError

    async def ping(self) -> bool:
        raise NotImplementedError

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisSessionCache(SessionCache):
    """Redis-backed session cache shared by every API process."""

    # Returns 1 if the record was live and is now revoked, 0 if it was
    # already revoked, -1 if it does not exist (expired or never issued).
    _CONSUME_SCRIPT = """
local key = KEYS[1]
if redis.call('EXISTS', key) == 0 then
  return -1
end
if redis.call('HGET', key, 'revoked') == '1' then
  return 0
end
redis.call('HSET', key, 'revoked', '1')
return 1
"""

    # Increments the attempt counter only when the challenge exists.
    # Returns {attempts, code_hash} or {-1, ''} when missing.
    _ATTEMPT_SCRIPT = """
local key = KEYS[1]
if redis.call('EXISTS', key) == 0 then
  return {-1, ''}
end
local attempts = redis.call('HINCRBY', key, 'attempts', 1)
local code_hash = redis.call('HGET', key, 'code_hash')
return {attempts, code_hash}
"""

    # Revokes every indexed record of one user and drops the index in a
    # single step, so no record registered concurrently loses its index entry
    # without being revoked. Returns the number of records revoked.
    _REVOKE_ALL_SCRIPT = """
local revoked = 0
for _, token_id in ipairs(redis.call('SMEMBERS', KEYS[1])) do
  local key = ARGV[1] .. token_id
  if redis.call('EXISTS', key) == 1 and redis.call('HGET', key, 'revoked') ~= '1' then
    redis.call('HSET', key, 'revoked', '1')
    revoked = revoked + 1
  end
end
redis.call('DEL', KEYS[1])
return revoked
"""

    def __init__(self, client: aioredis.Redis) -> None:
        """Wrap a redis.asyncio client created with decode_responses=True."""
        self.client = client
        self._consume = self.client.register_script(self._CONSUME_SCRIPT)
        self._attempt = self.client.register_script(self._ATTEMPT_SCRIPT)
        self._revoke_all = self.client.register_script(self._REVOKE_ALL_SCRIPT)

    @classmethod
    def from_url(cls, redis_url: str, *, socket_timeout: float = 5.0) -> "RedisSessionCache":
        return cls(
            aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        )

    # ------------------------------------------------------------------
    # Refresh records
    # ------------------------------------------------------------------

    async def put_refresh_record(self, token_id: str, user_id: int, ttl: int) -> None:
        index_key = f"user_refresh:{user_id}"
        pipe = self.client.pipeline()
        pipe.hset(
            f"refresh:{token_id}",
            mapping={"user_id": str(user_id), "issued_at": str(int(time.time())), "revoked": "0"},
        )
        pipe.expire(f"refresh:{token_id}", max(1, ttl))
        pipe.sadd(index_key, token_id)
        # The index lives as long as its newest member.
        pipe.expire(index_key, max(1, ttl))
        await pipe.execute()

    @_read_retry
    async def is_refresh_valid(self, token_id: str) -> bool:
        revoked = await self.client.hget(f"refresh:{token_id}", "revoked")
        return revoked == "0"

    async def consume_refresh_record(self, token_id: str) -> bool:
        result = await self._consume(keys=[f"refresh:{token_id}"])
        return int(result) == 1

    async def revoke(self, token_id: str) -> None:
        key = f"refresh:{token_id}"
        # HSET on a missing key would resurrect it without a TTL.
        if await self.client.exists(key):
            await self.client.hset(key, "revoked", "1")

    async def revoke_all_for_user(self, user_id: int) -> int:
        return int(await self._revoke_all(keys=[f"user_refresh:{user_id}"], args=["refresh:"]))

    # ------------------------------------------------------------------
    # Two-factor challenges
    # ------------------------------------------------------------------

    async def put_challenge(self, user_id: int, code_hash: str, ttl: int) -> None:
        key = f"challenge:{user_id}"
        pipe = self.client.pipeline()
        # Replacing the hash invalidates any previous challenge for the user.
        pipe.delete(key)
        pipe.hset(key, mapping={"code_hash": code_hash, "attempts": "0"})
        pipe.expire(key, max(1, ttl))
        await pipe.execute()

    async def check_challenge(self, user_id: int, code: str, max_attempts: int) -> ChallengeOutcome:
        key = f"challenge:{user_id}"
        attempts, code_hash = await self._attempt(keys=[key])
        attempts = int(attempts)
        if attempts < 0:
            return ChallengeOutcome.EXPIRED
        if attempts > max_attempts:
            await self.client.delete(key)
            return ChallengeOutcome.ATTEMPTS_EXHAUSTED
        if await run_in_threadpool(_check_code, code, code_hash):
            # DEL returning 0 means a concurrent request consumed it first.
            if await self.client.delete(key) == 1:
                return ChallengeOutcome.VALID
            return ChallengeOutcome.EXPIRED
        if attempts >= max_attempts:
            await self.client.delete(key)
            return ChallengeOutcome.ATTEMPTS_EXHAUSTED
        return ChallengeOutcome.INVALID

    async def delete_challenge(self, user_id: int) -> None:
        await self.client.delete(f"challenge:{user_id}")

    # ------------------------------------------------------------------
    # OAuth state
    # ------------------------------------------------------------------

    async def put_oauth_state(self, nonce: str, payload: dict, ttl: int) -> None:
        await self.client.set(f"oauth_state:{nonce}", json.dumps(payload), ex=max(1, ttl))

    async def pop_oauth_state(self, nonce: str) -> Optional[dict]:
        raw = await self.client.getdel(f"oauth_state:{nonce}")
        return json.loads(raw) if raw else None

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()


# ---------------------------------------------------------------------------
# In-process backend
# ---------------------------------------------------------------------------


class MemorySessionCache(SessionCache):
    """Single-process session cache for development and tests.

    Entries are (value, expires_at) pairs checked lazily on access. State is
    lost on restart and not shared between workers, which is why production
    mode requires REDIS_URL.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._refresh: dict[str, tuple[dict, float]] = {}
        self._user_index: dict[int, set[str]] = {}
        self._challenges: dict[int, tuple[dict, float]] = {}
        self._states: dict[str, tuple[dict, float]] = {}

    @staticmethod
    def _live(entry: Optional[tuple[dict, float]]) -> Optional[dict]:
        if entry is None:
            return None
        value, expires_at = entry
        if time.monotonic() >= expires_at:
            return None
        return value

    async def put_refresh_record(self, token_id: str, user_id: int, ttl: int) -> None:
        async with self._lock:
            record = {"user_id": user_id, "issued_at": int(time.time()), "revoked": False}
            self._refresh[token_id] = (record, time.monotonic() + ttl)
            self._user_index.setdefault(user_id, set()).add(token_id)

    async def is_refresh_valid(self, token_id: str) -> bool:
        async with self._lock:
            record = self._live(self._refresh.get(token_id))
            return record is not None and not record["revoked"]

    async def consume_refresh_record(self, token_id: str) -> bool:
        async with self._lock:
            record = self._live(self._refresh.get(token_id))
            if record is None or record["revoked"]:
                return False
            record["revoked"] = True
            return True

    async def revoke(self, token_id: str) -> None:
        async with self._lock:
            record = self._live(self._refresh.get(token_id))
            if record is not None:
                record["revoked"] = True

    async def revoke_all_for_user(self, user_id: int) -> int:
        async with self._lock:
            revoked = 0
            for token_id in self._user_index.pop(user_id, set()):
                record = self._live(self._refresh.get(token_id))
                if record is not None and not record["revoked"]:
                    record["revoked"] = True
                    revoked += 1
            return revoked

    async def put_challenge(self, user_id: int, code_hash: str, ttl: int) -> None:
        async with self._lock:
            self._challenges[user_id] = ({"code_hash": code_hash, "attempts": 0}, time.monotonic() + ttl)

    async def check_challenge(self, user_id: int, code: str, max_attempts: int) -> ChallengeOutcome:
        async with self._lock:
            challenge = self._live(self._challenges.get(user_id))
            if challenge is None:
                self._challenges.pop(user_id, None)
                return ChallengeOutcome.EXPIRED
            challenge["attempts"] += 1
            if await run_in_threadpool(_check_code, code, challenge["code_hash"]):
                del self._challenges[user_id]
                return ChallengeOutcome.VALID
            if challenge["attempts"] >= max_attempts:
                del self._challenges[user_id]
                return ChallengeOutcome.ATTEMPTS_EXHAUSTED
            return ChallengeOutcome.INVALID

    async def delete_challenge(self, user_id: int) -> None:
        async with self._lock:
            self._challenges.pop(user_id, None)

    async def put_oauth_state(self, nonce: str, payload: dict, ttl: int) -> None:
        async with self._lock:
            self._states[nonce] = (dict(payload), time.monotonic() + ttl)

    async def pop_oauth_state(self, nonce: str) -> Optional[dict]:
        async with self._lock:
            return self._live(self._states.pop(nonce, None))

    async def ping(self) -> bool:
        return True

    def purge_expired(self) -> int:
        """Drop expired entries. Returns number of entries removed."""
        now = time.monotonic()
        removed = 0
        for table in (self._refresh, self._challenges, self._states):
            for key in [k for k, (_, exp) in table.items() if exp <= now]:
                del table[key]
                removed += 1
        live = set(self._refresh)
        for user_id in list(self._user_index):
            self._user_index[user_id] &= live
            if not self._user_index[user_id]:
                del self._user_index[user_id]
        return removed


def build_session_cache(settings: Settings) -> SessionCache:
    """Return the Redis backend when REDIS_URL is set, else the memory backend.

    Settings validation already refuses an empty REDIS_URL outside DEBUG mode.
    """
    if settings.redis_url:
        logger.info("Session cache: redis")
        return RedisSessionCache.from_url(settings.redis_url)
    logger.warning("Session cache: in-process memory. Sessions are not shared between workers.")
    return MemorySessionCache()
