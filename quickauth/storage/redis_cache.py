from __future__ import annotations

import hashlib
import json
import threading
import time
from typing import Any, Dict, Optional, Protocol, Tuple

import redis.asyncio as aioredis
from redis import Redis

from quickauth.storage.models import SessionEntry

SESSION_PREFIX = "auth:session:"
DENYLIST_PREFIX = "auth:denylist:"


def token_fingerprint(token: str) -> str:
    """Deny-list key component; raw tokens are never used as cache keys."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class SessionCache(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def set_session(self, entry: SessionEntry, ttl_seconds: int) -> None: ...

    async def get_session(self, account_id: str) -> Optional[SessionEntry]: ...

    async def delete_session(self, account_id: str) -> None: ...

    async def touch_session(self, account_id: str, last_activity_at: Any) -> None: ...

    async def deny_token(self, token: str, ttl_seconds: int) -> None: ...

    async def is_token_denied(self, token: str) -> bool: ...


class _SessionHelpers:
    """Session and deny-list operations expressed over get/set/delete."""

    async def set_session(self, entry: SessionEntry, ttl_seconds: int) -> None:
        await self.set(
            f"{SESSION_PREFIX}{entry.account_id}",
            json.dumps(entry.to_dict()),
            ttl_seconds,
        )

    async def get_session(self, account_id: str) -> Optional[SessionEntry]:
        raw = await self.get(f"{SESSION_PREFIX}{account_id}")
        if not raw:
            return None
        try:
            return SessionEntry.from_dict(json.loads(raw))
        except (json.JSONDecodeError, TypeError, KeyError, ValueError):
            return None

    async def delete_session(self, account_id: str) -> None:
        await self.delete(f"{SESSION_PREFIX}{account_id}")

    async def deny_token(self, token: str, ttl_seconds: int) -> None:
        # A token already past expiry needs no entry
        if ttl_seconds > 0:
            await self.set(f"{DENYLIST_PREFIX}{token_fingerprint(token)}", "1", ttl_seconds)

    async def is_token_denied(self, token: str) -> bool:
        return bool(await self.get(f"{DENYLIST_PREFIX}{token_fingerprint(token)}"))


class RedisCache(_SessionHelpers):
    """Thin Redis wrapper for session entries and the token deny-list."""

    # Rewrites last_activity_at without extending the remaining TTL
    _TOUCH_SESSION_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl <= 0 then
  return 0
end
local entry = cjson.decode(raw)
entry['last_activity_at'] = ARGV[1]
redis.call('SET', KEYS[1], cjson.encode(entry), 'PX', ttl)
return 1
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._touch_session = self.client.register_script(self._TOUCH_SESSION_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=max(int(ttl_seconds), 1))

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def touch_session(self, account_id: str, last_activity_at: Any) -> None:
        await self._touch_session(
            keys=[f"{SESSION_PREFIX}{account_id}"],
            args=[last_activity_at.isoformat()],
        )

    async def is_token_denied(self, token: str) -> bool:
        return bool(
            await self.client.exists(f"{DENYLIST_PREFIX}{token_fingerprint(token)}")
        )

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class MemoryCache(_SessionHelpers):
    """Process-local stand-in for Redis used in tests and dev fallback.

    Entries expire lazily on read. Values are stored as strings exactly as
    they would be in Redis.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: Dict[str, Tuple[str, float]] = {}

    def verify_connection(self) -> None:
        return None

    def _live(self, key: str, now: float) -> Optional[Tuple[str, float]]:
        item = self._data.get(key)
        if item is None:
            return None
        if item[1] <= now:
            self._data.pop(key, None)
            return None
        return item

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            item = self._live(key, time.monotonic())
            return item[0] if item else None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._data[key] = (value, time.monotonic() + max(int(ttl_seconds), 1))

    async def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    async def touch_session(self, account_id: str, last_activity_at: Any) -> None:
        key = f"{SESSION_PREFIX}{account_id}"
        with self._lock:
            item = self._live(key, time.monotonic())
            if item is None:
                return
            entry = json.loads(item[0])
            entry["last_activity_at"] = last_activity_at.isoformat()
            self._data[key] = (json.dumps(entry), item[1])

    def ttl_remaining(self, key: str) -> Optional[float]:
        with self._lock:
            item = self._live(key, time.monotonic())
            return item[1] - time.monotonic() if item else None

    def expire_now(self, key: str) -> None:
        """Force an entry past its TTL (test helper)."""
        with self._lock:
            if key in self._data:
                value, _ = self._data[key]
                self._data[key] = (value, time.monotonic() - 1)

    async def close(self) -> None:
        with self._lock:
            self._data.clear()
