"""
Shared cache tier implementations.

Entries travel as JSON text together with their absolute expiry time, so the
expiry check is made against the caller's clock no matter which backend
holds the entry.
"""
import json
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Protocol, Set, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from orderflow.core.errors import CacheUnavailableError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SharedEntry:
    payload: str
    expires_at: float


class SharedCacheBackend(Protocol):
    async def get(self, key: str) -> Optional[SharedEntry]: ...

    async def set(self, key: str, payload: str, expires_at: float, ttl: float, tags: Iterable[str]) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def invalidate_tag(self, tag: str) -> int: ...


class MemorySharedCache:
    """Process-local stand-in for the shared tier when no Redis is configured."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: Dict[str, Tuple[SharedEntry, Tuple[str, ...]]] = {}
        self._tags: Dict[str, Set[str]] = {}

    async def get(self, key: str) -> Optional[SharedEntry]:
        found = self._entries.get(key)
        if found is None:
            return None
        entry, _ = found
        if self._clock() > entry.expires_at:
            await self.delete(key)
            return None
        return entry

    async def set(self, key: str, payload: str, expires_at: float, ttl: float, tags: Iterable[str]) -> None:
        await self.delete(key)
        tags = tuple(tags)
        self._entries[key] = (SharedEntry(payload, expires_at), tags)
        for tag in tags:
            self._tags.setdefault(tag, set()).add(key)

    async def delete(self, key: str) -> None:
        found = self._entries.pop(key, None)
        if found is None:
            return
        for tag in found[1]:
            keys = self._tags.get(tag)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._tags[tag]

    async def invalidate_tag(self, tag: str) -> int:
        keys = self._tags.pop(tag, set())
        for key in keys:
            await self.delete(key)
        return len(keys)

    def __len__(self) -> int:
        return len(self._entries)


# KEYS: entry key, then one key per tag. ARGV: body, ttl ms, expiry score,
# write time, logical key, tag key prefix.
SET_SCRIPT = """
local previous = redis.call('GET', KEYS[1])
if previous then
  local ok, body = pcall(cjson.decode, previous)
  if ok and type(body) == 'table' and type(body['tags']) == 'table' then
    for _, tag in ipairs(body['tags']) do
      redis.call('ZREM', ARGV[6] .. tag, ARGV[5])
    end
  end
end
redis.call('SET', KEYS[1], ARGV[1], 'PX', ARGV[2])
local ttl = tonumber(ARGV[2])
for i = 2, #KEYS do
  redis.call('ZADD', KEYS[i], ARGV[3], ARGV[5])
  redis.call('ZREMRANGEBYSCORE', KEYS[i], '-inf', '(' .. ARGV[4])
  if redis.call('PTTL', KEYS[i]) < ttl then
    redis.call('PEXPIRE', KEYS[i], ttl)
  end
end
return #KEYS - 1
"""

# KEYS: entry key. ARGV: logical key, tag key prefix.
DELETE_SCRIPT = """
local previous = redis.call('GET', KEYS[1])
if previous then
  local ok, body = pcall(cjson.decode, previous)
  if ok and type(body) == 'table' and type(body['tags']) == 'table' then
    for _, tag in ipairs(body['tags']) do
      redis.call('ZREM', ARGV[2] .. tag, ARGV[1])
    end
  end
end
return redis.call('DEL', KEYS[1])
"""

# KEYS: tag key. ARGV: entry key prefix.
INVALIDATE_SCRIPT = """
local members = redis.call('ZRANGE', KEYS[1], 0, -1)
for _, member in ipairs(members) do
  redis.call('DEL', ARGV[1] .. member)
end
redis.call('DEL', KEYS[1])
return #members
"""


class RedisSharedCache:
    """
    Shared tier on Redis. Each value is stored under ``<prefix><key>`` with a
    PX expiry, and its JSON body remembers its tags. Each tag is a sorted set
    of keys scored by expiry. Writes run as Lua scripts so the value and its
    tag memberships change together: a rewrite leaves the tags it dropped,
    expired members are pruned, and a tag set lives as long as its longest
    lived member.
    """

    def __init__(self, client: aioredis.Redis, prefix: str = "orderflow:cache:"):
        self.client = client
        self.prefix = prefix
        self._set_script = client.register_script(SET_SCRIPT)
        self._delete_script = client.register_script(DELETE_SCRIPT)
        self._invalidate_script = client.register_script(INVALIDATE_SCRIPT)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _tag_prefix(self) -> str:
        return f"{self.prefix}tag:"

    def _tag_key(self, tag: str) -> str:
        return f"{self._tag_prefix()}{tag}"

    async def get(self, key: str) -> Optional[SharedEntry]:
        try:
            raw = await self.client.get(self._key(key))
        except (RedisError, OSError) as exc:
            raise CacheUnavailableError("get", exc) from exc
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            body = json.loads(raw)
            return SharedEntry(payload=body["payload"], expires_at=float(body["expires_at"]))
        except (ValueError, KeyError, TypeError):
            logger.warning(f"Dropping undecodable shared cache entry {key}")
            await self.delete(key)
            return None

    async def set(self, key: str, payload: str, expires_at: float, ttl: float, tags: Iterable[str]) -> None:
        tags = sorted(set(tags))
        body = json.dumps({"payload": payload, "expires_at": expires_at, "tags": tags})
        ttl_ms = max(1, math.ceil(ttl * 1000))
        try:
            await self._set_script(
                keys=[self._key(key)] + [self._tag_key(tag) for tag in tags],
                args=[body, ttl_ms, repr(expires_at), repr(expires_at - ttl), key, self._tag_prefix()],
            )
        except (RedisError, OSError) as exc:
            raise CacheUnavailableError("set", exc) from exc

    async def delete(self, key: str) -> None:
        try:
            await self._delete_script(keys=[self._key(key)], args=[key, self._tag_prefix()])
        except (RedisError, OSError) as exc:
            raise CacheUnavailableError("delete", exc) from exc

    async def invalidate_tag(self, tag: str) -> int:
        try:
            removed = await self._invalidate_script(keys=[self._tag_key(tag)], args=[self.prefix])
        except (RedisError, OSError) as exc:
            raise CacheUnavailableError("invalidate_tag", exc) from exc
        return int(removed)
