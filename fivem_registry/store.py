"""KV store adapters.

The pipeline only ever talks to the store through :class:`KVStore`. Plain
hash/set/blob operations map one to one onto Redis commands; the compound
primitives (claim, reclaim, ack, enqueue, set_status, replace_manifest)
must each execute as a single atomic operation, which ``RedisStore`` gets
from Lua scripts and ``MemoryStore`` gets from never awaiting mid-mutation.
"""

from __future__ import annotations

import functools
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .errors import StoreUnavailableError

logger = logging.getLogger(__name__)

# Redis rejects very long argument lists; writes are chunked to this size.
CHUNK_SIZE = 1000


class KVStore(ABC):
    """Hash/set/blob store with atomic work-queue primitives."""

    @abstractmethod
    async def ping(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    # Blobs
    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None: ...

    @abstractmethod
    async def delete(self, *keys: str) -> None: ...

    # Hashes
    @abstractmethod
    async def hget(self, key: str, field: str) -> str | None: ...

    @abstractmethod
    async def hmget(self, key: str, fields: list[str]) -> list[str | None]: ...

    @abstractmethod
    async def hgetall(self, key: str) -> dict[str, str]: ...

    @abstractmethod
    async def hset(self, key: str, mapping: dict[str, str]) -> None: ...

    @abstractmethod
    async def hset_multi(self, updates: dict[str, dict[str, str]]) -> None:
        """Write several hashes as one atomic unit."""

    @abstractmethod
    async def hdel(self, key: str, *fields: str) -> None: ...

    @abstractmethod
    async def hincrby(self, key: str, field: str, amount: int = 1) -> int: ...

    # Sets
    @abstractmethod
    async def sadd(self, key: str, *members: str) -> int: ...

    @abstractmethod
    async def srem(self, key: str, *members: str) -> int: ...

    @abstractmethod
    async def smembers(self, key: str) -> set[str]: ...

    @abstractmethod
    async def sismember(self, key: str, member: str) -> bool: ...

    # Cardinalities
    @abstractmethod
    async def cardinalities(self, requests: list[tuple[str, str]]) -> list[int]:
        """Read many sizes at once.

        Args:
            requests: ``(op, key)`` pairs where op is ``scard``, ``zcard`` or ``hlen``

        Returns:
            Sizes in request order
        """

    @abstractmethod
    async def zscore(self, key: str, member: str) -> float | None: ...

    # Atomic primitives
    @abstractmethod
    async def claim(
        self, pending: str, processing: str, count: int, expires_at: float
    ) -> list[str]:
        """Pop up to ``count`` ids from ``pending`` into ``processing`` stamped with ``expires_at``."""

    @abstractmethod
    async def reclaim(self, processing: str, pending: str, now: float) -> list[str]:
        """Move every id whose lease expired at or before ``now`` back to ``pending``."""

    @abstractmethod
    async def ack(
        self,
        processing: str,
        pending: str,
        ids: list[str],
        requeue: bool,
        counters: str | None = None,
        counter_field: str | None = None,
    ) -> list[str]:
        """Remove ids from ``processing``; optionally re-add them to ``pending``.

        When not requeueing and ``counters`` is given, ``counter_field`` is
        incremented by the number of ids removed, in the same operation.

        Returns:
            The ids that were actually in the processing set
        """

    @abstractmethod
    async def enqueue(
        self,
        pending: str,
        processing: str,
        counters: str,
        counter_field: str,
        ids: list[str],
    ) -> int:
        """Add ids that are neither pending nor processing; bump the counter by the number added."""

    @abstractmethod
    async def set_status(
        self,
        status_sets: list[str],
        status_hash: str,
        server_id: str,
        index: int | None,
        value: str | None,
    ) -> None:
        """Move a server into ``status_sets[index]`` (or out of all of them when index is None)."""

    @abstractmethod
    async def replace_manifest(
        self,
        manifest_prefix: str,
        resource_prefix: str,
        server_counts: str,
        player_counts: str,
        attributed: str,
        server_id: str,
        resources: list[str],
        players: int,
    ) -> int:
        """Withdraw a server's previous attribution and apply the new manifest.

        Returns:
            Number of resources attributed to the server
        """


def _chunks(items: list, size: int = CHUNK_SIZE) -> Iterable[list]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------

_CLAIM_LUA = """
local ids = redis.call('SPOP', KEYS[1], ARGV[1])
for _, id in ipairs(ids) do
  redis.call('ZADD', KEYS[2], ARGV[2], id)
end
return ids
"""

_RECLAIM_LUA = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
for _, id in ipairs(ids) do
  redis.call('ZREM', KEYS[1], id)
  redis.call('SADD', KEYS[2], id)
end
return ids
"""

# KEYS: processing, pending[, counters]. ARGV: requeue flag, counter field, ids...
_ACK_LUA = """
local done = {}
for i = 3, #ARGV do
  if redis.call('ZREM', KEYS[1], ARGV[i]) == 1 then
    if ARGV[1] == '1' then
      redis.call('SADD', KEYS[2], ARGV[i])
    end
    table.insert(done, ARGV[i])
  end
end
if ARGV[1] == '0' and KEYS[3] and #done > 0 then
  redis.call('HINCRBY', KEYS[3], ARGV[2], #done)
end
return done
"""

_ENQUEUE_LUA = """
local added = 0
for i = 2, #ARGV do
  if not redis.call('ZSCORE', KEYS[2], ARGV[i]) then
    added = added + redis.call('SADD', KEYS[1], ARGV[i])
  end
end
if added > 0 then
  redis.call('HINCRBY', KEYS[3], ARGV[1], added)
end
return added
"""

# KEYS: status sets..., status hash (last). ARGV: id, index (0 = clear), value
_SET_STATUS_LUA = """
local n = #KEYS - 1
for i = 1, n do
  redis.call('SREM', KEYS[i], ARGV[1])
end
local idx = tonumber(ARGV[2])
if idx == 0 then
  redis.call('HDEL', KEYS[#KEYS], ARGV[1])
else
  redis.call('SADD', KEYS[idx], ARGV[1])
  redis.call('HSET', KEYS[#KEYS], ARGV[1], ARGV[3])
end
return idx
"""

# KEYS: server counts, player counts, attributed players
# ARGV: id, manifest prefix, resource prefix, players, resources...
_REPLACE_MANIFEST_LUA = """
local id = ARGV[1]
local mkey = ARGV[2] .. id
local old = redis.call('SMEMBERS', mkey)
local old_players = tonumber(redis.call('HGET', KEYS[3], id) or '0')
for _, r in ipairs(old) do
  redis.call('HINCRBY', KEYS[1], r, -1)
  if old_players ~= 0 then
    redis.call('HINCRBY', KEYS[2], r, 0 - old_players)
  end
  redis.call('SREM', ARGV[3] .. r, id)
end
redis.call('DEL', mkey)
local players = tonumber(ARGV[4])
for i = 5, #ARGV do
  local r = ARGV[i]
  redis.call('SADD', mkey, r)
  redis.call('HINCRBY', KEYS[1], r, 1)
  if players ~= 0 then
    redis.call('HINCRBY', KEYS[2], r, players)
  end
  redis.call('SADD', ARGV[3] .. r, id)
end
if #ARGV >= 5 then
  redis.call('HSET', KEYS[3], id, ARGV[4])
else
  redis.call('HDEL', KEYS[3], id)
end
return #ARGV - 4
"""


def _wrap_errors(func):
    """Translate redis connectivity failures into StoreUnavailableError."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise StoreUnavailableError(f"Redis unavailable: {e}") from e

    return wrapper


class RedisStore(KVStore):
    """KVStore backed by Redis (redis-py asyncio client)."""

    def __init__(self, client: Redis):
        """Initialize the store.

        Args:
            client: Redis client created with ``decode_responses=True``
        """
        self.client = client
        self._claim = client.register_script(_CLAIM_LUA)
        self._reclaim = client.register_script(_RECLAIM_LUA)
        self._ack = client.register_script(_ACK_LUA)
        self._enqueue = client.register_script(_ENQUEUE_LUA)
        self._set_status = client.register_script(_SET_STATUS_LUA)
        self._replace_manifest = client.register_script(_REPLACE_MANIFEST_LUA)

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        return cls(Redis.from_url(url, decode_responses=True))

    @_wrap_errors
    async def ping(self) -> None:
        await self.client.ping()

    async def close(self) -> None:
        await self.client.aclose()

    @_wrap_errors
    async def get(self, key: str) -> str | None:
        return await self.client.get(key)

    @_wrap_errors
    async def set(self, key: str, value: str) -> None:
        await self.client.set(key, value)

    @_wrap_errors
    async def delete(self, *keys: str) -> None:
        if keys:
            await self.client.delete(*keys)

    @_wrap_errors
    async def hget(self, key: str, field: str) -> str | None:
        return await self.client.hget(key, field)

    @_wrap_errors
    async def hmget(self, key: str, fields: list[str]) -> list[str | None]:
        if not fields:
            return []
        return await self.client.hmget(key, fields)

    @_wrap_errors
    async def hgetall(self, key: str) -> dict[str, str]:
        return await self.client.hgetall(key)

    @_wrap_errors
    async def hset(self, key: str, mapping: dict[str, str]) -> None:
        items = list(mapping.items())
        for chunk in _chunks(items):
            await self.client.hset(key, mapping=dict(chunk))

    @_wrap_errors
    async def hset_multi(self, updates: dict[str, dict[str, str]]) -> None:
        async with self.client.pipeline(transaction=True) as pipe:
            for key, mapping in updates.items():
                if mapping:
                    pipe.hset(key, mapping=mapping)
            await pipe.execute()

    @_wrap_errors
    async def hdel(self, key: str, *fields: str) -> None:
        for chunk in _chunks(list(fields)):
            await self.client.hdel(key, *chunk)

    @_wrap_errors
    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return await self.client.hincrby(key, field, amount)

    @_wrap_errors
    async def sadd(self, key: str, *members: str) -> int:
        added = 0
        for chunk in _chunks(list(members)):
            added += await self.client.sadd(key, *chunk)
        return added

    @_wrap_errors
    async def srem(self, key: str, *members: str) -> int:
        removed = 0
        for chunk in _chunks(list(members)):
            removed += await self.client.srem(key, *chunk)
        return removed

    @_wrap_errors
    async def smembers(self, key: str) -> set[str]:
        return set(await self.client.smembers(key))

    @_wrap_errors
    async def sismember(self, key: str, member: str) -> bool:
        return bool(await self.client.sismember(key, member))

    @_wrap_errors
    async def cardinalities(self, requests: list[tuple[str, str]]) -> list[int]:
        async with self.client.pipeline(transaction=False) as pipe:
            for op, key in requests:
                getattr(pipe, op)(key)
            results = await pipe.execute()
        return [int(r or 0) for r in results]

    @_wrap_errors
    async def zscore(self, key: str, member: str) -> float | None:
        return await self.client.zscore(key, member)

    @_wrap_errors
    async def claim(
        self, pending: str, processing: str, count: int, expires_at: float
    ) -> list[str]:
        if count <= 0:
            return []
        return list(await self._claim(keys=[pending, processing], args=[count, expires_at]))

    @_wrap_errors
    async def reclaim(self, processing: str, pending: str, now: float) -> list[str]:
        return list(await self._reclaim(keys=[processing, pending], args=[now]))

    @_wrap_errors
    async def ack(
        self,
        processing: str,
        pending: str,
        ids: list[str],
        requeue: bool,
        counters: str | None = None,
        counter_field: str | None = None,
    ) -> list[str]:
        if not ids:
            return []
        flag = "1" if requeue else "0"
        keys = [processing, pending]
        if counters and counter_field:
            keys.append(counters)
        return list(await self._ack(keys=keys, args=[flag, counter_field or "", *ids]))

    @_wrap_errors
    async def enqueue(
        self,
        pending: str,
        processing: str,
        counters: str,
        counter_field: str,
        ids: list[str],
    ) -> int:
        added = 0
        for chunk in _chunks(ids):
            added += int(
                await self._enqueue(
                    keys=[pending, processing, counters], args=[counter_field, *chunk]
                )
            )
        return added

    @_wrap_errors
    async def set_status(
        self,
        status_sets: list[str],
        status_hash: str,
        server_id: str,
        index: int | None,
        value: str | None,
    ) -> None:
        # Lua tables are 1-based; 0 means "clear"
        lua_index = 0 if index is None else index + 1
        await self._set_status(
            keys=[*status_sets, status_hash], args=[server_id, lua_index, value or ""]
        )

    @_wrap_errors
    async def replace_manifest(
        self,
        manifest_prefix: str,
        resource_prefix: str,
        server_counts: str,
        player_counts: str,
        attributed: str,
        server_id: str,
        resources: list[str],
        players: int,
    ) -> int:
        return int(
            await self._replace_manifest(
                keys=[server_counts, player_counts, attributed],
                args=[server_id, manifest_prefix, resource_prefix, int(players), *resources],
            )
        )


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class MemoryStore(KVStore):
    """Single-process KVStore.

    Every method completes its mutation without awaiting, so each call is
    atomic with respect to other coroutines on the same event loop.
    """

    def __init__(self):
        self._strings: dict[str, str] = {}
        self._hashes: dict[str, dict[str, str]] = {}
        self._sets: dict[str, set[str]] = {}
        self._zsets: dict[str, dict[str, float]] = {}

    async def ping(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def get(self, key: str) -> str | None:
        return self._strings.get(key)

    async def set(self, key: str, value: str) -> None:
        self._strings[key] = value

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._strings.pop(key, None)
            self._hashes.pop(key, None)
            self._sets.pop(key, None)
            self._zsets.pop(key, None)

    async def hget(self, key: str, field: str) -> str | None:
        return self._hashes.get(key, {}).get(field)

    async def hmget(self, key: str, fields: list[str]) -> list[str | None]:
        h = self._hashes.get(key, {})
        return [h.get(f) for f in fields]

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self._hashes.get(key, {}))

    async def hset(self, key: str, mapping: dict[str, str]) -> None:
        if mapping:
            self._hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})

    async def hset_multi(self, updates: dict[str, dict[str, str]]) -> None:
        for key, mapping in updates.items():
            if mapping:
                self._hashes.setdefault(key, {}).update(
                    {k: str(v) for k, v in mapping.items()}
                )

    async def hdel(self, key: str, *fields: str) -> None:
        h = self._hashes.get(key)
        if h is None:
            return
        for f in fields:
            h.pop(f, None)
        if not h:
            del self._hashes[key]

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return self._hincr(key, field, amount)

    def _hincr(self, key: str, field: str, amount: int) -> int:
        h = self._hashes.setdefault(key, {})
        value = int(h.get(field, "0")) + amount
        h[field] = str(value)
        return value

    async def sadd(self, key: str, *members: str) -> int:
        s = self._sets.setdefault(key, set())
        before = len(s)
        s.update(members)
        return len(s) - before

    async def srem(self, key: str, *members: str) -> int:
        s = self._sets.get(key)
        if not s:
            return 0
        before = len(s)
        s.difference_update(members)
        if not s:
            del self._sets[key]
        return before - len(s)

    async def smembers(self, key: str) -> set[str]:
        return set(self._sets.get(key, set()))

    async def sismember(self, key: str, member: str) -> bool:
        return member in self._sets.get(key, set())

    async def cardinalities(self, requests: list[tuple[str, str]]) -> list[int]:
        sizes = []
        for op, key in requests:
            if op == "scard":
                sizes.append(len(self._sets.get(key, ())))
            elif op == "zcard":
                sizes.append(len(self._zsets.get(key, {})))
            elif op == "hlen":
                sizes.append(len(self._hashes.get(key, {})))
            else:
                raise ValueError(f"Unsupported cardinality op: {op}")
        return sizes

    async def zscore(self, key: str, member: str) -> float | None:
        return self._zsets.get(key, {}).get(member)

    async def claim(
        self, pending: str, processing: str, count: int, expires_at: float
    ) -> list[str]:
        s = self._sets.get(pending)
        claimed: list[str] = []
        if not s or count <= 0:
            return claimed
        z = self._zsets.setdefault(processing, {})
        while s and len(claimed) < count:
            server_id = s.pop()
            z[server_id] = expires_at
            claimed.append(server_id)
        if not s:
            del self._sets[pending]
        return claimed

    async def reclaim(self, processing: str, pending: str, now: float) -> list[str]:
        z = self._zsets.get(processing, {})
        expired = [sid for sid, expiry in z.items() if expiry <= now]
        if expired:
            target = self._sets.setdefault(pending, set())
            for sid in expired:
                del z[sid]
                target.add(sid)
        return expired

    async def ack(
        self,
        processing: str,
        pending: str,
        ids: list[str],
        requeue: bool,
        counters: str | None = None,
        counter_field: str | None = None,
    ) -> list[str]:
        z = self._zsets.get(processing, {})
        done = []
        for sid in ids:
            if sid in z:
                del z[sid]
                if requeue:
                    self._sets.setdefault(pending, set()).add(sid)
                done.append(sid)
        if done and not requeue and counters and counter_field:
            self._hincr(counters, counter_field, len(done))
        return done

    async def enqueue(
        self,
        pending: str,
        processing: str,
        counters: str,
        counter_field: str,
        ids: list[str],
    ) -> int:
        z = self._zsets.get(processing, {})
        s = self._sets.setdefault(pending, set())
        added = 0
        for sid in ids:
            if sid not in z and sid not in s:
                s.add(sid)
                added += 1
        if not s:
            del self._sets[pending]
        if added:
            self._hincr(counters, counter_field, added)
        return added

    async def set_status(
        self,
        status_sets: list[str],
        status_hash: str,
        server_id: str,
        index: int | None,
        value: str | None,
    ) -> None:
        for key in status_sets:
            s = self._sets.get(key)
            if s is not None:
                s.discard(server_id)
        if index is None:
            self._hashes.get(status_hash, {}).pop(server_id, None)
            return
        self._sets.setdefault(status_sets[index], set()).add(server_id)
        self._hashes.setdefault(status_hash, {})[server_id] = value or ""

    async def replace_manifest(
        self,
        manifest_prefix: str,
        resource_prefix: str,
        server_counts: str,
        player_counts: str,
        attributed: str,
        server_id: str,
        resources: list[str],
        players: int,
    ) -> int:
        mkey = manifest_prefix + server_id
        old = self._sets.pop(mkey, set())
        old_players = int(self._hashes.get(attributed, {}).get(server_id, "0"))
        for r in old:
            self._hincr(server_counts, r, -1)
            if old_players:
                self._hincr(player_counts, r, -old_players)
            members = self._sets.get(resource_prefix + r)
            if members is not None:
                members.discard(server_id)
                if not members:
                    del self._sets[resource_prefix + r]
        for r in resources:
            self._sets.setdefault(mkey, set()).add(r)
            self._hincr(server_counts, r, 1)
            if players:
                self._hincr(player_counts, r, players)
            self._sets.setdefault(resource_prefix + r, set()).add(server_id)
        if resources:
            self._hashes.setdefault(attributed, {})[server_id] = str(int(players))
        else:
            self._hashes.get(attributed, {}).pop(server_id, None)
        return len(resources)


def create_store(backend: str, redis_url: str) -> KVStore:
    """Build the configured store backend."""
    if backend == "memory":
        logger.info("Using in-memory store (single process only)")
        return MemoryStore()
    logger.info(f"Using Redis store at {redis_url.split('@')[-1]}")
    return RedisStore.from_url(redis_url)
