"""Identity store: server id -> last resolved address and resolution time."""

import logging
import time

from .keys import RedisKeys
from .models import AddressMapping
from .store import KVStore

logger = logging.getLogger(__name__)


class IdentityStore:
    """Address mappings kept in two parallel hashes (address, timestamp).

    At most one mapping exists per id; a new resolution overwrites the old one
    (last writer wins).
    """

    def __init__(self, store: KVStore, keys: RedisKeys, freshness_seconds: float):
        self.store = store
        self.keys = keys
        self.freshness_seconds = freshness_seconds

    async def record_many(self, addresses: dict[str, str], now: float | None = None) -> int:
        """Write resolved addresses stamped with the current time.

        Args:
            addresses: Mapping of server id to resolved address
            now: Resolution timestamp (defaults to the current time)

        Returns:
            Number of mappings written
        """
        if not addresses:
            return 0
        stamp = str(now if now is not None else time.time())
        await self.store.hset_multi(
            {
                self.keys.addresses(): dict(addresses),
                self.keys.address_timestamps(): {sid: stamp for sid in addresses},
            }
        )
        logger.debug(f"Recorded {len(addresses)} address mappings")
        return len(addresses)

    async def get(self, server_id: str) -> AddressMapping | None:
        mappings = await self.get_many([server_id])
        return mappings.get(server_id)

    async def get_many(self, server_ids: list[str]) -> dict[str, AddressMapping]:
        if not server_ids:
            return {}
        addresses = await self.store.hmget(self.keys.addresses(), server_ids)
        stamps = await self.store.hmget(self.keys.address_timestamps(), server_ids)

        mappings = {}
        for sid, address, stamp in zip(server_ids, addresses, stamps):
            if not address:
                continue
            try:
                resolved_at = float(stamp) if stamp else 0.0
            except ValueError:
                resolved_at = 0.0
            mappings[sid] = AddressMapping(server_id=sid, address=address, resolved_at=resolved_at)
        return mappings

    async def all_mappings(self) -> dict[str, AddressMapping]:
        addresses = await self.store.hgetall(self.keys.addresses())
        stamps = await self.store.hgetall(self.keys.address_timestamps())
        mappings = {}
        for sid, address in addresses.items():
            try:
                resolved_at = float(stamps.get(sid) or 0)
            except ValueError:
                resolved_at = 0.0
            mappings[sid] = AddressMapping(server_id=sid, address=address, resolved_at=resolved_at)
        return mappings

    async def fresh_ids(self, server_ids: list[str], now: float | None = None) -> set[str]:
        """Return the subset of ids holding a non-stale mapping."""
        now = now if now is not None else time.time()
        mappings = await self.get_many(server_ids)
        return {
            sid
            for sid, mapping in mappings.items()
            if not mapping.is_stale(now, self.freshness_seconds)
        }

    async def stale_ids(self, now: float | None = None) -> list[str]:
        """Return every id whose mapping is older than the freshness window."""
        now = now if now is not None else time.time()
        return [
            sid
            for sid, mapping in (await self.all_mappings()).items()
            if mapping.is_stale(now, self.freshness_seconds)
        ]

    async def forget(self, *server_ids: str) -> None:
        if not server_ids:
            return
        await self.store.hdel(self.keys.addresses(), *server_ids)
        await self.store.hdel(self.keys.address_timestamps(), *server_ids)
