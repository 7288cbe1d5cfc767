"""TTL read-through projection of the server catalog."""

import logging
import time

from pydantic import ValidationError

from .keys import RedisKeys
from .models import Server
from .store import KVStore

logger = logging.getLogger(__name__)


class ServerCache:
    """In-process copy of the catalog hash, reloaded after ``ttl`` seconds.

    The KV store stays the source of truth; this only saves re-decoding the
    whole catalog on every read request.
    """

    def __init__(self, store: KVStore, keys: RedisKeys, ttl: float = 60.0):
        self.store = store
        self.keys = keys
        self.ttl = ttl
        self._servers: dict[str, Server] | None = None
        self._ranked: list[Server] = []
        self._loaded_at = 0.0

    def invalidate(self) -> None:
        self._servers = None

    async def _load(self) -> dict[str, Server]:
        now = time.monotonic()
        if self._servers is not None and now - self._loaded_at < self.ttl:
            return self._servers

        raw = await self.store.hgetall(self.keys.catalog())
        servers = {}
        for sid, blob in raw.items():
            try:
                servers[sid] = Server.model_validate_json(blob)
            except ValidationError as e:
                logger.warning(f"Skipping unreadable catalog entry {sid}: {e.error_count()} errors")
        self._servers = servers
        self._ranked = sorted(servers.values(), key=lambda s: (-s.players, s.name.lower()))
        self._loaded_at = now
        logger.debug(f"Loaded {len(servers)} catalog entries")
        return servers

    async def get(self, server_id: str) -> Server | None:
        return (await self._load()).get(server_id)

    async def search(self, query: str = "", limit: int = 50, offset: int = 0) -> tuple[list[Server], int]:
        """Search servers by name, id, game type or map; most players first.

        Returns:
            Tuple of (page, total matches)
        """
        await self._load()
        needle = query.strip().lower()
        if needle:
            matches = [
                s
                for s in self._ranked
                if needle in s.name.lower()
                or needle in s.id.lower()
                or needle in s.gametype.lower()
                or needle in s.mapname.lower()
            ]
        else:
            matches = self._ranked
        return matches[offset : offset + limit], len(matches)
