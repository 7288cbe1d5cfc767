"""Aggregation engine: resource -> (server count, player count) index.

Each server's last folded manifest is kept as its own set, so re-folding a
server first withdraws its previous contribution. A server therefore
contributes to a resource at most once no matter how many times it is
scanned, and the aggregate hashes always equal the sum over current
manifests.
"""

import asyncio
import heapq
import logging
import re
import time

from rapidfuzz import fuzz, process

from .counters import load_counters
from .keys import STATUS_ORDER, RedisKeys
from .models import ResourceStat, ScanResult, ServerStatus, Snapshot
from .store import KVStore

logger = logging.getLogger(__name__)

MIN_RESOURCE_NAME = 2
MAX_RESOURCE_NAME = 100
FUZZY_CUTOFF = 70

# Framework prefixes such as "qb-" or "esx_"
RELATED_PREFIX_RE = re.compile(r"^([a-zA-Z0-9]+[-_])")


def clean_resources(resources: list) -> list[str]:
    """Drop noise from a manifest and dedupe it, keeping first-seen order.

    Args:
        resources: Raw resource list from a probe

    Returns:
        Resource names that are strings of sensible length, each once
    """
    seen: set[str] = set()
    cleaned = []
    for name in resources or []:
        if not isinstance(name, str):
            continue
        if len(name) < MIN_RESOURCE_NAME or len(name) >= MAX_RESOURCE_NAME:
            continue
        if "\x00" in name or name in seen:
            continue
        seen.add(name)
        cleaned.append(name)
    return cleaned


class AggregationEngine:
    """Folds scan results into the resource index and materializes snapshots."""

    def __init__(
        self,
        store: KVStore,
        keys: RedisKeys,
        top_k: int = 100,
        flush_batch: int = 500,
        flush_max_delay: float = 5.0,
        cache_ttl: float = 60.0,
    ):
        """Initialize the engine.

        Args:
            store: Backing KV store
            keys: Key layout
            top_k: Size of the materialized ranking head
            flush_batch: Mutations that force an early snapshot flush
            flush_max_delay: Longest time a mutation waits before being flushed
            cache_ttl: Lifetime of the in-process resource list
        """
        self.store = store
        self.keys = keys
        self.top_k = top_k
        self.flush_batch = flush_batch
        self.flush_max_delay = flush_max_delay
        self.cache_ttl = cache_ttl

        self._dirty = 0
        self._flush_event = asyncio.Event()
        self._flush_task: asyncio.Task | None = None
        self._running = False
        self._resource_cache: list[ResourceStat] | None = None
        self._resource_cache_at = 0.0

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def fold(self, results: list[ScanResult]) -> tuple[int, int]:
        """Fold a batch of scan results into the index.

        Online results replace the server's manifest and mark it online.
        Offline results only mark the server offline; its last manifest keeps
        counting until the server vanishes from the upstream list.

        Args:
            results: Results already accepted by the task queue

        Returns:
            Tuple of (online, offline) counts
        """
        online = offline = 0
        for result in results:
            if result.online:
                players = result.players
                if players is None:
                    players = await self._live_players(result.server_id)
                resources = clean_resources(result.resources)
                await self.store.replace_manifest(
                    self.keys.manifest_prefix(),
                    self.keys.resource_servers_prefix(),
                    self.keys.resource_server_counts(),
                    self.keys.resource_player_counts(),
                    self.keys.attributed_players(),
                    result.server_id,
                    resources,
                    max(int(players), 0),
                )
                await self._set_status(result.server_id, ServerStatus.ONLINE)
                online += 1
            else:
                await self._set_status(result.server_id, ServerStatus.OFFLINE)
                offline += 1

        if results:
            self.mark_dirty(len(results))
        logger.debug(f"Folded {len(results)} scan results ({online} online, {offline} offline)")
        return online, offline

    async def forget(self, server_ids: list[str]) -> None:
        """Withdraw servers from the index entirely (used for vanished servers)."""
        for sid in server_ids:
            await self.store.replace_manifest(
                self.keys.manifest_prefix(),
                self.keys.resource_servers_prefix(),
                self.keys.resource_server_counts(),
                self.keys.resource_player_counts(),
                self.keys.attributed_players(),
                sid,
                [],
                0,
            )
            await self.store.set_status(
                self.keys.status_sets(), self.keys.status_hash(), sid, None, None
            )
        if server_ids:
            self.mark_dirty(len(server_ids))

    async def mark_status(self, server_id: str, status: ServerStatus) -> None:
        await self._set_status(server_id, status)
        self.mark_dirty()

    async def _set_status(self, server_id: str, status: ServerStatus) -> None:
        await self.store.set_status(
            self.keys.status_sets(),
            self.keys.status_hash(),
            server_id,
            STATUS_ORDER.index(status),
            status.value,
        )

    async def _live_players(self, server_id: str) -> int:
        value = await self.store.hget(self.keys.live_players(), server_id)
        try:
            return int(value) if value else 0
        except ValueError:
            return 0

    def mark_dirty(self, count: int = 1) -> None:
        self._dirty += count
        self._resource_cache = None
        if self._dirty >= self.flush_batch:
            self._flush_event.set()

    @property
    def dirty(self) -> int:
        return self._dirty

    # ------------------------------------------------------------------
    # Snapshot materialization
    # ------------------------------------------------------------------

    async def _load_stats(self) -> list[ResourceStat]:
        servers = await self.store.hgetall(self.keys.resource_server_counts())
        players = await self.store.hgetall(self.keys.resource_player_counts())
        stats = []
        for name, count in servers.items():
            server_count = int(count)
            if server_count <= 0:
                continue
            stats.append(
                ResourceStat(name=name, servers=server_count, players=int(players.get(name) or 0))
            )
        return stats

    async def build_snapshot(self) -> Snapshot:
        stats = await self._load_stats()
        top = heapq.nsmallest(self.top_k, stats, key=ResourceStat.rank_key)
        counters = await load_counters(self.store, self.keys)
        return Snapshot(
            top_resources=top,
            total_resources=len(stats),
            total_servers=counters.total_servers,
            servers_online=counters.online,
            servers_scanned=counters.scanned,
            servers_with_address=counters.with_address,
            total_players=counters.total_players,
            pending_address=counters.pending_address,
            pending_scan=counters.pending_scan,
            generated_at=time.time(),
        )

    async def flush(self) -> Snapshot:
        """Materialize and persist the snapshot blob, clearing the dirty count."""
        dirty, self._dirty = self._dirty, 0
        try:
            snapshot = await self.build_snapshot()
            await self.store.set(self.keys.snapshot(), snapshot.model_dump_json(by_alias=True))
        except Exception:
            self._dirty += dirty
            raise
        logger.info(
            f"Flushed snapshot: {snapshot.total_resources} resources, "
            f"{snapshot.servers_online} online ({dirty} pending mutations)"
        )
        return snapshot

    async def get_snapshot(self) -> Snapshot:
        """Return the last materialized snapshot, building one if none exists."""
        blob = await self.store.get(self.keys.snapshot())
        if blob:
            try:
                return Snapshot.model_validate_json(blob)
            except ValueError as e:
                logger.warning(f"Discarding unreadable snapshot blob: {e}")
        return await self.flush()

    async def _flush_loop(self) -> None:
        logger.info(
            f"Starting snapshot flush loop (batch: {self.flush_batch}, "
            f"max delay: {self.flush_max_delay}s)"
        )
        while self._running:
            try:
                try:
                    await asyncio.wait_for(self._flush_event.wait(), timeout=self.flush_max_delay)
                except asyncio.TimeoutError:
                    pass
                self._flush_event.clear()
                if self._dirty:
                    await self.flush()
            except asyncio.CancelledError:
                logger.info("Snapshot flush loop cancelled")
                break
            except Exception as e:
                logger.error(f"Error in snapshot flush loop: {e}", exc_info=True)
                await asyncio.sleep(self.flush_max_delay)

    async def start(self) -> None:
        if self._running:
            logger.warning("Snapshot flush loop already running")
            return
        self._running = True
        self._flush_task = asyncio.create_task(self._flush_loop())

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._flush_task and not self._flush_task.done():
            self._flush_task.cancel()
            await asyncio.gather(self._flush_task, return_exceptions=True)
        self._flush_task = None
        if self._dirty:
            try:
                await self.flush()
            except Exception as e:
                logger.warning(f"Final snapshot flush failed: {e}")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def all_resources(self) -> list[ResourceStat]:
        """Every resource with at least one server, in ranking order (TTL cached)."""
        now = time.monotonic()
        if self._resource_cache is not None and now - self._resource_cache_at < self.cache_ttl:
            return self._resource_cache
        stats = sorted(await self._load_stats(), key=ResourceStat.rank_key)
        self._resource_cache = stats
        self._resource_cache_at = now
        return stats

    async def search_resources(
        self, query: str = "", limit: int = 50, offset: int = 0
    ) -> tuple[list[ResourceStat], int]:
        """Search resources by name.

        Substring matches are returned in ranking order. When nothing matches
        literally, falls back to fuzzy matching ordered by match score.

        Args:
            query: Search text (empty returns everything)
            limit: Page size
            offset: Page offset

        Returns:
            Tuple of (page, total matches)
        """
        resources = await self.all_resources()
        query = query.strip()
        if query:
            needle = query.lower()
            matches = [r for r in resources if needle in r.name.lower()]
            if not matches:
                scored = process.extract(
                    query,
                    [r.name for r in resources],
                    scorer=fuzz.WRatio,
                    limit=None,
                    score_cutoff=FUZZY_CUTOFF,
                )
                # (name, score, index); stable sort keeps ranking order on ties
                scored = sorted(scored, key=lambda m: -m[1])
                matches = [resources[index] for _, _, index in scored]
        else:
            matches = resources
        return matches[offset : offset + limit], len(matches)

    async def resource_stat(self, name: str) -> ResourceStat:
        servers = await self.store.hget(self.keys.resource_server_counts(), name)
        players = await self.store.hget(self.keys.resource_player_counts(), name)
        return ResourceStat(name=name, servers=int(servers or 0), players=int(players or 0))

    async def servers_with_resource(self, name: str) -> list[str]:
        return sorted(await self.store.smembers(self.keys.resource_servers(name)))

    async def manifest(self, server_id: str) -> list[str]:
        return sorted(await self.store.smembers(self.keys.manifest(server_id)))

    async def related_resources(self, name: str, limit: int = 10) -> list[ResourceStat]:
        """Other resources sharing the framework prefix of ``name`` (e.g. ``qb-``)."""
        match = RELATED_PREFIX_RE.match(name)
        if not match:
            return []
        prefix = match.group(1)
        related = [r for r in await self.all_resources() if r.name.startswith(prefix) and r.name != name]
        return related[:limit]
