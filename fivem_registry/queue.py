"""Work queue for address resolution and resource scans.

Each task kind has a pending set and a processing sorted set scored by lease
expiry. Every transition between them is one atomic store primitive, so any
number of local or remote workers can claim and submit concurrently.
"""

import logging
import re
import time

from .aggregation import AggregationEngine
from .counters import load_counters
from .errors import UpstreamError
from .identity import IdentityStore
from .keys import (
    ADDRESS_COMPLETED,
    ADDRESS_ENQUEUED,
    SCAN_COMPLETED,
    SCAN_ENQUEUED,
    TOTAL_PLAYERS,
    RedisKeys,
)
from .models import (
    AddressResult,
    EnqueueSummary,
    QueueCounters,
    ScanResult,
    Server,
    ServerStatus,
    SubmitSummary,
    SyncSummary,
    Task,
    TaskKind,
)
from .status import ThroughputMeter
from .store import KVStore

logger = logging.getLogger(__name__)

# Endpoints that are already a literal ip[:port] need no upstream lookup
DIRECT_ADDRESS_RE = re.compile(r"^\d{1,3}(\.\d{1,3}){3}(:\d+)?$")


def _dedupe_last(results: list) -> dict:
    """Collapse results by server id; the last result for an id wins."""
    return {r.server_id: r for r in results}


class TaskQueue:
    """Address and scan work queues backed by a KV store."""

    def __init__(
        self,
        store: KVStore,
        keys: RedisKeys,
        identity: IdentityStore,
        engine: AggregationEngine,
        lease_seconds: float = 60.0,
        address_batch_size: int = 30,
        scan_batch_size: int = 200,
        max_address_attempts: int = 5,
        meter: ThroughputMeter | None = None,
    ):
        """Initialize the queue.

        Args:
            store: Backing KV store
            keys: Key layout
            identity: Address mapping store
            engine: Aggregation engine fed by scan submissions
            lease_seconds: Lease duration stamped on claimed tasks
            address_batch_size: Default claim size for address tasks
            scan_batch_size: Default claim size for scan tasks
            max_address_attempts: Failed lookups tolerated before giving up
            meter: Optional throughput meter fed by submissions
        """
        self.store = store
        self.keys = keys
        self.identity = identity
        self.engine = engine
        self.lease_seconds = lease_seconds
        self.batch_sizes = {TaskKind.ADDRESS: address_batch_size, TaskKind.SCAN: scan_batch_size}
        self.max_address_attempts = max_address_attempts
        self.meter = meter or ThroughputMeter()

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue_addresses(self, server_ids: list[str], now: float | None = None) -> EnqueueSummary:
        """Queue ids that lack a fresh address mapping for resolution.

        Idempotent: ids already pending or processing are skipped.

        Args:
            server_ids: Candidate server ids
            now: Reference time for freshness checks

        Returns:
            EnqueueSummary with added and skipped counts
        """
        unique = list(dict.fromkeys(server_ids))
        if not unique:
            return EnqueueSummary()
        fresh = await self.identity.fresh_ids(unique, now=now)
        candidates = [sid for sid in unique if sid not in fresh]
        added = await self.store.enqueue(
            self.keys.pending(TaskKind.ADDRESS),
            self.keys.processing(TaskKind.ADDRESS),
            self.keys.counters(),
            ADDRESS_ENQUEUED,
            candidates,
        )
        if added:
            logger.info(f"Queued {added} servers for address lookup")
        return EnqueueSummary(added=added, skipped=len(unique) - added)

    async def enqueue_scans(self, now: float | None = None) -> int:
        """Queue every id with a fresh address mapping and no active scan task.

        Returns:
            Number of ids newly queued
        """
        now = now if now is not None else time.time()
        mappings = await self.identity.all_mappings()
        fresh = [
            sid
            for sid, mapping in mappings.items()
            if not mapping.is_stale(now, self.identity.freshness_seconds)
        ]
        added = await self._enqueue_scan_ids(fresh)
        if added:
            logger.info(f"Queued {added} servers for scanning")
        return added

    async def _enqueue_scan_ids(self, server_ids: list[str]) -> int:
        return await self.store.enqueue(
            self.keys.pending(TaskKind.SCAN),
            self.keys.processing(TaskKind.SCAN),
            self.keys.counters(),
            SCAN_ENQUEUED,
            server_ids,
        )

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    async def claim_batch(
        self,
        worker_id: str,
        preferred_kind: TaskKind = TaskKind.ADDRESS,
        max_items: int | None = None,
        now: float | None = None,
    ) -> list[Task]:
        """Claim a batch of tasks, preferring one kind and falling back to the other.

        Expired leases are reclaimed first. The claim itself is a single
        atomic move-and-stamp, so no id is ever handed to two callers.

        Args:
            worker_id: Caller identifier (logging only)
            preferred_kind: Kind to try first
            max_items: Batch cap (defaults to the kind's batch size)
            now: Reference time for lease stamping

        Returns:
            Claimed tasks, all of one kind; empty when both queues are empty
        """
        now = now if now is not None else time.time()
        await self.reclaim_stale(now=now)

        for kind in (preferred_kind, preferred_kind.other):
            count = max_items if max_items is not None else self.batch_sizes[kind]
            expires_at = now + self.lease_seconds
            ids = await self.store.claim(
                self.keys.pending(kind), self.keys.processing(kind), count, expires_at
            )
            if not ids:
                continue

            if kind == TaskKind.ADDRESS:
                tasks = [Task(kind=kind, server_id=sid, lease_expires=expires_at) for sid in ids]
            else:
                tasks = await self._scan_tasks(ids, expires_at)
            logger.info(f"Worker {worker_id} claimed {len(tasks)} {kind.value} tasks")
            return tasks

        logger.debug(f"Worker {worker_id} found no work")
        return []

    async def _scan_tasks(self, ids: list[str], expires_at: float) -> list[Task]:
        mappings = await self.identity.get_many(ids)
        missing = [sid for sid in ids if sid not in mappings]
        if missing:
            # Address vanished between enqueue and claim; nothing to scan
            dropped = await self.store.ack(
                self.keys.processing(TaskKind.SCAN),
                self.keys.pending(TaskKind.SCAN),
                missing,
                requeue=False,
                counters=self.keys.counters(),
                counter_field=SCAN_COMPLETED,
            )
            logger.warning(f"Dropped {len(dropped)} scan tasks without an address")
        return [
            Task(
                kind=TaskKind.SCAN,
                server_id=sid,
                address=mappings[sid].address,
                lease_expires=expires_at,
            )
            for sid in ids
            if sid in mappings
        ]

    async def reclaim_stale(self, now: float | None = None) -> int:
        """Return expired leases of both kinds to their pending queues."""
        now = now if now is not None else time.time()
        total = 0
        for kind in TaskKind:
            ids = await self.store.reclaim(self.keys.processing(kind), self.keys.pending(kind), now)
            if ids:
                logger.warning(f"Reclaimed {len(ids)} expired {kind.value} leases")
                total += len(ids)
        return total

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    async def submit_address_results(
        self, results: list[AddressResult], now: float | None = None
    ) -> SubmitSummary:
        """Apply address lookup outcomes.

        Successes are written to the identity store and queued for scanning.
        Failures are requeued until ``max_address_attempts``; a 404 or the
        attempt limit marks the server unavailable. Results for ids not in the
        processing set are ignored.

        Args:
            results: Lookup outcomes
            now: Resolution timestamp

        Returns:
            SubmitSummary with success, failed, requeued and ignored counts
        """
        now = now if now is not None else time.time()
        by_id = _dedupe_last(results)
        processing = self.keys.processing(TaskKind.ADDRESS)
        pending = self.keys.pending(TaskKind.ADDRESS)

        succeeded = [r for r in by_id.values() if r.ok]
        failed = [r for r in by_id.values() if not r.ok]

        done = await self.store.ack(
            processing,
            pending,
            [r.server_id for r in succeeded],
            requeue=False,
            counters=self.keys.counters(),
            counter_field=ADDRESS_COMPLETED,
        )
        done_set = set(done)
        resolved = {r.server_id: r.address for r in succeeded if r.server_id in done_set}
        if resolved:
            await self.identity.record_many(resolved, now=now)
            await self.store.hdel(self.keys.address_attempts(), *resolved)
            await self._enqueue_scan_ids(list(resolved))

        retry_ids: list[str] = []
        give_up_ids: list[str] = []
        for result in failed:
            if await self.store.zscore(processing, result.server_id) is None:
                continue
            if result.status_code == 404:
                give_up_ids.append(result.server_id)
                continue
            attempts = await self.store.hincrby(self.keys.address_attempts(), result.server_id, 1)
            if attempts >= self.max_address_attempts:
                give_up_ids.append(result.server_id)
            else:
                retry_ids.append(result.server_id)

        requeued = await self.store.ack(processing, pending, retry_ids, requeue=True)
        given_up = await self.store.ack(
            processing,
            pending,
            give_up_ids,
            requeue=False,
            counters=self.keys.counters(),
            counter_field=ADDRESS_COMPLETED,
        )
        for sid in given_up:
            await self.engine.mark_status(sid, ServerStatus.UNAVAILABLE)
        if given_up:
            await self.store.hdel(self.keys.address_attempts(), *given_up)

        completed = len(resolved) + len(given_up)
        self.meter.record(TaskKind.ADDRESS, completed + len(requeued), now=now)

        summary = SubmitSummary(
            kind=TaskKind.ADDRESS,
            success=len(resolved),
            failed=len(requeued) + len(given_up),
            requeued=len(requeued),
            ignored=len(results) - len(resolved) - len(requeued) - len(given_up),
        )
        logger.info(
            f"Address results: {summary.success} resolved, {summary.requeued} requeued, "
            f"{len(given_up)} unavailable, {summary.ignored} ignored"
        )
        return summary

    async def submit_scan_results(
        self, results: list[ScanResult], now: float | None = None
    ) -> SubmitSummary:
        """Apply scan outcomes and fold them into the aggregation engine.

        A failed scan is an offline result, not a retry; the id is scanned
        again on the next scan refresh.
        """
        now = now if now is not None else time.time()
        by_id = _dedupe_last(results)
        done = await self.store.ack(
            self.keys.processing(TaskKind.SCAN),
            self.keys.pending(TaskKind.SCAN),
            list(by_id),
            requeue=False,
            counters=self.keys.counters(),
            counter_field=SCAN_COMPLETED,
        )
        accepted = [by_id[sid] for sid in done]
        if accepted:
            await self.store.hset(self.keys.scan_timestamps(), {r.server_id: str(now) for r in accepted})

        online, offline = await self.engine.fold(accepted)
        self.meter.record(TaskKind.SCAN, len(accepted), now=now)

        summary = SubmitSummary(
            kind=TaskKind.SCAN,
            success=online,
            failed=offline,
            ignored=len(results) - len(accepted),
            online=online,
            offline=offline,
        )
        logger.info(
            f"Scan results: {online} online, {offline} offline, {summary.ignored} ignored"
        )
        return summary

    # ------------------------------------------------------------------
    # Stats and maintenance
    # ------------------------------------------------------------------

    async def stats(self) -> QueueCounters:
        return await load_counters(self.store, self.keys)

    async def refresh_stale(self, now: float | None = None) -> dict[str, int]:
        """Requeue stale and unavailable ids for lookup and fresh ids for scanning."""
        now = now if now is not None else time.time()
        stale = await self.identity.stale_ids(now=now)
        unavailable = await self.store.smembers(self.keys.status_set(ServerStatus.UNAVAILABLE))
        address_summary = await self.enqueue_addresses(stale + sorted(unavailable), now=now)
        queued_scan = await self.enqueue_scans(now=now)
        logger.info(
            f"Refresh pass: {len(stale)} stale, {len(unavailable)} unavailable, "
            f"{address_summary.added} queued for lookup, {queued_scan} queued for scan"
        )
        return {
            "stale": len(stale),
            "unavailable": len(unavailable),
            "queued_for_address": address_summary.added,
            "queued_for_scan": queued_scan,
        }

    async def sync_servers(self, servers: list[Server], now: float | None = None) -> SyncSummary:
        """Reconcile the store with an upstream server list snapshot.

        Replaces the catalog, withdraws vanished servers, writes direct
        ``ip:port`` endpoints straight to the identity store and queues the
        rest for lookup.

        Args:
            servers: Parsed upstream snapshot
            now: Reference time

        Returns:
            SyncSummary

        Raises:
            UpstreamError: When the snapshot is empty
        """
        if not servers:
            raise UpstreamError("Refusing to sync an empty server list")
        now = now if now is not None else time.time()
        incoming = {s.id: s for s in servers}
        existing = await self.store.smembers(self.keys.all_servers())
        removed = sorted(existing - incoming.keys())
        new = incoming.keys() - existing

        if removed:
            await self.forget_servers(removed)

        await self.store.hset(
            self.keys.catalog(),
            {sid: s.model_dump_json(by_alias=True) for sid, s in incoming.items()},
        )
        await self.store.sadd(self.keys.all_servers(), *incoming)
        await self.store.hset(self.keys.live_players(), {sid: str(s.players) for sid, s in incoming.items()})
        await self.store.hset(
            self.keys.counters(), {TOTAL_PLAYERS: str(sum(s.players for s in servers))}
        )

        direct = {
            sid: s.connect_endpoint
            for sid, s in incoming.items()
            if s.connect_endpoint and DIRECT_ADDRESS_RE.match(s.connect_endpoint)
        }
        if direct:
            await self.identity.record_many(direct, now=now)

        unavailable = await self.store.smembers(self.keys.status_set(ServerStatus.UNAVAILABLE))
        lookup_ids = [sid for sid in incoming if sid not in direct and sid not in unavailable]
        address_summary = await self.enqueue_addresses(lookup_ids, now=now)
        queued_scan = await self.enqueue_scans(now=now)
        self.engine.mark_dirty()

        summary = SyncSummary(
            total_servers=len(incoming),
            new_servers=len(new),
            removed_servers=len(removed),
            direct_addresses=len(direct),
            queued_for_address=address_summary.added,
            queued_for_scan=queued_scan,
        )
        logger.info(
            f"Synced {summary.total_servers} servers ({summary.new_servers} new, "
            f"{summary.removed_servers} removed, {summary.direct_addresses} direct)"
        )
        return summary

    async def forget_servers(self, server_ids: list[str]) -> None:
        """Remove vanished servers from the catalog, the index and the identity store."""
        await self.store.srem(self.keys.all_servers(), *server_ids)
        await self.engine.forget(server_ids)
        await self.identity.forget(*server_ids)
        await self.store.hdel(self.keys.catalog(), *server_ids)
        await self.store.hdel(self.keys.live_players(), *server_ids)
        await self.store.hdel(self.keys.address_attempts(), *server_ids)
        await self.store.hdel(self.keys.scan_timestamps(), *server_ids)

    async def reset_queues(self) -> None:
        """Empty both queues and zero the enqueue/completion counters."""
        await self.store.delete(
            *(self.keys.pending(kind) for kind in TaskKind),
            *(self.keys.processing(kind) for kind in TaskKind),
        )
        await self.store.hset(
            self.keys.counters(),
            {field: "0" for field in (ADDRESS_ENQUEUED, ADDRESS_COMPLETED, SCAN_ENQUEUED, SCAN_COMPLETED)},
        )
        logger.info("Reset address and scan queues")

    async def reset_all(self) -> None:
        """Drop every key owned by the pipeline."""
        server_ids = await self.store.smembers(self.keys.all_servers())
        resources = await self.store.hgetall(self.keys.resource_server_counts())
        await self.store.delete(*(self.keys.manifest(sid) for sid in server_ids))
        await self.store.delete(*(self.keys.resource_servers(name) for name in resources))
        await self.store.delete(
            *(self.keys.pending(kind) for kind in TaskKind),
            *(self.keys.processing(kind) for kind in TaskKind),
            self.keys.addresses(),
            self.keys.address_timestamps(),
            self.keys.address_attempts(),
            self.keys.all_servers(),
            self.keys.status_hash(),
            *self.keys.status_sets(),
            self.keys.live_players(),
            self.keys.scan_timestamps(),
            self.keys.catalog(),
            self.keys.resource_server_counts(),
            self.keys.resource_player_counts(),
            self.keys.attributed_players(),
            self.keys.snapshot(),
            self.keys.counters(),
        )
        self.engine.mark_dirty()
        logger.info(f"Reset all state ({len(server_ids)} servers, {len(resources)} resources)")
