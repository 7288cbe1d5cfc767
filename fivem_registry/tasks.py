"""Background scheduler and worker loops for the discovery pipeline."""

import asyncio
import logging
import time
from typing import Protocol

import httpx

from .aggregation import AggregationEngine
from .cache import ServerCache
from .errors import UpstreamError
from .fetcher import AddressFetcher
from .models import (
    AddressResult,
    QueueCounters,
    ScanResult,
    SubmitSummary,
    SyncSummary,
    Task,
    TaskKind,
)
from .queue import TaskQueue
from .scanner import DirectScanner
from .scrapers import fetch_server_list
from .status import percent

logger = logging.getLogger(__name__)


class WorkSource(Protocol):
    """What a worker loop needs from a queue, local or remote."""

    async def stats(self) -> QueueCounters: ...

    async def claim_batch(
        self, worker_id: str, preferred_kind: TaskKind = TaskKind.ADDRESS, max_items: int | None = None
    ) -> list[Task]: ...

    async def submit_address_results(self, results: list[AddressResult]) -> SubmitSummary: ...

    async def submit_scan_results(self, results: list[ScanResult]) -> SubmitSummary: ...


def choose_kind(counters: QueueCounters, priority_ratio: float = 0.9) -> TaskKind:
    """Prefer address work until enough servers have an address."""
    coverage = percent(counters.with_address, counters.total_servers)
    if counters.pending_address > 0 and coverage < priority_ratio * 100:
        return TaskKind.ADDRESS
    return TaskKind.SCAN


class PipelineWorker:
    """Claim, execute and submit loop shared by in-process and remote workers."""

    def __init__(
        self,
        queue: WorkSource,
        fetcher: AddressFetcher,
        scanner: DirectScanner,
        worker_id: str = "local",
        prefer: TaskKind | None = None,
        priority_ratio: float = 0.9,
        idle_interval: float = 5.0,
    ):
        """Initialize the worker.

        Args:
            queue: TaskQueue, or any object with the same claim/submit methods
            fetcher: Address fetcher for address tasks
            scanner: Direct scanner for scan tasks
            worker_id: Identifier reported with every claim
            prefer: Fixed preferred kind (chosen from coverage when None)
            priority_ratio: Address coverage below which address work is preferred
            idle_interval: Sleep between polls when no work is available
        """
        self.queue = queue
        self.fetcher = fetcher
        self.scanner = scanner
        self.worker_id = worker_id
        self.prefer = prefer
        self.priority_ratio = priority_ratio
        self.idle_interval = idle_interval
        self.processed = {kind: 0 for kind in TaskKind}
        self._running = False
        self._task: asyncio.Task | None = None

    async def run_once(self) -> tuple[TaskKind | None, int]:
        """Claim and process a single batch.

        Returns:
            Tuple of (kind processed, number of tasks); (None, 0) when idle
        """
        if self.prefer is not None:
            kind = self.prefer
        else:
            kind = choose_kind(await self.queue.stats(), self.priority_ratio)

        tasks = await self.queue.claim_batch(self.worker_id, kind)
        if not tasks:
            return None, 0

        claimed_kind = tasks[0].kind
        if claimed_kind == TaskKind.ADDRESS:
            results = await self.fetcher.resolve_batch([t.server_id for t in tasks])
            await self.queue.submit_address_results(results)
        else:
            results = await self.scanner.scan_batch(tasks)
            await self.queue.submit_scan_results(results)

        self.processed[claimed_kind] += len(tasks)
        return claimed_kind, len(tasks)

    async def run(self) -> None:
        logger.info(f"Worker {self.worker_id} started")
        while self._running:
            try:
                kind, count = await self.run_once()
                if not count:
                    await asyncio.sleep(self.idle_interval)
                elif kind == TaskKind.ADDRESS:
                    await self.fetcher.wait()
            except asyncio.CancelledError:
                logger.info(f"Worker {self.worker_id} cancelled")
                break
            except Exception as e:
                logger.error(f"Error in worker {self.worker_id}: {e}", exc_info=True)
                await asyncio.sleep(self.idle_interval)

    async def start(self) -> None:
        if self._running:
            logger.warning(f"Worker {self.worker_id} already running")
            return
        self._running = True
        self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info(
            f"Worker {self.worker_id} stopped "
            f"({self.processed[TaskKind.ADDRESS]} lookups, {self.processed[TaskKind.SCAN]} scans)"
        )


class RefreshScheduler:
    """Runs the periodic upstream sync, the scan refresh pass and the local worker."""

    def __init__(
        self,
        queue: TaskQueue,
        engine: AggregationEngine,
        client: httpx.AsyncClient,
        server_list_url: str,
        sync_interval: float = 600.0,
        scan_refresh_interval: float = 3600.0,
        worker: PipelineWorker | None = None,
        server_cache: ServerCache | None = None,
    ):
        """Initialize the refresh scheduler.

        Args:
            queue: Task queue to sync into
            engine: Aggregation engine whose flush loop is owned by the app lifetime
            client: HTTP client for the upstream list
            server_list_url: Upstream list stream URL
            sync_interval: Seconds between upstream syncs
            scan_refresh_interval: Seconds between scan refresh passes
            worker: Optional in-process worker started alongside the loops
            server_cache: Catalog cache invalidated after each sync
        """
        self.queue = queue
        self.engine = engine
        self.client = client
        self.server_list_url = server_list_url
        self.sync_interval = sync_interval
        self.scan_refresh_interval = scan_refresh_interval
        self.worker = worker
        self.server_cache = server_cache
        self.last_sync: float | None = None
        self._sync_lock = asyncio.Lock()
        self._tasks: dict[str, asyncio.Task] = {}
        self._running = False

    async def sync(self, reset: bool = False, force: bool = False) -> SyncSummary:
        """Fetch the upstream list and reconcile the store with it.

        Args:
            reset: Empty the queues before syncing
            force: Drop all pipeline state before syncing

        Returns:
            SyncSummary

        Raises:
            UpstreamError: When the upstream list cannot be fetched or is empty
        """
        async with self._sync_lock:
            servers = await fetch_server_list(self.client, self.server_list_url)
            if not servers:
                raise UpstreamError("Upstream server list is empty; keeping existing state")

            if force:
                await self.queue.reset_all()
            elif reset:
                await self.queue.reset_queues()

            summary = await self.queue.sync_servers(servers)
            self.last_sync = time.time()
            if self.server_cache:
                self.server_cache.invalidate()
            return summary

    async def _periodic_sync_loop(self) -> None:
        logger.info(f"Starting periodic sync loop (interval: {self.sync_interval}s)")
        while self._running:
            try:
                await self.sync()
                await asyncio.sleep(self.sync_interval)
            except asyncio.CancelledError:
                logger.info("Sync loop cancelled")
                break
            except Exception as e:
                logger.error(f"Error in sync loop: {e}", exc_info=True)
                await asyncio.sleep(60)

    async def _periodic_scan_refresh_loop(self) -> None:
        logger.info(
            f"Starting periodic scan refresh loop (interval: {self.scan_refresh_interval}s)"
        )
        while self._running:
            try:
                await asyncio.sleep(self.scan_refresh_interval)
                await self.queue.refresh_stale()
            except asyncio.CancelledError:
                logger.info("Scan refresh loop cancelled")
                break
            except Exception as e:
                logger.error(f"Error in scan refresh loop: {e}", exc_info=True)
                await asyncio.sleep(60)

    async def start(self) -> None:
        """Start the flush loop, the periodic loops and the local worker."""
        if self._running:
            logger.warning("Refresh scheduler already running")
            return

        self._running = True
        logger.info("Starting refresh scheduler")

        await self.engine.start()
        self._tasks["sync"] = asyncio.create_task(self._periodic_sync_loop())
        self._tasks["scan_refresh"] = asyncio.create_task(self._periodic_scan_refresh_loop())
        if self.worker:
            await self.worker.start()

    async def stop(self) -> None:
        """Stop every background task."""
        if not self._running:
            logger.warning("Refresh scheduler not running")
            return

        self._running = False
        logger.info("Stopping refresh scheduler")

        if self.worker:
            await self.worker.stop()

        for name, task in self._tasks.items():
            if not task.done():
                task.cancel()
                logger.info(f"Cancelled {name} task")
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()

        await self.engine.stop()
        logger.info("Refresh scheduler stopped")
