"""Tests for the worker loop and the refresh scheduler."""

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest
from conftest import LIST_URL, LOOKUP_URL, upstream_handler
from fivem_registry.errors import UpstreamError
from fivem_registry.fetcher import AddressFetcher
from fivem_registry.models import QueueCounters, TaskKind
from fivem_registry.scanner import DirectScanner
from fivem_registry.tasks import PipelineWorker, RefreshScheduler, choose_kind


@pytest.fixture
async def client():
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream_handler)) as c:
        yield c


@pytest.fixture
def worker(queue, client):
    return PipelineWorker(
        queue,
        AddressFetcher(client, lookup_url=LOOKUP_URL, sub_batch_delay=0),
        DirectScanner(client, timeout=1.0),
        worker_id="test",
        idle_interval=0.01,
    )


class TestChooseKind:
    def test_prefers_address_below_ratio(self):
        counters = QueueCounters(total_servers=100, with_address=50, pending_address=10)
        assert choose_kind(counters, 0.9) == TaskKind.ADDRESS

    def test_prefers_scan_above_ratio(self):
        counters = QueueCounters(total_servers=100, with_address=95, pending_address=5)
        assert choose_kind(counters, 0.9) == TaskKind.SCAN

    def test_prefers_scan_without_pending_addresses(self):
        counters = QueueCounters(total_servers=100, with_address=10)
        assert choose_kind(counters) == TaskKind.SCAN

    def test_empty_system(self):
        assert choose_kind(QueueCounters()) == TaskKind.SCAN


class TestPipelineWorker:
    """Tests for the claim/execute/submit loop."""

    @pytest.mark.asyncio
    async def test_address_then_scan(self, worker, queue, identity, engine):
        await queue.enqueue_addresses(["abc"])

        kind, count = await worker.run_once()
        assert (kind, count) == (TaskKind.ADDRESS, 1)
        assert (await identity.get("abc")).address == "10.0.0.1:30120"

        kind, count = await worker.run_once()
        assert (kind, count) == (TaskKind.SCAN, 1)
        assert (await engine.resource_stat("qb-core")).servers == 1
        assert (await queue.stats()).online == 1

    @pytest.mark.asyncio
    async def test_idle_when_no_work(self, worker):
        assert await worker.run_once() == (None, 0)

    @pytest.mark.asyncio
    async def test_fixed_preference(self, worker, queue, identity):
        await queue.enqueue_addresses(["abc"])
        await identity.record_many({"other": "10.0.0.1:30120"})
        await queue.enqueue_scans()
        worker.prefer = TaskKind.SCAN

        kind, _ = await worker.run_once()

        assert kind == TaskKind.SCAN

    @pytest.mark.asyncio
    async def test_loop_survives_errors(self, worker):
        worker.queue = AsyncMock()
        worker.queue.stats.side_effect = [UpstreamError("down")] + [QueueCounters()] * 100
        worker.queue.claim_batch.return_value = []

        await worker.start()
        await asyncio.sleep(0.05)
        await worker.stop()

        assert worker.queue.stats.await_count >= 2


class TestRefreshScheduler:
    """Tests for the upstream sync and background lifecycle."""

    @pytest.fixture
    def scheduler(self, queue, engine, client):
        return RefreshScheduler(queue, engine, client, LIST_URL, sync_interval=3600, scan_refresh_interval=3600)

    @pytest.mark.asyncio
    async def test_sync(self, scheduler, queue, identity):
        summary = await scheduler.sync()

        assert summary.total_servers == 2
        assert summary.direct_addresses == 1
        assert summary.queued_for_address == 1
        assert summary.queued_for_scan == 1
        assert scheduler.last_sync is not None
        assert (await identity.get("direct")).address == "10.0.0.2:30120"

    @pytest.mark.asyncio
    async def test_sync_with_reset(self, scheduler, queue):
        await queue.enqueue_addresses(["stale-task"])

        await scheduler.sync(reset=True)
        pending = await queue.store.smembers(queue.keys.pending(TaskKind.ADDRESS))

        assert pending == {"abc"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "content", [b"", b"\xff\xff\xff\x7f" + b"\x00" * 8], ids=["empty", "malformed-first-frame"]
    )
    @pytest.mark.parametrize("flags", [{}, {"reset": True}, {"force": True}])
    async def test_empty_snapshot_keeps_state(self, scheduler, queue, identity, content, flags):
        """Test that an unusable upstream list never wipes the known servers."""
        await scheduler.sync()
        last_sync = scheduler.last_sync

        def handler(request):
            return httpx.Response(200, content=content)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as broken:
            scheduler.client = broken
            with pytest.raises(UpstreamError):
                await scheduler.sync(**flags)
        counters = await queue.stats()

        assert counters.total_servers == 2
        assert counters.with_address == 1
        assert counters.pending_address == 1
        assert scheduler.last_sync == last_sync
        assert (await identity.get("direct")).address == "10.0.0.2:30120"

    @pytest.mark.asyncio
    async def test_start_and_stop(self, scheduler, queue):
        await scheduler.start()
        for _ in range(100):
            if scheduler.last_sync:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

        assert scheduler.last_sync is not None
        assert (await queue.stats()).total_servers == 2
