"""Tests for the aggregation engine and snapshot materialization."""

import asyncio

import pytest
from fivem_registry.aggregation import AggregationEngine, clean_resources
from fivem_registry.models import ScanResult, ServerStatus, Snapshot


def online(server_id, resources, players=None):
    return ScanResult(
        server_id=server_id, address=f"{server_id}:30120", online=True, resources=resources, players=players
    )


class TestCleanResources:
    def test_drops_short_long_and_null_names(self):
        names = ["a", "ok", "x" * 100, "x" * 99, "bad\x00name", 7, "ok"]
        assert clean_resources(names) == ["ok", "x" * 99]

    def test_preserves_first_seen_order(self):
        assert clean_resources(["b-res", "a-res", "b-res"]) == ["b-res", "a-res"]


class TestFold:
    """Tests for folding scan results into the index."""

    @pytest.mark.asyncio
    async def test_aggregation_correctness(self, engine):
        await engine.fold([online("s1", ["r1"], 5), online("s2", ["r1", "r2"], 10)])

        r1 = await engine.resource_stat("r1")
        r2 = await engine.resource_stat("r2")
        assert (r1.servers, r1.players) == (2, 15)
        assert (r2.servers, r2.players) == (1, 10)

    @pytest.mark.asyncio
    async def test_duplicate_resource_counted_once(self, engine):
        await engine.fold([online("s1", ["r1", "r1", "r1"], 4)])

        stat = await engine.resource_stat("r1")
        assert (stat.servers, stat.players) == (1, 4)

    @pytest.mark.asyncio
    async def test_single_character_names_never_counted(self, engine):
        await engine.fold([online("s1", ["x", "ok"], 1)])

        assert (await engine.resource_stat("x")).servers == 0
        assert [r.name for r in await engine.all_resources()] == ["ok"]

    @pytest.mark.asyncio
    async def test_refold_replaces_previous_manifest(self, engine):
        await engine.fold([online("s1", ["r1", "r2"], 3)])
        await engine.fold([online("s1", ["r1"], 8)])

        r1 = await engine.resource_stat("r1")
        r2 = await engine.resource_stat("r2")
        assert (r1.servers, r1.players) == (1, 8)
        assert (r2.servers, r2.players) == (0, 0)
        assert await engine.servers_with_resource("r2") == []

    @pytest.mark.asyncio
    async def test_offline_does_not_touch_aggregates(self, engine, store, keys):
        await engine.fold([online("s1", ["r1"], 3)])
        await engine.fold(
            [ScanResult(server_id="s1", address="s1:30120", online=False, error="timeout")]
        )

        stat = await engine.resource_stat("r1")
        assert (stat.servers, stat.players) == (1, 3)
        assert await store.hget(keys.status_hash(), "s1") == ServerStatus.OFFLINE.value
        assert await store.smembers(keys.status_set(ServerStatus.ONLINE)) == set()

    @pytest.mark.asyncio
    async def test_missing_player_count_uses_live_players(self, engine, store, keys):
        await store.hset(keys.live_players(), {"s1": "12"})

        await engine.fold([online("s1", ["r1"])])

        assert (await engine.resource_stat("r1")).players == 12

    @pytest.mark.asyncio
    async def test_forget_withdraws_server(self, engine, store, keys):
        await engine.fold([online("s1", ["r1"], 2)])

        await engine.forget(["s1"])

        assert (await engine.resource_stat("r1")).servers == 0
        assert await store.hget(keys.status_hash(), "s1") is None

    @pytest.mark.asyncio
    async def test_fold_marks_dirty(self, engine):
        await engine.fold([online("s1", ["r1"], 1), online("s2", ["r1"], 1)])
        assert engine.dirty == 2


class TestSnapshot:
    """Tests for snapshot materialization and persistence."""

    @pytest.mark.asyncio
    async def test_ranking_order_and_top_k(self, engine):
        await engine.fold(
            [
                online("s1", ["alpha", "beta", "gamma", "delta", "eps", "zeta"], 1),
                online("s2", ["beta", "alpha"], 9),
                online("s3", ["alpha"], 1),
            ]
        )

        snapshot = await engine.flush()

        assert snapshot.total_resources == 6
        assert [r.name for r in snapshot.top_resources] == ["alpha", "beta", "delta", "eps", "gamma"]

    @pytest.mark.asyncio
    async def test_zero_count_resources_excluded_from_totals(self, engine):
        await engine.fold([online("s1", ["r1", "r2"], 1)])
        await engine.fold([online("s1", ["r1"], 1)])

        snapshot = await engine.flush()

        assert snapshot.total_resources == 1

    @pytest.mark.asyncio
    async def test_flush_persists_blob(self, engine, store, keys):
        await engine.fold([online("s1", ["r1"], 3)])

        await engine.flush()
        blob = await store.get(keys.snapshot())

        assert engine.dirty == 0
        restored = Snapshot.model_validate_json(blob)
        assert restored.servers_online == 1
        assert restored.top_resources[0].name == "r1"

    @pytest.mark.asyncio
    async def test_get_snapshot_reads_last_materialized(self, engine):
        await engine.fold([online("s1", ["r1"], 3)])
        await engine.flush()
        await engine.fold([online("s2", ["r2"], 3)])

        snapshot = await engine.get_snapshot()

        assert [r.name for r in snapshot.top_resources] == ["r1"]

    @pytest.mark.asyncio
    async def test_get_snapshot_materializes_when_missing(self, engine):
        snapshot = await engine.get_snapshot()

        assert snapshot.top_resources == []
        assert snapshot.total_servers == 0

    @pytest.mark.asyncio
    async def test_flush_loop_runs_after_batch_threshold(self, store, keys):
        engine = AggregationEngine(store, keys, flush_batch=2, flush_max_delay=30.0)
        await engine.start()
        try:
            await engine.fold([online("s1", ["r1"], 1), online("s2", ["r1"], 1)])
            for _ in range(100):
                if await store.get(keys.snapshot()):
                    break
                await asyncio.sleep(0.01)
        finally:
            await engine.stop()

        assert await store.get(keys.snapshot()) is not None
        assert engine.dirty == 0

    @pytest.mark.asyncio
    async def test_stop_flushes_pending_mutations(self, store, keys):
        engine = AggregationEngine(store, keys, flush_batch=1000, flush_max_delay=30.0)
        await engine.start()
        await engine.fold([online("s1", ["r1"], 1)])

        await engine.stop()

        assert await store.get(keys.snapshot()) is not None


class TestSearch:
    """Tests for resource search and related lookups."""

    @pytest.fixture
    async def populated(self, engine):
        await engine.fold(
            [
                online("s1", ["qb-core", "qb-inventory", "esx_menu", "pma-voice"], 10),
                online("s2", ["qb-core", "pma-voice"], 20),
                online("s3", ["qb-core"], 5),
            ]
        )
        return engine

    @pytest.mark.asyncio
    async def test_substring_search_with_pagination(self, populated):
        page, total = await populated.search_resources("qb", limit=1, offset=0)

        assert total == 2
        assert [r.name for r in page] == ["qb-core"]

        page, _ = await populated.search_resources("QB", limit=1, offset=1)
        assert [r.name for r in page] == ["qb-inventory"]

    @pytest.mark.asyncio
    async def test_empty_query_returns_ranking(self, populated):
        page, total = await populated.search_resources("", limit=10)

        assert total == 4
        assert page[0].name == "qb-core"

    @pytest.mark.asyncio
    async def test_fuzzy_fallback(self, populated):
        page, total = await populated.search_resources("pma-vocie")

        assert total >= 1
        assert page[0].name == "pma-voice"

    @pytest.mark.asyncio
    async def test_no_match(self, populated):
        page, total = await populated.search_resources("zzzzzzzz")

        assert (page, total) == ([], 0)

    @pytest.mark.asyncio
    async def test_related_resources_share_prefix(self, populated):
        related = await populated.related_resources("qb-core")

        assert [r.name for r in related] == ["qb-inventory"]
        assert await populated.related_resources("nopref") == []

    @pytest.mark.asyncio
    async def test_servers_with_resource(self, populated):
        assert await populated.servers_with_resource("pma-voice") == ["s1", "s2"]
        assert await populated.manifest("s2") == ["pma-voice", "qb-core"]
