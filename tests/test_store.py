"""Tests for the KV store primitives, run against both adapters."""

import asyncio
import typing

import pytest
from fivem_registry.store import KVStore, MemoryStore, RedisStore

PENDING = "t:queue:scan"
PROCESSING = "t:processing:scan"
COUNTERS = "t:stats:counters"
STATUS_SETS = ["t:set:status:online", "t:set:status:offline", "t:set:status:unavailable"]
STATUS_HASH = "t:data:status"

AGG = dict(
    manifest_prefix="t:manifest:",
    resource_prefix="t:resource_servers:",
    server_counts="t:agg:resource_servers",
    player_counts="t:agg:resource_players",
    attributed="t:agg:server_players",
)


@pytest.fixture(params=["memory", "redis"])
async def kv(request):
    """Yield a MemoryStore and, when fakeredis with Lua is installed, a RedisStore."""
    if request.param == "memory":
        yield MemoryStore()
        return

    pytest.importorskip("lupa")
    fakeredis = pytest.importorskip("fakeredis")
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield RedisStore(client)
    await client.flushall()
    await client.aclose()


async def _enqueue(kv, ids):
    return await kv.enqueue(PENDING, PROCESSING, COUNTERS, "scan_enqueued", ids)


class TestQueuePrimitives:
    """Tests for claim, reclaim, ack and enqueue."""

    @pytest.mark.asyncio
    async def test_enqueue_is_idempotent(self, kv):
        assert await _enqueue(kv, ["a", "b", "c"]) == 3
        assert await _enqueue(kv, ["a", "b", "c"]) == 0
        assert await kv.hget(COUNTERS, "scan_enqueued") == "3"

    @pytest.mark.asyncio
    async def test_enqueue_skips_processing_ids(self, kv):
        await _enqueue(kv, ["a", "b"])
        claimed = await kv.claim(PENDING, PROCESSING, 2, 100.0)
        assert sorted(claimed) == ["a", "b"]
        assert await _enqueue(kv, ["a", "b", "c"]) == 1
        assert await kv.smembers(PENDING) == {"c"}

    @pytest.mark.asyncio
    async def test_claim_never_hands_out_an_id_twice(self, kv):
        ids = [f"s{i}" for i in range(50)]
        await _enqueue(kv, ids)

        batches = await asyncio.gather(
            *(kv.claim(PENDING, PROCESSING, 7, 100.0) for _ in range(10))
        )
        claimed = [sid for batch in batches for sid in batch]

        assert len(claimed) == len(set(claimed)) == 50
        assert await kv.cardinalities([("scard", PENDING), ("zcard", PROCESSING)]) == [0, 50]

    @pytest.mark.asyncio
    async def test_claim_on_empty_queue(self, kv):
        assert await kv.claim(PENDING, PROCESSING, 10, 100.0) == []

    @pytest.mark.asyncio
    async def test_claim_stamps_lease(self, kv):
        await _enqueue(kv, ["a"])
        await kv.claim(PENDING, PROCESSING, 1, 160.0)
        assert await kv.zscore(PROCESSING, "a") == 160.0

    @pytest.mark.asyncio
    async def test_reclaim_returns_expired_leases_once(self, kv):
        await _enqueue(kv, ["a", "b"])
        await kv.claim(PENDING, PROCESSING, 1, 100.0)
        await kv.claim(PENDING, PROCESSING, 1, 200.0)

        first = await kv.reclaim(PROCESSING, PENDING, 150.0)
        second = await kv.reclaim(PROCESSING, PENDING, 150.0)

        assert len(first) == 1
        assert second == []
        assert await kv.cardinalities([("scard", PENDING), ("zcard", PROCESSING)]) == [1, 1]

    @pytest.mark.asyncio
    async def test_ack_removes_and_optionally_requeues(self, kv):
        await _enqueue(kv, ["a", "b"])
        await kv.claim(PENDING, PROCESSING, 2, 100.0)

        assert await kv.ack(PROCESSING, PENDING, ["a"], requeue=False) == ["a"]
        assert await kv.ack(PROCESSING, PENDING, ["b"], requeue=True) == ["b"]

        assert await kv.smembers(PENDING) == {"b"}
        assert await kv.cardinalities([("zcard", PROCESSING)]) == [0]

    @pytest.mark.asyncio
    async def test_ack_for_unknown_id_is_noop(self, kv):
        assert await kv.ack(PROCESSING, PENDING, ["ghost"], requeue=True) == []
        assert await kv.smembers(PENDING) == set()

    @pytest.mark.asyncio
    async def test_ack_counts_completions_in_one_step(self, kv):
        """Test that a completing ack bumps the counter by the ids actually removed."""
        await _enqueue(kv, ["a", "b", "c"])
        await kv.claim(PENDING, PROCESSING, 3, 100.0)

        done = await kv.ack(
            PROCESSING, PENDING, ["a", "b", "ghost"], requeue=False,
            counters=COUNTERS, counter_field="scan_completed",
        )
        await kv.ack(
            PROCESSING, PENDING, ["c"], requeue=True,
            counters=COUNTERS, counter_field="scan_completed",
        )
        await kv.ack(
            PROCESSING, PENDING, ["a"], requeue=False,
            counters=COUNTERS, counter_field="scan_completed",
        )

        assert sorted(done) == ["a", "b"]
        assert await kv.hget(COUNTERS, "scan_completed") == "2"


class TestAnnotations:
    def test_set_annotations_resolve_to_builtin(self):
        """Test that the blob ``set`` method does not shadow the builtin in annotations."""
        hints = typing.get_type_hints(KVStore.smembers)

        assert hints["return"] == set[str]


class TestStatusPrimitive:
    @pytest.mark.asyncio
    async def test_status_moves_between_sets(self, kv):
        await kv.set_status(STATUS_SETS, STATUS_HASH, "a", 0, "online")
        await kv.set_status(STATUS_SETS, STATUS_HASH, "a", 1, "offline")

        sizes = await kv.cardinalities([("scard", key) for key in STATUS_SETS])
        assert sizes == [0, 1, 0]
        assert await kv.hget(STATUS_HASH, "a") == "offline"

    @pytest.mark.asyncio
    async def test_status_clear(self, kv):
        await kv.set_status(STATUS_SETS, STATUS_HASH, "a", 2, "unavailable")
        await kv.set_status(STATUS_SETS, STATUS_HASH, "a", None, None)

        sizes = await kv.cardinalities([("scard", key) for key in STATUS_SETS])
        assert sizes == [0, 0, 0]
        assert await kv.hget(STATUS_HASH, "a") is None


class TestManifestPrimitive:
    """Tests for atomic manifest replacement."""

    @pytest.mark.asyncio
    async def test_apply_and_replace(self, kv):
        await kv.replace_manifest(server_id="s1", resources=["r1", "r2"], players=5, **AGG)
        await kv.replace_manifest(server_id="s2", resources=["r1"], players=10, **AGG)
        assert await kv.hgetall(AGG["server_counts"]) == {"r1": "2", "r2": "1"}
        assert await kv.hgetall(AGG["player_counts"]) == {"r1": "15", "r2": "5"}

        # Re-folding s1 withdraws its old contribution first
        await kv.replace_manifest(server_id="s1", resources=["r3"], players=7, **AGG)
        counts = await kv.hgetall(AGG["server_counts"])
        players = await kv.hgetall(AGG["player_counts"])
        assert counts == {"r1": "1", "r2": "0", "r3": "1"}
        assert players == {"r1": "10", "r2": "0", "r3": "7"}
        assert await kv.smembers("t:resource_servers:r1") == {"s2"}
        assert await kv.smembers("t:manifest:s1") == {"r3"}

    @pytest.mark.asyncio
    async def test_empty_manifest_withdraws_server(self, kv):
        await kv.replace_manifest(server_id="s1", resources=["r1"], players=3, **AGG)
        await kv.replace_manifest(server_id="s1", resources=[], players=0, **AGG)

        assert await kv.hgetall(AGG["server_counts"]) == {"r1": "0"}
        assert await kv.hget(AGG["player_counts"], "r1") == "0"
        assert await kv.hget(AGG["attributed"], "s1") is None
        assert await kv.smembers("t:manifest:s1") == set()


class TestBasicOperations:
    @pytest.mark.asyncio
    async def test_hashes_and_blobs(self, kv):
        await kv.hset_multi({"t:h1": {"a": "1"}, "t:h2": {"a": "2", "b": "3"}})
        assert await kv.hmget("t:h2", ["a", "b", "c"]) == ["2", "3", None]
        assert await kv.hincrby("t:h1", "a", 4) == 5

        await kv.hdel("t:h2", "a")
        assert await kv.hgetall("t:h2") == {"b": "3"}
        assert await kv.cardinalities([("hlen", "t:h2")]) == [1]

        await kv.set("t:blob", "{}")
        assert await kv.get("t:blob") == "{}"
        await kv.delete("t:blob", "t:h1")
        assert await kv.get("t:blob") is None
        assert await kv.hgetall("t:h1") == {}

    @pytest.mark.asyncio
    async def test_sets(self, kv):
        assert await kv.sadd("t:s", "a", "b") == 2
        assert await kv.sadd("t:s", "a") == 0
        assert await kv.sismember("t:s", "a") is True
        assert await kv.srem("t:s", "a", "z") == 1
        assert await kv.smembers("t:s") == {"b"}

    @pytest.mark.asyncio
    async def test_empty_writes_are_noops(self, kv):
        await kv.hset("t:h", {})
        await kv.hdel("t:h")
        assert await kv.sadd("t:s") == 0
        assert await kv.srem("t:s") == 0
        await kv.delete()
