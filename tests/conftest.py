"""Shared fixtures: in-memory pipeline wiring and upstream stream encoding."""

import struct

import httpx
import pytest
from fivem_registry.aggregation import AggregationEngine
from fivem_registry.config import Settings
from fivem_registry.identity import IdentityStore
from fivem_registry.keys import RedisKeys
from fivem_registry.queue import TaskQueue
from fivem_registry.store import MemoryStore

DAY = 24 * 3600


def _varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _field_bytes(field: int, data: bytes) -> bytes:
    return _varint(field << 3 | 2) + _varint(len(data)) + data


def _field_varint(field: int, value: int) -> bytes:
    return _varint(field << 3) + _varint(value)


def encode_server(
    server_id: str,
    hostname: str = "",
    clients: int = 0,
    max_clients: int = 32,
    gametype: str = "",
    mapname: str = "",
    resources: list[str] | None = None,
    variables: dict[str, str] | None = None,
    icon: str | None = None,
    connect_endpoint: str | None = None,
) -> bytes:
    """Encode one server message the way the upstream list stream does."""
    data = _field_varint(1, max_clients) + _field_varint(2, clients)
    if hostname:
        data += _field_bytes(4, hostname.encode())
    if gametype:
        data += _field_bytes(5, gametype.encode())
    if mapname:
        data += _field_bytes(6, mapname.encode())
    for key, value in (variables or {}).items():
        data += _field_bytes(12, _field_bytes(1, key.encode()) + _field_bytes(2, value.encode()))
    for name in resources or []:
        data += _field_bytes(14, name.encode())
    if icon:
        data += _field_bytes(17, icon.encode())
    if connect_endpoint:
        data += _field_bytes(18, connect_endpoint.encode())
    return _field_bytes(1, server_id.encode()) + _field_bytes(2, data)


def frame(message: bytes) -> bytes:
    return struct.pack("<I", len(message)) + message


def build_stream(*messages: bytes) -> bytes:
    return b"".join(frame(m) for m in messages)


@pytest.fixture
def keys():
    return RedisKeys(prefix="test:")


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def identity(store, keys):
    return IdentityStore(store, keys, freshness_seconds=DAY)


@pytest.fixture
def engine(store, keys):
    return AggregationEngine(store, keys, top_k=5, flush_batch=500, flush_max_delay=5.0, cache_ttl=0)


@pytest.fixture
def queue(store, keys, identity, engine):
    return TaskQueue(
        store,
        keys,
        identity,
        engine,
        lease_seconds=60,
        address_batch_size=30,
        scan_batch_size=200,
        max_address_attempts=3,
    )


LIST_URL = "https://list.test/stream"
LOOKUP_URL = "https://lookup.test/single/{server_id}"


def upstream_handler(request: httpx.Request) -> httpx.Response:
    """Fake upstream: list stream, per-id lookups and direct probes."""
    host = request.url.host
    path = request.url.path
    if host == "list.test":
        return httpx.Response(
            200,
            content=build_stream(
                encode_server("abc", hostname="Alpha RP", clients=7, gametype="Roleplay"),
                encode_server("direct", hostname="Direct RP", clients=3, connect_endpoint="10.0.0.2:30120"),
            ),
        )
    if host == "lookup.test":
        server_id = path.rsplit("/", 1)[-1]
        if server_id == "abc":
            return httpx.Response(200, json={"EndPoint": "abc", "Data": {"connectEndPoints": ["10.0.0.1:30120"]}})
        if server_id == "ghost":
            return httpx.Response(
                200,
                json={
                    "EndPoint": "ghost",
                    "Data": {"hostname": "Ghost Town", "clients": 4, "resources": ["ghost-core"]},
                },
            )
        return httpx.Response(404)
    if path == "/info.json":
        return httpx.Response(200, json={"resources": ["qb-core", "pma-voice"]})
    return httpx.Response(404)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        store_backend="memory",
        run_background=False,
        server_list_url=LIST_URL,
        server_lookup_url=LOOKUP_URL,
        cache_ttl=0,
        stream_stats_interval=0.01,
    )
