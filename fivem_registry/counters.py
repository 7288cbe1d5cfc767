"""O(1) counter reads for the queue and status sets."""

from .keys import (
    ADDRESS_COMPLETED,
    ADDRESS_ENQUEUED,
    SCAN_COMPLETED,
    SCAN_ENQUEUED,
    TOTAL_PLAYERS,
    RedisKeys,
)
from .models import QueueCounters, ServerStatus, TaskKind
from .store import KVStore

_COUNTER_FIELDS = [
    ADDRESS_ENQUEUED,
    ADDRESS_COMPLETED,
    SCAN_ENQUEUED,
    SCAN_COMPLETED,
    TOTAL_PLAYERS,
]


def _to_int(value: str | None) -> int:
    try:
        return int(value) if value is not None else 0
    except ValueError:
        return 0


async def load_counters(store: KVStore, keys: RedisKeys) -> QueueCounters:
    """Read every queue counter from set cardinalities and the counters hash.

    Never enumerates an id set.
    """
    sizes = await store.cardinalities(
        [
            ("scard", keys.pending(TaskKind.ADDRESS)),
            ("scard", keys.pending(TaskKind.SCAN)),
            ("zcard", keys.processing(TaskKind.ADDRESS)),
            ("zcard", keys.processing(TaskKind.SCAN)),
            ("scard", keys.all_servers()),
            ("hlen", keys.addresses()),
            ("scard", keys.status_set(ServerStatus.ONLINE)),
            ("scard", keys.status_set(ServerStatus.OFFLINE)),
            ("scard", keys.status_set(ServerStatus.UNAVAILABLE)),
        ]
    )
    values = await store.hmget(keys.counters(), _COUNTER_FIELDS)
    counts = dict(zip(_COUNTER_FIELDS, (_to_int(v) for v in values)))

    return QueueCounters(
        pending_address=sizes[0],
        pending_scan=sizes[1],
        processing_address=sizes[2],
        processing_scan=sizes[3],
        total_servers=sizes[4],
        with_address=sizes[5],
        online=sizes[6],
        offline=sizes[7],
        unavailable=sizes[8],
        address_enqueued=counts[ADDRESS_ENQUEUED],
        address_completed=counts[ADDRESS_COMPLETED],
        scan_enqueued=counts[SCAN_ENQUEUED],
        scan_completed=counts[SCAN_COMPLETED],
        total_players=counts[TOTAL_PLAYERS],
    )
