"""KV key layout shared by every process touching the store.

Always build keys through :class:`RedisKeys` instead of hardcoding strings,
so local workers, remote workers and the HTTP service agree on the layout.
"""

from dataclasses import dataclass

from .models import ServerStatus, TaskKind


@dataclass(frozen=True)
class RedisKeys:
    prefix: str = "fivem:"

    def _k(self, name: str) -> str:
        return f"{self.prefix}{name}"

    # Queues
    def pending(self, kind: TaskKind) -> str:
        return self._k(f"queue:{kind.value}")

    def processing(self, kind: TaskKind) -> str:
        return self._k(f"processing:{kind.value}")

    # Identity store
    def addresses(self) -> str:
        return self._k("data:addresses")

    def address_timestamps(self) -> str:
        return self._k("ts:address")

    def address_attempts(self) -> str:
        return self._k("data:address_attempts")

    # Server state
    def all_servers(self) -> str:
        return self._k("set:all_servers")

    def status_hash(self) -> str:
        return self._k("data:status")

    def status_set(self, status: ServerStatus) -> str:
        return self._k(f"set:status:{status.value}")

    def live_players(self) -> str:
        return self._k("data:live_players")

    def scan_timestamps(self) -> str:
        return self._k("ts:scan")

    def catalog(self) -> str:
        return self._k("data:servers")

    # Aggregates
    def manifest_prefix(self) -> str:
        return self._k("manifest:")

    def manifest(self, server_id: str) -> str:
        return f"{self.manifest_prefix()}{server_id}"

    def resource_servers_prefix(self) -> str:
        return self._k("resource_servers:")

    def resource_servers(self, name: str) -> str:
        return f"{self.resource_servers_prefix()}{name}"

    def resource_server_counts(self) -> str:
        return self._k("agg:resource_servers")

    def resource_player_counts(self) -> str:
        return self._k("agg:resource_players")

    def attributed_players(self) -> str:
        return self._k("agg:server_players")

    def snapshot(self) -> str:
        return self._k("data:snapshot")

    # Counters
    def counters(self) -> str:
        return self._k("stats:counters")

    def status_sets(self) -> list[str]:
        return [self.status_set(s) for s in STATUS_ORDER]


# Index order of the status sets passed to the set-status primitive
STATUS_ORDER = (ServerStatus.ONLINE, ServerStatus.OFFLINE, ServerStatus.UNAVAILABLE)

# Counter field names in the counters hash
SCAN_ENQUEUED = "scan_enqueued"
SCAN_COMPLETED = "scan_completed"
ADDRESS_ENQUEUED = "address_enqueued"
ADDRESS_COMPLETED = "address_completed"
TOTAL_PLAYERS = "total_players"
