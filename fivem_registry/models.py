"""Pydantic models for servers, tasks, scan results and aggregate views."""

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel

# Wire format is camelCase; Python attributes stay snake_case.
_API_CONFIG = {"alias_generator": to_camel, "populate_by_name": True, "frozen": False}


class TaskKind(str, Enum):
    """Work-queue task kinds."""

    ADDRESS = "address"
    SCAN = "scan"

    @property
    def other(self) -> "TaskKind":
        return TaskKind.SCAN if self is TaskKind.ADDRESS else TaskKind.ADDRESS


class ServerStatus(str, Enum):
    """Last observed reachability of a server."""

    ONLINE = "online"
    OFFLINE = "offline"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"


class LookupOutcome(str, Enum):
    """Classification of a single upstream address lookup."""

    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    HTTP_ERROR = "http_error"
    TIMEOUT = "timeout"
    ERROR = "error"


class Server(BaseModel):
    """Cached copy of one upstream server record."""

    id: str = Field(..., description="Opaque upstream server identifier")
    name: str = Field("", description="Display name with color codes stripped")
    players: int = Field(0, description="Current player count")
    max_players: int = Field(32, description="Advertised player slots")
    gametype: str = Field("", description="Game mode")
    mapname: str = Field("", description="Map name")
    resources: list[str] = Field(default_factory=list, description="Advertised resources")
    vars: dict[str, str] = Field(default_factory=dict, description="Server variable bag")
    icon: str | None = Field(None, description="Icon reference (data URI)")
    connect_endpoint: str | None = Field(
        None, description="Direct ip:port or URL advertised in the list snapshot"
    )

    model_config = _API_CONFIG

    @property
    def tags(self) -> str:
        return self.vars.get("tags", "")


class AddressMapping(BaseModel):
    """Resolved network address for a server id."""

    server_id: str
    address: str
    resolved_at: float = Field(..., description="Unix timestamp of the resolution")

    model_config = _API_CONFIG

    def is_stale(self, now: float, window_seconds: float) -> bool:
        return now - self.resolved_at > window_seconds


class Task(BaseModel):
    """A claimed unit of work handed to a worker."""

    kind: TaskKind
    server_id: str
    address: str | None = Field(None, description="Resolved address (scan tasks only)")
    lease_expires: float | None = Field(None, description="Unix timestamp of lease expiry")

    model_config = _API_CONFIG


class AddressResult(BaseModel):
    """Outcome of resolving one server id through the upstream lookup."""

    server_id: str
    address: str | None = None
    outcome: LookupOutcome = LookupOutcome.SUCCESS
    status_code: int | None = None
    error: str | None = None

    model_config = _API_CONFIG

    @property
    def ok(self) -> bool:
        return self.outcome == LookupOutcome.SUCCESS and bool(self.address)


class ScanResult(BaseModel):
    """Outcome of probing one server directly."""

    server_id: str
    address: str
    online: bool
    resources: list[str] = Field(default_factory=list)
    players: int | None = Field(None, description="Player count derived from the probe")
    error: str | None = None

    model_config = _API_CONFIG

    @field_validator("resources", mode="before")
    @classmethod
    def drop_non_strings(cls, v: Any) -> list[str]:
        """Malformed manifests sometimes carry non-string entries."""
        if v is None:
            return []
        if not isinstance(v, list):
            return []
        return [r for r in v if isinstance(r, str)]


class QueueCounters(BaseModel):
    """Aggregate counters, each read in O(1) from the store."""

    pending_address: int = 0
    pending_scan: int = 0
    processing_address: int = 0
    processing_scan: int = 0
    total_servers: int = 0
    with_address: int = 0
    online: int = 0
    offline: int = 0
    unavailable: int = 0
    address_enqueued: int = 0
    address_completed: int = 0
    scan_enqueued: int = 0
    scan_completed: int = 0
    total_players: int = 0

    model_config = _API_CONFIG

    @property
    def processing(self) -> int:
        return self.processing_address + self.processing_scan

    @property
    def scanned(self) -> int:
        return self.online + self.offline


class ResourceStat(BaseModel):
    """Derived counts for one resource name."""

    name: str
    servers: int = 0
    players: int = 0

    model_config = _API_CONFIG

    def rank_key(self) -> tuple[int, int, str]:
        """Sort key: server count desc, player count desc, name asc."""
        return (-self.servers, -self.players, self.name)


class Snapshot(BaseModel):
    """Materialized head of the resource ranking plus headline counters."""

    top_resources: list[ResourceStat] = Field(default_factory=list)
    total_resources: int = 0
    total_servers: int = 0
    servers_online: int = 0
    servers_scanned: int = 0
    servers_with_address: int = 0
    total_players: int = 0
    pending_address: int = 0
    pending_scan: int = 0
    generated_at: float = Field(default_factory=time.time)

    model_config = _API_CONFIG


class StatusReport(BaseModel):
    """Progress and throughput view derived from queue counters."""

    counters: QueueCounters
    address_progress: float = 0.0
    scan_progress: float = 0.0
    address_rate_per_minute: float = 0.0
    scan_rate_per_minute: float = 0.0
    eta_address_minutes: int | None = 0
    eta_scan_minutes: int | None = 0

    model_config = _API_CONFIG


class EnqueueSummary(BaseModel):
    added: int = 0
    skipped: int = 0

    model_config = _API_CONFIG


class SubmitSummary(BaseModel):
    """Counts returned after folding a batch of results."""

    kind: TaskKind
    success: int = 0
    failed: int = 0
    requeued: int = 0
    ignored: int = Field(0, description="Results for ids not in the processing set")
    online: int = 0
    offline: int = 0

    model_config = _API_CONFIG


class SyncSummary(BaseModel):
    """Result of reconciling the store with an upstream snapshot."""

    total_servers: int = 0
    new_servers: int = 0
    removed_servers: int = 0
    direct_addresses: int = 0
    queued_for_address: int = 0
    queued_for_scan: int = 0

    model_config = _API_CONFIG


class SubmitRequest(BaseModel):
    """Body of ``POST /submit``."""

    type: TaskKind
    results: list[dict[str, Any]] = Field(default_factory=list)
    worker_id: str | None = None

    model_config = _API_CONFIG

    def address_results(self) -> list[AddressResult]:
        return [AddressResult.model_validate(r) for r in self.results]

    def scan_results(self) -> list[ScanResult]:
        return [ScanResult.model_validate(r) for r in self.results]


class InitRequest(BaseModel):
    """Body of ``POST /init``."""

    reset: bool = Field(False, description="Empty the queues before syncing")
    force: bool = Field(False, description="Drop all pipeline state before syncing")

    model_config = _API_CONFIG


class SearchQuery(BaseModel):
    """Search and pagination parameters shared by catalog endpoints."""

    q: str = Field("", description="Case-insensitive search text")
    limit: int = Field(50, ge=1, le=500, description="Page size")
    offset: int = Field(0, ge=0, description="Page offset")

    model_config = {"frozen": False}
