"""FiveM Registry - server discovery, resource scanning and ranking pipeline."""

__version__ = "0.1.0"

from .aggregation import AggregationEngine
from .config import Settings
from .fetcher import AddressFetcher, BackoffController
from .identity import IdentityStore
from .keys import RedisKeys
from .models import (
    AddressMapping,
    AddressResult,
    QueueCounters,
    ResourceStat,
    ScanResult,
    Server,
    ServerStatus,
    Snapshot,
    StatusReport,
    Task,
    TaskKind,
)
from .queue import TaskQueue
from .scanner import DirectScanner
from .status import ThroughputMeter, build_report
from .store import KVStore, MemoryStore, RedisStore
from .tasks import PipelineWorker, RefreshScheduler

__all__ = [
    "AddressFetcher",
    "AddressMapping",
    "AddressResult",
    "AggregationEngine",
    "BackoffController",
    "DirectScanner",
    "IdentityStore",
    "KVStore",
    "MemoryStore",
    "PipelineWorker",
    "QueueCounters",
    "RedisKeys",
    "RedisStore",
    "RefreshScheduler",
    "ResourceStat",
    "ScanResult",
    "Server",
    "ServerStatus",
    "Settings",
    "Snapshot",
    "StatusReport",
    "Task",
    "TaskKind",
    "TaskQueue",
    "ThroughputMeter",
    "build_report",
]
