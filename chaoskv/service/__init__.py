"""Service contract and the in-process local backend."""

from .local import (
    LocalClusterClient,
    LocalReplicaServer,
    LocalServerRegistry,
    LocalServiceBackend,
)
from .protocols import (
    ClusterClient,
    ConnectionStrategy,
    RecoveryStrategy,
    ReplicaServer,
    ServiceBackend,
    StorageConfig,
)
from .storage import LogEntry, SegmentedLog, SnapshotStore

__all__ = [
    "ClusterClient",
    "ConnectionStrategy",
    "LocalClusterClient",
    "LocalReplicaServer",
    "LocalServerRegistry",
    "LocalServiceBackend",
    "LogEntry",
    "RecoveryStrategy",
    "ReplicaServer",
    "SegmentedLog",
    "ServiceBackend",
    "SnapshotStore",
    "StorageConfig",
]
