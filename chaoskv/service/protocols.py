"""
Contract of the replicated key/value service driven by the harness.

The harness never reaches into consensus, storage or transport internals; it
only needs to bootstrap and shut down replicas, connect clients and submit
operations, and hand each replica a storage configuration and a state
machine factory. Any backend implementing these protocols can be fuzzed.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from chaoskv.core.scheduling import SchedulingContext
from chaoskv.datastructures.members import Address, ReplicaIdentity
from chaoskv.datastructures.operations import Operation
from chaoskv.datastructures.state_machine import FuzzStateMachine
from chaoskv.datastructures.type_aliases import DurationSeconds

type StateMachineFactory = Callable[[], FuzzStateMachine]


@dataclass(frozen=True, slots=True)
class StorageConfig:
    """Storage tuning of one replica."""

    directory: Path
    max_segment_size: int = 32 * 1024 * 1024
    max_entries_per_segment: int = 1024 * 1024
    compaction_threads: int = 1
    compaction_threshold: float = 0.5
    entry_buffer_size: int = 1024
    flush_on_commit: bool = False
    minor_compaction_interval: DurationSeconds = 60.0
    major_compaction_interval: DurationSeconds = 3600.0

    def __post_init__(self) -> None:
        if self.max_segment_size <= 0:
            raise ValueError("Max segment size must be positive")
        if self.max_entries_per_segment <= 0:
            raise ValueError("Max entries per segment must be positive")
        if self.compaction_threads <= 0:
            raise ValueError("Compaction thread count must be positive")
        if not 0.0 <= self.compaction_threshold <= 1.0:
            raise ValueError("Compaction threshold must be within [0.0, 1.0]")
        if self.entry_buffer_size <= 0:
            raise ValueError("Entry buffer size must be positive")
        if self.minor_compaction_interval <= 0:
            raise ValueError("Minor compaction interval must be positive")
        if self.major_compaction_interval <= 0:
            raise ValueError("Major compaction interval must be positive")


class ConnectionStrategy(Enum):
    """How a client paces attempts to reach a live member."""

    ONCE = "once"  # A single pass over the member list
    EXPONENTIAL_BACKOFF = "exponential_backoff"
    FIBONACCI_BACKOFF = "fibonacci_backoff"

    def delays(
        self, base: DurationSeconds, cap: DurationSeconds
    ) -> Iterator[DurationSeconds]:
        """Yield the wait before each retry pass; ends for ``ONCE``."""
        if self is ConnectionStrategy.ONCE:
            return
        if self is ConnectionStrategy.EXPONENTIAL_BACKOFF:
            delay = base
            while True:
                yield min(delay, cap)
                delay *= 2
        previous, current = base, base
        while True:
            yield min(current, cap)
            previous, current = current, previous + current


class RecoveryStrategy(Enum):
    """What a client does when its session is lost."""

    RECOVER = "recover"  # Re-resolve membership and open a new session
    CLOSE = "close"  # Give up; the client becomes unusable


class ReplicaServer(Protocol):
    """A replica process bound to one identity."""

    identity: ReplicaIdentity
    storage: StorageConfig

    @property
    def is_running(self) -> bool: ...

    async def bootstrap(self, cluster: Sequence[Address]) -> None:
        """Start the replica and join the cluster formed by ``cluster``."""
        ...

    async def shutdown(self) -> None:
        """Gracefully stop the replica; only valid while running."""
        ...

    async def wait_closed(self) -> None:
        """Wait until the replica has released its storage directory."""
        ...


class ClusterClient(Protocol):
    """A client session to the cluster."""

    context: SchedulingContext

    @property
    def is_connected(self) -> bool: ...

    async def connect(self, cluster: Sequence[Address]) -> None:
        """Open a session against any live member of ``cluster``."""
        ...

    def submit(self, operation: Operation) -> asyncio.Future[Any]:
        """Submit an operation; the future resolves to its result."""
        ...

    async def close(self) -> None: ...


class ServiceBackend(Protocol):
    """Factory for the replicas and clients of one experiment."""

    def create_server(
        self,
        identity: ReplicaIdentity,
        storage: StorageConfig,
        state_machine_factory: StateMachineFactory,
    ) -> ReplicaServer: ...

    def create_client(
        self,
        connection_strategy: ConnectionStrategy,
        recovery_strategy: RecoveryStrategy,
    ) -> ClusterClient: ...
