"""
Test helper utilities for chaoskv testing.

This module provides small building blocks shared by the unit tests: a
condition poller, stub replicas and clients that satisfy the service
protocols, and a recorder for fault events.
"""

import asyncio
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from chaoskv.core.scheduling import SchedulingContext
from chaoskv.datastructures.members import Address, ReplicaIdentity
from chaoskv.datastructures.operations import Operation
from chaoskv.harness.faults import FaultEvent, FaultEventKind
from chaoskv.service.protocols import (
    ConnectionStrategy,
    RecoveryStrategy,
    StateMachineFactory,
    StorageConfig,
)


async def wait_for_condition(
    predicate: Callable[[], bool],
    *,
    timeout: float = 5.0,
    interval: float = 0.01,
    error_message: str | None = None,
) -> None:
    """Poll a condition until it is true or a timeout is reached."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return
        await asyncio.sleep(interval)
    message = error_message or f"Condition not met within {timeout:.1f}s"
    raise AssertionError(message)


@dataclass(slots=True)
class EventRecorder:
    """Fault listener keeping every event in arrival order."""

    events: list[FaultEvent] = field(default_factory=list)

    def __call__(self, event: FaultEvent) -> None:
        self.events.append(event)

    def kinds_for(self, index: int) -> list[FaultEventKind]:
        return [event.kind for event in self.events if event.index == index]

    def count(self, kind: FaultEventKind) -> int:
        return sum(1 for event in self.events if event.kind is kind)


class StubReplica:
    """Replica satisfying ``ReplicaServer`` without touching storage."""

    def __init__(
        self,
        identity: ReplicaIdentity,
        storage: StorageConfig,
        *,
        bootstrap_delay: float = 0.0,
        shutdown_delay: float = 0.0,
        fail_shutdown: bool = False,
        fail_bootstrap: bool = False,
    ) -> None:
        self.identity = identity
        self.storage = storage
        self.bootstrap_delay = bootstrap_delay
        self.shutdown_delay = shutdown_delay
        self.fail_shutdown = fail_shutdown
        self.fail_bootstrap = fail_bootstrap
        self.running = False
        self.bootstrapped_with: list[Address] | None = None
        self.shutdown_calls = 0
        self.wait_closed_calls = 0

    @property
    def is_running(self) -> bool:
        return self.running

    async def bootstrap(self, cluster: Sequence[Address]) -> None:
        await asyncio.sleep(self.bootstrap_delay)
        if self.fail_bootstrap:
            raise RuntimeError(f"bootstrap of {self.identity} failed")
        self.bootstrapped_with = list(cluster)
        self.running = True

    async def shutdown(self) -> None:
        self.shutdown_calls += 1
        await asyncio.sleep(self.shutdown_delay)
        self.running = False
        if self.fail_shutdown:
            raise RuntimeError(f"shutdown of {self.identity} failed")

    async def wait_closed(self) -> None:
        self.wait_closed_calls += 1


class StubClient:
    """Client satisfying ``ClusterClient`` that answers every submission."""

    def __init__(
        self,
        *,
        result: Any = None,
        connect_delay: float = 0.0,
        submit_error: Exception | None = None,
    ) -> None:
        self.context = SchedulingContext("stub-client")
        self.result = result
        self.submit_error = submit_error
        self.connect_delay = connect_delay
        self.connected_to: list[Address] | None = None
        self.submitted: list[Operation] = []
        self.closed = False

    @property
    def is_connected(self) -> bool:
        return self.connected_to is not None and not self.closed

    async def connect(self, cluster: Sequence[Address]) -> None:
        await asyncio.sleep(self.connect_delay)
        self.connected_to = list(cluster)

    def submit(self, operation: Operation) -> asyncio.Future[Any]:
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append(operation)
        future = asyncio.get_running_loop().create_future()
        future.set_result(self.result)
        return future

    async def close(self) -> None:
        self.closed = True
        await self.context.close()


class StubBackend:
    """Backend handing out stub replicas and clients."""

    def __init__(self, **replica_options: Any) -> None:
        self.replica_options = replica_options
        self.servers: list[StubReplica] = []
        self.clients: list[StubClient] = []
        self.client_options: dict[str, Any] = {}

    def create_server(
        self,
        identity: ReplicaIdentity,
        storage: StorageConfig,
        state_machine_factory: StateMachineFactory,
    ) -> StubReplica:
        server = StubReplica(identity, storage, **self.replica_options)
        self.servers.append(server)
        return server

    def create_client(
        self,
        connection_strategy: ConnectionStrategy,
        recovery_strategy: RecoveryStrategy,
    ) -> StubClient:
        client = StubClient(**self.client_options)
        self.clients.append(client)
        return client
