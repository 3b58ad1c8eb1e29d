"""Client pool: connects the workload clients and drives their timers."""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from chaoskv.core.config import FuzzSettings
from chaoskv.core.scheduling import ErrorHandler, Scheduled
from chaoskv.datastructures.members import Address, MemberRegistry
from chaoskv.datastructures.operations import Operation
from chaoskv.datastructures.type_aliases import DurationSeconds
from chaoskv.service.protocols import (
    ClusterClient,
    ConnectionStrategy,
    RecoveryStrategy,
    ServiceBackend,
)

from .workload import (
    KeyPool,
    OutcomeCounter,
    OutcomeRecorder,
    WorkloadGenerator,
    classify_outcome,
)

client_log = logger


@dataclass(slots=True, eq=False)
class ClientHandle:
    """A client session, its generator and its single workload timer."""

    index: int
    client: ClusterClient
    generator: WorkloadGenerator
    recorders: tuple[OutcomeRecorder, ...] = ()
    timer: Scheduled | None = None
    submitted: int = 0
    pending: set[asyncio.Future[Any]] = field(default_factory=set)

    def start(self, period: DurationSeconds) -> Scheduled:
        if self.timer is not None and self.timer.is_pending:
            raise RuntimeError(f"Client {self.index} workload already started")
        self.timer = self.client.context.schedule_periodic(
            period, period, self.tick, name="workload"
        )
        return self.timer

    def tick(self) -> None:
        """Submit one operation without waiting for its result."""
        operation = self.generator.next_operation()
        future = self.client.submit(operation)
        self.submitted += 1
        self.pending.add(future)
        future.add_done_callback(lambda done: self._on_done(operation, done))

    def _on_done(self, operation: Operation, future: asyncio.Future[Any]) -> None:
        self.pending.discard(future)
        outcome, error = classify_outcome(future)
        for recorder in self.recorders:
            recorder(operation, outcome, error)

    async def close(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
        await self.client.close()


class ClientPoolManager:
    """Builds and tears down the workload clients of one iteration."""

    def __init__(
        self,
        backend: ServiceBackend,
        members: MemberRegistry,
        key_pool: KeyPool,
        settings: FuzzSettings,
        rng: random.Random | None = None,
        *,
        recorder: OutcomeRecorder | None = None,
        on_error: ErrorHandler | None = None,
    ) -> None:
        self.backend = backend
        self.members = members
        self.key_pool = key_pool
        self.settings = settings
        self.rng = rng or random.Random()
        self.on_error = on_error
        self.outcomes = OutcomeCounter()
        self.recorders: tuple[OutcomeRecorder, ...] = (
            (self.outcomes, recorder) if recorder is not None else (self.outcomes,)
        )
        self.clients: list[ClientHandle] = []

    async def build_clients(self, count: int) -> list[ClientHandle]:
        """Connect ``count`` clients to every member and start their workload."""
        if count <= 0:
            raise ValueError("Client count must be positive")
        addresses = self.members.client_addresses()
        handles: list[ClientHandle] = []
        for _ in range(count):
            client = self.backend.create_client(
                ConnectionStrategy.FIBONACCI_BACKOFF, RecoveryStrategy.RECOVER
            )
            client.context.on_error = self.on_error
            handle = ClientHandle(
                index=len(self.clients),
                client=client,
                generator=WorkloadGenerator(
                    self.key_pool, random.Random(self.rng.random())
                ),
                recorders=self.recorders,
            )
            self.clients.append(handle)
            handles.append(handle)

        await asyncio.gather(
            *(self._connect(handle, addresses) for handle in handles)
        )
        for handle in handles:
            handle.start(self.settings.workload_period)
        client_log.info(f"Started {len(handles)} workload clients")
        return handles

    async def _connect(self, handle: ClientHandle, addresses: list[Address]) -> None:
        try:
            await asyncio.wait_for(
                handle.client.connect(addresses), self.settings.connect_timeout
            )
        except TimeoutError:
            # The client reconnects on its first submission
            client_log.warning(
                f"Client {handle.index} did not connect within "
                f"{self.settings.connect_timeout:.1f}s"
            )

    async def close_all(self, timeout: DurationSeconds) -> None:
        """Cancel every workload timer and close every session, best effort."""
        for handle in self.clients:
            if handle.timer is not None:
                handle.timer.cancel()
        for handle in self.clients:
            try:
                await asyncio.wait_for(handle.close(), timeout)
            except Exception as e:
                client_log.debug(f"Ignoring error closing client {handle.index}: {e!r}")
        self.clients.clear()

    @property
    def submitted(self) -> int:
        return sum(handle.submitted for handle in self.clients)
