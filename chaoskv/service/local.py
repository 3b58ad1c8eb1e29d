"""
Local in-process backend for the replicated key/value service.

This backend lets the harness run without sockets: a ``LocalServerRegistry``
plays the role of the network and of the cluster's committed log, replicas
are ``LocalReplicaServer`` objects with real on-disk storage, and clients are
``LocalClusterClient`` sessions that must survive replicas disappearing under
them.

Replication model (a test double, not a consensus implementation):

* a command commits only while a majority of the configured voting members
  is running; it receives the next cluster index and is applied, in index
  order, to every running replica before the submitter sees the result;
* ``SEQUENTIAL`` reads are served from the connected replica's state
  machine; linearizable reads additionally require a running quorum;
* a restarted replica replays its own segments, then catches up from the
  committed log the registry retains for members that are behind;
* the registry trims retained entries every member has already applied.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Sequence
from enum import Enum
from typing import Any

import ulid
from loguru import logger

from chaoskv.core.config import FuzzSettings
from chaoskv.core.errors import (
    ClientClosedError,
    NoQuorumError,
    ReplicaLifecycleError,
    ReplicaNotRunningError,
    SessionClosedError,
)
from chaoskv.core.scheduling import SchedulingContext
from chaoskv.datastructures.members import Address, MemberRole, ReplicaIdentity
from chaoskv.datastructures.operations import Get, Operation
from chaoskv.datastructures.state_machine import (
    Commit,
    FuzzStateMachine,
    SnapshotReader,
    SnapshotWriter,
)
from chaoskv.datastructures.type_aliases import DurationSeconds, LogIndex, SessionId

from .protocols import (
    ConnectionStrategy,
    RecoveryStrategy,
    StateMachineFactory,
    StorageConfig,
)
from .storage import LogEntry, SegmentedLog, SnapshotStore

local_log = logger

TRIM_INTERVAL = 256
SNAPSHOTS_KEPT = 3


class ServerState(Enum):
    """Lifecycle of one replica instance. Instances are never reused."""

    CREATED = "created"
    BOOTSTRAPPING = "bootstrapping"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class ClientState(Enum):
    CREATED = "created"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SUSPENDED = "suspended"  # Session lost, recovery in progress
    CLOSED = "closed"


class LocalServerRegistry:
    """In-process network and committed log shared by one cluster."""

    def __init__(self, *, commit_latency: DurationSeconds = 0.0) -> None:
        self.commit_latency = commit_latency
        self._by_address: dict[Address, LocalReplicaServer] = {}
        self._running: dict[Address, LocalReplicaServer] = {}
        self._configuration: tuple[Address, ...] = ()
        self._roles: dict[Address, MemberRole] = {}
        self._applied: dict[Address, LogIndex] = {}
        self._entries: list[LogEntry] = []
        self._commit_index: LogIndex = 0
        self._commits_since_trim = 0

    @property
    def commit_index(self) -> LogIndex:
        return self._commit_index

    @property
    def configuration(self) -> tuple[Address, ...]:
        return self._configuration

    def configure(self, cluster: Sequence[Address]) -> None:
        """Record the cluster configuration a replica bootstraps against."""
        addresses = tuple(cluster)
        if not self._configuration:
            self._configuration = addresses
        elif set(addresses) != set(self._configuration):
            local_log.warning(
                f"Bootstrap configuration {[str(a) for a in addresses]} differs "
                f"from cluster {[str(a) for a in self._configuration]}"
            )
            self._configuration = tuple(
                dict.fromkeys(self._configuration + addresses)
            )

    def bind(self, server: LocalReplicaServer) -> None:
        identity = server.identity
        for address in (identity.server_address, identity.client_address):
            current = self._by_address.get(address)
            if current is not None and current is not server and current.is_running:
                raise ReplicaLifecycleError(
                    f"Address {address} is already bound to a running replica"
                )
            self._by_address[address] = server
        self._running[identity.server_address] = server
        self._roles[identity.server_address] = identity.role

    def unbind(self, server: LocalReplicaServer) -> None:
        address = server.identity.server_address
        if self._running.get(address) is server:
            del self._running[address]

    def lookup(self, address: Address) -> LocalReplicaServer | None:
        server = self._by_address.get(address)
        if server is None or not server.is_running:
            return None
        return server

    def quorum_size(self) -> int:
        voting = [
            address
            for address in self._configuration
            if self._roles.get(address, MemberRole.VOTING) is MemberRole.VOTING
        ]
        return len(voting) // 2 + 1

    def has_quorum(self) -> bool:
        running_voters = sum(
            1
            for address, server in self._running.items()
            if server.identity.is_voting and address in self._configuration
        )
        return running_voters >= self.quorum_size()

    def note_applied(self, address: Address, index: LogIndex) -> None:
        self._applied[address] = max(index, self._applied.get(address, 0))

    def min_applied_index(self) -> LogIndex:
        """Highest index every configured member has applied."""
        if not self._configuration:
            return 0
        return min(self._applied.get(address, 0) for address in self._configuration)

    def entries_after(self, index: LogIndex) -> list[LogEntry]:
        return [entry for entry in self._entries if entry.index > index]

    async def commit(
        self,
        operation: Operation,
        server: LocalReplicaServer,
        session_id: SessionId,
    ) -> Any:
        """Commit a command through ``server`` and return its result there."""
        if self.commit_latency:
            await asyncio.sleep(self.commit_latency)
        if not server.is_running:
            raise ReplicaNotRunningError(f"{server.identity} is not running")
        if not self.has_quorum():
            raise NoQuorumError(
                f"{len(self._running)} of {len(self._configuration)} members running"
            )

        assert not isinstance(operation, Get)
        self._commit_index += 1
        entry = LogEntry(index=self._commit_index, command=operation)
        self._entries.append(entry)

        result: Any = None
        for replica in list(self._running.values()):
            applied = replica.apply_entry(entry, session_id)
            if replica is server:
                result = applied

        self._commits_since_trim += 1
        if self._commits_since_trim >= TRIM_INTERVAL:
            self._trim()
        return result

    async def query(self, operation: Get, server: LocalReplicaServer) -> Any:
        if self.commit_latency and operation.consistency.requires_quorum:
            await asyncio.sleep(self.commit_latency)
        if not server.is_running:
            raise ReplicaNotRunningError(f"{server.identity} is not running")
        if operation.consistency.requires_quorum and not self.has_quorum():
            raise NoQuorumError(
                f"{operation.consistency.value} read needs a running quorum"
            )
        return server.query(operation)

    def _trim(self) -> None:
        self._commits_since_trim = 0
        floor = self.min_applied_index()
        if floor and self._entries and self._entries[0].index <= floor:
            self._entries = [entry for entry in self._entries if entry.index > floor]


class LocalReplicaServer:
    """A replica bound to one identity; single-use from bootstrap to shutdown."""

    def __init__(
        self,
        identity: ReplicaIdentity,
        storage: StorageConfig,
        state_machine_factory: StateMachineFactory,
        registry: LocalServerRegistry,
    ) -> None:
        self.identity = identity
        self.storage = storage
        self.state_machine_factory = state_machine_factory
        self.registry = registry
        self.state = ServerState.CREATED
        self.state_machine: FuzzStateMachine | None = None
        self.log: SegmentedLog | None = None
        self.snapshots = SnapshotStore(
            storage.directory / "snapshots", fsync=storage.flush_on_commit
        )
        self.context: SchedulingContext | None = None
        self.sessions: set[SessionId] = set()
        self.last_applied: LogIndex = 0
        self.compactions = 0

    @property
    def is_running(self) -> bool:
        return self.state is ServerState.RUNNING

    @property
    def name(self) -> str:
        return str(self.identity.server_address)

    async def bootstrap(self, cluster: Sequence[Address]) -> None:
        if self.state is not ServerState.CREATED:
            raise ReplicaLifecycleError(
                f"[{self.name}] Cannot bootstrap from state {self.state.value}"
            )
        self.state = ServerState.BOOTSTRAPPING
        self.registry.configure(cluster)
        # Let concurrent bootstraps interleave like independent processes
        await asyncio.sleep(0)

        try:
            log = SegmentedLog(self.storage, name=self.name)
            log.open()
        except Exception:
            self.state = ServerState.STOPPED
            raise
        self.log = log

        try:
            replayed, caught_up = self._restore_state(log)
            self.registry.bind(self)
        except Exception:
            # Give the directory back so a replacement can take it over
            self.state = ServerState.STOPPED
            self.registry.unbind(self)
            await self._close_log()
            raise
        self.state = ServerState.RUNNING
        self.registry.note_applied(self.identity.server_address, self.last_applied)

        self.context = SchedulingContext(f"replica-{self.name}")
        self.context.schedule_periodic(
            self.storage.minor_compaction_interval,
            self.storage.minor_compaction_interval,
            self._minor_compaction,
            name="minor-compaction",
        )
        self.context.schedule_periodic(
            self.storage.major_compaction_interval,
            self.storage.major_compaction_interval,
            self._major_compaction,
            name="major-compaction",
        )
        local_log.info(
            f"[{self.name}] Bootstrapped: replayed {replayed} entries, "
            f"caught up {caught_up}, last index {self.last_applied}"
        )

    def _restore_state(self, log: SegmentedLog) -> tuple[int, int]:
        """Install the latest snapshot, replay the log and catch up."""
        state_machine = self.state_machine_factory()
        snapshot = self.snapshots.load_latest()
        if snapshot is not None:
            snapshot_index, data = snapshot
            state_machine.install(SnapshotReader(data))
            local_log.debug(
                f"[{self.name}] Installed snapshot taken at index {snapshot_index}"
            )
        self.state_machine = state_machine

        replayed = 0
        for entry in log.entries():
            self._apply(entry, session_id="")
            replayed += 1

        # No await between catch-up and bind: no commit can slip in between
        caught_up = 0
        for entry in self.registry.entries_after(log.last_index):
            self.apply_entry(entry, session_id="")
            caught_up += 1
        return replayed, caught_up

    async def shutdown(self) -> None:
        if self.state is not ServerState.RUNNING:
            raise ReplicaLifecycleError(
                f"[{self.name}] Cannot shut down from state {self.state.value}"
            )
        self.state = ServerState.SHUTTING_DOWN
        self.registry.unbind(self)
        try:
            assert self.state_machine is not None
            for session_id in list(self.sessions):
                self.state_machine.expire(session_id)
                self.state_machine.close(session_id)
            self.sessions.clear()

            if self.context is not None:
                await self.context.close()

            writer = SnapshotWriter()
            self.state_machine.snapshot(writer)
            self.snapshots.save(self.last_applied, writer.getvalue())
            self.snapshots.cleanup(SNAPSHOTS_KEPT)
        finally:
            self.state = ServerState.STOPPED
            await self._close_log()
        local_log.info(f"[{self.name}] Shut down at index {self.last_applied}")

    async def wait_closed(self) -> None:
        """Wait until the storage directory has been released."""
        if self.log is not None:
            await self.log.close()

    async def _close_log(self) -> None:
        assert self.log is not None
        try:
            await self.log.close()
        except asyncio.CancelledError:
            # The close keeps running; hold the caller until the lock is gone
            await self.log.close()
            raise

    def apply_entry(self, entry: LogEntry, session_id: SessionId) -> Any:
        """Persist and apply a committed entry; duplicates are ignored."""
        assert self.log is not None
        if entry.index <= self.log.last_index:
            return None
        self.log.append(entry)
        return self._apply(entry, session_id)

    def query(self, operation: Get) -> Any:
        assert self.state_machine is not None
        return self.state_machine.apply(Commit(self.last_applied, operation))

    def open_session(self, session_id: SessionId) -> None:
        if not self.is_running:
            raise ReplicaNotRunningError(f"{self.identity} is not running")
        assert self.state_machine is not None
        self.sessions.add(session_id)
        self.state_machine.register(session_id)

    def close_session(self, session_id: SessionId) -> None:
        if session_id not in self.sessions:
            return
        self.sessions.discard(session_id)
        assert self.state_machine is not None
        self.state_machine.unregister(session_id)
        self.state_machine.close(session_id)

    def _apply(self, entry: LogEntry, session_id: SessionId) -> Any:
        assert self.state_machine is not None and self.log is not None
        commit = Commit(
            entry.index, entry.command, session_id, on_close=self.log.release
        )
        result = self.state_machine.apply(commit)
        self.last_applied = entry.index
        if self.state is ServerState.RUNNING:
            self.registry.note_applied(self.identity.server_address, entry.index)
        return result

    async def _minor_compaction(self) -> None:
        assert self.log is not None
        await self.log.compact(major=False)
        self.compactions += 1

    async def _major_compaction(self) -> None:
        assert self.log is not None
        await self.log.compact(
            major=True, min_applied_index=self.registry.min_applied_index()
        )
        self.compactions += 1


class LocalClusterClient:
    """Client session with connection backoff and session recovery."""

    def __init__(
        self,
        registry: LocalServerRegistry,
        connection_strategy: ConnectionStrategy = ConnectionStrategy.FIBONACCI_BACKOFF,
        recovery_strategy: RecoveryStrategy = RecoveryStrategy.RECOVER,
        *,
        backoff_base: DurationSeconds = 0.05,
        backoff_max: DurationSeconds = 5.0,
        submit_timeout: DurationSeconds = 30.0,
        rng: random.Random | None = None,
    ) -> None:
        self.registry = registry
        self.connection_strategy = connection_strategy
        self.recovery_strategy = recovery_strategy
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.submit_timeout = submit_timeout
        self.rng = rng or random.Random()
        self.client_id = str(ulid.new())
        self.context = SchedulingContext(f"client-{self.client_id[-8:]}")
        self.state = ClientState.CREATED
        self.session_id: SessionId | None = None
        self.sessions_opened = 0
        self._server: LocalReplicaServer | None = None
        self._cluster: list[Address] = []
        self._pending: set[asyncio.Task[Any]] = set()
        self._session_lock = asyncio.Lock()
        self._torn_down = False

    @property
    def is_connected(self) -> bool:
        return (
            self.state is ClientState.CONNECTED
            and self._server is not None
            and self._server.is_running
        )

    @property
    def server(self) -> LocalReplicaServer | None:
        return self._server

    async def connect(self, cluster: Sequence[Address]) -> None:
        if self.state is ClientState.CLOSED:
            raise ClientClosedError(f"Client {self.client_id} is closed")
        self._cluster = list(cluster)
        async with self._session_lock:
            await self._open_session()

    def submit(self, operation: Operation) -> asyncio.Task[Any]:
        if self.state is ClientState.CLOSED:
            raise ClientClosedError(f"Client {self.client_id} is closed")
        task = asyncio.create_task(self._submit(operation))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def close(self) -> None:
        """Cancel pending submissions and release the session; idempotent."""
        if self._torn_down:
            return
        self._torn_down = True
        self.state = ClientState.CLOSED
        pending = list(self._pending)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self.context.close()
        if self._server is not None and self.session_id is not None:
            self._server.close_session(self.session_id)
        self._server = None
        local_log.debug(f"[client {self.client_id}] Closed")

    async def _submit(self, operation: Operation) -> Any:
        async with asyncio.timeout(self.submit_timeout):
            while True:
                server, session_id = await self._current_session()
                try:
                    if operation.is_command:
                        return await self.registry.commit(operation, server, session_id)
                    assert isinstance(operation, Get)
                    return await self.registry.query(operation, server)
                except ReplicaNotRunningError:
                    await self._recover(server)

    async def _current_session(self) -> tuple[LocalReplicaServer, SessionId]:
        if self.state is ClientState.CLOSED:
            raise ClientClosedError(f"Client {self.client_id} is closed")
        if self._server is None or self.session_id is None:
            await self._recover(None)
        assert self._server is not None and self.session_id is not None
        return self._server, self.session_id

    async def _recover(self, lost: LocalReplicaServer | None) -> None:
        async with self._session_lock:
            if self.state is ClientState.CLOSED:
                raise ClientClosedError(f"Client {self.client_id} is closed")
            if self._server is not None and self._server is not lost:
                return  # Another submission already recovered the session
            if self.recovery_strategy is RecoveryStrategy.CLOSE:
                self.state = ClientState.CLOSED
                raise SessionClosedError(
                    f"Client {self.client_id} lost its session and will not recover"
                )
            self.state = ClientState.SUSPENDED
            self._server = None
            local_log.debug(f"[client {self.client_id}] Session lost, recovering")
            await self._open_session()

    async def _open_session(self) -> None:
        self.state = ClientState.CONNECTING
        delays = self.connection_strategy.delays(self.backoff_base, self.backoff_max)
        while True:
            candidates = list(self._cluster)
            self.rng.shuffle(candidates)
            for address in candidates:
                server = self.registry.lookup(address)
                if server is None:
                    continue
                session_id = str(ulid.new())
                server.open_session(session_id)
                self._server = server
                self.session_id = session_id
                self.sessions_opened += 1
                self.state = ClientState.CONNECTED
                local_log.debug(
                    f"[client {self.client_id}] Session {session_id} on {server.name}"
                )
                return
            delay = next(delays, None)
            if delay is None:
                raise ConnectionError(
                    f"No live member among {[str(a) for a in self._cluster]}"
                )
            await asyncio.sleep(delay)
            if self.state is ClientState.CLOSED:
                raise ClientClosedError(f"Client {self.client_id} is closed")


class LocalServiceBackend:
    """Creates replicas and clients wired to one ``LocalServerRegistry``."""

    def __init__(
        self,
        registry: LocalServerRegistry | None = None,
        *,
        backoff_base: DurationSeconds = 0.05,
        backoff_max: DurationSeconds = 5.0,
        submit_timeout: DurationSeconds = 30.0,
        rng: random.Random | None = None,
    ) -> None:
        self.registry = registry or LocalServerRegistry()
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.submit_timeout = submit_timeout
        self.rng = rng or random.Random()

    def create_server(
        self,
        identity: ReplicaIdentity,
        storage: StorageConfig,
        state_machine_factory: StateMachineFactory,
    ) -> LocalReplicaServer:
        return LocalReplicaServer(
            identity, storage, state_machine_factory, self.registry
        )

    def create_client(
        self,
        connection_strategy: ConnectionStrategy,
        recovery_strategy: RecoveryStrategy,
    ) -> LocalClusterClient:
        return LocalClusterClient(
            self.registry,
            connection_strategy,
            recovery_strategy,
            backoff_base=self.backoff_base,
            backoff_max=self.backoff_max,
            submit_timeout=self.submit_timeout,
            rng=random.Random(self.rng.random()),
        )

    @classmethod
    def from_settings(
        cls, settings: FuzzSettings, rng: random.Random | None = None
    ) -> LocalServiceBackend:
        return cls(
            LocalServerRegistry(),
            backoff_base=settings.connection_backoff_base,
            backoff_max=settings.connection_backoff_max,
            submit_timeout=settings.submit_timeout,
            rng=rng,
        )
