"""
Replica lifecycle: build, shut down and rebuild the cluster's replicas.

Replicas live in a fixed-size list; a restart replaces the stopped handle in
place with a fresh instance bound to the same identity and storage path.
"""

from __future__ import annotations

import asyncio
import random
from pathlib import Path
from typing import Any

from loguru import logger

from chaoskv.core.config import FuzzSettings
from chaoskv.core.errors import ReplicaLifecycleError
from chaoskv.datastructures.members import MemberRegistry, MemberRole, ReplicaIdentity
from chaoskv.datastructures.state_machine import FuzzStateMachine
from chaoskv.datastructures.type_aliases import DurationSeconds
from chaoskv.service.protocols import (
    ReplicaServer,
    ServiceBackend,
    StateMachineFactory,
    StorageConfig,
)

lifecycle_log = logger


class ClusterLifecycleManager:
    """Owner of the replica handles of one iteration."""

    def __init__(
        self,
        backend: ServiceBackend,
        members: MemberRegistry,
        settings: FuzzSettings,
        rng: random.Random | None = None,
        *,
        state_machine_factory: StateMachineFactory = FuzzStateMachine,
    ) -> None:
        self.backend = backend
        self.members = members
        self.settings = settings
        self.rng = rng or random.Random()
        self.state_machine_factory = state_machine_factory
        self.replicas: list[ReplicaServer] = []
        self._bootstraps: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self.replicas)

    def replica(self, index: int) -> ReplicaServer:
        return self.replicas[index]

    def running_count(self) -> int:
        return sum(1 for replica in self.replicas if replica.is_running)

    def storage_directory(self, identity: ReplicaIdentity) -> Path:
        """Storage subtree of ``identity``; identical across restarts."""
        return self.settings.storage_root / str(identity.storage_key)

    def random_storage(self, identity: ReplicaIdentity) -> StorageConfig:
        """Draw an independent storage tuning within the configured bounds."""
        bounds = self.settings.storage_bounds
        rng = self.rng
        return StorageConfig(
            directory=self.storage_directory(identity),
            max_segment_size=rng.randrange(
                bounds.segment_size_min, bounds.segment_size_max
            ),
            max_entries_per_segment=rng.randrange(
                bounds.entries_per_segment_min, bounds.entries_per_segment_max
            ),
            compaction_threads=rng.randrange(
                bounds.compaction_threads_min, bounds.compaction_threads_max
            ),
            compaction_threshold=rng.random(),
            entry_buffer_size=rng.randrange(
                bounds.entry_buffer_size_min, bounds.entry_buffer_size_max
            ),
            flush_on_commit=rng.random() < 0.5,
            minor_compaction_interval=rng.uniform(
                bounds.minor_compaction_interval_min,
                bounds.minor_compaction_interval_max,
            ),
            major_compaction_interval=rng.uniform(
                bounds.major_compaction_interval_min,
                bounds.major_compaction_interval_max,
            ),
        )

    def create_replica(self, identity: ReplicaIdentity) -> ReplicaServer:
        """Construct, without bootstrapping, a replica for ``identity``."""
        return self.backend.create_server(
            identity, self.random_storage(identity), self.state_machine_factory
        )

    async def build_replicas(
        self, count: int, role: MemberRole = MemberRole.VOTING
    ) -> list[ReplicaServer]:
        """Allocate ``count`` members and bootstrap them concurrently."""
        if count <= 0:
            raise ValueError("Replica count must be positive")
        identities = [self.members.next_member(role) for _ in range(count)]
        replicas = [self.create_replica(identity) for identity in identities]
        self.replicas.extend(replicas)

        cluster = self.members.server_addresses()
        tasks = [
            asyncio.create_task(
                replica.bootstrap(cluster), name=f"bootstrap-{replica.identity}"
            )
            for replica in replicas
        ]
        self._bootstraps.update(tasks)
        for task in tasks:
            task.add_done_callback(self._on_bootstrap_done)

        timeout = self.settings.bootstrap_timeout_per_replica * count
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            lifecycle_log.warning(
                f"{len(pending)} of {count} replicas did not bootstrap "
                f"within {timeout:.1f}s"
            )
        lifecycle_log.info(
            f"Bootstrapped {self.running_count()} of {len(self.replicas)} replicas"
        )
        return replicas

    def _on_bootstrap_done(self, task: asyncio.Task[Any]) -> None:
        self._bootstraps.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            lifecycle_log.opt(exception=exc).error(
                f"Bootstrap {task.get_name()} failed: {exc}"
            )

    async def shutdown_replica(self, index: int) -> None:
        replica = self.replicas[index]
        lifecycle_log.info(f"Shutting down replica {index} ({replica.identity})")
        await replica.shutdown()

    async def rebuild_replica(self, index: int) -> ReplicaServer:
        """Replace the stopped replica at ``index`` and bootstrap the new one."""
        current = self.replicas[index]
        if current.is_running:
            raise ReplicaLifecycleError(
                f"Replica {index} ({current.identity}) is still running"
            )
        # A cancelled shutdown may still be releasing the directory
        await current.wait_closed()
        replacement = self.create_replica(current.identity)
        self.replicas[index] = replacement
        lifecycle_log.info(f"Restarting replica {index} ({replacement.identity})")
        await replacement.bootstrap(self.members.server_addresses())
        return replacement

    async def shutdown_all(self, timeout: DurationSeconds) -> None:
        """Best-effort shutdown of every replica.

        Returns only once each replica has given its storage directory back
        (or ``timeout`` ran out waiting for it), so the caller may delete the
        tree. A shutdown cancelled elsewhere can still be closing its log.
        """
        for task in list(self._bootstraps):
            task.cancel()
        if self._bootstraps:
            await asyncio.gather(*self._bootstraps, return_exceptions=True)

        for index, replica in enumerate(self.replicas):
            try:
                if replica.is_running:
                    await asyncio.wait_for(replica.shutdown(), timeout)
                await asyncio.wait_for(replica.wait_closed(), timeout)
            except Exception as e:
                lifecycle_log.debug(
                    f"Ignoring error shutting down replica {index}: {e!r}"
                )
        self.replicas.clear()
