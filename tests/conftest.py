"""Pytest configuration and fixtures for chaoskv testing.

Fixtures build small clusters on the local backend with millisecond timings
and make sure every replica, client and scheduling context a test creates is
torn down again, so a failing test cannot leave timers firing into the next.
"""

import asyncio
import random
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from loguru import logger

from chaoskv.core.config import FuzzSettings, StorageTuningBounds
from chaoskv.core.scheduling import SchedulingContext
from chaoskv.datastructures.members import MemberRegistry
from chaoskv.datastructures.state_machine import FuzzStateMachine
from chaoskv.service.local import (
    LocalClusterClient,
    LocalReplicaServer,
    LocalServerRegistry,
    LocalServiceBackend,
)
from chaoskv.service.protocols import StorageConfig


class AsyncTestContext:
    """Context manager for async test operations with automatic cleanup."""

    def __init__(self) -> None:
        self.replicas: list[LocalReplicaServer] = []
        self.clients: list[LocalClusterClient] = []
        self.contexts: list[SchedulingContext] = []
        self.tasks: list[asyncio.Task[Any]] = []

    async def __aenter__(self) -> "AsyncTestContext":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Ensure all resources are cleaned up properly."""
        for task in self.tasks:
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        for context in self.contexts:
            await context.close()

        for client in self.clients:
            try:
                await client.close()
            except Exception as e:
                logger.warning(f"Error closing client: {e}")

        for replica in self.replicas:
            if replica.is_running:
                try:
                    await replica.shutdown()
                except Exception as e:
                    logger.warning(f"Error shutting down replica: {e}")

        self.replicas.clear()
        self.clients.clear()
        self.contexts.clear()
        self.tasks.clear()


@pytest_asyncio.fixture
async def test_context() -> AsyncGenerator[AsyncTestContext, None]:
    """Provides a clean async test context with automatic resource cleanup."""
    async with AsyncTestContext() as ctx:
        yield ctx


@pytest.fixture
def fast_settings(tmp_path: Path) -> FuzzSettings:
    """Settings with millisecond timings and storage under ``tmp_path``."""
    return FuzzSettings(
        iterations=1,
        observation_window=0.5,
        seed=1234,
        storage_root=tmp_path / "fuzz-logs",
        replica_count_min=3,
        replica_count_max=3,
        client_count_min=2,
        client_count_max=2,
        bootstrap_timeout_per_replica=2.0,
        connect_timeout=2.0,
        shutdown_timeout=2.0,
        workload_period=0.01,
        key_pool_size=16,
        submit_timeout=2.0,
        fault_delay_min=0.01,
        fault_delay_max=0.05,
        connection_backoff_base=0.005,
        connection_backoff_max=0.05,
        storage_bounds=StorageTuningBounds(
            minor_compaction_interval_min=0.05,
            minor_compaction_interval_max=0.1,
            major_compaction_interval_min=0.1,
            major_compaction_interval_max=0.2,
        ),
    )


@pytest.fixture
def rng() -> random.Random:
    return random.Random(42)


@pytest.fixture
def storage_factory(tmp_path: Path) -> Callable[..., StorageConfig]:
    """Builds storage configs rooted under ``tmp_path``."""

    def _make(name: str = "replica", **overrides: Any) -> StorageConfig:
        options: dict[str, Any] = {
            "directory": tmp_path / name,
            "max_segment_size": 64 * 1024,
            "max_entries_per_segment": 8,
            "compaction_threads": 2,
            "compaction_threshold": 0.5,
            "entry_buffer_size": 4,
            "flush_on_commit": False,
            "minor_compaction_interval": 60.0,
            "major_compaction_interval": 120.0,
        }
        options.update(overrides)
        return StorageConfig(**options)

    return _make


@pytest.fixture
def server_registry() -> LocalServerRegistry:
    return LocalServerRegistry()


@pytest.fixture
def local_backend(server_registry: LocalServerRegistry) -> LocalServiceBackend:
    return LocalServiceBackend(
        server_registry,
        backoff_base=0.005,
        backoff_max=0.05,
        submit_timeout=2.0,
        rng=random.Random(7),
    )


@pytest_asyncio.fixture
async def local_cluster(
    test_context: AsyncTestContext,
    local_backend: LocalServiceBackend,
    storage_factory: Callable[..., StorageConfig],
) -> AsyncGenerator[tuple[MemberRegistry, list[LocalReplicaServer]], None]:
    """Creates and bootstraps a 3-replica cluster on the local backend.

    Example Usage:
        async def test_commit(local_cluster):
            members, replicas = local_cluster
            # Every replica is running and bound to the shared registry
    """
    members = MemberRegistry()
    replicas = []
    for _ in range(3):
        identity = members.next_member()
        replica = local_backend.create_server(
            identity,
            storage_factory(str(identity.storage_key)),
            FuzzStateMachine,
        )
        replicas.append(replica)
        test_context.replicas.append(replica)

    cluster = members.server_addresses()
    await asyncio.gather(*(replica.bootstrap(cluster) for replica in replicas))
    yield members, replicas
