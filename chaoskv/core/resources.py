"""Process resource snapshots used to spot timer, task and file-descriptor leaks."""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass

import psutil
from loguru import logger


@dataclass(frozen=True, slots=True)
class ResourceSnapshot:
    """Point-in-time view of the resources the harness could leak."""

    open_fds: int
    open_files: int
    threads: int
    asyncio_tasks: int
    rss_bytes: int

    def delta(self, earlier: ResourceSnapshot) -> ResourceSnapshot:
        return ResourceSnapshot(
            open_fds=self.open_fds - earlier.open_fds,
            open_files=self.open_files - earlier.open_files,
            threads=self.threads - earlier.threads,
            asyncio_tasks=self.asyncio_tasks - earlier.asyncio_tasks,
            rss_bytes=self.rss_bytes - earlier.rss_bytes,
        )


def take_snapshot() -> ResourceSnapshot:
    """Sample the current process. Must run inside an event loop."""
    process = psutil.Process(os.getpid())
    try:
        open_fds = process.num_fds()
    except AttributeError:
        # num_fds() is POSIX only
        open_fds = process.num_handles()
    return ResourceSnapshot(
        open_fds=open_fds,
        open_files=len(process.open_files()),
        threads=process.num_threads(),
        asyncio_tasks=len(asyncio.all_tasks()),
        rss_bytes=process.memory_info().rss,
    )


def log_snapshot(label: str, snapshot: ResourceSnapshot) -> None:
    logger.info(
        f"[{label}] fds={snapshot.open_fds} files={snapshot.open_files} "
        f"threads={snapshot.threads} tasks={snapshot.asyncio_tasks} "
        f"rss={snapshot.rss_bytes:,}"
    )
