"""
Segmented on-disk log and snapshot store for local replicas.

Each replica owns one storage directory::

    <storage_root>/<storage_key>/
        .lock                     exclusive ownership marker
        segment-00000001.log      JSON lines, one command entry per line
        segment-00000002.log
        snapshots/snapshot-000000001234.snap

Segments roll when they reach ``max_segment_size`` bytes or
``max_entries_per_segment`` entries. Appends are buffered up to
``entry_buffer_size`` entries unless ``flush_on_commit`` is set, in which
case every append is flushed and fsynced.

Compaction only ever rewrites sealed segments. An entry becomes removable
once the state machine has released it:

* QUORUM entries (writes) are removed by minor and major compaction;
* TOMBSTONE entries (deletes) are removed only by major compaction and only
  at or below the lowest index applied on every member, so a lagging member
  can never miss a delete.

Minor compaction skips a segment until its removable ratio reaches
``compaction_threshold``; major compaction rewrites any segment with
removable entries. At most ``compaction_threads`` segments are rewritten
concurrently, each on a worker thread.
"""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any

from loguru import logger

from chaoskv.core.errors import StorageInUseError
from chaoskv.datastructures.operations import (
    Command,
    CompactionMode,
    operation_from_record,
    to_record,
)
from chaoskv.datastructures.type_aliases import LogIndex

from .protocols import StorageConfig

storage_log = logger

LOCK_FILE = ".lock"
SEGMENT_GLOB = "segment-*.log"
SNAPSHOT_GLOB = "snapshot-*.snap"


@dataclass(frozen=True, slots=True)
class LogEntry:
    """A committed command at a position in the log."""

    index: LogIndex
    command: Command

    def __post_init__(self) -> None:
        if self.index < 1:
            raise ValueError("Log index must be positive")

    @property
    def compaction(self) -> CompactionMode:
        return self.command.compaction

    def to_line(self) -> str:
        return json.dumps(
            {"index": self.index, "command": to_record(self.command)},
            sort_keys=True,
        )

    @classmethod
    def from_line(cls, line: str) -> LogEntry:
        data = json.loads(line)
        command = operation_from_record(data["command"])
        if not command.is_command:
            raise ValueError(f"Queries are never logged: {command!r}")
        return cls(index=data["index"], command=command)  # type: ignore[arg-type]


@dataclass(slots=True)
class Segment:
    """One segment file and the entries it currently holds."""

    segment_id: int
    path: Path
    entries: list[LogEntry] = field(default_factory=list)
    size_bytes: int = 0
    sealed: bool = False

    @property
    def first_index(self) -> LogIndex:
        return self.entries[0].index if self.entries else 0

    @property
    def last_index(self) -> LogIndex:
        return self.entries[-1].index if self.entries else 0


@dataclass(frozen=True, slots=True)
class CompactionResult:
    """Outcome of one compaction pass."""

    major: bool
    segments_rewritten: int = 0
    entries_removed: int = 0
    tombstones_removed: int = 0


def segment_file_name(segment_id: int) -> str:
    return f"segment-{segment_id:08d}.log"


def _rewrite_segment(path: Path, lines: list[str], fsync: bool) -> int:
    """Atomically replace a segment file; runs on a worker thread."""
    temp_path = path.with_suffix(".tmp")
    payload = "".join(f"{line}\n" for line in lines)
    with open(temp_path, "w") as handle:
        handle.write(payload)
        handle.flush()
        if fsync:
            os.fsync(handle.fileno())
    temp_path.replace(path)
    return len(payload.encode())


class SegmentedLog:
    """Append-only command log split into size/count bounded segments."""

    def __init__(self, config: StorageConfig, name: str = "") -> None:
        self.config = config
        self.name = name or str(config.directory)
        self.directory = config.directory
        self._segments: list[Segment] = []
        self._active_handle: IO[str] | None = None
        self._buffer: list[str] = []
        self._released: set[LogIndex] = set()
        self._lock_fd: int | None = None
        self._inflight: set[asyncio.Future[Any]] = set()
        self._compaction_slots = asyncio.Semaphore(config.compaction_threads)
        self._compaction_lock = asyncio.Lock()
        self._closing: asyncio.Task[None] | None = None
        self._last_index: LogIndex = 0
        self.is_open = False

    @property
    def last_index(self) -> LogIndex:
        return self._last_index

    @property
    def segment_count(self) -> int:
        return len(self._segments)

    @property
    def buffered_count(self) -> int:
        return len(self._buffer)

    def open(self) -> None:
        """Take exclusive ownership of the directory and load its segments."""
        if self.is_open:
            return
        self.directory.mkdir(parents=True, exist_ok=True)
        lock_path = self.directory / LOCK_FILE
        try:
            self._lock_fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError as e:
            raise StorageInUseError(
                f"Storage directory {self.directory} is held by another replica"
            ) from e
        os.write(self._lock_fd, str(os.getpid()).encode())

        try:
            self._load_segments()
        except Exception:
            self._release_lock()
            raise
        if not self._segments or self._segments[-1].sealed:
            self._start_segment()
        self.is_open = True
        self._closing = None
        storage_log.debug(
            f"[{self.name}] Opened log: {len(self._segments)} segments, "
            f"last index {self._last_index}"
        )

    @property
    def is_closed(self) -> bool:
        """True once the directory lock has been given back."""
        return self._lock_fd is None

    async def close(self) -> None:
        """Wait for in-flight compaction, flush, and release the directory.

        The close itself runs as its own task: cancelling a caller stops the
        wait, not the close, and every later call waits on the same task.
        """
        if self._closing is None:
            if not self.is_open:
                return
            self.is_open = False
            self._closing = asyncio.create_task(
                self._finish_close(), name=f"close-{self.name}"
            )
        await asyncio.shield(self._closing)

    async def _finish_close(self) -> None:
        try:
            if self._inflight:
                await asyncio.gather(*self._inflight, return_exceptions=True)
            self.flush()
        finally:
            if self._active_handle is not None:
                self._active_handle.close()
                self._active_handle = None
            self._release_lock()
        storage_log.debug(f"[{self.name}] Closed log at index {self._last_index}")

    def append(self, entry: LogEntry) -> None:
        """Append the next entry; indexes must be strictly increasing."""
        if not self.is_open:
            raise RuntimeError(f"Log {self.name} is not open")
        if entry.index <= self._last_index:
            raise ValueError(
                f"Out of order append: {entry.index} after {self._last_index}"
            )
        active = self._segments[-1]
        line = entry.to_line()
        active.entries.append(entry)
        active.size_bytes += len(line.encode()) + 1
        self._last_index = entry.index
        self._buffer.append(line)

        if (
            self.config.flush_on_commit
            or len(self._buffer) >= self.config.entry_buffer_size
        ):
            self.flush()
        if (
            len(active.entries) >= self.config.max_entries_per_segment
            or active.size_bytes >= self.config.max_segment_size
        ):
            self._roll()

    def flush(self) -> None:
        if not self._buffer or self._active_handle is None:
            return
        self._active_handle.write("".join(f"{line}\n" for line in self._buffer))
        self._active_handle.flush()
        if self.config.flush_on_commit:
            os.fsync(self._active_handle.fileno())
        self._buffer.clear()

    def release(self, index: LogIndex) -> None:
        """Mark the entry at ``index`` as no longer needed by the state machine."""
        if 0 < index <= self._last_index:
            self._released.add(index)

    def entries(self) -> Iterator[LogEntry]:
        for segment in self._segments:
            yield from segment.entries

    def entries_after(self, index: LogIndex) -> list[LogEntry]:
        return [entry for entry in self.entries() if entry.index > index]

    def __len__(self) -> int:
        return sum(len(segment.entries) for segment in self._segments)

    async def compact(
        self, *, major: bool = False, min_applied_index: LogIndex = 0
    ) -> CompactionResult:
        """Rewrite sealed segments without their removable entries."""
        async with self._compaction_lock:
            if not self.is_open:
                return CompactionResult(major=major)
            return await self._compact_sealed(major, min_applied_index)

    async def _compact_sealed(
        self, major: bool, min_applied_index: LogIndex
    ) -> CompactionResult:
        plans: list[tuple[Segment, list[LogEntry], int, int]] = []
        for segment in self._segments:
            if not segment.sealed or not segment.entries:
                continue
            kept: list[LogEntry] = []
            removed = tombstones = 0
            for entry in segment.entries:
                if self._removable(entry, major, min_applied_index):
                    removed += 1
                    if entry.compaction is CompactionMode.TOMBSTONE:
                        tombstones += 1
                else:
                    kept.append(entry)
            if not removed:
                continue
            ratio = removed / len(segment.entries)
            if major or ratio >= self.config.compaction_threshold:
                plans.append((segment, kept, removed, tombstones))

        if not plans:
            return CompactionResult(major=major)

        results = await asyncio.gather(
            *(self._rewrite(segment, kept) for segment, kept, _, _ in plans)
        )
        removed_total = tombstones_total = 0
        for (segment, kept, removed, tombstones), size in zip(plans, results):
            dropped = {entry.index for entry in segment.entries} - {
                entry.index for entry in kept
            }
            segment.entries = kept
            segment.size_bytes = size
            self._released -= dropped
            removed_total += removed
            tombstones_total += tombstones

        result = CompactionResult(
            major=major,
            segments_rewritten=len(plans),
            entries_removed=removed_total,
            tombstones_removed=tombstones_total,
        )
        storage_log.debug(f"[{self.name}] Compaction finished: {result}")
        return result

    def _removable(
        self, entry: LogEntry, major: bool, min_applied_index: LogIndex
    ) -> bool:
        if entry.index not in self._released:
            return False
        if entry.compaction is CompactionMode.QUORUM:
            return True
        return major and entry.index <= min_applied_index

    async def _rewrite(self, segment: Segment, kept: list[LogEntry]) -> int:
        async with self._compaction_slots:
            future = asyncio.ensure_future(
                asyncio.to_thread(
                    _rewrite_segment,
                    segment.path,
                    [entry.to_line() for entry in kept],
                    self.config.flush_on_commit,
                )
            )
            self._inflight.add(future)
            future.add_done_callback(self._inflight.discard)
            # The rewrite must finish even if this compaction is cancelled;
            # close() waits on _inflight before the directory can be reused.
            return await asyncio.shield(future)

    def _load_segments(self) -> None:
        paths = sorted(self.directory.glob(SEGMENT_GLOB))
        for path in paths:
            segment_id = int(path.stem.split("-")[1])
            segment = Segment(segment_id=segment_id, path=path, sealed=True)
            with open(path) as handle:
                for line_number, line in enumerate(handle, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entry = LogEntry.from_line(line)
                    except (ValueError, KeyError) as e:
                        storage_log.warning(
                            f"[{self.name}] Dropping unreadable entry "
                            f"{path.name}:{line_number}: {e}"
                        )
                        continue
                    segment.entries.append(entry)
                    self._last_index = max(self._last_index, entry.index)
            segment.size_bytes = path.stat().st_size
            if not segment.entries and segment.size_bytes == 0:
                path.unlink()
                continue
            self._segments.append(segment)

    def _start_segment(self) -> None:
        next_id = self._segments[-1].segment_id + 1 if self._segments else 1
        path = self.directory / segment_file_name(next_id)
        self._segments.append(Segment(segment_id=next_id, path=path))
        self._active_handle = open(path, "a")

    def _roll(self) -> None:
        self.flush()
        if self._active_handle is not None:
            self._active_handle.close()
            self._active_handle = None
        self._segments[-1].sealed = True
        self._start_segment()

    def _release_lock(self) -> None:
        if self._lock_fd is None:
            return
        os.close(self._lock_fd)
        self._lock_fd = None
        (self.directory / LOCK_FILE).unlink(missing_ok=True)


class SnapshotStore:
    """Snapshot files of one replica, newest index wins."""

    def __init__(self, directory: Path, *, fsync: bool = False) -> None:
        self.directory = directory
        self.fsync = fsync

    def save(self, index: LogIndex, data: bytes) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / f"snapshot-{index:012d}.snap"
        temp_path = path.with_suffix(".tmp")
        with open(temp_path, "wb") as handle:
            handle.write(data)
            handle.flush()
            if self.fsync:
                os.fsync(handle.fileno())
        temp_path.replace(path)
        return path

    def load_latest(self) -> tuple[LogIndex, bytes] | None:
        snapshots = self._sorted()
        if not snapshots:
            return None
        index, path = snapshots[-1]
        return index, path.read_bytes()

    def cleanup(self, keep_count: int = 3) -> int:
        """Delete all but the newest ``keep_count`` snapshots."""
        snapshots = self._sorted()
        stale = snapshots[:-keep_count] if keep_count > 0 else snapshots
        for _, path in stale:
            path.unlink(missing_ok=True)
        return len(stale)

    def _sorted(self) -> list[tuple[LogIndex, Path]]:
        if not self.directory.exists():
            return []
        return sorted(
            (int(path.stem.split("-")[1]), path)
            for path in self.directory.glob(SNAPSHOT_GLOB)
        )
