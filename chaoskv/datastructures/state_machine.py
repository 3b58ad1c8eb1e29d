"""
Replicated key/value state machine used as the subject under test.

The map holds the *commit* of the last write to every key rather than the
bare value. A commit pins its log entry: the storage layer may not compact an
entry until the state machine closes the commit. Every handler therefore
closes commits as soon as they stop contributing to the map's state:

* a ``Put`` commit stays open while it is the current value of its key and
  is closed once a later ``Put`` or ``Remove`` supersedes it;
* a ``Remove`` commit is closed right after it is applied (it becomes a
  tombstone the log keeps until every member has seen it);
* a ``Get`` commit is closed unconditionally, reads retain nothing.

Snapshots deliberately carry a fixed placeholder rather than the map so the
snapshot write/install path is exercised independently of map durability.
"""

from __future__ import annotations

import struct
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .operations import Get, Put, Remove
from .type_aliases import LogIndex, MapKey, MapValue, SessionId

SNAPSHOT_PLACEHOLDER = 10

_LONG = struct.Struct(">q")


@dataclass(slots=True)
class Commit[T]:
    """An applied log entry handed to the state machine."""

    index: LogIndex
    operation: T
    session_id: SessionId = ""
    on_close: Callable[[LogIndex], None] | None = field(default=None, repr=False)
    _open: bool = field(default=True, init=False, repr=False)

    @property
    def is_open(self) -> bool:
        return self._open

    def close(self) -> None:
        """Release the commit; idempotent."""
        if not self._open:
            return
        self._open = False
        if self.on_close is not None:
            self.on_close(self.index)


class SnapshotWriter:
    """Append-only binary writer for snapshot payloads."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    def write_long(self, value: int) -> SnapshotWriter:
        self._buffer += _LONG.pack(value)
        return self

    def getvalue(self) -> bytes:
        return bytes(self._buffer)


class SnapshotReader:
    """Sequential binary reader over a snapshot payload."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._offset = 0

    def read_long(self) -> int:
        if self._offset + _LONG.size > len(self._data):
            raise EOFError("Snapshot payload exhausted")
        (value,) = _LONG.unpack_from(self._data, self._offset)
        self._offset += _LONG.size
        return value

    @property
    def remaining(self) -> int:
        return len(self._data) - self._offset


class FuzzStateMachine:
    """In-memory key/value map replicated through the cluster log."""

    def __init__(self) -> None:
        self._map: dict[MapKey, Commit[Put]] = {}

    # Session lifecycle callbacks. Map entries are not tied to sessions.
    def register(self, session_id: SessionId) -> None:
        pass

    def unregister(self, session_id: SessionId) -> None:
        pass

    def expire(self, session_id: SessionId) -> None:
        pass

    def close(self, session_id: SessionId) -> None:
        pass

    def snapshot(self, writer: SnapshotWriter) -> None:
        writer.write_long(SNAPSHOT_PLACEHOLDER)

    def install(self, reader: SnapshotReader) -> None:
        reader.read_long()

    def apply(self, commit: Commit[Any]) -> MapValue | None:
        """Dispatch a commit to the handler for its operation type."""
        match commit.operation:
            case Put():
                return self.put(commit)
            case Get():
                return self.get(commit)
            case Remove():
                return self.remove(commit)
        commit.close()
        raise TypeError(f"Unsupported operation: {commit.operation!r}")

    def put(self, commit: Commit[Put]) -> MapValue | None:
        try:
            old = self._map.get(commit.operation.key)
            self._map[commit.operation.key] = commit
        except Exception:
            commit.close()
            raise
        if old is None:
            return None
        try:
            return old.operation.value
        finally:
            old.close()

    def get(self, commit: Commit[Get]) -> MapValue | None:
        try:
            current = self._map.get(commit.operation.key)
            return current.operation.value if current is not None else None
        finally:
            commit.close()

    def remove(self, commit: Commit[Remove]) -> MapValue | None:
        try:
            removed = self._map.pop(commit.operation.key, None)
            if removed is None:
                return None
            try:
                return removed.operation.value
            finally:
                removed.close()
        finally:
            commit.close()

    def __len__(self) -> int:
        return len(self._map)

    def __contains__(self, key: object) -> bool:
        return key in self._map

    def open_commit_count(self) -> int:
        """Commits currently pinning log entries."""
        return sum(1 for commit in self._map.values() if commit.is_open)
