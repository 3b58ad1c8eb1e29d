"""
Operation catalog submitted by clients to the replicated log.

Commands (``Put``, ``Remove``) are written to the log and carry a compaction
hint telling the storage layer when a released entry may be purged. Queries
(``Get``) are never logged; they carry the consistency level the read must
be served at.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import ulid

from .type_aliases import MapKey, MapValue, RequestId


class CompactionMode(Enum):
    """When a released command entry may be removed from the log."""

    QUORUM = "quorum"  # Purgeable once released and stored on a quorum
    TOMBSTONE = "tombstone"  # Purgeable once applied on every member


class ConsistencyLevel(Enum):
    """Read consistency levels, weakest first."""

    SEQUENTIAL = "sequential"
    LINEARIZABLE_LEASE = "linearizable_lease"
    LINEARIZABLE = "linearizable"

    @property
    def requires_quorum(self) -> bool:
        return self is not ConsistencyLevel.SEQUENTIAL


def _request_id() -> RequestId:
    return str(ulid.new())


@dataclass(frozen=True, slots=True)
class Put:
    """Write ``value`` under ``key``; result is the previous value."""

    key: MapKey
    value: MapValue
    request_id: RequestId = field(default_factory=_request_id)

    @property
    def compaction(self) -> CompactionMode:
        return CompactionMode.QUORUM

    @property
    def is_command(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class Get:
    """Read ``key`` at the given consistency level."""

    key: MapKey
    consistency: ConsistencyLevel = ConsistencyLevel.LINEARIZABLE
    request_id: RequestId = field(default_factory=_request_id)

    @property
    def is_command(self) -> bool:
        return False


@dataclass(frozen=True, slots=True)
class Remove:
    """Delete ``key``; result is the removed value."""

    key: MapKey
    request_id: RequestId = field(default_factory=_request_id)

    @property
    def compaction(self) -> CompactionMode:
        return CompactionMode.TOMBSTONE

    @property
    def is_command(self) -> bool:
        return True


type Command = Put | Remove
type Operation = Put | Get | Remove


def to_record(operation: Operation) -> dict[str, Any]:
    """Serialize an operation into a JSON-compatible record."""
    match operation:
        case Put(key=key, value=value, request_id=request_id):
            return {"op": "put", "key": key, "value": value, "request_id": request_id}
        case Remove(key=key, request_id=request_id):
            return {"op": "remove", "key": key, "request_id": request_id}
        case Get(key=key, consistency=consistency, request_id=request_id):
            return {
                "op": "get",
                "key": key,
                "consistency": consistency.value,
                "request_id": request_id,
            }
    raise TypeError(f"Not an operation: {operation!r}")


def operation_from_record(record: dict[str, Any]) -> Operation:
    """Rebuild an operation from :func:`to_record` output."""
    kind = record.get("op")
    if kind == "put":
        return Put(record["key"], record["value"], request_id=record["request_id"])
    if kind == "remove":
        return Remove(record["key"], request_id=record["request_id"])
    if kind == "get":
        return Get(
            record["key"],
            ConsistencyLevel(record["consistency"]),
            request_id=record["request_id"],
        )
    raise ValueError(f"Unknown operation record type: {kind!r}")
