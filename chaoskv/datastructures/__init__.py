"""
Datastructures shared by the harness and the service backend.

- Member identities and the per-run member registry
- The operation catalog (Put, Get, Remove) and its record codec
- The replicated map state machine and its commit/snapshot types
"""

from __future__ import annotations

from .members import Address, MemberRegistry, MemberRole, ReplicaIdentity
from .operations import (
    CompactionMode,
    ConsistencyLevel,
    Get,
    Put,
    Remove,
    operation_from_record,
    to_record,
)
from .state_machine import Commit, FuzzStateMachine, SnapshotReader, SnapshotWriter

__all__ = [
    "Address",
    "Commit",
    "CompactionMode",
    "ConsistencyLevel",
    "FuzzStateMachine",
    "Get",
    "MemberRegistry",
    "MemberRole",
    "Put",
    "Remove",
    "ReplicaIdentity",
    "SnapshotReader",
    "SnapshotWriter",
    "operation_from_record",
    "to_record",
]
