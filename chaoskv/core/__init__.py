"""
chaoskv core module: configuration, logging, scheduling and errors.
"""

from .config import FuzzSettings, StorageTuningBounds
from .errors import (
    ChaosKVError,
    ClientClosedError,
    IterationFailedError,
    NoQuorumError,
    ReplicaLifecycleError,
    ReplicaNotRunningError,
    SessionClosedError,
    StorageInUseError,
)
from .scheduling import Scheduled, SchedulingContext, ScheduledState

__all__ = [
    "ChaosKVError",
    "ClientClosedError",
    "FuzzSettings",
    "IterationFailedError",
    "NoQuorumError",
    "ReplicaLifecycleError",
    "ReplicaNotRunningError",
    "Scheduled",
    "ScheduledState",
    "SchedulingContext",
    "SessionClosedError",
    "StorageInUseError",
    "StorageTuningBounds",
]
