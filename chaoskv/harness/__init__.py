"""Fuzz harness: workload, clients, replica lifecycle, faults and driver."""

from .clients import ClientHandle, ClientPoolManager
from .driver import ExperimentDriver, ExperimentReport, IterationSummary
from .faults import (
    FaultEvent,
    FaultEventKind,
    FaultInjectionScheduler,
    ReplicaFaultState,
)
from .lifecycle import ClusterLifecycleManager
from .workload import KeyPool, SubmissionOutcome, WorkloadGenerator

__all__ = [
    "ClientHandle",
    "ClientPoolManager",
    "ClusterLifecycleManager",
    "ExperimentDriver",
    "ExperimentReport",
    "FaultEvent",
    "FaultEventKind",
    "FaultInjectionScheduler",
    "IterationSummary",
    "KeyPool",
    "ReplicaFaultState",
    "SubmissionOutcome",
    "WorkloadGenerator",
]
