"""Exception hierarchy for the chaoskv harness and its local service backend."""

from __future__ import annotations


class ChaosKVError(Exception):
    """Base class for all chaoskv errors."""


class IterationFailedError(ChaosKVError):
    """A fuzz iteration hit an uncaught error during steady state."""

    def __init__(self, iteration: int, cause: BaseException) -> None:
        super().__init__(f"Fuzz iteration {iteration} failed: {cause!r}")
        self.iteration = iteration
        self.cause = cause


class ReplicaLifecycleError(ChaosKVError):
    """A replica was asked to make an illegal lifecycle transition."""


class ReplicaNotRunningError(ChaosKVError):
    """The addressed replica is not running."""


class StorageInUseError(ChaosKVError):
    """A storage directory is already held by another live replica."""


class NoQuorumError(ChaosKVError):
    """Not enough voting members are running to commit or linearize."""


class SessionClosedError(ChaosKVError):
    """The client session was lost and the recovery strategy gave up."""


class ClientClosedError(ChaosKVError):
    """The client was closed while an operation was in flight."""
