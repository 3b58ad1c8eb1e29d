"""
Randomized client workload over a shared key pool.

Every client tick draws one of three operation kinds uniformly at random and
a key from the pool shared by all clients of the run, so that clients
contend on the same keys. Submissions are fire-and-forget; their outcomes
are classified after the fact and never fail the iteration.
"""

from __future__ import annotations

import asyncio
import random
import uuid
from collections import Counter
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger

from chaoskv.core.errors import ClientClosedError, NoQuorumError, SessionClosedError
from chaoskv.datastructures.operations import (
    ConsistencyLevel,
    Get,
    Operation,
    Put,
    Remove,
)
from chaoskv.datastructures.type_aliases import MapKey

workload_log = logger


class OperationKind(Enum):
    WRITE = "write"
    READ = "read"
    DELETE = "delete"


class SubmissionOutcome(Enum):
    """How a fire-and-forget submission ended."""

    SUCCESS = "success"
    REJECTED = "rejected"  # No quorum, or no session to submit through
    TIMEOUT = "timeout"
    FAILED = "failed"  # Any other error raised by the service
    CANCELLED = "cancelled"  # Client closed while the submission was pending


type OutcomeRecorder = Callable[
    [Operation, SubmissionOutcome, BaseException | None], None
]

_REJECTIONS = (NoQuorumError, SessionClosedError, ClientClosedError, ConnectionError)


def _random_uuid(rng: random.Random) -> str:
    return str(uuid.UUID(int=rng.getrandbits(128), version=4))


@dataclass(frozen=True, slots=True)
class KeyPool:
    """Immutable set of keys shared by every client of a run."""

    keys: tuple[MapKey, ...]

    def __post_init__(self) -> None:
        if not self.keys:
            raise ValueError("Key pool cannot be empty")

    @classmethod
    def generate(cls, size: int, rng: random.Random | None = None) -> KeyPool:
        """Build a pool of ``size`` distinct random UUID keys."""
        if size <= 0:
            raise ValueError("Key pool size must be positive")
        rng = rng or random.Random()
        keys: dict[MapKey, None] = {}
        while len(keys) < size:
            keys[_random_uuid(rng)] = None
        return cls(tuple(keys))

    def random_key(self, rng: random.Random) -> MapKey:
        return rng.choice(self.keys)

    def __len__(self) -> int:
        return len(self.keys)

    def __contains__(self, key: object) -> bool:
        return key in self.keys


class WorkloadGenerator:
    """Draws the next operation for one client."""

    def __init__(
        self,
        key_pool: KeyPool,
        rng: random.Random | None = None,
        *,
        consistency_levels: Sequence[ConsistencyLevel] = tuple(ConsistencyLevel),
    ) -> None:
        if not consistency_levels:
            raise ValueError("At least one consistency level is required")
        self.key_pool = key_pool
        self.rng = rng or random.Random()
        self.consistency_levels = tuple(consistency_levels)
        self.generated: Counter[OperationKind] = Counter()

    def next_kind(self) -> OperationKind:
        return self.rng.choice(list(OperationKind))

    def next_operation(self) -> Operation:
        kind = self.next_kind()
        key = self.key_pool.random_key(self.rng)
        self.generated[kind] += 1
        match kind:
            case OperationKind.WRITE:
                return Put(key, _random_uuid(self.rng))
            case OperationKind.READ:
                return Get(key, self.rng.choice(self.consistency_levels))
            case OperationKind.DELETE:
                return Remove(key)


def classify_outcome(
    future: asyncio.Future[Any],
) -> tuple[SubmissionOutcome, BaseException | None]:
    """Classify a finished submission; also marks its exception retrieved."""
    if future.cancelled():
        return SubmissionOutcome.CANCELLED, None
    exc = future.exception()
    if exc is None:
        return SubmissionOutcome.SUCCESS, None
    if isinstance(exc, TimeoutError):
        return SubmissionOutcome.TIMEOUT, exc
    if isinstance(exc, _REJECTIONS):
        return SubmissionOutcome.REJECTED, exc
    return SubmissionOutcome.FAILED, exc


@dataclass(slots=True)
class OutcomeCounter:
    """Recorder tallying outcomes; the driver reports these per iteration."""

    counts: Counter[SubmissionOutcome] = field(default_factory=Counter)

    def __call__(
        self,
        operation: Operation,
        outcome: SubmissionOutcome,
        error: BaseException | None,
    ) -> None:
        self.counts[outcome] += 1
        if outcome is SubmissionOutcome.FAILED:
            workload_log.debug(
                f"Submission {type(operation).__name__} failed: {error!r}"
            )

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def as_dict(self) -> dict[str, int]:
        return {outcome.value: self.counts[outcome] for outcome in SubmissionOutcome}
