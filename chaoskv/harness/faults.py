"""
Fault injection: randomized graceful shutdown and restart of replicas.

Each replica index moves through an explicit fault cycle::

    RUNNING -> SHUTDOWN_PENDING -> SHUTTING_DOWN -> STOPPED
            -> RESTART_PENDING -> RESTARTING -> RUNNING

A round arms shutdown timers for a random subset of strictly fewer than
``replica_count - 1`` replicas, and a new round starts only when every index
is back in ``RUNNING``. The restart timer of an index is armed only after its
shutdown completed, and each restart completion tries to start the next
round, so the cycle keeps itself going until ``cancel_all()``.

Shutdown and bootstrap failures of the service are logged and the cycle
continues; an exception escaping the scheduler's own callbacks goes to the
scheduling context and fails the iteration.
"""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger

from chaoskv.core.scheduling import Scheduled, SchedulingContext
from chaoskv.datastructures.type_aliases import DurationSeconds, Timestamp

from .lifecycle import ClusterLifecycleManager

fault_log = logger


class ReplicaFaultState(Enum):
    """Position of one replica index in the fault cycle."""

    RUNNING = "running"
    SHUTDOWN_PENDING = "shutdown_pending"  # Shutdown timer armed
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"
    RESTART_PENDING = "restart_pending"  # Restart timer armed
    RESTARTING = "restarting"


class FaultEventKind(Enum):
    SHUTDOWN_ARMED = "shutdown_armed"
    SHUTDOWN_FIRED = "shutdown_fired"
    SHUTDOWN_COMPLETE = "shutdown_complete"
    RESTART_ARMED = "restart_armed"
    RESTART_FIRED = "restart_fired"
    RESTART_COMPLETE = "restart_complete"


@dataclass(frozen=True, slots=True)
class FaultEvent:
    kind: FaultEventKind
    index: int
    timestamp: Timestamp = field(default_factory=time.time)


type FaultListener = Callable[[FaultEvent], None]


class FaultInjectionScheduler:
    """Drives the shutdown/restart cycle of every replica index."""

    def __init__(
        self,
        lifecycle: ClusterLifecycleManager,
        context: SchedulingContext,
        rng: random.Random | None = None,
        *,
        delay_min: DurationSeconds = 10.0,
        delay_max: DurationSeconds = 130.0,
        listener: FaultListener | None = None,
    ) -> None:
        if delay_min < 0 or delay_max <= delay_min:
            raise ValueError("Fault delays must satisfy 0 <= delay_min < delay_max")
        self.lifecycle = lifecycle
        self.context = context
        self.rng = rng or random.Random()
        self.delay_min = delay_min
        self.delay_max = delay_max
        self.listener = listener
        self.shutdown_timers: dict[int, Scheduled] = {}
        self.restart_timers: dict[int, Scheduled] = {}
        self.states = [ReplicaFaultState.RUNNING] * len(lifecycle)
        self.rounds = 0
        self.shutdowns = 0
        self.restarts = 0

    @property
    def replica_count(self) -> int:
        return len(self.states)

    def state_of(self, index: int) -> ReplicaFaultState:
        return self.states[index]

    def down_count(self) -> int:
        """Replicas currently anywhere in the fault cycle."""
        return sum(
            1 for state in self.states if state is not ReplicaFaultState.RUNNING
        )

    def start(self) -> list[int]:
        return self.schedule_round()

    def schedule_round(self) -> list[int]:
        """Arm a new round of shutdown timers if the cluster is fully up."""
        if self.shutdown_timers or self.restart_timers:
            return []
        if self.down_count():
            return []
        if self.replica_count < 2:
            return []
        count = self.rng.randrange(self.replica_count - 1)
        indices = self.rng.sample(range(self.replica_count), count)
        for index in indices:
            self._arm_shutdown(index)
        self.rounds += 1
        fault_log.info(
            f"Fault round {self.rounds}: shutting down replicas {sorted(indices)}"
        )
        return indices

    def on_shutdown_fire(self, index: int) -> asyncio.Task[Any]:
        self.shutdown_timers.pop(index, None)
        self._transition(
            index, ReplicaFaultState.SHUTDOWN_PENDING, ReplicaFaultState.SHUTTING_DOWN
        )
        self._emit(FaultEventKind.SHUTDOWN_FIRED, index)
        return self.context.spawn(self._shutdown(index), name=f"shutdown-{index}")

    def on_restart_fire(self, index: int) -> asyncio.Task[Any]:
        self.restart_timers.pop(index, None)
        self._transition(
            index, ReplicaFaultState.RESTART_PENDING, ReplicaFaultState.RESTARTING
        )
        self._emit(FaultEventKind.RESTART_FIRED, index)
        return self.context.spawn(self._restart(index), name=f"restart-{index}")

    def cancel_all(self) -> int:
        """Disarm every pending fault timer. Returns how many were cancelled."""
        cancelled = 0
        for timer in [*self.shutdown_timers.values(), *self.restart_timers.values()]:
            if timer.cancel():
                cancelled += 1
        self.shutdown_timers.clear()
        self.restart_timers.clear()
        if cancelled:
            fault_log.debug(f"Cancelled {cancelled} fault timers")
        return cancelled

    def _random_delay(self) -> DurationSeconds:
        return self.rng.uniform(self.delay_min, self.delay_max)

    def _arm_shutdown(self, index: int) -> None:
        delay = self._random_delay()
        self.states[index] = ReplicaFaultState.SHUTDOWN_PENDING
        self.shutdown_timers[index] = self.context.schedule(
            delay, lambda: self._fire_shutdown(index), name=f"shutdown-timer-{index}"
        )
        self._emit(FaultEventKind.SHUTDOWN_ARMED, index)
        fault_log.debug(f"Replica {index} shutdown in {delay:.1f}s")

    def _arm_restart(self, index: int) -> None:
        delay = self._random_delay()
        self.states[index] = ReplicaFaultState.RESTART_PENDING
        self.restart_timers[index] = self.context.schedule(
            delay, lambda: self._fire_restart(index), name=f"restart-timer-{index}"
        )
        self._emit(FaultEventKind.RESTART_ARMED, index)
        fault_log.debug(f"Replica {index} restart in {delay:.1f}s")

    # Timer callbacks return None so the context does not spawn the task twice
    def _fire_shutdown(self, index: int) -> None:
        self.on_shutdown_fire(index)

    def _fire_restart(self, index: int) -> None:
        self.on_restart_fire(index)

    async def _shutdown(self, index: int) -> None:
        try:
            await self.lifecycle.shutdown_replica(index)
        except Exception as e:
            fault_log.opt(exception=e).warning(f"Shutdown of replica {index} failed")
        self.states[index] = ReplicaFaultState.STOPPED
        self.shutdowns += 1
        self._emit(FaultEventKind.SHUTDOWN_COMPLETE, index)
        self._arm_restart(index)

    async def _restart(self, index: int) -> None:
        try:
            await self.lifecycle.rebuild_replica(index)
        except Exception as e:
            fault_log.opt(exception=e).warning(f"Restart of replica {index} failed")
        self.states[index] = ReplicaFaultState.RUNNING
        self.restarts += 1
        self._emit(FaultEventKind.RESTART_COMPLETE, index)
        self.schedule_round()

    def _transition(
        self, index: int, expected: ReplicaFaultState, new: ReplicaFaultState
    ) -> None:
        current = self.states[index]
        if current is not expected:
            raise RuntimeError(
                f"Replica {index} is {current.value}, expected {expected.value}"
            )
        self.states[index] = new

    def _emit(self, kind: FaultEventKind, index: int) -> None:
        if self.listener is not None:
            self.listener(FaultEvent(kind, index))
