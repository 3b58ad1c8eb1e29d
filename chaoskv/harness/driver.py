"""
Experiment driver: runs fuzz iterations until one fails or all complete.

Each iteration starts from a clean slate (reset), builds a randomly sized
cluster and client pool, starts the fault cycle and then simply watches for
the observation window. The only thing that ends an iteration early is an
uncaught exception reported by one of the scheduling contexts; that failure
stops the whole run and is returned in the report (the storage tree of the
failed iteration is left on disk for inspection).
"""

from __future__ import annotations

import asyncio
import random
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field

from loguru import logger

from chaoskv.core.config import FuzzSettings
from chaoskv.core.errors import IterationFailedError
from chaoskv.core.resources import ResourceSnapshot, log_snapshot, take_snapshot
from chaoskv.core.scheduling import SchedulingContext
from chaoskv.core.timer import Timer
from chaoskv.datastructures.members import MemberRegistry
from chaoskv.service.local import LocalServiceBackend
from chaoskv.service.protocols import ServiceBackend

from .clients import ClientPoolManager
from .faults import FaultInjectionScheduler, FaultListener
from .lifecycle import ClusterLifecycleManager
from .workload import KeyPool, OutcomeRecorder

driver_log = logger

# Log a lap line every this many completed iterations of a long run
PROGRESS_EVERY = 100

type BackendFactory = Callable[[FuzzSettings, random.Random], ServiceBackend]


def local_backend(settings: FuzzSettings, rng: random.Random) -> ServiceBackend:
    return LocalServiceBackend.from_settings(settings, random.Random(rng.random()))


@dataclass(slots=True)
class IterationSummary:
    """What one completed iteration did."""

    number: int
    replica_count: int
    client_count: int
    elapsed: float = 0.0
    fault_rounds: int = 0
    shutdowns: int = 0
    restarts: int = 0
    submitted: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class ExperimentReport:
    iterations_requested: int
    iterations_completed: int = 0
    failure: IterationFailedError | None = None
    summaries: list[IterationSummary] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.failure is None


class ExperimentDriver:
    """Owns the per-iteration managers and tears them down between runs."""

    def __init__(
        self,
        settings: FuzzSettings | None = None,
        *,
        backend_factory: BackendFactory = local_backend,
        fault_listener: FaultListener | None = None,
        outcome_recorder: OutcomeRecorder | None = None,
    ) -> None:
        self.settings = settings or FuzzSettings()
        self.rng = random.Random(self.settings.seed)
        self.backend_factory = backend_factory
        self.fault_listener = fault_listener
        self.outcome_recorder = outcome_recorder
        self.key_pool = KeyPool.generate(self.settings.key_pool_size, self.rng)

        self.members: MemberRegistry | None = None
        self.backend: ServiceBackend | None = None
        self.lifecycle: ClusterLifecycleManager | None = None
        self.clients: ClientPoolManager | None = None
        self.scheduler: FaultInjectionScheduler | None = None
        self.chaos_context: SchedulingContext | None = None
        self.baseline: ResourceSnapshot | None = None
        self._failure: asyncio.Future[BaseException] | None = None

    async def run(self) -> ExperimentReport:
        """Run every iteration; stop at the first failure."""
        settings = self.settings
        report = ExperimentReport(iterations_requested=settings.iterations)
        driver_log.info(
            f"Starting {settings.iterations} fuzz iterations (seed={settings.seed})"
        )
        number = 0
        with Timer("Fuzz run", every=PROGRESS_EVERY) as timer:
            try:
                for number in range(1, settings.iterations + 1):
                    summary = await self.run_iteration(number)
                    report.summaries.append(summary)
                    report.iterations_completed += 1
                    timer.step()
            except IterationFailedError as e:
                self._record_failure(report, e)
            except Exception as e:
                # Setup and teardown errors end the run the same way
                self._record_failure(report, IterationFailedError(number, e))
            finally:
                try:
                    await self.reset(remove_storage=False)
                except Exception as e:
                    if report.failure is not None:
                        driver_log.opt(exception=e).error(f"Final reset failed: {e!r}")
                    else:
                        self._record_failure(report, IterationFailedError(number, e))
        return report

    def _record_failure(
        self, report: ExperimentReport, failure: IterationFailedError
    ) -> None:
        driver_log.opt(exception=failure.cause).error(
            f"Iteration {failure.iteration} failed, stopping run: {failure.cause!r}"
        )
        report.failure = failure

    async def run_iteration(self, number: int) -> IterationSummary:
        """Reset, build a random cluster, and observe it under faults."""
        settings = self.settings
        await self.reset()
        assert self.lifecycle is not None and self.clients is not None

        self._failure = asyncio.get_running_loop().create_future()
        self.chaos_context = SchedulingContext("chaos", on_error=self._on_error)
        self.clients.on_error = self._on_error

        replica_count = self.rng.randint(
            settings.replica_count_min, settings.replica_count_max
        )
        client_count = self.rng.randint(
            settings.client_count_min, settings.client_count_max
        )
        driver_log.info(
            f"Iteration {number}: {replica_count} replicas, {client_count} clients"
        )
        summary = IterationSummary(number, replica_count, client_count)

        with Timer(f"Iteration {number}") as timer:
            await self.lifecycle.build_replicas(replica_count)
            await self.clients.build_clients(client_count)

            self.scheduler = FaultInjectionScheduler(
                self.lifecycle,
                self.chaos_context,
                random.Random(self.rng.random()),
                delay_min=settings.fault_delay_min,
                delay_max=settings.fault_delay_max,
                listener=self.fault_listener,
            )
            self.scheduler.start()

            done, _ = await asyncio.wait(
                {self._failure}, timeout=settings.observation_window
            )
            if done:
                cause = self._failure.result()
                raise IterationFailedError(number, cause) from cause

        summary.elapsed = timer.interval
        summary.fault_rounds = self.scheduler.rounds
        summary.shutdowns = self.scheduler.shutdowns
        summary.restarts = self.scheduler.restarts
        summary.submitted = self.clients.submitted
        summary.outcomes = self.clients.outcomes.as_dict()
        driver_log.info(
            f"Iteration {number} done: {summary.fault_rounds} rounds, "
            f"{summary.submitted} submissions {summary.outcomes}"
        )
        return summary

    async def reset(self, *, remove_storage: bool = True) -> None:
        """Tear down the previous iteration and start from empty storage."""
        settings = self.settings
        if self.scheduler is not None:
            self.scheduler.cancel_all()
        if self.chaos_context is not None:
            await self.chaos_context.close()
        if self.clients is not None:
            await self.clients.close_all(settings.shutdown_timeout)
        if self.lifecycle is not None:
            await self.lifecycle.shutdown_all(settings.shutdown_timeout)

        if remove_storage and settings.storage_root.exists():
            await asyncio.to_thread(shutil.rmtree, settings.storage_root)

        self.scheduler = None
        self.chaos_context = None
        self._failure = None
        self.members = MemberRegistry(
            host=settings.host,
            port_base=settings.port_base,
            client_port_offset=settings.client_port_offset,
        )
        self.backend = self.backend_factory(settings, self.rng)
        self.lifecycle = ClusterLifecycleManager(
            self.backend,
            self.members,
            settings,
            random.Random(self.rng.random()),
        )
        self.clients = ClientPoolManager(
            self.backend,
            self.members,
            self.key_pool,
            settings,
            random.Random(self.rng.random()),
            recorder=self.outcome_recorder,
            on_error=self._on_error,
        )

        snapshot = take_snapshot()
        log_snapshot("reset", snapshot)
        if self.baseline is None:
            self.baseline = snapshot
        else:
            log_snapshot("since first reset", snapshot.delta(self.baseline))

    def _on_error(self, exc: BaseException) -> None:
        if self._failure is not None and not self._failure.done():
            self._failure.set_result(exc)
