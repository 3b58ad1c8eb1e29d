"""
Scheduling contexts: cancellable one-shot and periodic timers on asyncio.

A ``SchedulingContext`` is the unit of scheduling ownership. Every actor
group (the chaos timers of one experiment, or the workload of one client)
owns exactly one context, and everything it arms or spawns is tracked so the
context can be torn down without leaving a stray timer to fire against a
freed resource.

Callbacks may be plain functions or return an awaitable; awaitables are
driven as tasks owned by the context. An exception escaping a callback or one
of those tasks is *not* swallowed: it is logged and handed to the context's
``on_error`` hook, which is how a fuzz iteration learns it must abort.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger

from chaoskv.datastructures.type_aliases import DurationSeconds, Timestamp

schedule_log = logger

type TimerCallback = Callable[[], Any]
type ErrorHandler = Callable[[BaseException], None]


class ScheduledState(Enum):
    """Lifecycle states of a scheduled timer."""

    PENDING = "pending"  # Armed, waiting for its delay to elapse
    FIRED = "fired"  # One-shot timer ran its callback
    CANCELLED = "cancelled"


@dataclass(slots=True, eq=False)
class Scheduled:
    """Handle to an armed timer."""

    name: str
    delay: DurationSeconds
    period: DurationSeconds | None = None
    state: ScheduledState = ScheduledState.PENDING
    armed_at: Timestamp = field(default_factory=time.time)
    fire_count: int = 0
    _handle: asyncio.TimerHandle | None = field(default=None, repr=False)
    _on_cancel: Callable[[Scheduled], None] | None = field(default=None, repr=False)

    @property
    def is_pending(self) -> bool:
        return self.state is ScheduledState.PENDING

    @property
    def cancelled(self) -> bool:
        return self.state is ScheduledState.CANCELLED

    def cancel(self) -> bool:
        """Disarm the timer. Returns False if it already fired or was cancelled."""
        if self.state is not ScheduledState.PENDING:
            return False
        self.state = ScheduledState.CANCELLED
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._on_cancel is not None:
            self._on_cancel(self)
        return True


class SchedulingContext:
    """Owner of a group of timers and the tasks their callbacks spawn."""

    def __init__(self, name: str, *, on_error: ErrorHandler | None = None) -> None:
        self.name = name
        self.on_error = on_error
        self.failures: list[BaseException] = []
        self._timers: set[Scheduled] = set()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def schedule(
        self, delay: DurationSeconds, callback: TimerCallback, *, name: str = ""
    ) -> Scheduled:
        """Run ``callback`` once after ``delay`` seconds."""
        self._check_open()
        if delay < 0:
            raise ValueError("Delay cannot be negative")
        loop = asyncio.get_running_loop()
        scheduled = Scheduled(
            name=name or getattr(callback, "__name__", "timer"),
            delay=delay,
            _on_cancel=self._forget,
        )
        scheduled._handle = loop.call_later(delay, self._fire_once, scheduled, callback)
        self._timers.add(scheduled)
        return scheduled

    def schedule_periodic(
        self,
        initial_delay: DurationSeconds,
        period: DurationSeconds,
        callback: TimerCallback,
        *,
        name: str = "",
    ) -> Scheduled:
        """Run ``callback`` after ``initial_delay`` and then every ``period``.

        Ticks are fixed-rate: a slow callback does not push later ticks back,
        and missed ticks are skipped rather than run in a burst.
        """
        self._check_open()
        if initial_delay < 0:
            raise ValueError("Initial delay cannot be negative")
        if period <= 0:
            raise ValueError("Period must be positive")
        loop = asyncio.get_running_loop()
        scheduled = Scheduled(
            name=name or getattr(callback, "__name__", "periodic"),
            delay=initial_delay,
            period=period,
            _on_cancel=self._forget,
        )
        first_deadline = loop.time() + initial_delay
        scheduled._handle = loop.call_at(
            first_deadline, self._fire_periodic, scheduled, callback, first_deadline
        )
        self._timers.add(scheduled)
        return scheduled

    def spawn(
        self, awaitable: Awaitable[Any], *, name: str | None = None
    ) -> asyncio.Task[Any]:
        """Drive ``awaitable`` as a task owned by this context."""
        self._check_open()
        task = asyncio.ensure_future(awaitable)
        if name:
            task.set_name(f"{self.name}:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def pending_timers(self) -> list[Scheduled]:
        return [timer for timer in self._timers if timer.is_pending]

    def active_tasks(self) -> list[asyncio.Task[Any]]:
        return [task for task in self._tasks if not task.done()]

    async def close(self, timeout: DurationSeconds = 5.0) -> None:
        """Cancel every timer and task owned by the context; idempotent."""
        if self._closed:
            return
        self._closed = True

        timers = list(self._timers)
        for timer in timers:
            timer.cancel()
        self._timers.clear()

        tasks = [task for task in self._tasks if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            if pending:
                schedule_log.warning(
                    f"[{self.name}] {len(pending)} tasks did not stop "
                    f"within {timeout:.1f}s"
                )
        schedule_log.debug(
            f"[{self.name}] Closed context ({len(timers)} timers, "
            f"{len(tasks)} tasks cancelled)"
        )

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError(f"Scheduling context {self.name} is closed")

    def _forget(self, scheduled: Scheduled) -> None:
        self._timers.discard(scheduled)

    def _fire_once(self, scheduled: Scheduled, callback: TimerCallback) -> None:
        if scheduled.state is not ScheduledState.PENDING or self._closed:
            return
        scheduled.state = ScheduledState.FIRED
        scheduled._handle = None
        scheduled.fire_count += 1
        self._timers.discard(scheduled)
        self._invoke(scheduled, callback)

    def _fire_periodic(
        self, scheduled: Scheduled, callback: TimerCallback, deadline: float
    ) -> None:
        if scheduled.state is not ScheduledState.PENDING or self._closed:
            return
        assert scheduled.period is not None
        loop = asyncio.get_running_loop()
        next_deadline = deadline + scheduled.period
        now = loop.time()
        if next_deadline <= now:
            missed = int((now - next_deadline) // scheduled.period) + 1
            next_deadline += missed * scheduled.period
        scheduled._handle = loop.call_at(
            next_deadline, self._fire_periodic, scheduled, callback, next_deadline
        )
        scheduled.fire_count += 1
        self._invoke(scheduled, callback)

    def _invoke(self, scheduled: Scheduled, callback: TimerCallback) -> None:
        try:
            result = callback()
        except Exception as e:
            self._report(e, scheduled.name)
            return
        if inspect.isawaitable(result):
            self.spawn(result, name=scheduled.name)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._report(exc, task.get_name())

    def _report(self, exc: BaseException, source: str) -> None:
        self.failures.append(exc)
        schedule_log.opt(exception=exc).error(
            f"[{self.name}] Uncaught error in {source}: {exc}"
        )
        if self.on_error is not None:
            self.on_error(exc)
