import sys
import time

from loguru import logger


class Timer:
    """Context manager that logs elapsed wall clock time.

    Use as:
        with Timer("Fuzz iteration 3"):
            await run_iteration()

    Long loops can also report progress every N steps:
        with Timer("Replay", every=1000) as timer:
            for entry in entries:
                timer.step()
    """

    def __init__(self, name: str = "", every: int = sys.maxsize):
        self.name = f"[{name}] " if name else ""
        self.every = every
        self.count = 0
        self.interval = 0.0

    def step(self):
        self.count += 1
        if self.count % self.every == 0:
            self._log_lap()

    def __enter__(self):
        # perf_counter keeps counting across sleeps, which is what we want
        # when most of the measured time is spent awaiting timers
        self.start = time.perf_counter()
        self.lap_start = self.start
        return self

    def _log_lap(self) -> None:
        now = time.perf_counter()
        lap = now - self.lap_start
        self.lap_start = now
        # depth=2: report the line that called step(), not this helper
        logger.opt(depth=2).info(f"{self.name}Lap ({self.count:,}): {lap:,.4f}s")

    @property
    def elapsed(self) -> float:
        return time.perf_counter() - self.start

    def __exit__(self, *args):
        self.interval = self.elapsed
        if self.count:
            logger.opt(depth=1).info(f"{self.name}Steps: {self.count:,}")
        logger.opt(depth=1).info(f"{self.name}Duration: {self.interval:,.4f}s")
