"""Recurring internal tasks: scanning sorted sets and reaping stale state.

A TaskRunner wakes once a second and runs every task whose period divides
the current Unix second, e.g. "reap old heartbeats every 15 seconds".
"""

from __future__ import annotations

import abc
import random
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol, runtime_checkable

from faktory import logger
from faktory.server.workers import Workers

_HEARTBEAT_TIMEOUT = timedelta(minutes=1)


@runtime_checkable
class Taskable(Protocol):
    """Something the task runner can execute and report on."""

    @property
    def name(self) -> str: ...

    def execute(self) -> None: ...

    def stats(self) -> dict[str, Any]: ...


class Subsystem(abc.ABC):
    """A pluggable part of the server, started after boot and told of reloads."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """The subsystem's name."""

    @abc.abstractmethod
    def start(self, server: Any) -> None:
        """Called once the server is configured, before it accepts clients."""

    @abc.abstractmethod
    def reload(self, server: Any) -> None:
        """Called whenever the global configuration is reloaded."""


@dataclass
class _Task:
    runner: Taskable
    every: int
    runs: int = 0
    walltime_ns: int = 0


class TaskRunner:
    """Runs registered tasks on their schedule from a background thread."""

    def __init__(self) -> None:
        self._tasks: list[_Task] = []
        self._lock = threading.RLock()
        self._cycles = 0
        self._executions = 0
        self._walltime_ns = 0

    @property
    def cycles(self) -> int:
        """How many scheduling cycles have completed."""
        with self._lock:
            return self._cycles

    @property
    def executions(self) -> int:
        """How many task executions have happened in total."""
        with self._lock:
            return self._executions

    @property
    def walltime_ns(self) -> int:
        """Total time spent in cycles, in nanoseconds."""
        with self._lock:
            return self._walltime_ns

    def add_task(self, every: int, thing: Taskable) -> None:
        """Run thing whenever the Unix second is a multiple of every."""
        if every <= 0:
            raise ValueError("task period must be a positive number of seconds")
        with self._lock:
            self._tasks.append(_Task(runner=thing, every=int(every)))

    def run(self, stopper: threading.Event) -> threading.Thread:
        """Start cycling once a second until stopper is set; returns the thread."""

        def loop() -> None:
            # jitter so the cycles don't all fire at the top of the second
            if stopper.wait(random.random()):
                logger.debug("Stopping scheduled tasks")
                return
            while True:
                self.cycle()
                if stopper.wait(1.0):
                    logger.debug("Stopping scheduled tasks")
                    return

        thread = threading.Thread(target=loop, name="faktory-tasks", daemon=True)
        thread.start()
        return thread

    def stats(self) -> dict[str, dict[str, Any]]:
        """Each task's statistics keyed by its name."""
        with self._lock:
            return {task.runner.name: task.runner.stats() for task in self._tasks}

    def cycle(self, now: datetime | None = None) -> int:
        """Run the tasks due at now (default: the current time); returns how many ran."""
        start = time.perf_counter_ns()
        sec = int(now.timestamp()) if now is not None else int(time.time())
        count = 0
        with self._lock:
            for task in self._tasks:
                if sec % task.every != 0:
                    continue
                tstart = time.perf_counter_ns()
                try:
                    task.runner.execute()
                except Exception as exc:  # noqa: BLE001 - one failing task must not stop others
                    logger.warn("Error running task %s: %s", task.runner.name, exc)
                task.runs += 1
                task.walltime_ns += time.perf_counter_ns() - tstart
                count += 1
            self._cycles += 1
            self._executions += count
            self._walltime_ns += time.perf_counter_ns() - start
        return count


class Scanner:
    """Periodically processes due entries of a sorted set via a task function.

    The task receives the current time and returns how many jobs it handled.
    """

    def __init__(self, name: str, sset: Any, task: Callable[[datetime], int]) -> None:
        self._name = name
        self._set = sset
        self._task = task
        self._lock = threading.Lock()
        self._jobs = 0
        self._cycles = 0
        self._walltime_ns = 0

    def __repr__(self) -> str:
        return f"Scanner({self._name!r})"

    @property
    def name(self) -> str:
        """The scanner's name."""
        return self._name

    def execute(self) -> None:
        """Run the task once; failures propagate and are not counted."""
        start = time.perf_counter_ns()
        count = int(self._task(datetime.now(timezone.utc)))
        if count > 0:
            logger.info("%s processed %d jobs", self._name, count)
        elapsed = time.perf_counter_ns() - start
        with self._lock:
            self._cycles += 1
            self._jobs += count
            self._walltime_ns += elapsed

    def stats(self) -> dict[str, Any]:
        """Jobs enqueued, cycles run, current set size and time spent."""
        with self._lock:
            jobs, cycles, walltime = self._jobs, self._cycles, self._walltime_ns
        return {
            "enqueued": jobs,
            "cycles": cycles,
            "size": self._set.size(),
            "wall_time_sec": walltime / 1_000_000_000,
        }


class ReservationReaper:
    """Recovers jobs whose reservations have expired."""

    name = "Busy"

    def __init__(self, manager: Any) -> None:
        self._manager = manager
        self._lock = threading.Lock()
        self._count = 0

    def execute(self) -> None:
        """Reap expired reservations as of now."""
        count = int(self._manager.reap_expired_jobs(datetime.now(timezone.utc)))
        with self._lock:
            self._count += count

    def stats(self) -> dict[str, Any]:
        """Jobs currently reserved and reservations reaped so far."""
        with self._lock:
            reaped = self._count
        return {"size": self._manager.working_count(), "reaped": reaped}


class BeatReaper:
    """Removes workers that have not sent a heartbeat for a minute."""

    name = "Workers"

    def __init__(self, workers: Workers) -> None:
        self._workers = workers
        self._lock = threading.Lock()
        self._count = 0

    def execute(self) -> None:
        """Reap workers whose last heartbeat is over a minute old."""
        count = self._workers.reap_heartbeats(datetime.now(timezone.utc) - _HEARTBEAT_TIMEOUT)
        with self._lock:
            self._count += count

    def stats(self) -> dict[str, Any]:
        """Workers currently known and workers reaped so far."""
        with self._lock:
            reaped = self._count
        return {"size": self._workers.count(), "reaped": reaped}