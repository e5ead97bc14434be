import threading
from datetime import datetime, timedelta, timezone

import pytest

from faktory.server.tasks import (
    BeatReaper,
    ReservationReaper,
    Scanner,
    Subsystem,
    TaskRunner,
)
from faktory.server.workers import ClientData, Workers


class FakeSet:
    def __init__(self, size):
        self._size = size

    def size(self):
        return self._size


class CountingTask:
    def __init__(self, name, fail=False):
        self.name = name
        self.calls = 0
        self.fail = fail

    def execute(self):
        self.calls += 1
        if self.fail:
            raise RuntimeError("boom")

    def stats(self):
        return {"calls": self.calls}


class FakeManager:
    def __init__(self, reap, working):
        self.reap = reap
        self.working = working
        self.seen = []

    def reap_expired_jobs(self, now):
        self.seen.append(now)
        return self.reap

    def working_count(self):
        return self.working


class Closer:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


def at(sec):
    return datetime.fromtimestamp(sec, timezone.utc)


def test_cycle_runs_only_due_tasks():
    runner = TaskRunner()
    five = CountingTask("five")
    fifteen = CountingTask("fifteen")
    sixty = CountingTask("sixty")
    runner.add_task(5, five)
    runner.add_task(15, fifteen)
    runner.add_task(60, sixty)

    assert runner.cycle(at(60)) == 3
    assert runner.cycle(at(61)) == 0
    assert runner.cycle(at(65)) == 1
    assert runner.cycle(at(75)) == 2

    assert (five.calls, fifteen.calls, sixty.calls) == (3, 2, 1)
    assert runner.cycles == 4
    assert runner.executions == 6


def test_cycle_survives_failing_task():
    runner = TaskRunner()
    bad = CountingTask("bad", fail=True)
    good = CountingTask("good")
    runner.add_task(1, bad)
    runner.add_task(1, good)

    assert runner.cycle(at(10)) == 2
    assert bad.calls == 1
    assert good.calls == 1


def test_add_task_rejects_non_positive_period():
    runner = TaskRunner()
    with pytest.raises(ValueError):
        runner.add_task(0, CountingTask("x"))


def test_stats_keyed_by_name():
    runner = TaskRunner()
    a = CountingTask("alpha")
    runner.add_task(1, a)
    runner.cycle(at(3))
    assert runner.stats() == {"alpha": {"calls": 1}}


def test_run_executes_until_stopped():
    runner = TaskRunner()
    fired = threading.Event()

    class Signal(CountingTask):
        def execute(self):
            super().execute()
            fired.set()

    task = Signal("signal")
    runner.add_task(1, task)
    stopper = threading.Event()
    thread = runner.run(stopper)
    assert fired.wait(5.0)
    stopper.set()
    thread.join(5.0)
    assert not thread.is_alive()
    assert task.calls >= 1


def test_scanner_counts_jobs_and_cycles():
    seen = []

    def task(now):
        seen.append(now)
        return 3

    scanner = Scanner("Scheduled", FakeSet(7), task)
    scanner.execute()
    scanner.execute()
    stats = scanner.stats()
    assert scanner.name == "Scheduled"
    assert stats["enqueued"] == 6
    assert stats["cycles"] == 2
    assert stats["size"] == 7
    assert stats["wall_time_sec"] >= 0
    assert len(seen) == 2
    assert all(t.tzinfo is not None for t in seen)


def test_scanner_failure_propagates_and_is_not_counted():
    def task(now):
        raise RuntimeError("redis down")

    scanner = Scanner("Retries", FakeSet(0), task)
    with pytest.raises(RuntimeError):
        scanner.execute()
    assert scanner.stats()["cycles"] == 0
    assert scanner.stats()["enqueued"] == 0


def test_scanner_runs_under_task_runner():
    runner = TaskRunner()
    runner.add_task(5, Scanner("Dead", FakeSet(4), lambda now: 2))
    assert runner.cycle(at(10)) == 1
    stats = runner.stats()["Dead"]
    assert stats["cycles"] == 1
    assert stats["enqueued"] == 2
    assert stats["size"] == 4


def test_reservation_reaper():
    manager = FakeManager(reap=2, working=5)
    reaper = ReservationReaper(manager)
    assert reaper.name == "Busy"
    reaper.execute()
    reaper.execute()
    assert reaper.stats() == {"size": 5, "reaped": 4}
    assert len(manager.seen) == 2


def test_beat_reaper_removes_stale_workers():
    workers = Workers()
    closer = Closer()
    client = ClientData(hostname="host.example.com", wid="78629a0f5f3f164f")
    entry = workers.setup_heartbeat(client, closer)
    reaper = BeatReaper(workers)
    assert reaper.name == "Workers"

    reaper.execute()
    assert reaper.stats() == {"size": 1, "reaped": 0}

    entry.last_heartbeat = datetime.now(timezone.utc) - timedelta(minutes=2)
    reaper.execute()
    assert reaper.stats() == {"size": 0, "reaped": 1}
    assert closer.closed


def test_subsystem_requires_methods():
    with pytest.raises(TypeError):
        Subsystem()

    class Named(Subsystem):
        started = None

        @property
        def name(self):
            return "named"

        def start(self, server):
            self.started = server

        def reload(self, server):
            pass

    sub = Named()
    sub.start("srv")
    assert sub.name == "named"
    assert sub.started == "srv"