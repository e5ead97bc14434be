"""The Redis-backed store: queues, sorted sets, counters and the Redis process."""

from __future__ import annotations

import os
import re
import shutil
import socket
import subprocess
import threading
import time
from datetime import datetime, timedelta
from typing import Callable, Iterator

import redis

from faktory import logger
from faktory.storage.queue import RedisQueue
from faktory.storage.raw import RedisKV
from faktory.storage.sorted import RedisSorted

VERSION = "1.9.1"
MAX_HISTORY_DAYS = 180
VALID_QUEUE_NAME = re.compile(r"\A[a-zA-Z0-9._-]+\Z")

_CONF_PATH = "/tmp/redis.conf"
_REDIS_CONF = """
# Generated by Faktory {version}; edits will be lost.
bind 127.0.0.1 ::1
port 0

# Reachable only through the local Unix socket.
unixsocket /tmp/faktory-redis.sock
unixsocketperm 700
timeout 0

daemonize no
maxmemory-policy noeviction

loglevel notice
logfile /tmp/faktory-redis.log

# Persist often to keep data loss small; copy the RDB file for backups.
save 120 1
save 30 5
stop-writes-on-bgsave-error yes
rdbcompression yes
rdbchecksum yes
dbfilename faktory.rdb
slowlog-log-slower-than 10000
slowlog-max-len 128
"""

_instances: dict[str, subprocess.Popen] = {}
_instances_lock = threading.Lock()


def _decode(value: bytes | str) -> str:
    return value.decode("utf-8") if isinstance(value, (bytes, bytearray)) else str(value)


def _today_offset(days_back: int) -> str:
    return (datetime.now() - timedelta(days=days_back)).strftime("%Y-%m-%d")


class RedisStore:
    """Job storage on one Redis database."""

    def __init__(self, name: str, client: "redis.Redis") -> None:
        self.name = name
        self._client = client
        self._lock = threading.Lock()
        self._queues: dict[str, RedisQueue] = {}
        self.scheduled = RedisSorted(client, "scheduled")
        self.retries = RedisSorted(client, "retries")
        self.dead = RedisSorted(client, "dead")
        self.working = RedisSorted(client, "working")
        for raw_name in client.smembers("queues"):
            qname = _decode(raw_name)
            self._queues[qname] = RedisQueue(client, qname, self._forget)

    def __repr__(self) -> str:
        return f"RedisStore({self.name!r})"

    @property
    def client(self) -> "redis.Redis":
        """The underlying Redis client."""
        return self._client

    def _forget(self, name: str) -> None:
        with self._lock:
            self._queues.pop(name, None)

    def existing_queue(self, name: str) -> RedisQueue | None:
        """A known queue, or None."""
        return self._queues.get(name)

    def get_queue(self, name: str) -> RedisQueue:
        """The named queue, created and registered if new."""
        if not name:
            raise ValueError("queue name cannot be blank")
        with self._lock:
            queue = self._queues.get(name)
            if queue is not None:
                return queue
            if not VALID_QUEUE_NAME.match(name):
                raise ValueError(f"queue names must match {VALID_QUEUE_NAME.pattern}")
            queue = RedisQueue(self._client, name, self._forget)
            try:
                self._client.sadd("queues", name)
            except redis.RedisError as exc:
                raise RuntimeError(f"Unable to store queue name: {exc}") from exc
            self._queues[name] = queue
            return queue

    def each_queue(self) -> Iterator[RedisQueue]:
        """Every known queue, in name order."""
        with self._lock:
            queues = sorted(self._queues.values(), key=lambda q: q.name)
        yield from queues

    def stats(self) -> dict[str, str]:
        """Redis server information and the store's name."""
        details = self._client.info()
        text = "\n".join(f"{key}:{value}" for key, value in details.items())
        return {"stats": text, "name": self.name}

    def paused_queues(self) -> list[str]:
        """Names of paused queues, sorted."""
        return sorted(_decode(n) for n in self._client.smembers("paused"))

    def flush(self) -> None:
        """Delete all data in the database."""
        self._client.flushdb()

    def close(self) -> None:
        """Close the Redis connection."""
        logger.debug("Stopping storage")
        with self._lock:
            self._client.close()

    def raw(self) -> RedisKV:
        """A key/value scratch pad on this database."""
        return RedisKV(self._client)

    def enqueue_all(self, sset: RedisSorted) -> None:
        """Move every job in the sorted set onto its queue."""
        for entry in sset.each():
            job = entry.job()
            key = entry.key()
            queue = self.get_queue(job.get("queue", ""))
            if not sset.remove(key):
                continue
            queue.add(job)

    def enqueue_from(self, sset: RedisSorted, key: bytes | str) -> None:
        """Move the job with the given key onto its queue, if still present."""
        entry = sset.get(key)
        if entry is None:
            # already removed elsewhere
            return
        job = entry.job()
        queue = self.get_queue(job.get("queue", ""))
        if not sset.remove(key):
            return
        queue.add(job)

    def success(self) -> None:
        """Count one processed job."""
        day = _today_offset(0)
        self._client.incr(f"processed:{day}")
        self._client.incr("processed")

    def failure(self) -> None:
        """Count one processed job that failed."""
        self._client.incr("processed")
        self._client.incr("failures")
        day = _today_offset(0)
        self._client.incr(f"processed:{day}")
        self._client.incr(f"failures:{day}")

    def total_processed(self) -> int:
        """All jobs processed so far."""
        return int(self._client.incrby("processed", 0))

    def total_failures(self) -> int:
        """All jobs failed so far."""
        return int(self._client.incrby("failures", 0))

    def history(self, days: int) -> list[tuple[str, int, int]]:
        """(day, processed, failures) for the last days days, today first."""
        if days > MAX_HISTORY_DAYS:
            raise ValueError(f"days value can't be greater than {MAX_HISTORY_DAYS}")
        daystrs = [_today_offset(back) for back in range(max(days, 0))]
        with self._client.pipeline(transaction=False) as pipe:
            for day in daystrs:
                pipe.incrby(f"processed:{day}", 0)
                pipe.incrby(f"failures:{day}", 0)
            results = pipe.execute()
        return [
            (day, int(results[2 * i]), int(results[2 * i + 1]))
            for i, day in enumerate(daystrs)
        ]


def _stopper(sock: str) -> Callable[[], None]:
    def stop() -> None:
        try:
            stop_redis(sock)
        except Exception as exc:  # noqa: BLE001 - shutdown problems are only reported
            logger.error("Unable to stop Redis", exc)

    return stop


def _write_conf() -> None:
    if os.path.exists(_CONF_PATH):
        return
    with open(_CONF_PATH, "w", encoding="utf-8") as handle:
        handle.write(_REDIS_CONF.format(version=VERSION))
    os.chmod(_CONF_PATH, 0o444)


def _wait_for_socket(sock: str) -> None:
    for _ in range(1000):
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as probe:
            try:
                probe.connect(sock)
                return
            except OSError:
                pass
        time.sleep(0.01)


def _watch(proc: subprocess.Popen, sock: str, path: str) -> None:
    code = proc.wait()
    with _instances_lock:
        expected = _instances.get(sock) is not proc
    if code != 0 and not expected:
        logger.warn("Redis at %s crashed: exit status %s", path, code)


def _start_server(path: str, sock: str) -> None:
    _write_conf()
    binary = shutil.which("redis-server")
    if binary is None:
        raise FileNotFoundError("redis-server not found in PATH")
    loglevel = "notice" if logger.is_debug() else "warning"
    arguments = [
        binary, _CONF_PATH,
        "--unixsocket", sock,
        "--loglevel", loglevel,
        "--dir", path,
        "--logfile", os.path.join(path, "redis.log"),
    ]
    logger.debug("Booting Redis: %s", " ".join(arguments))
    proc = subprocess.Popen(arguments, stdin=subprocess.DEVNULL)
    _instances[sock] = proc

    start = time.monotonic()
    _wait_for_socket(sock)
    logger.debug("Redis booted in %.3fs", time.monotonic() - start)

    threading.Thread(target=_watch, args=(proc, sock, path), daemon=True).start()


def boot_redis(path: str, sock: str) -> Callable[[], None]:
    """Start a Redis server for path on sock, unless one is running; returns a stopper."""
    with _instances_lock:
        if sock in _instances:
            return _stopper(sock)
        logger.info("Initializing redis storage at %s, socket %s", path, sock)
        os.makedirs(path, mode=0o755, exist_ok=True)

        client = redis.Redis(unix_socket_path=sock, socket_timeout=1, socket_connect_timeout=1)
        try:
            try:
                client.ping()
            except redis.RedisError:
                _start_server(path, sock)

            secs = 600
            while True:
                try:
                    client.ping()
                    break
                except redis.RedisError as exc:
                    if secs == 0:
                        raise
                    loading = isinstance(exc, redis.exceptions.BusyLoadingError) or str(
                        exc
                    ).startswith("LOADING")
                    if not loading:
                        raise
                    secs -= 1
                    logger.info("Faktory is waiting for Redis to load...")
                    time.sleep(1)

            details = client.info()
            logger.debug("Running Redis v%s", details.get("redis_version", "Unknown"))
        finally:
            client.close()

    return _stopper(sock)


def open_redis(sock: str, pool_size: int) -> RedisStore:
    """Connect to the Redis booted on sock and open a store on it."""
    with _instances_lock:
        if sock not in _instances:
            raise RuntimeError("redis not booted, cannot start")
        client = redis.Redis(
            unix_socket_path=sock,
            db=0,
            max_connections=int(pool_size),
            socket_connect_timeout=1,
        )
        client.ping()
        return RedisStore(sock, client)


def stop_redis(sock: str) -> None:
    """Terminate the Redis server started for sock."""
    with _instances_lock:
        proc = _instances.pop(sock, None)
    if proc is None:
        raise LookupError("No such redis instance " + sock)

    logger.debug("Shutting down Redis PID %d", proc.pid)
    before = time.monotonic()
    try:
        proc.terminate()
    except ProcessLookupError:
        pass
    for _ in range(500):
        if proc.poll() is not None:
            logger.debug("Redis dead in %.3fs", time.monotonic() - before)
            return
        time.sleep(0.002)