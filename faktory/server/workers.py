"""Client processes known to the server and their heartbeat lifecycle.

A worker process moves only forward through running -> quiet -> terminate.
Quiet workers stop fetching jobs; terminating workers should exit soon.
Workers that stop sending BEAT are reaped along with their connections.
"""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from faktory import logger, util


class WorkerState(enum.Enum):
    """Lifecycle state of a worker process."""

    RUNNING = 0
    QUIET = 1
    TERMINATE = 2

    @classmethod
    def from_string(cls, value: str) -> "WorkerState":
        """The state named by value; anything unrecognised means running."""
        return {"quiet": cls.QUIET, "terminate": cls.TERMINATE}.get(value, cls.RUNNING)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ClientData:
    """A client process, which may hold several connections."""

    hostname: str = ""
    wid: str = ""
    pwdhash: str = ""
    username: str = ""
    labels: list[str] = field(default_factory=list)
    pid: int = 0
    rss_kb: int = 0
    version: int = 0
    started_at: datetime | None = None
    last_heartbeat: datetime | None = None
    state: WorkerState = WorkerState.RUNNING
    connections: set[Any] = field(default_factory=set, repr=False, compare=False)

    def connection_count(self) -> int:
        """Number of open connections from this process."""
        return len(self.connections)

    def is_quiet(self) -> bool:
        """Whether the worker should no longer fetch jobs."""
        return self.state is not WorkerState.RUNNING

    def signal(self, newstate: WorkerState) -> None:
        """Move to newstate if that is a step forward in the lifecycle."""
        if self.state is newstate:
            return
        if self.state is WorkerState.RUNNING:
            self.state = newstate
            return
        if self.state is WorkerState.QUIET and newstate is WorkerState.TERMINATE:
            self.state = newstate

    def is_consumer(self) -> bool:
        """Whether this client fetches jobs, i.e. identifies itself with a wid."""
        return self.wid != ""


@dataclass
class ClientBeat:
    """The payload of a BEAT command."""

    wid: str = ""
    current_state: str = ""
    rss_kb: int = 0


def _field(payload: dict[str, Any], key: str, kind: type, default: Any) -> Any:
    value = payload.get(key)
    if value is None:
        return default
    if kind is int and isinstance(value, bool):
        raise ValueError(f"HELLO field {key!r} must be a number")
    if not isinstance(value, kind):
        raise ValueError(f"HELLO field {key!r} has the wrong type")
    return value


def client_data_from_hello(data: str | bytes) -> ClientData:
    """Build client data from a HELLO JSON payload; raises ValueError if malformed."""
    payload = util.json_unmarshal(data)
    if not isinstance(payload, dict):
        raise ValueError("HELLO payload must be a JSON object")
    labels = _field(payload, "labels", list, [])
    if not all(isinstance(label, str) for label in labels):
        raise ValueError("HELLO field 'labels' must hold strings")
    version = _field(payload, "v", int, 0)
    if not 0 <= version <= 255:
        raise ValueError("HELLO field 'v' is out of range")
    return ClientData(
        hostname=_field(payload, "hostname", str, ""),
        wid=_field(payload, "wid", str, ""),
        pwdhash=_field(payload, "pwdhash", str, ""),
        username=_field(payload, "username", str, ""),
        labels=list(labels),
        pid=_field(payload, "pid", int, 0),
        rss_kb=_field(payload, "rss_kb", int, 0),
        version=version,
    )


class Workers:
    """Registry of worker processes keyed by wid."""

    def __init__(self) -> None:
        self._heartbeats: dict[str, ClientData] = {}
        self._lock = threading.Lock()

    def count(self) -> int:
        """Number of known worker processes."""
        with self._lock:
            return len(self._heartbeats)

    def setup_heartbeat(self, client: ClientData, closer: Any) -> ClientData:
        """Register a connection for client, adding the process if it is new.

        Returns the registered entry, which may be an earlier one with the same wid.
        """
        with self._lock:
            entry = self._heartbeats.get(client.wid)
            if entry is None:
                now = _now()
                client.started_at = now
                client.last_heartbeat = now
                client.connections = set()
                self._heartbeats[client.wid] = client
                entry = client
            entry.connections.add(closer)
            return entry

    def heartbeat(self, beat: ClientBeat) -> ClientData | None:
        """Record a BEAT; None if the worker is unknown."""
        with self._lock:
            entry = self._heartbeats.get(beat.wid)
            if entry is None:
                return None
            newstate = entry.state
            if beat.current_state:
                newstate = WorkerState.from_string(beat.current_state)
            entry.rss_kb = beat.rss_kb
            entry.last_heartbeat = _now()
            if entry.state is not newstate:
                entry.signal(newstate)
            return entry

    def remove_connection(self, wid: str, closer: Any) -> None:
        """Forget a closed connection, and the worker once none remain."""
        with self._lock:
            entry = self._heartbeats.get(wid)
            if entry is None:
                return
            entry.connections.discard(closer)
            if not entry.connections:
                del self._heartbeats[wid]

    def reap_heartbeats(self, before: datetime) -> int:
        """Drop workers whose last beat is older than before, closing their connections.

        Returns how many workers were dropped.
        """
        with self._lock:
            stale = [
                wid
                for wid, worker in self._heartbeats.items()
                if worker.last_heartbeat is None or worker.last_heartbeat < before
            ]
            closers = []
            for wid in stale:
                closers.extend(self._heartbeats.pop(wid).connections)

        for closer in closers:
            try:
                closer.close()
            except Exception:  # noqa: BLE001 - a failing close must not stop reaping
                pass

        if stale:
            logger.debug("Reaped %d worker heartbeats", len(stale))
            if closers:
                logger.warn(
                    "Reaped %d lingering connections, this is a sign your workers are having problems",
                    len(closers),
                )
                logger.warn("All worker processes should send a heartbeat every 15 seconds")
        return len(stale)