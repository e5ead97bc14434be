"""Bulk operations on the retry, scheduled and dead sets."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from faktory import util

DEFAULT_DEAD_TTL = timedelta(days=180)

_TARGETS = ("retries", "dead", "scheduled")


def _always_match(value: str) -> bool:
    return True


def _quote(text: str) -> str:
    return json.dumps(text)


@dataclass
class JobFilter:
    """Selects jobs by jid, glob pattern and/or job type."""

    jids: list[str] = field(default_factory=list)
    regexp: str = ""
    jobtype: str = ""


@dataclass
class Operation:
    """A mutation command: what to do, to which set, and to which jobs."""

    cmd: str = ""
    target: str = ""
    filter: JobFilter | None = None

    @classmethod
    def from_json(cls, data: str | bytes) -> "Operation":
        """Parse an operation from JSON; raises ValueError if malformed."""
        payload = util.json_unmarshal(data)
        if not isinstance(payload, dict):
            raise ValueError("mutate operation must be a JSON object")
        cmd = payload.get("cmd") or ""
        target = payload.get("target") or ""
        if not isinstance(cmd, str) or not isinstance(target, str):
            raise ValueError("mutate operation cmd and target must be strings")
        raw = payload.get("filter")
        if raw is None:
            return cls(cmd=cmd, target=target)
        if not isinstance(raw, dict):
            raise ValueError("mutate filter must be a JSON object")
        jids = raw.get("jids") or []
        regexp = raw.get("regexp") or ""
        jobtype = raw.get("jobtype") or ""
        if not isinstance(jids, list) or not all(isinstance(j, str) for j in jids):
            raise ValueError("mutate filter jids must be a list of strings")
        if not isinstance(regexp, str) or not isinstance(jobtype, str):
            raise ValueError("mutate filter regexp and jobtype must be strings")
        return cls(
            cmd=cmd,
            target=target,
            filter=JobFilter(jids=list(jids), regexp=regexp, jobtype=jobtype),
        )


def match_for_filter(flt: JobFilter | None) -> tuple[str, Callable[[str], bool]]:
    """The glob pattern for the store scan and a predicate applied to each payload."""
    if flt is None:
        return "*", _always_match

    if flt.regexp:
        if not flt.jobtype:
            return flt.regexp, _always_match
        # the pattern goes to the scan, the job type is checked here
        typematch = f'"jobtype":{_quote(flt.jobtype)}'
        return flt.regexp, lambda value: value.find(typematch) > 0

    if flt.jobtype:
        return f'*"jobtype":{_quote(flt.jobtype)}*', _always_match

    if flt.jids:
        needles = [f'"jid":{_quote(jid)}' for jid in flt.jids]
        return "*", lambda value: any(value.find(n) > 0 for n in needles)

    return "*", _always_match


def set_for_target(store: Any, name: str) -> Any:
    """The sorted set named by a mutation target, or None."""
    if name in _TARGETS:
        return getattr(store, name)
    return None


def _require_set(store: Any, name: str) -> Any:
    sset = set_for_target(store, name)
    if sset is None:
        raise ValueError("invalid target for mutation command")
    return sset


def _matching(sset: Any, flt: JobFilter | None) -> list[Any]:
    match, matches = match_for_filter(flt)
    return [
        entry
        for entry in list(sset.find(match))
        if matches(entry.value().decode("utf-8", errors="replace"))
    ]


def mutate_clear(store: Any, target: str) -> None:
    """Empty the target set."""
    _require_set(store, target).clear()


def mutate_kill(store: Any, op: Operation, dead_ttl: timedelta = DEFAULT_DEAD_TTL) -> None:
    """Move matching jobs to the dead set, to expire after dead_ttl."""
    sset = _require_set(store, op.target)
    for entry in _matching(sset, op.filter):
        sset.move_to(store.dead, entry, datetime.now(timezone.utc) + dead_ttl)


def mutate_requeue(store: Any, op: Operation) -> None:
    """Push matching jobs back onto their queues."""
    sset = _require_set(store, op.target)
    for entry in _matching(sset, op.filter):
        job = entry.job()
        queue = store.get_queue(job.get("queue", ""))
        queue.push(entry.value())
        sset.remove_entry(entry)


def mutate_discard(store: Any, op: Operation) -> None:
    """Delete matching jobs; with no filter, empty the set."""
    sset = _require_set(store, op.target)
    if op.filter is None:
        sset.clear()
        return
    for entry in _matching(sset, op.filter):
        sset.remove_entry(entry)


def mutate(store: Any, cmd: str) -> None:
    """Run a "MUTATE {json}" command line; raises ValueError on bad input."""
    parts = cmd.split(" ")
    if len(parts) != 2:
        raise ValueError("invalid format")
    op = Operation.from_json(parts[1])
    if op.cmd == "clear":
        mutate_clear(store, op.target)
    elif op.cmd == "kill":
        mutate_kill(store, op)
    elif op.cmd == "discard":
        mutate_discard(store, op)
    elif op.cmd == "requeue":
        mutate_requeue(store, op)
    else:
        raise ValueError("unknown mutate operation")