"""Redis sorted sets holding jobs ordered by the time they fall due."""

from __future__ import annotations

import calendar
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Callable, Iterator

from faktory import logger, util

if TYPE_CHECKING:
    import redis

_PAGE_SIZE = 50
_SCAN_COUNT = 100
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class BackupInfo:
    """Summary of one storage backup."""

    id: int
    file_count: int
    size: int
    timestamp: int


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    return str(value).encode("utf-8")


def _format_score(score: float) -> str:
    text = repr(score)
    if "e" in text or "E" in text:
        text = format(Decimal(text), "f")
    return text


def _encode_job(job: dict[str, Any]) -> bytes:
    return json.dumps(job, separators=(",", ":")).encode("utf-8")


def score_for(timestamp: str) -> float:
    """The sorted-set score of an RFC 3339 timestamp: Unix seconds with fraction."""
    tim = util.parse_time(timestamp)
    secs = calendar.timegm(tim.utctimetuple())
    return float(secs) + tim.microsecond / 1_000_000


def decompose(key: bytes | str) -> tuple[float, str]:
    """Split a "timestamp|jid" key into its score and job id."""
    text = key.decode("utf-8") if isinstance(key, (bytes, bytearray)) else key
    parts = text.split("|")
    if len(parts) != 2:
        raise ValueError(f'Invalid key, expected "timestamp|jid", not {text}')
    return score_for(parts[0]), parts[1]


class SetEntry:
    """One member of a sorted set: its score, raw payload and lazily decoded job."""

    __slots__ = ("score", "_value", "_key", "_job")

    def __init__(self, score: float, value: bytes) -> None:
        self.score = float(score)
        self._value = _as_bytes(value)
        self._key: bytes | None = None
        self._job: dict[str, Any] | None = None

    def __repr__(self) -> str:
        return f"SetEntry(score={self.score!r}, value={self._value!r})"

    def value(self) -> bytes:
        """The raw JSON payload."""
        return self._value

    def job(self) -> dict[str, Any]:
        """The decoded job; raises ValueError if the payload is not a JSON object."""
        if self._job is None:
            decoded = util.json_unmarshal(self._value)
            if not isinstance(decoded, dict):
                raise ValueError("sorted set entry is not a JSON object")
            self._job = decoded
        return self._job

    def key(self) -> bytes:
        """The entry's "timestamp|jid" key."""
        if self._key is None:
            jid = self.job().get("jid", "")
            secs = int(self.score)
            micros = round((self.score - secs) * 1_000_000)
            tim = _EPOCH + timedelta(seconds=secs, microseconds=micros)
            self._key = f"{util.thens(tim)}|{jid}".encode("utf-8")
        return self._key


class RedisSorted:
    """A named sorted set of job payloads scored by due time."""

    def __init__(self, client: "redis.Redis", name: str) -> None:
        self._client = client
        self.name = name

    def __repr__(self) -> str:
        return f"RedisSorted({self.name!r})"

    def size(self) -> int:
        """Number of entries in the set."""
        return int(self._client.zcard(self.name))

    def clear(self) -> None:
        """Remove every entry."""
        self._client.unlink(self.name)

    def add(self, job: dict[str, Any]) -> None:
        """Add a job scored by its "at" timestamp."""
        if not job.get("at"):
            raise ValueError("Job does not have an At timestamp")
        self.add_element(job["at"], job.get("jid", ""), _encode_job(job))

    def add_element(self, timestamp: str, jid: str, payload: bytes) -> None:
        """Add a raw payload scored by the given timestamp."""
        self._client.zadd(self.name, {_as_bytes(payload): score_for(timestamp)})

    def remove_entry(self, entry: SetEntry) -> None:
        """Remove the member holding the entry's payload."""
        self._client.zrem(self.name, entry.value())

    def _members_at(self, score: float) -> list[bytes]:
        strf = _format_score(score)
        return [_as_bytes(m) for m in self._client.zrangebyscore(self.name, strf, strf)]

    @staticmethod
    def _pick(members: list[bytes], jid: str) -> bytes | None:
        if not members:
            return None
        if len(members) == 1:
            return members[0]
        needle = jid.encode("utf-8")
        return next((m for m in members if m.find(needle) > 0), None)

    def get(self, key: bytes | str) -> SetEntry | None:
        """The entry for a "timestamp|jid" key, or None if it is gone."""
        score, jid = decompose(key)
        member = self._pick(self._members_at(score), jid)
        return None if member is None else SetEntry(score, member)

    def find(self, match: str) -> Iterator[SetEntry]:
        """Entries whose payload matches a glob pattern."""
        for member, score in self._client.zscan_iter(self.name, match=match, count=_SCAN_COUNT):
            yield SetEntry(float(score), _as_bytes(member))

    def page(self, start: int, count: int) -> list[SetEntry]:
        """Up to count entries in score order, starting at position start."""
        rows = self._client.zrange(self.name, start, start + count - 1, withscores=True)
        return [SetEntry(float(score), _as_bytes(member)) for member, score in rows]

    def each(self) -> Iterator[SetEntry]:
        """Every entry in score order, fetched a page at a time."""
        current = 0
        while True:
            entries = self.page(current, _PAGE_SIZE)
            yield from entries
            if len(entries) < _PAGE_SIZE:
                return
            current += _PAGE_SIZE

    def _remove_at(self, score: float, jid: str) -> bool:
        member = self._pick(self._members_at(score), jid)
        if member is None:
            return False
        return int(self._client.zrem(self.name, member)) == 1

    def remove(self, key: bytes | str) -> bool:
        """Remove the entry for a "timestamp|jid" key; True if it was removed."""
        score, jid = decompose(key)
        return self._remove_at(score, jid)

    def remove_element(self, timestamp: str, jid: str) -> bool:
        """Remove the entry with the given timestamp and jid; True if removed."""
        return self._remove_at(score_for(timestamp), jid)

    def remove_before(
        self, timestamp: str, max_count: int, fn: Callable[[bytes], Any]
    ) -> int:
        """Remove up to max_count entries due by timestamp, handing each to fn.

        Returns how many entries were removed and processed without error.
        """
        strf = _format_score(score_for(timestamp))
        if max_count:
            members = self._client.zrangebyscore(
                self.name, "-inf", strf, start=0, num=max_count
            )
        else:
            members = self._client.zrangebyscore(self.name, "-inf", strf)

        count = 0
        for member in members:
            data = _as_bytes(member)
            if int(self._client.zrem(self.name, data)) != 1:
                continue
            try:
                fn(data)
            except Exception as exc:  # noqa: BLE001 - one bad job must not stop the scan
                logger.warn("Unable to process timed job: %s", exc)
                continue
            count += 1
        return count

    def move_to(self, other: "RedisSorted", entry: SetEntry, newtime: datetime) -> None:
        """Move an entry into another set, rescored to newtime."""
        job = entry.job()
        if int(self._client.zrem(self.name, entry.value())) == 0:
            # already removed or moved elsewhere
            return
        other.add_element(util.thens(newtime), job.get("jid", ""), entry.value())