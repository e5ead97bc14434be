"""Redis lists acting as named job queues."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Callable, Iterator

from faktory import logger, util

if TYPE_CHECKING:
    import redis

_PAUSED = "paused"
_QUEUES = "queues"
_BLOCK_SECONDS = 2


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    return str(value).encode("utf-8")


class RedisQueue:
    """A FIFO queue of job payloads: pushed on the left, popped from the right."""

    def __init__(
        self,
        client: "redis.Redis",
        name: str,
        forget: Callable[[str], None] | None = None,
    ) -> None:
        self._client = client
        self.name = name
        self._forget = forget
        self._done = False
        if logger.is_debug():
            logger.debug("Queue init: %s %d elements", name, self.size())

    def __repr__(self) -> str:
        return f"RedisQueue({self.name!r})"

    def pause(self) -> None:
        """Mark the queue as paused."""
        self._client.sadd(_PAUSED, self.name)

    def resume(self) -> None:
        """Clear the paused mark."""
        self._client.srem(_PAUSED, self.name)

    def is_paused(self) -> bool:
        """Whether the queue is paused."""
        return bool(self._client.sismember(_PAUSED, self.name))

    def close(self) -> None:
        """Stop handing out jobs from pop()."""
        self._done = True

    def page(self, start: int, count: int) -> list[bytes]:
        """Payloads from position start through start + count, newest first."""
        return [_as_bytes(v) for v in self._client.lrange(self.name, start, start + count)]

    def each(self) -> Iterator[bytes]:
        """Every payload, newest first."""
        yield from self.page(0, -1)

    def clear(self) -> int:
        """Delete the queue and forget it; always reports 0."""
        with self._client.pipeline(transaction=False) as pipe:
            pipe.unlink(self.name)
            pipe.srem(_QUEUES, self.name)
            pipe.srem(_PAUSED, self.name)
            pipe.execute()
        if self._forget is not None:
            self._forget(self.name)
        return 0

    def size(self) -> int:
        """Number of payloads waiting."""
        return int(self._client.llen(self.name))

    def add(self, job: dict[str, Any]) -> None:
        """Stamp the job as enqueued now and push it."""
        job["enqueued_at"] = util.nows()
        self.push(json.dumps(job, separators=(",", ":")).encode("utf-8"))

    def push(self, payload: bytes) -> None:
        """Push a raw payload onto the queue."""
        self._client.lpush(self.name, payload)

    def pop(self) -> bytes | None:
        """The oldest payload, or None if empty or closed; never blocks."""
        if self._done:
            return None
        value = self._client.rpop(self.name)
        if not value:
            return None
        return _as_bytes(value)

    def bpop(self) -> bytes | None:
        """The oldest payload, waiting up to two seconds; None on timeout."""
        result = self._client.brpop(self.name, timeout=_BLOCK_SECONDS)
        if result is None:
            return None
        return _as_bytes(result[1])

    def delete(self, values: list[bytes]) -> None:
        """Remove one occurrence of each given payload."""
        for value in values:
            self._client.lrem(self.name, 1, value)