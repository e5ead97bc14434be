"""Replies to a client in the RESP wire format."""

from __future__ import annotations

from typing import Any, Protocol


class _Stream(Protocol):
    def write(self, data: bytes) -> Any: ...

    def close(self) -> Any: ...


class KnownError(Exception):
    """An error whose message already starts with its own RESP error code."""


class Connection:
    """One client connection: a writable, closable byte stream plus its client."""

    def __init__(self, conn: _Stream, client: Any = None) -> None:
        self._conn = conn
        self.client = client

    def __repr__(self) -> str:
        return f"Connection(client={self.client!r})"

    def _send(self, data: bytes) -> None:
        self._conn.write(data)
        flush = getattr(self._conn, "flush", None)
        if callable(flush):
            flush()

    def close(self) -> None:
        """Close the underlying stream."""
        self._conn.close()

    def error(self, err: BaseException) -> None:
        """Send an error line; known errors carry their own code, others get ERR."""
        if isinstance(err, KnownError):
            line = f"-{err}\r\n"
        else:
            line = f"-ERR {err}\r\n"
        self._send(line.encode("utf-8"))

    def ok(self) -> None:
        """Send the simple OK reply."""
        self._send(b"+OK\r\n")

    def number(self, val: int) -> None:
        """Send an integer reply."""
        self._send(f":{int(val)}\r\n".encode("ascii"))

    def result(self, msg: bytes | str | None) -> None:
        """Send a bulk string reply, or the null bulk string for None."""
        if msg is None:
            self._send(b"$-1\r\n")
            return
        payload = msg.encode("utf-8") if isinstance(msg, str) else bytes(msg)
        self._send(b"$%d\r\n%s\r\n" % (len(payload), payload))