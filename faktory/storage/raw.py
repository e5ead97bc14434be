"""A small key/value scratch pad stored in Redis."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import redis


class NilValueError(ValueError):
    """Raised when storing a missing value."""

    def __init__(self) -> None:
        super().__init__("Nil value not allowed")


class RedisKV:
    """Plain string keys and byte values for miscellaneous features."""

    def __init__(self, client: "redis.Redis") -> None:
        self._client = client

    def get(self, key: str) -> bytes | None:
        """The value stored at key, or None if there is none."""
        value = self._client.get(key)
        if value is None:
            return None
        if isinstance(value, str):
            return value.encode("utf-8")
        return bytes(value)

    def set(self, key: str, value: bytes | None) -> None:
        """Store value at key with no expiry."""
        if value is None:
            raise NilValueError()
        self._client.set(key, value)