"""Assorted helpers: timestamps, identifiers, retries and diagnostics."""

from __future__ import annotations

import base64
import itertools
import json
import os
import re
import secrets
import sys
import threading
import traceback
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, TypeVar

from faktory import logger

try:
    import resource
except ImportError:  # pragma: no cover - platforms without resource
    resource = None  # type: ignore[assignment]

T = TypeVar("T")

_MAX_INT63 = (1 << 63) - 1

_TRUE_VALUES = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_VALUES = frozenset({"0", "f", "F", "FALSE", "false", "False"})

_TIMESTAMP = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})"
    r"(?:\.(\d+))?"
    r"(Z|[+-]\d{2}:\d{2})"
)


def json_unmarshal(data: bytes | str) -> Any:
    """Decode a JSON document; raises ValueError on malformed input."""
    return json.loads(data)


def faktory2_preview() -> bool:
    """Whether FAKTORY2_PREVIEW enables upcoming breaking changes."""
    raw = os.environ.get("FAKTORY2_PREVIEW") or "false"
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    raise ValueError(f"invalid boolean value for FAKTORY2_PREVIEW: {raw!r}")


def retryable(
    name: str,
    count: int,
    fn: Callable[[], T],
    stop: threading.Event | None = None,
) -> T | None:
    """Call fn up to count times, pausing briefly between failures.

    Returns fn's result on success, None if stop is set while waiting,
    and re-raises the last failure once the attempts run out.
    """
    stop = stop if stop is not None else threading.Event()
    last: Exception | None = None
    for _ in range(count):
        try:
            return fn()
        except Exception as exc:  # noqa: BLE001 - any failure is retried
            last = exc
        if stop.wait(0.01):
            return None
        logger.debug("Retrying %s due to %s", name, last)
    if last is not None:
        raise last
    return None


def file_exists(path: str | os.PathLike[str]) -> bool:
    """Whether path exists; errors other than absence are raised."""
    try:
        os.stat(path)
    except FileNotFoundError:
        return False
    return True


def darwin() -> bool:
    """Whether this looks like a macOS host."""
    return file_exists("/Applications")


def random_jid() -> str:
    """A random 16-character URL-safe job identifier."""
    return base64.urlsafe_b64encode(secrets.token_bytes(12)).decode("ascii").rstrip("=")


def random_int63() -> int:
    """A cryptographically random non-negative integer below 2**63 - 1."""
    return secrets.randbelow(_MAX_INT63)


def thens(tim: datetime) -> str:
    """Format a time as a UTC RFC 3339 timestamp with trimmed fraction."""
    utc = tim.astimezone(timezone.utc)
    text = utc.strftime("%Y-%m-%dT%H:%M:%S")
    frac = f"{utc.microsecond:06d}".rstrip("0")
    if frac:
        text += "." + frac
    return text + "Z"


def nows() -> str:
    """The current time as a canonical timestamp."""
    return thens(datetime.now(timezone.utc))


def parse_time(value: str) -> datetime:
    """Parse an RFC 3339 timestamp into an aware datetime."""
    match = _TIMESTAMP.fullmatch(value)
    if match is None:
        raise ValueError(f"cannot parse {value!r} as an RFC 3339 timestamp")
    year, month, day, hour, minute, second, frac, zone = match.groups()
    micro = int(frac[:6].ljust(6, "0")) if frac else 0
    if zone == "Z":
        tz = timezone.utc
    else:
        sign = -1 if zone[0] == "-" else 1
        offset = timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6]))
        tz = timezone(sign * offset)
    return datetime(
        int(year), int(month), int(day),
        int(hour), int(minute), int(second), micro, tzinfo=tz,
    )


def memory_usage_mb() -> int:
    """Peak resident memory of this process in megabytes, 0 if unknown."""
    if resource is None:
        return 0
    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    if sys.platform == "darwin":
        return peak // 1024 // 1024
    return peak // 1024


def backtrace(size: int) -> list[str]:
    """Up to size stack frames of the caller, innermost first."""
    if size <= 0:
        return []
    frames = traceback.walk_stack(sys._getframe(1))
    return [
        f"in {frame.f_code.co_filename}:{lineno} {frame.f_code.co_name}"
        for frame, lineno in itertools.islice(frames, size)
    ]


def dump_process_trace() -> None:
    """Log the stack of every running thread at info level."""
    names = {thread.ident: thread.name for thread in threading.enumerate()}
    sections = []
    for ident, frame in sys._current_frames().items():
        header = f"Thread {names.get(ident, '?')} ({ident}):\n"
        sections.append(header + "".join(traceback.format_stack(frame)))
    logger.info("FULL PROCESS THREAD DUMP:")
    logger.info("\n".join(sections))