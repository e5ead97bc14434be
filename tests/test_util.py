import re
import threading
from datetime import datetime, timedelta, timezone

import pytest

from faktory import logger, util


def test_parse_time_whole_seconds():
    tm = util.parse_time("2017-08-17T18:55:26Z")
    assert tm == datetime(2017, 8, 17, 18, 55, 26, tzinfo=timezone.utc)
    assert tm < datetime.now(timezone.utc)


def test_parse_time_fraction():
    tm = util.parse_time("2017-08-17T18:55:26.554544Z")
    assert tm == datetime(2017, 8, 17, 18, 55, 26, 554544, tzinfo=timezone.utc)
    assert tm < datetime.now(timezone.utc)


def test_parse_time_nanosecond_fraction_truncated():
    tm = util.parse_time("2017-08-17T18:55:26.123456789Z")
    assert tm.microsecond == 123456


def test_parse_time_offset():
    tm = util.parse_time("2017-08-17T20:55:26+02:00")
    assert tm == datetime(2017, 8, 17, 18, 55, 26, tzinfo=timezone.utc)


def test_parse_time_round_trip():
    now = datetime.now(timezone.utc)
    assert util.parse_time(util.thens(now)) == now


@pytest.mark.parametrize(
    "value",
    ["", "2017-08-17", "2017-08-17 18:55:26Z", "2017-13-17T18:55:26Z", "garbage"],
)
def test_parse_time_invalid(value):
    with pytest.raises(ValueError):
        util.parse_time(value)


def test_thens_formats():
    base = datetime(2017, 8, 17, 18, 55, 26, tzinfo=timezone.utc)
    assert util.thens(base) == "2017-08-17T18:55:26Z"
    assert util.thens(base.replace(microsecond=554544)) == "2017-08-17T18:55:26.554544Z"
    assert util.thens(base.replace(microsecond=500000)) == "2017-08-17T18:55:26.5Z"


def test_thens_converts_to_utc():
    tz = timezone(timedelta(hours=-5))
    tim = datetime(2017, 8, 17, 13, 55, 26, tzinfo=tz)
    assert util.thens(tim) == "2017-08-17T18:55:26Z"


def test_nows_prefix():
    ts = util.nows()
    assert ts.startswith("20")
    assert ts.endswith("Z")


def test_file_exists(tmp_path):
    present = tmp_path / "here.txt"
    present.write_text("x")
    assert util.file_exists(present) is True
    assert util.file_exists(tmp_path / "nope.go") is False


def test_random_jid():
    jid = util.random_jid()
    assert len(jid) == 16
    assert re.fullmatch(r"[A-Za-z0-9_-]{16}", jid)
    assert util.random_jid() != jid or util.random_jid() != jid


def test_random_int63_range():
    for _ in range(100):
        value = util.random_int63()
        assert 0 <= value < (1 << 63) - 1


def test_memory_usage_mb_reasonable():
    val = util.memory_usage_mb()
    assert 0 <= val < 4096


def test_json_unmarshal():
    assert util.json_unmarshal(b'{"jid":"abc","args":[1,2]}') == {"jid": "abc", "args": [1, 2]}
    assert util.json_unmarshal("[]") == []


@pytest.mark.parametrize("data", ["", "{", b"{jid:1}"])
def test_json_unmarshal_invalid(data):
    with pytest.raises(ValueError):
        util.json_unmarshal(data)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("true", True), ("1", True), ("T", True), ("false", False), ("0", False), ("", False)],
)
def test_faktory2_preview(monkeypatch, raw, expected):
    monkeypatch.setenv("FAKTORY2_PREVIEW", raw)
    assert util.faktory2_preview() is expected


def test_faktory2_preview_unset(monkeypatch):
    monkeypatch.delenv("FAKTORY2_PREVIEW", raising=False)
    assert util.faktory2_preview() is False


def test_faktory2_preview_invalid(monkeypatch):
    monkeypatch.setenv("FAKTORY2_PREVIEW", "maybe")
    with pytest.raises(ValueError):
        util.faktory2_preview()


def test_retryable_succeeds_after_failures():
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise RuntimeError("not yet")
        return "done"

    assert util.retryable("flaky", 5, flaky) == "done"
    assert len(calls) == 3


def test_retryable_raises_last_error():
    calls = []

    def broken():
        calls.append(1)
        raise RuntimeError(f"fail {len(calls)}")

    with pytest.raises(RuntimeError, match="fail 3"):
        util.retryable("broken", 3, broken)
    assert len(calls) == 3


def test_retryable_stops_when_cancelled():
    stop = threading.Event()
    stop.set()
    calls = []

    def broken():
        calls.append(1)
        raise RuntimeError("boom")

    assert util.retryable("cancelled", 5, broken, stop) is None
    assert len(calls) == 1


def test_backtrace():
    ex = util.backtrace(12)
    assert 2 < len(ex) <= 12
    assert "test_backtrace" in ex[0]
    assert ex[0].startswith("in ")


def test_backtrace_limits_frames():
    def inner():
        return util.backtrace(2)

    ex = inner()
    assert len(ex) == 2
    assert ex[0].endswith(" inner")
    assert "test_backtrace_limits_frames" in ex[1]


def test_backtrace_zero():
    assert util.backtrace(0) == []


def test_dump_process_trace(capsys):
    logger.init_logger("info")
    try:
        util.dump_process_trace()
    finally:
        logger.init_logger("")
    out = capsys.readouterr().out
    assert "FULL PROCESS THREAD DUMP:" in out
    assert "test_dump_process_trace" in out