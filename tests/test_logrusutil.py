import logging
from datetime import datetime, timedelta, timezone

import pytest

from limacfg.logrusutil import TRACE, LogEntry, propagate_json

LOGGER_NAME = "tests.propagate"
HEADER = "[hostagent] "


@pytest.fixture
def target(caplog):
    caplog.set_level(1)
    return logging.getLogger(LOGGER_NAME)


def _records(caplog, name=LOGGER_NAME):
    return [r for r in caplog.records if r.name == name]


@pytest.mark.parametrize(
    "level,expected",
    [
        ("error", logging.ERROR),
        ("warning", logging.WARNING),
        ("warn", logging.WARNING),
        ("info", logging.INFO),
        ("debug", logging.DEBUG),
        ("trace", TRACE),
    ],
)
def test_levels_are_mapped(target, caplog, level, expected):
    propagate_json(target, f'{{"level":"{level}","msg":"hello"}}', HEADER, None)
    records = _records(caplog)
    assert [(r.levelno, r.getMessage()) for r in records] == [(expected, HEADER + "hello")]


def test_fatal_becomes_error_with_field(target, caplog):
    propagate_json(target, b'{"level":"fatal","msg":"dead"}', HEADER, None)
    (record,) = _records(caplog)
    assert record.levelno == logging.ERROR
    assert record.level == "fatal"
    assert record.getMessage() == HEADER + "dead"


def test_invalid_json_falls_back(target, caplog):
    propagate_json(target, "not json", HEADER, None)
    assert _records(caplog) == []
    fallback = _records(caplog, "limacfg.logrusutil")
    assert [(r.levelno, r.getMessage()) for r in fallback] == [(logging.INFO, HEADER + "not json")]


def test_unknown_level_falls_back(target, caplog):
    line = '{"level":"loud","msg":"x"}'
    propagate_json(target, line, HEADER, None)
    assert _records(caplog) == []
    assert [r.getMessage() for r in _records(caplog, "limacfg.logrusutil")] == [HEADER + line]


def test_blank_line_is_ignored(target, caplog):
    propagate_json(target, "   \n", HEADER, None)
    assert caplog.records == []


def test_old_entries_are_dropped(target, caplog):
    begin = datetime(2023, 5, 1, 10, 0, 5, tzinfo=timezone.utc)
    propagate_json(target, '{"level":"info","msg":"old","time":"2023-05-01T10:00:00Z"}', HEADER, begin)
    assert _records(caplog) == []


def test_entries_within_epsilon_are_kept(target, caplog):
    begin = datetime(2023, 5, 1, 10, 0, 0, 500000, tzinfo=timezone.utc)
    propagate_json(target, '{"level":"info","msg":"new","time":"2023-05-01T10:00:00Z"}', HEADER, begin)
    assert [r.getMessage() for r in _records(caplog)] == [HEADER + "new"]


def test_from_json_parses_time():
    entry = LogEntry.from_json('{"level":"info","msg":"hi","time":"2023-05-01T10:00:00.123456789Z"}')
    assert entry.level == "info"
    assert entry.msg == "hi"
    assert entry.time == datetime(2023, 5, 1, 10, 0, 0, 123456, tzinfo=timezone.utc)


def test_from_json_offset_time():
    entry = LogEntry.from_json('{"level":"info","msg":"hi","time":"2023-05-01T12:00:00+02:00"}')
    assert entry.time.utcoffset() == timedelta(hours=2)
    assert entry.time == datetime(2023, 5, 1, 10, 0, 0, tzinfo=timezone.utc)


def test_from_json_zero_time_is_none():
    entry = LogEntry.from_json('{"level":"info","msg":"hi","time":"0001-01-01T00:00:00Z"}')
    assert entry.time is None


def test_from_json_rejects_non_object():
    with pytest.raises(ValueError):
        LogEntry.from_json("[1, 2]")