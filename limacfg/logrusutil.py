"""Relaying of JSON log lines written by another process."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

_log = logging.getLogger(__name__)

EPSILON = timedelta(seconds=1)
TRACE = 5

# level name -> (logging level, name kept as a field when it is downgraded)
_LEVELS: dict[str, tuple[int, str | None]] = {
    "panic": (logging.ERROR, "panic"),
    "fatal": (logging.ERROR, "fatal"),
    "error": (logging.ERROR, None),
    "warn": (logging.WARNING, None),
    "warning": (logging.WARNING, None),
    "info": (logging.INFO, None),
    "debug": (logging.DEBUG, None),
    "trace": (TRACE, None),
}

_RFC3339 = re.compile(
    r"(\d{4}-\d{2}-\d{2})[Tt](\d{2}:\d{2}:\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})"
)


def _parse_time(text: str) -> datetime | None:
    match = _RFC3339.fullmatch(text)
    if match is None:
        raise ValueError(f"invalid timestamp {text!r}")
    date, clock, fraction, zone = match.groups()
    micro = ("." + fraction[:6].ljust(6, "0")) if fraction else ""
    offset = "+00:00" if zone in ("Z", "z") else zone
    parsed = datetime.fromisoformat(f"{date}T{clock}{micro}{offset}")
    if (
        parsed.replace(tzinfo=None) == datetime(1, 1, 1)
        and parsed.utcoffset() == timedelta(0)
    ):
        return None
    return parsed


@dataclass(frozen=True)
class LogEntry:
    """One line of JSON-formatted log output."""

    level: str = ""
    msg: str = ""
    time: datetime | None = None

    @classmethod
    def from_json(cls, data: str | bytes) -> LogEntry:
        """Parse a JSON log line. Raises ValueError if it is malformed."""
        obj = json.loads(data)
        if not isinstance(obj, dict):
            raise ValueError("log line is not a JSON object")
        level = obj.get("level") or ""
        msg = obj.get("msg") or ""
        if not isinstance(level, str) or not isinstance(msg, str):
            raise ValueError("log fields `level` and `msg` must be strings")
        raw_time = obj.get("time")
        if raw_time is None:
            time = None
        elif isinstance(raw_time, str):
            time = _parse_time(raw_time)
        else:
            raise ValueError("log field `time` must be a string")
        return cls(level=level, msg=msg, time=time)


def propagate_json(
    logger: logging.Logger,
    json_line: str | bytes,
    header: str,
    begin: datetime | None = None,
) -> None:
    """Re-emit a JSON log line on ``logger``, prefixing the message with ``header``.

    Entries older than ``begin`` (by more than a second) are dropped. Panic and
    fatal entries are logged as errors. Lines that cannot be parsed are logged
    verbatim at info level.
    """
    text = json_line.decode(errors="replace") if isinstance(json_line, bytes) else json_line
    if not text.strip():
        return
    try:
        entry = LogEntry.from_json(text)
    except ValueError:
        _log.info(header + text)
        return
    if entry.time is not None and begin is not None:
        if begin.tzinfo is None:
            begin = begin.astimezone()
        if begin > entry.time + EPSILON:
            return
    resolved = _LEVELS.get(entry.level.lower())
    if resolved is None:
        _log.info(header + text)
        return
    level, kept_name = resolved
    if kept_name is not None:
        logger.log(level, header + entry.msg, extra={"level": kept_name})
    else:
        logger.log(level, header + entry.msg)