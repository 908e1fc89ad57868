"""Stable identifier of the host machine."""

from __future__ import annotations

import logging
import socket
import subprocess
import sys
import threading
import xml.etree.ElementTree as ET
from pathlib import Path

logger = logging.getLogger(__name__)

_CANDIDATES = (
    "/etc/machine-id",
    "/var/lib/dbus/machine-id",
)

_lock = threading.Lock()
_cached: str | None = None


def machine_id() -> str:
    """Return the machine id, falling back to the host name. Computed once."""
    global _cached
    with _lock:
        if _cached is None:
            try:
                value = _read_machine_id()
            except (OSError, ValueError, subprocess.SubprocessError) as exc:
                logger.debug("failed to get machine ID, falling back to use hostname instead: %s", exc)
                value = ""
            if not value:
                value = socket.gethostname()
            _cached = value
        return _cached


def _read_machine_id() -> str:
    if sys.platform == "darwin":
        result = subprocess.run(
            ["/usr/sbin/ioreg", "-a", "-d2", "-c", "IOPlatformExpertDevice"],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            check=True,
        )
        return parse_io_platform_uuid(result.stdout)
    for candidate in _CANDIDATES:
        try:
            return Path(candidate).read_text().strip()
        except OSError:
            continue
    raise OSError(f"no machine-id found, tried {list(_CANDIDATES)}")


def parse_io_platform_uuid(data: str | bytes) -> str:
    """Extract IOPlatformUUID from an ioreg plist. Raises ValueError if absent."""
    if isinstance(data, str):
        data = data.encode()
    parser = ET.XMLPullParser(events=("end",))
    key = ""
    try:
        for line in data.lstrip().splitlines(keepends=True):
            parser.feed(line)
            for _event, elem in parser.read_events():
                if elem.tag == "key":
                    key = elem.text or ""
                    continue
                if elem.tag == "string" and key == "IOPlatformUUID" and elem.text:
                    return elem.text
                key = ""
        parser.close()
    except ET.ParseError as exc:
        raise ValueError(f"malformed IOPlatformExpertDevice data: {exc}") from exc
    raise ValueError("IOPlatformUUID not found")