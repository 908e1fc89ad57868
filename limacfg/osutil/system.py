"""Platform facts: file ownership, signals, Rosetta, DNS servers and proxies."""

from __future__ import annotations

import errno
import json
import logging
import os
import signal
import subprocess
import sys
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

# The value of UNIX_PATH_MAX.
UNIX_PATH_MAX = 108 if sys.platform.startswith("linux") or sys.platform == "win32" else 104

SIGINT = int(signal.SIGINT)
SIGKILL = int(getattr(signal, "SIGKILL", 9))


@dataclass(frozen=True)
class Stat:
    """Ownership of a file."""

    uid: int
    gid: int


def sys_stat(st: os.stat_result) -> Stat | None:
    """Return the owner of a stat result, or None where ownership is not available."""
    if sys.platform == "win32":
        return None
    return Stat(uid=st.st_uid, gid=st.st_gid)


def sys_kill(pid: int, sig: int) -> None:
    """Send a signal to a process."""
    if sys.platform == "win32":
        raise OSError(errno.ENOSYS, "sending signals is not supported on Windows")
    os.kill(pid, sig)


def is_being_rosetta_translated() -> bool:
    """Tell whether this process runs under Rosetta translation."""
    if sys.platform != "darwin":
        return False
    try:
        result = subprocess.run(
            ["/usr/sbin/sysctl", "-n", "sysctl.proc_translated"],
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as exc:
        logger.warning("failed to detect whether running under rosetta, assuming False: %s", exc)
        return False
    if result.returncode != 0:
        # the key does not exist where Rosetta is not available
        return False
    try:
        return int(result.stdout.strip()) != 0
    except ValueError:
        logger.warning(
            'failed to read sysctl "sysctl.proc_translated" (%r), assuming False', result.stdout
        )
        return False


def _join_host_port(host: str, port: str) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def proxy_url(proxy: str, port: Any) -> str:
    """Build a proxy URL from a host and a numeric or textual port."""
    if "://" not in proxy:
        proxy = "http://" + proxy
    if isinstance(port, (int, float)) and not isinstance(port, bool) and port != 0:
        return _join_host_port(proxy, f"{port:.0f}")
    if isinstance(port, str) and port:
        return _join_host_port(proxy, port)
    return proxy


def _network_data() -> list[dict[str, Any]]:
    result = subprocess.run(
        ["system_profiler", "SPNetworkDataType", "-json"],
        capture_output=True,
        text=True,
        check=True,
    )
    return list(json.loads(result.stdout).get("SPNetworkDataType", []))


def _primary_interface(data: list[dict[str, Any]]) -> dict[str, Any] | None:
    # Services are listed in service order already.
    return next((nw for nw in data if (nw.get("IPv4") or {}).get("Addresses")), None)


def dns_addresses() -> list[str]:
    """DNS servers of the first network service that has an IPv4 address."""
    if sys.platform != "darwin":
        return []
    nw = _primary_interface(_network_data())
    if nw is None:
        return []
    return list((nw.get("DNS") or {}).get("ServerAddresses", []))


def proxy_settings() -> dict[str, str]:
    """Proxy environment variables of the first service that has an IPv4 address."""
    env: dict[str, str] = {}
    if sys.platform != "darwin":
        return env
    nw = _primary_interface(_network_data())
    proxies: dict[str, Any] = (nw.get("Proxies") or {}) if nw else {}
    # Proxies with a user name are skipped: the password lives in the keychain.
    for prefix, variable in (("FTP", "ftp_proxy"), ("HTTP", "http_proxy"), ("HTTPS", "https_proxy")):
        if proxies.get(f"{prefix}Enable") == "yes" and not proxies.get(f"{prefix}User"):
            env[variable] = proxy_url(proxies.get(f"{prefix}Proxy", ""), proxies.get(f"{prefix}Port"))
    return env