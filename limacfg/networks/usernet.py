"""File locations and resolver settings of user-mode (user-v2) networks."""

from __future__ import annotations

import logging
import os
import sys

logger = logging.getLogger(__name__)

FD_SOCK = "fd"
QEMU_SOCK = "qemu"
ENDPOINT_SOCK = "endpoint"

GATEWAY_MAC_ADDRESS = "5a:94:ef:e4:0c:dd"
HOST_GATEWAY_MAC_ADDRESS = "5a:94:ef:e4:0c:df"

_SEARCH_PREFIX = "search "


def sock_with_directory(directory: str, name: str, sock_type: str) -> str:
    """Path of a usernet socket of the given type inside ``directory``."""
    return os.path.join(directory, f"usernet_{name}_{sock_type}.sock")


def sock(networks_dir: str, name: str, sock_type: str) -> str:
    """Path of a usernet socket for the named network under ``networks_dir``."""
    return sock_with_directory(os.path.join(networks_dir, name), name, sock_type)


def pid_file(networks_dir: str, name: str) -> str:
    """Path of the PID file of the named usernet network."""
    return os.path.join(networks_dir, name, f"usernet_{name}.pid")


def resolve_search_domain(path: str) -> list[str]:
    """Return the domains of the first "search" line of a resolv.conf file."""
    try:
        with open(path, encoding="utf-8", errors="replace") as handle:
            for line in handle:
                line = line.rstrip("\r\n")
                if line.startswith(_SEARCH_PREFIX):
                    domains = line[len(_SEARCH_PREFIX):].split(" ")
                    logger.debug("Using search domains: %s", domains)
                    return domains
    except OSError as exc:
        logger.error("open file error: %s", exc)
    return []


def search_domains() -> list[str]:
    """Search domains of the host resolver; none on Windows."""
    if sys.platform == "win32":
        return []
    return resolve_search_domain("/etc/resolv.conf")