"""Built-in defaults and the rules that complete single configuration entries."""

from __future__ import annotations

import hashlib
import ipaddress
import logging
import os
import platform
import re
import sys
from pathlib import Path

from limacfg.limayaml.schema import (
    AARCH64,
    QEMU,
    RISCV64,
    TCP,
    VZ,
    X8664,
    CopyToHost,
    File,
    PortForward,
)
from limacfg.osutil.machineid import machine_id
from limacfg.osutil.user import lima_user

logger = logging.getLogger(__name__)

# "none" keeps symlinks working
DEFAULT_9P_SECURITY_MODEL = "none"
DEFAULT_9P_PROTOCOL_VERSION = "9p2000.L"
DEFAULT_9P_MSIZE = "128KiB"
DEFAULT_9P_CACHE_FOR_RO = "fscache"
DEFAULT_9P_CACHE_FOR_RW = "mmap"

IPV4_LOOPBACK1 = ipaddress.IPv4Address("127.0.0.1")
IPV4_ZERO = ipaddress.IPv4Address("0.0.0.0")

NERDCTL_VERSION = "1.3.1"

_MACHINES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "x64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "riscv64": "riscv64",
}

_ACTION = re.compile(r"\{\{(.*?)\}\}", re.S)
_FIELD = re.compile(r"\.([A-Za-z_][A-Za-z0-9_]*)")
_NO_VALUE = "<no value>"


def host_arch() -> str:
    """The host architecture in Go naming ("amd64", "arm64", "riscv64", ...)."""
    machine = platform.machine().lower()
    return _MACHINES.get(machine, machine)


def new_arch(arch: str) -> str:
    """Translate a Go architecture name into the configuration's naming."""
    names = {"amd64": X8664, "arm64": AARCH64, "riscv64": RISCV64}
    if arch in names:
        return names[arch]
    logger.warning("Unknown arch: %s", arch)
    return arch


def new_vm_type(driver: str) -> str:
    """Normalise a driver name into a VM type."""
    if driver in (VZ, QEMU):
        return driver
    logger.warning("Unknown driver: %s", driver)
    return driver


def resolve_vm_type(value: str | None) -> str:
    """The VM type to use; unset or "default" means qemu."""
    if not value or value == "default":
        return QEMU
    return new_vm_type(value)


def resolve_arch(value: str | None) -> str:
    """The architecture to use; unset or "default" means the host's."""
    if not value or value == "default":
        return new_arch(host_arch())
    return value


def is_accel_os() -> bool:
    """Tell whether the host OS offers a hardware accelerator."""
    return sys.platform in ("darwin", "win32") or sys.platform.startswith(("linux", "netbsd"))


def has_host_cpu() -> bool:
    """Tell whether the accelerator supports the "host" CPU model."""
    return sys.platform == "darwin" or sys.platform.startswith("linux")


def has_max_cpu() -> bool:
    """Tell whether the accelerator supports the "max" CPU model."""
    return sys.platform != "win32"


def is_native_arch(arch: str) -> bool:
    """Tell whether ``arch`` is the host's own architecture."""
    native = {X8664: "amd64", AARCH64: "arm64", RISCV64: "riscv64"}
    return native.get(arch) == host_arch()


def mac_address(unique_id: str) -> str:
    """A locally administered MAC address stable for this machine and ``unique_id``."""
    digest = hashlib.sha256((machine_id() + unique_id).encode()).digest()
    # 0x52 marks the address as locally administered; 0x55 is the project's number
    return ":".join(f"{b:02x}" for b in bytes((0x52, 0x55, 0x55)) + digest[:3])


def _nerdctl_location(goarch: str) -> str:
    return (
        f"https://github.com/containerd/nerdctl/releases/download/v{NERDCTL_VERSION}"
        f"/nerdctl-full-{NERDCTL_VERSION}-linux-{goarch}.tar.gz"
    )


def default_containerd_archives() -> list[File]:
    """The nerdctl-full archives installed when none are configured (no riscv64)."""
    return [
        File(
            location=_nerdctl_location("amd64"),
            arch=X8664,
            digest="sha256:955f9a4853762b1258cd38c967e45b6061a181a668907059e56cc01c32f1cf21",
        ),
        File(
            location=_nerdctl_location("arm64"),
            arch=AARCH64,
            digest="sha256:38d9191421284115af796b13c2bc8c79c5a951c285c726fd73d4d650c6669457",
        ),
    ]


def _render(text: str, data: dict[str, str]) -> str:
    if "{{" in _ACTION.sub("", text):
        raise ValueError(f"unclosed action in template {text!r}")

    def substitute(match: re.Match[str]) -> str:
        body = match.group(1).strip()
        if body.startswith("/*") and body.endswith("*/"):
            return ""
        found = _FIELD.fullmatch(body)
        if found is None:
            raise ValueError(f"unsupported template action {match.group(0)!r}")
        return data.get(found.group(1), _NO_VALUE)

    return _ACTION.sub(substitute, text)


def expand_guest_template(text: str) -> str:
    """Fill {{.Home}}, {{.UID}} and {{.User}} with the guest user's values.

    Raises ValueError for malformed or unsupported template actions.
    """
    user = lima_user(False)
    return _render(
        text,
        {"Home": f"/home/{user.username}.linux", "UID": user.uid, "User": user.username},
    )


def expand_host_template(text: str, inst_dir: str) -> str:
    """Fill {{.Dir}}, {{.Home}}, {{.Name}}, {{.UID}} and {{.User}} with host values.

    The deprecated {{.Instance}} equals {{.Name}}, and {{.LimaHome}} is the
    directory holding the instance directory. Raises ValueError for malformed
    or unsupported template actions.
    """
    user = lima_user(False)
    name = os.path.basename(os.path.normpath(inst_dir))
    return _render(
        text,
        {
            "Dir": inst_dir,
            "Home": str(Path.home()),
            "Name": name,
            "UID": user.uid,
            "User": user.username,
            "Instance": name,
            "LimaHome": os.path.dirname(os.path.normpath(inst_dir)),
        },
    )


def fill_port_forward_defaults(rule: PortForward, inst_dir: str, socket_dir: str) -> None:
    """Complete a port forwarding rule in place.

    Relative host sockets are placed under ``inst_dir``/``socket_dir``.
    """
    if not rule.proto:
        rule.proto = TCP
    if rule.guest_ip is None:
        rule.guest_ip = IPV4_ZERO if rule.guest_ip_must_be_zero else IPV4_LOOPBACK1
    if rule.host_ip is None:
        rule.host_ip = IPV4_LOOPBACK1
    if rule.guest_port_range == (0, 0):
        if rule.guest_port == 0:
            rule.guest_port_range = (1, 65535)
        else:
            rule.guest_port_range = (rule.guest_port, rule.guest_port)
    if rule.host_port_range == (0, 0):
        if rule.host_port == 0:
            rule.host_port_range = rule.guest_port_range
        else:
            rule.host_port_range = (rule.host_port, rule.host_port)
    if rule.guest_socket:
        try:
            rule.guest_socket = expand_guest_template(rule.guest_socket)
        except ValueError as exc:
            logger.warning("Couldn't process guestSocket %r as a template: %s", rule.guest_socket, exc)
    if rule.host_socket:
        try:
            rule.host_socket = expand_host_template(rule.host_socket, inst_dir)
        except ValueError as exc:
            logger.warning("Couldn't process hostSocket %r as a template: %s", rule.host_socket, exc)
        if not os.path.isabs(rule.host_socket):
            rule.host_socket = os.path.join(inst_dir, socket_dir, rule.host_socket)


def fill_copy_to_host_defaults(rule: CopyToHost, inst_dir: str) -> None:
    """Expand the templates of a copy-to-host rule in place."""
    if rule.guest_file:
        try:
            rule.guest_file = expand_guest_template(rule.guest_file)
        except ValueError as exc:
            logger.warning("Couldn't process guest %r as a template: %s", rule.guest_file, exc)
    if rule.host_file:
        try:
            rule.host_file = expand_host_template(rule.host_file, inst_dir)
        except ValueError as exc:
            logger.warning("Couldn't process host %r as a template: %s", rule.host_file, exc)