"""The networks configuration and the daemon commands derived from it."""

from __future__ import annotations

import ipaddress
import os
import shutil
from dataclasses import dataclass, field, replace
from typing import Any

from limacfg.osutil.user import User, lookup_group, lookup_user

SLIRP_NIC_NAME = "eth0"
# Each QEMU instance has its own independent slirp network.
SLIRP_NETWORK = "192.168.5.0/24"
SLIRP_GATEWAY = "192.168.5.2"
SLIRP_DNS = "192.168.5.3"
SLIRP_IP_ADDRESS = "192.168.5.15"

MODE_USER_V2 = "user-v2"
MODE_HOST = "host"
MODE_SHARED = "shared"
MODE_BRIDGED = "bridged"

VDE_SWITCH = "vde_switch"  # deprecated
VDE_VMNET = "vde_vmnet"  # deprecated
SOCKET_VMNET = "socket_vmnet"

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


class NetworkError(Exception):
    """A networks configuration is incomplete or refers to something unknown."""


@dataclass
class Paths:
    """Locations of network daemons and their runtime files."""

    socket_vmnet: str = ""
    vde_switch: str = ""
    vde_vmnet: str = ""
    var_run: str = ""
    sudoers: str = ""


@dataclass
class Network:
    """One named network definition."""

    mode: str = ""
    interface: str = ""
    gateway: IPAddress | None = None
    dhcp_end: IPAddress | None = None
    netmask: IPAddress | None = None


_PATH_KEYS = {
    "socketVMNet": "socket_vmnet",
    "vdeSwitch": "vde_switch",
    "vdeVMNet": "vde_vmnet",
    "varRun": "var_run",
    "sudoers": "sudoers",
}
_NETWORK_KEYS = {
    "mode": "mode",
    "interface": "interface",
    "gateway": "gateway",
    "dhcpEnd": "dhcp_end",
    "netmask": "netmask",
}
_IP_FIELDS = {"gateway", "dhcp_end", "netmask"}


def _mapping(value: Any, where: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise NetworkError(f"{where} must be a mapping")
    return value


def _check_keys(data: dict[str, Any], allowed: set[str] | dict[str, str], where: str) -> None:
    unknown = sorted(set(data) - set(allowed))
    if unknown:
        raise NetworkError(f"unknown field(s) in {where}: {', '.join(map(str, unknown))}")


def _ip(value: Any, where: str) -> IPAddress | None:
    if value is None or value == "":
        return None
    try:
        return ipaddress.ip_address(str(value))
    except ValueError as exc:
        raise NetworkError(f"{where} is not a valid IP address: {value!r}") from exc


def _text(value: Any, where: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise NetworkError(f"{where} must be a string")
    return value


def _fmt_ip(ip: IPAddress | None) -> str:
    return "<nil>" if ip is None else str(ip)


@dataclass
class NetworksConfig:
    """The contents of networks.yaml."""

    paths: Paths = field(default_factory=Paths)
    group: str = ""
    networks: dict[str, Network] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> NetworksConfig:
        """Build a config from parsed YAML, rejecting unknown fields."""
        data = _mapping(data, "networks config")
        _check_keys(data, {"paths", "group", "networks"}, "networks config")
        raw_paths = _mapping(data.get("paths"), "paths")
        _check_keys(raw_paths, _PATH_KEYS, "paths")
        paths = Paths(**{_PATH_KEYS[k]: _text(v, f"paths.{k}") for k, v in raw_paths.items()})
        networks: dict[str, Network] = {}
        for name, raw in _mapping(data.get("networks"), "networks").items():
            raw = _mapping(raw, f"networks.{name}")
            _check_keys(raw, _NETWORK_KEYS, f"networks.{name}")
            values: dict[str, Any] = {}
            for key, value in raw.items():
                attr = _NETWORK_KEYS[key]
                where = f"networks.{name}.{key}"
                values[attr] = _ip(value, where) if attr in _IP_FIELDS else _text(value, where)
            networks[str(name)] = Network(**values)
        return cls(paths=paths, group=_text(data.get("group"), "group"), networks=networks)

    def check(self, name: str) -> None:
        """Raise NetworkError unless ``name`` is a defined network."""
        if name not in self.networks:
            raise NetworkError(f'network "{name}" is not defined')

    def usernet(self, name: str) -> bool:
        """Tell whether the named network is a user-mode (user-v2) network."""
        self.check(name)
        return self.networks[name].mode == MODE_USER_V2

    def daemon_path(self, daemon: str) -> str:
        """Return the configured path of a daemon."""
        paths = {
            VDE_SWITCH: self.paths.vde_switch,
            VDE_VMNET: self.paths.vde_vmnet,
            SOCKET_VMNET: self.paths.socket_vmnet,
        }
        if daemon not in paths:
            raise NetworkError(f'unknown daemon type "{daemon}"')
        return paths[daemon]

    def is_daemon_installed(self, daemon: str) -> bool:
        """Tell whether the daemon's executable exists."""
        path = self.daemon_path(daemon)
        if not path:
            return False
        if "/" in path or os.sep in path:
            if not os.path.exists(path):
                return False
            if os.path.isdir(path) or not os.access(path, os.X_OK):
                raise NetworkError(f'exec: "{path}": permission denied')
            return True
        if shutil.which(path) is None:
            raise NetworkError(f'exec: "{path}": executable file not found in $PATH')
        return True

    def _installed(self, daemon: str) -> bool:
        try:
            return self.is_daemon_installed(daemon)
        except NetworkError:
            return False

    def sock(self, name: str) -> str:
        """Path of the socket_vmnet socket of a network."""
        return os.path.join(self.paths.var_run, f"socket_vmnet.{name}")

    def vde_sock(self, name: str) -> str:
        """Path of the (deprecated) vde socket of a network."""
        return os.path.join(self.paths.var_run, f"{name}.ctl")

    def pid_file(self, name: str, daemon: str) -> str:
        trimmed = daemon.removeprefix("vde_")
        return os.path.join(self.paths.var_run, f"{name}_{trimmed}.pid")

    def log_file(self, name: str, daemon: str, stream: str, networks_dir: str) -> str:
        trimmed = daemon.removeprefix("vde_")
        return os.path.join(networks_dir, f"{name}_{trimmed}.{stream}.log")

    def user(self, daemon: str) -> User:
        """The account a daemon runs as."""
        if not self._installed(daemon):
            try:
                path = self.daemon_path(daemon)
            except NetworkError:
                path = ""
            raise NetworkError(f'daemon "{daemon}" (path="{path}") is not available')
        if daemon == VDE_SWITCH:
            account = lookup_user("daemon")
            group = lookup_group(self.group)
            return replace(account, group=group.name, gid=group.gid)
        if daemon in (VDE_VMNET, SOCKET_VMNET):
            return lookup_user("root")
        raise NetworkError(f'daemon "{daemon}" not defined')

    def mkdir_cmd(self) -> str:
        return f"/bin/mkdir -m 775 -p {self.paths.var_run}"

    def _vmnet_options(self, nw: Network) -> str:
        if nw.mode == MODE_BRIDGED:
            return f" --vmnet-interface={nw.interface}"
        if nw.mode in (MODE_HOST, MODE_SHARED):
            return (
                f" --vmnet-gateway={_fmt_ip(nw.gateway)}"
                f" --vmnet-dhcp-end={_fmt_ip(nw.dhcp_end)}"
                f" --vmnet-mask={_fmt_ip(nw.netmask)}"
            )
        return ""

    def start_cmd(self, name: str, daemon: str) -> str:
        """Command line that starts a daemon for a network.

        Arguments are unquoted, as sudoers entries cannot contain quotes.
        """
        if not self._installed(daemon):
            raise NetworkError(f'daemon "{daemon}" is not available')
        nw = self.networks.get(name, Network())
        if daemon == VDE_SWITCH:
            if not self.paths.vde_switch:
                raise NetworkError("paths.vdeSwitch is empty")
            return (
                f"{self.paths.vde_switch} --pidfile={self.pid_file(name, VDE_SWITCH)}"
                f" --sock={self.vde_sock(name)} --group={self.group} --dirmode=0770 --nostdin"
            )
        if daemon == VDE_VMNET:
            if not self.paths.vde_vmnet:
                raise NetworkError("paths.vdeVMNet is empty")
            return (
                f"{self.paths.vde_vmnet} --pidfile={self.pid_file(name, VDE_VMNET)}"
                f" --vde-group={self.group} --vmnet-mode={nw.mode}"
                f"{self._vmnet_options(nw)} {self.vde_sock(name)}"
            )
        if daemon == SOCKET_VMNET:
            if not self.paths.socket_vmnet:
                raise NetworkError("paths.socketVMNet is empty")
            return (
                f"{self.paths.socket_vmnet} --pidfile={self.pid_file(name, SOCKET_VMNET)}"
                f" --socket-group={self.group} --vmnet-mode={nw.mode}"
                f"{self._vmnet_options(nw)} {self.sock(name)}"
            )
        return ""

    def stop_cmd(self, name: str, daemon: str) -> str:
        return f"/usr/bin/pkill -F {self.pid_file(name, daemon)}"