"""The instance configuration document (lima.yaml) as data classes.

Optional settings are ``None`` until set. Each class reads its YAML form
with ``from_dict`` and writes it back with ``to_dict``. Empty values are left
out of the output wherever the document format allows.
"""

from __future__ import annotations

import ipaddress
from collections.abc import Callable
from dataclasses import dataclass, field, fields
from typing import Any, NoReturn, TypeVar

X8664 = "x86_64"
AARCH64 = "aarch64"
RISCV64 = "riscv64"

REVSSHFS = "reverse-sshfs"
NINEP = "9p"
VIRTIOFS = "virtiofs"

QEMU = "qemu"
VZ = "vz"

SFTP_DRIVER_BUILTIN = "builtin"
SFTP_DRIVER_OPENSSH_SFTP_SERVER = "openssh-sftp-server"

PROVISION_MODE_SYSTEM = "system"
PROVISION_MODE_USER = "user"
PROVISION_MODE_BOOT = "boot"

PROBE_MODE_READINESS = "readiness"

TCP = "tcp"

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address

Loader = Callable[[Any, str, bool], Any]


class SchemaError(ValueError):
    """A document does not have the shape of an instance configuration."""


def _fail(where: str, expected: str, value: Any) -> NoReturn:
    raise SchemaError(f"field `{where}` must be {expected}, got {value!r}")


def _join(where: str, key: Any) -> str:
    return f"{where}.{key}" if where else str(key)


def _load_str(value: Any, where: str, strict: bool) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    _fail(where, "a string", value)


def _load_bool(value: Any, where: str, strict: bool) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    _fail(where, "a boolean", value)


def _load_int(value: Any, where: str, strict: bool) -> int:
    if value is None:
        return 0
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    _fail(where, "an integer", value)


def _load_uint16(value: Any, where: str, strict: bool) -> int:
    number = _load_int(value, where, strict)
    if not 0 <= number <= 0xFFFF:
        _fail(where, "an integer between 0 and 65535", value)
    return number


def _load_ip(value: Any, where: str, strict: bool) -> IPAddress | None:
    if value is None or value == "":
        return None
    if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return value
    if not isinstance(value, str):
        _fail(where, "an IP address", value)
    try:
        return ipaddress.ip_address(value)
    except ValueError:
        _fail(where, "an IP address", value)


def _load_port_range(value: Any, where: str, strict: bool) -> tuple[int, int]:
    if value is None:
        return (0, 0)
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        _fail(where, "a list of two integers", value)
    low, high = value
    return (_load_int(low, f"{where}[0]", strict), _load_int(high, f"{where}[1]", strict))


def _optional(loader: Loader) -> Loader:
    def load(value: Any, where: str, strict: bool) -> Any:
        return None if value is None else loader(value, where, strict)

    return load


def _list_of(loader: Loader) -> Loader:
    def load(value: Any, where: str, strict: bool) -> list[Any]:
        if value is None:
            return []
        if not isinstance(value, list):
            _fail(where, "a list", value)
        return [loader(item, f"{where}[{i}]", strict) for i, item in enumerate(value)]

    return load


def _load_str_map(value: Any, where: str, strict: bool) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        _fail(where, "a mapping", value)
    return {str(k): _load_str(v, _join(where, k), strict) for k, v in value.items()}


def _nested(cls: type[_Node]) -> Loader:
    def load(value: Any, where: str, strict: bool) -> Any:
        return _load_object(cls, value, where, strict)

    return load


def _field(
    key: str,
    load: Loader,
    default: Any = None,
    *,
    factory: Callable[[], Any] | None = None,
    omitempty: bool = True,
) -> Any:
    metadata = {"key": key, "load": load, "omitempty": omitempty}
    if factory is not None:
        return field(default_factory=factory, metadata=metadata)
    return field(default=default, metadata=metadata)


def _is_zero(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, _Node):
        return all(_is_zero(getattr(value, f.name)) for f in fields(value))
    if isinstance(value, tuple):
        return all(_is_zero(item) for item in value)
    if isinstance(value, (str, int, float, list, dict)):
        return not value
    return False


def _dump(value: Any) -> Any:
    if isinstance(value, _Node):
        return value.to_dict()
    if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [_dump(item) for item in value]
    if isinstance(value, dict):
        return {k: _dump(v) for k, v in value.items()}
    return value


N = TypeVar("N", bound="_Node")


def _load_object(cls: type[N], data: Any, where: str, strict: bool) -> N:
    if data is None:
        return cls()
    if not isinstance(data, dict):
        _fail(where or "document", "a mapping", data)
    specs = {f.metadata["key"]: f for f in fields(cls) if "key" in f.metadata}
    values: dict[str, Any] = {}
    unknown: list[str] = []
    for key, raw in data.items():
        spec = specs.get(key)
        if spec is None:
            unknown.append(str(key))
            continue
        values[spec.name] = spec.metadata["load"](raw, _join(where, key), strict)
    if unknown and strict:
        place = f"`{where}`" if where else "the document"
        raise SchemaError(f"unknown field(s) in {place}: {', '.join(unknown)}")
    return cls(**values)


def _dump_object(node: _Node) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for f in fields(node):  # type: ignore[arg-type]
        metadata = f.metadata
        if "key" not in metadata:
            continue
        value = getattr(node, f.name)
        if metadata["omitempty"] and _is_zero(value):
            continue
        out[metadata["key"]] = _dump(value)
    return out


class _Node:
    @classmethod
    def from_dict(cls: type[N], data: Any, strict: bool = True) -> N:
        """Build from parsed YAML. Unknown keys raise SchemaError when ``strict``."""
        return _load_object(cls, data, "", strict)

    def to_dict(self) -> dict[str, Any]:
        """Return the YAML form, leaving out empty optional values."""
        return _dump_object(self)


@dataclass
class File(_Node):
    """A downloadable file for one architecture."""

    location: str = _field("location", _load_str, "", omitempty=False)
    arch: str = _field("arch", _load_str, "")
    digest: str = _field("digest", _load_str, "")


@dataclass
class Kernel(File):
    """A kernel image with its command line."""

    cmdline: str = _field("cmdline", _load_str, "")


@dataclass
class Image(File):
    """A disk image, optionally with its own kernel and initrd."""

    kernel: Kernel | None = _field("kernel", _optional(_nested(Kernel)))
    initrd: File | None = _field("initrd", _optional(_nested(File)))


@dataclass
class SSHFS(_Node):
    cache: bool | None = _field("cache", _optional(_load_bool))
    follow_symlinks: bool | None = _field("followSymlinks", _optional(_load_bool))
    sftp_driver: str | None = _field("sftpDriver", _optional(_load_str))


@dataclass
class NineP(_Node):
    security_model: str | None = _field("securityModel", _optional(_load_str))
    protocol_version: str | None = _field("protocolVersion", _optional(_load_str))
    msize: str | None = _field("msize", _optional(_load_str))
    cache: str | None = _field("cache", _optional(_load_str))


@dataclass
class Mount(_Node):
    """A host directory shared with the guest."""

    location: str = _field("location", _load_str, "", omitempty=False)
    mount_point: str = _field("mountPoint", _load_str, "")
    writable: bool | None = _field("writable", _optional(_load_bool))
    sshfs: SSHFS = _field("sshfs", _nested(SSHFS), factory=SSHFS)
    nine_p: NineP = _field("9p", _nested(NineP), factory=NineP)


@dataclass
class SSH(_Node):
    local_port: int | None = _field("localPort", _optional(_load_int))
    # also load ~/.ssh/*.pub besides the generated key
    load_dot_ssh_pub_keys: bool | None = _field("loadDotSSHPubKeys", _optional(_load_bool))
    forward_agent: bool | None = _field("forwardAgent", _optional(_load_bool))
    forward_x11: bool | None = _field("forwardX11", _optional(_load_bool))
    forward_x11_trusted: bool | None = _field("forwardX11Trusted", _optional(_load_bool))


@dataclass
class Firmware(_Node):
    # disables UEFI; ignored for aarch64
    legacy_bios: bool | None = _field("legacyBIOS", _optional(_load_bool))


@dataclass
class Audio(_Node):
    device: str | None = _field("device", _optional(_load_str))


@dataclass
class VNCOptions(_Node):
    display: str | None = _field("display", _optional(_load_str))


@dataclass
class Video(_Node):
    display: str | None = _field("display", _optional(_load_str))
    vnc: VNCOptions = _field("vnc", _nested(VNCOptions), factory=VNCOptions, omitempty=False)


@dataclass
class Provision(_Node):
    mode: str = _field("mode", _load_str, "", omitempty=False)
    script: str = _field("script", _load_str, "", omitempty=False)


@dataclass
class Containerd(_Node):
    system: bool | None = _field("system", _optional(_load_bool))
    user: bool | None = _field("user", _optional(_load_bool))
    archives: list[File] = _field("archives", _list_of(_nested(File)), factory=list)


@dataclass
class Probe(_Node):
    mode: str = _field("mode", _load_str, "", omitempty=False)
    description: str = _field("description", _load_str, "", omitempty=False)
    script: str = _field("script", _load_str, "", omitempty=False)
    hint: str = _field("hint", _load_str, "", omitempty=False)


@dataclass
class PortForward(_Node):
    """A rule forwarding guest ports or sockets to the host."""

    guest_ip_must_be_zero: bool = _field("guestIPMustBeZero", _load_bool, False)
    guest_ip: IPAddress | None = _field("guestIP", _load_ip)
    guest_port: int = _field("guestPort", _load_int, 0)
    guest_port_range: tuple[int, int] = _field("guestPortRange", _load_port_range, (0, 0))
    guest_socket: str = _field("guestSocket", _load_str, "")
    host_ip: IPAddress | None = _field("hostIP", _load_ip)
    host_port: int = _field("hostPort", _load_int, 0)
    host_port_range: tuple[int, int] = _field("hostPortRange", _load_port_range, (0, 0))
    host_socket: str = _field("hostSocket", _load_str, "")
    proto: str = _field("proto", _load_str, "")
    reverse: bool = _field("reverse", _load_bool, False)
    ignore: bool = _field("ignore", _load_bool, False)


@dataclass
class CopyToHost(_Node):
    guest_file: str = _field("guest", _load_str, "")
    host_file: str = _field("host", _load_str, "")


@dataclass
class Network(_Node):
    """A guest network interface; lima, socket and vnl are mutually exclusive."""

    lima: str = _field("lima", _load_str, "")
    socket: str = _field("socket", _load_str, "")
    vz_nat: bool | None = _field("vzNAT", _optional(_load_bool))
    # deprecated in favour of socket
    vnl_deprecated: str = _field("vnl", _load_str, "")
    switch_port_deprecated: int = _field("switchPort", _load_uint16, 0)
    mac_address: str = _field("macAddress", _load_str, "")
    interface: str = _field("interface", _load_str, "")


@dataclass
class HostResolver(_Node):
    enabled: bool | None = _field("enabled", _optional(_load_bool))
    ipv6: bool | None = _field("ipv6", _optional(_load_bool))
    hosts: dict[str, str] = _field("hosts", _load_str_map, factory=dict)


@dataclass
class CACertificates(_Node):
    remove_defaults: bool | None = _field("removeDefaults", _optional(_load_bool))
    files: list[str] = _field("files", _list_of(_load_str), factory=list)
    certs: list[str] = _field("certs", _list_of(_load_str), factory=list)


@dataclass
class Rosetta(_Node):
    enabled: bool | None = _field("enabled", _optional(_load_bool), omitempty=False)
    bin_fmt: bool | None = _field("binfmt", _optional(_load_bool), omitempty=False)


@dataclass
class LimaYAML(_Node):
    """A whole instance configuration."""

    vm_type: str | None = _field("vmType", _optional(_load_str))
    arch: str | None = _field("arch", _optional(_load_str))
    images: list[Image] = _field("images", _list_of(_nested(Image)), factory=list, omitempty=False)
    cpu_type: dict[str, str] = _field("cpuType", _load_str_map, factory=dict)
    cpus: int | None = _field("cpus", _optional(_load_int))
    memory: str | None = _field("memory", _optional(_load_str))
    disk: str | None = _field("disk", _optional(_load_str))
    additional_disks: list[str] = _field("additionalDisks", _list_of(_load_str), factory=list)
    mounts: list[Mount] = _field("mounts", _list_of(_nested(Mount)), factory=list)
    mount_type: str | None = _field("mountType", _optional(_load_str))
    ssh: SSH = _field("ssh", _nested(SSH), factory=SSH)
    firmware: Firmware = _field("firmware", _nested(Firmware), factory=Firmware)
    audio: Audio = _field("audio", _nested(Audio), factory=Audio)
    video: Video = _field("video", _nested(Video), factory=Video)
    provision: list[Provision] = _field("provision", _list_of(_nested(Provision)), factory=list)
    containerd: Containerd = _field("containerd", _nested(Containerd), factory=Containerd)
    probes: list[Probe] = _field("probes", _list_of(_nested(Probe)), factory=list)
    port_forwards: list[PortForward] = _field(
        "portForwards", _list_of(_nested(PortForward)), factory=list
    )
    copy_to_host: list[CopyToHost] = _field(
        "copyToHost", _list_of(_nested(CopyToHost)), factory=list
    )
    message: str = _field("message", _load_str, "")
    networks: list[Network] = _field("networks", _list_of(_nested(Network)), factory=list)
    env: dict[str, str] = _field("env", _load_str_map, factory=dict)
    dns: list[IPAddress] = _field("dns", _list_of(_load_ip), factory=list)
    host_resolver: HostResolver = _field("hostResolver", _nested(HostResolver), factory=HostResolver)
    propagate_proxy_env: bool | None = _field("propagateProxyEnv", _optional(_load_bool))
    ca_certificates: CACertificates = _field(
        "caCerts", _nested(CACertificates), factory=CACertificates
    )
    rosetta: Rosetta = _field("rosetta", _nested(Rosetta), factory=Rosetta)

    @classmethod
    def from_dict(cls, data: Any, strict: bool = True) -> LimaYAML:
        """Build a configuration from parsed YAML.

        Unknown keys raise SchemaError when ``strict``.
        """
        return _load_object(cls, data, "", strict)

    def to_dict(self) -> dict[str, Any]:
        """Return the YAML form, leaving out empty optional values."""
        return _dump_object(self)