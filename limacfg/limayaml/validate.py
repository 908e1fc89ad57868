"""Validation of a completed instance configuration."""

from __future__ import annotations

import logging
import os
import re
import stat
import sys

from limacfg.limayaml.schema import (
    AARCH64,
    NINEP,
    PROBE_MODE_READINESS,
    PROVISION_MODE_BOOT,
    PROVISION_MODE_SYSTEM,
    PROVISION_MODE_USER,
    REVSSHFS,
    RISCV64,
    TCP,
    VIRTIOFS,
    VZ,
    X8664,
    File,
    LimaYAML,
)
from limacfg.localpathutil import expand
from limacfg.networks.netmodel import NetworkError, NetworksConfig
from limacfg.osutil.user import lima_user

logger = logging.getLogger(__name__)

_ARCHES = (X8664, AARCH64, RISCV64)
_SYSTEM_PATHS = frozenset(
    ("/", "/bin", "/dev", "/etc", "/home", "/opt", "/sbin", "/tmp", "/usr", "/var")
)
_SLIRP_NIC_NAME = "eth0"
_UNIX_PATH_MAX = 108 if sys.platform.startswith("linux") or sys.platform == "win32" else 104

_SIZE = re.compile(r"^(\d+(?:\.\d+)*) ?([kKmMgGtTpP])?[iI]?[bB]?$")
_SIZE_UNITS = {"k": 1 << 10, "m": 1 << 20, "g": 1 << 30, "t": 1 << 40, "p": 1 << 50}

_DIGEST_HEX_LENGTH = {"sha256": 64, "sha384": 96, "sha512": 128}
_DIGEST_FORMAT = re.compile(r"[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[a-zA-Z0-9=_-]+")


class ValidationError(ValueError):
    """The configuration is not acceptable."""


def _ram_in_bytes(size: str) -> int:
    match = _SIZE.fullmatch(size)
    if match is None:
        raise ValueError(f"invalid size: '{size}'")
    try:
        number = float(match.group(1))
    except ValueError:
        raise ValueError(f"invalid size: '{size}'") from None
    unit = match.group(2)
    multiplier = _SIZE_UNITS[unit.lower()] if unit else 1
    return int(number * multiplier)


def _check_digest(digest: str, field_name: str) -> None:
    algorithm, sep, encoded = digest.partition(":")
    if not sep:
        raise ValidationError(
            f"field `{field_name}.digest` is invalid: {digest}: invalid checksum digest format"
        )
    if algorithm not in _DIGEST_HEX_LENGTH:
        raise ValidationError(
            f"field `{field_name}.digest` refers to an unavailable digest algorithm"
        )
    if not _DIGEST_FORMAT.fullmatch(digest):
        raise ValidationError(
            f"field `{field_name}.digest` is invalid: {digest}: invalid checksum digest format"
        )
    if not re.fullmatch(rf"[a-f0-9]{{{_DIGEST_HEX_LENGTH[algorithm]}}}", encoded):
        raise ValidationError(
            f"field `{field_name}.digest` is invalid: {digest}: invalid checksum digest length"
        )


def _validate_file(f: File, field_name: str) -> None:
    if "://" not in f.location:
        # the file does not need to be accessible yet
        try:
            expand(f.location)
        except ValueError as exc:
            raise ValidationError(
                f'field `{field_name}.location` refers to an invalid local file path: '
                f'"{f.location}": {exc}'
            ) from exc
    if f.arch not in _ARCHES:
        raise ValidationError(
            f'field `arch` must be "{X8664}", "{AARCH64}", or "{RISCV64}"; got "{f.arch}"'
        )
    if f.digest:
        _check_digest(f.digest, field_name)


def _parse_mac(text: str) -> bytes:
    for sep, width, counts in ((":", 2, (6, 8, 20)), ("-", 2, (6, 8, 20)), (".", 4, (3, 4, 10))):
        if sep not in text:
            continue
        parts = text.split(sep)
        if len(parts) in counts and all(
            len(part) == width and re.fullmatch(r"[0-9a-fA-F]+", part) for part in parts
        ):
            return bytes.fromhex("".join(parts))
        break
    raise ValueError(f"address {text}: invalid MAC address")


def validate_port(field: str, port: int) -> None:
    """Check that ``port`` is a usable TCP port other than 22."""
    if port < 0:
        raise ValidationError(f"field `{field}` must be > 0")
    if port == 0:
        raise ValidationError(f"field `{field}` must be set")
    if port == 22:
        raise ValidationError(f"field `{field}` must not be 22")
    if port > 65535:
        raise ValidationError(f"field `{field}` must be < 65536")


def _validate_images(y: LimaYAML) -> None:
    if not y.images:
        raise ValidationError("field `images` must be set")
    for i, image in enumerate(y.images):
        _validate_file(image, f"images[{i}]")
        if image.kernel is not None:
            _validate_file(image.kernel, f"images[{i}].kernel")
            if image.kernel.arch != y.arch:
                raise ValidationError(
                    f'images[{i}].kernel has unexpected architecture "{image.kernel.arch}", '
                    f'must be "{y.arch}"'
                )
        elif image.arch == RISCV64:
            raise ValidationError('riscv64 needs the kernel (e.g., "uboot.elf") to be specified')
        if image.initrd is not None:
            _validate_file(image.initrd, f"images[{i}].initrd")
            if image.kernel is None:
                raise ValidationError("initrd requires the kernel to be specified")
            if image.initrd.arch != y.arch:
                raise ValidationError(
                    f'images[{i}].initrd has unexpected architecture "{image.initrd.arch}", '
                    f'must be "{y.arch}"'
                )


def _validate_mounts(y: LimaYAML, reserved_home: str) -> None:
    for i, mount in enumerate(y.mounts):
        location = mount.location
        if not os.path.isabs(location) and not location.startswith("~"):
            raise ValidationError(
                f'field `mounts[{i}].location` must be an absolute path, got "{location}"'
            )
        try:
            loc = expand(location)
        except ValueError as exc:
            raise ValidationError(
                f'field `mounts[{i}].location` refers to an unexpandable path: "{location}": {exc}'
            ) from exc
        if loc in _SYSTEM_PATHS:
            raise ValidationError(
                f"field `mounts[{i}].location` must not be a system path such as /etc or /usr"
            )
        if loc == reserved_home:
            raise ValidationError(f"field `mounts[{i}].location` is internally reserved")
        try:
            info = os.stat(loc)
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise ValidationError(
                f'field `mounts[{i}].location` refers to an inaccessible path: "{location}": {exc}'
            ) from exc
        else:
            if not stat.S_ISDIR(info.st_mode):
                raise ValidationError(
                    f'field `mounts[{i}].location` refers to a non-directory path: "{location}"'
                )
        try:
            _ram_in_bytes(mount.nine_p.msize or "")
        except ValueError as exc:
            raise ValidationError(f"field `msize` has an invalid value: {exc}") from exc


def _validate_port_forwards(y: LimaYAML) -> None:
    for i, rule in enumerate(y.port_forwards):
        field = f"portForwards[{i}]"
        if rule.guest_ip_must_be_zero and (rule.guest_ip is None or str(rule.guest_ip) != "0.0.0.0"):
            raise ValidationError(
                f"field `{field}.guestIPMustBeZero` can only be true when field "
                f"`{field}.guestIP` is 0.0.0.0"
            )
        if rule.guest_port != 0:
            if rule.guest_socket:
                raise ValidationError(
                    f"field `{field}.guestPort` must be 0 when field `{field}.guestSocket` is set"
                )
            if rule.guest_port != rule.guest_port_range[0]:
                raise ValidationError(
                    f"field `{field}.guestPort` must match field `{field}.guestPortRange[0]`"
                )
            validate_port(f"{field}.guestPort", rule.guest_port)
        if rule.host_port != 0:
            if rule.host_socket:
                raise ValidationError(
                    f"field `{field}.hostPort` must be 0 when field `{field}.hostSocket` is set"
                )
            if rule.host_port != rule.host_port_range[0]:
                raise ValidationError(
                    f"field `{field}.hostPort` must match field `{field}.hostPortRange[0]`"
                )
            validate_port(f"{field}.hostPort", rule.host_port)
        for j in range(2):
            validate_port(f"{field}.guestPortRange[{j}]", rule.guest_port_range[j])
            validate_port(f"{field}.hostPortRange[{j}]", rule.host_port_range[j])
        guest_low, guest_high = rule.guest_port_range
        host_low, host_high = rule.host_port_range
        if guest_low > guest_high:
            raise ValidationError(
                f"field `{field}.guestPortRange[1]` must be greater than or equal to field "
                f"`{field}.guestPortRange[0]`"
            )
        if host_low > host_high:
            raise ValidationError(
                f"field `{field}.hostPortRange[1]` must be greater than or equal to field "
                f"`{field}.hostPortRange[0]`"
            )
        if guest_high - guest_low != host_high - host_low:
            raise ValidationError(
                f"field `{field}.hostPortRange` must specify the same number of ports as field "
                f"`{field}.guestPortRange`"
            )
        if rule.guest_socket:
            if not rule.guest_socket.startswith("/"):
                raise ValidationError(f"field `{field}.guestSocket` must be an absolute path")
            if not rule.host_socket and host_high - host_low > 0:
                raise ValidationError(
                    f"field `{field}.guestSocket` can only be mapped to a single port or socket. "
                    "not a range"
                )
        if rule.host_socket:
            if not os.path.isabs(rule.host_socket):
                raise ValidationError(
                    f'field `{field}.hostSocket` must be an absolute path, but is "{rule.host_socket}"'
                )
            if not rule.guest_socket and guest_high - guest_low > 0:
                raise ValidationError(
                    f"field `{field}.hostSocket` can only be mapped from a single port or socket. "
                    "not a range"
                )
        if len(rule.host_socket) >= _UNIX_PATH_MAX:
            raise ValidationError(
                f"field `{field}.hostSocket` must be less than UNIX_PATH_MAX={_UNIX_PATH_MAX} "
                f"characters, but is {len(rule.host_socket)}"
            )
        if rule.proto != TCP:
            raise ValidationError(f'field `{field}.proto` must be "{TCP}"')
        if rule.reverse and (not rule.guest_socket or not rule.host_socket):
            raise ValidationError(f"field `{field}.reverse` must be false")
        # overlapping ranges are allowed; the first matching rule wins


def _validate_copy_to_host(y: LimaYAML) -> None:
    for i, rule in enumerate(y.copy_to_host):
        field = f"CopyToHost[{i}]"
        if rule.guest_file and not rule.guest_file.startswith("/"):
            raise ValidationError(f"field `{field}.guest` must be an absolute path")
        if rule.host_file and not os.path.isabs(rule.host_file):
            raise ValidationError(
                f'field `{field}.host` must be an absolute path, but is "{rule.host_file}"'
            )


def _is_socket(path: str) -> bool:
    return stat.S_ISSOCK(os.stat(path).st_mode)


def _validate_vnl(nw, field: str, warn: bool) -> None:
    vnl = nw.vnl_deprecated
    if "://" not in vnl or vnl.startswith("vde://"):
        vde_switch = vnl[len("vde://"):] if vnl.startswith("vde://") else vnl
        try:
            info = os.stat(vde_switch)
        except OSError as exc:
            # negligible while the instance is stopped
            logger.debug('field `%s.vnl` "%s" failed stat: %s', field, vde_switch, exc)
            return
        if stat.S_ISDIR(info.st_mode):
            ctl_socket = os.path.join(vde_switch, "ctl")
            # the control socket only has to exist once the VM is started
            try:
                ctl_is_socket = _is_socket(ctl_socket)
            except OSError:
                ctl_is_socket = True
            if not ctl_is_socket:
                raise ValidationError(
                    f'field `{field}.vnl` file "{ctl_socket}" is not a UNIX socket'
                )
            if nw.switch_port_deprecated == 65535:
                raise ValidationError(
                    f"field `{field}.vnl` points to a non-PTP switch, so the port number "
                    "must not be 65535"
                )
        else:
            if not stat.S_ISSOCK(info.st_mode):
                raise ValidationError(
                    f'field `{field}.vnl` "{vde_switch}" is not a directory nor a UNIX socket'
                )
            if nw.switch_port_deprecated != 65535:
                raise ValidationError(
                    f'field `{field}.vnl` points to a PTP (switchless) socket "{vde_switch}", '
                    f"so the port number has to be 65535 (got {nw.switch_port_deprecated})"
                )
    elif not sys.platform.startswith("linux") and warn:
        logger.warning(
            "field `%s.vnl` is unlikely to work for %s (unless libvdeplug4 has been ported "
            "to %s and is installed)",
            field, sys.platform, sys.platform,
        )


def _validate_networks(y: LimaYAML, warn: bool, networks_config: NetworksConfig | None) -> None:
    interface_name: dict[str, int] = {}
    for i, nw in enumerate(y.networks):
        field = f"networks[{i}]"
        if nw.lima:
            if networks_config is None:
                raise ValidationError("networks configuration is not available")
            try:
                networks_config.check(nw.lima)
            except NetworkError:
                raise ValidationError(
                    f'field `{field}.lima` references network "{nw.lima}" which is not defined '
                    "in networks.yaml"
                ) from None
            try:
                usernet = networks_config.usernet(nw.lima)
            except NetworkError as exc:
                raise ValidationError(str(exc)) from exc
            if not usernet and sys.platform != "darwin":
                raise ValidationError(f"field `{field}.lima` is only supported on macOS right now")
            if nw.socket:
                raise ValidationError(
                    f"field `{field}.lima` and field `{field}.socket` are mutually exclusive"
                )
            if nw.vz_nat:
                raise ValidationError(
                    f"field `{field}.lima` and field `{field}.vzNAT` are mutually exclusive"
                )
            if nw.vnl_deprecated:
                raise ValidationError(
                    f"field `{field}.lima` and field `{field}.vnl` are mutually exclusive"
                )
            if nw.switch_port_deprecated != 0:
                raise ValidationError(
                    f"field `{field}.switchPort` cannot be used with field `{field}.lima`"
                )
        elif nw.socket:
            if nw.vz_nat:
                raise ValidationError(
                    f"field `{field}.socket` and field `{field}.vzNAT` are mutually exclusive"
                )
            if nw.vnl_deprecated:
                raise ValidationError(
                    f"field `{field}.socket` and field `{field}.vnl` are mutually exclusive"
                )
            if nw.switch_port_deprecated != 0:
                raise ValidationError(
                    f"field `{field}.switchPort` cannot be used with field `{field}.socket`"
                )
            try:
                is_socket = _is_socket(nw.socket)
            except FileNotFoundError:
                is_socket = True
            except OSError as exc:
                raise ValidationError(str(exc)) from exc
            if not is_socket:
                raise ValidationError(
                    f'field `{field}.socket` "{nw.socket}" points to a non-socket file'
                )
        elif nw.vz_nat:
            if y.vm_type != VZ:
                raise ValidationError(f'field `{field}.vzNAT` requires `vmType` to be "{VZ}"')
            if nw.vnl_deprecated:
                raise ValidationError(
                    f"field `{field}.vzNAT` and field `{field}.vnl` are mutually exclusive"
                )
            if nw.switch_port_deprecated != 0:
                raise ValidationError(
                    f"field `{field}.switchPort` cannot be used with field `{field}.vzNAT`"
                )
        else:
            if not nw.vnl_deprecated:
                raise ValidationError(
                    f"field `{field}.lima`, field `{field}.socket`, or field `{field}.vnl` "
                    "must be set"
                )
            _validate_vnl(nw, field, warn)
        if nw.mac_address:
            try:
                hw = _parse_mac(nw.mac_address)
            except ValueError as exc:
                raise ValidationError(f"field `vmnet.mac` invalid: {exc}") from exc
            if len(hw) != 6:
                raise ValidationError(
                    f"field `{field}.macAddress` must be a 48 bit (6 bytes) MAC address; "
                    f'actual length of "{nw.mac_address}" is {len(hw)} bytes'
                )
        interface = nw.interface
        size = len(interface.encode())
        if size >= 16:
            raise ValidationError(
                f'field `{field}.interface` must be less than 16 bytes, but is {size} bytes: '
                f'"{interface}"'
            )
        if any(ch in interface for ch in " \t\n/"):
            raise ValidationError(
                f"field `{field}.interface` must not contain whitespace or slashes"
            )
        if interface == _SLIRP_NIC_NAME:
            raise ValidationError(
                f'field `{field}.interface` must not be set to "{_SLIRP_NIC_NAME}" because '
                "it is reserved for slirp"
            )
        if interface in interface_name:
            raise ValidationError(
                f'field `{field}.interface` value "{interface}" has already been used by field '
                f"`networks[{interface_name[interface]}].interface`"
            )
        interface_name[interface] = i


def _warn_experimental(y: LimaYAML) -> None:
    if y.mount_type == NINEP:
        logger.warning("`mountType: 9p` is experimental")
    if y.vm_type == VZ:
        logger.warning("`vmType: vz` is experimental")
    if y.arch == RISCV64:
        logger.warning("`arch: riscv64` is experimental")
    if y.video.display is not None and "vnc" in y.video.display:
        logger.warning("`video.display: vnc` is experimental")


def validate(
    y: LimaYAML, warn: bool = False, networks_config: NetworksConfig | None = None
) -> None:
    """Check a configuration completed by ``fill_default``. Raises ValidationError.

    ``networks_config`` is consulted for networks that name a lima network.
    With ``warn``, experimental settings are logged as warnings.
    """
    if y.arch not in _ARCHES:
        raise ValidationError(
            f'field `arch` must be "{X8664}", "{AARCH64}", or "{RISCV64}"; got "{y.arch}"'
        )
    _validate_images(y)

    for arch in y.cpu_type:
        if arch not in _ARCHES:
            raise ValidationError(f'field `cpuType` uses unsupported arch "{arch}"')

    if not y.cpus:
        raise ValidationError("field `cpus` must be set")

    for value in (y.memory, y.disk):
        try:
            _ram_in_bytes(value or "")
        except ValueError as exc:
            raise ValidationError(f"field `memory` has an invalid value: {exc}") from exc

    try:
        user = lima_user(False)
    except (OSError, LookupError) as exc:
        raise ValidationError(f"internal error (not an error of YAML): {exc}") from exc
    # the home directory the guest user gets from cloud-init
    _validate_mounts(y, f"/home/{user.username}.linux")

    if y.ssh.local_port:
        validate_port("ssh.localPort", y.ssh.local_port)

    if y.mount_type not in (REVSSHFS, NINEP, VIRTIOFS):
        raise ValidationError(
            f'field `mountType` must be "{REVSSHFS}" or "{NINEP}" or "{VIRTIOFS}", '
            f'got "{y.mount_type}"'
        )

    # firmware.legacyBIOS is ignored for aarch64, but that is not an error

    for i, provision in enumerate(y.provision):
        if provision.mode not in (PROVISION_MODE_SYSTEM, PROVISION_MODE_USER, PROVISION_MODE_BOOT):
            raise ValidationError(
                f'field `provision[{i}].mode` must be either "{PROVISION_MODE_SYSTEM}", '
                f'"{PROVISION_MODE_USER}", or "{PROVISION_MODE_BOOT}"'
            )
    if (y.containerd.user or y.containerd.system) and not y.containerd.archives:
        raise ValidationError("field `containerd.archives` must be provided")
    for i, probe in enumerate(y.probes):
        if probe.mode != PROBE_MODE_READINESS:
            raise ValidationError(
                f'field `probe[{i}].mode` can only be "{PROBE_MODE_READINESS}"'
            )

    _validate_port_forwards(y)
    _validate_copy_to_host(y)

    if y.host_resolver.enabled and y.dns:
        raise ValidationError(
            "field `dns` must be empty when field `HostResolver.Enabled` is true"
        )

    _validate_networks(y, warn, networks_config)
    if warn:
        _warn_experimental(y)