"""Completion of an instance configuration from defaults and overrides."""

from __future__ import annotations

import copy
import logging
import os
import sys
from collections.abc import Iterable
from typing import Any, TypeVar

from limacfg.limayaml.rules import (
    DEFAULT_9P_CACHE_FOR_RO,
    DEFAULT_9P_CACHE_FOR_RW,
    DEFAULT_9P_MSIZE,
    DEFAULT_9P_PROTOCOL_VERSION,
    DEFAULT_9P_SECURITY_MODEL,
    default_containerd_archives,
    fill_copy_to_host_defaults,
    fill_port_forward_defaults,
    has_host_cpu,
    has_max_cpu,
    is_accel_os,
    is_native_arch,
    mac_address,
    resolve_arch,
    resolve_vm_type,
)
from limacfg.limayaml.schema import (
    AARCH64,
    PROBE_MODE_READINESS,
    PROVISION_MODE_SYSTEM,
    QEMU,
    REVSSHFS,
    RISCV64,
    X8664,
    LimaYAML,
    Mount,
    Network,
)
from limacfg.networks.netmodel import NetworkError, NetworksConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _first(*values: Any) -> Any:
    """The first value that is set, in priority order."""
    return next((value for value in values if value is not None), None)


def _unique(items: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(items))


def _merged_map(*maps: dict[str, str]) -> dict[str, str]:
    out: dict[str, str] = {}
    for mapping in maps:
        out.update(mapping)
    return out


def _cpu_types(y: LimaYAML, d: LimaYAML, o: LimaYAML) -> tuple[dict[str, str], bool]:
    cpu_type = {AARCH64: "cortex-a72", X8664: "qemu64", RISCV64: "rv64"}
    for arch in cpu_type:
        if is_native_arch(arch) and is_accel_os():
            if has_host_cpu():
                cpu_type[arch] = "host"
            elif has_max_cpu():
                cpu_type[arch] = "max"
        if arch == X8664 and sys.platform == "darwin" and cpu_type[arch] in ("host", "max"):
            # pdpe1gb breaks guests on Intel Macs
            cpu_type[arch] += ",-pdpe1gb"
    overridden = False
    for source in (d.cpu_type, y.cpu_type, o.cpu_type):
        for arch, value in source.items():
            if value:
                overridden = True
                cpu_type[arch] = value
    return cpu_type, overridden


def _merge_networks(entries: Iterable[Network]) -> list[Network]:
    merged: list[Network] = []
    by_interface: dict[str, int] = {}
    for nw in entries:
        index = by_interface.get(nw.interface)
        if index is None:
            # unnamed network definitions are never combined
            if nw.interface:
                by_interface[nw.interface] = len(merged)
            merged.append(nw)
            continue
        target = merged[index]
        if nw.vnl_deprecated:
            target.vnl_deprecated = nw.vnl_deprecated
            target.switch_port_deprecated = nw.switch_port_deprecated
            target.socket = ""
            target.lima = ""
        if nw.socket:
            if nw.vnl_deprecated:
                logger.error(
                    'Network "%s" has both vnl="%s" and socket="%s" fields; ignoring vnl',
                    nw.interface, nw.vnl_deprecated, nw.socket,
                )
            target.socket = nw.socket
            target.vnl_deprecated = ""
            target.switch_port_deprecated = 0
            target.lima = ""
        if nw.lima:
            if nw.vnl_deprecated:
                logger.error(
                    'Network "%s" has both vnl="%s" and lima="%s" fields; ignoring vnl',
                    nw.interface, nw.vnl_deprecated, nw.lima,
                )
            if nw.socket:
                logger.error(
                    'Network "%s" has both socket="%s" and lima="%s" fields; ignoring socket',
                    nw.interface, nw.socket, nw.lima,
                )
            target.lima = nw.lima
            target.socket = ""
            target.vnl_deprecated = ""
            target.switch_port_deprecated = 0
        if nw.mac_address:
            target.mac_address = nw.mac_address
    return merged


def _merge_mounts(entries: Iterable[Mount]) -> list[Mount]:
    # exact location matches only; no case folding or symlink resolution
    merged: list[Mount] = []
    by_location: dict[str, int] = {}
    for mount in entries:
        index = by_location.get(mount.location)
        if index is None:
            by_location[mount.location] = len(merged)
            merged.append(mount)
            continue
        target = merged[index]
        for part, names in (
            ("sshfs", ("cache", "follow_symlinks", "sftp_driver")),
            ("nine_p", ("security_model", "protocol_version", "msize", "cache")),
        ):
            source, dest = getattr(mount, part), getattr(target, part)
            for name in names:
                value = getattr(source, name)
                if value is not None:
                    setattr(dest, name, value)
        if mount.writable is not None:
            target.writable = mount.writable
        if mount.mount_point:
            target.mount_point = mount.mount_point
    return merged


def _fill_mount(mount: Mount) -> None:
    sshfs, nine_p = mount.sshfs, mount.nine_p
    if sshfs.cache is None:
        sshfs.cache = True
    if sshfs.follow_symlinks is None:
        sshfs.follow_symlinks = False
    if sshfs.sftp_driver is None:
        sshfs.sftp_driver = ""
    if nine_p.security_model is None:
        nine_p.security_model = DEFAULT_9P_SECURITY_MODEL
    if nine_p.protocol_version is None:
        nine_p.protocol_version = DEFAULT_9P_PROTOCOL_VERSION
    if nine_p.msize is None:
        nine_p.msize = DEFAULT_9P_MSIZE
    if mount.writable is None:
        mount.writable = False
    if nine_p.cache is None:
        nine_p.cache = DEFAULT_9P_CACHE_FOR_RW if mount.writable else DEFAULT_9P_CACHE_FOR_RO
    if not mount.mount_point:
        mount.mount_point = mount.location


def fill_default(
    y: LimaYAML, d: LimaYAML, o: LimaYAML, file_path: str, socket_dir: str
) -> None:
    """Complete ``y`` in place from the defaults ``d`` and the overrides ``o``.

    Scalars take the first value set in ``o``, ``y``, ``d``, then the built-in
    default. Maps are merged with ``o`` over ``y`` over ``d``. Lists are joined
    in ``o``, ``y``, ``d`` order, except that mounts and networks are joined in
    ``d``, ``y``, ``o`` order and merged on matching location or interface, DNS
    is taken whole from the highest priority that sets it, and CA files and
    certificates are joined uniquely in ``d``, ``y``, ``o`` order. ``d`` and
    ``o`` are left unchanged.
    """
    d = copy.deepcopy(d)
    o = copy.deepcopy(o)

    y.vm_type = resolve_vm_type(_first(o.vm_type, y.vm_type, d.vm_type))
    y.arch = resolve_arch(_first(o.arch, y.arch, d.arch))

    y.images = [*o.images, *y.images, *d.images]
    for image in y.images:
        if not image.arch:
            image.arch = y.arch
        if image.kernel is not None and not image.kernel.arch:
            image.kernel.arch = image.arch
        if image.initrd is not None and not image.initrd.arch:
            image.initrd.arch = image.arch

    cpu_type, overridden = _cpu_types(y, d, o)
    if y.vm_type == QEMU or overridden:
        y.cpu_type = cpu_type

    y.cpus = _first(o.cpus, y.cpus, d.cpus) or 4
    y.memory = _first(o.memory, y.memory, d.memory) or "4GiB"
    y.disk = _first(o.disk, y.disk, d.disk) or "100GiB"

    y.additional_disks = [*o.additional_disks, *y.additional_disks, *d.additional_disks]

    y.audio.device = _first(o.audio.device, y.audio.device, d.audio.device, "")

    y.video.display = _first(o.video.display, y.video.display, d.video.display)
    if not y.video.display and y.vm_type == QEMU:
        y.video.display = "none"
    y.video.vnc.display = _first(o.video.vnc.display, y.video.vnc.display, d.video.vnc.display)
    if not y.video.vnc.display and y.vm_type == QEMU:
        y.video.vnc.display = "127.0.0.1:0,to=9"

    y.firmware.legacy_bios = _first(
        o.firmware.legacy_bios, y.firmware.legacy_bios, d.firmware.legacy_bios, False
    )

    # the real SSH port is chosen later, by the host agent
    y.ssh.local_port = _first(o.ssh.local_port, y.ssh.local_port, d.ssh.local_port, 0)
    y.ssh.load_dot_ssh_pub_keys = _first(
        o.ssh.load_dot_ssh_pub_keys, y.ssh.load_dot_ssh_pub_keys, d.ssh.load_dot_ssh_pub_keys, True
    )
    y.ssh.forward_agent = _first(
        o.ssh.forward_agent, y.ssh.forward_agent, d.ssh.forward_agent, False
    )
    y.ssh.forward_x11 = _first(o.ssh.forward_x11, y.ssh.forward_x11, d.ssh.forward_x11, False)
    y.ssh.forward_x11_trusted = _first(
        o.ssh.forward_x11_trusted, y.ssh.forward_x11_trusted, d.ssh.forward_x11_trusted, False
    )

    y.host_resolver.hosts = _merged_map(
        d.host_resolver.hosts, y.host_resolver.hosts, o.host_resolver.hosts
    )

    y.provision = [*o.provision, *y.provision, *d.provision]
    for provision in y.provision:
        if not provision.mode:
            provision.mode = PROVISION_MODE_SYSTEM

    y.containerd.system = _first(o.containerd.system, y.containerd.system, d.containerd.system, False)
    y.containerd.user = _first(o.containerd.user, y.containerd.user, d.containerd.user, True)
    y.containerd.archives = [
        *o.containerd.archives, *y.containerd.archives, *d.containerd.archives
    ] or default_containerd_archives()
    for archive in y.containerd.archives:
        if not archive.arch:
            archive.arch = y.arch

    y.probes = [*o.probes, *y.probes, *d.probes]
    for number, probe in enumerate(y.probes, start=1):
        if not probe.mode:
            probe.mode = PROBE_MODE_READINESS
        if not probe.description:
            probe.description = f"user probe {number}/{len(y.probes)}"

    inst_dir = os.path.dirname(file_path)
    y.port_forwards = [*o.port_forwards, *y.port_forwards, *d.port_forwards]
    for rule in y.port_forwards:
        fill_port_forward_defaults(rule, inst_dir, socket_dir)

    y.copy_to_host = [*o.copy_to_host, *y.copy_to_host, *d.copy_to_host]
    for copy_rule in y.copy_to_host:
        fill_copy_to_host_defaults(copy_rule, inst_dir)

    y.host_resolver.enabled = _first(
        o.host_resolver.enabled, y.host_resolver.enabled, d.host_resolver.enabled, True
    )
    y.host_resolver.ipv6 = _first(
        o.host_resolver.ipv6, y.host_resolver.ipv6, d.host_resolver.ipv6, False
    )
    y.propagate_proxy_env = _first(
        o.propagate_proxy_env, y.propagate_proxy_env, d.propagate_proxy_env, True
    )

    y.networks = _merge_networks([*d.networks, *y.networks, *o.networks])
    for index, nw in enumerate(y.networks):
        if not nw.mac_address:
            # every interface of every instance gets its own address
            nw.mac_address = mac_address(f"{file_path}#{index}")
        if not nw.interface:
            nw.interface = f"lima{index}"

    y.mounts = _merge_mounts([*d.mounts, *y.mounts, *o.mounts])
    for mount in y.mounts:
        _fill_mount(mount)

    y.mount_type = _first(o.mount_type, y.mount_type, d.mount_type) or REVSSHFS

    # DNS lists are not combined
    if not y.dns:
        y.dns = list(d.dns)
    if o.dns:
        y.dns = list(o.dns)

    y.env = _merged_map(d.env, y.env, o.env)

    ca = y.ca_certificates
    ca.remove_defaults = _first(
        o.ca_certificates.remove_defaults, ca.remove_defaults, d.ca_certificates.remove_defaults, False
    )
    ca.files = _unique([*d.ca_certificates.files, *ca.files, *o.ca_certificates.files])
    ca.certs = _unique([*d.ca_certificates.certs, *ca.certs, *o.ca_certificates.certs])

    y.rosetta.enabled = _first(o.rosetta.enabled, y.rosetta.enabled, d.rosetta.enabled, False)
    y.rosetta.bin_fmt = _first(o.rosetta.bin_fmt, y.rosetta.bin_fmt, d.rosetta.bin_fmt, False)


def first_usernet_index(y: LimaYAML, networks_config: NetworksConfig) -> int:
    """Index of the first user-mode network of ``y``, or -1 if there is none."""
    for index, nw in enumerate(y.networks):
        try:
            if networks_config.usernet(nw.lima):
                return index
        except NetworkError:
            continue
    return -1