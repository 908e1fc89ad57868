import copy
import ipaddress
import sys
from dataclasses import replace
from pathlib import Path

import pytest

from limacfg.limayaml.defaults import fill_default, first_usernet_index
from limacfg.limayaml.rules import (
    IPV4_LOOPBACK1,
    default_containerd_archives,
    has_host_cpu,
    has_max_cpu,
    is_accel_os,
    is_native_arch,
    mac_address,
    resolve_arch,
)
from limacfg.limayaml.schema import (
    AARCH64,
    NINEP,
    REVSSHFS,
    RISCV64,
    TCP,
    X8664,
    SSH,
    SSHFS,
    Audio,
    CACertificates,
    Containerd,
    CopyToHost,
    File,
    Firmware,
    HostResolver,
    Image,
    Kernel,
    LimaYAML,
    Mount,
    Network,
    NineP,
    PortForward,
    Probe,
    Provision,
    Rosetta,
    Video,
    VNCOptions,
)
from limacfg.networks.netmodel import Network as NetDef
from limacfg.networks.netmodel import NetworksConfig
from limacfg.osutil.user import lima_user

CERT = "-----BEGIN CERTIFICATE-----\nYOUR-ORGS-TRUSTED-CA-CERT\n-----END CERTIFICATE-----\n"
SOCK_DIR = "sock"


def ip(text):
    return ipaddress.ip_address(text)


@pytest.fixture
def paths(tmp_path):
    inst_dir = tmp_path / "instance"
    return str(inst_dir), str(inst_dir / "lima.yaml")


def _builtin_cpu(arch):
    cpu = {AARCH64: "cortex-a72", X8664: "qemu64", RISCV64: "rv64"}
    if is_accel_os() and arch in cpu and is_native_arch(arch):
        if has_host_cpu():
            cpu[arch] = "host"
        elif has_max_cpu():
            cpu[arch] = "max"
        if arch == X8664 and sys.platform == "darwin" and cpu[arch] in ("host", "max"):
            cpu[arch] += ",-pdpe1gb"
    return cpu


def _default_pf():
    return PortForward(
        guest_ip=IPV4_LOOPBACK1,
        guest_port_range=(1, 65535),
        host_ip=IPV4_LOOPBACK1,
        host_port_range=(1, 65535),
        proto=TCP,
    )


def _user_config():
    return LimaYAML(
        host_resolver=HostResolver(hosts={"MY.Host": "host.lima.internal"}),
        mounts=[Mount(location="/tmp")],
        mount_type=NINEP,
        provision=[Provision(script="#!/bin/true")],
        probes=[Probe(script="#!/bin/false")],
        networks=[Network(lima="shared")],
        dns=[ip("1.0.1.0")],
        port_forwards=[
            PortForward(),
            PortForward(guest_port=80),
            PortForward(guest_port=8080, host_port=8888),
            PortForward(
                guest_socket="{{.Home}} | {{.UID}} | {{.User}}",
                host_socket="{{.Home}} | {{.Dir}} | {{.Name}} | {{.UID}} | {{.User}}",
            ),
        ],
        copy_to_host=[
            CopyToHost(
                guest_file="{{.Home}} | {{.UID}} | {{.User}}",
                host_file="{{.Home}} | {{.Dir}} | {{.Name}} | {{.UID}} | {{.User}}",
            )
        ],
        env={"ONE": "Eins"},
        ca_certificates=CACertificates(files=["ca.crt"], certs=[CERT]),
    )


def _user_defaults():
    return LimaYAML(
        vm_type="vz",
        arch="unknown",
        cpu_type={AARCH64: "arm64", X8664: "amd64", RISCV64: "riscv64"},
        cpus=7,
        memory="5GiB",
        disk="105GiB",
        additional_disks=["data"],
        containerd=Containerd(system=True, user=False, archives=[File(location="/tmp/nerdctl.tgz")]),
        ssh=SSH(
            local_port=888,
            load_dot_ssh_pub_keys=False,
            forward_agent=True,
            forward_x11=False,
            forward_x11_trusted=False,
        ),
        firmware=Firmware(legacy_bios=True),
        audio=Audio(device="coreaudio"),
        video=Video(display="cocoa", vnc=VNCOptions(display="none")),
        host_resolver=HostResolver(enabled=False, ipv6=True, hosts={"default": "localhost"}),
        propagate_proxy_env=False,
        mounts=[Mount(location="/var/log", writable=False)],
        provision=[Provision(script="#!/bin/true", mode="user")],
        probes=[Probe(script="#!/bin/false", mode="readiness", description="User Probe")],
        networks=[
            Network(
                vnl_deprecated="/tmp/vde.ctl",
                switch_port_deprecated=65535,
                mac_address="11:22:33:44:55:66",
                interface="def0",
            )
        ],
        dns=[ip("1.1.1.1")],
        port_forwards=[
            PortForward(
                guest_ip=IPV4_LOOPBACK1,
                guest_port=80,
                guest_port_range=(80, 80),
                host_ip=IPV4_LOOPBACK1,
                host_port=80,
                host_port_range=(80, 80),
                proto=TCP,
            )
        ],
        copy_to_host=[CopyToHost()],
        env={"ONE": "one", "TWO": "two"},
        ca_certificates=CACertificates(remove_defaults=True, certs=[CERT]),
        rosetta=Rosetta(enabled=True, bin_fmt=True),
    )


def _var_log_mount_defaulted():
    return Mount(
        location="/var/log",
        mount_point="/var/log",
        writable=False,
        sshfs=SSHFS(cache=True, follow_symlinks=False, sftp_driver=""),
        nine_p=NineP(security_model="none", protocol_version="9p2000.L", msize="128KiB", cache="fscache"),
    )


def _filled(file_path):
    y = _user_config()
    fill_default(y, LimaYAML(), LimaYAML(), file_path, SOCK_DIR)
    return y


def test_builtin_defaults(paths):
    inst_dir, file_path = paths
    arch = resolve_arch(None)
    user = lima_user(False)
    guest_home = f"/home/{user.username}.linux"
    host_home = str(Path.home())

    y = _filled(file_path)

    pfs = [_default_pf() for _ in range(4)]
    pfs[1] = replace(pfs[1], guest_port=80, guest_port_range=(80, 80), host_port_range=(80, 80))
    pfs[2] = replace(
        pfs[2], guest_port=8080, guest_port_range=(8080, 8080), host_port=8888, host_port_range=(8888, 8888)
    )
    pfs[3] = replace(
        pfs[3],
        guest_socket=f"{guest_home} | {user.uid} | {user.username}",
        host_socket=f"{host_home} | {inst_dir} | instance | {user.uid} | {user.username}",
    )
    expect = LimaYAML(
        vm_type="qemu",
        arch=arch,
        cpu_type=_builtin_cpu(arch),
        cpus=4,
        memory="4GiB",
        disk="100GiB",
        containerd=Containerd(system=False, user=True, archives=default_containerd_archives()),
        ssh=SSH(
            local_port=0,
            load_dot_ssh_pub_keys=True,
            forward_agent=False,
            forward_x11=False,
            forward_x11_trusted=False,
        ),
        firmware=Firmware(legacy_bios=False),
        audio=Audio(device=""),
        video=Video(display="none", vnc=VNCOptions(display="127.0.0.1:0,to=9")),
        host_resolver=HostResolver(enabled=True, ipv6=False, hosts={"MY.Host": "host.lima.internal"}),
        propagate_proxy_env=True,
        mounts=[
            Mount(
                location="/tmp",
                mount_point="/tmp",
                writable=False,
                sshfs=SSHFS(cache=True, follow_symlinks=False, sftp_driver=""),
                nine_p=NineP(
                    security_model="none", protocol_version="9p2000.L", msize="128KiB", cache="fscache"
                ),
            )
        ],
        mount_type=NINEP,
        provision=[Provision(mode="system", script="#!/bin/true")],
        probes=[Probe(mode="readiness", description="user probe 1/1", script="#!/bin/false")],
        networks=[
            Network(lima="shared", mac_address=mac_address(f"{file_path}#0"), interface="lima0")
        ],
        dns=[ip("1.0.1.0")],
        port_forwards=pfs,
        copy_to_host=[
            CopyToHost(
                guest_file=f"{guest_home} | {user.uid} | {user.username}",
                host_file=f"{host_home} | {inst_dir} | instance | {user.uid} | {user.username}",
            )
        ],
        env={"ONE": "Eins"},
        ca_certificates=CACertificates(remove_defaults=False, files=["ca.crt"], certs=[CERT]),
        rosetta=Rosetta(enabled=False, bin_fmt=False),
    )
    assert y == expect


def test_user_defaults_override_builtin(paths):
    _, file_path = paths
    d = _user_defaults()
    snapshot = copy.deepcopy(d)

    expect = copy.deepcopy(d)
    expect.containerd.archives[0].arch = "unknown"
    expect.mounts = [_var_log_mount_defaulted()]
    expect.mount_type = REVSSHFS
    expect.ca_certificates = CACertificates(remove_defaults=True, certs=[CERT])

    y = LimaYAML()
    fill_default(y, d, LimaYAML(), file_path, SOCK_DIR)
    assert y == expect
    assert d == snapshot


def test_user_defaults_do_not_override_config(paths):
    _, file_path = paths
    arch = resolve_arch(None)
    d = _user_defaults()
    y = _filled(file_path)
    y.dns = [ip("8.8.8.8")]
    y.additional_disks = ["overridden"]
    expect = copy.deepcopy(y)
    raw_d = _user_defaults()

    expect.provision = [*expect.provision, *raw_d.provision]
    expect.probes = [*expect.probes, *raw_d.probes]
    expect.port_forwards = [*expect.port_forwards, *raw_d.port_forwards]
    expect.copy_to_host = [*expect.copy_to_host, CopyToHost()]
    expect.containerd.archives = [
        *expect.containerd.archives,
        File(location="/tmp/nerdctl.tgz", arch=arch),
    ]
    expect.additional_disks = ["overridden", "data"]
    expect.mounts = [_var_log_mount_defaulted(), *expect.mounts]
    expect.networks = [*raw_d.networks, *expect.networks]
    expect.host_resolver.hosts["default"] = "localhost"
    expect.env["TWO"] = "two"

    fill_default(y, d, LimaYAML(), file_path, SOCK_DIR)
    assert y == expect


def test_overrides_override_config(paths):
    _, file_path = paths
    arch = resolve_arch(None)
    d = _user_defaults()
    filled = _filled(file_path)
    y = copy.deepcopy(filled)

    o_pf = PortForward(
        guest_ip=IPV4_LOOPBACK1,
        guest_port=88,
        guest_port_range=(88, 88),
        host_ip=IPV4_LOOPBACK1,
        host_port=8080,
        host_port_range=(8080, 8080),
        proto=TCP,
    )
    o_archive = File(arch=arch, location="/tmp/nerdctl.tgz", digest="$DIGEST")
    o = LimaYAML(
        vm_type="qemu",
        arch=arch,
        cpu_type={AARCH64: "uber-arm", X8664: "pentium", RISCV64: "sifive-u54"},
        cpus=12,
        memory="7GiB",
        disk="117GiB",
        additional_disks=["test"],
        containerd=Containerd(system=True, user=False, archives=[o_archive]),
        ssh=SSH(
            local_port=4433,
            load_dot_ssh_pub_keys=True,
            forward_agent=True,
            forward_x11=False,
            forward_x11_trusted=False,
        ),
        firmware=Firmware(legacy_bios=True),
        audio=Audio(device="coreaudio"),
        video=Video(display="cocoa", vnc=VNCOptions(display="none")),
        host_resolver=HostResolver(enabled=False, ipv6=False, hosts={"override.": "underflow"}),
        propagate_proxy_env=False,
        mounts=[
            Mount(
                location="/var/log",
                writable=True,
                sshfs=SSHFS(cache=False, follow_symlinks=True),
                nine_p=NineP(
                    security_model="mapped-file", protocol_version="9p2000", msize="8KiB", cache="none"
                ),
            )
        ],
        provision=[Provision(script="#!/bin/true", mode="system")],
        probes=[Probe(script="#!/bin/false", mode="readiness", description="Another Probe")],
        networks=[
            Network(lima="shared", mac_address="10:20:30:40:50:60", interface="def1"),
            Network(lima="bridged", interface="def0"),
        ],
        dns=[ip("2.2.2.2")],
        port_forwards=[o_pf],
        copy_to_host=[CopyToHost()],
        env={"TWO": "deux", "THREE": "trois"},
        ca_certificates=CACertificates(remove_defaults=True),
        rosetta=Rosetta(enabled=False, bin_fmt=False),
    )

    raw_d = _user_defaults()
    expect = copy.deepcopy(o)
    expect.provision = [*o.provision, *filled.provision, *raw_d.provision]
    expect.probes = [*o.probes, *filled.probes, *raw_d.probes]
    expect.port_forwards = [o_pf, *filled.port_forwards, *raw_d.port_forwards]
    expect.copy_to_host = [CopyToHost(), *filled.copy_to_host, CopyToHost()]
    expect.containerd.archives = [
        o_archive,
        *filled.containerd.archives,
        File(location="/tmp/nerdctl.tgz", arch=arch),
    ]
    expect.additional_disks = ["test", "data"]
    expect.host_resolver.hosts = {
        "default": "localhost",
        "MY.Host": "host.lima.internal",
        "override.": "underflow",
    }
    expect.mounts = [
        Mount(
            location="/var/log",
            mount_point="/var/log",
            writable=True,
            sshfs=SSHFS(cache=False, follow_symlinks=True, sftp_driver=""),
            nine_p=NineP(
                security_model="mapped-file", protocol_version="9p2000", msize="8KiB", cache="none"
            ),
        ),
        *filled.mounts,
    ]
    expect.mount_type = NINEP
    expect.networks = [
        Network(lima="bridged", mac_address="11:22:33:44:55:66", interface="def0"),
        *filled.networks,
        Network(lima="shared", mac_address="10:20:30:40:50:60", interface="def1"),
    ]
    expect.dns = [ip("2.2.2.2")]
    expect.env = {"ONE": "Eins", "TWO": "deux", "THREE": "trois"}
    expect.ca_certificates = CACertificates(remove_defaults=True, files=["ca.crt"], certs=[CERT])
    expect.rosetta = Rosetta(enabled=False, bin_fmt=False)

    fill_default(y, d, o, file_path, SOCK_DIR)
    assert y == expect


def test_writable_mount_uses_rw_cache(paths):
    _, file_path = paths
    y = LimaYAML(mounts=[Mount(location="/data", writable=True)])
    fill_default(y, LimaYAML(), LimaYAML(), file_path, SOCK_DIR)
    assert y.mounts[0].nine_p.cache == "mmap"
    assert y.mounts[0].mount_point == "/data"


def test_unnamed_networks_are_not_merged(paths):
    _, file_path = paths
    y = LimaYAML(networks=[Network(socket="/tmp/a.sock")])
    d = LimaYAML(networks=[Network(socket="/tmp/b.sock")])
    fill_default(y, d, LimaYAML(), file_path, SOCK_DIR)
    assert [nw.socket for nw in y.networks] == ["/tmp/b.sock", "/tmp/a.sock"]
    assert [nw.interface for nw in y.networks] == ["lima0", "lima1"]
    assert y.networks[0].mac_address != y.networks[1].mac_address


def test_named_network_socket_replaces_lima(paths):
    _, file_path = paths
    d = LimaYAML(networks=[Network(lima="shared", interface="eth9")])
    o = LimaYAML(networks=[Network(socket="/tmp/x.sock", interface="eth9")])
    y = LimaYAML()
    fill_default(y, d, o, file_path, SOCK_DIR)
    assert len(y.networks) == 1
    assert y.networks[0].lima == ""
    assert y.networks[0].socket == "/tmp/x.sock"


def test_probe_descriptions_count_all_probes(paths):
    _, file_path = paths
    y = LimaYAML(probes=[Probe(script="a"), Probe(script="b")])
    fill_default(y, LimaYAML(), LimaYAML(), file_path, SOCK_DIR)
    assert [p.description for p in y.probes] == ["user probe 1/2", "user probe 2/2"]


def test_relative_host_socket_goes_to_socket_dir(paths):
    inst_dir, file_path = paths
    y = LimaYAML(port_forwards=[PortForward(guest_socket="/run/x.sock", host_socket="x.sock")])
    fill_default(y, LimaYAML(), LimaYAML(), file_path, SOCK_DIR)
    assert y.port_forwards[0].host_socket == str(Path(inst_dir) / SOCK_DIR / "x.sock")


def test_image_arch_filled_into_kernel(paths):
    _, file_path = paths
    y = LimaYAML(arch=X8664, images=[Image(location="/img", kernel=Kernel(location="/k"))])
    fill_default(y, LimaYAML(), LimaYAML(), file_path, SOCK_DIR)
    assert y.images[0].arch == X8664
    assert y.images[0].kernel.arch == X8664


def test_vz_without_cpu_override_keeps_empty_cpu_type(paths):
    _, file_path = paths
    y = LimaYAML(vm_type="vz")
    fill_default(y, LimaYAML(), LimaYAML(), file_path, SOCK_DIR)
    assert y.cpu_type == {}
    assert y.video.display is None


def test_ca_files_are_unique(paths):
    _, file_path = paths
    y = LimaYAML(ca_certificates=CACertificates(files=["b", "a"]))
    d = LimaYAML(ca_certificates=CACertificates(files=["a", "c"]))
    fill_default(y, d, LimaYAML(), file_path, SOCK_DIR)
    assert y.ca_certificates.files == ["a", "c", "b"]


def test_first_usernet_index():
    config = NetworksConfig(
        networks={"user-v2": NetDef(mode="user-v2"), "shared": NetDef(mode="shared")}
    )
    y = LimaYAML(networks=[Network(lima="shared"), Network(lima="missing"), Network(lima="user-v2")])
    assert first_usernet_index(y, config) == 2


def test_first_usernet_index_none():
    config = NetworksConfig(networks={"shared": NetDef(mode="shared")})
    y = LimaYAML(networks=[Network(lima="shared"), Network(socket="/tmp/s")])
    assert first_usernet_index(y, config) == -1