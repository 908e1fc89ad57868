import os

from limacfg.networks.usernet import (
    ENDPOINT_SOCK,
    FD_SOCK,
    QEMU_SOCK,
    pid_file,
    resolve_search_domain,
    sock,
    sock_with_directory,
)


def write_resolv(tmp_path, content):
    path = tmp_path / "resolv.conf"
    path.write_text(content)
    return str(path)


def test_search_domain(tmp_path):
    path = write_resolv(tmp_path, "\nsearch test.com lima.net\nnameserver 192.168.0.100\nnameserver 8.8.8.8")
    assert resolve_search_domain(path) == ["test.com", "lima.net"]


def test_empty_search_domain(tmp_path):
    path = write_resolv(tmp_path, "\nnameserver 192.168.0.100\nnameserver 8.8.8.8")
    assert resolve_search_domain(path) == []


def test_missing_resolv_file(tmp_path):
    assert resolve_search_domain(str(tmp_path / "absent.conf")) == []


def test_sock_with_directory():
    assert sock_with_directory("/nets/user-v2", "user-v2", FD_SOCK) == os.path.join(
        "/nets/user-v2", "usernet_user-v2_fd.sock"
    )


def test_sock_types_are_distinct():
    paths = {sock("/nets", "user-v2", kind) for kind in (FD_SOCK, QEMU_SOCK, ENDPOINT_SOCK)}
    assert len(paths) == 3
    assert all(os.path.dirname(p) == os.path.join("/nets", "user-v2") for p in paths)


def test_sock():
    assert sock("/nets", "user-v2", QEMU_SOCK) == os.path.join(
        "/nets", "user-v2", "usernet_user-v2_qemu.sock"
    )


def test_pid_file():
    assert pid_file("/nets", "user-v2") == os.path.join("/nets", "user-v2", "usernet_user-v2.pid")