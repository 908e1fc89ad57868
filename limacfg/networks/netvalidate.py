"""Security checks of the paths named in networks.yaml."""

from __future__ import annotations

import os
import stat
import sys

from limacfg.networks.netmodel import NetworkError, NetworksConfig
from limacfg.osutil.system import sys_stat
from limacfg.osutil.user import lookup_group, lookup_user

try:
    import pwd
except ImportError:  # not available on Windows
    pwd = None  # type: ignore[assignment]

# field name in networks.yaml -> attribute, in declaration order
_PATH_FIELDS = (
    ("socketVMNet", "socket_vmnet"),
    ("vdeSwitch", "vde_switch"),
    ("vdeVMNet", "vde_vmnet"),
    ("varRun", "var_run"),
    ("sudoers", "sudoers"),
)


def _parent(path: str) -> str:
    return os.path.dirname(path.rstrip("/") or "/") or "."


def validate_config(config: NetworksConfig) -> None:
    """Check that every configured path is secure. Raises NetworkError."""
    values: dict[str, str] = {}
    missing: set[str] = set()
    for name, attr in _PATH_FIELDS:
        path = getattr(config.paths, attr)
        values[name] = path
        # varRun is created securely later; its existing parents must be secure
        checked = find_base_directory(path) if name == "varRun" else path
        try:
            validate_path(checked, name == "varRun")
        except FileNotFoundError as exc:
            if name == "sudoers":
                # the sudoers file may not exist yet
                continue
            if name in ("socketVMNet", "vdeVMNet", "vdeSwitch"):
                missing.add(name)
                continue
            raise NetworkError(f"networks.yaml field `paths.{name}` error: {exc}") from exc
        except (OSError, LookupError, NetworkError) as exc:
            raise NetworkError(f"networks.yaml field `paths.{name}` error: {exc}") from exc
    if "socketVMNet" in missing and "vdeVMNet" in missing:
        raise NetworkError(
            f'networks.yaml: either "{values["socketVMNet"]}" (`paths.socketVMNet`) or '
            f'"{values["vdeVMNet"]}" (`paths.vdeVMNet`) has to be installed'
        )
    if "socketVMNet" in missing and "vdeSwitch" in missing:
        raise NetworkError(
            f'networks.yaml: "{values["vdeVMNet"]}" (`paths.vdeVMNet`) requires '
            f'"{values["vdeSwitch"]}" (`paths.vdeSwitch`) to be installed'
        )


def find_base_directory(path: str) -> str:
    """Strip trailing components of ``path`` that do not exist."""
    while True:
        try:
            os.lstat(path)
        except FileNotFoundError:
            if path != "/":
                path = _parent(path)
                continue
        return path


def _owner_is_admin(uid: int, admin_gid: int) -> bool:
    if uid == 0:
        return True
    if pwd is None:
        return False
    try:
        owner = pwd.getpwuid(uid)
    except KeyError:
        raise LookupError(f"unknown user id {uid}") from None
    return admin_gid in os.getgrouplist(owner.pw_name, owner.pw_gid)


def validate_path(path: str, allow_daemon_group_writable: bool) -> None:
    """Check that ``path`` and all its parents are owned and writable only by admins.

    Raises NetworkError for insecure paths and FileNotFoundError for missing ones.
    """
    while path:
        if not path.startswith("/"):
            raise NetworkError(f'path "{path}" is not an absolute path')
        if " " in path:
            raise NetworkError(f'path "{path}" contains whitespace')
        info = os.lstat(path)
        mode = info.st_mode
        kind = "dir" if stat.S_ISDIR(mode) else "file"
        if stat.S_ISLNK(mode):
            raise NetworkError(f'{kind} "{path}" is a symlink')
        owner = sys_stat(info)
        if owner is None:
            raise NetworkError(f'could not retrieve stat buffer for "{path}"')
        if sys.platform != "darwin":
            raise NetworkError("vmnet code must not be called on non-Darwin")
        root = lookup_user("root")
        admin_gid = lookup_group("admin").gid
        if not _owner_is_admin(owner.uid, admin_gid):
            raise NetworkError(f'{kind} "{path}" owner {owner.uid} is not an admin')
        if allow_daemon_group_writable:
            daemon = lookup_user("daemon")
            if mode & 0o020 and owner.gid not in (root.gid, admin_gid, daemon.gid):
                raise NetworkError(
                    f'{kind} "{path}" is group-writable and group {owner.gid} '
                    "is not one of [wheel, admin, daemon]"
                )
            if stat.S_ISDIR(mode) and not mode & 0o001 and (not mode & 0o010 or owner.gid != daemon.gid):
                raise NetworkError(
                    f'{kind} "{path}" is not executable by the "{daemon.user}" (gid: {daemon.gid}) group'
                )
        elif mode & 0o020 and owner.gid not in (root.gid, admin_gid):
            raise NetworkError(
                f'{kind} "{path}" is group-writable and group {owner.gid} is not one of [wheel, admin]'
            )
        if mode & 0o002:
            raise NetworkError(f'{kind} "{path}" is world-writable')
        if path == "/":
            return
        path = _parent(path)