"""Host user and group lookup, and the identity the guest user is modelled on."""

from __future__ import annotations

import getpass
import logging
import ntpath
import os
import re
import subprocess
import sys
import threading
from dataclasses import dataclass, replace

try:
    import grp
    import pwd
except ImportError:  # not available on Windows
    grp = None  # type: ignore[assignment]
    pwd = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

FALLBACK_USER = "lima"
FALLBACK_UID = 1000
FALLBACK_GID = 1000

VALID_NAME = "^[a-z_][a-z0-9_-]*$"
VALID_PATH = "^[/a-zA-Z0-9_-]+$"
_VALID_NAME_RE = re.compile(r"[a-z_][a-z0-9_-]*")
_VALID_PATH_RE = re.compile(r"[/a-zA-Z0-9_-]+")
_DIGITS_RE = re.compile(r"[0-9]+")


@dataclass(frozen=True)
class User:
    """A host account with its primary group resolved."""

    user: str
    uid: int
    group: str
    gid: int
    home: str


@dataclass(frozen=True)
class Group:
    """A host group."""

    name: str
    gid: int


@dataclass(frozen=True)
class LocalUser:
    """The current user, with ids kept as strings as the OS reports them."""

    username: str
    uid: str
    gid: str
    home_dir: str


_users: dict[str, User] = {}
_groups: dict[str, Group] = {}


def lookup_user(name: str) -> User:
    """Look up a user by name; results are cached. Raises LookupError."""
    if name not in _users:
        if pwd is None or grp is None:
            raise LookupError(f"cannot look up user {name!r} on this platform")
        try:
            entry = pwd.getpwnam(name)
        except KeyError:
            raise LookupError(f"unknown user {name!r}") from None
        try:
            group = grp.getgrgid(entry.pw_gid)
        except KeyError:
            raise LookupError(f"unknown group id {entry.pw_gid}") from None
        _users[name] = User(
            user=entry.pw_name,
            uid=entry.pw_uid,
            group=group.gr_name,
            gid=entry.pw_gid,
            home=entry.pw_dir,
        )
    return _users[name]


def lookup_group(name: str) -> Group:
    """Look up a group by name; results are cached. Raises LookupError."""
    if name not in _groups:
        if grp is None:
            raise LookupError(f"cannot look up group {name!r} on this platform")
        try:
            entry = grp.getgrnam(name)
        except KeyError:
            raise LookupError(f"unknown group {name!r}") from None
        _groups[name] = Group(name=entry.gr_name, gid=entry.gr_gid)
    return _groups[name]


def _call(args: list[str]) -> str:
    try:
        result = subprocess.run(args, capture_output=True, text=True, check=True)
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("%s", exc)
        return ""
    return result.stdout.strip()


def _current_user() -> LocalUser:
    if pwd is not None:
        try:
            entry = pwd.getpwuid(os.getuid())
        except KeyError:
            raise LookupError(f"unknown user id {os.getuid()}") from None
        return LocalUser(
            username=entry.pw_name,
            uid=str(entry.pw_uid),
            gid=str(entry.pw_gid),
            home_dir=entry.pw_dir,
        )
    try:
        username = getpass.getuser()
    except OSError as exc:
        raise LookupError(f"cannot determine the current user: {exc}") from exc
    return LocalUser(username=username, uid="", gid="", home_dir=os.path.expanduser("~"))


def _adapt_windows_user(user: LocalUser, warnings: list[str]) -> LocalUser:
    idu = _call(["id", "-u"])
    uid = int(idu) if _DIGITS_RE.fullmatch(idu) else FALLBACK_UID
    if not _DIGITS_RE.fullmatch(user.uid):
        warnings.append(
            f'local uid "{user.uid}" is not a valid Linux uid (must be integer); '
            f"using {uid} uid instead"
        )
        user = replace(user, uid=str(uid))

    idg = _call(["id", "-g"])
    gid = int(idg) if _DIGITS_RE.fullmatch(idg) else FALLBACK_GID
    if not _DIGITS_RE.fullmatch(user.gid):
        warnings.append(
            f'local gid "{user.gid}" is not a valid Linux gid (must be integer); '
            f"using {gid} gid instead"
        )
        user = replace(user, gid=str(gid))

    home = _call(["cygpath", user.home_dir])
    if not home:
        drive = ntpath.splitdrive(user.home_dir)[0]
        home = user.home_dir.replace("\\", "/")
        if drive:
            # C: becomes /c
            home = home.replace(drive, "/" + drive[0].lower(), 1)
    if not _VALID_PATH_RE.fullmatch(user.home_dir):
        warnings.append(
            f'local home "{user.home_dir}" is not a valid Linux path '
            f'(must match "{VALID_PATH}"); using "{home}" home instead'
        )
        user = replace(user, home_dir=home)
    return user


def _resolve() -> tuple[LocalUser | None, BaseException | None, list[str]]:
    warnings: list[str] = []
    try:
        user = _current_user()
    except LookupError as exc:
        return None, exc, warnings
    # `useradd` only accepts names matching this pattern
    if not _VALID_NAME_RE.fullmatch(user.username):
        warnings.append(
            f'local user "{user.username}" is not a valid Linux username '
            f'(must match "{VALID_NAME}"); using "{FALLBACK_USER}" username instead'
        )
        user = replace(user, username=FALLBACK_USER)
    if sys.platform == "win32":
        user = _adapt_windows_user(user, warnings)
    return user, None, warnings


_lock = threading.Lock()
_state: tuple[LocalUser | None, BaseException | None, list[str]] | None = None


def lima_user(warn: bool = False) -> LocalUser:
    """Return the current user adapted to Linux naming rules.

    The result is computed once. Warnings about adaptations are logged only
    by the first call, and only when ``warn`` is true.
    """
    global _state
    with _lock:
        fresh = _state is None
        if _state is None:
            _state = _resolve()
        user, error, warnings = _state
    if warn and fresh:
        for warning in warnings:
            logger.warning(warning)
    if error is not None:
        raise error
    assert user is not None
    return user