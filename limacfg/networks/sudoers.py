"""Generation and verification of the sudoers entries for network daemons."""

from __future__ import annotations

import logging
import subprocess
import sys
from pathlib import Path

from limacfg.networks.netmodel import (
    SOCKET_VMNET,
    VDE_SWITCH,
    VDE_VMNET,
    NetworkError,
    NetworksConfig,
)

logger = logging.getLogger(__name__)

_DAEMONS = (VDE_SWITCH, VDE_VMNET, SOCKET_VMNET)


def sudoers(config: NetworksConfig) -> str:
    """Render the sudoers file that lets the group manage network daemons."""
    lines = [f"%{config.group} ALL=(root:wheel) NOPASSWD:NOSETENV: {config.mkdir_cmd()}\n"]
    # stable order, so that an existing file can be compared
    for name in sorted(config.networks):
        lines.append("\n")
        lines.append(f'# Manage "{name}" network daemons\n')
        for daemon in _DAEMONS:
            if not config.is_daemon_installed(daemon):
                continue
            account = config.user(daemon)
            lines.append("\n")
            lines.append(
                f"%{config.group} ALL=({account.user}:{account.group}) NOPASSWD:NOSETENV: \\\n"
            )
            lines.append(f"    {config.start_cmd(name, daemon)}, \\\n")
            lines.append(f"    {config.stop_cmd(name, daemon)}\n")
    return "".join(lines)


def _run(args: list[str]) -> None:
    try:
        subprocess.run(args, check=True, capture_output=True)
    except (OSError, subprocess.SubprocessError) as exc:
        raise NetworkError(f"failed to run {args}: {exc}") from exc


def _password_less_sudo(config: NetworksConfig) -> None:
    # flush the cached sudo password first
    _run(["sudo", "-k"])
    for daemon in _DAEMONS:
        if not config.is_daemon_installed(daemon):
            continue
        account = config.user(daemon)
        _run(["sudo", "--user", account.user, "--group", account.group, "--non-interactive", "true"])


def verify_sudo_access(config: NetworksConfig, sudoers_file: str) -> None:
    """Check that the daemons can be managed through sudo without a password.

    Raises NetworkError when neither the sudoers file is current nor sudo works
    without a password.
    """
    if not sudoers_file:
        try:
            _password_less_sudo(config)
        except NetworkError as exc:
            raise NetworkError(f"passwordLessSudo error: {exc}") from exc
        logger.debug("sudo doesn't seem to require a password")
        return
    hint = (
        f"run `{sys.argv[0]} sudoers >etc_sudoers.d_lima && "
        f'sudo install -o root etc_sudoers.d_lima "{sudoers_file}"`)'
    )
    try:
        content = Path(sudoers_file).read_text(encoding="utf-8")
    except OSError as exc:
        if isinstance(exc, FileNotFoundError):
            # a missing file is fine as long as sudo needs no password
            try:
                _password_less_sudo(config)
            except NetworkError as sudo_error:
                logger.debug('"%s" does not exist; passwordLessSudo error: %s', sudoers_file, sudo_error)
            else:
                logger.debug('"%s" does not exist, but sudo doesn\'t seem to require a password', sudoers_file)
                return
        raise NetworkError(f'can\'t read "{sudoers_file}": {exc} (Hint: {hint})') from exc
    if content != sudoers(config):
        raise NetworkError(
            f'sudoers file "{sudoers_file}" is out of sync and must be regenerated (Hint: {hint})'
        )