"""Loading and caching of the networks.yaml configuration."""

from __future__ import annotations

import logging
import os
import shutil
import threading
from collections.abc import Callable
from pathlib import Path

import yaml

from limacfg.networks.netmodel import NetworkError, NetworksConfig

logger = logging.getLogger(__name__)

NETWORKS_CONFIG = "networks.yaml"

SOCKET_VMNET_CANDIDATES = (
    "/opt/socket_vmnet/bin/socket_vmnet",  # the hard-coded path of older releases
    "socket_vmnet",
    "/usr/local/opt/socket_vmnet/bin/socket_vmnet",  # Homebrew (Intel)
    "/opt/homebrew/opt/socket_vmnet/bin/socket_vmnet",  # Homebrew (ARM)
)


def config_file(config_dir: str | os.PathLike[str]) -> str:
    """Path of networks.yaml inside the configuration directory."""
    return os.path.join(os.fspath(config_dir), NETWORKS_CONFIG)


def find_socket_vmnet() -> str:
    """Locate the socket_vmnet executable, resolving symlinks.

    Falls back to the first candidate when none is installed.
    """
    for candidate in SOCKET_VMNET_CANDIDATES:
        found = shutil.which(candidate)
        if found is None:
            logger.debug('Failed to look up socket_vmnet path "%s"', candidate)
            continue
        return os.path.realpath(found, strict=True)
    return SOCKET_VMNET_CANDIDATES[0]


def load_config(path: str | os.PathLike[str]) -> NetworksConfig:
    """Read and strictly parse a networks.yaml file."""
    path = os.fspath(path)
    text = Path(path).read_text(encoding="utf-8")
    try:
        return NetworksConfig.from_dict(yaml.safe_load(text))
    except (yaml.YAMLError, NetworkError) as exc:
        raise NetworkError(f'cannot parse "{path}": {exc}') from exc


DefaultText = str | Callable[[], str]


class NetworksStore:
    """Lazily loaded networks configuration backed by one file.

    When the file does not exist and ``default_text`` is given, the file is
    created from it first. The outcome of the first load, success or failure,
    is kept for every later call.
    """

    def __init__(self, path: str | os.PathLike[str], default_text: DefaultText | None = None):
        self.path = os.fspath(path)
        self._default_text = default_text
        self._lock = threading.Lock()
        self._loaded = False
        self._config: NetworksConfig | None = None
        self._error: BaseException | None = None

    def _write_default(self) -> None:
        if self._default_text is None:
            raise FileNotFoundError(f'networks config "{self.path}" does not exist')
        directory = os.path.dirname(self.path)
        try:
            os.makedirs(directory or ".", mode=0o755, exist_ok=True)
        except OSError as exc:
            raise OSError(exc.errno, f'could not create "{directory}" directory: {exc.strerror}') from exc
        text = self._default_text if isinstance(self._default_text, str) else self._default_text()
        Path(self.path).write_text(text, encoding="utf-8")
        os.chmod(self.path, 0o644)

    def _load(self) -> NetworksConfig:
        if not os.path.exists(self.path):
            self._write_default()
        return load_config(self.path)

    def config(self) -> NetworksConfig:
        """Return the configuration, loading it on first use."""
        with self._lock:
            if not self._loaded:
                try:
                    self._config = self._load()
                except (OSError, NetworkError) as exc:
                    self._error = exc
                self._loaded = True
        if self._error is not None:
            raise self._error
        assert self._config is not None
        return self._config

    def sock(self, name: str) -> str:
        """Path of the socket_vmnet socket of a defined network."""
        cfg = self.config()
        cfg.check(name)
        if not cfg.paths.socket_vmnet:
            raise NetworkError("socketVMNet is not set")
        return cfg.sock(name)

    def usernet(self, name: str) -> bool:
        """Tell whether the named network is a user-mode network."""
        return self.config().usernet(name)

    def vde_sock(self, name: str) -> str:
        """Path of the (deprecated) vde socket of a defined network."""
        cfg = self.config()
        cfg.check(name)
        if not cfg.paths.vde_vmnet:
            raise NetworkError("vdeVMnet is not set")
        return cfg.vde_sock(name)