"""Exclusive advisory locks on directories."""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import TypeVar

if sys.platform == "win32":
    import msvcrt
else:
    import fcntl

logger = logging.getLogger(__name__)

T = TypeVar("T")


@contextmanager
def _unix_lock(path: str) -> Iterator[None]:
    fd = os.open(path, os.O_RDONLY)
    try:
        try:
            # interrupted calls are retried by the interpreter
            fcntl.flock(fd, fcntl.LOCK_EX)
        except OSError as exc:
            raise OSError(exc.errno, f'failed to lock "{path}": {exc.strerror}') from exc
        try:
            yield
        finally:
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            except OSError as exc:
                logger.error('failed to unlock "%s": %s', path, exc)
    finally:
        os.close(fd)


@contextmanager
def _windows_lock(path: str) -> Iterator[None]:
    fd = os.open(path + ".lock", os.O_RDWR | os.O_CREAT, 0o644)
    try:
        os.lseek(fd, 0, os.SEEK_SET)
        try:
            msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
        except OSError as exc:
            raise OSError(exc.errno, f'failed to lock "{path}": {exc.strerror}') from exc
        try:
            yield
        finally:
            os.lseek(fd, 0, os.SEEK_SET)
            try:
                msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
            except OSError as exc:
                logger.error('failed to unlock "%s": %s', path, exc)
    finally:
        os.close(fd)


@contextmanager
def dir_lock(directory: str | os.PathLike[str]) -> Iterator[None]:
    """Hold an exclusive lock on ``directory`` for the duration of the block."""
    path = os.fspath(directory)
    lock = _windows_lock if sys.platform == "win32" else _unix_lock
    with lock(path):
        yield


def with_dir_lock(directory: str | os.PathLike[str], fn: Callable[[], T]) -> T:
    """Call ``fn`` while holding the lock on ``directory`` and return its result."""
    with dir_lock(directory):
        return fn()