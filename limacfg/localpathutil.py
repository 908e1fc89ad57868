"""Expansion of local paths written with a leading tilde."""

from __future__ import annotations

import os
from pathlib import Path


def expand(orig: str) -> str:
    """Expand "~", "~/" and "~/foo" and make the path absolute.

    Paths like "~foo/bar" are not supported and raise ValueError.
    """
    if not orig:
        raise ValueError("empty path")
    home = str(Path.home())
    path = orig
    if path.startswith("~"):
        if path == "~" or path.startswith("~/"):
            path = home + path[1:]
        else:
            raise ValueError(f'unexpandable path "{orig}"')
    return os.path.abspath(path)