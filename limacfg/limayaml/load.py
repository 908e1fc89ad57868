"""Reading an instance configuration and completing it with defaults."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml

from limacfg.limayaml.defaults import fill_default
from limacfg.limayaml.schema import LimaYAML, SchemaError

logger = logging.getLogger(__name__)

SOCKET_DIR = "sock"


class LoadError(ValueError):
    """A configuration document cannot be read."""


class _UniqueKeyLoader(yaml.SafeLoader):
    """Safe loader that rejects duplicate mapping keys."""

    def construct_mapping(self, node: Any, deep: bool = False) -> Any:
        if isinstance(node, yaml.MappingNode):
            seen: set[Any] = set()
            for key_node, _value in node.value:
                key = self.construct_object(key_node, deep=True)
                try:
                    duplicate = key in seen
                except TypeError:
                    continue
                if duplicate:
                    raise yaml.constructor.ConstructorError(
                        "while constructing a mapping",
                        node.start_mark,
                        f"found duplicate key {key!r}",
                        key_node.start_mark,
                    )
                seen.add(key)
        return super().construct_mapping(node, deep)


def unmarshal_yaml(data: str | bytes, comment: str) -> LimaYAML:
    """Parse a configuration document. Raises LoadError.

    Unknown fields are accepted with a deprecation warning.
    """
    try:
        text = data.decode("utf-8") if isinstance(data, bytes) else data
        raw = yaml.load(text, Loader=_UniqueKeyLoader)
    except (yaml.YAMLError, UnicodeDecodeError) as exc:
        raise LoadError(f"failed to unmarshal YAML ({comment}): {exc}") from exc
    try:
        return LimaYAML.from_dict(raw, strict=True)
    except SchemaError as strict_error:
        try:
            result = LimaYAML.from_dict(raw, strict=False)
        except SchemaError as exc:
            raise LoadError(f"failed to unmarshal YAML ({comment}): {exc}") from exc
        logger.warning(
            "Non-strict YAML is deprecated and will be unsupported in a future version (%s): %s",
            comment,
            strict_error,
        )
        return result


def _read_optional(path: str | os.PathLike[str] | None, kind: str, file_path: str) -> LimaYAML:
    if path is None:
        return LimaYAML()
    path = os.fspath(path)
    try:
        data = Path(path).read_bytes()
    except FileNotFoundError:
        return LimaYAML()
    logger.debug('Mixing "%s" into "%s"', path, file_path)
    return unmarshal_yaml(data, f'{kind} "{path}"')


def load(
    data: str | bytes,
    file_path: str,
    default_path: str | os.PathLike[str] | None = None,
    override_path: str | os.PathLike[str] | None = None,
    socket_dir: str = SOCKET_DIR,
) -> LimaYAML:
    """Parse ``data`` and complete it with the default and override files.

    Missing default or override files are ignored. The result is not validated.
    """
    y = unmarshal_yaml(data, f'main file "{file_path}"')
    d = _read_optional(default_path, "default file", file_path)
    o = _read_optional(override_path, "override file", file_path)
    fill_default(y, d, o, file_path, socket_dir)
    return y