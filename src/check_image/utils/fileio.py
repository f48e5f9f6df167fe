"""Reading policy files from disk or stdin."""

import json
import logging
import os
import stat
import sys
from typing import Any

import yaml

from ..exceptions import ValidationError

logger = logging.getLogger(__name__)

# Upper bound for policy and configuration files
MAX_CONFIG_FILE_SIZE = 10 * 1024 * 1024

YAML_EXTENSIONS = (".yaml", ".yml")


def has_yaml_extension(path: str) -> bool:
    """Check if a file path has a YAML extension (.yaml or .yml)."""
    return path.endswith(YAML_EXTENSIONS)


def is_yaml(data: bytes) -> bool:
    """Guess whether stdin content is YAML rather than JSON."""
    text = data.lstrip()
    return not (text.startswith(b"{") or text.startswith(b"["))


def read_secure_file(path: str) -> bytes:
    """Read a regular file, refusing directories, devices and oversize files.

    Raises:
        ValidationError: If the file cannot be read safely
    """
    abs_path = os.path.abspath(os.path.normpath(path))
    try:
        fd = os.open(abs_path, os.O_RDONLY)
    except OSError as e:
        raise ValidationError(f"cannot access file: {e}") from e

    with os.fdopen(fd, "rb") as f:
        info = os.fstat(f.fileno())
        if stat.S_ISDIR(info.st_mode):
            raise ValidationError("path is a directory, not a file")
        if not stat.S_ISREG(info.st_mode):
            raise ValidationError(f"not a regular file: {path}")
        if info.st_size > MAX_CONFIG_FILE_SIZE:
            raise ValidationError(f"file {path} exceeds {MAX_CONFIG_FILE_SIZE} bytes")
        try:
            return f.read()
        except OSError as e:
            raise ValidationError(f"error reading file: {e}") from e


def read_file_or_stdin(path: str) -> bytes:
    """Read ``path``, or standard input when ``path`` is ``-``."""
    if path != "-":
        return read_secure_file(path)

    data = sys.stdin.buffer.read(MAX_CONFIG_FILE_SIZE + 1)
    if len(data) > MAX_CONFIG_FILE_SIZE:
        raise ValidationError(f"stdin input exceeds {MAX_CONFIG_FILE_SIZE} bytes")
    if not data:
        raise ValidationError("no data received on stdin")
    return data


def unmarshal_config_data(data: bytes, path: str) -> Any:
    """Decode JSON or YAML, choosing by extension (or content for stdin).

    Raises:
        ValidationError: If the content does not parse
    """
    use_yaml = is_yaml(data) if path == "-" else has_yaml_extension(path)

    if use_yaml:
        try:
            return yaml.safe_load(data)
        except yaml.YAMLError as e:
            raise ValidationError(f"invalid YAML: {e}") from e

    try:
        return json.loads(data)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationError(f"invalid JSON: {e}") from e
