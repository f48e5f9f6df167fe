"""Detection of secrets in image environment variables and layer files."""

import asyncio
import logging
import posixpath
import tarfile
import zlib
from dataclasses import dataclass

from ..core.types import Image, Layer
from ..exceptions import CheckImageError, RetrievalError
from ..utils import glob
from .policy import DEFAULT_FILE_PATTERNS, SecretsPolicy

logger = logging.getLogger(__name__)

# Layer problems that skip the layer instead of failing the scan
LAYER_ERRORS = (CheckImageError, tarfile.TarError, OSError, EOFError, zlib.error, ValueError)


@dataclass(frozen=True)
class EnvVarFinding:
    """A sensitive environment variable."""

    name: str
    description: str


@dataclass(frozen=True)
class FileFinding:
    """A sensitive file found in an image layer."""

    path: str
    layer_index: int
    description: str


def check_environment_variables(env_vars: list[str], policy: SecretsPolicy) -> list[EnvVarFinding]:
    """Scan ``NAME=VALUE`` entries for sensitive variable names.

    A name matches when any pattern (default, then custom) is a
    case-insensitive substring of it. Names listed in
    ``policy.excluded_env_vars`` are skipped (case-sensitive).
    """
    if not policy.check_env_vars:
        return []

    findings = []
    patterns = [pattern.lower() for pattern in policy.get_env_patterns()]

    for env_var in env_vars:
        name = env_var.split("=", 1)[0]

        if name in policy.excluded_env_vars:
            logger.debug("Skipping excluded environment variable: %s", name)
            continue

        lowered = name.lower()
        for pattern in patterns:
            if pattern in lowered:
                findings.append(EnvVarFinding(name=name, description="sensitive pattern detected"))
                logger.debug("Found sensitive environment variable: %s (matches pattern: %s)", name, pattern)
                break

    return findings


def is_path_excluded(path: str, excluded_patterns: list[str]) -> bool:
    """Check a layer path against exclusion patterns.

    ``prefix/**`` excludes ``prefix`` and everything beneath it; any other
    pattern is glob-matched against the full path and the base name.
    """
    for pattern in excluded_patterns:
        if pattern.endswith("/**"):
            prefix = pattern[: -len("/**")]
            if path == prefix or path.startswith(prefix + "/"):
                return True
        elif glob.match(pattern, path) or glob.match(pattern, posixpath.basename(path)):
            return True
    return False


def describe_pattern(pattern: str) -> str:
    """Human readable description of a file pattern."""
    return DEFAULT_FILE_PATTERNS.get(pattern, "sensitive file pattern")


def match_file_pattern(path: str, patterns: list[str]) -> str | None:
    """Return the description of the first pattern matching ``path``, if any."""
    basename = posixpath.basename(path)

    for pattern in patterns:
        if glob.match(pattern, basename) or glob.match(pattern, path):
            return describe_pattern(pattern)

        # Path patterns such as .aws/credentials
        if "/" in pattern and (pattern in path or path.endswith(pattern)):
            return describe_pattern(pattern)

    return None


def _scan_layer_stream(stream, layer_index: int, policy: SecretsPolicy) -> list[FileFinding]:
    findings = []
    patterns = policy.get_file_patterns()

    with tarfile.open(fileobj=stream, mode="r|") as tar:
        for member in tar:
            if member.isdir():
                continue

            if is_path_excluded(member.name, policy.excluded_paths):
                logger.debug("Skipping excluded path: %s", member.name)
                continue

            description = match_file_pattern(member.name, patterns)
            if description is not None:
                findings.append(FileFinding(path=member.name, layer_index=layer_index, description=description))
                logger.debug("Found sensitive file in layer %d: %s (%s)", layer_index, member.name, description)

    return findings


async def scan_layer(layer: Layer, layer_index: int, policy: SecretsPolicy) -> list[FileFinding]:
    """Scan one layer's files; the layer stream is always closed."""
    stream = await layer.uncompressed()
    try:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, _scan_layer_stream, stream, layer_index, policy)
    finally:
        stream.close()


async def check_files_in_layers(image: Image, policy: SecretsPolicy) -> list[FileFinding]:
    """Scan every layer of an image for files matching sensitive patterns.

    Layers are read in order and a path is reported only for the first
    layer it appears in. A layer that cannot be read is logged and skipped.

    Raises:
        RetrievalError: If the image layers cannot be listed
    """
    if not policy.check_files:
        return []

    try:
        layers = image.layers()
    except CheckImageError as e:
        raise RetrievalError(f"error getting image layers: {e}") from e

    findings: list[FileFinding] = []
    seen_paths: set[str] = set()

    for index, layer in enumerate(layers):
        logger.debug("Scanning layer %d/%d", index + 1, len(layers))

        try:
            layer_findings = await scan_layer(layer, index, policy)
        except LAYER_ERRORS as e:
            logger.warning("Error scanning layer %d: %s", index, e)
            continue

        for finding in layer_findings:
            if finding.path not in seen_paths:
                findings.append(finding)
                seen_paths.add(finding.path)

    return findings
