"""Safe extraction of untrusted tar and gzip-tar archives."""

import logging
import os
import shutil
import tarfile
import tempfile
import zlib

from ..exceptions import (
    ArchiveIntegrityError,
    CheckImageError,
    DecompressionLimitError,
    PathTraversalError,
    SizeMismatchError,
)

logger = logging.getLogger(__name__)

# Limit on the sum of header-declared entry sizes (5 GiB)
MAX_DECOMPRESSED_SIZE = 5 * 1024 * 1024 * 1024

DIR_MODE = 0o750
COPY_CHUNK_SIZE = 1024 * 1024

GZIP_SUFFIXES = (".gz", ".tgz")


def is_gzip_path(path: str) -> bool:
    """Whether the archive at ``path`` is gzip-wrapped, judged by its suffix."""
    return path.endswith(GZIP_SUFFIXES)


def _resolve_target(root: str, name: str) -> str:
    target = os.path.normpath(os.path.join(root, name))
    if target != root and not target.startswith(root + os.sep):
        raise PathTraversalError(f"illegal file path in tarball: {name}")
    return target


def _copy_bounded(source, target: str, size: int, mode: int) -> int:
    fd = os.open(target, os.O_CREAT | os.O_EXCL | os.O_WRONLY, mode)
    written = 0
    with os.fdopen(fd, "wb") as out:
        # Never copy past the declared size, even if the stream has more
        remaining = size
        while remaining > 0:
            chunk = source.read(min(COPY_CHUNK_SIZE, remaining))
            if not chunk:
                break
            out.write(chunk)
            written += len(chunk)
            remaining -= len(chunk)
    return written


def _extract_member(tar: tarfile.TarFile, member: tarfile.TarInfo, root: str) -> None:
    target = _resolve_target(root, member.name)

    if member.isdir():
        if target != root:
            os.makedirs(target, mode=DIR_MODE, exist_ok=True)
        return

    if not member.isreg():
        logger.debug("Skipping non-regular entry %s (type %r)", member.name, member.type)
        return

    if target == root:
        raise PathTraversalError(f"illegal file path in tarball: {member.name}")

    os.makedirs(os.path.dirname(target), mode=DIR_MODE, exist_ok=True)

    source = tar.extractfile(member)
    if source is None:
        raise ArchiveIntegrityError(f"cannot read entry {member.name}")
    with source:
        written = _copy_bounded(source, target, member.size, member.mode & 0o777)

    if written != member.size:
        raise SizeMismatchError(
            f"size mismatch for {target}: expected {member.size}, got {written}"
        )


def _extract_all(tarball_path: str, root: str) -> None:
    mode = "r|gz" if is_gzip_path(tarball_path) else "r|"
    with open(tarball_path, "rb") as fileobj:
        with tarfile.open(fileobj=fileobj, mode=mode) as tar:
            total_size = 0
            for member in tar:
                total_size += member.size
                if total_size > MAX_DECOMPRESSED_SIZE:
                    raise DecompressionLimitError(
                        f"tarball exceeds maximum decompressed size of {MAX_DECOMPRESSED_SIZE} bytes"
                    )
                _extract_member(tar, member, root)


def extract_oci_archive(tarball_path: str) -> str:
    """Extract an OCI tarball into a new private temporary directory.

    Every entry is confined to the directory, the total declared size is
    capped at :data:`MAX_DECOMPRESSED_SIZE`, and links and special files are
    skipped. On any failure the directory is removed before the error is
    raised.

    Args:
        tarball_path: Path to a ``.tar``, ``.tar.gz`` or ``.tgz`` file

    Returns:
        Path of the populated temporary directory

    Raises:
        ArchiveIntegrityError: If the archive cannot be read or written out
        SecurityViolationError: If an entry breaks a safety rule
    """
    if not os.path.isfile(tarball_path):
        raise ArchiveIntegrityError(f"error opening tarball: {tarball_path} is not a file")

    root = os.path.realpath(tempfile.mkdtemp(prefix="oci-archive-"))
    try:
        _extract_all(tarball_path, root)
    except CheckImageError:
        remove_tree(root)
        raise
    # tarfile raises ValueError for malformed pax and sparse headers
    except (tarfile.TarError, EOFError, zlib.error, ValueError) as e:
        remove_tree(root)
        raise ArchiveIntegrityError(f"error reading tarball {tarball_path}: {e}") from e
    except OSError as e:
        remove_tree(root)
        raise ArchiveIntegrityError(f"error extracting tarball {tarball_path}: {e}") from e
    except BaseException:
        remove_tree(root)
        raise

    logger.debug("Extracted %s to %s", tarball_path, root)
    return root


def remove_tree(path: str) -> None:
    """Remove a temporary directory tree, logging instead of raising."""
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("failed to remove temporary directory %s: %s", path, e)
