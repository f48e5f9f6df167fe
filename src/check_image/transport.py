"""Transport-aware image retrieval."""

import asyncio
import logging
from typing import Optional

from .core.credentials import CredentialProvider
from .core.daemon import DockerDaemonClient, get_local_image
from .core.registry_client import get_remote_image
from .core.types import DEFAULT_PLATFORM, Image, ImageConfig, Platform
from .exceptions import CheckImageError, ReferenceFormatError, RetrievalError
from .oci.archive import get_oci_archive_image
from .oci.layout import get_layout_image
from .reference import ImageReference, Transport, parse_reference
from .tar.archive import DockerArchiveImage
from .utils.names import parse_image_name

logger = logging.getLogger(__name__)


def get_image_registry(reference: str) -> str:
    """Return the registry host of a daemon/registry reference.

    Examples:
        get_image_registry("nginx")              # "index.docker.io"
        get_image_registry("ghcr.io/org/app:1")  # "ghcr.io"

    Raises:
        ReferenceFormatError: If the reference cannot be parsed
        RetrievalError: For file based transports, which have no registry
    """
    ref = parse_reference(reference)
    if ref.transport != Transport.DAEMON_REGISTRY:
        raise RetrievalError(f"registry not applicable for {ref.transport.value} transport")

    try:
        return parse_image_name(ref.path).registry
    except ReferenceFormatError as e:
        raise ReferenceFormatError(f"error parsing the reference: {e}") from e


async def _get_daemon_or_remote_image(
    ref: ImageReference,
    credentials: Optional[CredentialProvider],
    platform: Platform,
    daemon: Optional[DockerDaemonClient],
) -> Image:
    try:
        return await get_local_image(ref.path, daemon)
    except CheckImageError as e:
        logger.debug("Local daemon lookup for %s failed, trying registry: %s", ref.path, e)

    try:
        return await get_remote_image(ref.path, credentials, platform)
    except RetrievalError as e:
        raise RetrievalError(f"error retrieving the remote image: {e}") from e


def _require_locator(ref: ImageReference) -> str:
    locator = ref.locator
    if not locator:
        raise RetrievalError(f"{ref.transport.value} transport requires tag or digest")
    return locator


async def get_image(
    reference: str,
    credentials: Optional[CredentialProvider] = None,
    platform: Platform = DEFAULT_PLATFORM,
    daemon: Optional[DockerDaemonClient] = None,
) -> Image:
    """Retrieve an image using transport-aware reference parsing.

    Args:
        reference: Image reference, e.g. ``nginx:1.27``,
            ``oci:/layouts/app:v1`` or ``docker-archive:app.tar``
        credentials: Credential provider for remote registries; the Docker
            config keychain when omitted
        platform: Platform picked from multi-platform indexes
        daemon: Docker daemon client, defaults to ``$DOCKER_HOST``

    Returns:
        The resolved image. Close it (or use it as a context manager) to
        release temporary files it owns.

    Raises:
        ReferenceFormatError: If the reference cannot be parsed
        RetrievalError: If the image cannot be obtained
        SecurityViolationError: If an OCI archive breaks an extraction rule
        ArchiveIntegrityError: If an OCI archive is malformed
    """
    ref = parse_reference(reference)
    loop = asyncio.get_running_loop()

    if ref.transport == Transport.OCI:
        locator = _require_locator(ref)
        return await loop.run_in_executor(None, get_layout_image, ref.path, locator, platform)

    if ref.transport == Transport.OCI_ARCHIVE:
        locator = _require_locator(ref)
        return await loop.run_in_executor(None, get_oci_archive_image, ref.path, locator, platform)

    if ref.transport == Transport.DOCKER_ARCHIVE:
        return await loop.run_in_executor(None, DockerArchiveImage.from_path, ref.path, ref.tag)

    if ref.transport == Transport.DAEMON_REGISTRY:
        return await _get_daemon_or_remote_image(ref, credentials, platform, daemon)

    raise RetrievalError(f"unsupported transport: {ref.transport}")


async def get_image_and_config(
    reference: str,
    credentials: Optional[CredentialProvider] = None,
    platform: Platform = DEFAULT_PLATFORM,
    daemon: Optional[DockerDaemonClient] = None,
) -> tuple[Image, ImageConfig]:
    """Retrieve an image and its configuration.

    The image is closed if its configuration cannot be read.
    """
    image = await get_image(reference, credentials, platform, daemon)
    try:
        config = image.config_file()
    except BaseException:
        image.close()
        raise
    return image, config
