"""Transport-aware image reference parsing."""

from dataclasses import dataclass
from enum import Enum

from .exceptions import ReferenceFormatError


class Transport(str, Enum):
    """Method used to access a container image."""

    # Try the local daemon first, then fall back to the remote registry
    DAEMON_REGISTRY = "daemon-registry"
    # OCI layout directory
    OCI = "oci"
    # OCI layout packed into a (optionally gzipped) tarball
    OCI_ARCHIVE = "oci-archive"
    # Tarball produced by ``docker save``
    DOCKER_ARCHIVE = "docker-archive"


FILE_TRANSPORTS = (Transport.OCI, Transport.OCI_ARCHIVE, Transport.DOCKER_ARCHIVE)


@dataclass(frozen=True)
class ImageReference:
    """A parsed container image reference.

    ``path`` is a filesystem path for file based transports, or the full image
    name for the daemon/registry transport. ``tag`` and ``digest`` are
    mutually exclusive.
    """

    transport: Transport
    path: str
    tag: str = ""
    digest: str = ""

    @property
    def locator(self) -> str:
        """The digest if set, otherwise the tag."""
        return self.digest or self.tag


def parse_reference(ref: str) -> ImageReference:
    """Parse an image reference with an optional transport prefix.

    Examples::

        nginx:latest                    -> daemon-registry, "nginx:latest"
        nginx                           -> daemon-registry, "nginx:latest"
        oci:/path/to/layout:v1          -> oci, "/path/to/layout", tag "v1"
        oci:/path/to/layout@sha256:abc  -> oci, "/path/to/layout", digest "sha256:abc"
        oci-archive:./image.tar:latest  -> oci-archive, "./image.tar", tag "latest"

    Raises:
        ReferenceFormatError: If the reference cannot be parsed
    """
    if ":" not in ref and "@" not in ref:
        ref += ":latest"

    if ":" not in ref:
        raise ReferenceFormatError(f"invalid reference format: {ref}")

    prefix, remainder = ref.split(":", 1)
    for transport in FILE_TRANSPORTS:
        if prefix == transport.value:
            return _parse_transport_reference(transport, remainder)

    return ImageReference(transport=Transport.DAEMON_REGISTRY, path=ref)


def _parse_transport_reference(transport: Transport, remainder: str) -> ImageReference:
    # A digest always wins over a tag
    if "@" in remainder:
        path, digest = remainder.split("@", 1)
        return ImageReference(transport=transport, path=path, digest=digest)

    separator = find_path_tag_separator(remainder)
    if separator == -1:
        return ImageReference(transport=transport, path=remainder)

    return ImageReference(
        transport=transport,
        path=remainder[:separator],
        tag=remainder[separator + 1 :],
    )


def find_path_tag_separator(s: str) -> int:
    """Return the index of the colon separating a file path from its tag.

    A colon at index 1 followed by more characters is taken to be a Windows
    drive letter (``C:``) and skipped. Any other colon ends the path.

    Returns:
        Index of the separator, or -1 if there is none
    """
    for i, char in enumerate(s):
        if char != ":":
            continue
        if i == 1 and len(s) > 2:
            continue
        return i
    return -1
