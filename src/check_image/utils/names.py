"""Docker-style image name parsing."""

import re
from dataclasses import dataclass

from ..exceptions import ReferenceFormatError

DEFAULT_REGISTRY = "index.docker.io"
DEFAULT_TAG = "latest"

# Hostnames that are accepted as registries without a dot or port
_LOCAL_REGISTRY_HOSTS = ("localhost",)
_DOCKER_HUB_ALIASES = ("docker.io", "index.docker.io", "registry-1.docker.io")

_REPOSITORY_PATTERN = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*(?:/[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*)*$")
_TAG_PATTERN = re.compile(r"^[\w][\w.-]{0,127}$")


@dataclass(frozen=True)
class ImageName:
    """A fully qualified image name."""

    registry: str
    repository: str
    tag: str = ""
    digest: str = ""

    @property
    def reference(self) -> str:
        """The digest if present, otherwise the tag."""
        return self.digest or self.tag

    def __str__(self) -> str:
        if self.digest:
            return f"{self.registry}/{self.repository}@{self.digest}"
        return f"{self.registry}/{self.repository}:{self.tag}"


def _split_registry(name: str) -> tuple[str, str]:
    if "/" not in name:
        return DEFAULT_REGISTRY, name

    first, rest = name.split("/", 1)
    if "." in first or ":" in first or first in _LOCAL_REGISTRY_HOSTS:
        if first in _DOCKER_HUB_ALIASES:
            return DEFAULT_REGISTRY, rest
        return first, rest
    return DEFAULT_REGISTRY, name


def parse_image_name(name: str) -> ImageName:
    """Parse a name you would give ``docker pull``.

    Examples:
        parse_image_name("nginx")
        # ImageName("index.docker.io", "library/nginx", "latest")

        parse_image_name("localhost:5000/myapp:v1")
        # ImageName("localhost:5000", "myapp", "v1")

    Raises:
        ReferenceFormatError: If the name is not a valid image reference
    """
    remainder = name.strip()
    if not remainder:
        raise ReferenceFormatError("empty image name")

    digest = ""
    if "@" in remainder:
        remainder, digest = remainder.split("@", 1)
        if not digest:
            raise ReferenceFormatError(f"empty digest in image name: {name}")

    tag = ""
    # Only a colon after the last slash separates a tag (registry ports come first)
    last_colon = remainder.rfind(":")
    if last_colon > remainder.rfind("/"):
        remainder, tag = remainder[:last_colon], remainder[last_colon + 1 :]
        if not _TAG_PATTERN.match(tag):
            raise ReferenceFormatError(f"invalid tag {tag!r} in image name: {name}")

    registry, repository = _split_registry(remainder)
    if registry == DEFAULT_REGISTRY and "/" not in repository:
        repository = f"library/{repository}"

    if not _REPOSITORY_PATTERN.match(repository):
        raise ReferenceFormatError(f"invalid repository {repository!r} in image name: {name}")

    if not tag and not digest:
        tag = DEFAULT_TAG

    return ImageName(registry=registry, repository=repository, tag=tag, digest=digest)


def is_insecure_registry(registry: str) -> bool:
    """Whether a registry is reached over plain HTTP."""
    host = registry.rsplit(":", 1)[0] if registry.count(":") == 1 else registry
    return (
        host in ("localhost", "127.0.0.1", "::1")
        or host.startswith("127.")
        or host.endswith(".local")
        or host.endswith(".localhost")
    )
