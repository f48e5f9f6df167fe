"""Image and layer abstractions shared by every transport."""

import gzip
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import IO, Any, Callable

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"


@dataclass(frozen=True)
class Platform:
    """Target platform used to pick a manifest out of an image index."""

    os: str = "linux"
    architecture: str = "amd64"
    variant: str = ""

    def matches(self, spec: dict[str, Any] | None) -> bool:
        """Check a descriptor ``platform`` object against this platform."""
        if not isinstance(spec, dict):
            return False
        if spec.get("os") != self.os or spec.get("architecture") != self.architecture:
            return False
        return not self.variant or spec.get("variant", "") == self.variant

    def __str__(self) -> str:
        value = f"{self.os}/{self.architecture}"
        return f"{value}/{self.variant}" if self.variant else value


DEFAULT_PLATFORM = Platform()


def _parse_created(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    # RFC3339 with an optional fractional part longer than Python accepts
    text = value.replace("Z", "+00:00")
    if "." in text:
        head, _, tail = text.partition(".")
        digits = "".join(ch for ch in tail if ch.isdigit())
        offset = tail[len(digits) :]
        text = f"{head}.{digits[:6]}{offset}"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        logger.debug("Unparseable created timestamp: %s", value)
        return None


@dataclass
class ImageConfig:
    """Image configuration (the config blob of an image)."""

    architecture: str = ""
    os: str = ""
    env: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    entrypoint: list[str] = field(default_factory=list)
    cmd: list[str] = field(default_factory=list)
    user: str = ""
    exposed_ports: list[str] = field(default_factory=list)
    created: datetime | None = None
    diff_ids: list[str] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ImageConfig":
        """Build a config from the decoded config JSON.

        Raises:
            ValueError: If a section has the wrong JSON type
        """
        if not isinstance(data, dict):
            raise ValueError("image config must be a JSON object")
        container = data.get("config") or {}
        rootfs = data.get("rootfs") or {}
        if not isinstance(container, dict) or not isinstance(rootfs, dict):
            raise ValueError("image config sections must be JSON objects")
        env = container.get("Env") or []
        if not isinstance(env, list) or not all(isinstance(entry, str) for entry in env):
            raise ValueError("image config Env must be a list of strings")
        try:
            return cls(
                architecture=data.get("architecture", ""),
                os=data.get("os", ""),
                env=list(env),
                labels=dict(container.get("Labels") or {}),
                entrypoint=list(container.get("Entrypoint") or []),
                cmd=list(container.get("Cmd") or []),
                user=container.get("User") or "",
                exposed_ports=sorted((container.get("ExposedPorts") or {}).keys()),
                created=_parse_created(data.get("created")),
                diff_ids=list(rootfs.get("diff_ids") or []),
                raw=data,
            )
        except (AttributeError, TypeError) as e:
            raise ValueError(f"malformed image config: {e}") from e


class LayerStream:
    """Readable uncompressed layer stream that closes everything beneath it."""

    def __init__(self, stream: IO[bytes], closers: list[Callable[[], None]] | None = None) -> None:
        self._stream = stream
        self._closers = list(closers or [])
        self.closed = False

    def read(self, size: int = -1) -> bytes:
        return self._stream.read(size)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._stream.close()
        # Innermost handles were registered last, close them first
        for closer in reversed(self._closers):
            try:
                closer()
            except OSError as e:
                logger.warning("failed to close layer reader: %s", e)

    def __enter__(self) -> "LayerStream":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def open_uncompressed(fileobj: IO[bytes], closers: list[Callable[[], None]] | None = None) -> LayerStream:
    """Wrap a seekable blob so that reads yield the uncompressed tar.

    The blob is treated as gzip when it starts with the gzip magic bytes.
    """
    closers = list(closers or [])
    magic = fileobj.read(2)
    fileobj.seek(0)
    if magic == GZIP_MAGIC:
        closers.append(fileobj.close)
        return LayerStream(gzip.GzipFile(fileobj=fileobj, mode="rb"), closers)
    return LayerStream(fileobj, closers)


class Layer(ABC):
    """One filesystem layer of an image."""

    digest: str = ""

    @abstractmethod
    async def uncompressed(self) -> LayerStream:
        """Open the layer as an uncompressed tar stream.

        The caller must close the returned stream.
        """


class Image(ABC):
    """A resolved container image.

    Images can hold temporary state (an extraction directory, a downloaded
    tarball). Use them as context managers or call :meth:`close`.
    """

    @abstractmethod
    def layers(self) -> list[Layer]:
        """Return the image layers, base layer first."""

    @abstractmethod
    def config_file(self) -> ImageConfig:
        """Return the image configuration."""

    def close(self) -> None:
        """Release resources owned by the image."""

    def __enter__(self) -> "Image":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
