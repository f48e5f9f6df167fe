"""Local Docker daemon access through the Docker Engine API."""

import asyncio
import logging
import os
import tempfile
from typing import Optional
from urllib.parse import quote

import aiofiles
import aiohttp

from ..exceptions import DaemonError, RetrievalError
from ..tar.archive import DockerArchiveImage

logger = logging.getLogger(__name__)

DEFAULT_DOCKER_HOST = "unix:///var/run/docker.sock"
EXPORT_CHUNK_SIZE = 1024 * 1024


class DockerDaemonClient:
    """Minimal async Docker Engine API client (image inspect and export)."""

    def __init__(self, docker_host: Optional[str] = None, timeout: int = 30) -> None:
        """Initialize the daemon client.

        Args:
            docker_host: ``unix://`` or ``tcp://`` address, defaults to
                ``$DOCKER_HOST`` and then the standard unix socket
            timeout: Connect and read timeout in seconds
        """
        self.docker_host = docker_host or os.environ.get("DOCKER_HOST") or DEFAULT_DOCKER_HOST
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None

        if self.docker_host.startswith("unix://"):
            self.socket_path: Optional[str] = self.docker_host[len("unix://") :]
            self.base_url = "http://docker"
        elif self.docker_host.startswith(("tcp://", "http://")):
            self.socket_path = None
            self.base_url = "http://" + self.docker_host.split("://", 1)[1].rstrip("/")
        else:
            raise DaemonError(f"unsupported DOCKER_HOST: {self.docker_host}")

    async def __aenter__(self) -> "DockerDaemonClient":
        """Enter async context manager."""
        if not self.session or self.session.closed:
            connector = aiohttp.UnixConnector(path=self.socket_path) if self.socket_path else None
            self.session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=self.timeout, sock_read=self.timeout),
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context manager."""
        await self.close()

    async def close(self) -> None:
        """Close the client session."""
        if self.session and not self.session.closed:
            await self.session.close()

    def _image_url(self, image_name: str, action: str) -> str:
        return f"{self.base_url}/images/{quote(image_name, safe='/:@')}/{action}"

    async def inspect_image(self, image_name: str) -> dict:
        """Return the daemon's inspect record for an image.

        Raises:
            DaemonError: If the daemon is unreachable or lacks the image
        """
        assert self.session is not None
        try:
            async with self.session.get(self._image_url(image_name, "json")) as resp:
                if resp.status == 404:
                    raise DaemonError(f"image {image_name} not found in local daemon")
                if resp.status != 200:
                    raise DaemonError(f"daemon returned status {resp.status} inspecting {image_name}")
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise DaemonError(f"cannot reach docker daemon at {self.docker_host}: {e}") from e

    async def export_image(self, image_name: str, dest_path: str) -> None:
        """Write the ``docker save`` tarball of an image to ``dest_path``."""
        assert self.session is not None
        try:
            async with self.session.get(self._image_url(image_name, "get")) as resp:
                if resp.status != 200:
                    raise DaemonError(f"daemon returned status {resp.status} exporting {image_name}")
                async with aiofiles.open(dest_path, "wb") as f:
                    async for chunk in resp.content.iter_chunked(EXPORT_CHUNK_SIZE):
                        await f.write(chunk)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise DaemonError(f"error exporting {image_name} from docker daemon: {e}") from e


class DaemonImage(DockerArchiveImage):
    """Image exported from the local daemon; owns the exported tarball."""

    def close(self) -> None:
        try:
            os.unlink(self.tar_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("failed to remove exported image %s: %s", self.tar_path, e)


async def get_local_image(image_name: str, client: Optional[DockerDaemonClient] = None) -> DaemonImage:
    """Retrieve an image from the local Docker daemon.

    Raises:
        DaemonError: If the daemon cannot provide the image
    """
    client = client or DockerDaemonClient()
    fd, tar_path = tempfile.mkstemp(prefix="docker-image-", suffix=".tar")
    os.close(fd)

    try:
        async with client:
            await client.inspect_image(image_name)
            await client.export_image(image_name, tar_path)

        loop = asyncio.get_running_loop()
        archive = await loop.run_in_executor(None, DockerArchiveImage.from_path, tar_path)
    except RetrievalError as e:
        os.unlink(tar_path)
        if isinstance(e, DaemonError):
            raise
        raise DaemonError(f"error retrieving the local image: {e}") from e
    except BaseException:
        os.unlink(tar_path)
        raise

    return DaemonImage(archive.tar_path, archive.manifest, archive.config_file())
