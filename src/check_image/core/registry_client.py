"""Docker Registry API v2 async client for pulling image metadata and layers."""

import asyncio
import hashlib
import json
import logging
import os
import re
import tempfile
from typing import Dict, List, Optional, Tuple

import aiofiles
import aiohttp

from ..exceptions import RegistryError
from ..utils.digest import calculate_digest, parse_hash
from ..utils.names import DEFAULT_REGISTRY, ImageName, is_insecure_registry, parse_image_name
from .credentials import CredentialProvider, Credentials, default_keychain
from .types import DEFAULT_PLATFORM, Image, ImageConfig, Layer, LayerStream, Platform, open_uncompressed

logger = logging.getLogger(__name__)

DOCKER_MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
OCI_MANIFEST_V1 = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX_V1 = "application/vnd.oci.image.index.v1+json"

MANIFEST_ACCEPT = ", ".join([OCI_INDEX_V1, DOCKER_MANIFEST_LIST, OCI_MANIFEST_V1, DOCKER_MANIFEST_V2])
INDEX_MEDIA_TYPES = (OCI_INDEX_V1, DOCKER_MANIFEST_LIST)

DOWNLOAD_CHUNK_SIZE = 1024 * 1024

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


def registry_base_url(registry: str) -> str:
    """Return the API base URL of a registry host."""
    host = "registry-1.docker.io" if registry == DEFAULT_REGISTRY else registry
    scheme = "http" if is_insecure_registry(host) else "https"
    return f"{scheme}://{host}"


def parse_challenge(header: str) -> Tuple[str, Dict[str, str]]:
    """Split a ``WWW-Authenticate`` header into its scheme and parameters."""
    scheme, _, rest = header.strip().partition(" ")
    return scheme.lower(), {key.lower(): value for key, value in _CHALLENGE_PARAM.findall(rest)}


def _unlink_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


class RegistryClient:
    """Read-only Docker Registry API v2 client with token authentication.

    Authentication state (the bearer token or basic auth) survives across
    sessions, so the client can be entered again to fetch layers later.
    """

    def __init__(
        self,
        registry: str,
        credentials: Optional[CredentialProvider] = None,
        timeout: int = 30,
        connector: Optional[aiohttp.BaseConnector] = None,
        base_url: Optional[str] = None,
    ) -> None:
        """Initialize the registry client.

        Args:
            registry: Registry host (e.g., ghcr.io, localhost:5000)
            credentials: Credential provider, defaults to the Docker config
            timeout: Request timeout in seconds
            connector: aiohttp connector for connection pooling
            base_url: Override of the API base URL
        """
        self.registry = registry
        self.registry_url = (base_url or registry_base_url(registry)).rstrip("/")
        self.credentials = credentials if credentials is not None else default_keychain()
        self.timeout = timeout
        self.connector = connector
        self.session: Optional[aiohttp.ClientSession] = None
        self._auth_headers: Dict[str, str] = {}
        self._basic_auth: Optional[aiohttp.BasicAuth] = None

    async def __aenter__(self) -> "RegistryClient":
        """Enter async context manager."""
        if not self.session or self.session.closed:
            self.session = aiohttp.ClientSession(
                connector=self.connector,
                connector_owner=self.connector is None,
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

    async def _resolve_credentials(self) -> Optional[Credentials]:
        # Providers may read files or run credential helper processes
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.credentials.resolve, self.registry)

    async def _authenticate(self, challenge: str, repository: str) -> None:
        scheme, params = parse_challenge(challenge)
        credentials = await self._resolve_credentials()

        if scheme == "basic":
            if credentials is None:
                raise RegistryError(f"registry {self.registry} requires authentication")
            self._basic_auth = aiohttp.BasicAuth(credentials.username, credentials.password)
            return

        if scheme != "bearer" or "realm" not in params:
            raise RegistryError(f"unsupported authentication challenge from {self.registry}: {challenge}")

        scope = params.get("scope") or f"repository:{repository}:pull"
        query = {"scope": scope}
        if params.get("service"):
            query["service"] = params["service"]

        assert self.session is not None
        try:
            if credentials is not None and credentials.identity_token:
                form = dict(query, grant_type="refresh_token", refresh_token=credentials.identity_token, client_id="check-image")
                request = self.session.post(params["realm"], data=form)
            else:
                auth = None
                if credentials is not None:
                    auth = aiohttp.BasicAuth(credentials.username, credentials.password)
                request = self.session.get(params["realm"], params=query, auth=auth)

            async with request as resp:
                if resp.status != 200:
                    raise RegistryError(
                        f"token request to {params['realm']} failed with status {resp.status}"
                    )
                payload = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, json.JSONDecodeError) as e:
            raise RegistryError(f"Failed to get registry token: {e}") from e

        token = payload.get("token") or payload.get("access_token")
        if not token:
            raise RegistryError("token response did not contain a token")
        self._auth_headers = {"Authorization": f"Bearer {token}"}
        logger.debug("Obtained bearer token for %s (%s)", self.registry, scope)

    async def _get(self, url: str, repository: str, headers: Optional[Dict[str, str]] = None) -> aiohttp.ClientResponse:
        """GET with one authentication round trip on 401.

        The caller must release the returned response.
        """
        if self.session is None or self.session.closed:
            raise RegistryError("Registry client session is not open")

        for attempt in range(2):
            request_headers = dict(headers or {})
            request_headers.update(self._auth_headers)
            try:
                resp = await self.session.get(url, headers=request_headers, auth=self._basic_auth)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise RegistryError(f"Failed to reach registry {self.registry}: {e}") from e

            if resp.status == 401 and attempt == 0:
                challenge = resp.headers.get("WWW-Authenticate", "")
                resp.release()
                if not challenge:
                    break
                await self._authenticate(challenge, repository)
                continue

            if resp.status != 200:
                text = await resp.text()
                resp.release()
                raise RegistryError(f"GET {url} returned status {resp.status}: {text[:200]}")
            return resp

        raise RegistryError(f"not authorized (401) returned from registry {self.registry} for {repository}")

    async def get_manifest(self, repository: str, reference: str, accept: str = MANIFEST_ACCEPT) -> Tuple[Dict, str]:
        """Retrieve a manifest or index.

        Args:
            repository: Repository name
            reference: Tag or digest reference
            accept: Accepted media types

        Returns:
            Tuple of manifest dictionary and its media type

        Raises:
            RegistryError: If retrieval fails
        """
        url = f"{self.registry_url}/v2/{repository}/manifests/{reference}"
        resp = await self._get(url, repository, {"Accept": accept})
        try:
            body = await resp.read()
            content_type = resp.headers.get("Content-Type", "").split(";")[0].strip()
        except aiohttp.ClientError as e:
            raise RegistryError(f"Failed to get manifest: {e}") from e
        finally:
            resp.release()

        if reference.startswith("sha256:") and calculate_digest(body) != reference:
            raise RegistryError(f"manifest digest mismatch for {repository}@{reference}")

        try:
            manifest = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise RegistryError(f"cannot load manifest from server response: {e}") from e
        if not isinstance(manifest, dict):
            raise RegistryError(f"manifest for {repository}:{reference} is not a JSON object")

        media_type = manifest.get("mediaType") or content_type
        if manifest.get("schemaVersion") == 1:
            raise RegistryError(f"unsupported manifest schemaVersion 1 for {repository}:{reference}")
        return manifest, media_type

    async def get_blob(self, repository: str, digest: str) -> bytes:
        """Fetch a small blob (such as an image config) into memory."""
        url = f"{self.registry_url}/v2/{repository}/blobs/{digest}"
        resp = await self._get(url, repository)
        try:
            data = await resp.read()
        except aiohttp.ClientError as e:
            raise RegistryError(f"Failed to get blob {digest}: {e}") from e
        finally:
            resp.release()

        try:
            algorithm = parse_hash(digest).algorithm
        except ValueError as e:
            raise RegistryError(f"invalid blob digest {digest}: {e}") from e
        if calculate_digest(data, algorithm) != digest:
            raise RegistryError(f"blob digest mismatch for {digest}")
        return data

    async def download_blob(self, repository: str, digest: str) -> str:
        """Stream a blob into a temporary file, verifying its digest.

        Returns:
            Path of the temporary file; the caller removes it
        """
        try:
            expected = parse_hash(digest)
        except ValueError as e:
            raise RegistryError(f"invalid blob digest {digest}: {e}") from e
        hasher = hashlib.new(expected.algorithm)
        url = f"{self.registry_url}/v2/{repository}/blobs/{digest}"

        fd, path = tempfile.mkstemp(prefix="layer-")
        os.close(fd)
        try:
            resp = await self._get(url, repository)
            try:
                async with aiofiles.open(path, "wb") as f:
                    async for chunk in resp.content.iter_chunked(DOWNLOAD_CHUNK_SIZE):
                        hasher.update(chunk)
                        await f.write(chunk)
            finally:
                resp.release()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            _unlink_quietly(path)
            raise RegistryError(f"Failed to download blob {digest}: {e}") from e
        except BaseException:
            _unlink_quietly(path)
            raise

        if hasher.hexdigest() != expected.hex:
            _unlink_quietly(path)
            raise RegistryError(f"blob digest mismatch for {digest}")
        return path


class RemoteLayer(Layer):
    """A layer blob fetched from a registry on demand."""

    def __init__(self, client: RegistryClient, repository: str, digest: str) -> None:
        self.client = client
        self.repository = repository
        self.digest = digest

    async def uncompressed(self) -> LayerStream:
        async with self.client:
            path = await self.client.download_blob(self.repository, self.digest)
        try:
            fileobj = open(path, "rb")
        except OSError as e:
            _unlink_quietly(path)
            raise RegistryError(f"error opening downloaded layer {self.digest}: {e}") from e
        return open_uncompressed(fileobj, [lambda: _unlink_quietly(path)])


class RemoteImage(Image):
    """Image whose manifest and config were fetched from a registry."""

    def __init__(self, client: RegistryClient, name: ImageName, digest: str, manifest: Dict, config: ImageConfig) -> None:
        self.client = client
        self.name = name
        self.digest = digest
        self.manifest = manifest
        self._config = config

    def layers(self) -> List[Layer]:
        layers: List[Layer] = []
        for descriptor in self.manifest.get("layers") or []:
            if not isinstance(descriptor, dict) or not isinstance(descriptor.get("digest"), str):
                raise RegistryError(f"invalid layer descriptor in manifest for {self.name}")
            layers.append(RemoteLayer(self.client, self.name.repository, descriptor["digest"]))
        return layers

    def config_file(self) -> ImageConfig:
        return self._config


def _select_platform(index: Dict, platform: Platform, reference: str) -> str:
    manifests = index.get("manifests") or []
    if not isinstance(manifests, list):
        raise RegistryError(f"malformed index for {reference}")
    for descriptor in manifests:
        if isinstance(descriptor, dict) and platform.matches(descriptor.get("platform")):
            digest = descriptor.get("digest")
            if not isinstance(digest, str):
                raise RegistryError(f"malformed index for {reference}")
            return digest
    raise RegistryError(f"no manifest for platform {platform} in {reference}")


async def get_remote_image(
    image_name: str,
    credentials: Optional[CredentialProvider] = None,
    platform: Platform = DEFAULT_PLATFORM,
    client: Optional[RegistryClient] = None,
) -> RemoteImage:
    """Resolve an image name against its registry.

    Args:
        image_name: Name as given to ``docker pull``
        credentials: Credential provider for the registry
        platform: Platform picked from multi-platform indexes
        client: Preconfigured client (mainly for tests)

    Raises:
        RegistryError: If the manifest or config cannot be fetched
    """
    name = parse_image_name(image_name)
    client = client or RegistryClient(name.registry, credentials)

    async with client:
        manifest, media_type = await client.get_manifest(name.repository, name.reference)
        digest = name.digest
        if media_type in INDEX_MEDIA_TYPES or "manifests" in manifest:
            digest = _select_platform(manifest, platform, str(name))
            logger.debug("Index %s resolved to %s for %s", name, digest, platform)
            manifest, media_type = await client.get_manifest(name.repository, digest)

        config_descriptor = manifest.get("config") or {}
        if not isinstance(config_descriptor, dict) or not isinstance(config_descriptor.get("digest"), str):
            raise RegistryError(f"manifest for {name} has no config descriptor")
        try:
            config_data = json.loads(await client.get_blob(name.repository, config_descriptor["digest"]))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise RegistryError(f"invalid image config for {name}: {e}") from e

    try:
        config = ImageConfig.from_dict(config_data)
    except ValueError as e:
        raise RegistryError(f"invalid image config for {name}: {e}") from e
    return RemoteImage(client, name, digest, manifest, config)
