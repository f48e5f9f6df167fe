"""Tests for the registry API v2 client against an in-process fake registry."""

import json
import os
import tarfile
import threading

import pytest

from check_image.core.credentials import Anonymous, CredentialProvider, Credentials, StaticCredentials
from check_image.core.registry_client import (
    RegistryClient,
    get_remote_image,
    parse_challenge,
    registry_base_url,
)
from check_image.core.types import Platform
from check_image.exceptions import RegistryError
from tests.helpers import OCI_CONFIG, OCI_MANIFEST, make_layer


class TestHelpers:
    """URL and challenge helpers."""

    @pytest.mark.parametrize(
        "registry,expected",
        [
            ("index.docker.io", "https://registry-1.docker.io"),
            ("ghcr.io", "https://ghcr.io"),
            ("localhost:5000", "http://localhost:5000"),
            ("127.0.0.1:15000", "http://127.0.0.1:15000"),
            ("registry.local", "http://registry.local"),
        ],
    )
    def test_registry_base_url(self, registry, expected):
        """Test that local registries use plain HTTP."""
        assert registry_base_url(registry) == expected

    def test_parse_bearer_challenge(self):
        """Test parsing a bearer challenge header."""
        scheme, params = parse_challenge(
            'Bearer realm="https://auth.docker.io/token",service="registry.docker.io",scope="repository:library/nginx:pull"'
        )
        assert scheme == "bearer"
        assert params == {
            "realm": "https://auth.docker.io/token",
            "service": "registry.docker.io",
            "scope": "repository:library/nginx:pull",
        }

    def test_parse_basic_challenge(self):
        """Test parsing a basic challenge header."""
        assert parse_challenge('Basic realm="Registry"') == ("basic", {"realm": "Registry"})


class TestRemoteImage:
    """Resolving images from a registry."""

    @pytest.mark.asyncio
    async def test_anonymous_pull(self, fake_registry):
        """Test fetching manifest and config without authentication."""
        registry, host = fake_registry
        digest, _ = registry.add_image("team/app", "v1", [make_layer({"a": "1"})], env=["API_KEY=x"])

        image = await get_remote_image(f"{host}/team/app:v1", Anonymous())

        assert image.digest == ""
        assert image.name.repository == "team/app"
        assert image.config_file().env == ["API_KEY=x"]
        assert len(image.layers()) == 1

        by_digest = await get_remote_image(f"{host}/team/app@{digest}", Anonymous())
        assert by_digest.digest == digest

    @pytest.mark.asyncio
    async def test_bearer_token_flow(self, fake_registry):
        """Test that a 401 challenge is answered with a token request."""
        registry, host = fake_registry
        registry.token = "secret-token"
        registry.add_image("app", "v1", [make_layer({"a": "1"})])

        image = await get_remote_image(f"{host}/app:v1", Anonymous())

        assert image.config_file().os == "linux"
        assert registry.token_requests == [{"scope": "repository:app:pull", "service": "fake-registry"}]

    @pytest.mark.asyncio
    async def test_token_with_basic_credentials(self, fake_registry):
        """Test that credentials are sent to the token endpoint."""
        registry, host = fake_registry
        registry.token = "secret-token"
        registry.basic_auth = ("user", "pass")
        registry.add_image("app", "v1", [make_layer({"a": "1"})])

        image = await get_remote_image(f"{host}/app:v1", StaticCredentials("user", "pass"))
        assert len(image.layers()) == 1

        with pytest.raises(RegistryError, match="failed with status 401"):
            await get_remote_image(f"{host}/app:v1", Anonymous())

    @pytest.mark.asyncio
    async def test_credentials_resolved_off_event_loop(self, fake_registry):
        """Test that providers run in a worker thread so helper processes cannot block the loop."""
        registry, host = fake_registry
        registry.token = "secret-token"
        registry.basic_auth = ("user", "pass")
        registry.add_image("app", "v1", [make_layer({"a": "1"})])

        class RecordingProvider(CredentialProvider):
            def __init__(self):
                self.threads = []

            def resolve(self, registry_host):
                self.threads.append(threading.get_ident())
                return Credentials(username="user", password="pass")

        provider = RecordingProvider()
        image = await get_remote_image(f"{host}/app:v1", provider)

        assert len(image.layers()) == 1
        assert provider.threads
        assert threading.get_ident() not in provider.threads

    @pytest.mark.asyncio
    async def test_layer_download(self, fake_registry, isolated_tempdir):
        """Test that layers are downloaded, decompressed and cleaned up."""
        registry, host = fake_registry
        registry.token = "secret-token"
        registry.add_image("app", "v1", [make_layer({"etc/passwd": "root:x:0:0"})])

        image = await get_remote_image(f"{host}/app:v1", Anonymous())
        stream = await image.layers()[0].uncompressed()
        try:
            assert len(os.listdir(isolated_tempdir)) == 1
            with tarfile.open(fileobj=stream, mode="r|") as tar:
                assert [member.name for member in tar] == ["etc/passwd"]
        finally:
            stream.close()

        assert os.listdir(isolated_tempdir) == []
        # The token obtained for the manifest is reused for the blob
        assert len(registry.token_requests) == 1

    @pytest.mark.asyncio
    async def test_manifest_not_found(self, fake_registry):
        """Test that an unknown tag is a registry error."""
        _, host = fake_registry
        with pytest.raises(RegistryError, match="status 404"):
            await get_remote_image(f"{host}/missing:v1", Anonymous())

    @pytest.mark.asyncio
    async def test_schema_v1_rejected(self, fake_registry):
        """Test that legacy schema 1 manifests are refused."""
        registry, host = fake_registry
        registry.add_manifest(
            "old", "v1", {"schemaVersion": 1, "fsLayers": []}, "application/vnd.docker.distribution.manifest.v1+json"
        )
        with pytest.raises(RegistryError, match="schemaVersion 1"):
            await get_remote_image(f"{host}/old:v1", Anonymous())

    @pytest.mark.asyncio
    async def test_non_object_manifest(self, fake_registry):
        """Test that a manifest body that is valid JSON but not an object is a registry error."""
        registry, host = fake_registry
        registry.add_manifest("odd", "v1", ["not", "a", "manifest"], OCI_MANIFEST)
        with pytest.raises(RegistryError, match="not a JSON object"):
            await get_remote_image(f"{host}/odd:v1", Anonymous())

    @pytest.mark.asyncio
    async def test_malformed_config(self, fake_registry):
        """Test that a config blob of the wrong shape is a registry error."""
        registry, host = fake_registry
        config = json.dumps({"config": {"ExposedPorts": ["80/tcp"]}}).encode()
        manifest = {
            "schemaVersion": 2,
            "mediaType": OCI_MANIFEST,
            "config": {"mediaType": OCI_CONFIG, "digest": registry.add_blob(config), "size": len(config)},
            "layers": [],
        }
        registry.add_manifest("odd", "v2", manifest, OCI_MANIFEST)

        with pytest.raises(RegistryError, match="invalid image config"):
            await get_remote_image(f"{host}/odd:v2", Anonymous())


class TestImageIndex:
    """Platform selection from a multi-platform index."""

    @pytest.fixture
    def multi_arch(self, fake_registry):
        registry, host = fake_registry
        amd64 = registry.add_image("app", "", [make_layer({"amd64": "x"})])
        arm64 = registry.add_image("app", "", [make_layer({"arm64": "x"}), make_layer({"b": "y"})])
        registry.add_index(
            "app",
            "multi",
            [
                (arm64[0], arm64[1], {"os": "linux", "architecture": "arm64", "variant": "v8"}),
                (amd64[0], amd64[1], {"os": "linux", "architecture": "amd64"}),
            ],
        )
        return host, amd64[0], arm64[0]

    @pytest.mark.asyncio
    async def test_default_platform(self, multi_arch):
        """Test that linux/amd64 is picked by default."""
        host, amd64, _ = multi_arch
        image = await get_remote_image(f"{host}/app:multi", Anonymous())
        assert image.digest == amd64
        assert len(image.layers()) == 1

    @pytest.mark.asyncio
    async def test_explicit_platform(self, multi_arch):
        """Test that a requested platform is honoured."""
        host, _, arm64 = multi_arch
        image = await get_remote_image(f"{host}/app:multi", Anonymous(), Platform(architecture="arm64", variant="v8"))
        assert image.digest == arm64
        assert len(image.layers()) == 2

    @pytest.mark.asyncio
    async def test_missing_platform(self, multi_arch):
        """Test that an absent platform fails."""
        host, _, _ = multi_arch
        with pytest.raises(RegistryError, match="no manifest for platform linux/s390x"):
            await get_remote_image(f"{host}/app:multi", Anonymous(), Platform(architecture="s390x"))


class TestDigestVerification:
    """Content returned by the registry must match its digest."""

    @pytest.mark.asyncio
    async def test_tampered_manifest(self, fake_registry):
        """Test that a manifest fetched by digest is verified."""
        registry, host = fake_registry
        digest, _ = registry.add_image("app", "v1", [make_layer({"a": "1"})])
        registry.manifests[("app", digest)] = (b'{"schemaVersion": 2, "layers": []}', "application/json")

        async with RegistryClient(host, Anonymous()) as client:
            with pytest.raises(RegistryError, match="manifest digest mismatch"):
                await client.get_manifest("app", digest)

    @pytest.mark.asyncio
    async def test_tampered_config(self, fake_registry):
        """Test that a config blob that does not match its digest fails."""
        registry, host = fake_registry
        registry.add_image("app", "v1", [make_layer({"a": "1"})])
        config_digest = next(d for d, data in registry.blobs.items() if data.startswith(b'{"architecture"'))
        registry.blobs[config_digest] = b'{"tampered": true}'

        with pytest.raises(RegistryError, match="blob digest mismatch"):
            await get_remote_image(f"{host}/app:v1", Anonymous())

    @pytest.mark.asyncio
    async def test_tampered_layer(self, fake_registry, isolated_tempdir):
        """Test that a corrupted layer download is rejected and removed."""
        registry, host = fake_registry
        layer = make_layer({"a": "1"})
        registry.add_image("app", "v1", [layer])
        image = await get_remote_image(f"{host}/app:v1", Anonymous())
        registry.blobs[image.layers()[0].digest] = make_layer({"evil": "1"})

        with pytest.raises(RegistryError, match="blob digest mismatch"):
            await image.layers()[0].uncompressed()

        assert os.listdir(isolated_tempdir) == []
