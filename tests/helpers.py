"""Helpers that build synthetic layers, OCI layouts, docker archives and a fake registry."""

import gzip
import hashlib
import io
import json
import os
import tarfile
from pathlib import Path

import aiohttp
from aiohttp import web

OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"
OCI_CONFIG = "application/vnd.oci.image.config.v1+json"
OCI_LAYER_GZIP = "application/vnd.oci.image.layer.v1.tar+gzip"
REF_NAME = "org.opencontainers.image.ref.name"


def sha256(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()


def make_layer(files: dict, dirs=(), compress: bool = True) -> bytes:
    """Build a layer tar (gzipped by default) from a path -> content mapping."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for name in dirs:
            info = tarfile.TarInfo(name)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tar.addfile(info)
        for name, content in files.items():
            data = content.encode() if isinstance(content, str) else content
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    raw = buf.getvalue()
    return gzip.compress(raw) if compress else raw


def make_bad_sparse_layer() -> bytes:
    """Build an uncompressed tar whose pax sparse map cannot be parsed."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
        info = tarfile.TarInfo("app/data.bin")
        info.size = 4
        info.pax_headers = {"GNU.sparse.map": "not,numbers"}
        tar.addfile(info, io.BytesIO(b"data"))
    return buf.getvalue()


def make_config(env=None, labels=None, diff_ids=None) -> dict:
    return {
        "architecture": "amd64",
        "os": "linux",
        "created": "2024-05-01T12:30:00.123456789Z",
        "config": {
            "Env": env or ["PATH=/usr/local/bin:/usr/bin"],
            "Labels": labels or {},
            "Entrypoint": ["/entrypoint.sh"],
            "ExposedPorts": {"8080/tcp": {}},
        },
        "rootfs": {"type": "layers", "diff_ids": diff_ids or []},
    }


def write_blob(layout_dir: Path, data: bytes) -> str:
    digest = sha256(data)
    blob_dir = layout_dir / "blobs" / "sha256"
    blob_dir.mkdir(parents=True, exist_ok=True)
    (blob_dir / digest.split(":", 1)[1]).write_bytes(data)
    return digest


def write_image_blobs(layout_dir: Path, layers: list, env=None) -> tuple:
    """Write config, layers and manifest blobs; return (digest, size) of the manifest."""
    layer_descriptors = [
        {"mediaType": OCI_LAYER_GZIP, "digest": write_blob(layout_dir, layer), "size": len(layer)}
        for layer in layers
    ]
    config = json.dumps(make_config(env=env)).encode()
    manifest = {
        "schemaVersion": 2,
        "mediaType": OCI_MANIFEST,
        "config": {"mediaType": OCI_CONFIG, "digest": write_blob(layout_dir, config), "size": len(config)},
        "layers": layer_descriptors,
    }
    data = json.dumps(manifest).encode()
    return write_blob(layout_dir, data), len(data)


def write_oci_layout(layout_dir: Path, images: list) -> list:
    """Create an OCI layout.

    ``images`` is a list of dicts with ``tag`` (or None), ``layers`` and
    optional ``env``. Returns the manifest digests in order.
    """
    layout_dir.mkdir(parents=True, exist_ok=True)
    (layout_dir / "oci-layout").write_text(json.dumps({"imageLayoutVersion": "1.0.0"}))

    descriptors = []
    digests = []
    for image in images:
        digest, size = write_image_blobs(layout_dir, image["layers"], image.get("env"))
        descriptor = {"mediaType": OCI_MANIFEST, "digest": digest, "size": size}
        if image.get("tag") is not None:
            descriptor["annotations"] = {REF_NAME: image["tag"]}
        descriptors.append(descriptor)
        digests.append(digest)

    index = {"schemaVersion": 2, "mediaType": OCI_INDEX, "manifests": descriptors}
    (layout_dir / "index.json").write_text(json.dumps(index))
    return digests


def pack_directory(source: Path, tar_path: Path) -> Path:
    """Tar the contents of ``source``; gzip when the name ends in .gz/.tgz."""
    mode = "w:gz" if str(tar_path).endswith((".gz", ".tgz")) else "w"
    with tarfile.open(tar_path, mode) as tar:
        for root, dirs, files in os.walk(source):
            for name in sorted(dirs) + sorted(files):
                full = Path(root) / name
                tar.add(full, arcname=str(full.relative_to(source)), recursive=False)
    return tar_path


def add_bytes(tar: tarfile.TarFile, name: str, data: bytes, mode: int = 0o644) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = mode
    tar.addfile(info, io.BytesIO(data))


def write_docker_archive(tar_path: Path, images: list) -> Path:
    """Create a ``docker save`` style tarball.

    ``images`` is a list of dicts with ``repo_tags``, ``layers`` and optional
    ``env``.
    """
    manifest = []
    with tarfile.open(tar_path, "w") as tar:
        for number, image in enumerate(images):
            layer_paths = []
            diff_ids = []
            for index, layer in enumerate(image["layers"]):
                path = f"layer{number}_{index}/layer.tar"
                add_bytes(tar, path, layer)
                layer_paths.append(path)
                diff_ids.append(sha256(layer))
            config = json.dumps(make_config(env=image.get("env"), diff_ids=diff_ids)).encode()
            config_path = sha256(config).split(":", 1)[1] + ".json"
            add_bytes(tar, config_path, config)
            manifest.append({"Config": config_path, "RepoTags": image.get("repo_tags", []), "Layers": layer_paths})
        add_bytes(tar, "manifest.json", json.dumps(manifest).encode())
    return tar_path


class FakeRegistry:
    """In-memory registry API v2 served by an aiohttp application.

    When ``token`` is set every request needs ``Authorization: Bearer
    <token>``; the token endpoint hands it out, optionally only to
    ``basic_auth`` (user, password).
    """

    def __init__(self, token=None, basic_auth=None):
        self.token = token
        self.basic_auth = basic_auth
        self.manifests = {}
        self.blobs = {}
        self.token_requests = []
        self.blob_requests = []

    def add_blob(self, data: bytes) -> str:
        digest = sha256(data)
        self.blobs[digest] = data
        return digest

    def add_image(self, repository: str, tag: str, layers: list, env=None) -> tuple:
        """Store an image; return (manifest digest, manifest size)."""
        config = json.dumps(make_config(env=env)).encode()
        manifest = {
            "schemaVersion": 2,
            "mediaType": OCI_MANIFEST,
            "config": {"mediaType": OCI_CONFIG, "digest": self.add_blob(config), "size": len(config)},
            "layers": [
                {"mediaType": OCI_LAYER_GZIP, "digest": self.add_blob(layer), "size": len(layer)} for layer in layers
            ],
        }
        return self.add_manifest(repository, tag, manifest, OCI_MANIFEST)

    def add_index(self, repository: str, tag: str, children: list) -> tuple:
        """Store an index of (digest, size, platform) children under a tag."""
        index = {
            "schemaVersion": 2,
            "mediaType": OCI_INDEX,
            "manifests": [
                {"mediaType": OCI_MANIFEST, "digest": digest, "size": size, "platform": platform}
                for digest, size, platform in children
            ],
        }
        return self.add_manifest(repository, tag, index, OCI_INDEX)

    def add_manifest(self, repository: str, tag: str, manifest: dict, media_type: str) -> tuple:
        data = json.dumps(manifest).encode()
        digest = sha256(data)
        self.manifests[(repository, digest)] = (data, media_type)
        if tag:
            self.manifests[(repository, tag)] = (data, media_type)
        return digest, len(data)

    def _authorized(self, request) -> bool:
        return self.token is None or request.headers.get("Authorization") == f"Bearer {self.token}"

    def _challenge(self, request, repository: str):
        realm = f"{request.url.origin()}/token"
        header = f'Bearer realm="{realm}",service="fake-registry",scope="repository:{repository}:pull"'
        return web.json_response(
            {"errors": [{"code": "UNAUTHORIZED"}]}, status=401, headers={"WWW-Authenticate": header}
        )

    async def handle_token(self, request):
        self.token_requests.append(dict(request.query))
        if self.basic_auth is not None:
            expected = aiohttp.BasicAuth(*self.basic_auth).encode()
            if request.headers.get("Authorization") != expected:
                return web.json_response({"details": "bad credentials"}, status=401)
        return web.json_response({"token": self.token})

    async def handle_manifest(self, request):
        repository = request.match_info["repository"]
        if not self._authorized(request):
            return self._challenge(request, repository)
        entry = self.manifests.get((repository, request.match_info["reference"]))
        if entry is None:
            return web.json_response({"errors": [{"code": "MANIFEST_UNKNOWN"}]}, status=404)
        data, media_type = entry
        return web.Response(body=data, headers={"Content-Type": media_type})

    async def handle_blob(self, request):
        repository = request.match_info["repository"]
        if not self._authorized(request):
            return self._challenge(request, repository)
        digest = request.match_info["digest"]
        self.blob_requests.append(digest)
        if digest not in self.blobs:
            return web.json_response({"errors": [{"code": "BLOB_UNKNOWN"}]}, status=404)
        return web.Response(body=self.blobs[digest], content_type="application/octet-stream")

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/token", self.handle_token)
        app.router.add_get("/v2/{repository:.+}/manifests/{reference}", self.handle_manifest)
        app.router.add_get("/v2/{repository:.+}/blobs/{digest}", self.handle_blob)
        return app
