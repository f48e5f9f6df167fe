"""Images stored in OCI image layout directories."""

import json
import logging
import os
from typing import Any

from ..core.types import DEFAULT_PLATFORM, Image, ImageConfig, Layer, LayerStream, Platform, open_uncompressed
from ..exceptions import RetrievalError, TagNotFoundError
from ..utils.digest import Hash, parse_hash

logger = logging.getLogger(__name__)

REF_NAME_ANNOTATION = "org.opencontainers.image.ref.name"

INDEX_MEDIA_TYPES = (
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
)


class LayoutPath:
    """An OCI layout directory on disk."""

    def __init__(self, path: str) -> None:
        self.path = path

    @classmethod
    def from_path(cls, path: str) -> "LayoutPath":
        """Open a layout, checking that it has an ``index.json``."""
        if not os.path.isfile(os.path.join(path, "index.json")):
            raise RetrievalError(f"error reading OCI layout: {path} has no index.json")
        return cls(path)

    def blob_path(self, digest: Hash) -> str:
        return os.path.join(self.path, "blobs", digest.algorithm, digest.hex)

    def read_blob(self, digest: Hash) -> bytes:
        try:
            with open(self.blob_path(digest), "rb") as f:
                return f.read()
        except OSError as e:
            raise RetrievalError(f"error reading blob {digest}: {e}") from e

    def read_json_blob(self, digest: Hash) -> dict[str, Any]:
        return _loads(self.read_blob(digest), str(digest))

    def index_manifest(self) -> dict[str, Any]:
        try:
            with open(os.path.join(self.path, "index.json"), "rb") as f:
                return _loads(f.read(), "index.json")
        except OSError as e:
            raise RetrievalError(f"error reading index: {e}") from e


def _loads(data: bytes, what: str) -> dict[str, Any]:
    try:
        value = json.loads(data)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise RetrievalError(f"invalid JSON in {what}: {e}") from e
    if not isinstance(value, dict):
        raise RetrievalError(f"invalid JSON in {what}: expected an object")
    return value


def _descriptors(document: dict[str, Any], key: str, what: str) -> list[dict[str, Any]]:
    descriptors = document.get(key) or []
    if not isinstance(descriptors, list) or not all(isinstance(d, dict) for d in descriptors):
        raise RetrievalError(f"invalid {key} in {what}: expected a list of objects")
    return descriptors


class LayoutLayer(Layer):
    """A layer blob in an OCI layout."""

    def __init__(self, layout: LayoutPath, digest: Hash) -> None:
        self.layout = layout
        self.digest = str(digest)
        self._hash = digest

    async def uncompressed(self) -> LayerStream:
        try:
            fileobj = open(self.layout.blob_path(self._hash), "rb")
        except OSError as e:
            raise RetrievalError(f"error opening layer {self.digest}: {e}") from e
        return open_uncompressed(fileobj)


class LayoutImage(Image):
    """Image read from an OCI layout."""

    def __init__(self, layout: LayoutPath, digest: Hash, manifest: dict[str, Any], config: ImageConfig) -> None:
        self.layout = layout
        self.digest = str(digest)
        self.manifest = manifest
        self._config = config

    def layers(self) -> list[Layer]:
        layers: list[Layer] = []
        for descriptor in _descriptors(self.manifest, "layers", self.digest):
            try:
                layers.append(LayoutLayer(self.layout, parse_hash(descriptor.get("digest", ""))))
            except ValueError as e:
                raise RetrievalError(f"invalid layer descriptor in {self.digest}: {e}") from e
        return layers

    def config_file(self) -> ImageConfig:
        return self._config


def resolve_tag_in_layout(layout: LayoutPath, tag: str) -> str:
    """Find the manifest digest for a tag in the layout's index.

    The tag is matched against the ``org.opencontainers.image.ref.name``
    annotation, either exactly or in its ``:tag`` form. The first match wins.

    Raises:
        TagNotFoundError: If no manifest carries the tag
    """
    index = layout.index_manifest()
    for descriptor in _descriptors(index, "manifests", "index.json"):
        annotations = descriptor.get("annotations") or {}
        if not isinstance(annotations, dict):
            raise RetrievalError("invalid annotations in index.json: expected an object")
        ref_name = annotations.get(REF_NAME_ANNOTATION)
        if ref_name is None:
            continue
        if ref_name == tag or ref_name == f":{tag}":
            digest = descriptor.get("digest", "")
            if not isinstance(digest, str):
                raise RetrievalError(f"invalid digest for tag {tag!r} in index.json")
            return digest

    raise TagNotFoundError(f"tag {tag!r} not found in layout index")


def _select_platform_manifest(index: dict[str, Any], platform: Platform, what: str) -> Hash:
    manifests = _descriptors(index, "manifests", what)
    for descriptor in manifests:
        if platform.matches(descriptor.get("platform")):
            return parse_hash(descriptor.get("digest", ""))
    if len(manifests) == 1:
        return parse_hash(manifests[0].get("digest", ""))
    raise RetrievalError(f"no manifest for platform {platform} in {what}")


def load_layout_image(layout: LayoutPath, digest: Hash, platform: Platform = DEFAULT_PLATFORM) -> LayoutImage:
    """Load the image whose manifest (or index) has the given digest."""
    manifest = layout.read_json_blob(digest)

    if manifest.get("mediaType") in INDEX_MEDIA_TYPES or "manifests" in manifest:
        try:
            child = _select_platform_manifest(manifest, platform, str(digest))
        except ValueError as e:
            raise RetrievalError(f"invalid index {digest}: {e}") from e
        logger.debug("Index %s resolved to %s for %s", digest, child, platform)
        digest = child
        manifest = layout.read_json_blob(digest)

    config_descriptor = manifest.get("config") or {}
    if not isinstance(config_descriptor, dict):
        raise RetrievalError(f"invalid config descriptor in {digest}: expected an object")
    try:
        config_hash = parse_hash(config_descriptor.get("digest", ""))
    except ValueError as e:
        raise RetrievalError(f"invalid config descriptor in {digest}: {e}") from e

    try:
        config = ImageConfig.from_dict(layout.read_json_blob(config_hash))
    except ValueError as e:
        raise RetrievalError(f"invalid image config {config_hash}: {e}") from e
    return LayoutImage(layout, digest, manifest, config)


def get_layout_image(layout_path: str, reference: str, platform: Platform = DEFAULT_PLATFORM) -> LayoutImage:
    """Load an image from an OCI layout directory by digest or tag.

    Args:
        layout_path: Layout directory
        reference: A content digest (``sha256:...``) or a tag
        platform: Platform picked when the reference names an index

    Raises:
        RetrievalError: If the layout, tag or image cannot be read
    """
    layout = LayoutPath.from_path(layout_path)

    try:
        digest = parse_hash(reference)
    except ValueError:
        resolved = resolve_tag_in_layout(layout, reference)
        try:
            digest = parse_hash(resolved)
        except ValueError as e:
            raise RetrievalError(f"error parsing resolved digest: {e}") from e

    return load_layout_image(layout, digest, platform)
