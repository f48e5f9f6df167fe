"""Images stored in ``docker save`` tarballs."""

import json
import logging
import os
import tarfile
from pathlib import Path
from typing import Any

from ..core.types import Image, ImageConfig, Layer, LayerStream, open_uncompressed
from ..exceptions import ReferenceFormatError, RetrievalError
from ..utils.names import parse_image_name

logger = logging.getLogger(__name__)


class DockerArchiveLayer(Layer):
    """A layer file inside a docker archive."""

    def __init__(self, tar_path: str, member_path: str, digest: str = "") -> None:
        self.tar_path = tar_path
        self.member_path = member_path
        self.digest = digest

    async def uncompressed(self) -> LayerStream:
        tar = tarfile.open(self.tar_path, "r")
        try:
            member = tar.getmember(self.member_path)
            fileobj = tar.extractfile(member)
            if fileobj is None:
                raise RetrievalError(f"Could not extract layer {self.member_path}")
        except KeyError as e:
            tar.close()
            raise RetrievalError(f"Layer {self.member_path} not found in tar") from e
        except BaseException:
            tar.close()
            raise
        return open_uncompressed(fileobj, [tar.close])


class DockerArchiveImage(Image):
    """Image read from a ``docker save`` tarball."""

    def __init__(self, tar_path: str, manifest: dict[str, Any], config: ImageConfig) -> None:
        self.tar_path = tar_path
        self.manifest = manifest
        self._config = config

    @classmethod
    def from_path(cls, tar_path: str, tag: str = "") -> "DockerArchiveImage":
        """Load an image from a docker archive.

        Args:
            tar_path: Path to the tar file
            tag: Image tag to select, e.g. ``"nginx:alpine"``. Empty selects
                the only image in the archive.

        Raises:
            RetrievalError: If the archive cannot be read or the image is not found
        """
        path = Path(tar_path)
        if not path.is_file():
            raise RetrievalError(f"error loading docker archive from {tar_path}: file not found")

        try:
            with tarfile.open(tar_path, "r") as tar:
                manifest_list = _extract_json_file(tar, "manifest.json")
                entry = _select_manifest_entry(manifest_list, tag, tar_path)
                config_data = _extract_json_file(tar, entry["Config"])
        except tarfile.TarError as e:
            raise RetrievalError(f"error loading docker archive from {tar_path}: {e}") from e

        try:
            config = ImageConfig.from_dict(config_data)
        except ValueError as e:
            raise RetrievalError(f"error loading docker archive from {tar_path}: invalid config: {e}") from e

        return cls(tar_path, entry, config)

    def layers(self) -> list[Layer]:
        diff_ids = self._config.diff_ids
        layers: list[Layer] = []
        for index, layer_path in enumerate(self.manifest.get("Layers") or []):
            digest = diff_ids[index] if index < len(diff_ids) else ""
            layers.append(DockerArchiveLayer(self.tar_path, layer_path, digest))
        return layers

    def config_file(self) -> ImageConfig:
        return self._config


def _extract_json_file(tar: tarfile.TarFile, filename: str) -> Any:
    try:
        member = tar.extractfile(filename)
    except KeyError as e:
        raise RetrievalError(f"File {filename} not found in tar") from e
    if member is None:
        raise RetrievalError(f"Could not extract {filename}")

    with member:
        try:
            return json.loads(member.read().decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise RetrievalError(f"Invalid JSON in {filename}: {e}") from e


def _normalize_tag(tag: str) -> str:
    return str(parse_image_name(tag))


def _select_manifest_entry(manifest_list: Any, tag: str, tar_path: str) -> dict[str, Any]:
    if not isinstance(manifest_list, list) or not manifest_list:
        raise RetrievalError("manifest.json must be a non-empty array")

    if not tag:
        if len(manifest_list) != 1:
            raise RetrievalError(
                f"error loading docker archive from {tar_path}: "
                "archive must contain exactly one image when no tag is given"
            )
        entry = manifest_list[0]
    else:
        try:
            wanted = _normalize_tag(tag)
        except ReferenceFormatError as e:
            raise RetrievalError(f"error parsing tag {tag}: {e}") from e
        entry = None
        for candidate in manifest_list:
            for repo_tag in candidate.get("RepoTags") or []:
                try:
                    if _normalize_tag(repo_tag) == wanted:
                        entry = candidate
                        break
                except ReferenceFormatError:
                    logger.debug("Ignoring unparseable RepoTag %s", repo_tag)
            if entry is not None:
                break
        if entry is None:
            raise RetrievalError(
                f"error loading docker archive from {tar_path}: tag {tag} not found in archive"
            )

    if not isinstance(entry, dict) or "Config" not in entry or "Layers" not in entry:
        raise RetrievalError("Invalid manifest entry structure")
    logger.debug("Selected image %s from %s", entry.get("RepoTags"), os.path.basename(tar_path))
    return entry
