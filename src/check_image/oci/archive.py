"""Images stored in OCI layout tarballs."""

import logging

from ..core.types import DEFAULT_PLATFORM, Image, ImageConfig, Layer, Platform
from ..tar.extract import extract_oci_archive, remove_tree
from .layout import LayoutImage, get_layout_image

logger = logging.getLogger(__name__)


class OCIArchiveImage(Image):
    """Layout image backed by a temporary extraction directory it owns."""

    def __init__(self, image: LayoutImage, extract_dir: str) -> None:
        self._image = image
        self.extract_dir = extract_dir
        self.digest = image.digest
        self._closed = False

    def layers(self) -> list[Layer]:
        return self._image.layers()

    def config_file(self) -> ImageConfig:
        return self._image.config_file()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        logger.debug("Removing extraction directory %s", self.extract_dir)
        remove_tree(self.extract_dir)


def get_oci_archive_image(tarball_path: str, reference: str, platform: Platform = DEFAULT_PLATFORM) -> OCIArchiveImage:
    """Extract an OCI tarball and load an image from it by digest or tag.

    The returned image owns the extraction directory; close it when done.
    """
    extract_dir = extract_oci_archive(tarball_path)
    try:
        image = get_layout_image(extract_dir, reference, platform)
    except BaseException:
        remove_tree(extract_dir)
        raise
    return OCIArchiveImage(image, extract_dir)
