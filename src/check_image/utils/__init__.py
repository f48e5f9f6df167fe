"""Utility functions for check-image."""

from .digest import calculate_digest, parse_hash
from .names import ImageName, parse_image_name

__all__ = ["calculate_digest", "parse_hash", "ImageName", "parse_image_name"]
