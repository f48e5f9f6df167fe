"""Digest calculation and validation utilities."""

import hashlib
import re
from typing import NamedTuple, Union

# Regex pattern for valid digest format (algorithm:hex)
DIGEST_PATTERN = re.compile(r"^[a-z0-9]+:[a-f0-9]+$")

# Hex lengths of the algorithms accepted as content hashes
HASH_HEX_LENGTHS = {"sha256": 64}


class Hash(NamedTuple):
    """A parsed content hash."""

    algorithm: str
    hex: str

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.hex}"


def calculate_digest(data: Union[bytes, bytearray], algorithm: str = "sha256") -> str:
    """Calculate digest of data.

    Args:
        data: Data to hash
        algorithm: Hash algorithm (default: sha256)

    Returns:
        Digest string in format "algorithm:hex"

    Raises:
        ValueError: If algorithm is not supported
        ValueError: If data is not bytes-like
    """
    if not isinstance(data, (bytes, bytearray)):
        raise ValueError("Data must be bytes or bytearray")

    if algorithm not in hashlib.algorithms_available:
        raise ValueError(f"Unsupported algorithm: {algorithm}")

    hasher = hashlib.new(algorithm)
    hasher.update(data)
    return f"{algorithm}:{hasher.hexdigest()}"


def parse_hash(digest: str) -> Hash:
    """Parse a content hash such as ``sha256:<64 hex chars>``.

    Args:
        digest: Digest string to parse

    Returns:
        Hash with algorithm and hex parts

    Raises:
        ValueError: If the string is not a supported content hash
    """
    if not isinstance(digest, str) or not DIGEST_PATTERN.match(digest):
        raise ValueError(f"Invalid digest format: {digest!r}")

    algorithm, hex_part = digest.split(":", 1)
    expected = HASH_HEX_LENGTHS.get(algorithm)
    if expected is None:
        raise ValueError(f"Unsupported digest algorithm: {algorithm}")
    if len(hex_part) != expected:
        raise ValueError(
            f"Wrong digest length for {algorithm}: expected {expected}, got {len(hex_part)}"
        )
    return Hash(algorithm, hex_part)
