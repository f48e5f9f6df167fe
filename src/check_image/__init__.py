"""check-image - inspect container images from daemons, registries, OCI layouts and tarballs."""

__version__ = "0.1.0"

from .core.credentials import (
    CredentialProvider,
    Credentials,
    DockerConfigKeychain,
    MultiKeychain,
    StaticCredentials,
)
from .core.types import Image, ImageConfig, Layer, Platform
from .exceptions import (
    ArchiveIntegrityError,
    CheckImageError,
    DecompressionLimitError,
    PathTraversalError,
    ReferenceFormatError,
    RetrievalError,
    SecurityViolationError,
    SizeMismatchError,
    TagNotFoundError,
    ValidationError,
)
from .reference import ImageReference, Transport, parse_reference
from .secrets import (
    EnvVarFinding,
    FileFinding,
    SecretsPolicy,
    check_environment_variables,
    check_files_in_layers,
    load_secrets_policy,
)
from .transport import get_image, get_image_and_config, get_image_registry

__all__ = [
    "ArchiveIntegrityError",
    "CheckImageError",
    "CredentialProvider",
    "Credentials",
    "DecompressionLimitError",
    "DockerConfigKeychain",
    "EnvVarFinding",
    "FileFinding",
    "Image",
    "ImageConfig",
    "ImageReference",
    "Layer",
    "MultiKeychain",
    "PathTraversalError",
    "Platform",
    "ReferenceFormatError",
    "RetrievalError",
    "SecretsPolicy",
    "SecurityViolationError",
    "SizeMismatchError",
    "StaticCredentials",
    "TagNotFoundError",
    "Transport",
    "ValidationError",
    "check_environment_variables",
    "check_files_in_layers",
    "get_image",
    "get_image_and_config",
    "get_image_registry",
    "load_secrets_policy",
    "parse_reference",
]
