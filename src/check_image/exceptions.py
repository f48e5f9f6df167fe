"""Custom exceptions for check-image."""


class CheckImageError(Exception):
    """Base exception for all check-image errors."""

    pass


class ReferenceFormatError(CheckImageError):
    """Raised when an image reference string is malformed."""

    pass


class RetrievalError(CheckImageError):
    """Raised when an image cannot be obtained through its transport."""

    pass


class TagNotFoundError(RetrievalError):
    """Raised when a tag is not present in an OCI layout index."""

    pass


class RegistryError(RetrievalError):
    """Raised when a remote registry request fails."""

    pass


class DaemonError(RetrievalError):
    """Raised when the local Docker daemon cannot provide an image."""

    pass


class SecurityViolationError(CheckImageError):
    """Raised when an archive breaks an extraction safety rule."""

    pass


class PathTraversalError(SecurityViolationError):
    """Raised when an archive entry would be written outside its root."""

    pass


class DecompressionLimitError(SecurityViolationError):
    """Raised when an archive declares more data than allowed."""

    pass


class SizeMismatchError(SecurityViolationError):
    """Raised when an entry's written size differs from its header."""

    pass


class ArchiveIntegrityError(CheckImageError):
    """Raised when a tar or gzip stream is malformed."""

    pass


class ValidationError(CheckImageError):
    """Raised when a policy or configuration file is invalid."""

    pass
