"""Secrets detection policy."""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from ..exceptions import ValidationError
from ..utils.fileio import read_file_or_stdin, unmarshal_config_data

logger = logging.getLogger(__name__)

# Case-insensitive keywords that mark an environment variable as sensitive
DEFAULT_ENV_PATTERNS = (
    "password",
    "passwd",
    "secret",
    "token",
    "key",
    "credential",
    "auth",
    "api",
)

# Variables that match a pattern but are not secrets
DEFAULT_EXCLUDED_ENV_VARS = (
    "PUBLIC_KEY",
    "SSH_PUBLIC_KEY",
)

# File pattern -> description, checked in this order
DEFAULT_FILE_PATTERNS = MappingProxyType(
    {
        # SSH keys
        "id_rsa": "SSH private key",
        "id_dsa": "SSH private key",
        "id_ecdsa": "SSH private key",
        "id_ed25519": "SSH private key",
        "*.ppk": "PuTTY private key",
        # Cloud credentials
        ".aws/credentials": "AWS credentials",
        ".kube/config": "Kubernetes config",
        # Keys
        "*.key": "private key file",
        # Password files
        "/etc/shadow": "shadow password file",
        ".pgpass": "PostgreSQL password file",
        ".my.cnf": "MySQL credentials",
        ".netrc": "authentication credentials",
        # Others
        ".npmrc": "NPM credentials",
        ".git-credentials": "Git credentials",
        "secrets.json": "secrets file",
        "secrets.yaml": "secrets file",
        "secrets.yml": "secrets file",
        "wallet.dat": "cryptocurrency wallet",
    }
)

_LIST_FIELDS = {
    "excluded-paths": "excluded_paths",
    "excluded-env-vars": "excluded_env_vars",
    "custom-env-patterns": "custom_env_patterns",
    "custom-file-patterns": "custom_file_patterns",
}
_BOOL_FIELDS = {
    "check-env-vars": "check_env_vars",
    "check-files": "check_files",
}


@dataclass
class SecretsPolicy:
    """What the secrets check looks at and what it ignores."""

    check_env_vars: bool = True
    check_files: bool = True
    excluded_paths: list[str] = field(default_factory=list)
    excluded_env_vars: list[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDED_ENV_VARS))
    custom_env_patterns: list[str] = field(default_factory=list)
    custom_file_patterns: list[str] = field(default_factory=list)

    def get_env_patterns(self) -> list[str]:
        """Default environment patterns followed by custom ones."""
        return list(DEFAULT_ENV_PATTERNS) + list(self.custom_env_patterns)

    def get_file_patterns(self) -> list[str]:
        """Default file patterns followed by custom ones."""
        return list(DEFAULT_FILE_PATTERNS) + list(self.custom_file_patterns)

    @classmethod
    def from_dict(cls, data: Any) -> "SecretsPolicy":
        """Build a policy from decoded policy file content.

        Missing booleans are false, as in an explicit policy file; a missing
        or empty ``excluded-env-vars`` falls back to the defaults.

        Raises:
            ValidationError: If the content has the wrong shape
        """
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValidationError("secrets policy must be a mapping")

        unknown = set(data) - set(_LIST_FIELDS) - set(_BOOL_FIELDS)
        if unknown:
            logger.warning("Ignoring unknown secrets policy keys: %s", ", ".join(sorted(unknown)))

        values: dict[str, Any] = {}
        for key, attr in _BOOL_FIELDS.items():
            value = data.get(key, False)
            if not isinstance(value, bool):
                raise ValidationError(f"{key} must be a boolean")
            values[attr] = value

        for key, attr in _LIST_FIELDS.items():
            value = data.get(key) or []
            if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
                raise ValidationError(f"{key} must be a list of strings")
            values[attr] = list(value)

        if not values["excluded_env_vars"]:
            values["excluded_env_vars"] = list(DEFAULT_EXCLUDED_ENV_VARS)

        return cls(**values)


def load_secrets_policy(path: str = "") -> SecretsPolicy:
    """Load a secrets policy from a JSON or YAML file, or stdin when ``-``.

    An empty path returns the default policy (both checks enabled, default
    environment exclusions).

    Raises:
        ValidationError: If the policy cannot be read or is invalid
    """
    if not path:
        return SecretsPolicy()

    try:
        data = read_file_or_stdin(path)
    except ValidationError as e:
        raise ValidationError(f"error reading secrets policy: {e}") from e

    return SecretsPolicy.from_dict(unmarshal_config_data(data, path))
