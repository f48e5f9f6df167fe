"""Secrets detection in image configuration and layers."""

from .detector import EnvVarFinding, FileFinding, check_environment_variables, check_files_in_layers
from .policy import SecretsPolicy, load_secrets_policy

__all__ = [
    "EnvVarFinding",
    "FileFinding",
    "SecretsPolicy",
    "check_environment_variables",
    "check_files_in_layers",
    "load_secrets_policy",
]
