"""Registry credential providers.

Providers are plain values passed to the resolver and on to the registry
client, so no process-wide authentication state exists.
"""

import base64
import binascii
import json
import logging
import os
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..utils.names import DEFAULT_REGISTRY

logger = logging.getLogger(__name__)

DOCKER_HUB_CONFIG_KEY = "https://index.docker.io/v1/"
CREDENTIAL_HELPER_TIMEOUT = 30


@dataclass(frozen=True)
class Credentials:
    """Username and password (or identity token) for a registry."""

    username: str = ""
    password: str = ""
    identity_token: str = ""

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password=***)"


class CredentialProvider(ABC):
    """Looks up credentials for a registry host."""

    @abstractmethod
    def resolve(self, registry: str) -> Credentials | None:
        """Return credentials for ``registry``, or None for anonymous access."""


class Anonymous(CredentialProvider):
    """Never supplies credentials."""

    def resolve(self, registry: str) -> Credentials | None:
        return None


class StaticCredentials(CredentialProvider):
    """The same fixed credentials for every registry."""

    def __init__(self, username: str, password: str) -> None:
        self._credentials = Credentials(username=username, password=password)

    def resolve(self, registry: str) -> Credentials | None:
        return self._credentials


class MultiKeychain(CredentialProvider):
    """Asks each provider in turn; the first one with credentials wins."""

    def __init__(self, *providers: CredentialProvider) -> None:
        self.providers = providers

    def resolve(self, registry: str) -> Credentials | None:
        for provider in self.providers:
            credentials = provider.resolve(registry)
            if credentials is not None:
                return credentials
        return None


def _config_keys(registry: str) -> list[str]:
    if registry == DEFAULT_REGISTRY:
        return [DOCKER_HUB_CONFIG_KEY, "index.docker.io", "docker.io", "registry-1.docker.io"]
    return [registry, f"https://{registry}", f"http://{registry}"]


def _decode_auth(entry: dict[str, Any]) -> Credentials | None:
    if entry.get("identitytoken"):
        return Credentials(username=entry.get("username", ""), identity_token=entry["identitytoken"])
    if entry.get("auth"):
        try:
            decoded = base64.b64decode(entry["auth"]).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            logger.warning("ignoring malformed auth entry in docker config: %s", e)
            return None
        username, _, password = decoded.partition(":")
        return Credentials(username=username, password=password)
    if entry.get("username"):
        return Credentials(username=entry["username"], password=entry.get("password", ""))
    return None


class DockerConfigKeychain(CredentialProvider):
    """Credentials from the Docker CLI config and its credential helpers.

    Reads ``$DOCKER_CONFIG/config.json`` (default ``~/.docker/config.json``).
    The file is read on every lookup.
    """

    def __init__(self, config_dir: str | None = None) -> None:
        self.config_dir = config_dir

    def config_path(self) -> Path:
        base = self.config_dir or os.environ.get("DOCKER_CONFIG") or Path.home() / ".docker"
        return Path(base) / "config.json"

    def _load(self) -> dict[str, Any]:
        path = self.config_path()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("cannot read docker config %s: %s", path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def resolve(self, registry: str) -> Credentials | None:
        config = self._load()
        keys = _config_keys(registry)

        helpers = config.get("credHelpers") or {}
        for key in keys:
            if key in helpers:
                return _run_credential_helper(helpers[key], keys[0])

        auths = config.get("auths") or {}
        for key in keys:
            if key in auths and isinstance(auths[key], dict):
                credentials = _decode_auth(auths[key])
                if credentials is not None:
                    return credentials

        if config.get("credsStore"):
            return _run_credential_helper(config["credsStore"], keys[0])
        return None


def _run_credential_helper(helper: str, server_url: str) -> Credentials | None:
    command = f"docker-credential-{helper}"
    try:
        result = subprocess.run(
            [command, "get"],
            input=server_url,
            capture_output=True,
            text=True,
            timeout=CREDENTIAL_HELPER_TIMEOUT,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning("credential helper %s failed: %s", command, e)
        return None

    if result.returncode != 0:
        # Helpers exit non-zero when they have no entry for the server
        logger.debug("credential helper %s has no credentials for %s", command, server_url)
        return None

    try:
        payload = json.loads(result.stdout)
    except json.JSONDecodeError as e:
        logger.warning("credential helper %s returned invalid JSON: %s", command, e)
        return None

    username = payload.get("Username", "")
    secret = payload.get("Secret", "")
    if username == "<token>":
        return Credentials(identity_token=secret)
    return Credentials(username=username, password=secret)


def default_keychain() -> CredentialProvider:
    """Provider used when the caller does not pass one."""
    return DockerConfigKeychain()


def keychain_with_static(username: str, password: str) -> CredentialProvider:
    """Fixed credentials that take priority over the Docker config."""
    return MultiKeychain(StaticCredentials(username, password), DockerConfigKeychain())
