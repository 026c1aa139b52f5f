# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Credential resolvers ("keychains") mapping a registry host to credentials.

The core treats credentials as opaque: a keychain is anything with a
`resolve(registry)` method returning `RegistryAuth` or None.
"""

import base64
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional, Protocol, Union

from dotenv import dotenv_values

logger = logging.getLogger(__name__)

DOCKER_HUB_ALIASES = ("docker.io", "index.docker.io", "registry-1.docker.io")
DOCKER_HUB_CONFIG_KEY = "https://index.docker.io/v1/"


@dataclass(frozen=True)
class RegistryAuth:
    """Authentication credentials for a registry."""

    username: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None
    identity_token: Optional[str] = None
    """Refresh token from `docker login`; exchanged at the token realm, never sent as is."""

    def basic_header(self) -> Optional[str]:
        if not (self.username and self.password):
            return None
        encoded = base64.b64encode(
            f"{self.username}:{self.password}".encode()
        ).decode()
        return f"Basic {encoded}"


class Keychain(Protocol):
    def resolve(self, registry: str) -> Optional[RegistryAuth]:
        ...


class AnonymousKeychain:
    """Never supplies credentials."""

    def resolve(self, registry: str) -> Optional[RegistryAuth]:
        return None


class StaticKeychain:
    """Credentials held in memory, keyed by registry host."""

    def __init__(self, credentials: Optional[Dict[str, RegistryAuth]] = None):
        self._credentials: Dict[str, RegistryAuth] = dict(credentials or {})

    def set_credentials(self, registry: str, username: str, password: str) -> None:
        """
        Set credentials for a registry.

        Args:
            registry: Registry hostname (e.g., 'docker.io', 'localhost:5000')
            username: Username
            password: Password or access token
        """
        self._credentials[registry] = RegistryAuth(username=username, password=password)

    def resolve(self, registry: str) -> Optional[RegistryAuth]:
        auth = self._credentials.get(registry)
        if auth is None and registry in DOCKER_HUB_ALIASES:
            for alias in DOCKER_HUB_ALIASES:
                if alias in self._credentials:
                    return self._credentials[alias]
        return auth


class DockerConfigKeychain:
    """
    Reads the `auths` section of a Docker client config.json.

    Credential helpers are not consulted.
    """

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        if config_path is None:
            config_dir = os.environ.get("DOCKER_CONFIG")
            base = Path(config_dir) if config_dir else Path.home() / ".docker"
            config_path = base / "config.json"
        self.config_path = Path(config_path)

    def _load_auths(self) -> Dict[str, dict]:
        if not self.config_path.exists():
            return {}
        try:
            with open(self.config_path, "r") as f:
                return json.load(f).get("auths", {}) or {}
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Ignoring unreadable docker config %s: %s", self.config_path, e)
            return {}

    def resolve(self, registry: str) -> Optional[RegistryAuth]:
        auths = self._load_auths()
        candidates = [registry, f"https://{registry}", f"http://{registry}"]
        if registry in DOCKER_HUB_ALIASES:
            candidates.insert(0, DOCKER_HUB_CONFIG_KEY)
        for key in candidates:
            entry = auths.get(key)
            if not entry:
                continue
            if entry.get("identitytoken"):
                return RegistryAuth(identity_token=entry["identitytoken"])
            if entry.get("auth"):
                decoded = base64.b64decode(entry["auth"]).decode()
                username, _, password = decoded.partition(":")
                return RegistryAuth(username=username, password=password)
            if entry.get("username"):
                return RegistryAuth(
                    username=entry.get("username"), password=entry.get("password")
                )
        return None


class EnvKeychain:
    """
    Credentials from environment variables, optionally seeded from a .env file.

    A registry host `localhost:5000` maps to OCIMUTATE_AUTH_LOCALHOST_5000_USERNAME
    and OCIMUTATE_AUTH_LOCALHOST_5000_PASSWORD.
    """

    PREFIX = "OCIMUTATE_AUTH_"

    def __init__(
        self,
        env_file: Optional[Union[str, Path]] = None,
        environ: Optional[Dict[str, str]] = None,
    ):
        values: Dict[str, Optional[str]] = {}
        if env_file is not None:
            values.update(dotenv_values(env_file))
        values.update(os.environ if environ is None else environ)
        self._values = values

    @classmethod
    def variable_stem(cls, registry: str) -> str:
        stem = "".join(ch if ch.isalnum() else "_" for ch in registry.upper())
        return f"{cls.PREFIX}{stem}"

    def resolve(self, registry: str) -> Optional[RegistryAuth]:
        stem = self.variable_stem(registry)
        username = self._values.get(f"{stem}_USERNAME")
        password = self._values.get(f"{stem}_PASSWORD")
        token = self._values.get(f"{stem}_TOKEN")
        if token:
            return RegistryAuth(token=token)
        if username and password:
            return RegistryAuth(username=username, password=password)
        return None


class MultiKeychain:
    """First keychain with an answer wins."""

    def __init__(self, keychains: Iterable[Keychain]):
        self.keychains = list(keychains)

    def resolve(self, registry: str) -> Optional[RegistryAuth]:
        for keychain in self.keychains:
            auth = keychain.resolve(registry)
            if auth is not None:
                return auth
        return None


def default_keychain() -> MultiKeychain:
    """Environment variables first, then the Docker client config."""
    return MultiKeychain([EnvKeychain(), DockerConfigKeychain()])
