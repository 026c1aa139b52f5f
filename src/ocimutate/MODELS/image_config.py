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
Backend-agnostic image configuration.

`ImageConfig.from_raw` reads a registry or daemon config document;
`canonical_bytes` writes the one encoding both backends commit, so equal
configs always share a digest.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..UTILS.canonical_json import canonical_dumps, sha256_digest

# Container-config keys modelled explicitly; everything else passes through
_MODELLED_KEYS = ("Labels", "Env", "Entrypoint", "Cmd", "WorkingDir", "ExposedPorts")


def _optional_args(value: Optional[List[str]]) -> Optional[List[str]]:
    if not value:
        return None
    return list(value)


class ContainerConfig(BaseModel):
    """
    The runtime part of an image config (the `config` object).
    """

    labels: Dict[str, str] = Field(default_factory=dict)
    env: Dict[str, Optional[str]] = Field(default_factory=dict)
    entrypoint: Optional[List[str]] = None
    cmd: Optional[List[str]] = None
    working_dir: Optional[str] = None
    exposed_ports: List[str] = Field(default_factory=list)
    extra: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: Optional[Dict[str, Any]]) -> "ContainerConfig":
        raw = raw or {}
        env: Dict[str, Optional[str]] = {}
        for entry in raw.get("Env") or []:
            key, sep, value = entry.partition("=")
            env[key] = value if sep else None
        return cls(
            labels=dict(raw.get("Labels") or {}),
            env=env,
            entrypoint=_optional_args(raw.get("Entrypoint")),
            cmd=_optional_args(raw.get("Cmd")),
            working_dir=raw.get("WorkingDir") or None,
            exposed_ports=list(raw.get("ExposedPorts") or {}),
            extra={
                key: value
                for key, value in raw.items()
                if key not in _MODELLED_KEYS and value is not None
            },
        )

    def env_list(self) -> List[str]:
        """Env in declaration order as KEY=VALUE strings."""
        return [key if value is None else f"{key}={value}" for key, value in self.env.items()]

    def to_raw(self) -> Dict[str, Any]:
        raw: Dict[str, Any] = dict(self.extra)
        if self.labels:
            raw["Labels"] = dict(self.labels)
        if self.env:
            raw["Env"] = self.env_list()
        if self.entrypoint:
            raw["Entrypoint"] = list(self.entrypoint)
        if self.cmd:
            raw["Cmd"] = list(self.cmd)
        if self.working_dir:
            raw["WorkingDir"] = self.working_dir
        if self.exposed_ports:
            raw["ExposedPorts"] = {port: {} for port in self.exposed_ports}
        return raw


class ImageConfig(BaseModel):
    """
    An OCI image config.

    Only OCI fields are kept. Docker build provenance (`container`,
    `container_config`, `docker_version`) is dropped on read so a config
    inherited through the daemon and one inherited through a registry
    serialize identically.
    """

    architecture: str
    os: str
    variant: Optional[str] = None
    os_version: Optional[str] = None
    os_features: Optional[List[str]] = None
    author: Optional[str] = None
    created: str
    config: ContainerConfig = Field(default_factory=ContainerConfig)
    diff_ids: List[str] = Field(default_factory=list)
    history: List[Dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def empty(cls, os: str, architecture: str, created: str, variant: Optional[str] = None) -> "ImageConfig":
        return cls(os=os, architecture=architecture, variant=variant, created=created)

    @classmethod
    def from_raw(cls, raw: Dict[str, Any], created: str) -> "ImageConfig":
        """Parse a config document, normalizing `created`."""
        rootfs = raw.get("rootfs") or {}
        return cls(
            architecture=raw.get("architecture") or "amd64",
            os=raw.get("os") or "linux",
            variant=raw.get("variant") or None,
            os_version=raw.get("os.version") or None,
            os_features=raw.get("os.features") or None,
            author=raw.get("author") or None,
            created=created,
            config=ContainerConfig.from_raw(raw.get("config")),
            diff_ids=list(rootfs.get("diff_ids") or []),
            history=[dict(entry) for entry in raw.get("history") or []],
        )

    def to_raw(self) -> Dict[str, Any]:
        raw: Dict[str, Any] = {
            "architecture": self.architecture,
            "os": self.os,
            "created": self.created,
            "config": self.config.to_raw(),
            "rootfs": {"type": "layers", "diff_ids": list(self.diff_ids)},
        }
        if self.history:
            raw["history"] = [dict(entry) for entry in self.history]
        if self.variant:
            raw["variant"] = self.variant
        if self.os_version:
            raw["os.version"] = self.os_version
        if self.os_features:
            raw["os.features"] = list(self.os_features)
        if self.author:
            raw["author"] = self.author
        return raw

    def canonical_bytes(self) -> bytes:
        return canonical_dumps(self.to_raw())

    def digest(self) -> str:
        return sha256_digest(self.canonical_bytes())

    def created_at(self) -> datetime:
        return datetime.fromisoformat(self.created.replace("Z", "+00:00"))

    def with_layers(self, diff_ids: List[str], created: str) -> "ImageConfig":
        """Copy with `diff_ids` appended, one history entry per new layer."""
        appended = self.model_copy(deep=True)
        appended.diff_ids.extend(diff_ids)
        appended.history.extend({"created": created} for _ in diff_ids)
        appended.created = created
        return appended
