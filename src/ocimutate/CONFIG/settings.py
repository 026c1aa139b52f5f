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
Library settings.

Settings come from defaults, a YAML file, or the environment (optionally
seeded from a .env file). Environment variables use the OCIMUTATE_ prefix,
e.g. OCIMUTATE_GZIP_LEVEL=9.
"""

import os
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml
from dotenv import dotenv_values
from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "OCIMUTATE_"

# Fixed creation time written into every saved config.
NORMALIZED_CREATED = "1980-01-01T00:00:01Z"


class Settings(BaseModel):
    """Tunables shared by both commit backends."""

    created_timestamp: str = NORMALIZED_CREATED
    """Value written to the config `created` field and appended history entries."""

    gzip_level: int = Field(default=6, ge=1, le=9)
    """Compression level for layer blobs pushed to a registry."""

    work_dir: Optional[Path] = None
    """Parent directory for temporary artifacts. Defaults to the system temp dir."""

    registry_timeout: float = Field(default=60.0, gt=0)
    """Socket timeout in seconds for registry requests."""

    insecure_registries: List[str] = Field(default_factory=list)
    """Registries spoken to over plain HTTP in addition to localhost."""

    default_platform: Optional[str] = None
    """Platform (os/arch[/variant]) used to pick from a base manifest list."""

    model_config = {"frozen": True}

    @field_validator("insecure_registries", mode="before")
    @classmethod
    def _split_registries(cls, value):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "Settings":
        """Loads and validates Settings from a YAML file."""
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        return cls.model_validate(data)

    @classmethod
    def from_env(
        cls,
        env_file: Optional[Union[str, Path]] = None,
        environ: Optional[Dict[str, str]] = None,
    ) -> "Settings":
        """
        Build Settings from OCIMUTATE_* variables.

        Values from `env_file` are read first; the process environment (or
        `environ` when given) overrides them.
        """
        merged: Dict[str, Optional[str]] = {}
        if env_file is not None:
            merged.update(dotenv_values(env_file))
        merged.update(os.environ if environ is None else environ)

        data = {}
        for key, value in merged.items():
            if value is None or not key.upper().startswith(ENV_PREFIX):
                continue
            field = key[len(ENV_PREFIX):].lower()
            if field in cls.model_fields:
                data[field] = value
        return cls.model_validate(data)

    def is_insecure(self, registry: str) -> bool:
        host = registry.split(":", 1)[0]
        if host in ("localhost", "127.0.0.1", "::1") or host.endswith(".local"):
            return True
        return registry in self.insecure_registries
