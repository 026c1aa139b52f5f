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
Image reference parsing and handling.
Parses references like 'busybox:latest', 'localhost:5000/app' or
'docker.io/library/busybox@sha256:...'.
"""

import re
from typing import Optional
from dataclasses import dataclass, replace

_COMPONENT_RE = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_TAG_RE = re.compile(r"^[\w][\w.-]{0,127}$")
_DIGEST_RE = re.compile(r"^[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[a-fA-F0-9]{32,}$")


@dataclass(frozen=True)
class ImageReference:
    """
    Parsed image reference. Immutable once parsed.

    Examples:
        - busybox -> docker.io/library/busybox:latest
        - myuser/myimage:v1 -> docker.io/myuser/myimage:v1
        - localhost:5000/app -> localhost:5000/app:latest
        - gcr.io/project/image@sha256:abc... -> gcr.io/project/image@sha256:abc...
    """

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    DEFAULT_REGISTRY = "docker.io"
    DEFAULT_TAG = "latest"

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """
        Parse an image reference string with weak validation: registry and
        tag may be omitted and are defaulted.

        Args:
            reference: Image reference string (e.g., 'busybox:1.36', 'myuser/myimage:v1')

        Returns:
            Parsed ImageReference object.
        """
        if not reference:
            raise ValueError("Empty image reference")
        original = reference

        # Handle digest format (image@sha256:...)
        digest = None
        if "@" in reference:
            reference, digest = reference.rsplit("@", 1)
            if not _DIGEST_RE.match(digest):
                raise ValueError(f"Invalid digest in reference {original!r}")

        # Handle tag format (image:tag)
        tag = None
        if ":" in reference:
            last_colon = reference.rfind(":")
            after_colon = reference[last_colon + 1 :]

            # A slash after the colon means it was a registry port
            if "/" not in after_colon:
                tag = after_colon
                reference = reference[:last_colon]
                if not _TAG_RE.match(tag):
                    raise ValueError(f"Invalid tag in reference {original!r}")

        parts = reference.split("/")
        first_part = parts[0]
        if len(parts) > 1 and (
            "." in first_part or ":" in first_part or first_part == "localhost"
        ):
            registry = first_part
            repository = "/".join(parts[1:])
        else:
            registry = cls.DEFAULT_REGISTRY
            repository = reference

        if registry == cls.DEFAULT_REGISTRY and "/" not in repository:
            # Official images live under library/
            repository = f"library/{repository}"

        for component in repository.split("/"):
            if not _COMPONENT_RE.match(component):
                raise ValueError(f"Invalid repository in reference {original!r}")

        # Use default tag if none specified and no digest
        if not tag and not digest:
            tag = cls.DEFAULT_TAG

        return cls(registry=registry, repository=repository, tag=tag, digest=digest)

    def with_tag(self, tag: str) -> "ImageReference":
        return replace(self, tag=tag, digest=None)

    def with_digest(self, digest: str) -> "ImageReference":
        return replace(self, tag=None, digest=digest)

    @property
    def identifier(self) -> str:
        """Digest if pinned, otherwise the tag."""
        return self.digest or self.tag or self.DEFAULT_TAG

    @property
    def full_name(self) -> str:
        """Get full image name with registry."""
        name = f"{self.registry}/{self.repository}"
        if self.digest:
            return f"{name}@{self.digest}"
        if self.tag:
            return f"{name}:{self.tag}"
        return name

    @property
    def context(self) -> str:
        """Repository name without tag or digest, short form for Docker Hub."""
        if self.registry == self.DEFAULT_REGISTRY:
            repo = self.repository
            if repo.startswith("library/"):
                repo = repo[8:]
            return repo
        return f"{self.registry}/{self.repository}"

    @property
    def short_name(self) -> str:
        """Get short image name (without registry if default)."""
        if self.digest:
            return f"{self.context}@{self.digest}"
        if self.tag:
            return f"{self.context}:{self.tag}"
        return self.context

    @property
    def registry_url(self) -> str:
        """Get the registry URL for API calls."""
        if self.registry == "docker.io":
            return "https://registry-1.docker.io"
        if "://" in self.registry:
            return self.registry
        host = self.registry.split(":", 1)[0]
        if host in ("localhost", "127.0.0.1"):
            return f"http://{self.registry}"
        return f"https://{self.registry}"

    def __str__(self) -> str:
        return self.short_name

    def __repr__(self) -> str:
        return f"ImageReference({self.full_name})"
