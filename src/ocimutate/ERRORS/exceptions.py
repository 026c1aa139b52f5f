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
Errors raised by image mutation and commit operations.

Every error carries enough context to name the failing mutation or commit
phase. Nothing here is retried by the library.
"""

from typing import Optional


class ImageError(Exception):
    """Base class for all ocimutate errors."""


class InvalidLayerSource(ImageError):
    """A layer path does not exist or cannot be read."""

    def __init__(self, path: str, reason: str = "not readable"):
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid layer source {path!r}: {reason}")


class InvalidKey(ImageError):
    """A config key (label, env, port) is empty or malformed."""

    def __init__(self, field: str, key: str, reason: str = "key must not be empty"):
        self.field = field
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid {field} key {key!r}: {reason}")


class BaseResolutionFailed(ImageError):
    """The base image could not be pulled or fetched."""

    def __init__(self, reference: str, reason: str):
        self.reference = reference
        self.reason = reason
        super().__init__(f"Failed to resolve base image {reference}: {reason}")


class PushRejected(ImageError):
    """The registry refused a blob or manifest write."""

    def __init__(
        self,
        reference: str,
        phase: str,
        reason: str,
        status: Optional[int] = None,
    ):
        self.reference = reference
        self.phase = phase
        self.reason = reason
        self.status = status
        detail = f" (HTTP {status})" if status is not None else ""
        super().__init__(f"Registry rejected {phase} for {reference}{detail}: {reason}")


class DaemonOperationFailed(ImageError):
    """A call to the local Docker daemon failed."""

    def __init__(self, step: str, reference: str, reason: str):
        self.step = step
        self.reference = reference
        self.reason = reason
        super().__init__(f"Daemon {step} failed for {reference}: {reason}")


class DigestMismatch(ImageError):
    """
    A computed digest disagrees with the one reported or expected.

    This means corruption or a non-deterministic serialization and is never
    ignored.
    """

    def __init__(self, subject: str, expected: str, actual: str):
        self.subject = subject
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Digest mismatch for {subject}: expected {expected}, got {actual}"
        )
