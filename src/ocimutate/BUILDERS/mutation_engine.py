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
Applies mutations to an image model.

The engine never touches a backend. Given the same base and the same ordered
mutations, two models end in equal states.
"""

import logging
import os
import re
from typing import Iterable, Optional

from ..ERRORS.exceptions import InvalidKey, InvalidLayerSource
from ..MODELS.image_model import ImageModel, Layer
from ..MODELS.mutation import Mutation, MutationKind

logger = logging.getLogger(__name__)

_PORT_RE = re.compile(r"^(\d{1,5})(?:/(tcp|udp|sctp))?$")


def normalize_port(port: str) -> str:
    """'8080' -> '8080/tcp'; rejects anything that is not port[/proto]."""
    match = _PORT_RE.match(str(port).strip().lower())
    if not match or not 0 < int(match.group(1)) <= 65535:
        raise InvalidKey("port", str(port), "expected <port>[/tcp|udp|sctp]")
    return f"{int(match.group(1))}/{match.group(2) or 'tcp'}"


class MutationEngine:
    """
    Validates, normalizes and applies mutations.
    """

    def validate(self, mutation: Mutation) -> Mutation:
        """
        Check a mutation and return its normalized form.

        Raises:
            InvalidKey: empty label/env key or malformed port
            InvalidLayerSource: layer path missing or unreadable
        """
        kind = mutation.kind

        if kind in (MutationKind.SET_LABEL, MutationKind.REMOVE_LABEL):
            if not mutation.key:
                raise InvalidKey("label", mutation.key or "")
        elif kind == MutationKind.SET_ENV:
            if not mutation.key:
                raise InvalidKey("env", mutation.key or "")
            if "=" in mutation.key:
                raise InvalidKey("env", mutation.key, "key must not contain '='")
        elif kind == MutationKind.SET_EXPOSED_PORTS:
            ports = []
            for port in mutation.args:
                normalized = normalize_port(port)
                if normalized not in ports:
                    ports.append(normalized)
            return mutation.model_copy(update={"args": ports})
        elif kind == MutationKind.ADD_LAYER:
            path = mutation.path or ""
            if not os.path.isfile(path):
                raise InvalidLayerSource(path, "no such file")
            if not os.access(path, os.R_OK):
                raise InvalidLayerSource(path, "permission denied")
            return mutation.model_copy(update={"path": os.path.abspath(path)})

        return mutation

    def apply(self, model: ImageModel, mutation: Mutation) -> bool:
        """
        Apply one mutation in place.

        A mutation that leaves the model unchanged is not recorded, so
        repeating a setter with the same value is a no-op.

        Returns:
            True if the model changed.
        """
        mutation = self.validate(mutation)
        container = model.config.config
        kind = mutation.kind

        if kind == MutationKind.ADD_LAYER:
            model.added_layers.append(
                Layer(source=mutation.path, expected_diff_id=mutation.diff_id)
            )
            changed = True
        elif kind == MutationKind.SET_LABEL:
            value = mutation.value or ""
            changed = mutation.key not in container.labels or container.labels[mutation.key] != value
            container.labels[mutation.key] = value
        elif kind == MutationKind.REMOVE_LABEL:
            changed = container.labels.pop(mutation.key, None) is not None
        elif kind == MutationKind.SET_ENV:
            value = mutation.value or ""
            changed = mutation.key not in container.env or container.env[mutation.key] != value
            # Existing keys keep their position
            container.env[mutation.key] = value
        elif kind == MutationKind.SET_ENTRYPOINT:
            new_value = list(mutation.args) or None
            changed = container.entrypoint != new_value
            container.entrypoint = new_value
        elif kind == MutationKind.SET_CMD:
            new_value = list(mutation.args) or None
            changed = container.cmd != new_value
            container.cmd = new_value
        elif kind == MutationKind.SET_WORKING_DIR:
            new_value = mutation.value or None
            changed = container.working_dir != new_value
            container.working_dir = new_value
        elif kind == MutationKind.SET_EXPOSED_PORTS:
            changed = container.exposed_ports != mutation.args
            container.exposed_ports = list(mutation.args)
        else:
            raise ValueError(f"Unknown mutation kind: {kind}")

        if changed:
            model.mutations.append(mutation)
            model.dirty = True
            logger.debug("Applied %s %s", kind.value, mutation.key or mutation.path or "")
        return changed

    def replay(self, model: ImageModel, mutations: Iterable[Mutation]) -> None:
        """Apply a recorded mutation list in order."""
        for mutation in mutations:
            self.apply(model, mutation)


def add_layer(path: str, diff_id: Optional[str] = None) -> Mutation:
    return Mutation(kind=MutationKind.ADD_LAYER, path=path, diff_id=diff_id)


def set_label(key: str, value: str) -> Mutation:
    return Mutation(kind=MutationKind.SET_LABEL, key=key, value=value)


def remove_label(key: str) -> Mutation:
    return Mutation(kind=MutationKind.REMOVE_LABEL, key=key)


def set_env(key: str, value: str) -> Mutation:
    return Mutation(kind=MutationKind.SET_ENV, key=key, value=value)


def set_entrypoint(*args: str) -> Mutation:
    return Mutation(kind=MutationKind.SET_ENTRYPOINT, args=list(args))


def set_cmd(*args: str) -> Mutation:
    return Mutation(kind=MutationKind.SET_CMD, args=list(args))


def set_working_dir(path: str) -> Mutation:
    return Mutation(kind=MutationKind.SET_WORKING_DIR, value=path)


def set_exposed_ports(*ports: str) -> Mutation:
    return Mutation(kind=MutationKind.SET_EXPOSED_PORTS, args=[str(p) for p in ports])
