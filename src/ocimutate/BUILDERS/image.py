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
The mutable image handle callers work with, whichever backend created it.
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional, Union

from ..BACKENDS.base import ImageBackend, SaveResult
from ..MODELS.image_config import ImageConfig
from ..MODELS.image_model import ImageModel
from ..MODELS.mutation import Mutation
from ..REGISTRY.image_reference import ImageReference
from . import mutation_engine as mutations
from .mutation_engine import MutationEngine

logger = logging.getLogger(__name__)


def _target_reference(name: Union[str, ImageReference]) -> ImageReference:
    ref = name if isinstance(name, ImageReference) else ImageReference.parse(name)
    if ref.digest:
        raise ValueError(f"Cannot save to a digest reference: {ref.full_name}")
    return ref


class Image:
    """
    An image being built: an ImageModel, the engine that mutates it and the
    backend that will commit it.

    Not safe for concurrent use; build distinct images on distinct threads.
    """
    def __init__(self,
                 name: Union[str, ImageReference],
                 model: ImageModel,
                 backend: ImageBackend,
                 engine: Optional[MutationEngine] = None):
        """
        :param name: Target reference the image is saved under.
        :param model: Model seeded from the resolved base.
        :param backend: Backend that resolved the base and will commit.
        :param engine: Mutation engine; a fresh one by default.
        """
        self._name = _target_reference(name)
        self.model = model
        self.backend = backend
        self.engine = engine or MutationEngine()
        self._result: Optional[SaveResult] = None
        self._saved_layer_count = 0

    @classmethod
    def from_base(cls,
                  name: Union[str, ImageReference],
                  backend: ImageBackend,
                  base_image: Optional[Union[str, ImageReference]] = None) -> "Image":
        """
        Resolve `base_image` through `backend` and wrap the result.

        :param name: Target reference.
        :param backend: Backend to resolve and commit with.
        :param base_image: Base reference; None starts from an empty image.
        """
        base_ref = None
        if base_image is not None:
            base_ref = base_image if isinstance(base_image, ImageReference) else ImageReference.parse(base_image)
        base = backend.resolve_base(base_ref)
        return cls(name, base.to_model(), backend)

    # Identity

    @property
    def name(self) -> str:
        return self._name.short_name

    @property
    def reference(self) -> ImageReference:
        return self._name

    def rename(self, name: Union[str, ImageReference]) -> None:
        self._name = _target_reference(name)

    @property
    def identifier(self) -> Optional[str]:
        """Image id of the last save, None before the first save."""
        return self._result.identifier if self._result else None

    @property
    def mutations(self) -> List[Mutation]:
        return list(self.model.mutations)

    @property
    def dirty(self) -> bool:
        return self.model.dirty

    # Mutations

    def apply(self, mutation: Mutation) -> bool:
        return self.engine.apply(self.model, mutation)

    def add_layer(self, path: str) -> None:
        self.apply(mutations.add_layer(path))

    def add_layer_with_diff_id(self, path: str, diff_id: str) -> None:
        self.apply(mutations.add_layer(path, diff_id))

    def set_label(self, key: str, value: str) -> None:
        self.apply(mutations.set_label(key, value))

    def remove_label(self, key: str) -> None:
        self.apply(mutations.remove_label(key))

    def set_env(self, key: str, value: str) -> None:
        self.apply(mutations.set_env(key, value))

    def set_entrypoint(self, *args: str) -> None:
        self.apply(mutations.set_entrypoint(*args))

    def set_cmd(self, *args: str) -> None:
        self.apply(mutations.set_cmd(*args))

    def set_working_dir(self, path: str) -> None:
        self.apply(mutations.set_working_dir(path))

    def set_exposed_ports(self, *ports: str) -> None:
        self.apply(mutations.set_exposed_ports(*ports))

    # Reads

    def label(self, key: str) -> Optional[str]:
        return self.model.config.config.labels.get(key)

    def labels(self) -> Dict[str, str]:
        return dict(self.model.config.config.labels)

    def env(self, key: str) -> Optional[str]:
        return self.model.config.config.env.get(key)

    def entrypoint(self) -> List[str]:
        return list(self.model.config.config.entrypoint or [])

    def cmd(self) -> List[str]:
        return list(self.model.config.config.cmd or [])

    def working_dir(self) -> Optional[str]:
        return self.model.config.config.working_dir

    def exposed_ports(self) -> List[str]:
        return list(self.model.config.config.exposed_ports)

    def os(self) -> str:
        return self.model.config.os

    def architecture(self) -> str:
        return self.model.config.architecture

    def created_at(self) -> datetime:
        return self.model.config.created_at()

    def config(self) -> ImageConfig:
        """The committed config after a save, else the pending one."""
        source = self._result.config if self._result else self.model.config
        return source.model_copy(deep=True)

    def top_layer(self) -> Optional[str]:
        """
        diff_id of the topmost layer.

        Added layers are digested at save time, so this raises if a layer was
        added since the last save.
        """
        if self._result is not None and len(self.model.added_layers) == self._saved_layer_count:
            diff_ids = self._result.diff_ids
        elif not self.model.added_layers:
            diff_ids = [layer.diff_id for layer in self.model.base_layers]
        else:
            raise ValueError("Layer digests are computed when the image is saved")
        return diff_ids[-1] if diff_ids else None

    # Backend

    def found(self) -> bool:
        return self.backend.found(self._name)

    def delete(self) -> None:
        self.backend.delete(self._name)

    def save(self, *additional_names: Union[str, ImageReference]) -> SaveResult:
        """
        Commit through the backend that created this image.

        :param additional_names: Extra references to tag the result with.
        :return: SaveResult whose identifier is the image id.
        """
        names = [self._name] + [_target_reference(n) for n in additional_names]
        logger.info("Saving %s (%d pending mutations)", self._name.full_name, len(self.model.mutations))
        self._result = self.backend.save(names, self.model)
        self._saved_layer_count = len(self.model.added_layers)
        self.model.dirty = False
        return self._result
