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
The capability set every commit backend provides.

Backends are plain classes that satisfy `ImageBackend` structurally; the
image facade only ever talks to this protocol.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence

from ..MODELS.image_config import ImageConfig
from ..MODELS.image_model import BaseLayer, ImageModel
from ..REGISTRY.image_reference import ImageReference
from ..STORAGE.layer_store import LayerStore, StagedLayer


@dataclass(frozen=True)
class BaseImage:
    """A resolved base image, ready to seed an ImageModel."""

    config: ImageConfig
    layers: List[BaseLayer] = field(default_factory=list)
    reference: Optional[str] = None
    source_id: Optional[str] = None
    manifest_media_type: Optional[str] = None

    def to_model(self) -> ImageModel:
        return ImageModel(
            base_reference=self.reference,
            base_id=self.source_id,
            manifest_media_type=self.manifest_media_type,
            base_layers=list(self.layers),
            config=self.config.model_copy(deep=True),
        )


@dataclass(frozen=True)
class SaveResult:
    """
    Outcome of a save.

    `image_id` is the digest of the committed config. Both backends report
    it, so it is the identifier compared across backends.
    """

    image_id: str
    names: List[str]
    config: ImageConfig
    manifest_digest: Optional[str] = None

    @property
    def identifier(self) -> str:
        return self.image_id

    @property
    def diff_ids(self) -> List[str]:
        return list(self.config.diff_ids)


class ImageBackend(Protocol):
    def resolve_base(self, reference: Optional[ImageReference]) -> BaseImage:
        ...

    def save(self, names: Sequence[ImageReference], model: ImageModel) -> SaveResult:
        ...

    def found(self, name: ImageReference) -> bool:
        ...

    def delete(self, name: ImageReference) -> None:
        ...


def stage_added_layers(store: LayerStore, model: ImageModel) -> List[StagedLayer]:
    """Digest every added layer, in order."""
    return [
        store.stage(layer.source, expected_diff_id=layer.expected_diff_id)
        for layer in model.added_layers
    ]
