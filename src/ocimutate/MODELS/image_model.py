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
The in-memory image model: base, layers, config and pending mutations.
"""
from typing import List, Optional

from pydantic import BaseModel, Field

from .image_config import ImageConfig
from .mutation import Mutation


class BaseLayer(BaseModel):
    """
    A layer inherited from the base image. Registry-resolved layers know
    their compressed digest; daemon-resolved ones only their diff_id.
    Foreign layers keep the URLs their blobs are served from.
    """
    diff_id: str
    digest: Optional[str] = None
    size: Optional[int] = None
    media_type: Optional[str] = None
    urls: Optional[List[str]] = None

    model_config = {"frozen": True}


class Layer(BaseModel):
    """
    A layer appended by the caller. Digests are computed at save time.
    """
    source: str
    expected_diff_id: Optional[str] = None

    model_config = {"frozen": True}


class ImageModel(BaseModel):
    """
    Everything needed to commit an image, independent of backend.

    Layer order is append-only: base layers first, then added layers in the
    order they were added.
    """
    base_reference: Optional[str] = None
    base_id: Optional[str] = None
    manifest_media_type: Optional[str] = None
    base_layers: List[BaseLayer] = Field(default_factory=list)
    added_layers: List[Layer] = Field(default_factory=list)
    config: ImageConfig
    mutations: List[Mutation] = Field(default_factory=list)
    dirty: bool = False

    def layer_sources(self) -> List[str]:
        """Base diff_ids followed by the paths of added layers."""
        return [layer.diff_id for layer in self.base_layers] + [
            layer.source for layer in self.added_layers
        ]

    def render_config(self, added_diff_ids: List[str], created: str) -> ImageConfig:
        """
        The config to commit once added layers have been digested.

        Args:
            added_diff_ids: diff_ids of `added_layers`, same order
            created: normalized creation time
        """
        if len(added_diff_ids) != len(self.added_layers):
            raise ValueError(
                f"Expected {len(self.added_layers)} layer digests, got {len(added_diff_ids)}"
            )
        return self.config.with_layers(added_diff_ids, created)
