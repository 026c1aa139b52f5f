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
Recorded mutations. A model's mutation list can be replayed onto another
model built from the same base to reproduce its config.
"""
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class MutationKind(str, Enum):
    """
    The operations the mutation engine understands.
    """
    ADD_LAYER = "add-layer"
    SET_LABEL = "set-label"
    REMOVE_LABEL = "remove-label"
    SET_ENV = "set-env"
    SET_ENTRYPOINT = "set-entrypoint"
    SET_CMD = "set-cmd"
    SET_WORKING_DIR = "set-working-dir"
    SET_EXPOSED_PORTS = "set-exposed-ports"


class Mutation(BaseModel):
    """
    One change to an image. Which fields matter depends on `kind`.
    """
    kind: MutationKind
    key: Optional[str] = None
    value: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    path: Optional[str] = None
    diff_id: Optional[str] = None

    model_config = {"frozen": True}
