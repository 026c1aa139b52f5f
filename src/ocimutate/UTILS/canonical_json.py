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
Canonical JSON encoding and sha256 digest helpers.

Configs and manifests are always serialized through `canonical_dumps` so two
equivalent documents hash to the same digest on every backend and every run.
"""

import hashlib
import json
from typing import Any

DIGEST_ALGORITHM = "sha256"


def canonical_dumps(document: Any) -> bytes:
    """Encode with sorted keys, compact separators, UTF-8, no trailing newline."""
    return json.dumps(
        document, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def sha256_digest(data: bytes) -> str:
    """Return an OCI digest string (`sha256:<hex>`) for `data`."""
    return f"{DIGEST_ALGORITHM}:{hashlib.sha256(data).hexdigest()}"


def digest_hex(digest: str) -> str:
    """Strip the algorithm prefix from a digest."""
    algorithm, _, hex_part = digest.partition(":")
    if algorithm != DIGEST_ALGORITHM or not hex_part:
        raise ValueError(f"Unsupported digest: {digest!r}")
    return hex_part
