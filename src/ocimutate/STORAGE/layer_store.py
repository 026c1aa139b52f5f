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
Content-addressed staging area for layers.
Turns caller-supplied layer tars into digest-addressed blobs and owns every
temporary artifact a save produces.
"""

import gzip
import hashlib
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Dict, Optional

from ..CONFIG.settings import Settings
from ..ERRORS.exceptions import DigestMismatch, InvalidLayerSource

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
GZIP_MAGIC = b"\x1f\x8b"


@dataclass(frozen=True)
class StagedLayer:
    """A layer whose digests are known and whose blob sits in the store."""

    source: str
    diff_id: str
    digest: str
    size: int
    uncompressed_size: int
    blob_path: Path
    tar_path: Path


def is_gzip(path: Path) -> bool:
    with open(path, "rb") as f:
        return f.read(2) == GZIP_MAGIC


def _copy_hashing(src: BinaryIO, dst: BinaryIO) -> "hashlib._Hash":
    digest = hashlib.sha256()
    while True:
        chunk = src.read(CHUNK_SIZE)
        if not chunk:
            return digest
        digest.update(chunk)
        dst.write(chunk)


def _hash_file(path: Path) -> "hashlib._Hash":
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest


class LayerStore:
    """
    Stages layers for one save and cleans up after it.

    Layers are keyed by diff_id, so the same content added twice is
    compressed and uploaded once.
    """

    def __init__(self, settings: Optional[Settings] = None):
        """
        Initialize the layer store.

        Args:
            settings: Provides the temp directory parent and gzip level.
        """
        self.settings = settings or Settings()
        work_dir = self.settings.work_dir
        if work_dir is not None:
            Path(work_dir).mkdir(parents=True, exist_ok=True)
        self._tmp = tempfile.TemporaryDirectory(
            prefix="ocimutate-", dir=str(work_dir) if work_dir else None
        )
        self.root = Path(self._tmp.name)
        self.blobs_dir = self.root / "blobs"
        self.tars_dir = self.root / "tars"
        self.blobs_dir.mkdir()
        self.tars_dir.mkdir()

        self._layers: Dict[str, StagedLayer] = {}
        self._closed = False

    def __enter__(self) -> "LayerStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Remove every temporary artifact."""
        if not self._closed:
            self._tmp.cleanup()
            self._closed = True

    def temp_path(self, name: str) -> Path:
        """A path inside the store for backend scratch files."""
        if self._closed:
            raise RuntimeError("LayerStore is closed")
        return self.root / name

    def has_layer(self, diff_id: str) -> bool:
        return diff_id in self._layers

    def stage(self, source: str, expected_diff_id: Optional[str] = None) -> StagedLayer:
        """
        Digest a layer tar (plain or gzipped) and produce its blob.

        Args:
            source: Path to the layer tar supplied by the caller
            expected_diff_id: Uncompressed digest the caller vouched for

        Returns:
            StagedLayer with diff_id, compressed digest and size
        """
        if self._closed:
            raise RuntimeError("LayerStore is closed")
        source_path = Path(source)
        try:
            compressed_input = is_gzip(source_path)
            fd, tmp_name = tempfile.mkstemp(dir=self.tars_dir, suffix=".tar")
            with os.fdopen(fd, "wb") as out:
                opener = gzip.open if compressed_input else open
                with opener(source_path, "rb") as src:
                    uncompressed_hash = _copy_hashing(src, out)
        except (OSError, EOFError) as e:
            raise InvalidLayerSource(str(source), str(e)) from e

        diff_id = f"sha256:{uncompressed_hash.hexdigest()}"
        if expected_diff_id is not None and expected_diff_id != diff_id:
            os.unlink(tmp_name)
            raise DigestMismatch(f"layer {source}", expected_diff_id, diff_id)

        existing = self._layers.get(diff_id)
        if existing is not None:
            logger.debug("Layer %s already staged, reusing", diff_id[:19])
            os.unlink(tmp_name)
            return existing

        tar_path = self.tars_dir / f"{diff_id.split(':', 1)[1]}.tar"
        os.replace(tmp_name, tar_path)
        blob_path = self._compress(tar_path)
        digest = f"sha256:{_hash_file(blob_path).hexdigest()}"
        final_blob = self.blobs_dir / digest.split(":", 1)[1]
        os.replace(blob_path, final_blob)

        layer = StagedLayer(
            source=str(source),
            diff_id=diff_id,
            digest=digest,
            size=final_blob.stat().st_size,
            uncompressed_size=tar_path.stat().st_size,
            blob_path=final_blob,
            tar_path=tar_path,
        )
        self._layers[diff_id] = layer
        logger.debug("Staged layer %s as blob %s", diff_id[:19], digest[:19])
        return layer

    def _compress(self, tar_path: Path) -> Path:
        # No file name and a zero mtime in the header keeps blobs reproducible
        blob_path = self.blobs_dir / f"{tar_path.stem}.partial"
        with open(tar_path, "rb") as src, open(blob_path, "wb") as raw:
            with gzip.GzipFile(
                filename="",
                mode="wb",
                fileobj=raw,
                compresslevel=self.settings.gzip_level,
                mtime=0,
            ) as gz:
                shutil.copyfileobj(src, gz, CHUNK_SIZE)
        return blob_path
