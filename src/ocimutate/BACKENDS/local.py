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
Local commit backend: realizes an image model in a Docker daemon.

The base is pulled if absent and exported once to read its raw config. A
save writes a docker-archive holding the canonical config and the new layers
only, since the daemon already has the base layers, loads it, checks the
daemon agrees on the digests and tags the result. Base layer tars are exported
again only for a daemon that reports them missing. Nothing is pushed.
"""

import io
import json
import logging
import re
import tarfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import docker
from docker.errors import DockerException, ImageNotFound

from ..BUILDERS.image import Image
from ..CONFIG.settings import Settings
from ..ERRORS.exceptions import BaseResolutionFailed, DaemonOperationFailed, DigestMismatch
from ..MODELS.image_config import ImageConfig
from ..MODELS.image_model import BaseLayer, ImageModel
from ..REGISTRY.image_reference import ImageReference
from ..STORAGE.layer_store import LayerStore
from ..UTILS.canonical_json import digest_hex, sha256_digest
from ..UTILS.platform import normalize_arch
from .base import BaseImage, SaveResult, stage_added_layers

logger = logging.getLogger(__name__)

# How daemons report a layer listed in an archive that neither it nor the archive holds
_MISSING_LAYER_RE = re.compile(r"no such file|not found|does not exist", re.IGNORECASE)


def _tar_info(name: str, size: int) -> tarfile.TarInfo:
    # Fixed metadata so the same inputs always produce the same archive
    info = tarfile.TarInfo(name=name)
    info.size = size
    info.mtime = 0
    info.mode = 0o644
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    return info


def _file_opener(path: Path) -> Callable[[], Tuple[Any, int]]:
    return lambda: (open(path, "rb"), path.stat().st_size)


def read_archive_manifest(archive: Path) -> Tuple[Dict[str, Any], bytes]:
    """Return the first manifest.json entry of a docker-archive and its raw config."""
    with tarfile.open(archive, "r") as tar:
        manifest_file = tar.extractfile("manifest.json")
        if manifest_file is None:
            raise ValueError(f"{archive} has no manifest.json")
        entries = json.load(manifest_file)
        if not entries:
            raise ValueError(f"{archive} has an empty manifest.json")
        entry = entries[0]
        config_file = tar.extractfile(entry["Config"])
        if config_file is None:
            raise ValueError(f"{archive} is missing config {entry['Config']}")
        return entry, config_file.read()


class LocalBackend:
    """
    Commits image models through a Docker daemon.
    """

    def __init__(self, docker_client: "docker.DockerClient", settings: Optional[Settings] = None):
        """
        Args:
            docker_client: Connected client, e.g. docker.from_env()
            settings: Normalized timestamp and temp dir settings
        """
        self.client = docker_client
        self.settings = settings or Settings()

    def _daemon(self, step: str, reference: str, call: Callable, *args, **kwargs):
        """Run one daemon call, naming the step if it fails."""
        try:
            return call(*args, **kwargs)
        except DockerException as e:
            raise DaemonOperationFailed(step, reference, str(e)) from e

    def _empty_base(self) -> BaseImage:
        info = self._daemon("info", "<daemon>", self.client.info)
        config = ImageConfig.empty(
            os=(info.get("OSType") or "linux").lower(),
            architecture=normalize_arch(info.get("Architecture") or "amd64"),
            created=self.settings.created_timestamp,
        )
        return BaseImage(config=config)

    def _ensure_present(self, ref: ImageReference):
        name = ref.short_name
        try:
            return self.client.images.get(name)
        except ImageNotFound:
            logger.info("Pulling %s", name)
        except DockerException as e:
            raise DaemonOperationFailed("inspect", name, str(e)) from e
        return self._daemon("pull", name, self.client.images.pull, name)

    def _export(self, image, reference: str, destination: Path) -> Path:
        logger.debug("Exporting %s to %s", reference, destination)
        with open(destination, "wb") as f:
            try:
                for chunk in image.save(named=False):
                    f.write(chunk)
            except DockerException as e:
                raise DaemonOperationFailed("export", reference, str(e)) from e
        return destination

    def resolve_base(self, reference: Optional[ImageReference]) -> BaseImage:
        if reference is None:
            return self._empty_base()

        name = reference.short_name
        try:
            image = self._ensure_present(reference)
            with LayerStore(self.settings) as store:
                archive = self._export(image, name, store.temp_path("base.tar"))
                _, raw_config = read_archive_manifest(archive)
        except DaemonOperationFailed as e:
            raise BaseResolutionFailed(name, str(e)) from e
        except (OSError, ValueError, KeyError, tarfile.TarError) as e:
            raise BaseResolutionFailed(name, f"unreadable export: {e}") from e

        config = ImageConfig.from_raw(json.loads(raw_config), self.settings.created_timestamp)
        return BaseImage(
            config=config,
            layers=[BaseLayer(diff_id=diff_id) for diff_id in config.diff_ids],
            reference=name,
            source_id=image.id,
        )

    def _write_archive(self,
                       destination: Path,
                       config_bytes: bytes,
                       config_digest: str,
                       layers: List[Tuple[str, Optional[Callable[[], Tuple[Any, int]]]]]) -> None:
        """
        Write a docker-archive. Each layer is (diff_id, opener) where opener
        returns a readable file object and its size. A layer whose opener is
        None is listed in manifest.json without its tar.
        """
        config_name = f"{digest_hex(config_digest)}.json"
        layer_names: List[str] = []
        written = set()
        with tarfile.open(destination, "w", format=tarfile.PAX_FORMAT) as tar:
            tar.addfile(_tar_info(config_name, len(config_bytes)), io.BytesIO(config_bytes))
            for diff_id, opener in layers:
                layer_name = f"{digest_hex(diff_id)}/layer.tar"
                layer_names.append(layer_name)
                if layer_name in written or opener is None:
                    continue
                fileobj, size = opener()
                try:
                    tar.addfile(_tar_info(layer_name, size), fileobj)
                finally:
                    fileobj.close()
                written.add(layer_name)

            manifest = json.dumps(
                [{"Config": config_name, "RepoTags": None, "Layers": layer_names}],
                sort_keys=True,
                separators=(",", ":"),
            ).encode("utf-8")
            tar.addfile(_tar_info("manifest.json", len(manifest)), io.BytesIO(manifest))

    def _base_layer_openers(self, model: ImageModel, base_archive: Optional[Path], base_tar):
        if not model.base_layers:
            return []
        entry, _ = read_archive_manifest(base_archive)
        paths = entry.get("Layers") or []
        if len(paths) != len(model.base_layers):
            raise DigestMismatch(
                f"base {model.base_reference} layer count",
                str(len(model.base_layers)),
                str(len(paths)),
            )

        def opener(member_name: str):
            def _open():
                member = base_tar.getmember(member_name)
                return base_tar.extractfile(member), member.size
            return _open

        return [
            (layer.diff_id, opener(path))
            for layer, path in zip(model.base_layers, paths)
        ]

    def _verify_loaded(self, image, config_digest: str, diff_ids: List[str]) -> None:
        attrs = getattr(image, "attrs", {}) or {}
        reported_layers = (attrs.get("RootFS") or {}).get("Layers")
        if reported_layers is not None and reported_layers != diff_ids:
            raise DigestMismatch("loaded image layers", ",".join(diff_ids), ",".join(reported_layers))
        # The containerd image store reports a manifest digest as the id
        if "Descriptor" not in attrs and image.id != config_digest:
            raise DigestMismatch("loaded image id", config_digest, image.id)

    def _tag_all(self, image_id: str, names: Sequence[ImageReference]) -> None:
        applied: List[ImageReference] = []
        try:
            for name in names:
                self._daemon("tag", name.short_name, self.client.api.tag,
                             image_id, name.context, name.tag or ImageReference.DEFAULT_TAG)
                applied.append(name)
        except DaemonOperationFailed:
            for name in applied:
                logger.warning("Rolling back tag %s", name.short_name)
                self._daemon("remove", name.short_name, self.client.images.remove,
                             name.short_name, noprune=True)
            raise

    def _load(self, archive: Path, target: str):
        logger.info("Loading %s into the daemon", target)
        with open(archive, "rb") as f:
            loaded = self._daemon("load", target, self.client.images.load, f)
        if not loaded:
            raise DaemonOperationFailed("load", target, "daemon reported no loaded image")
        return loaded[0]

    def _write_full_archive(self, store: LayerStore, model: ImageModel, config_bytes: bytes,
                            config_digest: str, new_layers) -> Path:
        """Archive carrying the base layer tars too, exported from the daemon."""
        reference = model.base_reference or model.base_id
        base_image = self._daemon("inspect", reference, self.client.images.get, model.base_id)
        base_archive = self._export(base_image, reference, store.temp_path("base.tar"))
        archive = store.temp_path("image-full.tar")
        with tarfile.open(base_archive, "r") as base_tar:
            layers = self._base_layer_openers(model, base_archive, base_tar) + new_layers
            self._write_archive(archive, config_bytes, config_digest, layers)
        return archive

    def save(self, names: Sequence[ImageReference], model: ImageModel) -> SaveResult:
        target = names[0].short_name
        with LayerStore(self.settings) as store:
            staged = stage_added_layers(store, model)
            config = model.render_config([layer.diff_id for layer in staged],
                                         self.settings.created_timestamp)
            config_bytes = config.canonical_bytes()
            config_digest = sha256_digest(config_bytes)
            new_layers = [(layer.diff_id, _file_opener(layer.tar_path)) for layer in staged]

            # Base layers are listed but not written; load finds them in the daemon
            archive = store.temp_path("image.tar")
            base_layers = [(layer.diff_id, None) for layer in model.base_layers]
            self._write_archive(archive, config_bytes, config_digest, base_layers + new_layers)
            try:
                image = self._load(archive, target)
            except DaemonOperationFailed as e:
                if not model.base_layers or not _MISSING_LAYER_RE.search(e.reason):
                    raise
                logger.warning("Daemon lacks base layers for %s, sending them: %s", target, e.reason)
                full_archive = self._write_full_archive(store, model, config_bytes,
                                                        config_digest, new_layers)
                image = self._load(full_archive, target)

        try:
            self._verify_loaded(image, config_digest, config.diff_ids)
        except DigestMismatch:
            self._daemon("remove", image.id, self.client.images.remove, image.id, force=True)
            raise

        self._tag_all(image.id, names)
        logger.info("Saved %s as %s", target, config_digest[:19])
        return SaveResult(
            image_id=config_digest,
            names=[name.full_name for name in names],
            config=config,
        )

    def found(self, name: ImageReference) -> bool:
        try:
            self.client.images.get(name.short_name)
        except ImageNotFound:
            return False
        except DockerException as e:
            raise DaemonOperationFailed("inspect", name.short_name, str(e)) from e
        return True

    def delete(self, name: ImageReference) -> None:
        if self.found(name):
            self._daemon("remove", name.short_name, self.client.images.remove,
                         name.short_name, noprune=False)


def new_image(name: Union[str, ImageReference],
              docker_client: "docker.DockerClient",
              from_base_image: Optional[Union[str, ImageReference]] = None,
              settings: Optional[Settings] = None) -> Image:
    """
    Create an image that will be committed to the local daemon.

    Args:
        name: Target reference to tag on save
        docker_client: Docker SDK client
        from_base_image: Base reference, pulled if absent; None for an empty image
        settings: Library settings
    """
    backend = LocalBackend(docker_client, settings)
    return Image.from_base(name, backend, from_base_image)
