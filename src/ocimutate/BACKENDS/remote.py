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
Remote commit backend: realizes an image model directly in a registry.

Base manifest and config are fetched over the registry API. A save uploads
whatever blobs the target repository lacks (mounting or copying base layers,
uploading new ones and the config) and then pushes one manifest per name.
"""

import json
import logging
from typing import Dict, List, Optional, Sequence, Union
from urllib.error import HTTPError, URLError

from ..BUILDERS.image import Image
from ..CONFIG.settings import Settings
from ..ERRORS.exceptions import BaseResolutionFailed, DigestMismatch, PushRejected
from ..MODELS.image_config import ImageConfig
from ..MODELS.image_model import BaseLayer, ImageModel
from ..REGISTRY.image_reference import ImageReference
from ..REGISTRY.keychain import Keychain, default_keychain
from ..REGISTRY.registry_client import (
    DOCKER_MANIFEST_V2,
    MEDIA_TYPE_FAMILIES,
    RegistryClient,
)
from ..STORAGE.layer_store import LayerStore
from ..UTILS.canonical_json import canonical_dumps, sha256_digest
from ..UTILS.platform import parse_platform
from .base import BaseImage, SaveResult, stage_added_layers

logger = logging.getLogger(__name__)


def _describe_http_error(error: Exception) -> str:
    if isinstance(error, HTTPError):
        try:
            body = error.read().decode("utf-8", "replace").strip()
        except (OSError, ValueError):
            body = ""
        return body or str(error.reason)
    if isinstance(error, URLError):
        return str(error.reason)
    return str(error)


class RemoteBackend:
    """
    Commits image models to a registry without a daemon.
    """

    def __init__(self,
                 registry_client: RegistryClient,
                 settings: Optional[Settings] = None):
        """
        Args:
            registry_client: Client carrying the keychain used for every host
            settings: Normalized timestamp, gzip level, platform preference
        """
        self.registry = registry_client
        self.settings = settings or registry_client.settings

    def _empty_base(self) -> BaseImage:
        os_name, arch, variant = parse_platform(self.settings.default_platform)
        config = ImageConfig.empty(os_name, arch, self.settings.created_timestamp, variant)
        return BaseImage(config=config, manifest_media_type=DOCKER_MANIFEST_V2)

    def resolve_base(self, reference: Optional[ImageReference]) -> BaseImage:
        if reference is None:
            return self._empty_base()

        name = reference.full_name
        logger.info("Resolving base %s", name)
        try:
            manifest = self.registry.get_manifest(reference)
            document = manifest.document
            raw_config = self.registry.get_config(reference, document)
            config = ImageConfig.from_raw(json.loads(raw_config), self.settings.created_timestamp)
        except (HTTPError, URLError) as e:
            raise BaseResolutionFailed(name, _describe_http_error(e)) from e
        except ValueError as e:
            raise BaseResolutionFailed(name, str(e)) from e

        descriptors = document.get("layers") or []
        if len(descriptors) != len(config.diff_ids):
            raise BaseResolutionFailed(
                name,
                f"manifest lists {len(descriptors)} layers but config has {len(config.diff_ids)}",
            )

        layers = [
            BaseLayer(
                diff_id=diff_id,
                digest=descriptor["digest"],
                size=descriptor.get("size"),
                media_type=descriptor.get("mediaType"),
                urls=descriptor.get("urls"),
            )
            for descriptor, diff_id in zip(descriptors, config.diff_ids)
        ]
        return BaseImage(
            config=config,
            layers=layers,
            reference=reference.with_digest(manifest.digest).full_name,
            source_id=manifest.digest,
            manifest_media_type=manifest.media_type,
        )

    def _ensure_base_blob(self, target: ImageReference, base: ImageReference, layer: BaseLayer) -> None:
        if layer.media_type and "foreign" in layer.media_type:
            # Non-distributable layers are fetched from their own URLs
            return
        if self.registry.blob_exists(target, layer.digest):
            logger.debug("Blob %s already in %s", layer.digest[:19], target.repository)
            return
        if base.registry == target.registry and self.registry.mount_blob(
            target, layer.digest, base.repository
        ):
            logger.debug("Mounted %s from %s", layer.digest[:19], base.repository)
            return
        logger.debug("Copying %s from %s", layer.digest[:19], base.full_name)
        data = self.registry.fetch_blob(base, layer.digest)
        self.registry.upload_blob(target, layer.digest, data, len(data))

    def _upload_layers(self, target: ImageReference, model: ImageModel, staged) -> None:
        base = ImageReference.parse(model.base_reference) if model.base_reference else None
        for layer in model.base_layers:
            self._ensure_base_blob(target, base, layer)

        uploaded = set()
        for layer in staged:
            if layer.digest in uploaded or self.registry.blob_exists(target, layer.digest):
                continue
            logger.info("Uploading layer %s", layer.digest[:19])
            with open(layer.blob_path, "rb") as f:
                self.registry.upload_blob(target, layer.digest, f, layer.size)
            uploaded.add(layer.digest)

    def build_manifest(self, model: ImageModel, staged, config_bytes: bytes) -> Dict:
        """Manifest document: config descriptor, base layers, then new layers."""
        media_type = model.manifest_media_type
        if media_type not in MEDIA_TYPE_FAMILIES:
            media_type = DOCKER_MANIFEST_V2
        config_media_type, layer_media_type = MEDIA_TYPE_FAMILIES[media_type]

        layers: List[Dict] = []
        for layer in model.base_layers:
            descriptor = {"mediaType": layer.media_type or layer_media_type,
                          "size": layer.size,
                          "digest": layer.digest}
            if layer.urls:
                descriptor["urls"] = list(layer.urls)
            layers.append(descriptor)
        for layer in staged:
            layers.append({"mediaType": layer_media_type,
                           "size": layer.size,
                           "digest": layer.digest})
        return {
            "schemaVersion": 2,
            "mediaType": media_type,
            "config": {
                "mediaType": config_media_type,
                "size": len(config_bytes),
                "digest": sha256_digest(config_bytes),
            },
            "layers": layers,
        }

    def save(self, names: Sequence[ImageReference], model: ImageModel) -> SaveResult:
        target = names[0]
        if any(layer.digest is None for layer in model.base_layers):
            raise ValueError("Base layers have no registry digests; resolve the base remotely")

        phase = "layer upload"
        with LayerStore(self.settings) as store:
            staged = stage_added_layers(store, model)
            config = model.render_config([layer.diff_id for layer in staged],
                                         self.settings.created_timestamp)
            config_bytes = config.canonical_bytes()
            config_digest = sha256_digest(config_bytes)
            manifest = self.build_manifest(model, staged, config_bytes)
            payload = canonical_dumps(manifest)

            manifest_digest = None
            pushed: List[ImageReference] = []
            try:
                self._upload_layers(target, model, staged)
                phase = "config upload"
                if not self.registry.blob_exists(target, config_digest):
                    self.registry.upload_blob(target, config_digest, config_bytes, len(config_bytes))
                phase = "manifest push"
                for name in names:
                    logger.info("Pushing manifest to %s", name.full_name)
                    manifest_digest = self.registry.put_manifest(name, manifest["mediaType"], payload)
                    pushed.append(name)
            except (HTTPError, URLError) as e:
                if phase == "manifest push":
                    self._rollback_manifests(pushed, manifest_digest)
                raise PushRejected(
                    target.full_name,
                    phase,
                    _describe_http_error(e),
                    getattr(e, "code", None),
                ) from e
            except DigestMismatch:
                if phase == "manifest push":
                    self._rollback_manifests(pushed, manifest_digest)
                raise

        logger.info("Saved %s as %s", target.full_name, manifest_digest[:19])
        return SaveResult(
            image_id=config_digest,
            names=[name.full_name for name in names],
            config=config,
            manifest_digest=manifest_digest,
        )

    def _rollback_manifests(self, pushed: Sequence[ImageReference], digest: Optional[str]) -> None:
        """Delete manifests already pushed by a save that failed on a later name."""
        for name in pushed:
            logger.warning("Rolling back manifest %s", name.full_name)
            try:
                self.registry.delete_manifest(name, digest)
            except (HTTPError, URLError) as e:
                # registry:2 refuses deletes unless storage.delete is enabled
                logger.error("Could not roll back %s: %s", name.full_name, _describe_http_error(e))

    def found(self, name: ImageReference) -> bool:
        return self.registry.manifest_digest(name) is not None

    def delete(self, name: ImageReference) -> None:
        digest = self.registry.manifest_digest(name)
        if digest is not None:
            self.registry.delete_manifest(name, digest)


def new_image(name: Union[str, ImageReference],
              keychain: Optional[Keychain] = None,
              from_base_image: Optional[Union[str, ImageReference]] = None,
              settings: Optional[Settings] = None,
              registry_client: Optional[RegistryClient] = None) -> Image:
    """
    Create an image that will be pushed straight to a registry.

    Args:
        name: Target reference to push on save
        keychain: Credential resolver for the base and target registries;
            environment variables then the Docker config by default
        from_base_image: Base reference; None for an empty image
        settings: Library settings
        registry_client: Pre-built client, mainly for tests
    """
    client = registry_client or RegistryClient(keychain or default_keychain(), settings)
    backend = RemoteBackend(client, settings)
    return Image.from_base(name, backend, from_base_image)
