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
Docker registry client.
Implements the parts of the Registry HTTP API V2 needed to resolve a base
image and push a new one: manifest and blob reads, blob existence checks,
cross-repository mounts, monolithic blob uploads and manifest writes.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, BinaryIO, Dict, Optional, Tuple, Union
from urllib.error import HTTPError
from urllib.parse import urlencode, urljoin, urlparse
from urllib.request import HTTPRedirectHandler, Request, build_opener

from ..CONFIG.settings import Settings
from ..ERRORS.exceptions import DigestMismatch
from ..UTILS.canonical_json import sha256_digest
from ..UTILS.platform import parse_platform
from .image_reference import ImageReference
from .keychain import AnonymousKeychain, Keychain

logger = logging.getLogger(__name__)

DOCKER_MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
DOCKER_CONFIG = "application/vnd.docker.container.image.v1+json"
DOCKER_LAYER_GZIP = "application/vnd.docker.image.rootfs.diff.tar.gzip"
OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"
OCI_CONFIG = "application/vnd.oci.image.config.v1+json"
OCI_LAYER_GZIP = "application/vnd.oci.image.layer.v1.tar+gzip"

MANIFEST_ACCEPT = ", ".join(
    [DOCKER_MANIFEST_V2, DOCKER_MANIFEST_LIST, OCI_MANIFEST, OCI_INDEX]
)
INDEX_MEDIA_TYPES = (DOCKER_MANIFEST_LIST, OCI_INDEX)

# media types for config and layers that go with each manifest type
MEDIA_TYPE_FAMILIES = {
    DOCKER_MANIFEST_V2: (DOCKER_CONFIG, DOCKER_LAYER_GZIP),
    OCI_MANIFEST: (OCI_CONFIG, OCI_LAYER_GZIP),
}

_CHALLENGE_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')

Payload = Union[bytes, BinaryIO, None]


@dataclass(frozen=True)
class ManifestResponse:
    """A manifest as served by the registry."""

    media_type: str
    raw: bytes
    digest: str

    @property
    def document(self) -> Dict[str, Any]:
        return json.loads(self.raw.decode("utf-8"))


class _StripAuthOnRedirect(HTTPRedirectHandler):
    """Blob downloads redirect to storage backends that reject our token."""

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        new_request = super().redirect_request(req, fp, code, msg, headers, newurl)
        if new_request is not None and urlparse(newurl).netloc != urlparse(req.full_url).netloc:
            new_request.remove_header("Authorization")
        return new_request


class RegistryClient:
    """
    Client for interacting with Docker registries.
    Supports Docker Hub and OCI-compatible registries.
    """

    def __init__(
        self,
        keychain: Optional[Keychain] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the registry client.

        Args:
            keychain: Credential resolver consulted per registry host.
            settings: Timeouts, insecure registries and platform preference.
        """
        self.keychain = keychain or AnonymousKeychain()
        self.settings = settings or Settings()
        self._auth_headers: Dict[Tuple[str, str], str] = {}
        self._opener = build_opener(_StripAuthOnRedirect())

    def base_url(self, ref: ImageReference) -> str:
        if "://" in ref.registry:
            return ref.registry
        if ref.registry == ImageReference.DEFAULT_REGISTRY:
            return ref.registry_url
        if self.settings.is_insecure(ref.registry):
            return f"http://{ref.registry}"
        return f"https://{ref.registry}"

    def _fetch_token(self, ref: ImageReference, challenge: str) -> Optional[str]:
        """Answer a WWW-Authenticate challenge with an Authorization header value."""
        scheme, _, params_text = challenge.partition(" ")
        auth = self.keychain.resolve(ref.registry)

        if scheme.lower() == "basic":
            return auth.basic_header() if auth else None
        if scheme.lower() != "bearer":
            return None

        params = dict(_CHALLENGE_PARAM_RE.findall(params_text))
        realm = params.pop("realm", None)
        if not realm:
            return None
        if "scope" not in params:
            params["scope"] = f"repository:{ref.repository}:pull,push"
        if auth is not None and auth.token:
            return f"Bearer {auth.token}"

        if auth is not None and auth.identity_token:
            # docker login identity tokens are OAuth2 refresh tokens
            form = dict(
                params,
                grant_type="refresh_token",
                refresh_token=auth.identity_token,
                client_id="ocimutate",
            )
            request = Request(realm, data=urlencode(form).encode(), method="POST")
            request.add_header("Content-Type", "application/x-www-form-urlencoded")
        else:
            request = Request(f"{realm}?{urlencode(params)}")
            basic = auth.basic_header() if auth is not None else None
            if basic:
                request.add_header("Authorization", basic)

        with self._opener.open(request, timeout=self.settings.registry_timeout) as response:
            data = json.loads(response.read().decode())
        token = data.get("token") or data.get("access_token")
        return f"Bearer {token}" if token else None

    def _request(
        self,
        method: str,
        url: str,
        ref: ImageReference,
        data: Payload = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Tuple[int, bytes, Dict[str, str]]:
        """Make an authenticated request to the registry."""
        cache_key = (ref.registry, ref.repository)

        for attempt in range(2):
            if hasattr(data, "seek"):
                data.seek(0)
            request = Request(url, data=data, method=method)
            for name, value in (headers or {}).items():
                request.add_header(name, value)
            token = self._auth_headers.get(cache_key)
            if token:
                request.add_header("Authorization", token)

            try:
                with self._opener.open(
                    request, timeout=self.settings.registry_timeout
                ) as response:
                    response_headers = {k.lower(): v for k, v in response.headers.items()}
                    return response.status, response.read(), response_headers
            except HTTPError as e:
                challenge = e.headers.get("WWW-Authenticate") if e.headers else None
                if e.code != 401 or attempt or not challenge:
                    raise
                # Token missing or expired, answer the challenge and retry once
                new_token = self._fetch_token(ref, challenge)
                if not new_token:
                    raise
                self._auth_headers[cache_key] = new_token
        raise AssertionError("unreachable")

    def _manifest_url(self, ref: ImageReference, identifier: Optional[str] = None) -> str:
        return f"{self.base_url(ref)}/v2/{ref.repository}/manifests/{identifier or ref.identifier}"

    def _blob_url(self, ref: ImageReference, digest: str) -> str:
        return f"{self.base_url(ref)}/v2/{ref.repository}/blobs/{digest}"

    def get_manifest(self, ref: ImageReference) -> ManifestResponse:
        """
        Get the image manifest, resolving a manifest list to one platform.

        Args:
            ref: Image reference

        Returns:
            The manifest exactly as served, with its computed digest.
        """
        content, headers = self._get_raw_manifest(ref)
        manifest = ManifestResponse(
            media_type=self._media_type(content, headers),
            raw=content,
            digest=sha256_digest(content),
        )
        if ref.digest and manifest.digest != ref.digest:
            raise DigestMismatch(f"manifest {ref.full_name}", ref.digest, manifest.digest)

        if manifest.media_type in INDEX_MEDIA_TYPES:
            return self._select_platform_manifest(ref, manifest.document)
        return manifest

    def _get_raw_manifest(self, ref: ImageReference) -> Tuple[bytes, Dict[str, str]]:
        _, content, headers = self._request(
            "GET", self._manifest_url(ref), ref, headers={"Accept": MANIFEST_ACCEPT}
        )
        return content, headers

    @staticmethod
    def _media_type(content: bytes, headers: Dict[str, str]) -> str:
        media_type = json.loads(content.decode("utf-8")).get("mediaType")
        if media_type:
            return media_type
        return headers.get("content-type", OCI_MANIFEST).split(";", 1)[0].strip()

    def _select_platform_manifest(
        self, ref: ImageReference, manifest_list: Dict[str, Any]
    ) -> ManifestResponse:
        """Select the manifest matching the configured (or host) platform."""
        os_name, arch, variant = parse_platform(self.settings.default_platform)

        for manifest in manifest_list.get("manifests", []):
            platform_info = manifest.get("platform", {})
            if (
                platform_info.get("os") == os_name
                and platform_info.get("architecture") == arch
                and (variant is None or platform_info.get("variant") == variant)
            ):
                return self.get_manifest(ref.with_digest(manifest["digest"]))

        # Fall back to first manifest
        if manifest_list.get("manifests"):
            first = manifest_list["manifests"][0]
            logger.warning(
                "No manifest for %s/%s in %s, using %s",
                os_name, arch, ref.full_name, first["digest"],
            )
            return self.get_manifest(ref.with_digest(first["digest"]))

        raise ValueError(f"No suitable manifest found for {ref.full_name}")

    def get_config(self, ref: ImageReference, manifest: Dict[str, Any]) -> bytes:
        """
        Get the raw image configuration blob.

        Args:
            ref: Image reference
            manifest: Image manifest document

        Returns:
            Config bytes exactly as stored, digest-verified.
        """
        digest = manifest.get("config", {}).get("digest", "")
        if not digest:
            raise ValueError("No config digest in manifest")
        return self.fetch_blob(ref, digest)

    def fetch_blob(self, ref: ImageReference, digest: str) -> bytes:
        """Download a blob and verify its digest."""
        _, content, _ = self._request("GET", self._blob_url(ref, digest), ref)
        actual_digest = sha256_digest(content)
        if actual_digest != digest:
            raise DigestMismatch(f"blob in {ref.repository}", digest, actual_digest)
        return content

    def blob_exists(self, ref: ImageReference, digest: str) -> bool:
        try:
            self._request("HEAD", self._blob_url(ref, digest), ref)
        except HTTPError as e:
            if e.code == 404:
                return False
            raise
        return True

    def mount_blob(self, ref: ImageReference, digest: str, from_repository: str) -> bool:
        """
        Ask the registry to link a blob from another repository on the same
        registry. Returns False when the registry declines the mount.
        """
        query = urlencode({"mount": digest, "from": from_repository})
        url = f"{self.base_url(ref)}/v2/{ref.repository}/blobs/uploads/?{query}"
        status, _, _ = self._request("POST", url, ref, data=b"")
        return status == 201

    def upload_blob(self, ref: ImageReference, digest: str, data: Payload, size: int) -> str:
        """Monolithic upload: open a session, then PUT the whole blob."""
        start_url = f"{self.base_url(ref)}/v2/{ref.repository}/blobs/uploads/"
        _, _, headers = self._request("POST", start_url, ref, data=b"")
        location = headers.get("location")
        if not location:
            raise ValueError(f"Registry returned no upload location for {ref.full_name}")

        upload_url = urljoin(start_url, location)
        separator = "&" if "?" in upload_url else "?"
        upload_url = f"{upload_url}{separator}{urlencode({'digest': digest})}"
        _, _, headers = self._request(
            "PUT",
            upload_url,
            ref,
            data=data,
            headers={
                "Content-Type": "application/octet-stream",
                "Content-Length": str(size),
            },
        )
        reported = headers.get("docker-content-digest", digest)
        if reported != digest:
            raise DigestMismatch(f"blob upload to {ref.repository}", digest, reported)
        return reported

    def put_manifest(self, ref: ImageReference, media_type: str, payload: bytes) -> str:
        """Write a manifest under the reference's tag and return its digest."""
        _, _, headers = self._request(
            "PUT",
            self._manifest_url(ref),
            ref,
            data=payload,
            headers={"Content-Type": media_type},
        )
        digest = sha256_digest(payload)
        reported = headers.get("docker-content-digest", digest)
        if reported != digest:
            raise DigestMismatch(f"manifest {ref.full_name}", digest, reported)
        return digest

    def manifest_digest(self, ref: ImageReference) -> Optional[str]:
        """HEAD the manifest; None when it does not exist."""
        try:
            _, _, headers = self._request(
                "HEAD", self._manifest_url(ref), ref, headers={"Accept": MANIFEST_ACCEPT}
            )
        except HTTPError as e:
            if e.code == 404:
                return None
            raise
        if headers.get("docker-content-digest"):
            return headers["docker-content-digest"]
        content, _ = self._get_raw_manifest(ref)
        return sha256_digest(content)

    def delete_manifest(self, ref: ImageReference, digest: str) -> None:
        self._request("DELETE", self._manifest_url(ref, digest), ref)
